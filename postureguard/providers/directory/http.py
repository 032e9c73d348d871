from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from postureguard.core.errors import (
    AuthenticationError,
    PhaseFailure,
    PostureGuardError,
    TransientProviderError,
)
from postureguard.providers.directory.base import TokenSource
from postureguard.services.resilience import RetryPolicy, default_retry_policy, retry_async
from postureguard.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

# Markers Google uses when an API is disabled for the project rather than denied for the caller.
_API_DISABLED_MARKERS = ("accessNotConfigured", "SERVICE_DISABLED", "has not been used in project")


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def raise_for_provider_status(response: httpx.Response, *, integration: str) -> None:
    """Map an HTTP failure onto the provider error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    if status == 401:
        raise AuthenticationError(
            f"{integration} rejected the credential",
            status_code=status,
            credential_rejected=True,
        )
    if status == 403:
        if any(marker in response.text for marker in _API_DISABLED_MARKERS):
            raise PhaseFailure(f"{integration} API not enabled")
        raise AuthenticationError("insufficient scope", status_code=status)
    if status == 404:
        raise PhaseFailure(f"{integration} resource not found: {response.request.url.path}")
    if status == 429 or status >= 500:
        raise TransientProviderError(
            f"{integration} unavailable status={status}",
            status_code=status,
            retry_after_s=parse_retry_after(response.headers.get("Retry-After")),
        )
    raise PhaseFailure(f"{integration} request rejected status={status}")


def decode_json(response: httpx.Response, *, integration: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise PhaseFailure(f"{integration} returned a non-JSON body") from exc


async def post_token_request(
    client: httpx.AsyncClient,
    url: str,
    *,
    data: dict[str, str],
    integration: str,
) -> tuple[httpx.Response, dict[str, Any]]:
    """POST a token grant, mapping network failures onto TransientProviderError.

    The parsed body is returned for successful responses; error bodies are
    left to the caller.
    """
    try:
        response = await client.post(url, data=data)
    except (httpx.TimeoutException, httpx.NetworkError) as exc:
        raise TransientProviderError(f"{integration} token endpoint network error: {exc.__class__.__name__}") from exc
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientProviderError(
            f"token endpoint unavailable status={response.status_code}",
            status_code=response.status_code,
            retry_after_s=parse_retry_after(response.headers.get("Retry-After")),
        )
    if response.status_code >= 400:
        return response, {}
    payload = decode_json(response, integration=integration)
    return response, payload if isinstance(payload, dict) else {}


class ProviderHttp:
    """Authenticated JSON transport shared by directory provider clients.

    Every request runs under the bounded retry policy. Paging helpers hide
    page tokens and next links so callers only see items.
    """

    def __init__(
        self,
        *,
        integration: str,
        token_source: TokenSource,
        client: httpx.AsyncClient | None = None,
        owns_client: bool | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._integration = integration
        self._tokens = token_source
        self._client = client
        self._owns_client = client is None if owns_client is None else owns_client
        self._policy = policy or default_retry_policy()
        self._sleep = sleep

    @property
    def integration(self) -> str:
        return self._integration

    def get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._policy.timeout_ms / 1000.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        url: str,
        *,
        audience: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        client = self.get_client()

        async def _call() -> httpx.Response:
            token = await self._tokens.get_token(audience)
            request_headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
            request_headers.update(headers or {})
            try:
                response = await client.request(method, url, params=params, headers=request_headers)
            except (httpx.TimeoutException, httpx.NetworkError) as exc:
                raise TransientProviderError(f"{self._integration} network error: {exc.__class__.__name__}") from exc
            raise_for_provider_status(response, integration=self._integration)
            return response

        start = time.monotonic()
        try:
            response = await retry_async(_call, policy=self._policy, sleep=self._sleep)
        except TimeoutError as exc:
            self._record(start, success=False)
            raise TransientProviderError(f"{self._integration} call timed out") from exc
        except PostureGuardError:
            self._record(start, success=False)
            raise
        self._record(start, success=True)
        return response

    def _record(self, start: float, *, success: bool) -> None:
        record_external_call(
            integration=self._integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
        if not success:
            increment_counter(f"provider_call_failures_total.{self._integration}")

    async def get_json(
        self,
        url: str,
        *,
        audience: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = await self.request("GET", url, audience=audience, params=params, headers=headers)
        payload = decode_json(response, integration=self._integration)
        return payload if isinstance(payload, dict) else {}

    async def get_text(
        self,
        url: str,
        *,
        audience: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> str:
        response = await self.request("GET", url, audience=audience, params=params, headers=headers)
        return response.text

    async def paginate_tokens(
        self,
        url: str,
        *,
        audience: str,
        items_key: str,
        params: dict[str, Any] | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        # Google style: nextPageToken in the body, pageToken on the next request.
        query = dict(params or {})
        while True:
            payload = await self.get_json(url, audience=audience, params=query)
            for item in payload.get(items_key) or []:
                yield item
            page_token = payload.get("nextPageToken")
            if not page_token:
                return
            query["pageToken"] = page_token

    async def paginate_links(
        self,
        url: str,
        *,
        audience: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        link_key: str = "@odata.nextLink",
    ) -> AsyncIterator[dict[str, Any]]:
        # Graph/ARM style: the next link is a complete URL including the query.
        next_url: str | None = url
        query: dict[str, Any] | None = params
        while next_url:
            payload = await self.get_json(next_url, audience=audience, params=query, headers=headers)
            for item in payload.get("value") or []:
                yield item
            next_url = payload.get(link_key)
            query = None
