from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Callable

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from postureguard.core.config import PROVIDER_AZURE, Settings, get_settings
from postureguard.core.errors import AuthenticationError, PhaseFailure
from postureguard.providers.directory.base import PhaseSpec, TokenSource, parse_timestamp
from postureguard.providers.directory.http import ProviderHttp, post_token_request


logger = logging.getLogger(__name__)

GRAPH_AUDIENCE = "graph"
MANAGEMENT_AUDIENCE = "management"

NSG_TYPE = "Microsoft.Network/networkSecurityGroups"
STORAGE_TYPE = "Microsoft.Storage/storageAccounts"

_RESOURCES_API_VERSION = "2021-04-01"
_NETWORK_API_VERSION = "2023-09-01"
_STORAGE_API_VERSION = "2023-01-01"
_SECURITY_API_VERSION = "2020-01-01"

_USER_FIELDS = "id,displayName,userPrincipalName,mail,accountEnabled,userType,createdDateTime,signInActivity"
_GROUP_FIELDS = "id,displayName,mail,groupTypes,securityEnabled,mailEnabled,membershipRule,visibility"
_APP_FIELDS = (
    "id,appId,displayName,signInAudience,passwordCredentials,keyCredentials,requiredResourceAccess,createdDateTime"
)
# The password method is registered for every account and says nothing about MFA.
_PASSWORD_METHOD = "passwordAuthenticationMethod"


class AzureAppCredentials(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(validation_alias=AliasChoices("tenant_id", "tenantId"))
    client_id: str = Field(validation_alias=AliasChoices("client_id", "clientId"))
    client_secret: str = Field(validation_alias=AliasChoices("client_secret", "clientSecret"))
    subscription_id: str = Field(validation_alias=AliasChoices("subscription_id", "subscriptionId"))


class ClientCredentialsTokenSource:
    """App-only tokens for Graph and ARM via the client-credentials grant."""

    def __init__(
        self,
        credentials: AzureAppCredentials,
        *,
        client: httpx.AsyncClient,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials
        self._client = client
        self._settings = settings or get_settings()
        self._clock = clock
        self._cache: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _scope(self, audience: str) -> str:
        base = self._settings.azure_management_base_url if audience == MANAGEMENT_AUDIENCE else self._settings.azure_graph_base_url
        url = httpx.URL(base)
        return f"{url.scheme}://{url.host}/.default"

    async def get_token(self, audience: str) -> str:
        async with self._lock:
            cached = self._cache.get(audience)
            now = self._clock()
            if cached is not None and cached[1] - 60 > now:
                return cached[0]
            response, payload = await post_token_request(
                self._client,
                f"{self._settings.azure_login_base_url}/{self._credentials.tenant_id}/oauth2/v2.0/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "scope": self._scope(audience),
                },
                integration=PROVIDER_AZURE,
            )
            if response.status_code >= 400:
                try:
                    error = str(response.json().get("error") or response.status_code)
                except ValueError:
                    error = str(response.status_code)
                raise AuthenticationError(
                    f"token exchange rejected: {error}",
                    status_code=response.status_code,
                    credential_rejected=True,
                )
            token = str(payload.get("access_token") or "")
            if not token:
                raise AuthenticationError("token endpoint returned no access token", credential_rejected=True)
            self._cache[audience] = (token, now + float(payload.get("expires_in") or 3600))
            return token


class AzureTenantClient:
    """Microsoft Graph and Azure Resource Manager reads for one tenant and subscription."""

    def __init__(
        self,
        *,
        subscription_id: str,
        http: ProviderHttp,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._subscription_id = subscription_id
        self._http = http

    def _graph(self, path: str) -> str:
        return f"{self._settings.azure_graph_base_url}{path}"

    def _arm(self, path: str) -> str:
        return f"{self._settings.azure_management_base_url}/subscriptions/{self._subscription_id}{path}"

    async def aclose(self) -> None:
        await self._http.aclose()

    async def verify_credentials(self) -> bool:
        try:
            await self._http.get_json(
                self._graph("/users"),
                audience=GRAPH_AUDIENCE,
                params={"$top": 1, "$select": "id"},
            )
        except (AuthenticationError, PhaseFailure) as exc:
            logger.warning("azure_verify_failed subscription=%s error=%s", self._subscription_id, exc.describe())
            return False
        return True

    async def _auth_methods(self, user_id: str) -> list[str]:
        try:
            payload = await self._http.get_json(
                self._graph(f"/users/{user_id}/authentication/methods"),
                audience=GRAPH_AUDIENCE,
            )
        except AuthenticationError as exc:
            if exc.credential_rejected:
                raise
            return []
        except PhaseFailure:
            # Some account types (external, synced service principals) have no method registry.
            return []
        methods: list[str] = []
        for method in payload.get("value") or []:
            name = str(method.get("@odata.type") or "").replace("#microsoft.graph.", "")
            if name and name != _PASSWORD_METHOD:
                methods.append(name)
        return methods

    async def list_users(self) -> AsyncIterator[dict[str, Any]]:
        """Yield users enriched with registered non-password authentication methods."""
        batch_size = max(1, self._settings.azure_mfa_lookup_concurrency)
        batch: list[dict[str, Any]] = []

        async def _enrich(users: list[dict[str, Any]]) -> list[dict[str, Any]]:
            methods = await asyncio.gather(*(self._auth_methods(user["id"]) for user in users))
            return [{**user, "authMethods": found} for user, found in zip(users, methods)]

        async for user in self._http.paginate_links(
            self._graph("/users"),
            audience=GRAPH_AUDIENCE,
            params={"$select": _USER_FIELDS, "$top": 999},
        ):
            if not user.get("id"):
                continue
            batch.append(user)
            if len(batch) >= batch_size:
                for enriched in await _enrich(batch):
                    yield enriched
                batch = []
        if batch:
            for enriched in await _enrich(batch):
                yield enriched

    async def _member_count(self, group_id: str) -> int:
        try:
            text = await self._http.get_text(
                self._graph(f"/groups/{group_id}/members/$count"),
                audience=GRAPH_AUDIENCE,
                headers={"ConsistencyLevel": "eventual", "Accept": "text/plain"},
            )
        except PhaseFailure as exc:
            logger.warning("azure_group_count_skipped group=%s error=%s", group_id, exc)
            return 0
        try:
            return int(text.strip())
        except ValueError:
            return 0

    async def list_groups(self) -> AsyncIterator[dict[str, Any]]:
        async for group in self._http.paginate_links(
            self._graph("/groups"),
            audience=GRAPH_AUDIENCE,
            params={"$select": _GROUP_FIELDS, "$top": 999},
        ):
            if not group.get("id"):
                continue
            yield {**group, "memberCount": await self._member_count(group["id"])}

    def list_applications(self) -> AsyncIterator[dict[str, Any]]:
        return self._http.paginate_links(
            self._graph("/applications"),
            audience=GRAPH_AUDIENCE,
            params={"$select": _APP_FIELDS, "$top": 999},
        )

    def list_conditional_access_policies(self) -> AsyncIterator[dict[str, Any]]:
        return self._http.paginate_links(
            self._graph("/identity/conditionalAccess/policies"),
            audience=GRAPH_AUDIENCE,
        )

    def list_security_alerts(self) -> AsyncIterator[dict[str, Any]]:
        return self._http.paginate_links(
            self._graph("/security/alerts_v2"),
            audience=GRAPH_AUDIENCE,
        )

    async def _arm_items(self, path: str, api_version: str) -> AsyncIterator[dict[str, Any]]:
        async for item in self._http.paginate_links(
            self._arm(path),
            audience=MANAGEMENT_AUDIENCE,
            params={"api-version": api_version},
            link_key="nextLink",
        ):
            yield item

    async def _security_properties(self) -> dict[str, dict[str, Any]]:
        # Keyed by lower-cased resource id; ARM is inconsistent about id casing.
        found: dict[str, dict[str, Any]] = {}
        async for nsg in self._arm_items(f"/providers/{NSG_TYPE}", _NETWORK_API_VERSION):
            rules = (nsg.get("properties") or {}).get("securityRules") or []
            found[str(nsg.get("id", "")).lower()] = {
                "securityRules": [
                    {
                        "name": rule.get("name"),
                        "properties": {
                            key: (rule.get("properties") or {}).get(key)
                            for key in (
                                "direction",
                                "access",
                                "protocol",
                                "sourceAddressPrefix",
                                "destinationPortRange",
                                "priority",
                            )
                        },
                    }
                    for rule in rules
                ]
            }
        async for account in self._arm_items(f"/providers/{STORAGE_TYPE}", _STORAGE_API_VERSION):
            props = account.get("properties") or {}
            found[str(account.get("id", "")).lower()] = {
                "supportsHttpsTrafficOnly": props.get("supportsHttpsTrafficOnly"),
                "allowBlobPublicAccess": props.get("allowBlobPublicAccess"),
                "minimumTlsVersion": props.get("minimumTlsVersion"),
                "kind": account.get("kind"),
                "sku": (account.get("sku") or {}).get("name"),
            }
        return found

    async def list_resources(self) -> AsyncIterator[dict[str, Any]]:
        """Yield subscription resources with network and storage security properties merged in."""
        security = await self._security_properties()
        async for resource in self._arm_items("/resources", _RESOURCES_API_VERSION):
            if not resource.get("id"):
                continue
            merged = security.get(str(resource["id"]).lower())
            yield {**resource, "securityProperties": merged} if merged is not None else resource

    def list_assessments(self) -> AsyncIterator[dict[str, Any]]:
        return self._arm_items("/providers/Microsoft.Security/assessments", _SECURITY_API_VERSION)


def normalize_user(user: dict[str, Any]) -> dict[str, Any] | None:
    if not user.get("id"):
        return None
    methods = list(user.get("authMethods") or [])
    enabled = user.get("accountEnabled")
    return {
        "external_id": str(user["id"]),
        "primary_email": user.get("mail") or user.get("userPrincipalName") or "",
        "display_name": user.get("displayName") or "",
        "suspended": enabled is False,
        "account_type": str(user.get("userType") or "member").lower(),
        "mfa_enrolled": bool(methods),
        "mfa_methods": methods,
        "last_login_at": parse_timestamp((user.get("signInActivity") or {}).get("lastSignInDateTime")),
        "remote_created_at": parse_timestamp(user.get("createdDateTime")),
    }


def normalize_group(group: dict[str, Any]) -> dict[str, Any] | None:
    if not group.get("id"):
        return None
    return {
        "external_id": str(group["id"]),
        "email": group.get("mail") or None,
        "name": group.get("displayName") or "",
        "member_count": int(group.get("memberCount") or 0),
        "visibility": group.get("visibility") or None,
        "security_enabled": bool(group.get("securityEnabled")),
    }


def normalize_application(app: dict[str, Any]) -> dict[str, Any] | None:
    if not app.get("appId"):
        return None
    passwords = app.get("passwordCredentials") or []
    keys = app.get("keyCredentials") or []
    expiries = [
        parsed
        for parsed in (parse_timestamp(item.get("endDateTime")) for item in [*passwords, *keys])
        if parsed is not None
    ]
    permissions = [
        f"{resource.get('resourceAppId')}/{access.get('id')}"
        for resource in app.get("requiredResourceAccess") or []
        for access in resource.get("resourceAccess") or []
    ]
    return {
        "client_id": str(app["appId"]),
        "display_text": app.get("displayName") or "",
        "scopes": permissions,
        "sign_in_audience": app.get("signInAudience") or None,
        "password_credential_count": len(passwords),
        "key_credential_count": len(keys),
        # The earliest end date decides both the expired and the rotation-window checks.
        "credentials_expire_at": min(expiries) if expiries else None,
    }


def normalize_access_policy(policy: dict[str, Any]) -> dict[str, Any] | None:
    if not policy.get("id"):
        return None
    return {
        "external_id": str(policy["id"]),
        "display_name": policy.get("displayName") or "",
        "state": policy.get("state") or "disabled",
        "conditions": policy.get("conditions") or None,
        "grant_controls": policy.get("grantControls") or None,
        "session_controls": policy.get("sessionControls") or None,
        "remote_modified_at": parse_timestamp(policy.get("modifiedDateTime")),
    }


def _resource_group(resource_id: str) -> str | None:
    parts = resource_id.split("/")
    lowered = [part.lower() for part in parts]
    if "resourcegroups" in lowered:
        index = lowered.index("resourcegroups")
        if index + 1 < len(parts):
            return parts[index + 1]
    return None


def normalize_resource(resource: dict[str, Any]) -> dict[str, Any] | None:
    if not resource.get("id"):
        return None
    resource_id = str(resource["id"])
    return {
        "external_id": resource_id,
        "name": resource.get("name") or "",
        "resource_type": resource.get("type") or "",
        "location": resource.get("location") or None,
        "resource_group": _resource_group(resource_id),
        "provisioning_state": resource.get("provisioningState")
        or (resource.get("properties") or {}).get("provisioningState"),
        "tags": resource.get("tags") or None,
        "properties": resource.get("securityProperties"),
    }


def _severity(value: Any) -> str:
    text = str(value or "").lower()
    if text == "high":
        return "HIGH"
    if text == "medium":
        return "MEDIUM"
    return "LOW"


def normalize_alert(alert: dict[str, Any]) -> dict[str, Any] | None:
    if not alert.get("id"):
        return None
    return {
        "external_id": str(alert["id"]),
        "alert_type": alert.get("category") or "UNKNOWN",
        "title": alert.get("title") or None,
        "source": alert.get("serviceSource") or None,
        "severity": _severity(alert.get("severity")),
        "status": alert.get("status") or "new",
        "start_time": parse_timestamp(alert.get("createdDateTime")),
        "end_time": parse_timestamp(alert.get("resolvedDateTime")),
        "description": alert.get("description"),
    }


def normalize_assessment(assessment: dict[str, Any]) -> dict[str, Any] | None:
    assessment_id = assessment.get("name") or str(assessment.get("id") or "").split("/")[-1]
    if not assessment_id:
        return None
    props = assessment.get("properties") or {}
    status = props.get("status") or {}
    metadata = props.get("metadata") or {}
    categories = metadata.get("categories") or []
    details = props.get("resourceDetails") or {}
    return {
        "external_id": str(assessment_id),
        "display_name": props.get("displayName") or "",
        "severity": status.get("severity") or metadata.get("severity") or "Low",
        "status": status.get("code") or "NotApplicable",
        "resource_id": details.get("Id") or details.get("id") or None,
        "category": categories[0] if categories else None,
    }


class AzureTenantProvider:
    name = PROVIDER_AZURE

    def __init__(self, client: AzureTenantClient) -> None:
        self._client = client

    def phases(self) -> list[PhaseSpec]:
        client = self._client
        return [
            PhaseSpec("accounts", client.list_users, normalize_user),
            PhaseSpec("groups", client.list_groups, normalize_group),
            PhaseSpec("oauth_grants", client.list_applications, normalize_application),
            PhaseSpec("access_policies", client.list_conditional_access_policies, normalize_access_policy),
            PhaseSpec("resources", client.list_resources, normalize_resource),
            PhaseSpec("alerts", client.list_security_alerts, normalize_alert),
            PhaseSpec("assessments", client.list_assessments, normalize_assessment),
        ]

    async def verify_credentials(self) -> bool:
        return await self._client.verify_credentials()

    async def aclose(self) -> None:
        await self._client.aclose()


def build_azure_provider(
    credentials: AzureAppCredentials,
    *,
    client: httpx.AsyncClient | None = None,
    token_source: TokenSource | None = None,
    settings: Settings | None = None,
) -> AzureTenantProvider:
    settings = settings or get_settings()
    owns_client = client is None
    http_client = client or httpx.AsyncClient(timeout=settings.provider_call_timeout_ms / 1000.0)
    tokens = token_source or ClientCredentialsTokenSource(credentials, client=http_client, settings=settings)
    http = ProviderHttp(
        integration=PROVIDER_AZURE,
        token_source=tokens,
        client=http_client,
        owns_client=owns_client,
    )
    tenant = AzureTenantClient(subscription_id=credentials.subscription_id, http=http, settings=settings)
    return AzureTenantProvider(tenant)
