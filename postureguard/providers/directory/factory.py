from __future__ import annotations

import json

import httpx
from pydantic import ValidationError

from postureguard.core.config import PROVIDER_AZURE, PROVIDER_GOOGLE_WORKSPACE
from postureguard.core.errors import ConfigurationError
from postureguard.domain.models import ProviderConfig
from postureguard.providers.directory.azure_tenant import AzureAppCredentials, build_azure_provider
from postureguard.providers.directory.base import DirectoryProvider, TokenSource
from postureguard.providers.directory.google_workspace import (
    GoogleServiceAccountKey,
    build_google_workspace_provider,
)


def build_provider(
    provider: str,
    credentials: dict,
    *,
    admin_email: str | None = None,
    domain: str | None = None,
    client: httpx.AsyncClient | None = None,
    token_source: TokenSource | None = None,
) -> DirectoryProvider:
    try:
        if provider == PROVIDER_GOOGLE_WORKSPACE:
            return build_google_workspace_provider(
                GoogleServiceAccountKey.model_validate(credentials),
                admin_email=admin_email or "",
                domain=domain,
                client=client,
                token_source=token_source,
            )
        if provider == PROVIDER_AZURE:
            return build_azure_provider(
                AzureAppCredentials.model_validate(credentials),
                client=client,
                token_source=token_source,
            )
    except ValidationError as exc:
        missing = ", ".join(str(error["loc"][0]) for error in exc.errors() if error.get("loc"))
        raise ConfigurationError(f"{provider} credentials are incomplete: {missing}") from exc
    raise ConfigurationError(f"Unsupported directory provider: {provider}")


def get_provider(config: ProviderConfig) -> DirectoryProvider:
    # Stored credentials were sanitized and validated when configured.
    try:
        credentials = json.loads(config.credentials_json)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{config.provider} stored credentials are not valid JSON") from exc
    return build_provider(
        config.provider,
        credentials,
        admin_email=config.admin_email,
        domain=config.domain,
    )
