from __future__ import annotations

import json
import logging
import re
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.config import SUPPORTED_PROVIDERS, get_settings
from postureguard.core.errors import AuthenticationError, ConfigurationError
from postureguard.domain.models import ProviderConfig
from postureguard.persistence.repos import provider_configs as provider_configs_repo
from postureguard.providers.directory.factory import build_provider


logger = logging.getLogger(__name__)

# Characters that creep in when credentials are pasted from documents or chat tools.
_DOUBLE_QUOTES = re.compile("[\u201c-\u201f]")
_SINGLE_QUOTES = re.compile("[\u2018-\u201b]")
_ZERO_WIDTH = re.compile("[\u200b-\u200d\ufeff]")


def sanitize_credentials_text(raw: str) -> str:
    text = raw.lstrip("\ufeff")
    text = _DOUBLE_QUOTES.sub('"', text)
    text = _SINGLE_QUOTES.sub("'", text)
    text = text.replace("\u00a0", " ")
    text = _ZERO_WIDTH.sub("", text)
    return text.strip()


def parse_credentials(raw: str | dict[str, Any]) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    text = sanitize_credentials_text(raw or "")
    if not text:
        raise ConfigurationError("Credentials are empty")
    try:
        parsed = json.loads(text)
    except ValueError as exc:
        raise ConfigurationError(f"Credentials are not valid JSON: {exc.msg}") from exc
    if not isinstance(parsed, dict):
        raise ConfigurationError("Credentials must be a JSON object")
    return parsed


async def configure_provider(
    session: AsyncSession,
    *,
    organization_id: str,
    provider: str,
    credentials: str | dict[str, Any],
    admin_email: str | None = None,
    domain: str | None = None,
    is_enabled: bool = True,
    scan_interval_hours: int | None = None,
    actor: str | None = None,
) -> ProviderConfig:
    """Validate, verify and store credentials for one organization's provider.

    Nothing is persisted unless the provider accepts the credentials. The
    caller commits.
    """
    if provider not in SUPPORTED_PROVIDERS:
        raise ConfigurationError(f"Unsupported directory provider: {provider}")
    parsed = parse_credentials(credentials)
    admin_email = (admin_email or "").strip() or None
    domain = (domain or "").strip() or None

    directory = build_provider(provider, parsed, admin_email=admin_email, domain=domain)
    try:
        verified = await directory.verify_credentials()
    finally:
        await directory.aclose()
    if not verified:
        logger.warning("provider_credentials_rejected org=%s provider=%s", organization_id, provider)
        raise AuthenticationError(
            f"{provider} rejected the supplied credentials",
            credential_rejected=True,
        )

    config = await provider_configs_repo.upsert_config(
        session,
        organization_id=organization_id,
        provider=provider,
        credentials_json=json.dumps(parsed, sort_keys=True),
        admin_email=admin_email,
        domain=domain,
        is_enabled=is_enabled,
        scan_interval_hours=scan_interval_hours or get_settings().scan_default_interval_hours,
        updated_by=actor,
    )
    logger.info("provider_configured org=%s provider=%s actor=%s", organization_id, provider, actor)
    return config


def config_to_dict(config: ProviderConfig) -> dict[str, Any]:
    # Secrets never leave the service.
    return {
        "provider": config.provider,
        "admin_email": config.admin_email,
        "domain": config.domain,
        "is_enabled": config.is_enabled,
        "scan_interval_hours": config.scan_interval_hours,
        "updated_by": config.updated_by,
    }
