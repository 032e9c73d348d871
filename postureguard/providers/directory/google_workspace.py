from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Callable

import httpx
import jwt
from pydantic import BaseModel, ConfigDict

from postureguard.core.config import PROVIDER_GOOGLE_WORKSPACE, Settings, get_settings
from postureguard.core.errors import (
    AuthenticationError,
    ConfigurationError,
    PhaseFailure,
)
from postureguard.providers.directory.base import PhaseSpec, TokenSource, parse_timestamp
from postureguard.providers.directory.http import ProviderHttp, post_token_request
from postureguard.providers.directory.risk import oauth_risk_level


logger = logging.getLogger(__name__)

CORE_AUDIENCE = "core"
EXTENDED_AUDIENCE = "extended"

# Delegated scopes for the core phases.
CORE_SCOPES = (
    "https://www.googleapis.com/auth/admin.directory.user.readonly",
    "https://www.googleapis.com/auth/admin.directory.group.readonly",
    "https://www.googleapis.com/auth/admin.directory.device.mobile.readonly",
    "https://www.googleapis.com/auth/admin.directory.user.security",
    "https://www.googleapis.com/auth/apps.alerts",
    "https://www.googleapis.com/auth/apps.groups.settings",
)
# Org units and roles use a separate token so a missing delegation only degrades those phases.
EXTENDED_SCOPES = (
    "https://www.googleapis.com/auth/admin.directory.user.readonly",
    "https://www.googleapis.com/auth/admin.directory.orgunit.readonly",
    "https://www.googleapis.com/auth/admin.directory.rolemanagement.readonly",
)

_JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
# Token endpoint errors that mean the delegation lacks scopes, not that the key is bad.
_SCOPE_ERRORS = {"unauthorized_client", "access_denied"}

ROOT_ORG_UNIT_ID = "root_org_unit"
ROOT_ORG_UNIT_NAME = "Root (Company)"


class GoogleServiceAccountKey(BaseModel):
    model_config = ConfigDict(extra="allow")

    client_email: str
    private_key: str
    private_key_id: str | None = None


class ServiceAccountTokenSource:
    """Mint delegated access tokens from a service-account key.

    A signed RS256 assertion naming the impersonated admin is exchanged at the
    token endpoint; tokens are cached per audience until shortly before expiry.
    """

    def __init__(
        self,
        key: GoogleServiceAccountKey,
        *,
        subject: str,
        token_uri: str,
        client: httpx.AsyncClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._key = key
        self._subject = subject
        self._token_uri = token_uri
        self._client = client
        self._clock = clock
        self._cache: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _scopes(self, audience: str) -> tuple[str, ...]:
        return EXTENDED_SCOPES if audience == EXTENDED_AUDIENCE else CORE_SCOPES

    def _assertion(self, audience: str, issued_at: int) -> str:
        headers = {"kid": self._key.private_key_id} if self._key.private_key_id else None
        claims = {
            "iss": self._key.client_email,
            "sub": self._subject,
            "scope": " ".join(self._scopes(audience)),
            "aud": self._token_uri,
            "iat": issued_at,
            "exp": issued_at + 3600,
        }
        try:
            return jwt.encode(claims, self._key.private_key, algorithm="RS256", headers=headers)
        except (ValueError, TypeError, jwt.PyJWTError) as exc:
            raise AuthenticationError(
                "service account private key could not be used for signing",
                credential_rejected=True,
            ) from exc

    async def get_token(self, audience: str) -> str:
        async with self._lock:
            cached = self._cache.get(audience)
            if cached is not None and cached[1] - 60 > self._clock():
                return cached[0]
            issued_at = int(self._clock())
            response, payload = await post_token_request(
                self._client,
                self._token_uri,
                data={"grant_type": _JWT_BEARER_GRANT, "assertion": self._assertion(audience, issued_at)},
                integration=PROVIDER_GOOGLE_WORKSPACE,
            )
            if response.status_code >= 400:
                raise self._token_error(response, audience)
            token = str(payload.get("access_token") or "")
            if not token:
                raise AuthenticationError("token endpoint returned no access token", credential_rejected=True)
            self._cache[audience] = (token, issued_at + float(payload.get("expires_in") or 3600))
            return token

    def _token_error(self, response: httpx.Response, audience: str) -> AuthenticationError:
        try:
            error = str(response.json().get("error") or "")
        except ValueError:
            error = ""
        if error in _SCOPE_ERRORS:
            return AuthenticationError(
                f"insufficient scope: domain-wide delegation missing for {audience} scopes",
                status_code=response.status_code,
            )
        return AuthenticationError(
            f"token exchange rejected: {error or response.status_code}",
            status_code=response.status_code,
            credential_rejected=True,
        )


class GoogleWorkspaceClient:
    """Admin SDK, Groups Settings and Alert Center reads for one Workspace tenant."""

    def __init__(
        self,
        *,
        domain: str,
        http: ProviderHttp,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._domain = domain
        self._http = http
        self._customer_id: str | None = None

    def _dir(self, path: str) -> str:
        return f"{self._settings.google_directory_base_url}{path}"

    async def aclose(self) -> None:
        await self._http.aclose()

    async def verify_credentials(self) -> bool:
        try:
            await self._http.get_json(
                self._dir("/users"),
                audience=CORE_AUDIENCE,
                params={"domain": self._domain, "maxResults": 1},
            )
        except (AuthenticationError, PhaseFailure) as exc:
            logger.warning("google_workspace_verify_failed domain=%s error=%s", self._domain, exc.describe())
            return False
        return True

    async def customer_id(self) -> str:
        if self._customer_id is not None:
            return self._customer_id
        payload = await self._http.get_json(
            self._dir("/users"),
            audience=CORE_AUDIENCE,
            params={"domain": self._domain, "maxResults": 1},
        )
        users = payload.get("users") or []
        self._customer_id = (users[0].get("customerId") if users else None) or "my_customer"
        return self._customer_id

    def list_users(self) -> AsyncIterator[dict[str, Any]]:
        return self._http.paginate_tokens(
            self._dir("/users"),
            audience=CORE_AUDIENCE,
            items_key="users",
            params={"domain": self._domain, "maxResults": 500, "projection": "full"},
        )

    async def _member_count(self, group_key: str) -> int:
        count = 0
        try:
            async for _ in self._http.paginate_tokens(
                self._dir(f"/groups/{group_key}/members"),
                audience=CORE_AUDIENCE,
                items_key="members",
                params={"maxResults": 200},
            ):
                count += 1
        except PhaseFailure as exc:
            # Groups deleted between the listing and this call.
            logger.warning("google_group_members_skipped group=%s error=%s", group_key, exc)
        return count

    async def _group_settings(self, group_email: str) -> dict[str, Any]:
        try:
            return await self._http.get_json(
                f"{self._settings.google_groups_settings_base_url}/groups/{group_email}",
                audience=CORE_AUDIENCE,
                params={"alt": "json"},
            )
        except PhaseFailure as exc:
            logger.warning("google_group_settings_skipped group=%s error=%s", group_email, exc)
            return {}

    async def list_groups(self) -> AsyncIterator[dict[str, Any]]:
        async for group in self._http.paginate_tokens(
            self._dir("/groups"),
            audience=CORE_AUDIENCE,
            items_key="groups",
            params={"domain": self._domain, "maxResults": 200},
        ):
            member_count = await self._member_count(group.get("id") or group.get("email") or "")
            settings = await self._group_settings(group["email"]) if group.get("email") else {}
            yield {**group, "memberCount": member_count, "settings": settings}

    async def _user_tokens(self, user_key: str) -> list[dict[str, Any]]:
        try:
            payload = await self._http.get_json(self._dir(f"/users/{user_key}/tokens"), audience=CORE_AUDIENCE)
        except AuthenticationError as exc:
            if exc.credential_rejected:
                raise
            # Some accounts (service accounts, other admins) deny token listing.
            return []
        except PhaseFailure:
            return []
        return list(payload.get("items") or [])

    async def list_oauth_grants(self) -> AsyncIterator[dict[str, Any]]:
        """Aggregate per-user OAuth tokens into one record per client id."""
        batch_size = max(1, self._settings.google_token_lookup_concurrency)
        apps: dict[str, dict[str, Any]] = {}
        batch: list[str] = []

        async def _drain(keys: list[str]) -> None:
            results = await asyncio.gather(*(self._user_tokens(key) for key in keys))
            for tokens in results:
                for token in tokens:
                    client_id = token.get("clientId") or "unknown"
                    app = apps.setdefault(
                        client_id,
                        {
                            "clientId": client_id,
                            "displayText": token.get("displayText") or "Unknown App",
                            "anonymous": bool(token.get("anonymous")),
                            "scopes": set(),
                            "userCount": 0,
                        },
                    )
                    app["userCount"] += 1
                    app["scopes"].update(token.get("scopes") or [])

        async for user in self.list_users():
            key = user.get("primaryEmail") or user.get("id")
            if not key:
                continue
            batch.append(key)
            if len(batch) >= batch_size:
                await _drain(batch)
                batch = []
        if batch:
            await _drain(batch)
        for client_id in sorted(apps):
            app = apps[client_id]
            yield {**app, "scopes": sorted(app["scopes"])}

    async def list_mobile_devices(self) -> AsyncIterator[dict[str, Any]]:
        customer_id = await self.customer_id()
        async for device in self._http.paginate_tokens(
            self._dir(f"/customer/{customer_id}/devices/mobile"),
            audience=CORE_AUDIENCE,
            items_key="mobiledevices",
            params={"maxResults": 100},
        ):
            yield device

    def list_alerts(self) -> AsyncIterator[dict[str, Any]]:
        return self._http.paginate_tokens(
            f"{self._settings.google_alert_center_base_url}/alerts",
            audience=CORE_AUDIENCE,
            items_key="alerts",
            params={"pageSize": 100},
        )

    async def list_org_units(self) -> AsyncIterator[dict[str, Any]]:
        customer_id = await self.customer_id()
        saw_root = False
        async for unit in self._http.paginate_tokens(
            self._dir(f"/customer/{customer_id}/orgunits"),
            audience=EXTENDED_AUDIENCE,
            items_key="organizationUnits",
            params={"type": "all"},
        ):
            saw_root = saw_root or unit.get("orgUnitPath") == "/"
            yield unit
        # The Admin API never lists the root unit itself.
        if not saw_root:
            yield {"orgUnitId": ROOT_ORG_UNIT_ID, "name": ROOT_ORG_UNIT_NAME, "orgUnitPath": "/"}

    async def list_admin_roles(self) -> AsyncIterator[dict[str, Any]]:
        customer_id = await self.customer_id()
        async for role in self._http.paginate_tokens(
            self._dir(f"/customer/{customer_id}/roles"),
            audience=EXTENDED_AUDIENCE,
            items_key="items",
        ):
            yield role

    async def list_role_assignments(self) -> AsyncIterator[dict[str, Any]]:
        customer_id = await self.customer_id()
        async for assignment in self._http.paginate_tokens(
            self._dir(f"/customer/{customer_id}/roleassignments"),
            audience=EXTENDED_AUDIENCE,
            items_key="items",
            params={"maxResults": 200},
        ):
            yield assignment


def _full_name(user: dict[str, Any]) -> str:
    name = user.get("name") or {}
    full = name.get("fullName")
    if full:
        return full
    return f"{name.get('givenName') or ''} {name.get('familyName') or ''}".strip()


def normalize_user(user: dict[str, Any]) -> dict[str, Any] | None:
    if not user.get("id"):
        return None
    enforced = bool(user.get("isEnforcedIn2Sv"))
    return {
        "external_id": str(user["id"]),
        "primary_email": user.get("primaryEmail") or "",
        "display_name": _full_name(user),
        "is_admin": bool(user.get("isAdmin")),
        "is_delegated_admin": bool(user.get("isDelegatedAdmin")),
        "suspended": bool(user.get("suspended")),
        "archived": bool(user.get("archived")),
        "account_type": "member",
        "mfa_enrolled": bool(user.get("isEnrolledIn2Sv")),
        "mfa_enforced": enforced,
        "mfa_methods": ["2sv"] if user.get("isEnrolledIn2Sv") else [],
        "change_password_at_next_login": bool(user.get("changePasswordAtNextLogin")),
        "last_login_at": parse_timestamp(user.get("lastLoginTime")),
        "remote_created_at": parse_timestamp(user.get("creationTime")),
        "org_unit_path": user.get("orgUnitPath") or None,
    }


def normalize_group(group: dict[str, Any]) -> dict[str, Any] | None:
    if not group.get("id"):
        return None
    settings = group.get("settings") or {}
    return {
        "external_id": str(group["id"]),
        "email": group.get("email") or None,
        "name": group.get("name") or "",
        "member_count": int(group.get("memberCount") or 0),
        # Groups Settings returns booleans as the strings "true"/"false".
        "allow_external_members": str(settings.get("allowExternalMembers")).lower() == "true",
        "who_can_join": settings.get("whoCanJoin") or None,
        "who_can_post": settings.get("whoCanPostMessage") or None,
        "visibility": settings.get("whoCanViewGroup") or None,
        "security_enabled": False,
    }


def normalize_oauth_app(app: dict[str, Any]) -> dict[str, Any] | None:
    scopes = list(app.get("scopes") or [])
    return {
        "client_id": str(app.get("clientId") or "unknown"),
        "display_text": app.get("displayText") or "Unknown App",
        "scopes": scopes,
        "user_count": int(app.get("userCount") or 0),
        "anonymous": bool(app.get("anonymous")),
        "risk_level": oauth_risk_level(scopes),
    }


def normalize_device(device: dict[str, Any]) -> dict[str, Any] | None:
    device_id = device.get("resourceId") or device.get("deviceId")
    if not device_id:
        return None
    owners = device.get("email") or []
    return {
        "external_id": str(device_id),
        "device_type": device.get("type") or "UNKNOWN",
        "model": device.get("model") or None,
        "os": device.get("os") or None,
        "approval_status": device.get("status") or None,
        "compromised_status": device.get("deviceCompromisedStatus") or None,
        "encryption_status": device.get("encryptionStatus") or None,
        "last_sync_at": parse_timestamp(device.get("lastSync")),
        "owner_email": owners[0] if owners else None,
    }


def normalize_alert(alert: dict[str, Any]) -> dict[str, Any] | None:
    if not alert.get("alertId"):
        return None
    metadata = alert.get("metadata") or {}
    return {
        "external_id": str(alert["alertId"]),
        "alert_type": alert.get("type") or "UNKNOWN",
        "title": alert.get("type") or None,
        "source": alert.get("source") or None,
        "severity": str(metadata.get("severity") or "MEDIUM").upper(),
        "status": str(metadata.get("status") or "ACTIVE").upper(),
        "start_time": parse_timestamp(alert.get("startTime")),
        "end_time": parse_timestamp(alert.get("endTime")),
        "description": alert.get("data"),
    }


def normalize_org_unit(unit: dict[str, Any]) -> dict[str, Any] | None:
    path = unit.get("orgUnitPath") or "/"
    return {
        "path": path,
        "external_id": unit.get("orgUnitId") or None,
        "name": unit.get("name") or "",
        "description": unit.get("description") or None,
        "parent_path": unit.get("parentOrgUnitPath") or None,
        "block_inheritance": bool(unit.get("blockInheritance")),
    }


def normalize_admin_role(role: dict[str, Any]) -> dict[str, Any] | None:
    if role.get("roleId") is None:
        return None
    return {
        "external_id": str(role["roleId"]),
        "name": role.get("roleName") or "",
        "description": role.get("roleDescription") or None,
        "is_super_admin": bool(role.get("isSuperAdminRole")),
        "is_system_role": bool(role.get("isSystemRole")),
        "privileges": [item.get("privilegeName") for item in role.get("rolePrivileges") or [] if item.get("privilegeName")],
    }


def normalize_role_assignment(assignment: dict[str, Any]) -> dict[str, Any] | None:
    if assignment.get("roleAssignmentId") is None:
        return None
    return {
        "external_id": str(assignment["roleAssignmentId"]),
        "role_external_id": str(assignment.get("roleId") or ""),
        "assignee_id": str(assignment.get("assignedTo") or ""),
        "scope_type": assignment.get("scopeType") or "CUSTOMER",
        "org_unit_id": assignment.get("orgUnitId") or None,
    }


class GoogleWorkspaceProvider:
    name = PROVIDER_GOOGLE_WORKSPACE

    def __init__(self, client: GoogleWorkspaceClient) -> None:
        self._client = client

    def phases(self) -> list[PhaseSpec]:
        client = self._client
        return [
            PhaseSpec("accounts", client.list_users, normalize_user),
            PhaseSpec("groups", client.list_groups, normalize_group),
            PhaseSpec("oauth_grants", client.list_oauth_grants, normalize_oauth_app),
            PhaseSpec("devices", client.list_mobile_devices, normalize_device),
            PhaseSpec("alerts", client.list_alerts, normalize_alert),
            PhaseSpec("org_units", client.list_org_units, normalize_org_unit),
            PhaseSpec("admin_roles", client.list_admin_roles, normalize_admin_role),
            PhaseSpec("role_assignments", client.list_role_assignments, normalize_role_assignment),
        ]

    async def verify_credentials(self) -> bool:
        return await self._client.verify_credentials()

    async def aclose(self) -> None:
        await self._client.aclose()


def build_google_workspace_provider(
    key: GoogleServiceAccountKey,
    *,
    admin_email: str,
    domain: str | None = None,
    client: httpx.AsyncClient | None = None,
    token_source: TokenSource | None = None,
    settings: Settings | None = None,
) -> GoogleWorkspaceProvider:
    settings = settings or get_settings()
    if not admin_email:
        raise ConfigurationError("admin email is required for domain-wide delegation")
    owns_client = client is None
    http_client = client or httpx.AsyncClient(timeout=settings.provider_call_timeout_ms / 1000.0)
    tokens = token_source or ServiceAccountTokenSource(
        key,
        subject=admin_email,
        token_uri=settings.google_token_uri,
        client=http_client,
    )
    http = ProviderHttp(
        integration=PROVIDER_GOOGLE_WORKSPACE,
        token_source=tokens,
        client=http_client,
        owns_client=owns_client,
    )
    workspace = GoogleWorkspaceClient(
        domain=domain or admin_email.split("@")[-1],
        http=http,
        settings=settings,
    )
    return GoogleWorkspaceProvider(workspace)
