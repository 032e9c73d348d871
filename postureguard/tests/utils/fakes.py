from __future__ import annotations

from functools import partial
from typing import Any, AsyncIterator

import httpx

from postureguard.providers.directory.base import PhaseSpec


GOOGLE_PHASES = (
    "accounts",
    "groups",
    "oauth_grants",
    "devices",
    "alerts",
    "org_units",
    "admin_roles",
    "role_assignments",
)
AZURE_PHASES = (
    "accounts",
    "groups",
    "oauth_grants",
    "access_policies",
    "resources",
    "alerts",
    "assessments",
)


class StaticTokenSource:
    def __init__(self, token: str = "test-token", *, errors: dict[str, Exception] | None = None) -> None:
        self.token = token
        self.errors = dict(errors or {})
        self.audiences: list[str] = []

    async def get_token(self, audience: str) -> str:
        self.audiences.append(audience)
        if audience in self.errors:
            raise self.errors[audience]
        return self.token


class FakeDirectoryProvider:
    """In-memory provider serving already-normalized rows per category.

    A failure registered for a category is raised after that category's rows
    have been yielded, like a provider failing on a later page.
    """

    def __init__(
        self,
        name: str,
        data: dict[str, list[dict[str, Any]]] | None = None,
        *,
        failures: dict[str, Exception] | None = None,
        verified: bool = True,
        phase_order: tuple[str, ...] | None = None,
    ) -> None:
        self.name = name
        self.data = dict(data or {})
        self.failures = dict(failures or {})
        self.verified = verified
        self.phase_order = phase_order or (GOOGLE_PHASES if name == "google_workspace" else AZURE_PHASES)
        self.closed = 0

    async def _fetch(self, category: str) -> AsyncIterator[dict[str, Any]]:
        for row in self.data.get(category, []):
            yield row
        if category in self.failures:
            raise self.failures[category]

    def phases(self) -> list[PhaseSpec]:
        return [PhaseSpec(category, partial(self._fetch, category), dict) for category in self.phase_order]

    async def verify_credentials(self) -> bool:
        return self.verified

    async def aclose(self) -> None:
        self.closed += 1


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def workspace_accounts(*, total: int, active: int, enrolled: int, admins: int = 0) -> list[dict[str, Any]]:
    """Normalized accounts: the first `active` are active, the first `enrolled` of those have 2SV."""
    rows = []
    for index in range(total):
        is_active = index < active
        rows.append(
            {
                "external_id": f"u{index:03d}",
                "primary_email": f"user{index:03d}@example.com",
                "display_name": f"User {index:03d}",
                "is_admin": index < admins,
                "suspended": not is_active,
                "mfa_enrolled": is_active and index < enrolled,
                "mfa_enforced": is_active and index < enrolled,
                "org_unit_path": "/",
            }
        )
    return rows
