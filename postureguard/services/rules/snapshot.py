from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.errors import SnapshotUnavailable
from postureguard.domain.categories import get_category
from postureguard.domain.models import ScanRun
from postureguard.domain.records import ensure_utc, to_record
from postureguard.persistence.repos import snapshots as snapshots_repo


class Snapshot:
    """Immutable view of one organization's mirror as of a scan run.

    Loaded once after the last phase. Categories whose phase failed in the
    run raise SnapshotUnavailable on access instead of silently reading
    stale or empty rows.
    """

    def __init__(
        self,
        *,
        organization_id: str,
        provider: str,
        as_of: datetime,
        categories: dict[str, tuple[Any, ...]],
        failures: dict[str, str] | None = None,
    ) -> None:
        self.organization_id = organization_id
        self.provider = provider
        self.as_of = as_of
        self._categories = dict(categories)
        self._failures = dict(failures or {})

    def rows(self, category: str) -> tuple[Any, ...]:
        if category in self._failures:
            raise SnapshotUnavailable(f"{category} sync failed: {self._failures[category]}")
        if category not in self._categories:
            raise SnapshotUnavailable(f"{category} is not collected for {self.provider}")
        return self._categories[category]

    @property
    def accounts(self) -> tuple[Any, ...]:
        return self.rows("accounts")

    @property
    def groups(self) -> tuple[Any, ...]:
        return self.rows("groups")

    @property
    def oauth_grants(self) -> tuple[Any, ...]:
        return self.rows("oauth_grants")

    @property
    def devices(self) -> tuple[Any, ...]:
        return self.rows("devices")

    @property
    def alerts(self) -> tuple[Any, ...]:
        return self.rows("alerts")

    @property
    def org_units(self) -> tuple[Any, ...]:
        return self.rows("org_units")

    @property
    def admin_roles(self) -> tuple[Any, ...]:
        return self.rows("admin_roles")

    @property
    def role_assignments(self) -> tuple[Any, ...]:
        return self.rows("role_assignments")

    @property
    def access_policies(self) -> tuple[Any, ...]:
        return self.rows("access_policies")

    @property
    def resources(self) -> tuple[Any, ...]:
        return self.rows("resources")

    @property
    def assessments(self) -> tuple[Any, ...]:
        return self.rows("assessments")


async def load_snapshot(session: AsyncSession, run: ScanRun, categories: Iterable[str]) -> Snapshot:
    failures = {
        name: result["error"]
        for name, result in (run.phase_results or {}).items()
        if isinstance(result, dict) and result.get("error")
    }
    loaded: dict[str, tuple[Any, ...]] = {}
    for name in categories:
        table = get_category(name)
        rows = await snapshots_repo.list_rows(session, name, run.organization_id, run.provider)
        # Rows flagged stale by an opt-in sweep are gone from the provider.
        loaded[name] = tuple(to_record(table.record, row) for row in rows if not row.stale)
    return Snapshot(
        organization_id=run.organization_id,
        provider=run.provider,
        as_of=ensure_utc(run.started_at),
        categories=loaded,
        failures=failures,
    )
