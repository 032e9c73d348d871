from __future__ import annotations

import csv
import io
import json
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.errors import ConfigurationError
from postureguard.domain.alerts import flatten_description
from postureguard.domain.categories import CATEGORY_TABLES, get_category
from postureguard.domain.records import ensure_utc
from postureguard.persistence.repos import snapshots as snapshots_repo
from postureguard.services.scans.status import get_latest_compliance


COMPLIANCE_EXPORT = "compliance"
EXPORT_KINDS = (*CATEGORY_TABLES, COMPLIANCE_EXPORT)
COMPLIANCE_COLUMNS = ("category", "check_id", "title", "status", "details", "description")
# Bookkeeping columns that mean nothing outside this service.
_HIDDEN_COLUMNS = {"id", "organization_id", "last_seen_scan_id"}


def _cell(column: str, value: Any) -> str:
    if value is None:
        return ""
    if column == "description" and not isinstance(value, str):
        return flatten_description(value)
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return "; ".join(str(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)


def render_csv(columns: Iterable[str], rows: Iterable[dict[str, Any]]) -> str:
    columns = list(columns)
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(columns)
    for row in rows:
        writer.writerow([_cell(column, row.get(column)) for column in columns])
    return buffer.getvalue()


def export_columns(category: str) -> list[str]:
    model = get_category(category).model
    return [column.name for column in model.__table__.columns if column.name not in _HIDDEN_COLUMNS]


async def export_csv(
    session: AsyncSession,
    organization_id: str,
    provider: str,
    kind: str,
) -> tuple[str, str]:
    """Return (filename, csv text) for a mirror collection or the latest compliance set."""
    if kind == COMPLIANCE_EXPORT:
        latest = await get_latest_compliance(session, organization_id, provider)
        rows = [] if latest is None else [check for group in latest["categories"] for check in group["checks"]]
        return f"{provider}-compliance.csv", render_csv(COMPLIANCE_COLUMNS, rows)

    if kind not in CATEGORY_TABLES:
        raise ConfigurationError(f"Unknown export: {kind}")
    columns = export_columns(kind)
    records = await snapshots_repo.list_rows(session, kind, organization_id, provider)
    rows = [{column: getattr(record, column) for column in columns} for record in records]
    return f"{provider}-{kind}.csv", render_csv(columns, rows)
