from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from redis.asyncio import Redis
from sqlalchemy import func, select, text

from postureguard.core.config import get_settings
from postureguard.domain.models import SCAN_STATUS_RUNNING, ProviderConfig, ScanRun
from postureguard.persistence.db import SessionLocal


async def _check_database() -> bool:
    try:
        async with SessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except Exception:  # noqa: BLE001 - reported as a failed check
        return False
    return True


async def _check_redis() -> bool:
    # Inline mode never touches the queue.
    settings = get_settings()
    if settings.scan_execution_mode.lower() == "inline":
        return True
    client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    try:
        return bool(await client.ping())
    except Exception:  # noqa: BLE001 - reported as a failed check
        return False
    finally:
        await client.aclose()


async def _scan_state() -> dict[str, int]:
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=get_settings().scan_timeout_minutes)
    async with SessionLocal() as session:
        enabled = (
            await session.execute(
                select(func.count()).select_from(ProviderConfig).where(ProviderConfig.is_enabled.is_(True))
            )
        ).scalar_one()
        overdue = (
            await session.execute(
                select(func.count())
                .select_from(ScanRun)
                .where(ScanRun.status == SCAN_STATUS_RUNNING, ScanRun.started_at < cutoff)
            )
        ).scalar_one()
    return {"enabled_providers": int(enabled), "overdue_running_scans": int(overdue)}


async def run_preflight(*, output_json: str | None) -> int:
    results: list[dict[str, Any]] = []

    database_ok = await _check_database()
    results.append({"check": "database_reachable", "status": "pass" if database_ok else "fail", "detail": {}})

    redis_ok = await _check_redis()
    results.append({"check": "redis_reachable", "status": "pass" if redis_ok else "fail", "detail": {}})

    if database_ok:
        state = await _scan_state()
        results.append(
            {
                "check": "provider_configured",
                "status": "pass" if state["enabled_providers"] else "warn",
                "detail": {"enabled": state["enabled_providers"]},
            }
        )
        # The watchdog clears these on the next tick; many at once means no worker is running it.
        results.append(
            {
                "check": "no_overdue_scans",
                "status": "pass" if not state["overdue_running_scans"] else "warn",
                "detail": {"overdue": state["overdue_running_scans"]},
            }
        )

    failed = [row for row in results if row["status"] == "fail"]
    summary = {"status": "pass" if not failed else "fail", "checks": results}
    if output_json:
        output_path = Path(output_json)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0 if not failed else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Check database, queue and scan health before rollout.")
    parser.add_argument("--output-json", default=None)
    args = parser.parse_args()
    return asyncio.run(run_preflight(output_json=args.output_json))


if __name__ == "__main__":
    sys.exit(main())
