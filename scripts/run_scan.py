from __future__ import annotations

import argparse
import asyncio
import sys

from postureguard.core.config import get_settings
from postureguard.core.logging import configure_logging
from postureguard.persistence.db import SessionLocal, create_schema
from postureguard.services.scans import get_scan_status, trigger_scan, wait_for_inline_scans


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Trigger a directory posture scan")
    parser.add_argument("--org", required=True, help="Organization id")
    parser.add_argument("--provider", default=None, help="google_workspace or azure (default: the only enabled one)")
    parser.add_argument("--actor", default="cli", help="Actor recorded as triggered_by")
    parser.add_argument(
        "--wait",
        action="store_true",
        help="Run the scan in this process and wait for it to finish",
    )
    parser.add_argument("--init-schema", action="store_true", help="Create tables before scanning (dev only)")
    return parser


async def _run(args: argparse.Namespace) -> int:
    if args.init_schema:
        await create_schema()
    if args.wait:
        # Inline mode keeps the scan in this event loop instead of the arq queue.
        get_settings().scan_execution_mode = "inline"
    run = await trigger_scan(args.org, args.actor, args.provider)
    print(f"Started scan {run.id} provider={run.provider}")
    if not args.wait:
        return 0
    await wait_for_inline_scans()
    async with SessionLocal() as session:
        status = await get_scan_status(session, args.org, run.provider)
    if status is None:
        return 1
    print(f"Scan {status['id']} status={status['status']} phases={status['completed_phases']}/{status['total_phases']}")
    for category, result in sorted(status["phase_results"].items()):
        error = result.get("error") or "-"
        print(f"  {category}: records={result.get('record_count')} error={error}")
    if status["error_message"]:
        print(f"  error: {status['error_message']}")
    return 0 if status["status"] == "COMPLETED" else 1


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface failure for CI diagnostics.
        print(f"run_scan failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
