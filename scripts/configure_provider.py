from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from postureguard.core.logging import configure_logging
from postureguard.persistence.db import SessionLocal
from postureguard.services.credentials import configure_provider


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Store verified directory provider credentials")
    parser.add_argument("--org", required=True, help="Organization id")
    parser.add_argument("--provider", required=True, choices=["google_workspace", "azure"])
    parser.add_argument("--credentials-file", required=True, type=Path, help="Service account key or app credentials JSON")
    parser.add_argument("--admin-email", default=None, help="Workspace admin to impersonate")
    parser.add_argument("--domain", default=None, help="Workspace primary domain")
    parser.add_argument("--interval-hours", type=int, default=None, help="Scheduled scan interval")
    parser.add_argument("--actor", default="cli", help="Actor id")
    return parser


async def _run(args: argparse.Namespace) -> int:
    raw = args.credentials_file.read_text(encoding="utf-8")
    async with SessionLocal() as session:
        config = await configure_provider(
            session,
            organization_id=args.org,
            provider=args.provider,
            credentials=raw,
            admin_email=args.admin_email,
            domain=args.domain,
            scan_interval_hours=args.interval_hours,
            actor=args.actor,
        )
        await session.commit()
    print(f"Configured {config.provider} for {config.organization_id} interval={config.scan_interval_hours}h")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface failure for CI diagnostics.
        print(f"configure_provider failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
