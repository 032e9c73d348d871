from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from postureguard.persistence.db import SessionLocal
from postureguard.services.exports import EXPORT_KINDS, export_csv


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Export a mirrored directory collection as CSV")
    parser.add_argument("--org", required=True, help="Organization id")
    parser.add_argument("--provider", required=True, choices=["google_workspace", "azure"])
    parser.add_argument("--kind", required=True, choices=EXPORT_KINDS)
    parser.add_argument("--out", type=Path, default=None, help="Output directory (default: stdout)")
    return parser


async def _run(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        filename, body = await export_csv(session, args.org, args.provider, args.kind)
    if args.out is None:
        sys.stdout.write(body)
        return 0
    args.out.mkdir(parents=True, exist_ok=True)
    target = args.out / filename
    target.write_text(body, encoding="utf-8")
    print(f"Wrote {target}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface failure for CI diagnostics.
        print(f"export_directory failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
