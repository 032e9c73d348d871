from __future__ import annotations

from postureguard.services.scans.dispatch import ScanJobPayload, dispatch_scan, wait_for_inline_scans
from postureguard.services.scans.orchestrator import execute_scan, resolve_config, trigger_scan
from postureguard.services.scans.phase_runner import run_phase
from postureguard.services.scans.scheduler import run_scheduled_scans
from postureguard.services.scans.status import (
    get_latest_compliance,
    get_scan_history,
    get_scan_status,
    scan_run_to_dict,
)
from postureguard.services.scans.watchdog import fail_stale_runs


__all__ = [
    "ScanJobPayload",
    "dispatch_scan",
    "execute_scan",
    "fail_stale_runs",
    "get_latest_compliance",
    "get_scan_history",
    "get_scan_status",
    "resolve_config",
    "run_phase",
    "run_scheduled_scans",
    "scan_run_to_dict",
    "trigger_scan",
    "wait_for_inline_scans",
]
