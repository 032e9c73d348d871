from __future__ import annotations

# Importing the banks registers their checks.
from postureguard.services.rules import checks_azure, checks_google
from postureguard.services.rules.engine import (
    CheckDefinition,
    RuleRegistry,
    evaluate,
    registry_for,
    run_checks,
)
from postureguard.services.rules.snapshot import Snapshot, load_snapshot


__all__ = [
    "CheckDefinition",
    "RuleRegistry",
    "Snapshot",
    "checks_azure",
    "checks_google",
    "evaluate",
    "load_snapshot",
    "registry_for",
    "run_checks",
]
