from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.errors import SnapshotUnavailable
from postureguard.domain.models import CHECK_STATUS_ERROR, ComplianceCheck, ScanRun
from postureguard.domain.records import CheckOutcome
from postureguard.persistence.repos import compliance_checks as checks_repo
from postureguard.services.rules.snapshot import Snapshot
from postureguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CheckFunc = Callable[[Snapshot], CheckOutcome]


@dataclass(frozen=True)
class CheckDefinition:
    check_id: str
    category: str
    title: str
    description: str
    func: CheckFunc


class RuleRegistry:
    """Code-defined check bank for one provider.

    The registry knows how to order, run and persist checks; what a check
    means lives entirely in its function.
    """

    def __init__(self, provider: str) -> None:
        self.provider = provider
        self._checks: dict[str, CheckDefinition] = {}

    def register(
        self,
        check_id: str,
        *,
        category: str,
        title: str,
        description: str,
    ) -> Callable[[CheckFunc], CheckFunc]:
        def _decorator(func: CheckFunc) -> CheckFunc:
            if check_id in self._checks:
                raise ValueError(f"duplicate check id {check_id} for {self.provider}")
            self._checks[check_id] = CheckDefinition(check_id, category, title, description, func)
            return func

        return _decorator

    def checks(self) -> list[CheckDefinition]:
        # Stable evaluation and persistence order.
        return sorted(self._checks.values(), key=lambda item: (item.category, item.check_id))

    def get(self, check_id: str) -> CheckDefinition | None:
        return self._checks.get(check_id)


_REGISTRIES: dict[str, RuleRegistry] = {}


def registry_for(provider: str) -> RuleRegistry:
    registry = _REGISTRIES.get(provider)
    if registry is None:
        registry = RuleRegistry(provider)
        _REGISTRIES[provider] = registry
    return registry


def evaluate_check(check: CheckDefinition, snapshot: Snapshot) -> CheckOutcome:
    try:
        return check.func(snapshot)
    except SnapshotUnavailable as exc:
        return CheckOutcome(CHECK_STATUS_ERROR, str(exc))
    except Exception as exc:  # noqa: BLE001 - one faulty check must not abort the bank
        logger.exception("compliance_check_failed provider=%s check_id=%s", snapshot.provider, check.check_id)
        return CheckOutcome(CHECK_STATUS_ERROR, f"Check failed: {exc}")


def evaluate(registry: RuleRegistry, snapshot: Snapshot) -> list[dict]:
    rows: list[dict] = []
    for check in registry.checks():
        outcome = evaluate_check(check, snapshot)
        increment_counter(f"compliance_checks_total.{outcome.status.lower()}")
        rows.append(
            {
                "check_id": check.check_id,
                "category": check.category,
                "title": check.title,
                "description": check.description,
                "status": outcome.status,
                "details": outcome.details,
            }
        )
    return rows


async def run_checks(
    session: AsyncSession,
    run: ScanRun,
    snapshot: Snapshot,
    registry: RuleRegistry | None = None,
) -> list[ComplianceCheck]:
    registry = registry or registry_for(run.provider)
    rows = evaluate(registry, snapshot)
    checks = await checks_repo.replace_checks(session, run, rows)
    logger.info("compliance_checks_recorded scan_run_id=%s provider=%s checks=%s", run.id, run.provider, len(checks))
    return checks
