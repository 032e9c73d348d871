from __future__ import annotations

from typing import Sequence

from postureguard.domain.models import (
    CHECK_STATUS_FAIL,
    CHECK_STATUS_PASS,
    CHECK_STATUS_WARNING,
)
from postureguard.domain.records import CheckOutcome


# Names listed in details before truncating with "...".
MAX_LISTED = 5


def percentage(numerator: int, denominator: int) -> int:
    # Integer percentage rounded half up; 0 when nothing was counted.
    if denominator <= 0:
        return 0
    return (numerator * 200 + denominator) // (denominator * 2)


def format_names(names: Sequence[str], limit: int = MAX_LISTED) -> str:
    shown = ", ".join(names[:limit])
    return f"{shown}..." if len(names) > limit else shown


def threshold_verdict(
    numerator: int,
    denominator: int,
    *,
    pass_pct: float,
    warn_pct: float | None = None,
    label: str,
    empty_details: str = "No matching records found",
    empty_status: str = CHECK_STATUS_WARNING,
) -> CheckOutcome:
    """Compare a ratio against pass/warn percentages.

    Thresholds compare the exact ratio; the rounded percentage is only shown.
    """
    if denominator <= 0:
        return CheckOutcome(empty_status, empty_details)
    details = f"{numerator}/{denominator} {label} ({percentage(numerator, denominator)}%)"
    if numerator * 100 >= pass_pct * denominator:
        return CheckOutcome(CHECK_STATUS_PASS, details)
    if warn_pct is not None and numerator * 100 >= warn_pct * denominator:
        return CheckOutcome(CHECK_STATUS_WARNING, details)
    return CheckOutcome(CHECK_STATUS_FAIL, details)


def presence_verdict(
    offenders: Sequence[str],
    *,
    summary: str,
    fail_status: str = CHECK_STATUS_FAIL,
    listed_as: str = "Affected",
) -> CheckOutcome:
    # PASS only when nothing offends; offenders are named in the details.
    if not offenders:
        return CheckOutcome(CHECK_STATUS_PASS, summary)
    return CheckOutcome(fail_status, f"{summary}. {listed_as}: {format_names(offenders)}")


def existence_verdict(
    matches: int,
    *,
    minimum: int = 1,
    warn_minimum: int | None = None,
    details: str,
) -> CheckOutcome:
    # At least `minimum` matching items must exist.
    if matches >= minimum:
        return CheckOutcome(CHECK_STATUS_PASS, details)
    if warn_minimum is not None and matches >= warn_minimum:
        return CheckOutcome(CHECK_STATUS_WARNING, details)
    return CheckOutcome(CHECK_STATUS_FAIL, details)


def count_verdict(
    count: int,
    *,
    pass_max: int = 0,
    warn_max: int | None = None,
    details: str,
    over_status: str = CHECK_STATUS_FAIL,
) -> CheckOutcome:
    if count <= pass_max:
        return CheckOutcome(CHECK_STATUS_PASS, details)
    if warn_max is not None and count <= warn_max:
        return CheckOutcome(CHECK_STATUS_WARNING, details)
    return CheckOutcome(over_status, details)
