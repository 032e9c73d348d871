from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Protocol


NativeRecord = dict[str, Any]
# Maps one provider-native record to mirror row fields; None drops the record.
Normalizer = Callable[[NativeRecord], "dict[str, Any] | None"]


class TokenSource(Protocol):
    async def get_token(self, audience: str) -> str:
        ...


@dataclass(frozen=True)
class PhaseSpec:
    category: str
    fetch: Callable[[], AsyncIterator[NativeRecord]]
    normalize: Normalizer


class DirectoryProvider(Protocol):
    name: str

    def phases(self) -> list[PhaseSpec]:
        ...

    async def verify_credentials(self) -> bool:
        ...

    async def aclose(self) -> None:
        ...


_FRACTION = re.compile(r"\.(\d+)")
# Workspace reports accounts that never signed in with the epoch.
_NEVER = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    text = value.strip().replace("Z", "+00:00")
    # Graph returns 7 fractional digits; datetime accepts at most 6.
    text = _FRACTION.sub(lambda match: "." + match.group(1)[:6], text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    parsed = parsed.astimezone(timezone.utc)
    if parsed <= _NEVER:
        return None
    return parsed
