from __future__ import annotations

import os
import tempfile

# Settings are read once at import; point them at a throwaway SQLite file first.
_DB_DIR = tempfile.mkdtemp(prefix="postureguard-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/postureguard.db")
os.environ.setdefault("SCAN_EXECUTION_MODE", "inline")
os.environ.setdefault("PROVIDER_RETRY_MAX_ATTEMPTS", "3")
os.environ.setdefault("PROVIDER_RETRY_BACKOFF_MS", "1")
os.environ.setdefault("PROVIDER_RETRY_MAX_BACKOFF_MS", "5")

import pytest

from postureguard.domain.models import Base
from postureguard.persistence.db import engine
from postureguard.services.scans import wait_for_inline_scans
from postureguard.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Each test gets empty tables; inline scans must settle before the engine goes away.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    reset_telemetry()
    yield
    await wait_for_inline_scans()
    await engine.dispose()
