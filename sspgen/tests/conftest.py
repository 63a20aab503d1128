from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any sspgen module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="sspgen-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/sspgen.db")
os.environ.setdefault("LLM_PROVIDER", "fake")
os.environ.setdefault("GENERATION_RETRY_BACKOFF_MS", "1")

import pytest  # noqa: E402

from sspgen.core.config import get_settings  # noqa: E402
from sspgen.domain.models import Base  # noqa: E402
from sspgen.persistence.db import engine  # noqa: E402
from sspgen.services.resilience import reset_circuit_breakers  # noqa: E402
from sspgen.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def database_schema():
    # Fresh schema per test; dispose the engine so pooled connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state():
    get_settings.cache_clear()
    reset_circuit_breakers()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_circuit_breakers()
    reset_telemetry()
