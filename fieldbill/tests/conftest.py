from __future__ import annotations

import asyncio
import os
import tempfile

import pytest

# Point settings at a throwaway SQLite file before any fieldbill module builds the engine.
_DB_DIR = tempfile.mkdtemp(prefix="fieldbill-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/fieldbill.db")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ["BILLING_WEBHOOK_ENABLED"] = "false"

from fieldbill.core.config import get_settings  # noqa: E402
from fieldbill.domain.models import Base  # noqa: E402
from fieldbill.persistence.db import engine  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def create_schema() -> None:
    # Build tables once per run; every test uses fresh organization and contractor ids.
    async def _create() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()

    asyncio.run(_create())
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture
def settings_env(monkeypatch: pytest.MonkeyPatch):
    # Apply env overrides for one test and drop the cached Settings on both sides.
    def _apply(**values: str) -> None:
        for key, value in values.items():
            monkeypatch.setenv(key.upper(), value)
        get_settings.cache_clear()

    yield _apply
    monkeypatch.undo()
    get_settings.cache_clear()
