from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Point the engine at a throwaway SQLite database before the persistence layer is imported.
_DB_PATH = Path(tempfile.gettempdir()) / f"m365assess-test-{os.getpid()}.db"
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_PATH}")
os.environ.setdefault("CONSENT_STATE_SECRET", "test-consent-state-secret")

import pytest  # noqa: E402

from m365assess.core.config import get_settings  # noqa: E402
from m365assess.domain.models import Base  # noqa: E402
from m365assess.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_schema_between_tests() -> None:
    # Recreate tables so each test starts from an empty database.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    yield
    get_settings.cache_clear()
