from __future__ import annotations

import os
import tempfile

# The registry engine is created at import time, so point it at SQLite before any flockcast import.
_TEST_DIR = tempfile.mkdtemp(prefix="flockcast-tests-")
os.environ.setdefault("REGISTRY_DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DIR}/registry.db")
os.environ.setdefault("DELIVERY_EXECUTION_MODE", "inline")
os.environ.setdefault("MESSAGING_PROVIDER", "fake")
os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("DELIVERY_BACKOFF_BASE_MS", "0")
os.environ.setdefault("DELIVERY_BACKOFF_MAX_MS", "0")
os.environ.setdefault("DELIVERY_OUTCOME_WRITE_BACKOFF_MS", "0")

import pytest  # noqa: E402

from flockcast.core.config import get_settings  # noqa: E402
from flockcast.domain.models import RegistryBase  # noqa: E402
from flockcast.persistence.db import engine  # noqa: E402
from flockcast.services.cache import reset_cache  # noqa: E402
from flockcast.services.delivery.runtime import set_inline_runtime  # noqa: E402
from flockcast.services.telemetry import reset_telemetry  # noqa: E402


@pytest.fixture(autouse=True)
async def registry_schema() -> None:
    # Fresh registry tables per test; dispose so connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(RegistryBase.metadata.drop_all)
        await conn.run_sync(RegistryBase.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    reset_telemetry()
    reset_cache()
    set_inline_runtime(None)
    yield
    set_inline_runtime(None)
    get_settings.cache_clear()


@pytest.fixture
def tenant_db_dir() -> str:
    # One directory per test for tenant SQLite files.
    return tempfile.mkdtemp(prefix="tenant-dbs-", dir=_TEST_DIR)
