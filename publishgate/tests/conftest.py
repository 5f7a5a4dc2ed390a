from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway sqlite file before publishgate modules build it.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), f'publishgate-test-{os.getpid()}.db')}",
)
os.environ.setdefault("CRM_PROVIDER", "fake")
os.environ.setdefault("AUTHZ_PERMISSION_CACHE_TTL_S", "0")

import pytest

from publishgate.domain.models import Base
from publishgate.persistence.db import engine
from publishgate.services.authz.permissions import reset_permission_cache


@pytest.fixture(autouse=True)
async def reset_schema_between_tests() -> None:
    # Rebuild the schema so every test starts from empty tables.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    reset_permission_cache()
    yield
    reset_permission_cache()


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()
