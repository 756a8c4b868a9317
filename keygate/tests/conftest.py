from __future__ import annotations

import os
import tempfile

# Settings are read at import time by the persistence layer, so the test
# environment has to be in place before any keygate module is imported.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{tempfile.gettempdir()}/keygate-test-{os.getpid()}.db",
)
os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("KEY_SEALING_SECRET", "test-sealing-secret")
os.environ.setdefault("KEY_BACKEND_URL", "http://backend.test")
os.environ.setdefault("KEY_BACKEND_ADMIN_TOKEN", "admin-token")
os.environ.setdefault("OAUTH_CLIENT_ID", "client-id")
os.environ.setdefault("OAUTH_CLIENT_SECRET", "client-secret")
os.environ.setdefault("SITE_URL", "http://site.test")

import pytest

from keygate.core.config import get_settings
from keygate.domain.models import Base
from keygate.persistence.db import SessionLocal, engine
from keygate.services.key_backend import reset_key_backend
from keygate.services.telemetry import reset_telemetry
from keygate.tests.utils.backend import FakeKeyBackend


@pytest.fixture(autouse=True)
async def reset_schema_between_tests() -> None:
    # Recreate tables per test and dispose the engine so connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Clear settings caches and in-process singletons between tests.
    yield
    get_settings.cache_clear()
    reset_key_backend()
    reset_telemetry()


@pytest.fixture
async def session():
    async with SessionLocal() as db_session:
        yield db_session


@pytest.fixture
def backend() -> FakeKeyBackend:
    return FakeKeyBackend()
