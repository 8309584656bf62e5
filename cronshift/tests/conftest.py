from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cronshift.core.config import get_settings
from cronshift.domain.models import Base
from cronshift.services.datastore import DataStore
from cronshift.services.telemetry import reset_telemetry
from cronshift.tests.utils.project import build_project, seed_tables


TEST_ENV = {
    "DATABASE_URL": "sqlite+aiosqlite://",
    "DATABASE_SERVICE_KEY": "service-key",
    "SENDGRID_API_KEY": "SG.test",
    "SENDGRID_FROM_EMAIL": "ops@example.com",
    "STOP_DELAY_SECONDS": "0",
    "EXT_RETRY_BACKOFF_MS": "1",
}

OPTIONAL_ENV = ("REDIS_URL", "GITHUB_TOKEN", "GITHUB_REPOSITORY", "NOTIFICATION_RECIPIENT")


@pytest.fixture(autouse=True)
def reset_state_between_tests():
    # Settings and in-process counters are module globals; isolate them per test.
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
def settings(tmp_path, monkeypatch):
    # Each test gets its own project root; the repository .env is never read.
    monkeypatch.chdir(tmp_path)
    for name, value in TEST_ENV.items():
        monkeypatch.setenv(name, value)
    for name in OPTIONAL_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PROJECT_ROOT", str(tmp_path))
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def project(settings, tmp_path) -> Path:
    return build_project(tmp_path)


@pytest.fixture
async def datastore():
    # One shared in-memory SQLite connection per test.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield DataStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()


@pytest.fixture
async def seeded_datastore(datastore):
    await seed_tables(datastore)
    return datastore
