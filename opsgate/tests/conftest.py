from __future__ import annotations

from typing import AsyncIterator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opsgate.apps.api.main import create_app
from opsgate.core.config import Settings
from opsgate.domain.models import Base
from opsgate.services import telemetry


@pytest.fixture
def settings(tmp_path) -> Settings:
    # File-backed SQLite per test so concurrent requests use real connections.
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'opsgate.db'}",
        log_level="WARNING",
        _env_file=None,
    )


@pytest.fixture
async def app(settings: Settings) -> AsyncIterator[FastAPI]:
    application = create_app(settings=settings)
    async with application.state.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield application
    # Dispose the async engine so no connection outlives the test loop.
    await application.state.engine.dispose()


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest.fixture
def sessionmaker(app: FastAPI) -> async_sessionmaker[AsyncSession]:
    return app.state.sessionmaker


@pytest.fixture(autouse=True)
def reset_telemetry() -> None:
    # Telemetry is process-local; keep counters isolated between tests.
    telemetry.reset()
    yield
    telemetry.reset()
