from __future__ import annotations

import pytest

from pushrelay.core.config import get_settings
from pushrelay.domain.models import Base
from pushrelay.persistence.db import build_engine, build_session_factory
from pushrelay.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings and counters are module-level caches; isolate them per test.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
async def db_engine(tmp_path):  # noqa: ANN001
    # A file-backed sqlite database lets several connections contend like real workers.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pushrelay.db'}")
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):  # noqa: ANN001
    return build_session_factory(db_engine)


@pytest.fixture
async def session(session_factory):  # noqa: ANN001
    async with session_factory() as session:
        yield session
