"""Shared fixtures: a throwaway SQLite database per test, wired the way the app wires Postgres."""

import os
import uuid

# settings are read at import time; point the app at SQLite before anything imports it
os.environ.setdefault("DATABASE_DSN", "sqlite+aiosqlite:///./.pytest-consent.db")
os.environ["ENV"] = "local"
os.environ["SWEEPER_ENABLED"] = "false"
os.environ["NOTIFICATION_RELAY_ENABLED"] = "false"
os.environ["EVENT_BUS_PROVIDER"] = "noop"

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from app.core.base import Base
import app.modules.consent.models  # noqa: F401
import app.modules.notifications.models  # noqa: F401
from app.modules.consent.schemas import ConsentRequestCreate
from app.modules.consent.service import ConsentService

ORG_ID = uuid.UUID(int=1)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'consent.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def service(session) -> ConsentService:
    return ConsentService(session)


@pytest.fixture
def patient_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def doctor_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def make_request(service, patient_id, doctor_id):
    """Create a pending request from ``doctor_id`` to ``patient_id``."""

    async def _make(scopes=("lab_test", "prescription"), duration_days=30, *, patient=None, doctor=None,
                    purpose="Follow-up on recent results", message=None):
        payload = ConsentRequestCreate(
            patient_id=patient or patient_id,
            purpose=purpose,
            requested_scopes=list(scopes),
            duration_days=duration_days,
            message=message,
        )
        return await service.create_request(ORG_ID, doctor or doctor_id, payload)

    return _make
