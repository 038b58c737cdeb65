"""Shared test fixtures."""
import os
from datetime import timedelta
from typing import Generator

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from fakes import NOW, USER_ID, FakeDexcom

# Import all models so SQLModel.metadata knows about them
from cgmsync.models.credential import SyncCredential, SyncSettings  # noqa: F401
from cgmsync.models.glucose import GlucoseReading  # noqa: F401
from cgmsync.models.sensor import SensorModel, SensorRecord  # noqa: F401
from cgmsync.models.sync import SyncLease, SyncLogEntry  # noqa: F401


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture
def clock():
    """Frozen naive-UTC clock."""
    return lambda: NOW


@pytest.fixture(name="credential")
def credential_fixture(test_session: Session) -> SyncCredential:
    """An active credential for USER_ID that expires in one hour."""
    credential = SyncCredential(
        user_id=USER_ID,
        access_token="access-abc",
        refresh_token="refresh-abc",
        expires_at=NOW + timedelta(hours=1),
        scope="offline_access",
    )
    test_session.add(credential)
    test_session.commit()
    test_session.refresh(credential)
    return credential


@pytest.fixture(name="dexcom_model")
def dexcom_model_fixture(test_session: Session) -> SensorModel:
    model = SensorModel(manufacturer="Dexcom", model_name="G7", duration_days=10)
    test_session.add(model)
    test_session.commit()
    test_session.refresh(model)
    return model


@pytest.fixture
def fake_dexcom() -> FakeDexcom:
    return FakeDexcom()
