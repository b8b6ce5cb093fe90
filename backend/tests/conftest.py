"""
Shared fixtures: an in-memory SQLite database and an in-memory entity world.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from changedetect.infrastructure.database.models import Base
from changedetect.services.registry import ContractRegistry

from tests.fakes import FrozenClock, InMemoryLease, InMemoryWorld

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()

@pytest.fixture
def session(engine):
    session = sessionmaker(bind=engine, expire_on_commit=False)()
    yield session
    session.close()

@pytest.fixture
def world():
    return InMemoryWorld()

@pytest.fixture
def registry(world):
    return world.registry()

@pytest.fixture
def contracts():
    """Fresh contract registry so tests never touch the global one."""
    return ContractRegistry()

@pytest.fixture
def clock():
    return FrozenClock()

@pytest.fixture
def lease():
    return InMemoryLease()
