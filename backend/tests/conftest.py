"""Shared fixtures: in-memory SQLite session, fixed clock, static directory, config factory."""
from datetime import datetime, timezone
from typing import Callable, Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import approval_routing.models  # noqa: F401  registers every table on Base.metadata
from approval_routing.core.clock import FixedClock
from approval_routing.db.base import Base
from approval_routing.models.tier_configuration import TierConfiguration
from approval_routing.schemas.tiers import TierConfigurationIn
from approval_routing.services import tier_configs as config_svc
from approval_routing.services.directory import StaticDirectory
from approval_routing.services.locking import InstanceLockManager
from approval_routing.services.workflow import WorkflowEngine

T0 = datetime(2024, 1, 5, 9, 0, tzinfo=timezone.utc)

DIRECTORY = {
    "users": {
        "alice": {"roles": ["employee"], "department": "engineering", "manager": "mgr"},
        "mgr": {"roles": ["manager"], "department": "engineering", "manager": "dir"},
        "dir": {"roles": ["director"], "department": "engineering", "manager": "cfo"},
        "bob": {"roles": ["manager"], "department": "engineering", "manager": "dir"},
        "carol": {"roles": ["manager"], "department": "sales", "manager": "cfo"},
        "fin1": {"roles": ["finance"], "department": "finance", "manager": "cfo"},
        "fin2": {"roles": ["finance"], "department": "finance", "manager": "cfo"},
        "cfo": {"roles": ["executive"], "department": "finance", "executive": True},
    },
    "department_heads": {"engineering": "dir", "finance": "cfo"},
}


@pytest.fixture
def db() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, expire_on_commit=False)
    with TestSession() as session:
        yield session
    engine.dispose()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0)


@pytest.fixture
def directory() -> StaticDirectory:
    return StaticDirectory.from_dict(DIRECTORY)


@pytest.fixture
def engine(db, directory, clock) -> WorkflowEngine:
    return WorkflowEngine(db, directory, clock=clock, locks=InstanceLockManager(timeout=1))


@pytest.fixture
def make_config(db, clock) -> Callable[..., TierConfiguration]:
    """Create and commit a tier configuration from raw tier dicts."""

    def _make(tiers: list[dict], category: str = "purchase", cumulative: bool = True,
              is_default: bool = True, name: str = "Test tiers") -> TierConfiguration:
        data = TierConfigurationIn.model_validate({
            "name": name,
            "category": category,
            "is_default": is_default,
            "cumulative": cumulative,
            "tiers": tiers,
        })
        config = config_svc.create_configuration(db, data, "admin", clock.now())
        db.commit()
        return config

    return _make
