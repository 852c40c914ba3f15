import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.environ["TEST_DATABASE_URL"])
os.environ.setdefault("BILLING_WEBHOOK_STATE_FILE", str(Path(__file__).resolve().parent / ".webhook_events.json"))

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import database as database_module
import models  # noqa: F401
from database import Base
from models.billing import Organization, Subscription, SubscriptionPlan
from services.billing import webhook_store
from services.billing.status_cache import MemoryStatusCache

BASE_TIME = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def engine(monkeypatch: pytest.MonkeyPatch) -> Generator[Engine, None, None]:
    test_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    monkeypatch.setattr(database_module, "engine", test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine, monkeypatch: pytest.MonkeyPatch) -> sessionmaker:
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    monkeypatch.setattr(database_module, "SessionLocal", factory)
    return factory


@pytest.fixture()
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _isolate_webhook_state(tmp_path: Path) -> Generator[Path, None, None]:
    """Point the processed-event ledger at a per-test file."""
    path = tmp_path / "webhook_events.json"
    webhook_store.reset_state_for_tests(path=path)
    yield path
    webhook_store.reset_state_for_tests()


@pytest.fixture()
def status_cache() -> MemoryStatusCache:
    return MemoryStatusCache(ttl_seconds=300)


@pytest.fixture()
def make_org(db_session: Session) -> Callable[..., Organization]:
    def _make(
        *,
        name: str = "Riverside Clinic",
        created_at: datetime = BASE_TIME,
        is_active: bool = True,
        subscription_type: str = "regular",
        deactivation_source: Optional[str] = None,
    ) -> Organization:
        organization = Organization(
            id=uuid.uuid4(),
            name=name,
            created_at=created_at,
            updated_at=created_at,
            is_active=is_active,
            subscription_type=subscription_type,
            deactivation_source=deactivation_source,
        )
        db_session.add(organization)
        db_session.commit()
        return organization

    return _make


@pytest.fixture()
def make_plan(db_session: Session) -> Callable[..., SubscriptionPlan]:
    def _make(
        *,
        name: str = "Basic",
        monthly_price: str = "29.99",
        yearly_price: str = "299.99",
        max_patients: int = 100,
        max_users: int = 2,
        max_appointments: int = -1,
        **extra,
    ) -> SubscriptionPlan:
        plan = SubscriptionPlan(
            id=uuid.uuid4(),
            name=name,
            monthly_price=Decimal(monthly_price),
            yearly_price=Decimal(yearly_price),
            max_patients=max_patients,
            max_users=max_users,
            max_appointments=max_appointments,
            **extra,
        )
        db_session.add(plan)
        db_session.commit()
        return plan

    return _make


@pytest.fixture()
def make_subscription(db_session: Session) -> Callable[..., Subscription]:
    def _make(
        organization: Organization,
        *,
        plan: Optional[SubscriptionPlan] = None,
        status: str = "active",
        start_date: datetime = BASE_TIME,
        end_date: Optional[datetime] = None,
        billing_cycle: str = "monthly",
        **extra,
    ) -> Subscription:
        subscription = Subscription(
            id=uuid.uuid4(),
            organization_id=organization.id,
            plan_id=plan.id if plan is not None else None,
            status=status,
            billing_cycle=billing_cycle,
            amount=plan.monthly_price if plan is not None else Decimal("0"),
            start_date=start_date,
            end_date=end_date or start_date + timedelta(days=30),
            **extra,
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make
