"""Usage counter rows: periods, authoritative recounts and the atomic increment.

Patients and appointments are metered per UTC calendar month; users are a
running total stored under a fixed epoch period.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from core.billing_constants import MONTHLY_RESOURCES, UNLIMITED, MeteredResource
from core.logging import get_logger
from core.time_utils import ensure_utc, month_bounds
from models.billing import UsageCounter
from models.practice import PracticeAppointment, PracticeMember, PracticePatient
from services.billing.metrics import USAGE_RECOUNTS

logger = get_logger(__name__)

RUNNING_TOTAL_PERIOD = datetime(1970, 1, 1, tzinfo=timezone.utc)

_RECORD_MODELS = {
    MeteredResource.PATIENTS: PracticePatient,
    MeteredResource.USERS: PracticeMember,
    MeteredResource.APPOINTMENTS: PracticeAppointment,
}


def metering_period(resource: MeteredResource, now: datetime) -> datetime:
    if resource in MONTHLY_RESOURCES:
        return month_bounds(now)[0]
    return RUNNING_TOTAL_PERIOD


def count_records(session: Session, org_id: uuid.UUID, resource: MeteredResource, now: datetime) -> int:
    """Count the authoritative records for the period containing ``now``."""

    model = _RECORD_MODELS[resource]
    stmt = select(func.count()).select_from(model).where(model.organization_id == org_id)
    if resource in MONTHLY_RESOURCES:
        start, next_start = month_bounds(now)
        stmt = stmt.where(model.created_at >= start, model.created_at < next_start)
    return int(session.scalar(stmt) or 0)


def _load(session: Session, org_id: uuid.UUID, resource: MeteredResource) -> Optional[UsageCounter]:
    stmt = (
        select(UsageCounter)
        .where(UsageCounter.organization_id == org_id, UsageCounter.resource == resource.value)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return session.scalars(stmt).first()


def _insert_if_absent(session: Session, **values) -> None:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql_insert(UsageCounter).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite_insert(UsageCounter).values(**values)
    else:
        session.add(UsageCounter(**values))
        session.flush()
        return
    session.execute(stmt.on_conflict_do_nothing(index_elements=["organization_id", "resource"]))


def load_counter(session: Session, org_id: uuid.UUID, resource: MeteredResource, now: datetime) -> UsageCounter:
    """Return the locked counter row for the current period, creating or rolling it over as needed."""

    period = metering_period(resource, now)
    counter = _load(session, org_id, resource)
    if counter is None:
        # A concurrent creator may win the insert; either way the row exists afterwards.
        _insert_if_absent(
            session,
            organization_id=org_id,
            resource=resource.value,
            count=count_records(session, org_id, resource, now),
            period_start=period,
            last_reset_at=ensure_utc(now),
            version=1,
        )
        USAGE_RECOUNTS.labels(resource=resource.value, trigger="initial").inc()
        return _load(session, org_id, resource)

    if ensure_utc(counter.period_start) != period:
        fresh = count_records(session, org_id, resource, now)
        if overwrite(session, counter, fresh, period_start=period, now=now):
            USAGE_RECOUNTS.labels(resource=resource.value, trigger="rollover").inc()
            logger.info("Usage counter %s/%s rolled over to %s (count=%d).", org_id, resource.value, period.date(), fresh)
        counter = _load(session, org_id, resource)
    return counter


def try_increment(session: Session, counter: UsageCounter, limit: int) -> bool:
    """Add one unit if it keeps the counter within ``limit``. Single conditional UPDATE."""

    stmt = (
        update(UsageCounter)
        .where(UsageCounter.id == counter.id, UsageCounter.period_start == counter.period_start)
        .values(count=UsageCounter.count + 1, version=UsageCounter.version + 1)
        .execution_options(synchronize_session=False)
    )
    if limit != UNLIMITED:
        stmt = stmt.where(UsageCounter.count + 1 <= limit)
    applied = session.execute(stmt).rowcount == 1
    session.expire(counter)
    return applied


def overwrite(
    session: Session,
    counter: UsageCounter,
    value: int,
    *,
    period_start: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Compare-and-swap the cached count on ``version``; False when another writer moved first."""

    values = {"count": value, "version": UsageCounter.version + 1}
    if period_start is not None:
        values["period_start"] = period_start
        values["last_reset_at"] = ensure_utc(now) if now is not None else period_start
    stmt = (
        update(UsageCounter)
        .where(UsageCounter.id == counter.id, UsageCounter.version == counter.version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    applied = session.execute(stmt).rowcount == 1
    session.expire(counter)
    return applied


def decrement(session: Session, org_id: uuid.UUID, resource: MeteredResource) -> bool:
    stmt = (
        update(UsageCounter)
        .where(
            UsageCounter.organization_id == org_id,
            UsageCounter.resource == resource.value,
            UsageCounter.count > 0,
        )
        .values(count=UsageCounter.count - 1, version=UsageCounter.version + 1)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


__all__ = [
    "RUNNING_TOTAL_PERIOD",
    "count_records",
    "decrement",
    "load_counter",
    "metering_period",
    "overwrite",
    "try_increment",
]
