"""Practice records counted against plan limits.

Only the columns the metering code reads are modelled here; the clinical CRUD
surface owns the rest of these tables.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, String, Uuid

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PracticePatient(Base):
    __tablename__ = "practice_patients"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("billing_organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    full_name = Column(String(200), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class PracticeMember(Base):
    __tablename__ = "practice_members"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("billing_organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    email = Column(String(320), nullable=True)
    role = Column(String(32), nullable=False, default="staff")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class PracticeAppointment(Base):
    __tablename__ = "practice_appointments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("billing_organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    patient_id = Column(Uuid(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


__all__ = ["PracticeAppointment", "PracticeMember", "PracticePatient"]
