"""Metered record creation and deletion.

Clinical fields live in the practice CRUD service; these endpoints only insert
and delete the rows usage is counted from, inside the same transaction as the
usage reservation.
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.billing_constants import MeteredResource
from database import get_db
from models.practice import PracticeAppointment, PracticeMember, PracticePatient
from services.billing.errors import BillingError
from services.billing.metering import MeteringService
from services.billing.status_evaluator import ActiveStatus
from web.billing_errors import to_http_exception
from web.deps import (
    CallerIdentity,
    get_metering_service,
    require_active_subscription,
    require_caller,
    resolve_organization_id,
)

router = APIRouter(prefix="/practice", tags=["Practice Records"])

_MODELS = {
    MeteredResource.PATIENTS: PracticePatient,
    MeteredResource.USERS: PracticeMember,
    MeteredResource.APPOINTMENTS: PracticeAppointment,
}


class RecordCreateRequest(BaseModel):
    label: Optional[str] = Field(default=None, max_length=200, description="Patient name or member email.")


class RecordCreateResponse(BaseModel):
    id: uuid.UUID
    resource: str
    used: int
    limit: int
    planName: str


def _build_record(resource: MeteredResource, org_id: uuid.UUID, label: Optional[str]):
    if resource is MeteredResource.PATIENTS:
        return PracticePatient(organization_id=org_id, full_name=label)
    if resource is MeteredResource.USERS:
        return PracticeMember(organization_id=org_id, email=label)
    return PracticeAppointment(organization_id=org_id)


@router.post(
    "/{resource}",
    response_model=RecordCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a metered record",
)
def create_record(
    resource: MeteredResource,
    payload: RecordCreateRequest,
    org_id: uuid.UUID = Depends(resolve_organization_id),
    caller: CallerIdentity = Depends(require_caller),
    _status: ActiveStatus = Depends(require_active_subscription),
    db: Session = Depends(get_db),
    metering: MeteringService = Depends(get_metering_service),
) -> RecordCreateResponse:
    try:
        reservation = metering.reserve(db, org_id, resource, role=caller.role)
        record = _build_record(resource, org_id, payload.label)
        db.add(record)
        db.commit()
    except BillingError as exc:
        db.rollback()
        raise to_http_exception(exc) from exc
    return RecordCreateResponse(
        id=record.id,
        resource=resource.value,
        used=reservation.used,
        limit=reservation.limit,
        planName=reservation.plan_name,
    )


@router.delete(
    "/{resource}/{record_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a metered record",
)
def delete_record(
    resource: MeteredResource,
    record_id: uuid.UUID,
    org_id: uuid.UUID = Depends(resolve_organization_id),
    _status: ActiveStatus = Depends(require_active_subscription),
    db: Session = Depends(get_db),
    metering: MeteringService = Depends(get_metering_service),
) -> Response:
    model = _MODELS[resource]
    record = db.get(model, record_id)
    if record is None or record.organization_id != org_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "practice.not_found", "message": f"{resource.value} record was not found."},
        )
    db.delete(record)
    metering.release(db, org_id, resource)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
