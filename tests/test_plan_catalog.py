from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import select

from models.billing import SubscriptionPlan
from services.billing import plan_catalog
from services.billing.errors import PlanInUse, PlanNotFound


def test_create_plan_validates_and_snapshots(db_session) -> None:
    plan = plan_catalog.create_plan(
        db_session,
        {
            "name": "  Clinic Plus ",
            "monthly_price": "49.50",
            "yearly_price": 495,
            "max_patients": 250,
            "max_users": -1,
            "api_access": True,
        },
    )
    db_session.commit()

    snapshot = plan_catalog.snapshot_plan(plan)
    assert snapshot.name == "Clinic Plus"
    assert snapshot.monthly_price == Decimal("49.50")
    assert snapshot.limits.for_resource("patients") == 250
    assert snapshot.limits.for_resource("users") == -1
    assert snapshot.allows("api_access")
    assert snapshot.allows("email_notifications")
    assert not snapshot.allows("sms_notifications")
    assert snapshot.is_paid


@pytest.mark.parametrize(
    "fields",
    [
        {"name": "Bad", "monthly_price": 1, "yearly_price": 1, "max_patients": -2},
        {"name": "Bad", "monthly_price": -1, "yearly_price": 1},
        {"name": "Bad", "monthly_price": 1, "yearly_price": 1, "colour": "blue"},
        {"name": "   ", "monthly_price": 1, "yearly_price": 1},
        {"name": "Bad", "monthly_price": 1},
    ],
)
def test_create_plan_rejects_invalid_fields(db_session, fields) -> None:
    with pytest.raises(ValueError):
        plan_catalog.create_plan(db_session, fields)


def test_plan_names_are_unique(db_session, make_plan) -> None:
    basic = make_plan(name="Basic")
    other = make_plan(name="Plus")

    with pytest.raises(ValueError):
        plan_catalog.create_plan(db_session, {"name": " Basic ", "monthly_price": 1, "yearly_price": 10})
    with pytest.raises(ValueError):
        plan_catalog.update_plan(db_session, other.id, {"name": "Basic"})

    assert plan_catalog.update_plan(db_session, basic.id, {"name": "Basic"}).name == "Basic"


def test_only_one_default_plan(db_session, make_plan) -> None:
    first = make_plan(name="Basic", is_default=True)
    second = plan_catalog.create_plan(
        db_session, {"name": "Professional", "monthly_price": 59.99, "yearly_price": 599.99, "is_default": True}
    )
    db_session.commit()

    defaults = db_session.scalars(select(SubscriptionPlan.id).where(SubscriptionPlan.is_default.is_(True))).all()
    assert defaults == [second.id]
    db_session.refresh(first)
    assert first.is_default is False


def test_list_plans_hides_inactive_by_default(db_session, make_plan) -> None:
    make_plan(name="Basic", sort_order=1)
    make_plan(name="Legacy", sort_order=0, is_active=False)

    assert [plan.name for plan in plan_catalog.list_plans(db_session)] == ["Basic"]
    assert [plan.name for plan in plan_catalog.list_plans(db_session, include_inactive=True)] == ["Legacy", "Basic"]


def test_delete_plan_refused_while_referenced(db_session, make_org, make_plan, make_subscription) -> None:
    plan = make_plan()
    make_subscription(make_org(), plan=plan)

    with pytest.raises(PlanInUse) as exc:
        plan_catalog.delete_plan(db_session, plan.id)
    assert exc.value.status_code == 409
    assert db_session.scalar(select(SubscriptionPlan.id).where(SubscriptionPlan.id == plan.id)) == plan.id


def test_delete_unreferenced_plan(db_session, make_plan) -> None:
    plan = make_plan(name="Unused")
    plan_catalog.delete_plan(db_session, plan.id)
    db_session.commit()

    with pytest.raises(PlanNotFound):
        plan_catalog.get_plan(db_session, plan.id)
