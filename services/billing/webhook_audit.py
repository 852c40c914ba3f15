"""Audit rows for gateway webhook deliveries."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.billing import BillingWebhookEventLog

logger = logging.getLogger(__name__)


def record_webhook_audit(
    session_factory: Callable[[], Session],
    *,
    result: str,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    gateway_subscription_id: Optional[str] = None,
    message: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    """Write an audit row in its own transaction. Audit failures are logged, never raised."""

    session = session_factory()
    try:
        session.add(
            BillingWebhookEventLog(
                event_id=event_id,
                event_type=event_type,
                gateway_subscription_id=gateway_subscription_id,
                result=result,
                message=message,
                context=context,
                payload=payload,
                processed_at=datetime.now(timezone.utc),
            )
        )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("Failed to persist webhook audit row for %s: %s", event_id, exc)
    finally:
        session.close()


def recent_webhook_entries(session: Session, *, limit: int = 100) -> List[Dict[str, Any]]:
    stmt = select(BillingWebhookEventLog).order_by(BillingWebhookEventLog.created_at.desc()).limit(limit)
    entries: List[Dict[str, Any]] = []
    for row in session.scalars(stmt):
        entries.append(
            {
                "eventId": row.event_id,
                "eventType": row.event_type,
                "gatewaySubscriptionId": row.gateway_subscription_id,
                "result": row.result,
                "message": row.message,
                "context": row.context,
                "processedAt": row.processed_at.isoformat() if row.processed_at else None,
            }
        )
    return entries


__all__ = ["record_webhook_audit", "recent_webhook_entries"]
