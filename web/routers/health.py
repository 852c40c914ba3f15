"""Health-related API endpoints."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import database
from core.env import env_str
from services.billing.status_cache import RedisStatusCache, status_cache

router = APIRouter(prefix="/health", tags=["Health"])


def ping_database() -> Tuple[bool, Optional[str]]:
    """Return database connectivity status and optional error message."""
    db = database.SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return True, None
    except SQLAlchemyError as exc:
        return False, str(exc)
    finally:
        db.close()


def billing_configuration() -> Dict[str, Any]:
    return {
        "statusCache": "redis" if isinstance(status_cache, RedisStatusCache) else "memory",
        "gatewayConfigured": bool(env_str("STRIPE_SECRET_KEY")),
        "webhookSecretConfigured": bool(env_str("STRIPE_WEBHOOK_SECRET")),
    }


@router.get("/status", summary="Database connectivity and billing configuration")
def read_service_status():
    db_ok, db_error = ping_database()
    database_state: Dict[str, Any] = {"ok": db_ok}
    if db_error:
        database_state["error"] = db_error
    return {
        "status": "ok" if db_ok else "degraded",
        "database": database_state,
        "billing": billing_configuration(),
    }
