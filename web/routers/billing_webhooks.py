"""Signed gateway webhooks."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from services.billing.errors import WebhookSignatureInvalid
from services.billing.gateway import verify_webhook_signature
from services.billing.reconciler import WebhookReconciler
from services.billing.webhook_events import parse_gateway_event
from schemas.api.billing import WebhookAckResponse
from web.deps import get_webhook_reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/webhooks", tags=["Billing"])


@router.post(
    "/stripe",
    response_model=WebhookAckResponse,
    summary="Receive Stripe subscription and invoice events",
)
async def handle_stripe_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    raw_body = await request.body()
    signature_header = request.headers.get("stripe-signature")

    try:
        verify_webhook_signature(payload=raw_body, signature_header=signature_header)
    except WebhookSignatureInvalid as exc:
        logger.warning("Stripe webhook rejected: %s", exc.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.to_detail()) from exc
    except RuntimeError as exc:
        logger.error("Stripe webhook verification unavailable: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "billing.webhook_unavailable", "message": str(exc)},
        ) from exc

    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        result = await run_in_threadpool(reconciler.record_invalid_payload, None, str(exc))
        return WebhookAckResponse(received=True, outcome=result.outcome.value).model_dump()
    try:
        event = parse_gateway_event(payload)
    except (ValueError, TypeError) as exc:
        # WebhookPayloadError is a ValueError.
        result = await run_in_threadpool(reconciler.record_invalid_payload, payload, str(exc))
        return WebhookAckResponse(received=True, outcome=result.outcome.value, eventId=result.event_id or None).model_dump()

    logger.info(
        "Received Stripe webhook.",
        extra={"webhook": {"eventId": event.envelope.event_id, "eventType": event.envelope.event_type}},
    )
    result = await run_in_threadpool(reconciler.process, event, payload=payload)
    body = WebhookAckResponse(
        received=result.acknowledged,
        outcome=result.outcome.value,
        eventId=result.event_id,
    ).model_dump()
    if not result.acknowledged:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)
    return body


__all__ = ["router"]
