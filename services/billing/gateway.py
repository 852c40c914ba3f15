"""Stripe REST helper and webhook signature verification."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from core.env import env_float, env_int, env_str, require_env
from services.billing.errors import WebhookSignatureInvalid
from services.billing.metrics import GATEWAY_LATENCY

logger = logging.getLogger(__name__)

DEFAULT_STRIPE_API_BASE_URL = "https://api.stripe.com"
DEFAULT_GATEWAY_TIMEOUT_SECONDS = 10.0
DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300
PRORATION_BEHAVIOR = "create_prorations"


class StripeApiError(RuntimeError):
    """Raised when Stripe rejects a request, or it fails or times out in transit."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}
        self.timed_out = timed_out


def _flatten_form(params: Mapping[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    """Encode nested params the way Stripe expects (``items[0][price]=...``)."""

    pairs: List[Tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, Mapping):
            pairs.extend(_flatten_form(value, name))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                if isinstance(item, Mapping):
                    pairs.extend(_flatten_form(item, f"{name}[{index}]"))
                else:
                    pairs.append((f"{name}[{index}]", str(item)))
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


@dataclass(slots=True)
class StripeClient:
    """Minimal async wrapper over the Stripe subscriptions API."""

    secret_key: str
    base_url: str = DEFAULT_STRIPE_API_BASE_URL
    timeout: float = DEFAULT_GATEWAY_TIMEOUT_SECONDS
    transport: Optional[httpx.AsyncBaseTransport] = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        form: Optional[Mapping[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        data = dict(_flatten_form(form)) if form else None
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(method, url, headers=headers, data=data)
        except httpx.TimeoutException as exc:
            logger.warning("Stripe %s timed out after %.1fs.", operation, self.timeout)
            raise StripeApiError(f"Stripe {operation} timed out.", timed_out=True) from exc
        except httpx.HTTPError as exc:
            logger.warning("Stripe %s failed in transit: %s", operation, exc)
            raise StripeApiError(f"Stripe {operation} failed: {exc}") from exc
        finally:
            GATEWAY_LATENCY.labels(operation=operation).observe(time.perf_counter() - started)

        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = {"body": response.text}
            error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
            message = error.get("message") or f"Stripe {operation} was rejected."
            logger.warning("Stripe API error %s during %s: %s", response.status_code, operation, payload)
            raise StripeApiError(message, status_code=response.status_code, payload=payload)
        return response.json()

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v1/subscriptions/{subscription_id}", operation="retrieve_subscription")

    async def swap_subscription_price(
        self,
        subscription_id: str,
        price_id: str,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Replace the subscription's priced item, prorating the difference."""

        current = await self.retrieve_subscription(subscription_id)
        items = (current.get("items") or {}).get("data") or []
        if not items:
            raise StripeApiError(f"Stripe subscription {subscription_id} has no items to update.")
        logger.info("Swapping Stripe subscription %s to price %s.", subscription_id, price_id)
        return await self._request(
            "POST",
            f"/v1/subscriptions/{subscription_id}",
            operation="swap_subscription_price",
            form={
                "items": [{"id": items[0]["id"], "price": price_id}],
                "proration_behavior": PRORATION_BEHAVIOR,
            },
            idempotency_key=idempotency_key,
        )

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        logger.info("Cancelling Stripe subscription %s.", subscription_id)
        return await self._request("DELETE", f"/v1/subscriptions/{subscription_id}", operation="cancel_subscription")


def get_stripe_client() -> StripeClient:
    secret_key = require_env("STRIPE_SECRET_KEY", context="billing")
    base_url = env_str("STRIPE_API_BASE_URL", DEFAULT_STRIPE_API_BASE_URL) or DEFAULT_STRIPE_API_BASE_URL
    timeout = env_float("BILLING_GATEWAY_TIMEOUT_SECONDS", DEFAULT_GATEWAY_TIMEOUT_SECONDS, minimum=0.1)
    return StripeClient(secret_key=secret_key, base_url=base_url, timeout=timeout)


def get_webhook_secret() -> str:
    return require_env("STRIPE_WEBHOOK_SECRET", context="billing")


def _parse_signature_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp: Optional[int] = None
    signatures: List[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    *,
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str] = None,
    tolerance_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> int:
    """Check a ``Stripe-Signature`` header and return its timestamp.

    Raises :class:`WebhookSignatureInvalid` when the header is missing or
    malformed, no ``v1`` signature matches, or the timestamp falls outside the
    tolerance window.
    """

    if not payload or not signature_header:
        raise WebhookSignatureInvalid("Missing webhook payload or signature header.")
    timestamp, signatures = _parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        raise WebhookSignatureInvalid("Malformed Stripe-Signature header.")

    expected = compute_signature(payload, timestamp, secret or get_webhook_secret())
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureInvalid("Webhook signature does not match.")

    tolerance = (
        tolerance_seconds
        if tolerance_seconds is not None
        else env_int("BILLING_WEBHOOK_TOLERANCE_SECONDS", DEFAULT_WEBHOOK_TOLERANCE_SECONDS, minimum=0)
    )
    current = time.time() if now is None else now
    if tolerance and abs(current - timestamp) > tolerance:
        raise WebhookSignatureInvalid("Webhook timestamp is outside the tolerance window.")
    return timestamp


__all__ = [
    "StripeApiError",
    "StripeClient",
    "compute_signature",
    "get_stripe_client",
    "get_webhook_secret",
    "verify_webhook_signature",
]
