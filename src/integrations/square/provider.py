"""Square adapter over the REST API (Payments and Checkout payment links)."""

import base64
import hashlib
import hmac
import json
import logging
import secrets
import uuid
from datetime import datetime
from typing import Any, Mapping

import httpx

from src.core.exceptions import PaymentProviderError, WebhookSignatureError
from src.integrations.base import (
    ConfirmedEvent,
    PaymentOutcome,
    PaymentProvider,
    SessionRef,
    WebhookParseResult,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-square-hmacsha256-signature"
REFERENCE_PREFIX = "dojo_"

_SUCCEEDED = {"COMPLETED"}
_FAILED = {"FAILED", "CANCELED"}


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def sign_payload(signature_key: str, notification_url: str, raw_payload: bytes) -> str:
    """base64(HMAC-SHA256(key, notification_url + body))."""
    digest = hmac.new(
        signature_key.encode("utf-8"),
        notification_url.encode("utf-8") + raw_payload,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


class SquareProvider(PaymentProvider):
    """
    Embedded flow: the session is a local reference id; the browser tokenizes
    the card with the Web Payments SDK and the token is charged through
    confirm_session with that reference. Hosted flow: a payment link whose
    order id is the session reference.
    """

    name = "square"

    def __init__(
        self,
        access_token: str,
        location_id: str,
        base_url: str,
        webhook_signature_key: str,
        notification_url: str,
        api_version: str = "2024-08-15",
        checkout_mode: str = "embedded",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.location_id = location_id
        self.webhook_signature_key = webhook_signature_key
        self.notification_url = notification_url
        self.checkout_mode = checkout_mode
        self.http = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Square-Version": api_version,
                "Content-Type": "application/json",
            },
            timeout=15.0,
            transport=transport,
        )

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.http.post(path, json=body)
        except httpx.HTTPError as exc:
            logger.error("Square request %s failed: %s", path, exc)
            raise PaymentProviderError(self.name, "Payment service unavailable") from exc

        data = response.json() if response.content else {}
        if response.status_code >= 400:
            errors = data.get("errors") or []
            detail = "; ".join(e.get("detail") or e.get("code", "") for e in errors) or response.reason_phrase
            logger.error("Square %s returned %s: %s", path, response.status_code, detail)
            raise PaymentProviderError(self.name, detail)
        return data

    async def create_session(
        self,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        description: str | None = None,
    ) -> SessionRef:
        if self.checkout_mode == "hosted":
            data = await self._post(
                "/v2/online-checkout/payment-links",
                {
                    "idempotency_key": str(uuid.uuid4()),
                    "quick_pay": {
                        "name": description or "Payment",
                        "price_money": {"amount": amount, "currency": currency},
                        "location_id": self.location_id,
                    },
                    "checkout_options": {"redirect_url": success_url},
                    "payment_note": f"payment_id={metadata.get('payment_id', '')}",
                },
            )
            link = data.get("payment_link") or {}
            if not link.get("order_id") or not link.get("url"):
                raise PaymentProviderError(self.name, "Payment link response is missing order id or url")
            return SessionRef(session_id=link["order_id"], redirect_url=link["url"])

        return SessionRef(session_id=f"{REFERENCE_PREFIX}{secrets.token_hex(12)}")

    async def confirm_session(
        self, session_id: str, source_token: str, amount: int, currency: str, metadata: dict[str, str]
    ) -> str:
        data = await self._post(
            "/v2/payments",
            {
                # Same reference twice never charges twice
                "idempotency_key": session_id,
                "source_id": source_token,
                "amount_money": {"amount": amount, "currency": currency},
                "location_id": self.location_id,
                "reference_id": session_id,
                "note": f"payment_id={metadata.get('payment_id', '')}",
                "autocomplete": True,
            },
        )
        payment = data.get("payment") or {}
        return payment.get("id") or ""

    def verify_signature(self, raw_payload: bytes, signature: str) -> None:
        if not self.webhook_signature_key or not self.notification_url:
            raise WebhookSignatureError(self.name, "Square webhook signature key is not configured")
        expected = sign_payload(self.webhook_signature_key, self.notification_url, raw_payload)
        if not hmac.compare_digest(expected, signature or ""):
            raise WebhookSignatureError(self.name)

    def parse_webhook(self, raw_payload: bytes, headers: Mapping[str, str]) -> WebhookParseResult:
        self.verify_signature(raw_payload, headers.get(SIGNATURE_HEADER, ""))
        payload: dict[str, Any] = json.loads(raw_payload)

        event_id = payload.get("event_id") or ""
        event_type = payload.get("type") or ""
        payment = ((payload.get("data") or {}).get("object") or {}).get("payment") or {}
        status = (payment.get("status") or "").upper()

        confirmed = None
        if event_type in ("payment.created", "payment.updated") and (status in _SUCCEEDED or status in _FAILED):
            money = payment.get("amount_money") or {}
            card = (payment.get("card_details") or {}).get("card") or {}
            succeeded = status in _SUCCEEDED
            confirmed = ConfirmedEvent(
                event_id=event_id,
                event_type=event_type,
                provider_session_id=payment.get("reference_id") or payment.get("order_id") or "",
                outcome=PaymentOutcome.SUCCEEDED if succeeded else PaymentOutcome.FAILED,
                receipt_url=payment.get("receipt_url"),
                paid_at=_parse_timestamp(payment.get("updated_at")) if succeeded else None,
                amount=money.get("amount"),
                currency=money.get("currency"),
                payment_intent_id=payment.get("id"),
                payment_method=(payment.get("source_type") or "").lower() or None,
                card_last4=card.get("last_4"),
                failure_reason=None if succeeded else f"Square payment {status.lower()}",
            )

        return WebhookParseResult(event_id=event_id, event_type=event_type, payload=payload, confirmed=confirmed)

    async def aclose(self) -> None:
        await self.http.aclose()
