"""Stripe adapter: PaymentIntents (embedded) or Checkout Sessions (hosted)."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

import stripe
from fastapi.concurrency import run_in_threadpool

from src.core.exceptions import PaymentProviderError, WebhookSignatureError
from src.integrations.base import (
    ConfirmedEvent,
    PaymentOutcome,
    PaymentProvider,
    SessionRef,
    WebhookParseResult,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"


def _paid_at(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


class StripeProvider(PaymentProvider):
    name = "stripe"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        checkout_mode: str = "embedded",
        client: stripe.StripeClient | None = None,
    ):
        self.webhook_secret = webhook_secret
        self.checkout_mode = checkout_mode
        # One client per process instead of the module-level stripe.api_key
        self.client = client or stripe.StripeClient(secret_key or "sk_unconfigured")

    async def create_session(
        self,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        description: str | None = None,
    ) -> SessionRef:
        try:
            if self.checkout_mode == "hosted":
                session = await run_in_threadpool(
                    self.client.checkout.sessions.create,
                    params={
                        "mode": "payment",
                        "line_items": [
                            {
                                "quantity": 1,
                                "price_data": {
                                    "currency": currency.lower(),
                                    "unit_amount": amount,
                                    "product_data": {"name": description or "Payment"},
                                },
                            }
                        ],
                        "success_url": success_url,
                        "cancel_url": cancel_url,
                        "metadata": metadata,
                        "payment_intent_data": {"metadata": metadata},
                    },
                )
                return SessionRef(session_id=session.id, redirect_url=session.url)

            intent = await run_in_threadpool(
                self.client.payment_intents.create,
                params={
                    "amount": amount,
                    "currency": currency.lower(),
                    "metadata": metadata,
                    "description": description,
                    "automatic_payment_methods": {"enabled": True},
                },
            )
            return SessionRef(session_id=intent.id, client_secret=intent.client_secret)
        except stripe.StripeError as exc:
            logger.error("Stripe session creation failed: %s", getattr(exc, "user_message", None) or exc)
            raise PaymentProviderError(self.name, getattr(exc, "user_message", None) or str(exc)) from exc

    async def confirm_session(
        self, session_id: str, source_token: str, amount: int, currency: str, metadata: dict[str, str]
    ) -> str:
        """Server-side confirmation of a PaymentIntent with a PaymentMethod id."""
        try:
            intent = await run_in_threadpool(
                self.client.payment_intents.confirm,
                session_id,
                params={"payment_method": source_token},
            )
        except stripe.StripeError as exc:
            raise PaymentProviderError(self.name, getattr(exc, "user_message", None) or str(exc)) from exc
        return intent.id

    async def fetch_charge_details(self, payment_intent_id: str) -> dict[str, str | None]:
        """Receipt URL and card of the latest charge; best effort."""
        try:
            intent = await run_in_threadpool(
                self.client.payment_intents.retrieve,
                payment_intent_id,
                params={"expand": ["latest_charge"]},
            )
        except stripe.StripeError:
            logger.warning("Could not load charge details for %s", payment_intent_id, exc_info=True)
            return {}
        charge = intent.get("latest_charge") or {}
        if isinstance(charge, str):
            return {}
        card = (charge.get("payment_method_details") or {}).get("card") or {}
        return {
            "receipt_url": charge.get("receipt_url"),
            "card_last4": card.get("last4"),
            "payment_method": card.get("brand") or "card",
        }

    def verify_signature(self, raw_payload: bytes, signature: str) -> None:
        if not self.webhook_secret:
            raise WebhookSignatureError(self.name, "Stripe webhook secret is not configured")
        try:
            stripe.WebhookSignature.verify_header(
                raw_payload.decode("utf-8"), signature, self.webhook_secret
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise WebhookSignatureError(self.name) from exc

    def parse_webhook(self, raw_payload: bytes, headers: Mapping[str, str]) -> WebhookParseResult:
        self.verify_signature(raw_payload, headers.get(SIGNATURE_HEADER, ""))
        payload: dict[str, Any] = json.loads(raw_payload)

        event_id = payload.get("id") or ""
        event_type = payload.get("type") or ""
        obj = (payload.get("data") or {}).get("object") or {}
        metadata = {k: str(v) for k, v in (obj.get("metadata") or {}).items()}

        confirmed = None
        if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
            succeeded = event_type == "payment_intent.succeeded"
            last_error = obj.get("last_payment_error") or {}
            confirmed = ConfirmedEvent(
                event_id=event_id,
                event_type=event_type,
                provider_session_id=obj.get("id") or "",
                outcome=PaymentOutcome.SUCCEEDED if succeeded else PaymentOutcome.FAILED,
                paid_at=_paid_at(payload.get("created")) if succeeded else None,
                amount=obj.get("amount_received") if succeeded else obj.get("amount"),
                currency=(obj.get("currency") or "").upper() or None,
                payment_intent_id=obj.get("id"),
                failure_reason=None if succeeded else last_error.get("message"),
                metadata=metadata,
            )
        elif event_type == "checkout.session.completed" and obj.get("payment_status") == "paid":
            confirmed = ConfirmedEvent(
                event_id=event_id,
                event_type=event_type,
                provider_session_id=obj.get("id") or "",
                outcome=PaymentOutcome.SUCCEEDED,
                paid_at=_paid_at(payload.get("created")),
                amount=obj.get("amount_total"),
                currency=(obj.get("currency") or "").upper() or None,
                payment_intent_id=obj.get("payment_intent"),
                metadata=metadata,
            )
        elif event_type == "checkout.session.expired":
            confirmed = ConfirmedEvent(
                event_id=event_id,
                event_type=event_type,
                provider_session_id=obj.get("id") or "",
                outcome=PaymentOutcome.FAILED,
                failure_reason="Checkout session expired",
                metadata=metadata,
            )

        return WebhookParseResult(event_id=event_id, event_type=event_type, payload=payload, confirmed=confirmed)
