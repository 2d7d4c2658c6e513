import dataclasses
import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.integrations.base import ConfirmedEvent, PaymentOutcome, PaymentProvider, WebhookParseResult
from src.integrations.webhooks.models import WebhookEvent, WebhookEventStatus
from src.modules.payments.service import ConfirmationOutcome, PaymentService

logger = logging.getLogger(__name__)

_STATUS_BY_OUTCOME = {
    ConfirmationOutcome.APPLIED: WebhookEventStatus.PROCESSED,
    ConfirmationOutcome.ALREADY_TERMINAL: WebhookEventStatus.DUPLICATE,
    ConfirmationOutcome.UNMATCHED: WebhookEventStatus.UNMATCHED,
    ConfirmationOutcome.AMOUNT_MISMATCH: WebhookEventStatus.ERROR,
    ConfirmationOutcome.NOT_FINAL: WebhookEventStatus.IGNORED,
}


@dataclasses.dataclass(frozen=True)
class WebhookHandleResult:
    status: WebhookEventStatus
    webhook_event_id: int
    payment_id: int | None = None


# A stored event in one of these states was never fully handled and may be retried
_RETRYABLE_STATUSES = {WebhookEventStatus.RECEIVED.value, WebhookEventStatus.ERROR.value}


class WebhookService:
    """
    Verified provider notifications -> payment confirmations.

    Every delivery is logged once per (provider, event_id). A redelivery of an
    event that was already handled changes nothing.
    """

    def __init__(self, db: AsyncSession, provider: PaymentProvider):
        self.db = db
        self.provider = provider

    async def _record(self, parsed: WebhookParseResult) -> tuple[WebhookEvent, bool]:
        """Insert the event first for idempotency. Returns (event, is_new)."""
        confirmed = parsed.confirmed
        event = WebhookEvent(
            provider=self.provider.name,
            event_id=parsed.event_id,
            event_type=parsed.event_type,
            provider_session_id=confirmed.provider_session_id if confirmed else None,
            raw_payload=parsed.payload,
            status=WebhookEventStatus.RECEIVED.value,
        )
        self.db.add(event)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.db.scalar(
                select(WebhookEvent).where(
                    WebhookEvent.provider == self.provider.name,
                    WebhookEvent.event_id == parsed.event_id,
                )
            )
            if existing is not None:
                return existing, False
            raise
        return event, True

    async def _enrich(self, confirmed: ConfirmedEvent) -> ConfirmedEvent:
        if confirmed.outcome != PaymentOutcome.SUCCEEDED or confirmed.receipt_url or not confirmed.payment_intent_id:
            return confirmed
        details = await self.provider.fetch_charge_details(confirmed.payment_intent_id)
        updates = {k: v for k, v in details.items() if v and getattr(confirmed, k, None) is None}
        return dataclasses.replace(confirmed, **updates) if updates else confirmed

    async def _finish(
        self,
        event: WebhookEvent,
        status: WebhookEventStatus,
        payment_id: int | None = None,
        error_message: str | None = None,
    ) -> WebhookEvent:
        event.status = status.value
        event.payment_id = payment_id
        event.error_message = error_message[:500] if error_message else None
        event.processed_at = func.now()
        await self.db.commit()
        await self.db.refresh(event)
        return event

    async def handle(self, raw_payload: bytes, headers) -> WebhookHandleResult:
        parsed = self.provider.parse_webhook(raw_payload, headers)
        logger.info("%s webhook %s (%s)", self.provider.name, parsed.event_id, parsed.event_type)

        event, is_new = await self._record(parsed)
        if not is_new and event.status not in _RETRYABLE_STATUSES:
            logger.info("Duplicate %s webhook %s ignored", self.provider.name, parsed.event_id)
            return WebhookHandleResult(WebhookEventStatus.DUPLICATE, event.id, event.payment_id)

        if parsed.confirmed is None:
            event = await self._finish(event, WebhookEventStatus.IGNORED)
            return WebhookHandleResult(WebhookEventStatus.IGNORED, event.id)

        event_id = event.id
        try:
            confirmed = await self._enrich(parsed.confirmed)
            result = await PaymentService(self.db).apply_confirmation(confirmed, actor=f"webhook:{self.provider.name}")
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("Failed to apply %s webhook %s", self.provider.name, parsed.event_id)
            event = await self.db.get(WebhookEvent, event_id)
            await self._finish(event, WebhookEventStatus.ERROR, error_message=str(exc))
            raise

        status = _STATUS_BY_OUTCOME[result.outcome]
        event = await self._finish(
            event,
            status,
            payment_id=result.payment.id if result.payment else None,
            error_message=result.message if result.outcome == ConfirmationOutcome.AMOUNT_MISMATCH else None,
        )
        return WebhookHandleResult(status, event.id, event.payment_id)

