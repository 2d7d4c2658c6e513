"""Payment lookups and the confirmation state machine."""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.config import settings
from src.core.exceptions import NotFoundError
from src.integrations.base import ConfirmedEvent, PaymentOutcome
from src.modules.discounts.service import DiscountService
from src.modules.invoices.service import InvoiceService
from src.modules.payments.models import Payment, PaymentStatus, PaymentType
from src.shared.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)


class ConfirmationOutcome(StrEnum):
    APPLIED = "applied"
    ALREADY_TERMINAL = "already_terminal"
    UNMATCHED = "unmatched"
    AMOUNT_MISMATCH = "amount_mismatch"
    NOT_FINAL = "not_final"


@dataclass
class ConfirmationResult:
    outcome: ConfirmationOutcome
    payment: Payment | None = None
    message: str | None = None


class PaymentService:
    """Service for reading payments and settling them from provider events."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    # --- Reads ---

    async def get_payment_by_id(self, payment_id: int) -> Payment:
        payment = await self.find_by_id(payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    async def find_by_id(self, payment_id: int) -> Payment | None:
        result = await self.db.execute(
            select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_session_id(self, provider_session_id: str) -> Payment | None:
        if not provider_session_id:
            return None
        result = await self.db.execute(
            select(Payment)
            .where(Payment.external_provider_session_id == provider_session_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_payments(
        self,
        family_id: int | None = None,
        status: PaymentStatus | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[Payment], int]:
        query = select(Payment)
        count_query = select(func.count()).select_from(Payment)
        if family_id is not None:
            query = query.where(Payment.family_id == family_id)
            count_query = count_query.where(Payment.family_id == family_id)
        if status is not None:
            query = query.where(Payment.status == status.value)
            count_query = count_query.where(Payment.status == status.value)

        total = (await self.db.execute(count_query)).scalar_one()
        query = query.order_by(Payment.created_at.desc(), Payment.id.desc()).offset((page - 1) * limit).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def find_recent_pending(
        self,
        family_id: int,
        payment_type: PaymentType | str,
        student_ids: list[int] | None = None,
        window_minutes: int | None = None,
    ) -> Payment | None:
        """
        A pending payment for the same purchase started recently, if any.

        Used to warn before opening a second checkout for the same thing.
        """
        window = window_minutes or settings.pending_payment_duplicate_window_minutes
        cutoff = utcnow() - timedelta(minutes=window)
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.family_id == family_id,
                Payment.type == str(payment_type),
                Payment.status == PaymentStatus.PENDING.value,
            )
            .order_by(Payment.created_at.desc(), Payment.id.desc())
        )
        wanted = set(student_ids or [])
        for payment in result.scalars().all():
            if as_utc(payment.created_at) < cutoff:
                continue
            if wanted and set(payment.student_ids) != wanted:
                continue
            return payment
        return None

    # --- Confirmation state machine ---

    async def _locate(self, event: ConfirmedEvent) -> tuple[Payment | None, bool]:
        """The payment an event refers to, and whether it matched the stored session id."""
        payment = await self.find_by_session_id(event.provider_session_id)
        if payment is not None:
            return payment, True
        # Hosted Stripe checkouts also emit PaymentIntent events keyed by the intent id
        payment_id = event.metadata.get("payment_id")
        if payment_id and payment_id.isdigit():
            candidate = await self.db.get(Payment, int(payment_id))
            if candidate is not None and candidate.external_provider_session_id is not None:
                return candidate, False
        return None, False

    async def apply_confirmation(self, event: ConfirmedEvent, actor: str | None = None) -> ConfirmationResult:
        """
        Move a pending payment to its terminal state.

        Redelivered or late events for a terminal payment change nothing. The
        status flip is a conditional update on status='pending', so of two
        racing deliveries only one applies side effects.
        """
        payment, by_session = await self._locate(event)
        if payment is None:
            logger.warning("No payment for provider session %s (event %s)", event.provider_session_id, event.event_id)
            return ConfirmationResult(ConfirmationOutcome.UNMATCHED, message="Payment not found")

        if payment.is_terminal:
            logger.info("Payment %s already %s; ignoring %s", payment.id, payment.status, event.event_type)
            return ConfirmationResult(ConfirmationOutcome.ALREADY_TERMINAL, payment=payment)

        if not by_session and event.outcome == PaymentOutcome.FAILED:
            # A declined attempt inside a hosted checkout; the customer can still
            # retry on the same page. Only the session's own expiry fails it.
            logger.info("Payment %s: %s while its checkout is still open", payment.id, event.event_type)
            return ConfirmationResult(ConfirmationOutcome.NOT_FINAL, payment=payment)

        if event.outcome == PaymentOutcome.SUCCEEDED:
            amount_differs = event.amount is not None and event.amount != payment.total_amount
            currency_differs = event.currency is not None and event.currency.upper() != payment.currency
            if amount_differs or currency_differs:
                message = (
                    f"Amount mismatch for payment {payment.id}: expected {payment.total_amount} {payment.currency}, "
                    f"got {event.amount} {event.currency}"
                )
                logger.error(message)
                return ConfirmationResult(ConfirmationOutcome.AMOUNT_MISMATCH, payment=payment, message=message)

        succeeded = event.outcome == PaymentOutcome.SUCCEEDED
        new_status = PaymentStatus.SUCCEEDED if succeeded else PaymentStatus.FAILED
        values = {"status": new_status.value, "updated_at": func.now()}
        if event.payment_intent_id:
            values["external_payment_intent_id"] = event.payment_intent_id
        if succeeded:
            values.update(
                payment_date=event.paid_at or utcnow(),
                receipt_url=event.receipt_url,
                payment_method=event.payment_method,
                card_last4=event.card_last4,
            )
        else:
            values["failure_reason"] = (event.failure_reason or "Payment failed")[:500]

        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info("Payment %s settled concurrently; skipping %s", payment.id, event.event_id)
            return ConfirmationResult(ConfirmationOutcome.ALREADY_TERMINAL, payment=payment)

        if succeeded:
            await self._apply_success_side_effects(payment, event)
        else:
            await self._release_discount(payment.id)

        await self.audit.log(
            action=AuditAction.PAYMENT_SUCCEEDED if succeeded else AuditAction.PAYMENT_FAILED,
            entity_type="Payment",
            entity_id=payment.id,
            actor=actor,
            old_values={"status": PaymentStatus.PENDING.value},
            new_values={"status": new_status.value, "event_id": event.event_id},
        )
        await self.db.commit()
        logger.info("Payment %s %s via %s", payment.id, new_status.value, event.event_type)

        return ConfirmationResult(ConfirmationOutcome.APPLIED, payment=await self.get_payment_by_id(payment.id))

    async def _apply_success_side_effects(self, payment: Payment, event: ConfirmedEvent) -> None:
        # The discount use was reserved when the payment was created
        if payment.invoice_id is not None:
            await InvoiceService(self.db).mark_paid(payment.invoice_id, paid_at=event.paid_at)

    async def _release_discount(self, payment_id: int) -> None:
        if await DiscountService(self.db).release(payment_id):
            await self.db.execute(
                update(Payment)
                .where(Payment.id == payment_id)
                .values(discount_redeemed=False)
                .execution_options(synchronize_session=False)
            )

    # --- Cleanup ---

    async def expire_stale_pending(self, older_than_minutes: int | None = None) -> list[int]:
        """
        Fail pending payments that never got a provider session.

        Without a provider reference no webhook can ever settle them.
        """
        minutes = older_than_minutes or settings.stale_pending_payment_minutes
        cutoff = utcnow() - timedelta(minutes=minutes)
        result = await self.db.execute(
            select(Payment.id, Payment.created_at).where(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.external_provider_session_id.is_(None),
            )
        )
        stale_ids = [row.id for row in result.all() if as_utc(row.created_at) < cutoff]

        expired = []
        for payment_id in stale_ids:
            updated = await self.db.execute(
                update(Payment)
                .where(
                    Payment.id == payment_id,
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.external_provider_session_id.is_(None),
                )
                .values(
                    status=PaymentStatus.FAILED.value,
                    failure_reason="Expired before a provider session was created",
                    updated_at=func.now(),
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount == 1:
                expired.append(payment_id)
                await self._release_discount(payment_id)
                await self.audit.log(
                    action=AuditAction.PAYMENT_EXPIRED,
                    entity_type="Payment",
                    entity_id=payment_id,
                    actor="system",
                    new_values={"status": PaymentStatus.FAILED.value},
                )
        await self.db.commit()
        if expired:
            logger.info("Expired %d stale pending payments: %s", len(expired), expired)
        return expired
