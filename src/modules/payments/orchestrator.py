"""Creates pending payments and opens provider sessions for them."""

import dataclasses
import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.audit.service import AuditAction, AuditService
from src.core.config import Settings, settings as default_settings
from src.core.exceptions import (
    DiscountInvalidError,
    NotFoundError,
    PaymentProviderError,
    PaymentRecordInconsistentError,
    ProviderSessionCreationFailedError,
    ValidationError,
)
from src.integrations.base import PaymentProvider, SessionRef
from src.modules.billing.calculator import ChargeBreakdown, LineItemInput, TaxRateInput, calculate_charge
from src.modules.discounts.selection import DiscountSelection
from src.modules.discounts.service import DiscountCandidate, DiscountService, DiscountValidationResult
from src.modules.families.models import Family, Student
from src.modules.families.service import FamilyDirectory
from src.modules.invoices.models import Invoice
from src.modules.payments.models import Payment, PaymentStatus, PaymentStudent
from src.modules.payments.schemas import PaymentQuoteRequest, PaymentSessionCreate
from src.modules.pricing.service import ChargeOption, ChargeOptionInfo, PricingService, get_option_info
from src.modules.tax_rates.service import TaxRateService, build_snapshots
from src.shared.utils.money import Money

logger = logging.getLogger(__name__)


@dataclass
class ChargeDraft:
    """Server-side amounts for one checkout submission."""

    family: Family
    info: ChargeOptionInfo
    students: list[Student]
    items: list[LineItemInput]
    # (student_id, amount) per covered student
    student_amounts: list[tuple[int, Money]]
    breakdown: ChargeBreakdown
    discount: DiscountValidationResult | None = None
    invoice: Invoice | None = None
    candidates: list[DiscountCandidate] = field(default_factory=list)
    tax_rates: list[TaxRateInput] = field(default_factory=list)
    discount_context: str | None = None
    discount_reset: bool = False

    @property
    def applied_discount(self) -> DiscountValidationResult | None:
        if self.discount is not None and self.discount.is_valid and self.breakdown.discount_amount.is_positive():
            return self.discount
        return None

    @property
    def discount_notice(self) -> str | None:
        if self.discount is not None and not self.discount.is_valid:
            return f"{self.discount.error_message}. Continuing without the discount."
        return None


@dataclass(frozen=True)
class PaymentSessionResult:
    payment: Payment
    session: SessionRef
    draft: ChargeDraft


class PaymentSessionOrchestrator:
    """
    Checkout flow: recompute the charge, write the pending payment, then ask
    the provider for a session and link it.

    The pending row is committed before the provider is contacted and the
    session id is committed before anything is returned, so a client never
    holds a reference the server cannot find.
    """

    def __init__(self, db: AsyncSession, provider: PaymentProvider, config: Settings | None = None):
        self.db = db
        self.provider = provider
        self.config = config or default_settings
        self.audit = AuditService(db)
        self.directory = FamilyDirectory(db)
        self.pricing = PricingService(db, self.config)
        self.discounts = DiscountService(db)
        self.tax_rates = TaxRateService(db)

    # --- Charge derivation ---

    async def _invoice_items(self, family: Family, invoice_id: int) -> tuple[Invoice, list[LineItemInput]]:
        invoice = await self.db.get(Invoice, invoice_id)
        if invoice is None or invoice.family_id != family.id:
            raise NotFoundError("Invoice", invoice_id)
        if not invoice.can_receive_payment:
            raise ValidationError(f"Invoice is {invoice.status} and cannot be paid", field="invoice_id")
        if invoice.currency != self.config.currency:
            raise ValidationError("Invoice currency is not accepted for online payment", field="invoice_id")
        item = LineItemInput(
            description=f"Invoice {invoice.invoice_number}",
            quantity=1,
            unit_price=Money(invoice.total_amount, invoice.currency),
            item_type=get_option_info(ChargeOption.INVOICE_PAYMENT).item_type,
        )
        return invoice, [item]

    async def _student_items(
        self, info: ChargeOptionInfo, option: ChargeOption, students: list[Student], quantity: int
    ) -> tuple[list[LineItemInput], list[tuple[int, Money]]]:
        items = []
        student_amounts = []
        for student in students:
            if option not in self.pricing.get_supported_charge_options(student):
                raise ValidationError(
                    f"{info.label} is not available for {student.full_name}", field="student_ids"
                )
            price = await self.pricing.get_chargeable_amount(student, option)
            item_quantity = 1 if info.per_student else quantity
            items.append(
                LineItemInput(
                    description=f"{info.label} - {student.full_name}",
                    quantity=item_quantity,
                    unit_price=price,
                    item_type=info.item_type,
                )
            )
            student_amounts.append((student.id, price * item_quantity))
        return items, student_amounts

    async def build_charge(self, data: PaymentSessionCreate, with_candidates: bool = False) -> ChargeDraft:
        """
        Authoritative amounts for a submission.

        Client totals are ignored. A rejected discount code only drops the
        discount; a tax lookup failure aborts the charge.
        """
        option = ChargeOption(data.option)
        info = get_option_info(option)
        currency = self.config.currency
        family = await self.directory.resolve_family(data.family_id)

        invoice = None
        students: list[Student] = []
        student_amounts: list[tuple[int, Money]] = []
        if option == ChargeOption.INVOICE_PAYMENT:
            invoice, items = await self._invoice_items(family, data.invoice_id)
        else:
            students = await self.directory.resolve_students(family.id, data.student_ids)
            items, student_amounts = await self._student_items(info, option, students, data.quantity)

        # Invoices carry their own taxes and discounts already
        if invoice is not None:
            breakdown = calculate_charge(items, currency)
            return ChargeDraft(family, info, students, items, student_amounts, breakdown, invoice=invoice)

        base = calculate_charge(items, currency)
        scope_student_id = students[0].id if len(students) == 1 else None

        discount = None
        if data.discount_code:
            discount = await self.discounts.validate_code(
                data.discount_code,
                family_id=family.id,
                applicable_to=info.category.value,
                subtotal=base.subtotal,
                student_id=scope_student_id,
            )

        candidates = []
        if with_candidates:
            candidates = await self.discounts.list_candidates(
                family_id=family.id,
                applicable_to=info.category.value,
                base_subtotal=base.subtotal,
                student_id=scope_student_id,
            )

        tax_rates = await self.tax_rates.resolve_applicable_rates(info.category.value)
        breakdown = calculate_charge(
            items,
            currency,
            discount_amount=discount.discount_amount if discount is not None and discount.is_valid else None,
            tax_rates=tax_rates,
        )
        return ChargeDraft(
            family,
            info,
            students,
            items,
            student_amounts,
            breakdown,
            discount=discount,
            candidates=candidates,
            tax_rates=tax_rates,
        )

    async def build_quote(self, data: PaymentQuoteRequest) -> ChargeDraft:
        """
        Same amounts the session would charge, plus the ranked eligible codes.

        A code chosen under a different option, set of students or quantity
        is dropped before pricing.
        """
        selection = DiscountSelection.restore(data.discount_context, data.discount_code)
        reset = selection.update_context(data.option, data.student_ids, data.quantity)
        if reset:
            logger.info("Charge changed for family %s; dropping discount selection", data.family_id)
        data = data.model_copy(update={"discount_code": selection.selected_code})

        draft = await self.build_charge(data, with_candidates=True)
        if data.client_total_amount is not None and data.client_total_amount != draft.breakdown.total.amount:
            logger.info(
                "Client total %s differs from server total %s for family %s",
                data.client_total_amount,
                draft.breakdown.total.amount,
                draft.family.id,
            )
        return dataclasses.replace(draft, discount_context=selection.context.key, discount_reset=reset)

    # --- Session creation ---

    def _without_discount(self, draft: ChargeDraft, error: DiscountInvalidError) -> ChargeDraft:
        """Same charge at full price, with the lost discount reported as a notice."""
        currency = draft.breakdown.currency
        return dataclasses.replace(
            draft,
            breakdown=calculate_charge(draft.items, currency, tax_rates=draft.tax_rates),
            discount=DiscountValidationResult.invalid(draft.discount.code, currency, error),
        )

    async def _insert_pending(self, draft: ChargeDraft, data: PaymentSessionCreate) -> Payment | None:
        """
        Write the pending payment and its snapshot rows in one transaction.

        A discount use is reserved in the same transaction. Returns None, with
        the row discarded, when the code ran out of uses since it was validated.
        """
        breakdown = draft.breakdown
        applied = draft.applied_discount
        payment = Payment(
            family_id=draft.family.id,
            type=draft.info.payment_type.value,
            status=PaymentStatus.PENDING.value,
            currency=breakdown.currency,
            subtotal_amount=breakdown.subtotal.amount,
            discount_amount=breakdown.discount_amount.amount,
            tax_amount=breakdown.tax_amount.amount,
            total_amount=breakdown.total.amount,
            discount_code_id=applied.discount_code_id if applied else None,
            discount_redeemed=False,
            invoice_id=draft.invoice.id if draft.invoice else None,
            quantity=data.quantity if data.option == ChargeOption.INDIVIDUAL_SESSION else None,
            provider=self.provider.name,
        )
        self.db.add(payment)
        try:
            await self.db.flush()
            if applied is not None:
                reserved = await self.discounts.redeem(
                    discount_code_id=applied.discount_code_id,
                    payment_id=payment.id,
                    family_id=draft.family.id,
                    discount_amount=breakdown.discount_amount.amount,
                    student_id=draft.students[0].id if len(draft.students) == 1 else None,
                    applicable_to=draft.info.category.value,
                )
                if not reserved:
                    # Nothing else was written yet; drop the row and let the caller reprice
                    await self.db.delete(payment)
                    await self.db.flush()
                    return None
                payment.discount_redeemed = True
            self.db.add_all(build_snapshots(payment.id, breakdown.taxes))
            for student_id, amount in draft.student_amounts:
                self.db.add(PaymentStudent(payment_id=payment.id, student_id=student_id, amount=amount.amount))
            await self.audit.log(
                action=AuditAction.CREATE_PAYMENT,
                entity_type="Payment",
                entity_id=payment.id,
                actor=f"family:{draft.family.id}",
                new_values={
                    "type": payment.type,
                    "total_amount": payment.total_amount,
                    "discount_amount": payment.discount_amount,
                    "provider": payment.provider,
                },
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception("Could not record pending payment for family %s", draft.family.id)
            raise
        return payment

    def _metadata(self, payment: Payment) -> dict[str, str]:
        return {
            "payment_id": str(payment.id),
            "family_id": str(payment.family_id),
            "type": payment.type,
            "subtotal_amount": str(payment.subtotal_amount),
            "discount_amount": str(payment.discount_amount),
            "tax_amount": str(payment.tax_amount),
            "total_amount": str(payment.total_amount),
        }

    async def create_payment_session(self, data: PaymentSessionCreate) -> PaymentSessionResult:
        draft = await self.build_charge(data)
        if not draft.breakdown.total.is_positive():
            raise ValidationError("Nothing to pay for this selection")

        payment = await self._insert_pending(draft, data)
        if payment is None:
            logger.info(
                "Discount code %s ran out of uses; charging family %s full price",
                draft.discount.code,
                draft.family.id,
            )
            draft = self._without_discount(
                draft, DiscountInvalidError("This discount code has reached its usage limit", reason="exhausted")
            )
            payment = await self._insert_pending(draft, data)
        payment_id = payment.id
        logger.info(
            "Pending payment %s created for family %s: %s",
            payment_id,
            draft.family.id,
            draft.breakdown.total.format(),
        )

        try:
            session = await self.provider.create_session(
                amount=draft.breakdown.total.amount,
                currency=draft.breakdown.currency,
                metadata=self._metadata(payment),
                success_url=self.config.payment_success_url.format(payment_id=payment_id),
                cancel_url=self.config.payment_cancel_url.format(payment_id=payment_id),
                description=draft.info.label,
            )
        except PaymentProviderError as exc:
            logger.error("Provider %s could not open a session for payment %s: %s", self.provider.name, payment_id, exc)
            raise ProviderSessionCreationFailedError(payment_id, self.provider.name) from exc

        try:
            payment.external_provider_session_id = session.session_id
            await self.audit.log(
                action=AuditAction.LINK_PROVIDER_SESSION,
                entity_type="Payment",
                entity_id=payment_id,
                actor="system",
                new_values={"external_provider_session_id": session.session_id},
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.critical(
                "Payment %s could not be linked to %s session %s; manual reconciliation required",
                payment_id,
                self.provider.name,
                session.session_id,
                exc_info=True,
            )
            raise PaymentRecordInconsistentError(payment_id, session.session_id) from exc

        return PaymentSessionResult(payment=payment, session=session, draft=draft)

    async def confirm_embedded(self, payment_id: int, source_token: str) -> Payment:
        """
        Charge a tokenized card for an embedded session.

        The local status is left alone; it moves only when the provider's
        webhook arrives.
        """
        payment = await self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        if not payment.is_pending:
            raise ValidationError(f"Payment is already {payment.status}")
        if not payment.external_provider_session_id:
            raise ValidationError("Payment has no provider session")
        if payment.provider != self.provider.name:
            raise ValidationError(f"Payment was started with {payment.provider}")

        provider_payment_id = await self.provider.confirm_session(
            session_id=payment.external_provider_session_id,
            source_token=source_token,
            amount=payment.total_amount,
            currency=payment.currency,
            metadata=self._metadata(payment),
        )
        logger.info("Payment %s submitted to %s as %s", payment.id, self.provider.name, provider_payment_id)
        return payment
