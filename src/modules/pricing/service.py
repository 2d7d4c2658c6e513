"""Prices of the charge options a family can pay for online."""

from dataclasses import dataclass
from enum import StrEnum

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import Settings, settings as default_settings
from src.modules.billing.types import ChargeCategory, LineItemType
from src.modules.families.models import Student
from src.modules.payments.models import Payment, PaymentStatus, PaymentStudent, PaymentType
from src.shared.utils.money import Money


class ChargeOption(StrEnum):
    MONTHLY_GROUP = "monthly_group"
    YEARLY_GROUP = "yearly_group"
    INDIVIDUAL_SESSION = "individual_session"
    INVOICE_PAYMENT = "invoice_payment"


@dataclass(frozen=True)
class ChargeOptionInfo:
    payment_type: PaymentType
    category: ChargeCategory
    item_type: LineItemType
    label: str
    per_student: bool


CHARGE_OPTIONS: dict[ChargeOption, ChargeOptionInfo] = {
    ChargeOption.MONTHLY_GROUP: ChargeOptionInfo(
        PaymentType.MONTHLY_SUBSCRIPTION,
        ChargeCategory.MONTHLY_GROUP,
        LineItemType.CLASS_ENROLLMENT,
        "Monthly group classes",
        per_student=True,
    ),
    ChargeOption.YEARLY_GROUP: ChargeOptionInfo(
        PaymentType.YEARLY_SUBSCRIPTION,
        ChargeCategory.YEARLY_GROUP,
        LineItemType.CLASS_ENROLLMENT,
        "Yearly group classes",
        per_student=True,
    ),
    ChargeOption.INDIVIDUAL_SESSION: ChargeOptionInfo(
        PaymentType.INDIVIDUAL_SESSION,
        ChargeCategory.INDIVIDUAL_SESSION,
        LineItemType.INDIVIDUAL_SESSION,
        "Individual session",
        per_student=False,
    ),
    ChargeOption.INVOICE_PAYMENT: ChargeOptionInfo(
        PaymentType.INVOICE_PAYMENT,
        ChargeCategory.INVOICE_PAYMENT,
        LineItemType.OTHER,
        "Invoice payment",
        per_student=False,
    ),
}


def get_option_info(option: ChargeOption | str) -> ChargeOptionInfo:
    return CHARGE_OPTIONS[ChargeOption(option)]


class PricingService:
    """
    Monthly classes are tiered: first month, second month, then the regular
    price, counted by the student's past succeeded monthly payments.
    """

    def __init__(self, db: AsyncSession, config: Settings | None = None):
        self.db = db
        self.config = config or default_settings

    async def count_paid_months(self, student_id: int) -> int:
        result = await self.db.scalar(
            select(func.count(func.distinct(Payment.id)))
            .select_from(PaymentStudent)
            .join(Payment, Payment.id == PaymentStudent.payment_id)
            .where(
                PaymentStudent.student_id == student_id,
                Payment.status == PaymentStatus.SUCCEEDED.value,
                Payment.type == PaymentType.MONTHLY_SUBSCRIPTION.value,
            )
        )
        return result or 0

    async def get_chargeable_amount(self, student: Student, option: ChargeOption | str) -> Money:
        option = ChargeOption(option)
        currency = self.config.currency
        if option == ChargeOption.MONTHLY_GROUP:
            paid_months = await self.count_paid_months(student.id)
            if paid_months == 0:
                return Money(self.config.monthly_first_month_price, currency)
            if paid_months == 1:
                return Money(self.config.monthly_second_month_price, currency)
            return Money(self.config.monthly_regular_price, currency)
        if option == ChargeOption.YEARLY_GROUP:
            return Money(self.config.yearly_price, currency)
        if option == ChargeOption.INDIVIDUAL_SESSION:
            return Money(self.config.individual_session_price, currency)
        raise ValueError(f"{option} is not priced per student")

    def get_supported_charge_options(self, student: Student) -> set[ChargeOption]:
        """Self-serve options; invoice payments are offered per invoice instead."""
        if not student.is_active:
            return set()
        return {ChargeOption.MONTHLY_GROUP, ChargeOption.YEARLY_GROUP, ChargeOption.INDIVIDUAL_SESSION}
