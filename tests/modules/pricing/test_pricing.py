import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import Settings
from src.modules.families.models import Family, Student
from src.modules.payments.models import Payment, PaymentStatus, PaymentStudent, PaymentType
from src.modules.pricing.service import ChargeOption, PricingService, get_option_info
from src.shared.utils.money import Money

CONFIG = Settings(
    monthly_first_month_price=10000,
    monthly_second_month_price=11000,
    monthly_regular_price=12100,
    yearly_price=120000,
    individual_session_price=5000,
)


async def paid_month(db: AsyncSession, student: Student, status: str = PaymentStatus.SUCCEEDED.value, type_=None):
    payment = Payment(
        family_id=student.family_id,
        type=type_ or PaymentType.MONTHLY_SUBSCRIPTION.value,
        status=status,
        currency="CAD",
        subtotal_amount=10000,
        total_amount=10000,
        provider="stripe",
    )
    db.add(payment)
    await db.flush()
    db.add(PaymentStudent(payment_id=payment.id, student_id=student.id, amount=10000))
    await db.commit()


class TestMonthlyTiers:
    """First, second, then regular monthly price."""

    async def test_tier_follows_paid_months(self, db_session: AsyncSession, students: list[Student]):
        student = students[0]
        pricing = PricingService(db_session, CONFIG)

        assert await pricing.get_chargeable_amount(student, ChargeOption.MONTHLY_GROUP) == Money(10000, "CAD")
        await paid_month(db_session, student)
        assert await pricing.get_chargeable_amount(student, ChargeOption.MONTHLY_GROUP) == Money(11000, "CAD")
        await paid_month(db_session, student)
        assert await pricing.get_chargeable_amount(student, ChargeOption.MONTHLY_GROUP) == Money(12100, "CAD")

    async def test_only_succeeded_monthly_payments_count(self, db_session: AsyncSession, students: list[Student]):
        student = students[0]
        await paid_month(db_session, student, status=PaymentStatus.FAILED.value)
        await paid_month(db_session, student, status=PaymentStatus.PENDING.value)
        await paid_month(db_session, student, type_=PaymentType.YEARLY_SUBSCRIPTION.value)
        await paid_month(db_session, students[1])
        pricing = PricingService(db_session, CONFIG)

        assert await pricing.count_paid_months(student.id) == 0

    async def test_flat_prices(self, db_session: AsyncSession, students: list[Student]):
        pricing = PricingService(db_session, CONFIG)
        assert await pricing.get_chargeable_amount(students[0], "yearly_group") == Money(120000, "CAD")
        assert await pricing.get_chargeable_amount(students[0], "individual_session") == Money(5000, "CAD")
        with pytest.raises(ValueError):
            await pricing.get_chargeable_amount(students[0], ChargeOption.INVOICE_PAYMENT)


class TestChargeOptions:
    async def test_inactive_student_has_no_options(self, db_session: AsyncSession, family: Family):
        student = Student(family_id=family.id, first_name="Mai", last_name="Tanaka", is_active=False)
        db_session.add(student)
        await db_session.commit()
        pricing = PricingService(db_session, CONFIG)

        assert pricing.get_supported_charge_options(student) == set()

    def test_option_info(self):
        info = get_option_info("individual_session")
        assert info.payment_type == PaymentType.INDIVIDUAL_SESSION
        assert info.per_student is False
        assert get_option_info(ChargeOption.MONTHLY_GROUP).per_student is True
