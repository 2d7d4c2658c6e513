"""Payment, PaymentTax and PaymentStudent models."""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import Base, BigIntPK
from src.shared.utils.money import Money


class PaymentType(StrEnum):
    MONTHLY_SUBSCRIPTION = "monthly_subscription"
    YEARLY_SUBSCRIPTION = "yearly_subscription"
    INDIVIDUAL_SESSION = "individual_session"
    EVENT_REGISTRATION = "event_registration"
    INVOICE_PAYMENT = "invoice_payment"
    STORE_PURCHASE = "store_purchase"
    OTHER = "other"


class PaymentStatus(StrEnum):
    """pending -> succeeded | failed. Terminal states never change."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class Payment(Base):
    """
    A family's payment through an external provider.

    Created pending before the provider is contacted. Only the provider
    confirmation path moves it to succeeded/failed.
    """

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)

    family_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("families.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )

    # Amounts in minor units
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    subtotal_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    discount_code_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("discount_codes.id"), nullable=True, index=True
    )
    # Set once the code's use counter was actually incremented for this payment
    discount_redeemed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    invoice_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("invoices.id"), nullable=True, index=True
    )
    # Individual session purchases
    quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)

    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    external_provider_session_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True, index=True
    )
    external_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    receipt_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    card_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    taxes: Mapped[list["PaymentTax"]] = relationship(
        "PaymentTax", back_populates="payment", lazy="selectin", order_by="PaymentTax.id"
    )
    students: Mapped[list["PaymentStudent"]] = relationship(
        "PaymentStudent", back_populates="payment", lazy="selectin", order_by="PaymentStudent.id"
    )

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING.value

    @property
    def is_terminal(self) -> bool:
        return not self.is_pending

    @property
    def total(self) -> Money:
        return Money(self.total_amount, self.currency)

    @property
    def student_ids(self) -> list[int]:
        return [s.student_id for s in self.students]


class PaymentStudent(Base):
    """Students a payment covers."""

    __tablename__ = "payment_students"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    student_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("students.id"), nullable=False, index=True
    )
    # Price charged for this student, minor units
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    payment: Mapped["Payment"] = relationship("Payment", back_populates="students")


class PaymentTax(Base):
    """Tax snapshot of a payment. Written with the payment, never updated."""

    __tablename__ = "payment_taxes"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tax_rate_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("tax_rates.id", ondelete="SET NULL"), nullable=True
    )
    tax_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax_name_snapshot: Mapped[str] = mapped_column(String(50), nullable=False)
    tax_rate_snapshot: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)

    payment: Mapped["Payment"] = relationship("Payment", back_populates="taxes")
