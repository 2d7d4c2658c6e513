"""Discount code models."""

from datetime import datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import Base, BaseModel, BigIntPK


class DiscountType(StrEnum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class DiscountScope(StrEnum):
    """Who a code is tracked against."""

    PER_FAMILY = "per_family"
    PER_STUDENT = "per_student"
    GLOBAL = "global"


class DiscountUsageType(StrEnum):
    ONE_TIME = "one_time"
    PER_STUDENT = "per_student"
    UNLIMITED = "unlimited"


class DiscountCode(BaseModel):
    """
    Promotional / loyalty discount code.

    current_uses only moves when a payment using the code succeeds, and only
    through a conditional update that keeps it <= max_uses.
    """

    __tablename__ = "discount_codes"

    # Stored upper-case; lookups are case-insensitive
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # Percentage codes: 0-100
    discount_value: Mapped[Decimal] = mapped_column(Numeric(7, 2), nullable=False, default=Decimal("0"))
    # Fixed amount codes: minor units
    discount_value_cents: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    scope: Mapped[str] = mapped_column(String(20), nullable=False, default=DiscountScope.GLOBAL.value)
    usage_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DiscountUsageType.UNLIMITED.value
    )
    applicable_to: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Optional restriction to one family / student
    family_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("families.id"), nullable=True, index=True
    )
    student_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("students.id"), nullable=True, index=True
    )

    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    valid_from: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_automatically: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    @property
    def is_percentage(self) -> bool:
        return self.discount_type == DiscountType.PERCENTAGE.value

    @property
    def has_uses_left(self) -> bool:
        return self.max_uses is None or self.current_uses < self.max_uses


class DiscountCodeUsage(Base):
    """One row per payment that consumed a use of a code."""

    __tablename__ = "discount_code_usage"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    discount_code_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("discount_codes.id"), nullable=False, index=True
    )
    # Unique: a redelivered confirmation cannot redeem twice
    payment_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("payments.id"), nullable=False, unique=True
    )
    family_id: Mapped[int] = mapped_column(BigIntPK, ForeignKey("families.id"), nullable=False, index=True)
    student_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("students.id"), nullable=True, index=True
    )
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    applicable_to: Mapped[str | None] = mapped_column(String(30), nullable=True)
    used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
