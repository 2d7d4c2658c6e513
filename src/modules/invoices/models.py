"""Invoice, InvoiceLineItem and InvoiceLineItemTax models."""

from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import Base, BigIntPK, TimestampMixin


class InvoiceStatus(StrEnum):
    """Invoice status enumeration."""

    DRAFT = "draft"
    ISSUED = "issued"
    PAID = "paid"
    CANCELLED = "cancelled"


class Invoice(TimestampMixin, Base):
    """Invoice for a family. Amounts are minor units."""

    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    invoice_number: Mapped[str | None] = mapped_column(
        String(50), nullable=True, unique=True, index=True
    )

    family_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("families.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.DRAFT.value, index=True
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    issue_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    line_items: Mapped[list["InvoiceLineItem"]] = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceLineItem.sort_order",
    )

    @property
    def is_editable(self) -> bool:
        """Line items can only change while the invoice is a draft."""
        return self.status == InvoiceStatus.DRAFT.value

    @property
    def can_receive_payment(self) -> bool:
        return self.status == InvoiceStatus.ISSUED.value


class InvoiceLineItem(Base):
    """Line item in an invoice, with its computed amounts stored."""

    __tablename__ = "invoice_line_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )

    description: Mapped[str] = mapped_column(String(255), nullable=False)
    item_type: Mapped[str] = mapped_column(String(30), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_rate: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)

    gross_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    tax_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    line_total: Mapped[int] = mapped_column(BigInteger, nullable=False)

    service_period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    service_period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="line_items")
    taxes: Mapped[list["InvoiceLineItemTax"]] = relationship(
        "InvoiceLineItemTax",
        back_populates="line_item",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceLineItemTax.id",
    )


class InvoiceLineItemTax(Base):
    """Tax snapshot of one line item."""

    __tablename__ = "invoice_line_item_taxes"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    line_item_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("invoice_line_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tax_rate_id: Mapped[int | None] = mapped_column(
        BigIntPK, ForeignKey("tax_rates.id", ondelete="SET NULL"), nullable=True
    )
    tax_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax_name_snapshot: Mapped[str] = mapped_column(String(50), nullable=False)
    tax_rate_snapshot: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)

    line_item: Mapped["InvoiceLineItem"] = relationship("InvoiceLineItem", back_populates="taxes")
