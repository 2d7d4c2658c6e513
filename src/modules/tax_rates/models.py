"""Configured sales tax rates."""

from decimal import Decimal

from sqlalchemy import Boolean, JSON, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from src.core.database.base import BaseModel


class TaxRate(BaseModel):
    """
    A tax applied to certain charge categories, e.g. GST 0.05 or PST_BC 0.07.

    Charges copy name and rate at creation time; editing a row here never
    alters what was already billed.
    """

    __tablename__ = "tax_rates"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    # Fraction, 0.13 == 13%
    rate: Mapped[Decimal] = mapped_column(Numeric(6, 4), nullable=False)
    applies_to: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def applies_to_category(self, category: str) -> bool:
        return category in (self.applies_to or [])
