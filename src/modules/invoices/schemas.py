"""Schemas for Invoices module."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from src.modules.billing.types import LineItemType


class LineItemCreate(BaseModel):
    """A priced line. Range checks live in the calculator."""

    description: str = Field(..., min_length=1, max_length=255)
    item_type: LineItemType = LineItemType.SERVICE
    quantity: int = 1
    unit_price: int = Field(..., description="Minor units")
    discount_rate: Decimal | None = Field(None, description="Percentage 0-100")
    tax_rate_ids: list[int] = []
    service_period_start: date | None = None
    service_period_end: date | None = None


class InvoicePreviewRequest(BaseModel):
    line_items: list[LineItemCreate] = Field(..., min_length=1)


class InvoiceCreate(BaseModel):
    family_id: int
    due_date: date | None = None
    notes: str | None = None
    line_items: list[LineItemCreate] = Field(..., min_length=1)


class InvoiceLineItemsReplace(BaseModel):
    line_items: list[LineItemCreate] = Field(..., min_length=1)


class TaxLineResponse(BaseModel):
    tax_rate_id: int | None
    name: str
    rate: Decimal
    amount: int


class LineItemTotalsResponse(BaseModel):
    description: str
    item_type: str
    quantity: int
    unit_price: int
    discount_rate: Decimal | None
    gross_amount: int
    discount_amount: int
    discounted_amount: int
    tax_amount: int
    line_total: int
    taxes: list[TaxLineResponse]


class InvoicePreviewResponse(BaseModel):
    currency: str
    line_items: list[LineItemTotalsResponse]
    subtotal: int
    total_discount: int
    total_tax: int
    total: int
    tax_breakdown: dict[str, int]


class InvoiceLineItemTaxResponse(BaseModel):
    id: int
    tax_rate_id: int | None
    tax_name_snapshot: str
    tax_rate_snapshot: Decimal
    tax_amount: int

    model_config = {"from_attributes": True}


class InvoiceLineItemResponse(BaseModel):
    id: int
    description: str
    item_type: str
    quantity: int
    unit_price: int
    discount_rate: Decimal | None
    gross_amount: int
    discount_amount: int
    tax_amount: int
    line_total: int
    service_period_start: date | None
    service_period_end: date | None
    sort_order: int
    taxes: list[InvoiceLineItemTaxResponse]

    model_config = {"from_attributes": True}


class InvoiceResponse(BaseModel):
    id: int
    invoice_number: str | None
    family_id: int
    status: str
    currency: str
    issue_date: date | None
    due_date: date | None
    paid_at: datetime | None
    subtotal: int
    discount_amount: int
    tax_amount: int
    total_amount: int
    notes: str | None
    line_items: list[InvoiceLineItemResponse]

    model_config = {"from_attributes": True}
