"""Schemas for Payments module."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from src.modules.payments.models import PaymentStatus
from src.modules.pricing.service import ChargeOption


# --- Payment sessions ---


class PaymentSessionCreate(BaseModel):
    """Checkout submission. Amounts are always recomputed on the server."""

    family_id: int
    student_ids: list[int] = []
    option: ChargeOption
    quantity: int = Field(1, ge=1, le=20)
    discount_code: str | None = Field(None, max_length=50)
    invoice_id: int | None = None
    # What the client displayed; advisory only
    client_total_amount: int | None = None

    @model_validator(mode="after")
    def validate_option(self):
        if self.option == ChargeOption.INVOICE_PAYMENT:
            if self.invoice_id is None:
                raise ValueError("invoice_id is required for invoice payments")
        elif not self.student_ids:
            raise ValueError("Select at least one student")
        if self.option == ChargeOption.INDIVIDUAL_SESSION and len(self.student_ids) != 1:
            raise ValueError("Individual sessions are purchased for one student")
        return self


class PaymentQuoteRequest(PaymentSessionCreate):
    # discount_context from the previous quote; a changed charge drops discount_code
    discount_context: str | None = Field(None, max_length=500)


class PaymentSessionConfirm(BaseModel):
    """Embedded flow: card token produced by the provider's card element."""

    source_token: str = Field(..., min_length=1, max_length=500)


class QuoteLineResponse(BaseModel):
    description: str
    student_id: int | None
    quantity: int
    unit_price: int
    amount: int


class QuoteTaxResponse(BaseModel):
    name: str
    rate: Decimal
    amount: int


class PaymentQuoteResponse(BaseModel):
    currency: str
    line_items: list[QuoteLineResponse]
    subtotal_amount: int
    discount_amount: int
    tax_amount: int
    total_amount: int
    taxes: list[QuoteTaxResponse]
    discount_code: str | None = None
    discount_notice: str | None = None
    available_discount_codes: list[str] = []
    # Echo back on the next quote
    discount_context: str | None = None
    # The selected code was dropped because the option, students or quantity changed
    discount_reset: bool = False


class PaymentSessionResponse(BaseModel):
    local_payment_id: int
    provider: str
    provider_session_id: str
    redirect_url: str | None = None
    client_secret: str | None = None
    currency: str
    subtotal_amount: int
    discount_amount: int
    tax_amount: int
    total_amount: int
    discount_code: str | None = None
    # Informational: the code was dropped and the charge continued without it
    discount_notice: str | None = None


class PendingPaymentCheckResponse(BaseModel):
    has_pending: bool
    payment_id: int | None = None
    created_at: datetime | None = None
    total_amount: int | None = None


# --- Payments ---


class PaymentTaxResponse(BaseModel):
    id: int
    tax_rate_id: int | None
    tax_amount: int
    tax_name_snapshot: str
    tax_rate_snapshot: Decimal

    model_config = {"from_attributes": True}


class PaymentStatusResponse(BaseModel):
    """What the client polls."""

    id: int
    status: PaymentStatus
    currency: str
    total_amount: int
    receipt_url: str | None
    payment_date: datetime | None

    model_config = {"from_attributes": True}


class PaymentLookupResponse(BaseModel):
    """available=false means the record is not visible yet; keep polling."""

    available: bool
    payment: PaymentStatusResponse | None = None


class PaymentResponse(BaseModel):
    id: int
    family_id: int
    type: str
    status: PaymentStatus
    currency: str
    subtotal_amount: int
    discount_amount: int
    tax_amount: int
    total_amount: int
    discount_code_id: int | None
    discount_redeemed: bool
    invoice_id: int | None
    quantity: int | None
    student_ids: list[int]
    provider: str
    external_provider_session_id: str | None
    external_payment_intent_id: str | None
    payment_date: datetime | None
    receipt_url: str | None
    payment_method: str | None
    card_last4: str | None
    failure_reason: str | None
    created_at: datetime
    taxes: list[PaymentTaxResponse]

    model_config = {"from_attributes": True}


class StalePaymentsExpiredResponse(BaseModel):
    expired_payment_ids: list[int]
