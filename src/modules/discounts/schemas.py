"""Schemas for Discounts module."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator, model_validator

from src.modules.billing.types import ChargeCategory
from src.modules.discounts.models import DiscountScope, DiscountType, DiscountUsageType
from src.shared.schemas.base import MoneyResponse


# --- Discount Code Schemas (admin) ---


class DiscountCodeCreate(BaseModel):
    """Schema for creating a discount code."""

    code: str = Field(..., min_length=3, max_length=50)
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    discount_type: DiscountType
    # Percentage codes
    discount_value: Decimal | None = Field(None, gt=0)
    # Fixed amount codes, minor units
    discount_value_cents: int | None = Field(None, gt=0)
    scope: DiscountScope = DiscountScope.GLOBAL
    usage_type: DiscountUsageType = DiscountUsageType.UNLIMITED
    applicable_to: list[ChargeCategory] = Field(..., min_length=1)
    family_id: int | None = None
    student_id: int | None = None
    max_uses: int | None = Field(None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        code = v.strip().upper()
        if not code.replace("-", "").replace("_", "").isalnum():
            raise ValueError("Code may contain only letters, digits, '-' and '_'")
        return code

    @model_validator(mode="after")
    def validate_value(self):
        """Percentage codes need 0-100, fixed codes need an amount in cents."""
        if self.discount_type == DiscountType.PERCENTAGE:
            if self.discount_value is None:
                raise ValueError("discount_value is required for percentage codes")
            if self.discount_value > 100:
                raise ValueError("Percentage discount cannot exceed 100%")
        elif self.discount_value_cents is None:
            raise ValueError("discount_value_cents is required for fixed amount codes")
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self


class DiscountCodeUpdate(BaseModel):
    """Schema for updating a discount code. Code and type cannot change."""

    name: str | None = Field(None, min_length=1, max_length=100)
    description: str | None = None
    discount_value: Decimal | None = Field(None, gt=0, le=100)
    discount_value_cents: int | None = Field(None, gt=0)
    applicable_to: list[ChargeCategory] | None = Field(None, min_length=1)
    max_uses: int | None = Field(None, ge=1)
    valid_until: datetime | None = None
    is_active: bool | None = None


class AutomaticDiscountCodeCreate(BaseModel):
    """Code issued by a discount rule (e.g. loyalty) for one family or student."""

    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None
    discount_type: DiscountType
    discount_value: Decimal | None = Field(None, gt=0, le=100)
    discount_value_cents: int | None = Field(None, gt=0)
    applicable_to: list[ChargeCategory] = Field(..., min_length=1)
    family_id: int
    student_id: int | None = None
    valid_until: datetime | None = None

    @model_validator(mode="after")
    def validate_value(self):
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value is None:
            raise ValueError("discount_value is required for percentage codes")
        if self.discount_type == DiscountType.FIXED_AMOUNT and self.discount_value_cents is None:
            raise ValueError("discount_value_cents is required for fixed amount codes")
        return self


class DiscountCodeResponse(BaseModel):
    """Schema for discount code response."""

    id: int
    code: str
    name: str
    description: str | None
    discount_type: str
    discount_value: Decimal
    discount_value_cents: int | None
    scope: str
    usage_type: str
    applicable_to: list[str]
    family_id: int | None
    student_id: int | None
    max_uses: int | None
    current_uses: int
    valid_from: datetime
    valid_until: datetime | None
    is_active: bool
    created_automatically: bool

    model_config = {"from_attributes": True}


# --- Validation / selection ---


class DiscountValidateRequest(BaseModel):
    """Schema for validating a code against a charge."""

    code: str = Field(..., min_length=1, max_length=50)
    family_id: int
    student_id: int | None = None
    subtotal_amount: int = Field(..., gt=0, description="Minor units")
    applicable_to: ChargeCategory


class DiscountValidationResponse(BaseModel):
    is_valid: bool
    discount_code_id: int | None = None
    code: str
    name: str | None = None
    discount_amount: MoneyResponse
    error_message: str | None = None


class DiscountCandidateResponse(BaseModel):
    discount_code_id: int
    code: str
    name: str
    display: str
    discount_type: str
    discount_amount: MoneyResponse
