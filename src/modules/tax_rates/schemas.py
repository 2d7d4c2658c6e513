"""Schemas for Tax Rates module."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

from src.modules.billing.types import ChargeCategory


class TaxRateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    rate: Decimal = Field(..., ge=0, le=1, description="Fraction, 0.05 for 5%")
    applies_to: list[ChargeCategory] = Field(..., min_length=1)
    description: str | None = None
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        return v.strip()


class TaxRateUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=50)
    rate: Decimal | None = Field(None, ge=0, le=1)
    applies_to: list[ChargeCategory] | None = None
    description: str | None = None
    is_active: bool | None = None


class TaxRateResponse(BaseModel):
    id: int
    name: str
    rate: Decimal
    applies_to: list[str]
    description: str | None
    is_active: bool
    updated_at: datetime

    model_config = {"from_attributes": True}
