"""API endpoints for Discounts module."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.config import settings
from src.core.database.session import get_db
from src.modules.billing.types import ChargeCategory
from src.modules.discounts.schemas import (
    AutomaticDiscountCodeCreate,
    DiscountCandidateResponse,
    DiscountCodeCreate,
    DiscountCodeResponse,
    DiscountCodeUpdate,
    DiscountValidateRequest,
    DiscountValidationResponse,
)
from src.modules.discounts.service import DiscountService
from src.shared.schemas.base import ApiResponse, MoneyResponse
from src.shared.utils.money import Money

router = APIRouter(prefix="/discounts", tags=["Discounts"])


# --- Validation / candidates ---


@router.post("/validate", response_model=ApiResponse[DiscountValidationResponse])
async def validate_discount_code(
    data: DiscountValidateRequest,
    db: AsyncSession = Depends(get_db),
):
    """Validate a code for a charge. An invalid code is a normal 200 response with is_valid=false."""
    service = DiscountService(db)
    result = await service.validate_code(
        code=data.code,
        family_id=data.family_id,
        student_id=data.student_id,
        applicable_to=data.applicable_to.value,
        subtotal=Money(data.subtotal_amount, settings.currency),
    )
    return ApiResponse(
        data=DiscountValidationResponse(
            is_valid=result.is_valid,
            discount_code_id=result.discount_code_id,
            code=result.code,
            name=result.name,
            discount_amount=MoneyResponse.from_money(result.discount_amount),
            error_message=result.error_message,
        )
    )


@router.get("/available", response_model=ApiResponse[list[DiscountCandidateResponse]])
async def list_available_discounts(
    family_id: int = Query(...),
    applicable_to: ChargeCategory = Query(...),
    subtotal_amount: int = Query(..., gt=0),
    student_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Eligible codes for a family, best savings first."""
    service = DiscountService(db)
    candidates = await service.list_candidates(
        family_id=family_id,
        student_id=student_id,
        applicable_to=applicable_to.value,
        base_subtotal=Money(subtotal_amount, settings.currency),
    )
    return ApiResponse(
        data=[
            DiscountCandidateResponse(
                discount_code_id=c.discount_code.id,
                code=c.discount_code.code,
                name=c.discount_code.name,
                display=c.display,
                discount_type=c.discount_code.discount_type,
                discount_amount=MoneyResponse.from_money(c.discount_amount),
            )
            for c in candidates
        ]
    )


# --- Discount code administration ---


@router.post(
    "/codes",
    response_model=ApiResponse[DiscountCodeResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_discount_code(
    data: DiscountCodeCreate,
    db: AsyncSession = Depends(get_db),
):
    service = DiscountService(db)
    discount_code = await service.create_code(data, created_by="admin")
    return ApiResponse(
        data=DiscountCodeResponse.model_validate(discount_code),
        message="Discount code created",
    )


@router.post(
    "/codes/automatic",
    response_model=ApiResponse[DiscountCodeResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_automatic_discount_code(
    data: AutomaticDiscountCodeCreate,
    db: AsyncSession = Depends(get_db),
):
    """Issue a generated one-time code (AUTOXXXXXX) to a family or student."""
    service = DiscountService(db)
    discount_code = await service.create_automatic_code(data)
    return ApiResponse(
        data=DiscountCodeResponse.model_validate(discount_code),
        message="Discount code issued",
    )


@router.get("/codes", response_model=ApiResponse[list[DiscountCodeResponse]])
async def list_discount_codes(
    include_inactive: bool = Query(False),
    family_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    service = DiscountService(db)
    codes = await service.list_codes(include_inactive=include_inactive, family_id=family_id)
    return ApiResponse(data=[DiscountCodeResponse.model_validate(c) for c in codes])


@router.get("/codes/{discount_code_id}", response_model=ApiResponse[DiscountCodeResponse])
async def get_discount_code(
    discount_code_id: int,
    db: AsyncSession = Depends(get_db),
):
    service = DiscountService(db)
    discount_code = await service.get_code_by_id(discount_code_id)
    return ApiResponse(data=DiscountCodeResponse.model_validate(discount_code))


@router.patch("/codes/{discount_code_id}", response_model=ApiResponse[DiscountCodeResponse])
async def update_discount_code(
    discount_code_id: int,
    data: DiscountCodeUpdate,
    db: AsyncSession = Depends(get_db),
):
    service = DiscountService(db)
    discount_code = await service.update_code(discount_code_id, data, updated_by="admin")
    return ApiResponse(
        data=DiscountCodeResponse.model_validate(discount_code),
        message="Discount code updated",
    )


@router.post("/codes/{discount_code_id}/activate", response_model=ApiResponse[DiscountCodeResponse])
async def activate_discount_code(
    discount_code_id: int,
    db: AsyncSession = Depends(get_db),
):
    service = DiscountService(db)
    discount_code = await service.set_active(discount_code_id, True, updated_by="admin")
    return ApiResponse(data=DiscountCodeResponse.model_validate(discount_code), message="Discount code activated")


@router.post("/codes/{discount_code_id}/deactivate", response_model=ApiResponse[DiscountCodeResponse])
async def deactivate_discount_code(
    discount_code_id: int,
    db: AsyncSession = Depends(get_db),
):
    service = DiscountService(db)
    discount_code = await service.set_active(discount_code_id, False, updated_by="admin")
    return ApiResponse(data=DiscountCodeResponse.model_validate(discount_code), message="Discount code deactivated")
