"""API endpoints for Tax Rates module."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database.session import get_db
from src.modules.tax_rates.schemas import TaxRateCreate, TaxRateResponse, TaxRateUpdate
from src.modules.tax_rates.service import TaxRateService
from src.shared.schemas.base import ApiResponse

router = APIRouter(prefix="/tax-rates", tags=["Tax Rates"])


@router.get("", response_model=ApiResponse[list[TaxRateResponse]])
async def list_tax_rates(
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    service = TaxRateService(db)
    rates = await service.list_rates(include_inactive=include_inactive)
    return ApiResponse(data=[TaxRateResponse.model_validate(r) for r in rates])


@router.post(
    "",
    response_model=ApiResponse[TaxRateResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_tax_rate(
    data: TaxRateCreate,
    db: AsyncSession = Depends(get_db),
):
    service = TaxRateService(db)
    rate = await service.create_rate(data)
    return ApiResponse(data=TaxRateResponse.model_validate(rate), message="Tax rate created")


@router.patch("/{tax_rate_id}", response_model=ApiResponse[TaxRateResponse])
async def update_tax_rate(
    tax_rate_id: int,
    data: TaxRateUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Update a tax rate. Already billed charges keep their snapshot."""
    service = TaxRateService(db)
    rate = await service.update_rate(tax_rate_id, data)
    return ApiResponse(data=TaxRateResponse.model_validate(rate), message="Tax rate updated")
