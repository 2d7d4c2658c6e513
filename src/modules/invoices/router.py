"""API endpoints for Invoices module."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database.session import get_db
from src.modules.billing.calculator import InvoiceTotals
from src.modules.invoices.schemas import (
    InvoiceCreate,
    InvoiceLineItemsReplace,
    InvoicePreviewRequest,
    InvoicePreviewResponse,
    InvoiceResponse,
    LineItemTotalsResponse,
    TaxLineResponse,
)
from src.modules.invoices.service import InvoiceService
from src.shared.schemas.base import ApiResponse

router = APIRouter(prefix="/invoices", tags=["Invoices"])


def _preview_to_response(totals: InvoiceTotals) -> InvoicePreviewResponse:
    return InvoicePreviewResponse(
        currency=totals.currency,
        line_items=[
            LineItemTotalsResponse(
                description=line.item.description,
                item_type=str(line.item.item_type),
                quantity=line.item.quantity,
                unit_price=line.item.unit_price.amount,
                discount_rate=line.item.discount_rate,
                gross_amount=line.gross_amount.amount,
                discount_amount=line.discount_amount.amount,
                discounted_amount=line.discounted_amount.amount,
                tax_amount=line.tax_amount.amount,
                line_total=line.line_total.amount,
                taxes=[
                    TaxLineResponse(
                        tax_rate_id=tax.tax_rate_id, name=tax.name, rate=tax.rate, amount=tax.amount.amount
                    )
                    for tax in line.taxes
                ],
            )
            for line in totals.lines
        ],
        subtotal=totals.subtotal.amount,
        total_discount=totals.total_discount.amount,
        total_tax=totals.total_tax.amount,
        total=totals.total.amount,
        tax_breakdown={name: amount.amount for name, amount in totals.tax_breakdown.items()},
    )


@router.post("/preview", response_model=ApiResponse[InvoicePreviewResponse])
async def preview_invoice(
    data: InvoicePreviewRequest,
    db: AsyncSession = Depends(get_db),
):
    """Compute line and invoice totals without saving anything."""
    service = InvoiceService(db)
    totals = await service.preview(data.line_items)
    return ApiResponse(data=_preview_to_response(totals))


@router.post(
    "",
    response_model=ApiResponse[InvoiceResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_invoice(
    data: InvoiceCreate,
    db: AsyncSession = Depends(get_db),
):
    service = InvoiceService(db)
    invoice = await service.create_invoice(data)
    return ApiResponse(data=InvoiceResponse.model_validate(invoice), message="Invoice created")


@router.get("/{invoice_id}", response_model=ApiResponse[InvoiceResponse])
async def get_invoice(
    invoice_id: int,
    db: AsyncSession = Depends(get_db),
):
    service = InvoiceService(db)
    invoice = await service.get_invoice(invoice_id)
    return ApiResponse(data=InvoiceResponse.model_validate(invoice))


@router.put("/{invoice_id}/line-items", response_model=ApiResponse[InvoiceResponse])
async def replace_invoice_line_items(
    invoice_id: int,
    data: InvoiceLineItemsReplace,
    db: AsyncSession = Depends(get_db),
):
    """Replace all lines of a draft invoice."""
    service = InvoiceService(db)
    invoice = await service.replace_line_items(invoice_id, data.line_items)
    return ApiResponse(data=InvoiceResponse.model_validate(invoice), message="Invoice updated")


@router.post("/{invoice_id}/issue", response_model=ApiResponse[InvoiceResponse])
async def issue_invoice(
    invoice_id: int,
    db: AsyncSession = Depends(get_db),
):
    service = InvoiceService(db)
    invoice = await service.issue_invoice(invoice_id)
    return ApiResponse(data=InvoiceResponse.model_validate(invoice), message="Invoice issued")


@router.post("/{invoice_id}/cancel", response_model=ApiResponse[InvoiceResponse])
async def cancel_invoice(
    invoice_id: int,
    db: AsyncSession = Depends(get_db),
):
    service = InvoiceService(db)
    invoice = await service.cancel_invoice(invoice_id)
    return ApiResponse(data=InvoiceResponse.model_validate(invoice), message="Invoice cancelled")
