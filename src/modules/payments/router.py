"""API endpoints for Payments module."""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database.session import get_db
from src.core.exceptions import ValidationError
from src.integrations.base import PaymentProvider
from src.integrations.registry import get_payment_provider
from src.modules.payments.models import PaymentStatus
from src.modules.payments.orchestrator import ChargeDraft, PaymentSessionOrchestrator
from src.modules.payments.schemas import (
    PaymentLookupResponse,
    PaymentQuoteRequest,
    PaymentQuoteResponse,
    PaymentResponse,
    PaymentSessionConfirm,
    PaymentSessionCreate,
    PaymentSessionResponse,
    PaymentStatusResponse,
    PendingPaymentCheckResponse,
    QuoteLineResponse,
    QuoteTaxResponse,
    StalePaymentsExpiredResponse,
)
from src.modules.payments.service import PaymentService
from src.modules.pricing.service import ChargeOption, get_option_info
from src.shared.schemas.base import ApiResponse, PaginatedResponse

router = APIRouter(prefix="/payments", tags=["Payments"])
sessions_router = APIRouter(prefix="/payment-sessions", tags=["Payment Sessions"])


def _quote_response(draft: ChargeDraft) -> PaymentQuoteResponse:
    breakdown = draft.breakdown
    student_ids = [sid for sid, _ in draft.student_amounts]
    applied = draft.applied_discount
    return PaymentQuoteResponse(
        currency=breakdown.currency,
        line_items=[
            QuoteLineResponse(
                description=line.item.description,
                student_id=student_ids[index] if index < len(student_ids) else None,
                quantity=line.item.quantity,
                unit_price=line.item.unit_price.amount,
                amount=line.discounted_amount.amount,
            )
            for index, line in enumerate(breakdown.lines)
        ],
        subtotal_amount=breakdown.subtotal.amount,
        discount_amount=breakdown.discount_amount.amount,
        tax_amount=breakdown.tax_amount.amount,
        total_amount=breakdown.total.amount,
        taxes=[QuoteTaxResponse(name=t.name, rate=t.rate, amount=t.amount.amount) for t in breakdown.taxes],
        discount_code=applied.code if applied else None,
        discount_notice=draft.discount_notice,
        available_discount_codes=[c.discount_code.code for c in draft.candidates],
        discount_context=draft.discount_context,
        discount_reset=draft.discount_reset,
    )


# --- Payment sessions ---


@sessions_router.post(
    "",
    response_model=ApiResponse[PaymentSessionResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_payment_session(
    data: PaymentSessionCreate,
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    """
    Start a checkout. Amounts are recomputed here; the response carries a
    redirect URL (hosted) or a client secret (embedded).
    """
    orchestrator = PaymentSessionOrchestrator(db, provider)
    result = await orchestrator.create_payment_session(data)
    breakdown = result.draft.breakdown
    applied = result.draft.applied_discount
    return ApiResponse(
        data=PaymentSessionResponse(
            local_payment_id=result.payment.id,
            provider=provider.name,
            provider_session_id=result.session.session_id,
            redirect_url=result.session.redirect_url,
            client_secret=result.session.client_secret,
            currency=breakdown.currency,
            subtotal_amount=breakdown.subtotal.amount,
            discount_amount=breakdown.discount_amount.amount,
            tax_amount=breakdown.tax_amount.amount,
            total_amount=breakdown.total.amount,
            discount_code=applied.code if applied else None,
            discount_notice=result.draft.discount_notice,
        ),
        message="Payment session created",
    )


@sessions_router.post("/quote", response_model=ApiResponse[PaymentQuoteResponse])
async def quote_payment_session(
    data: PaymentQuoteRequest,
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    """Amounts a session would charge right now, with eligible discount codes best first."""
    orchestrator = PaymentSessionOrchestrator(db, provider)
    draft = await orchestrator.build_quote(data)
    return ApiResponse(data=_quote_response(draft))


@sessions_router.get("/pending", response_model=ApiResponse[PendingPaymentCheckResponse])
async def check_pending_payment(
    family_id: int = Query(...),
    option: ChargeOption = Query(...),
    student_ids: list[int] = Query([]),
    db: AsyncSession = Depends(get_db),
):
    """Warn before opening a second checkout for the same purchase."""
    service = PaymentService(db)
    payment = await service.find_recent_pending(
        family_id=family_id,
        payment_type=get_option_info(option).payment_type,
        student_ids=student_ids,
    )
    if payment is None:
        return ApiResponse(data=PendingPaymentCheckResponse(has_pending=False))
    return ApiResponse(
        data=PendingPaymentCheckResponse(
            has_pending=True,
            payment_id=payment.id,
            created_at=payment.created_at,
            total_amount=payment.total_amount,
        )
    )


@sessions_router.post("/{payment_id}/confirm", response_model=ApiResponse[PaymentStatusResponse])
async def confirm_payment_session(
    payment_id: int,
    data: PaymentSessionConfirm,
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    """Embedded flow: submit the card token. The status stays pending until the webhook."""
    orchestrator = PaymentSessionOrchestrator(db, provider)
    payment = await orchestrator.confirm_embedded(payment_id, data.source_token)
    return ApiResponse(data=PaymentStatusResponse.model_validate(payment), message="Payment submitted")


# --- Payments ---


@router.get("", response_model=ApiResponse[PaginatedResponse[PaymentResponse]])
async def list_payments(
    family_id: int | None = Query(None),
    status: PaymentStatus | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """List payments with optional filters."""
    service = PaymentService(db)
    payments, total = await service.list_payments(family_id=family_id, status=status, page=page, limit=limit)
    return ApiResponse(
        data=PaginatedResponse.create(
            items=[PaymentResponse.model_validate(p) for p in payments],
            total=total,
            page=page,
            limit=limit,
        ),
    )


@router.get("/lookup", response_model=ApiResponse[PaymentLookupResponse])
async def lookup_payment(
    session_id: str | None = Query(None, max_length=255),
    payment_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Status by provider session id or payment id for the return page.

    A record that is not there yet is reported as available=false rather than
    404, so the client keeps polling.
    """
    if not session_id and payment_id is None:
        raise ValidationError("session_id or payment_id is required", field="session_id")
    service = PaymentService(db)
    if session_id:
        payment = await service.find_by_session_id(session_id)
    else:
        payment = await service.find_by_id(payment_id)
    if payment is None:
        return ApiResponse(data=PaymentLookupResponse(available=False))
    return ApiResponse(
        data=PaymentLookupResponse(available=True, payment=PaymentStatusResponse.model_validate(payment))
    )


@router.post("/expire-stale", response_model=ApiResponse[StalePaymentsExpiredResponse])
async def expire_stale_payments(
    older_than_minutes: int | None = Query(None, ge=1),
    db: AsyncSession = Depends(get_db),
):
    """Fail pending payments that never reached the provider."""
    service = PaymentService(db)
    expired = await service.expire_stale_pending(older_than_minutes)
    return ApiResponse(
        data=StalePaymentsExpiredResponse(expired_payment_ids=expired),
        message=f"Expired {len(expired)} payments",
    )


@router.get("/{payment_id}", response_model=ApiResponse[PaymentResponse])
async def get_payment(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
):
    """Get payment by ID."""
    service = PaymentService(db)
    payment = await service.get_payment_by_id(payment_id)
    return ApiResponse(data=PaymentResponse.model_validate(payment))


@router.get("/{payment_id}/status", response_model=ApiResponse[PaymentStatusResponse])
async def get_payment_status(
    payment_id: int,
    db: AsyncSession = Depends(get_db),
):
    """Lightweight status for polling."""
    service = PaymentService(db)
    payment = await service.get_payment_by_id(payment_id)
    return ApiResponse(data=PaymentStatusResponse.model_validate(payment))
