from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.database.session import get_db
from src.integrations.base import PaymentProvider
from src.integrations.registry import get_payment_provider
from src.integrations.webhooks.schemas import WebhookAckResponse
from src.integrations.webhooks.service import WebhookService

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


async def _handle(expected: str, request: Request, db: AsyncSession, provider: PaymentProvider) -> WebhookAckResponse:
    if provider.name != expected:
        # Only the configured provider has an endpoint.
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    raw_payload = await request.body()
    result = await WebhookService(db, provider).handle(raw_payload, request.headers)
    return WebhookAckResponse(status=result.status.value, payment_id=result.payment_id)


@router.post("/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    return await _handle("stripe", request, db, provider)


@router.post("/square", response_model=WebhookAckResponse)
async def square_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    return await _handle("square", request, db, provider)
