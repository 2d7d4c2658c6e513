from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    """Providers only look at the HTTP status; the body is for logs and tests."""

    received: bool = True
    status: str
    payment_id: int | None = None
