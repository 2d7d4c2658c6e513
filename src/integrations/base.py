"""
Uniform interface over the payment providers.

The orchestrator and the confirmation handler only talk to PaymentProvider;
each adapter translates to its vendor's request and webhook shapes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Mapping


class PaymentOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionRef:
    """What the client needs to continue: a redirect URL or a client secret."""

    session_id: str
    redirect_url: str | None = None
    client_secret: str | None = None


@dataclass(frozen=True)
class ConfirmedEvent:
    """A verified provider notification that settles a payment."""

    event_id: str
    event_type: str
    provider_session_id: str
    outcome: PaymentOutcome
    receipt_url: str | None = None
    paid_at: datetime | None = None
    amount: int | None = None
    currency: str | None = None
    payment_intent_id: str | None = None
    payment_method: str | None = None
    card_last4: str | None = None
    failure_reason: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookParseResult:
    """Signature-checked webhook; confirmed is None for events we do not act on."""

    event_id: str
    event_type: str
    payload: dict[str, Any]
    confirmed: ConfirmedEvent | None = None


class PaymentProvider(ABC):
    name: str

    @abstractmethod
    async def create_session(
        self,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        description: str | None = None,
    ) -> SessionRef:
        """Open a hosted checkout or an embedded payment for a pending payment."""

    @abstractmethod
    async def confirm_session(
        self, session_id: str, source_token: str, amount: int, currency: str, metadata: dict[str, str]
    ) -> str:
        """Embedded flow: charge a tokenized card. Returns the provider payment id."""

    @abstractmethod
    def parse_webhook(self, raw_payload: bytes, headers: Mapping[str, str]) -> WebhookParseResult:
        """Verify the signature and translate the event. Raises WebhookSignatureError."""

    async def fetch_charge_details(self, payment_intent_id: str) -> dict[str, str | None]:
        """Receipt URL / card details not carried by the webhook itself."""
        return {}

    async def aclose(self) -> None:
        """Release network resources at shutdown."""
