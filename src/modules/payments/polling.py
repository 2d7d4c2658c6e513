"""
Client-side wait for a payment's authoritative status.

After the redirect back from a hosted checkout (or after submitting an
embedded card) the webhook may not have arrived yet, and the payment record
may not even be visible. The poller re-reads the status on a fixed interval
until it is terminal or the attempt budget runs out.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum

import httpx

from src.core.exceptions import PaymentNotYetVisibleError
from src.modules.payments.models import PaymentStatus
from src.modules.payments.schemas import PaymentStatusResponse

logger = logging.getLogger(__name__)

CHECK_BACK_LATER_MESSAGE = (
    "Your payment is still processing. You can close this page and check back later; "
    "contact support if it does not complete."
)


class PollOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class UiState(StrEnum):
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


_FINAL_UI_STATES = {UiState.SUCCEEDED, UiState.FAILED, UiState.TIMED_OUT, UiState.CANCELLED}


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    payment: PaymentStatusResponse | None = None
    ui_states: list[UiState] = field(default_factory=list)

    @property
    def message(self) -> str | None:
        if self.outcome == PollOutcome.TIMED_OUT:
            return CHECK_BACK_LATER_MESSAGE
        return None


StatusFetcher = Callable[[], Awaitable[PaymentStatusResponse]]


class PaymentStatusPoller:
    """
    Bounded, cancellable status polling.

    ``fetch`` returns the current status or raises PaymentNotYetVisibleError
    while the record cannot be found; both keep the loop going. The UI state
    goes processing -> one final state, each recorded once, and never moves
    back to processing. Cancel either by cancelling the task running
    ``run()`` or by setting ``stop_event``.
    """

    def __init__(
        self,
        fetch: StatusFetcher,
        interval: float = 3.0,
        max_attempts: int = 40,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        stop_event: asyncio.Event | None = None,
        transient_errors: tuple[type[Exception], ...] = (),
        on_state_change: Callable[[UiState], None] | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.fetch = fetch
        self.interval = interval
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.stop_event = stop_event
        self.transient_errors = transient_errors
        self.on_state_change = on_state_change
        self.ui_states: list[UiState] = []

    @property
    def ui_state(self) -> UiState | None:
        return self.ui_states[-1] if self.ui_states else None

    def _transition(self, state: UiState) -> None:
        current = self.ui_state
        if current == state or current in _FINAL_UI_STATES:
            return
        self.ui_states.append(state)
        if self.on_state_change is not None:
            self.on_state_change(state)

    def _stopped(self) -> bool:
        return self.stop_event is not None and self.stop_event.is_set()

    def _finish(self, outcome: PollOutcome, attempts: int, payment: PaymentStatusResponse | None) -> PollResult:
        self._transition(UiState(outcome.value))
        return PollResult(outcome=outcome, attempts=attempts, payment=payment, ui_states=list(self.ui_states))

    async def run(self) -> PollResult:
        self._transition(UiState.PROCESSING)
        last: PaymentStatusResponse | None = None
        attempts = 0
        try:
            while attempts < self.max_attempts:
                if self._stopped():
                    return self._finish(PollOutcome.CANCELLED, attempts, last)
                attempts += 1
                try:
                    last = await self.fetch()
                except PaymentNotYetVisibleError as exc:
                    logger.debug("Attempt %d: %s", attempts, exc)
                except self.transient_errors as exc:
                    logger.warning("Attempt %d: status check failed: %s", attempts, exc)
                else:
                    status = PaymentStatus(last.status)
                    if status.is_terminal:
                        return self._finish(PollOutcome(status.value), attempts, last)

                if attempts < self.max_attempts:
                    await self.sleep(self.interval)
        except asyncio.CancelledError:
            self._transition(UiState.CANCELLED)
            raise

        if self._stopped():
            return self._finish(PollOutcome.CANCELLED, attempts, last)
        logger.info("Payment still not settled after %d attempts", attempts)
        return self._finish(PollOutcome.TIMED_OUT, attempts, last)


class StatusServiceUnavailableError(Exception):
    """The lookup endpoint answered 5xx; the next attempt may succeed."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"Payment status service returned {status_code}")


class HttpPaymentStatusSource:
    """StatusFetcher over the payments lookup endpoint."""

    TRANSIENT_ERRORS = (httpx.TransportError, StatusServiceUnavailableError)

    def __init__(
        self,
        client: httpx.AsyncClient,
        session_id: str | None = None,
        payment_id: int | None = None,
        path: str = "/api/v1/payments/lookup",
    ):
        if not session_id and payment_id is None:
            raise ValueError("session_id or payment_id is required")
        self.client = client
        self.session_id = session_id
        self.payment_id = payment_id
        self.path = path

    @property
    def reference(self) -> str | int:
        return self.session_id or self.payment_id

    async def __call__(self) -> PaymentStatusResponse:
        params = {"session_id": self.session_id} if self.session_id else {"payment_id": self.payment_id}
        response = await self.client.get(self.path, params=params)
        if response.is_server_error:
            raise StatusServiceUnavailableError(response.status_code)
        response.raise_for_status()
        data = response.json()["data"]
        if not data["available"]:
            raise PaymentNotYetVisibleError(self.reference)
        return PaymentStatusResponse.model_validate(data["payment"])


async def wait_for_payment(
    client: httpx.AsyncClient,
    session_id: str | None = None,
    payment_id: int | None = None,
    interval: float = 3.0,
    max_attempts: int = 40,
    stop_event: asyncio.Event | None = None,
) -> PollResult:
    source = HttpPaymentStatusSource(client, session_id=session_id, payment_id=payment_id)
    poller = PaymentStatusPoller(
        source,
        interval=interval,
        max_attempts=max_attempts,
        stop_event=stop_event,
        transient_errors=HttpPaymentStatusSource.TRANSIENT_ERRORS,
    )
    return await poller.run()
