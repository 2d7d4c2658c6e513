import asyncio

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import PaymentNotYetVisibleError
from src.integrations.base import ConfirmedEvent, PaymentOutcome
from src.modules.families.models import Family, Student
from src.modules.payments.models import PaymentStatus
from src.modules.payments.polling import (
    CHECK_BACK_LATER_MESSAGE,
    HttpPaymentStatusSource,
    PaymentStatusPoller,
    PollOutcome,
    UiState,
    wait_for_payment,
)
from src.modules.payments.schemas import PaymentStatusResponse
from src.modules.payments.service import PaymentService


def status(value: str) -> PaymentStatusResponse:
    return PaymentStatusResponse(
        id=1, status=value, currency="CAD", total_amount=17000, receipt_url=None, payment_date=None
    )


class ScriptedSource:
    """Replays a list of responses; exceptions in the list are raised."""

    def __init__(self, steps):
        self.steps = list(steps)
        self.calls = 0

    async def __call__(self) -> PaymentStatusResponse:
        step = self.steps[min(self.calls, len(self.steps) - 1)]
        self.calls += 1
        if isinstance(step, Exception):
            raise step
        return step


class RecordingSleep:
    def __init__(self, on_sleep=None):
        self.delays: list[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.on_sleep is not None:
            await self.on_sleep(len(self.delays))


class TestPaymentStatusPoller:
    """Bounded, cancellable polling."""

    async def test_record_appears_late_then_succeeds(self):
        source = ScriptedSource(
            [
                PaymentNotYetVisibleError("sess_1"),
                PaymentNotYetVisibleError("sess_1"),
                status("pending"),
                status("succeeded"),
            ]
        )
        sleep = RecordingSleep()
        changes = []
        poller = PaymentStatusPoller(source, interval=3.0, sleep=sleep, on_state_change=changes.append)

        result = await poller.run()

        assert result.outcome == PollOutcome.SUCCEEDED
        assert result.attempts == 4
        assert result.payment.status == PaymentStatus.SUCCEEDED
        assert result.ui_states == [UiState.PROCESSING, UiState.SUCCEEDED]
        assert changes == [UiState.PROCESSING, UiState.SUCCEEDED]
        assert sleep.delays == [3.0, 3.0, 3.0]
        assert result.message is None

    async def test_failed_payment(self):
        poller = PaymentStatusPoller(ScriptedSource([status("failed")]), sleep=RecordingSleep())
        result = await poller.run()
        assert result.outcome == PollOutcome.FAILED
        assert result.ui_states == [UiState.PROCESSING, UiState.FAILED]

    async def test_gives_up_after_max_attempts(self):
        sleep = RecordingSleep()
        poller = PaymentStatusPoller(ScriptedSource([status("pending")]), max_attempts=3, sleep=sleep)

        result = await poller.run()

        assert result.outcome == PollOutcome.TIMED_OUT
        assert result.attempts == 3
        # No sleep after the last attempt
        assert len(sleep.delays) == 2
        assert result.message == CHECK_BACK_LATER_MESSAGE
        assert result.ui_states == [UiState.PROCESSING, UiState.TIMED_OUT]

    async def test_stop_event(self):
        stop = asyncio.Event()

        async def stop_after_first(count):
            stop.set()

        source = ScriptedSource([status("pending")])
        poller = PaymentStatusPoller(source, sleep=RecordingSleep(stop_after_first), stop_event=stop)

        result = await poller.run()

        assert result.outcome == PollOutcome.CANCELLED
        assert source.calls == 1
        assert result.ui_states == [UiState.PROCESSING, UiState.CANCELLED]

    async def test_task_cancellation(self):
        fetched = asyncio.Event()

        async def fetch():
            fetched.set()
            return status("pending")

        poller = PaymentStatusPoller(fetch, interval=60)
        task = asyncio.create_task(poller.run())
        await fetched.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert poller.ui_states == [UiState.PROCESSING, UiState.CANCELLED]

    async def test_transient_errors_keep_polling(self):
        source = ScriptedSource([httpx.ConnectError("connection refused"), status("succeeded")])
        poller = PaymentStatusPoller(source, sleep=RecordingSleep(), transient_errors=(httpx.TransportError,))

        result = await poller.run()

        assert result.outcome == PollOutcome.SUCCEEDED
        assert result.attempts == 2

    async def test_unexpected_errors_propagate(self):
        poller = PaymentStatusPoller(ScriptedSource([RuntimeError("boom")]), sleep=RecordingSleep())
        with pytest.raises(RuntimeError):
            await poller.run()

    def test_needs_at_least_one_attempt(self):
        with pytest.raises(ValueError):
            PaymentStatusPoller(ScriptedSource([status("pending")]), max_attempts=0)


class TestHttpPaymentStatusSource:
    async def test_polls_lookup_until_webhook_applied(
        self, client: AsyncClient, db_session: AsyncSession, family: Family, students: list[Student]
    ):
        created = await client.post(
            "/api/v1/payment-sessions",
            json={"family_id": family.id, "student_ids": [students[0].id], "option": "monthly_group"},
        )
        data = created.json()["data"]
        session_id = data["provider_session_id"]

        async def webhook_arrives(count):
            if count == 1:
                await PaymentService(db_session).apply_confirmation(
                    ConfirmedEvent(
                        event_id="evt_1",
                        event_type="payment_intent.succeeded",
                        provider_session_id=session_id,
                        outcome=PaymentOutcome.SUCCEEDED,
                        amount=data["total_amount"],
                        currency="CAD",
                    )
                )

        source = HttpPaymentStatusSource(client, session_id=session_id)
        poller = PaymentStatusPoller(
            source,
            sleep=RecordingSleep(webhook_arrives),
            transient_errors=HttpPaymentStatusSource.TRANSIENT_ERRORS,
        )

        result = await poller.run()

        assert result.outcome == PollOutcome.SUCCEEDED
        assert result.attempts == 2
        assert result.payment.id == data["local_payment_id"]

    async def test_missing_record_is_not_visible(self, client: AsyncClient):
        source = HttpPaymentStatusSource(client, payment_id=404)
        with pytest.raises(PaymentNotYetVisibleError):
            await source()

        result = await wait_for_payment(client, session_id="sess_missing", interval=0, max_attempts=2)
        assert result.outcome == PollOutcome.TIMED_OUT
        assert result.payment is None

    def test_requires_a_reference(self):
        with pytest.raises(ValueError):
            HttpPaymentStatusSource(httpx.AsyncClient(), session_id=None, payment_id=None)

    async def test_server_errors_count_as_attempts(self):
        responses = iter(
            [
                httpx.Response(503, json={"success": False, "message": "Tax rates unavailable", "retryable": True}),
                httpx.Response(502, text="Bad gateway"),
                httpx.Response(
                    200,
                    json={
                        "success": True,
                        "data": {
                            "available": True,
                            "payment": {
                                "id": 7,
                                "status": "succeeded",
                                "currency": "CAD",
                                "total_amount": 17000,
                                "receipt_url": None,
                                "payment_date": None,
                            },
                        },
                    },
                ),
            ]
        )
        transport = httpx.MockTransport(lambda request: next(responses))
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            result = await wait_for_payment(http, payment_id=7, interval=0, max_attempts=5)

        assert result.outcome == PollOutcome.SUCCEEDED
        assert result.attempts == 3
        assert result.payment.id == 7

    async def test_client_errors_propagate(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"success": False}))
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            with pytest.raises(httpx.HTTPStatusError):
                await wait_for_payment(http, payment_id=7, interval=0, max_attempts=5)
