import json
from types import SimpleNamespace

import httpx
import pytest
import stripe

from src.core.config import Settings
from src.core.exceptions import PaymentProviderError, WebhookSignatureError
from src.integrations.base import PaymentOutcome
from src.integrations.registry import build_payment_provider
from src.integrations.square.provider import REFERENCE_PREFIX, SIGNATURE_HEADER, SquareProvider, sign_payload
from src.integrations.stripe.provider import StripeProvider

METADATA = {"payment_id": "7", "family_id": "3"}


class FakeStripeResource:
    def __init__(self, result=None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls = []

    def __call__(self, *args, params=None):
        self.calls.append((args, params))
        if self.error is not None:
            raise self.error
        return self.result


def stripe_with(**resources) -> StripeProvider:
    intents = SimpleNamespace(
        create=resources.get("intent_create", FakeStripeResource()),
        confirm=resources.get("intent_confirm", FakeStripeResource()),
    )
    sessions = SimpleNamespace(create=resources.get("session_create", FakeStripeResource()))
    client = SimpleNamespace(payment_intents=intents, checkout=SimpleNamespace(sessions=sessions))
    return StripeProvider(
        secret_key="sk_test_x",
        webhook_secret="whsec_x",
        checkout_mode=resources.get("mode", "embedded"),
        client=client,
    )


class TestStripeProvider:
    async def test_embedded_creates_payment_intent(self):
        create = FakeStripeResource(SimpleNamespace(id="pi_1", client_secret="pi_1_secret_abc"))
        provider = stripe_with(intent_create=create)

        ref = await provider.create_session(12100, "CAD", METADATA, "https://s", "https://c", "Monthly group classes")

        assert ref.session_id == "pi_1"
        assert ref.client_secret == "pi_1_secret_abc"
        assert ref.redirect_url is None
        params = create.calls[0][1]
        assert params["amount"] == 12100
        assert params["currency"] == "cad"
        assert params["metadata"] == METADATA

    async def test_hosted_creates_checkout_session(self):
        create = FakeStripeResource(SimpleNamespace(id="cs_1", url="https://checkout.stripe.com/c/pay/cs_1"))
        provider = stripe_with(session_create=create, mode="hosted")

        ref = await provider.create_session(5000, "CAD", METADATA, "https://s/7", "https://c/7")

        assert ref.session_id == "cs_1"
        assert ref.redirect_url == "https://checkout.stripe.com/c/pay/cs_1"
        params = create.calls[0][1]
        assert params["line_items"][0]["price_data"]["unit_amount"] == 5000
        assert params["payment_intent_data"]["metadata"] == METADATA
        assert params["success_url"] == "https://s/7"

    async def test_stripe_error_mapped(self):
        provider = stripe_with(intent_create=FakeStripeResource(error=stripe.APIConnectionError("Network down")))
        with pytest.raises(PaymentProviderError) as exc_info:
            await provider.create_session(100, "CAD", METADATA, "https://s", "https://c")
        assert exc_info.value.retryable is True
        assert exc_info.value.provider == "stripe"

    async def test_confirm_session(self):
        confirm = FakeStripeResource(SimpleNamespace(id="pi_1"))
        provider = stripe_with(intent_confirm=confirm)

        assert await provider.confirm_session("pi_1", "pm_card_visa", 100, "CAD", METADATA) == "pi_1"
        assert confirm.calls == [(("pi_1",), {"payment_method": "pm_card_visa"})]

    def test_checkout_events(self, monkeypatch):
        provider = stripe_with()
        monkeypatch.setattr(provider, "verify_signature", lambda raw, signature: None)

        completed = json.dumps(
            {
                "id": "evt_1",
                "type": "checkout.session.completed",
                "created": 1772389800,
                "data": {
                    "object": {
                        "id": "cs_1",
                        "payment_status": "paid",
                        "amount_total": 5000,
                        "currency": "cad",
                        "payment_intent": "pi_9",
                        "metadata": {"payment_id": 7},
                    }
                },
            }
        ).encode()
        confirmed = provider.parse_webhook(completed, {}).confirmed
        assert confirmed.outcome == PaymentOutcome.SUCCEEDED
        assert confirmed.provider_session_id == "cs_1"
        assert confirmed.amount == 5000
        assert confirmed.currency == "CAD"
        assert confirmed.payment_intent_id == "pi_9"
        assert confirmed.metadata == {"payment_id": "7"}

        unpaid = completed.replace(b'"paid"', b'"unpaid"')
        assert provider.parse_webhook(unpaid, {}).confirmed is None

        expired = json.dumps(
            {"id": "evt_2", "type": "checkout.session.expired", "data": {"object": {"id": "cs_1"}}}
        ).encode()
        confirmed = provider.parse_webhook(expired, {}).confirmed
        assert confirmed.outcome == PaymentOutcome.FAILED
        assert confirmed.failure_reason == "Checkout session expired"

    def test_missing_webhook_secret(self):
        provider = StripeProvider(secret_key="sk_test_x", webhook_secret="", client=SimpleNamespace())
        with pytest.raises(WebhookSignatureError):
            provider.parse_webhook(b"{}", {"stripe-signature": "t=1,v1=abc"})


def square_with(handler, mode: str = "embedded") -> SquareProvider:
    return SquareProvider(
        access_token="sq_token",
        location_id="LOC1",
        base_url="https://connect.squareupsandbox.com",
        webhook_signature_key="key",
        notification_url="https://dojo.example.test/hook",
        checkout_mode=mode,
        transport=httpx.MockTransport(handler),
    )


class TestSquareProvider:
    async def test_embedded_session_is_local_reference(self):
        def handler(request):
            raise AssertionError("no request expected")

        provider = square_with(handler)
        ref = await provider.create_session(12100, "CAD", METADATA, "https://s", "https://c")
        other = await provider.create_session(12100, "CAD", METADATA, "https://s", "https://c")
        await provider.aclose()

        assert ref.session_id.startswith(REFERENCE_PREFIX)
        assert ref.session_id != other.session_id
        assert ref.client_secret is None

    async def test_hosted_payment_link(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(
                200, json={"payment_link": {"order_id": "ord_1", "url": "https://square.link/u/abc"}}
            )

        provider = square_with(handler, mode="hosted")
        ref = await provider.create_session(12100, "CAD", METADATA, "https://s/7", "https://c/7", "Monthly")
        await provider.aclose()

        assert ref.session_id == "ord_1"
        assert ref.redirect_url == "https://square.link/u/abc"
        request = seen[0]
        assert request.url.path == "/v2/online-checkout/payment-links"
        assert request.headers["Authorization"] == "Bearer sq_token"
        body = json.loads(request.content)
        assert body["quick_pay"]["price_money"] == {"amount": 12100, "currency": "CAD"}
        assert body["checkout_options"]["redirect_url"] == "https://s/7"

    async def test_confirm_charges_token_idempotently(self):
        bodies = []

        def handler(request: httpx.Request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"payment": {"id": "sq_pay_9", "status": "COMPLETED"}})

        provider = square_with(handler)
        payment_id = await provider.confirm_session("dojo_abc", "cnon:card-nonce-ok", 12100, "CAD", METADATA)
        await provider.aclose()

        assert payment_id == "sq_pay_9"
        assert bodies[0]["idempotency_key"] == "dojo_abc"
        assert bodies[0]["reference_id"] == "dojo_abc"
        assert bodies[0]["source_id"] == "cnon:card-nonce-ok"

    async def test_api_error_mapped(self):
        def handler(request):
            return httpx.Response(402, json={"errors": [{"code": "CARD_DECLINED", "detail": "Card declined."}]})

        provider = square_with(handler)
        with pytest.raises(PaymentProviderError) as exc_info:
            await provider.confirm_session("dojo_abc", "cnon:card-nonce-declined", 100, "CAD", METADATA)
        await provider.aclose()
        assert "Card declined." in exc_info.value.message

    async def test_transport_error_mapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        provider = square_with(handler, mode="hosted")
        with pytest.raises(PaymentProviderError) as exc_info:
            await provider.create_session(100, "CAD", METADATA, "https://s", "https://c")
        await provider.aclose()
        assert exc_info.value.message == "square: Payment service unavailable"

    async def test_failed_payment_event(self):
        provider = square_with(lambda request: httpx.Response(500))
        payload = json.dumps(
            {
                "event_id": "sq_evt_9",
                "type": "payment.updated",
                "data": {"object": {"payment": {"id": "sq_pay_9", "status": "FAILED", "reference_id": "dojo_abc"}}},
            }
        ).encode()

        parsed = provider.parse_webhook(payload, {SIGNATURE_HEADER: sign_payload("key", "https://dojo.example.test/hook", payload)})
        await provider.aclose()

        assert parsed.confirmed.outcome == PaymentOutcome.FAILED
        assert parsed.confirmed.provider_session_id == "dojo_abc"
        assert parsed.confirmed.failure_reason == "Square payment failed"


class TestRegistry:
    async def test_provider_chosen_by_configuration(self):
        square = build_payment_provider(Settings(payment_provider="square"))
        assert isinstance(square, SquareProvider)
        await square.aclose()
        assert isinstance(build_payment_provider(Settings(payment_provider="stripe")), StripeProvider)

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValueError):
            Settings(payment_provider="paypal")
