"""Builds the deployment's payment provider and exposes it as a dependency."""

from fastapi import Request

from src.core.config import Settings
from src.integrations.base import PaymentProvider
from src.integrations.square.provider import SquareProvider
from src.integrations.stripe.provider import StripeProvider


def build_payment_provider(config: Settings) -> PaymentProvider:
    """Exactly one provider per process, chosen by configuration."""
    if config.payment_provider == "square":
        return SquareProvider(
            access_token=config.square_access_token,
            location_id=config.square_location_id,
            base_url=config.square_base_url,
            webhook_signature_key=config.square_webhook_signature_key,
            notification_url=config.square_webhook_notification_url,
            api_version=config.square_api_version,
            checkout_mode=config.checkout_mode,
        )
    return StripeProvider(
        secret_key=config.stripe_secret_key,
        webhook_secret=config.stripe_webhook_secret,
        checkout_mode=config.checkout_mode,
    )


def get_payment_provider(request: Request) -> PaymentProvider:
    """FastAPI dependency; overridden in tests."""
    return request.app.state.payment_provider
