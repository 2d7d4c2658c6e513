from src.core.exceptions.base import (
    AppException,
    NotFoundError,
    ValidationError,
    DuplicateError,
    CurrencyMismatchError,
    InvalidLineItemError,
    DiscountInvalidError,
    TaxResolutionFailedError,
    PaymentProviderError,
    ProviderSessionCreationFailedError,
    PaymentRecordInconsistentError,
    PaymentNotYetVisibleError,
    WebhookSignatureError,
)

__all__ = [
    "AppException",
    "NotFoundError",
    "ValidationError",
    "DuplicateError",
    "CurrencyMismatchError",
    "InvalidLineItemError",
    "DiscountInvalidError",
    "TaxResolutionFailedError",
    "PaymentProviderError",
    "ProviderSessionCreationFailedError",
    "PaymentRecordInconsistentError",
    "PaymentNotYetVisibleError",
    "WebhookSignatureError",
]
