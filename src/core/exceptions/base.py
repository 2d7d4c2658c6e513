from typing import Any


class AppException(Exception):
    """Base application exception."""

    code: str = "app_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(AppException):
    """Resource not found."""

    code = "not_found"

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with id={identifier} not found"
        super().__init__(message=message, status_code=404)


class ValidationError(AppException):
    """Validation error."""

    code = "validation_error"

    def __init__(self, message: str, field: str | None = None):
        details = {"field": field} if field else {}
        super().__init__(message=message, status_code=422, details=details)


class DuplicateError(AppException):
    """Duplicate resource."""

    code = "duplicate"

    def __init__(self, resource: str, field: str, value: Any):
        message = f"{resource} with {field}={value} already exists"
        super().__init__(message=message, status_code=409, details={"field": field, "value": value})


class CurrencyMismatchError(Exception):
    """Arithmetic between amounts in different currencies. A programming error."""

    def __init__(self, left: str, right: str):
        self.left = left
        self.right = right
        super().__init__(f"Currency mismatch: {left} != {right}")


class InvalidLineItemError(ValidationError):
    """Line item rejected at the calculator boundary."""

    code = "invalid_line_item"

    def __init__(self, message: str, field: str | None = None, index: int | None = None):
        if index is not None and field:
            field = f"line_items.{index}.{field}"
        super().__init__(message=message, field=field)


class DiscountInvalidError(AppException):
    """A discount code failed authoritative validation."""

    code = "discount_invalid"

    def __init__(self, message: str, reason: str = "invalid"):
        self.reason = reason
        super().__init__(message=message, status_code=422, details={"field": "code", "reason": reason})


class TaxResolutionFailedError(AppException):
    """Applicable taxes could not be determined; the charge must not proceed."""

    code = "tax_resolution_failed"
    retryable = True

    def __init__(self, message: str = "Unable to determine taxes for this charge. Please try again."):
        super().__init__(message=message, status_code=503)


class PaymentProviderError(AppException):
    """Transport or API failure talking to the payment provider."""

    code = "payment_provider_error"
    retryable = True

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(message=f"{provider}: {message}", status_code=502, details={"provider": provider})


class ProviderSessionCreationFailedError(AppException):
    """Provider refused or failed to open a session for a pending payment."""

    code = "provider_session_creation_failed"
    retryable = True

    def __init__(self, payment_id: int, provider: str):
        self.payment_id = payment_id
        super().__init__(
            message="Could not start the payment with the payment provider. Please try again.",
            status_code=502,
            details={"payment_id": payment_id, "provider": provider},
        )


class PaymentRecordInconsistentError(AppException):
    """Provider session exists but the local payment could not be linked to it."""

    code = "payment_record_inconsistent"

    def __init__(self, payment_id: int, provider_session_id: str):
        self.payment_id = payment_id
        self.provider_session_id = provider_session_id
        super().__init__(
            message=(
                "Your payment could not be set up. Please do not retry; "
                f"contact support and mention payment #{payment_id}."
            ),
            status_code=500,
            details={"payment_id": payment_id},
        )


class PaymentNotYetVisibleError(Exception):
    """Payment record is not visible yet. A polling state rather than a failure."""

    def __init__(self, reference: str | int):
        self.reference = reference
        super().__init__(f"Payment {reference} is not available yet")


class WebhookSignatureError(AppException):
    """Webhook payload failed signature verification."""

    code = "invalid_signature"

    def __init__(self, provider: str, message: str = "Invalid webhook signature"):
        super().__init__(message=message, status_code=400, details={"provider": provider})
