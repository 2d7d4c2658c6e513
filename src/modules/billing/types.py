"""Shared billing vocabularies."""

from enum import StrEnum


class ChargeCategory(StrEnum):
    """Category a charge belongs to; discounts and tax rates are scoped by it."""

    MONTHLY_GROUP = "monthly_group"
    YEARLY_GROUP = "yearly_group"
    INDIVIDUAL_SESSION = "individual_session"
    STORE_PURCHASE = "store_purchase"
    EVENT_REGISTRATION = "event_registration"
    INVOICE_PAYMENT = "invoice_payment"
    OTHER = "other"


class LineItemType(StrEnum):
    """Kind of a priced entry on an invoice or payment request."""

    CLASS_ENROLLMENT = "class_enrollment"
    INDIVIDUAL_SESSION = "individual_session"
    STORE_PURCHASE = "store_purchase"
    EVENT_REGISTRATION = "event_registration"
    FEE = "fee"
    SERVICE = "service"
    PRODUCT = "product"
    DISCOUNT = "discount"
    OTHER = "other"
