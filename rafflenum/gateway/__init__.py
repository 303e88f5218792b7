from .base import (  # noqa: F401
    ChargeResult,
    ChargeStatus,
    PaymentGateway,
    StoredPaymentMethod,
)
from .api import VindiGateway, WebhookEvent  # noqa: F401

__all__ = [
    "PaymentGateway",
    "StoredPaymentMethod",
    "ChargeResult",
    "ChargeStatus",
    "VindiGateway",
    "WebhookEvent",
]
