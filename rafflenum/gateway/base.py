"""Payment gateway interface consumed by the autopay saga."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Optional

CHARGE_APPROVED = "approved"
CHARGE_REJECTED = "rejected"
CHARGE_PENDING = "pending"
CHARGE_CANCELED = "canceled"
CHARGE_REFUNDED = "refunded"
CHARGE_UNKNOWN = "unknown"


@dataclass(frozen=True)
class StoredPaymentMethod:
    """A card kept at the provider for a subscriber."""

    customer_id: str
    payment_profile_id: str


@dataclass
class ChargeResult:
    """Outcome of :meth:`PaymentGateway.charge` or :meth:`PaymentGateway.lookup`.

    Attributes
    ----------
    status : str
        ``approved``, ``rejected`` or ``pending``.
    bill_id, charge_id : Optional[str]
        Provider identifiers; at least one is set whenever the provider
        accepted the request.
    http_status : Optional[int]
        HTTP status of the last provider response.
    provider_status : Optional[str]
        Raw status string reported by the provider.
    message : Optional[str]
        Gateway message, e.g. a rejection reason.
    request, response : Any
        Masked request body and raw response, kept for the audit trail.
    """

    status: str
    bill_id: Optional[str] = None
    charge_id: Optional[str] = None
    http_status: Optional[int] = None
    provider_status: Optional[str] = None
    message: Optional[str] = None
    request: Optional[dict] = None
    response: Any = None

    @property
    def approved(self) -> bool:
        return self.status == CHARGE_APPROVED

    @property
    def correlation_id(self) -> Optional[str]:
        return self.bill_id or self.charge_id


@dataclass
class ChargeStatus:
    """Provider-side state of an existing charge."""

    status: str
    captured: bool = False
    bill_id: Optional[str] = None
    charge_id: Optional[str] = None
    provider_status: Optional[str] = None
    raw: dict = field(default_factory=dict)


class PaymentGateway(abc.ABC):
    """Client for one payment provider.

    Implementations raise :class:`~rafflenum.errors.GatewayTimeout` when the
    provider does not answer in time and :class:`~rafflenum.errors.GatewayError`
    for any other transport or provider failure.
    """

    provider: str = "generic"

    @abc.abstractmethod
    def charge(
        self,
        *,
        idempotency_key: str,
        amount_cents: int,
        method: StoredPaymentMethod,
        description: str,
        metadata: Optional[dict] = None,
    ) -> ChargeResult:
        """Charge a stored payment method.

        Repeating a call with the same ``idempotency_key`` must not charge twice.
        """

    @abc.abstractmethod
    def refund(
        self,
        *,
        bill_id: Optional[str] = None,
        charge_id: Optional[str] = None,
    ) -> dict:
        """Return captured money to the payer."""

    @abc.abstractmethod
    def cancel(
        self,
        *,
        bill_id: Optional[str] = None,
        charge_id: Optional[str] = None,
    ) -> dict:
        """Cancel a charge that was not captured."""

    @abc.abstractmethod
    def get_status(
        self,
        *,
        bill_id: Optional[str] = None,
        charge_id: Optional[str] = None,
    ) -> ChargeStatus:
        """Fetch the current state of a charge."""

    @abc.abstractmethod
    def lookup(self, idempotency_key: str) -> Optional[ChargeResult]:
        """Find the charge created for ``idempotency_key``, if any."""


__all__ = [
    "PaymentGateway",
    "StoredPaymentMethod",
    "ChargeResult",
    "ChargeStatus",
    "CHARGE_APPROVED",
    "CHARGE_REJECTED",
    "CHARGE_PENDING",
    "CHARGE_CANCELED",
    "CHARGE_REFUNDED",
    "CHARGE_UNKNOWN",
]
