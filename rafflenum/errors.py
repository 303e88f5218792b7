"""Exception taxonomy of the allocation engine and the autopay saga."""

from __future__ import annotations

from typing import Any, Iterable, Optional


class RaffleError(Exception):
    """Base class for every error raised by :mod:`rafflenum`."""


class InvalidNumbers(RaffleError, ValueError):
    """Requested numbers are empty, duplicated or outside 0..99. Not retried."""

    def __init__(self, message: str, numbers: Optional[Iterable[Any]] = None):
        super().__init__(message)
        self.numbers = list(numbers) if numbers is not None else []


class NumbersUnavailable(RaffleError):
    """Some requested numbers are sold or held by a live reservation.

    ``conflicts`` holds exactly the blocking numbers so the caller can retry
    with a reduced or different set.
    """

    def __init__(self, conflicts: Iterable[int]):
        self.conflicts = sorted(int(n) for n in conflicts)
        super().__init__(
            "numbers unavailable: "
            + ", ".join(f"{n:02d}" for n in self.conflicts)
        )


class PurchaseLimitExceeded(RaffleError):
    """The owner would exceed the per-draw purchase limit."""

    def __init__(self, current: int, requested: int, maximum: int):
        self.current = current
        self.requested = requested
        self.maximum = maximum
        super().__init__(
            f"max numbers per user reached: current={current} "
            f"requested={requested} max={maximum}"
        )


class NoOpenDraw(RaffleError):
    """No draw is currently open for sale."""


class DrawNotFound(RaffleError):
    pass


class DrawNotOpen(RaffleError):
    pass


class ReservationNotFound(RaffleError):
    pass


class StaleReservation(RaffleError):
    """Settlement arrived for a hold whose slots were reclaimed meanwhile.

    Non-fatal; surfaced for reconciliation.
    """

    def __init__(self, reservation_id: str, numbers: Iterable[int]):
        self.reservation_id = reservation_id
        self.numbers = sorted(int(n) for n in numbers)
        super().__init__(
            f"reservation {reservation_id} no longer owns numbers {self.numbers}"
        )


class GatewayError(RaffleError):
    """The payment provider answered with an error or could not be reached."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        response: Any = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = status
        self.response = response
        self.code = code


class GatewayTimeout(GatewayError):
    """The provider did not answer in time; the outcome is unknown."""


class ChargeFailed(RaffleError):
    """An autopay charge was rejected or could not be confirmed."""

    def __init__(
        self,
        message: str,
        *,
        provider_status: Optional[int] = None,
        response: Any = None,
    ):
        super().__init__(message)
        self.provider_status = provider_status
        self.response = response


class ChargeTimeout(ChargeFailed):
    """The charge call timed out and the provider could not confirm it.

    ``verified`` is true when the provider was asked afterwards and reported
    no charge. When it is false the outcome is unknown and the money may
    have moved.
    """

    def __init__(self, message: str, *, verified: bool = True, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.verified = verified


class PersistFailed(RaffleError):
    """Money was charged but the sale could not be finalized."""

    def __init__(
        self,
        message: str,
        *,
        reservation_id: Optional[str] = None,
        bill_id: Optional[str] = None,
        charge_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
    ):
        super().__init__(message)
        self.reservation_id = reservation_id
        self.bill_id = bill_id
        self.charge_id = charge_id
        self.amount_cents = amount_cents


__all__ = [
    "RaffleError",
    "InvalidNumbers",
    "NumbersUnavailable",
    "PurchaseLimitExceeded",
    "NoOpenDraw",
    "DrawNotFound",
    "DrawNotOpen",
    "ReservationNotFound",
    "StaleReservation",
    "GatewayError",
    "GatewayTimeout",
    "ChargeFailed",
    "ChargeTimeout",
    "PersistFailed",
]
