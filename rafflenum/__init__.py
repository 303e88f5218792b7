"""Raffle number allocation engine with a payment settlement saga and autopay."""

from .config import Settings  # noqa: F401
from .errors import (  # noqa: F401
    ChargeFailed,
    ChargeTimeout,
    DrawNotFound,
    DrawNotOpen,
    GatewayError,
    GatewayTimeout,
    InvalidNumbers,
    NoOpenDraw,
    NumbersUnavailable,
    PersistFailed,
    PurchaseLimitExceeded,
    RaffleError,
    ReservationNotFound,
    StaleReservation,
)

__version__ = "0.1.0"
