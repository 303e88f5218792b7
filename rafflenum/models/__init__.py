from .base import Base

# import models so Alembic/autoloaders can discover mappers
from .draw import Draw, Slot  # noqa: F401
from .reservation import Reservation  # noqa: F401
from .payment import Payment  # noqa: F401
from .autopay import AutopayProfile, AutopayNumber, AutopayRun  # noqa: F401
from .config import AppConfig  # noqa: F401

__all__ = [
    "Base",
    "Draw",
    "Slot",
    "Reservation",
    "Payment",
    "AutopayProfile",
    "AutopayNumber",
    "AutopayRun",
    "AppConfig",
]
