"""Ticket price lookup with a short-lived cache."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from .models.config import AppConfig

logger = logging.getLogger(__name__)

PRICE_KEY = "ticket_price_cents"


class TicketPriceCache:
    """Serves the unit ticket price, re-reading ``app_config`` at most every ``ttl`` seconds.

    Construct one per process and pass it to the components that need it.
    """

    def __init__(
        self,
        Session: sessionmaker,
        *,
        default_cents: int = 5500,
        ttl: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._Session = Session
        self._default = default_cents
        self._ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._value: Optional[int] = None
        self._read_at = 0.0

    def get(self) -> int:
        with self._lock:
            now = self._clock()
            if self._value is not None and now - self._read_at < self._ttl:
                return self._value
            with self._Session() as session:
                value = self._load(session)
            self._value = value
            self._read_at = now
            return value

    def set(self, cents: int) -> int:
        """Persist a new price and refresh the cache."""

        value = max(0, int(cents))
        with self._Session.begin() as session:
            AppConfig.set_value(session, PRICE_KEY, value)
        with self._lock:
            self._value = value
            self._read_at = self._clock()
        return value

    def invalidate(self) -> None:
        with self._lock:
            self._value = None

    def _load(self, session: Session) -> int:
        raw = AppConfig.get_value(session, PRICE_KEY)
        if raw is None:
            return self._default
        try:
            value = int(raw)
        except ValueError:
            logger.warning("app_config %s=%r is not an integer", PRICE_KEY, raw)
            return self._default
        return value if value > 0 else self._default


__all__ = ["TicketPriceCache", "PRICE_KEY"]
