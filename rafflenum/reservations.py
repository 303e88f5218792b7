"""Reservation manager: time-bounded holds over a draw's numbers."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .db.utils import as_utc, utcnow
from .errors import (
    DrawNotFound,
    DrawNotOpen,
    InvalidNumbers,
    NumbersUnavailable,
    ReservationNotFound,
)
from .inventory import InventoryStore
from .models.draw import SLOT_AVAILABLE, SLOT_COUNT, SLOT_RESERVED, Draw, Slot
from .models.reservation import (
    LIVE_RESERVATION_STATUSES,
    RESERVATION_ACTIVE,
    RESERVATION_EXPIRED,
    RESERVATION_PAID,
    RESERVATION_PENDING,
    Reservation,
)

logger = logging.getLogger(__name__)


def normalize_numbers(numbers: Iterable[object]) -> list[int]:
    """Validate a request and return the numbers in ascending order.

    Raises
    ------
    InvalidNumbers
        If ``numbers`` is empty, contains a non-integer, a value outside
        0..99 or a duplicate.
    """

    if numbers is None or isinstance(numbers, (str, bytes)):
        raise InvalidNumbers("numbers must be a list of integers")
    values = list(numbers)
    if not values:
        raise InvalidNumbers("at least one number is required", values)

    seen: set[int] = set()
    for value in values:
        # bool is an int subclass but never a ticket number
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidNumbers(f"{value!r} is not an integer", values)
        if not 0 <= value < SLOT_COUNT:
            raise InvalidNumbers(f"{value} is outside 0..{SLOT_COUNT - 1}", values)
        if value in seen:
            raise InvalidNumbers(f"{value} requested more than once", values)
        seen.add(value)
    return sorted(seen)


class ReservationManager:
    """Create, release and reclaim holds.

    All locking happens on slot rows in ascending number order, then on the
    reservations found holding them, so two requests over overlapping numbers
    serialize on the first shared slot. Every method runs inside the caller's
    transaction.
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    # -------- hold creation --------
    def reserve(
        self,
        draw_id: int,
        owner_id: int,
        numbers: Iterable[object],
        *,
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> Reservation:
        """Hold every requested number or none of them.

        Parameters
        ----------
        draw_id : int
            Draw to reserve in; must be open.
        owner_id : int
            Buyer the hold belongs to.
        numbers : Iterable[int]
            Requested numbers, each in 0..99 and distinct.
        ttl : timedelta
            Lifetime of the hold.
        now : Optional[datetime], default: None
            Reference time; defaults to the current UTC time.

        Returns
        -------
        Reservation
            The new ``active`` reservation.

        Raises
        ------
        InvalidNumbers
            If the request is malformed. Nothing is locked or written.
        NumbersUnavailable
            If any number is sold or held by a live, unexpired reservation.
            ``conflicts`` lists exactly those numbers and nothing is granted.
        """

        requested = normalize_numbers(numbers)
        now = as_utc(now) or utcnow()
        self._require_open(draw_id)

        slots = self._lock_and_reclaim(draw_id, requested, now)
        conflicts = [slot.number for slot in slots if slot.state != SLOT_AVAILABLE]
        if conflicts:
            logger.info(
                "Reservation refused for owner %s in draw %s; conflicts=%s",
                owner_id,
                draw_id,
                conflicts,
            )
            raise NumbersUnavailable(conflicts)

        return self._grant(draw_id, owner_id, slots, ttl, now, RESERVATION_ACTIVE)

    def reserve_available(
        self,
        draw_id: int,
        owner_id: int,
        numbers: Iterable[object],
        *,
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[Reservation]:
        """Hold whichever of ``numbers`` are still free.

        Used on behalf of autopay subscribers: a partial grant is acceptable.
        The reservation is created with status ``pending``.

        Returns
        -------
        Optional[Reservation]
            The new reservation, or ``None`` when none of the numbers is free.
        """

        requested = normalize_numbers(numbers)
        now = as_utc(now) or utcnow()
        self._require_open(draw_id)

        slots = self._lock_and_reclaim(draw_id, requested, now)
        free = [slot for slot in slots if slot.state == SLOT_AVAILABLE]
        if not free:
            return None
        return self._grant(draw_id, owner_id, free, ttl, now, RESERVATION_PENDING)

    # -------- hold release --------
    def release(
        self, reservation_id: str, *, now: Optional[datetime] = None
    ) -> Reservation:
        """Expire a hold and free the slots it still owns.

        Releasing an already expired hold is a no-op apart from freeing any
        slot still pointing at it. A paid reservation is never released.
        """

        reservation = self._lock_reservation(reservation_id)
        if reservation is None:
            raise ReservationNotFound(f"reservation {reservation_id} not found")
        if reservation.status == RESERVATION_PAID:
            logger.warning(
                "Refusing to release paid reservation %s", reservation_id
            )
            return reservation
        freed = self._expire(reservation)
        logger.info("Released reservation %s (%d slots freed)", reservation_id, freed)
        return reservation

    def reclaim(
        self, reservation_ids: Iterable[str], *, now: Optional[datetime] = None
    ) -> list[str]:
        """Expire the given holds if they are still live and past expiry."""

        now = as_utc(now) or utcnow()
        reclaimed: list[str] = []
        for reservation_id in sorted(set(reservation_ids)):
            reservation = self._lock_reservation(reservation_id)
            if reservation is None or not reservation.is_live:
                continue
            if not reservation.is_expired(reference_time=now):
                continue
            self._expire(reservation)
            reclaimed.append(reservation_id)
        return reclaimed

    def reclaim_expired(
        self, draw_id: Optional[int] = None, *, now: Optional[datetime] = None
    ) -> list[str]:
        """Sweep every live hold past its expiry, optionally within one draw."""

        now = as_utc(now) or utcnow()
        stmt = select(Reservation.id).where(
            Reservation.status.in_(LIVE_RESERVATION_STATUSES),
            Reservation.expires_at <= now,
        )
        if draw_id is not None:
            stmt = stmt.where(Reservation.draw_id == draw_id)
        ids = list(self._session.scalars(stmt))
        reclaimed = self.reclaim(ids, now=now)
        if reclaimed:
            logger.info("Reclaimed %d expired reservations", len(reclaimed))
        return reclaimed

    # -------- queries --------
    def count_owned(
        self, draw_id: int, owner_id: int, *, now: Optional[datetime] = None
    ) -> int:
        """Numbers ``owner_id`` has bought or currently holds in ``draw_id``."""

        now = as_utc(now) or utcnow()
        stmt = select(Reservation).where(
            Reservation.draw_id == draw_id,
            Reservation.owner_id == owner_id,
            Reservation.status.in_(LIVE_RESERVATION_STATUSES + (RESERVATION_PAID,)),
        )
        total = 0
        for reservation in self._session.scalars(stmt):
            if reservation.status == RESERVATION_PAID or not reservation.is_expired(
                reference_time=now
            ):
                total += len(reservation.numbers or [])
        return total

    def live_count(self, draw_id: int) -> int:
        stmt = select(func.count(Reservation.id)).where(
            Reservation.draw_id == draw_id,
            Reservation.status.in_(LIVE_RESERVATION_STATUSES),
        )
        return int(self._session.scalar(stmt) or 0)

    # -------- internals --------
    def _require_open(self, draw_id: int) -> Draw:
        draw = self._session.get(Draw, draw_id)
        if draw is None:
            raise DrawNotFound(f"draw {draw_id} not found")
        if not draw.is_open:
            raise DrawNotOpen(f"draw {draw_id} is {draw.status}")
        return draw

    def _lock_reservation(self, reservation_id: str) -> Optional[Reservation]:
        stmt = (
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .with_for_update()
        )
        return self._session.scalars(stmt).one_or_none()

    def _lock_slots(self, draw_id: int, numbers: Sequence[int]) -> list[Slot]:
        stmt = (
            select(Slot)
            .where(Slot.draw_id == draw_id, Slot.number.in_(list(numbers)))
            .order_by(Slot.number)
            .with_for_update()
        )
        return list(self._session.scalars(stmt))

    def _lock_and_reclaim(
        self, draw_id: int, numbers: Sequence[int], now: datetime
    ) -> list[Slot]:
        slots = self._lock_slots(draw_id, numbers)
        if len(slots) < len(numbers):
            InventoryStore(self._session).ensure_slots(draw_id)
            slots = self._lock_slots(draw_id, numbers)

        holders = sorted(
            {
                slot.reservation_id
                for slot in slots
                if slot.state == SLOT_RESERVED and slot.reservation_id
            }
        )
        for reservation_id in holders:
            holder = self._lock_reservation(reservation_id)
            if holder is None:
                continue
            if holder.status == RESERVATION_EXPIRED or holder.is_expired(
                reference_time=now
            ):
                logger.debug(
                    "Reclaiming expired reservation %s during reserve", holder.id
                )
                self._expire(holder)

        for slot in slots:
            if slot.state == SLOT_RESERVED and slot.reservation_id is None:
                logger.warning(
                    "Slot %02d of draw %s was reserved without an owner; freeing it",
                    slot.number,
                    draw_id,
                )
                slot.mark_available()
        return slots

    def _expire(self, reservation: Reservation) -> int:
        reservation.status = RESERVATION_EXPIRED
        stmt = (
            select(Slot)
            .where(
                Slot.reservation_id == reservation.id, Slot.state == SLOT_RESERVED
            )
            .order_by(Slot.number)
            .with_for_update()
        )
        owned = list(self._session.scalars(stmt))
        for slot in owned:
            slot.mark_available()
        self._session.flush()
        return len(owned)

    def _grant(
        self,
        draw_id: int,
        owner_id: int,
        slots: Sequence[Slot],
        ttl: timedelta,
        now: datetime,
        status: str,
    ) -> Reservation:
        reservation = Reservation(
            owner_id=owner_id,
            draw_id=draw_id,
            numbers=sorted(slot.number for slot in slots),
            status=status,
            created_at=now,
            expires_at=now + ttl,
        )
        self._session.add(reservation)
        self._session.flush()
        for slot in slots:
            slot.mark_reserved(reservation.id)
        self._session.flush()
        logger.info(
            "Reserved %s for owner %s in draw %s (reservation %s)",
            reservation.numbers,
            owner_id,
            draw_id,
            reservation.id,
        )
        return reservation


__all__ = ["ReservationManager", "normalize_numbers"]
