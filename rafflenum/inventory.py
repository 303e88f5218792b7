"""Inventory store: the 100 slots of each draw and their visible state."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db.utils import as_utc, utcnow
from .errors import DrawNotFound, NoOpenDraw
from .models.draw import (
    SLOT_AVAILABLE,
    SLOT_NUMBERS,
    SLOT_RESERVED,
    SLOT_SOLD,
    Draw,
    Slot,
)
from .models.payment import Payment
from .models.reservation import Reservation

logger = logging.getLogger(__name__)


@dataclass
class NumberView:
    """Visible state of one number in a snapshot."""

    number: int
    state: str
    reservation_id: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class InventorySnapshot:
    """Point-in-time view of a draw's numbers.

    Attributes
    ----------
    draw_id : int
        Draw the snapshot belongs to.
    numbers : list[NumberView]
        One entry per number 0..99, in ascending order.
    expired_reservation_ids : list[str]
        Live holds found past their expiry while building the view. They are
        shown as available and should be reclaimed by the caller.
    taken_at : datetime
        Reference time used to decide expiry.
    """

    draw_id: int
    numbers: list[NumberView]
    expired_reservation_ids: list[str] = field(default_factory=list)
    taken_at: Optional[datetime] = None

    def state_of(self, number: int) -> str:
        return self.numbers[number].state

    def numbers_in(self, state: str) -> list[int]:
        return [view.number for view in self.numbers if view.state == state]

    @property
    def counts(self) -> dict[str, int]:
        result = {SLOT_AVAILABLE: 0, SLOT_RESERVED: 0, SLOT_SOLD: 0}
        for view in self.numbers:
            result[view.state] += 1
        return result


class InventoryStore:
    """Draw and slot access bound to a SQLAlchemy session."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # -------- draws --------
    def get_draw(self, draw_id: int) -> Draw:
        draw = self._session.get(Draw, draw_id)
        if draw is None:
            raise DrawNotFound(f"draw {draw_id} not found")
        return draw

    def get_open_draw(self) -> Optional[Draw]:
        return Draw.get_open(self._session)

    def require_open_draw(self) -> Draw:
        draw = self.get_open_draw()
        if draw is None:
            raise NoOpenDraw("no draw is open for sale")
        return draw

    def open_draw(self, *, now: Optional[datetime] = None) -> Draw:
        """Open a new draw with 100 available slots.

        Raises
        ------
        ValueError
            If another draw is still open.
        """

        current = self.get_open_draw()
        if current is not None:
            raise ValueError(f"draw {current.id} is still open")

        draw = Draw(opened_at=as_utc(now) or utcnow())
        self._session.add(draw)
        self._session.flush()
        self.ensure_slots(draw.id)
        logger.info("Opened draw %s", draw.id)
        return draw

    # -------- slots --------
    def ensure_slots(self, draw_id: int) -> int:
        """Make sure slots 0..99 exist for ``draw_id``.

        Only missing numbers are inserted, so the call is idempotent.

        Returns
        -------
        int
            Number of slots created.
        """

        existing = set(
            self._session.scalars(select(Slot.number).where(Slot.draw_id == draw_id))
        )
        missing = [n for n in SLOT_NUMBERS if n not in existing]
        if not missing:
            return 0
        if existing:
            logger.warning(
                "Draw %s had %d of %d slots; inserting %d missing",
                draw_id,
                len(existing),
                len(SLOT_NUMBERS),
                len(missing),
            )
        self._session.add_all(
            Slot(draw_id=draw_id, number=n, state=SLOT_AVAILABLE) for n in missing
        )
        self._session.flush()
        return len(missing)

    def counts(self, draw_id: int) -> dict[str, int]:
        return Slot.count_by_state(self._session, draw_id)

    # -------- reads --------
    def snapshot(
        self, draw_id: int, *, now: Optional[datetime] = None
    ) -> InventorySnapshot:
        """Build the visible state of every number of ``draw_id``.

        Confirmed sales (sold slots and numbers of approved payments) win over
        live holds, which win over ``available``. A hold past its expiry is
        shown as available and its id is listed in
        ``expired_reservation_ids``; nothing is written here.
        """

        self.get_draw(draw_id)
        ref = as_utc(now) or utcnow()

        views = [NumberView(number=n, state=SLOT_AVAILABLE) for n in SLOT_NUMBERS]

        expired: list[str] = []
        for reservation in Reservation.live_for_draw(self._session, draw_id):
            if reservation.is_expired(reference_time=ref):
                expired.append(reservation.id)
                continue
            for n in reservation.numbers or []:
                view = views[int(n)]
                view.state = SLOT_RESERVED
                view.reservation_id = reservation.id
                view.expires_at = reservation.expires_at

        sold = Payment.approved_numbers(self._session, draw_id)
        sold.update(
            self._session.scalars(
                select(Slot.number).where(
                    Slot.draw_id == draw_id, Slot.state == SLOT_SOLD
                )
            )
        )
        for n in sold:
            view = views[int(n)]
            view.state = SLOT_SOLD
            view.expires_at = None

        if expired:
            logger.debug(
                "Snapshot of draw %s found %d expired holds", draw_id, len(expired)
            )
        return InventorySnapshot(
            draw_id=draw_id,
            numbers=views,
            expired_reservation_ids=expired,
            taken_at=ref,
        )


__all__ = ["InventoryStore", "InventorySnapshot", "NumberView"]
