from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Index, String, select
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from ..db.utils import as_utc, dt_iso, utcnow
from .base import Base
from .column_types import UTCDateTime
from .id_type import ID_TYPE

if TYPE_CHECKING:
    from .draw import Draw, Slot
    from .payment import Payment

RESERVATION_ACTIVE = "active"
RESERVATION_PENDING = "pending"
RESERVATION_PAID = "paid"
RESERVATION_EXPIRED = "expired"

LIVE_RESERVATION_STATUSES = (RESERVATION_ACTIVE, RESERVATION_PENDING)
"""Statuses of a hold that still blocks its numbers (until ``expires_at``)."""


def _new_reservation_id() -> str:
    return str(uuid.uuid4())


class Reservation(Base):
    """A time-bounded hold over a subset of a draw's numbers."""

    __tablename__ = "reservations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=_new_reservation_id
    )
    owner_id: Mapped[int] = mapped_column(ID_TYPE, nullable=False, index=True)
    draw_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("draws.id", ondelete="CASCADE"), nullable=False, index=True
    )
    numbers: Mapped[list[int]] = mapped_column(JSON, nullable=False)
    """Ascending list of the held numbers."""

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RESERVATION_ACTIVE
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    payment_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        ForeignKey("payments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    draw: Mapped["Draw"] = relationship()
    slots: Mapped[list["Slot"]] = relationship(back_populates="reservation")
    payment: Mapped[Optional["Payment"]] = relationship(foreign_keys=[payment_id])

    __table_args__ = (
        CheckConstraint(
            "status IN ('active','pending','paid','expired')", name="status_enum"
        ),
        Index("ix_reservations_draw_status", "draw_id", "status"),
    )

    @property
    def is_live(self) -> bool:
        """``True`` while the hold has not been paid or expired by status."""

        return self.status in LIVE_RESERVATION_STATUSES

    def is_expired(self, *, reference_time: Optional[datetime] = None) -> bool:
        """Check whether the hold no longer blocks its numbers.

        A reservation already marked ``expired`` counts as expired regardless
        of its timestamp; a paid reservation never expires.
        """

        if self.status == RESERVATION_EXPIRED:
            return True
        if self.status == RESERVATION_PAID:
            return False
        ref = reference_time or utcnow()
        return as_utc(self.expires_at) <= as_utc(ref)

    def blocks_numbers(self, *, reference_time: Optional[datetime] = None) -> bool:
        return self.is_live and not self.is_expired(reference_time=reference_time)

    @classmethod
    def live_for_draw(cls, session: Session, draw_id: int) -> list["Reservation"]:
        """All reservations of ``draw_id`` whose status is still live."""

        stmt = (
            select(cls)
            .where(cls.draw_id == draw_id, cls.status.in_(LIVE_RESERVATION_STATUSES))
            .order_by(cls.created_at, cls.id)
        )
        return list(session.scalars(stmt))

    @classmethod
    def get_by_payment_id(
        cls, session: Session, payment_id: str
    ) -> Optional["Reservation"]:
        return session.scalar(select(cls).where(cls.payment_id == payment_id))

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<Reservation(id={self.id}, draw_id={self.draw_id}, owner_id={self.owner_id}, "
            f"numbers={self.numbers}, status={self.status}, expires_at={dt_iso(self.expires_at)})>"
        )


__all__ = [
    "Reservation",
    "RESERVATION_ACTIVE",
    "RESERVATION_PENDING",
    "RESERVATION_PAID",
    "RESERVATION_EXPIRED",
    "LIVE_RESERVATION_STATUSES",
]
