"""Database models for draws and their 100-number slot inventory."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    select,
    text,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from ..db.utils import dt_iso, utcnow
from .base import Base
from .column_types import UTCDateTime
from .id_type import ID_TYPE

if TYPE_CHECKING:
    from .reservation import Reservation

DRAW_OPEN = "open"
DRAW_CLOSED = "closed"

SLOT_AVAILABLE = "available"
SLOT_RESERVED = "reserved"
SLOT_SOLD = "sold"

SLOT_COUNT = 100
"""Numbers 00..99 are sold in every draw."""

SLOT_NUMBERS = range(SLOT_COUNT)


class Draw(Base):
    """One selling round of 100 numbered slots."""

    __tablename__ = "draws"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    """Primary key."""

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=DRAW_OPEN)
    """Lifecycle status, ``"open"`` or ``"closed"``."""

    opened_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    """Timestamp when the draw started selling."""

    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    """Timestamp when the draw sold out or was closed by an operator."""

    realized_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )
    """Moment the winning number was drawn."""

    winning_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """Winning number, unknown until the draw is realized."""

    autopay_ran_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime(), nullable=True
    )
    """Set once the autopay orchestrator has processed this draw."""

    slots: Mapped[list["Slot"]] = relationship(
        back_populates="draw",
        order_by="Slot.number",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("status IN ('open','closed')", name="status_enum"),
        # At most one open draw system-wide.
        Index(
            "uq_draws_single_open",
            "status",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.status == DRAW_OPEN

    @classmethod
    def get_open(cls, session: Session) -> Optional["Draw"]:
        """Return the currently open draw, if any."""

        stmt = select(cls).where(cls.status == DRAW_OPEN).order_by(cls.id.desc())
        return session.scalars(stmt).first()

    def close(self, *, timestamp: Optional[datetime] = None) -> None:
        """Mark the draw closed."""

        self.status = DRAW_CLOSED
        self.closed_at = timestamp or utcnow()

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<Draw(id={self.id}, status={self.status}, "
            f"opened_at={dt_iso(self.opened_at)}, closed_at={dt_iso(self.closed_at)})>"
        )


class Slot(Base):
    """One number (0..99) of a draw and its allocation state.

    State graph: ``available -> reserved -> sold`` or ``reserved -> available``.
    ``sold`` is terminal.
    """

    __tablename__ = "draw_slots"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)

    draw_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("draws.id", ondelete="CASCADE"), nullable=False, index=True
    )

    number: Mapped[int] = mapped_column(Integer, nullable=False)
    """The ticket number, 0..99."""

    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SLOT_AVAILABLE
    )

    reservation_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("reservations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    """Back-reference to the reservation that owns (or sold) this slot."""

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    draw: Mapped["Draw"] = relationship(back_populates="slots")
    reservation: Mapped[Optional["Reservation"]] = relationship(
        back_populates="slots"
    )

    __table_args__ = (
        UniqueConstraint("draw_id", "number", name="uq_draw_slots_draw_number"),
        CheckConstraint("number >= 0 AND number <= 99", name="number_range"),
        CheckConstraint(
            "state IN ('available','reserved','sold')", name="state_enum"
        ),
    )

    def mark_available(self) -> None:
        self.state = SLOT_AVAILABLE
        self.reservation_id = None

    def mark_reserved(self, reservation_id: str) -> None:
        if self.state != SLOT_AVAILABLE:
            raise ValueError(
                f"slot {self.number} cannot be reserved from state {self.state!r}"
            )
        self.state = SLOT_RESERVED
        self.reservation_id = reservation_id

    def mark_sold(self) -> None:
        if self.state != SLOT_RESERVED:
            raise ValueError(
                f"slot {self.number} cannot be sold from state {self.state!r}"
            )
        self.state = SLOT_SOLD

    @classmethod
    def count_by_state(cls, session: Session, draw_id: int) -> dict[str, int]:
        """Return ``{state: count}`` for every state present in ``draw_id``."""

        stmt = (
            select(cls.state, func.count(cls.id))
            .where(cls.draw_id == draw_id)
            .group_by(cls.state)
        )
        counts = {SLOT_AVAILABLE: 0, SLOT_RESERVED: 0, SLOT_SOLD: 0}
        for state, count in session.execute(stmt):
            counts[state] = int(count)
        return counts

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<Slot(draw_id={self.draw_id}, number={self.number:02d}, "
            f"state={self.state}, reservation_id={self.reservation_id})>"
        )


__all__ = [
    "Draw",
    "Slot",
    "DRAW_OPEN",
    "DRAW_CLOSED",
    "SLOT_AVAILABLE",
    "SLOT_RESERVED",
    "SLOT_SOLD",
    "SLOT_COUNT",
    "SLOT_NUMBERS",
]
