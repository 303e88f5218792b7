"""Autopay standing instructions and the audit trail of autopay attempts."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from ..db.utils import utcnow
from .base import Base
from .column_types import UTCDateTime
from .id_type import ID_TYPE

RUN_ATTEMPT = "attempt"
RUN_RESERVED = "reserved"
RUN_BILLED = "billed"
RUN_CHARGED = "charged"
RUN_CHARGED_OK = "charged_ok"
RUN_CHARGED_FAIL = "charged_fail"
RUN_SKIPPED = "skipped"

RUN_STATUSES = (
    RUN_ATTEMPT,
    RUN_RESERVED,
    RUN_BILLED,
    RUN_CHARGED,
    RUN_CHARGED_OK,
    RUN_CHARGED_FAIL,
    RUN_SKIPPED,
)
RUN_TERMINAL_STATUSES = (RUN_CHARGED_OK, RUN_CHARGED_FAIL, RUN_SKIPPED)
RUN_IN_FLIGHT_STATUSES = (RUN_ATTEMPT, RUN_RESERVED, RUN_BILLED, RUN_CHARGED)


def _uuid() -> str:
    return str(uuid.uuid4())


class AutopayProfile(Base):
    """A subscriber's standing instruction to buy their numbers every draw."""

    __tablename__ = "autopay_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[int] = mapped_column(ID_TYPE, nullable=False, unique=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    provider: Mapped[str] = mapped_column(String(40), nullable=False, default="vindi")
    provider_customer_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    provider_payment_profile_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    """Stored payment method (card) at the provider."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    numbers: Mapped[list["AutopayNumber"]] = relationship(
        back_populates="profile",
        cascade="all, delete-orphan",
        order_by="AutopayNumber.n",
    )

    @property
    def has_payment_method(self) -> bool:
        return bool(self.provider_customer_id and self.provider_payment_profile_id)

    @property
    def desired_numbers(self) -> list[int]:
        """Valid desired numbers in ascending order, without duplicates."""

        return sorted({int(row.n) for row in self.numbers if 0 <= int(row.n) <= 99})

    def set_numbers(self, numbers: list[int]) -> None:
        """Replace the desired numbers of this profile."""

        self.numbers = [AutopayNumber(n=int(n)) for n in sorted(set(numbers))]

    @classmethod
    def all_with_numbers(cls, session: Session) -> list["AutopayProfile"]:
        stmt = select(cls).order_by(cls.created_at, cls.id)
        return list(session.scalars(stmt))

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<AutopayProfile(id={self.id}, owner_id={self.owner_id}, active={self.active}, "
            f"numbers={self.desired_numbers})>"
        )


class AutopayNumber(Base):
    """A number a profile wants to buy. Each number belongs to one subscriber."""

    __tablename__ = "autopay_numbers"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    autopay_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("autopay_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    n: Mapped[int] = mapped_column(Integer, nullable=False)

    profile: Mapped["AutopayProfile"] = relationship(back_populates="numbers")

    __table_args__ = (
        UniqueConstraint("n", name="uq_autopay_numbers_n"),
        CheckConstraint("n >= 0 AND n <= 99", name="n_range"),
    )


class AutopayRun(Base):
    """One audit row per autopay attempt for a (profile, draw) pair.

    Rows are appended with status ``"attempt"`` and then updated in place as
    the saga advances; they are never deleted.
    """

    __tablename__ = "autopay_runs"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    run_trace_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    """Shared by every attempt of one orchestration run."""

    attempt_trace_id: Mapped[str] = mapped_column(
        String(36), nullable=False, unique=True, default=_uuid
    )
    autopay_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("autopay_profiles.id"), nullable=False
    )
    owner_id: Mapped[int] = mapped_column(ID_TYPE, nullable=False)
    draw_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("draws.id"), nullable=False
    )
    tried_numbers: Mapped[list[int]] = mapped_column(JSON, nullable=False)
    reserved_numbers: Mapped[Optional[list[int]]] = mapped_column(JSON, nullable=True)
    reservation_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    provider: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=RUN_ATTEMPT)
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    provider_status: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """HTTP status of the last provider response."""

    provider_bill_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    provider_charge_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    provider_request: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    provider_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('attempt','reserved','billed','charged',"
            "'charged_ok','charged_fail','skipped')",
            name="status_enum",
        ),
        Index("ix_autopay_runs_autopay_draw", "autopay_id", "draw_id"),
        Index("ix_autopay_runs_draw_status", "draw_id", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in RUN_TERMINAL_STATUSES

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<AutopayRun(attempt={self.attempt_trace_id}, autopay_id={self.autopay_id}, "
            f"draw_id={self.draw_id}, status={self.status})>"
        )


__all__ = [
    "AutopayProfile",
    "AutopayNumber",
    "AutopayRun",
    "RUN_ATTEMPT",
    "RUN_RESERVED",
    "RUN_BILLED",
    "RUN_CHARGED",
    "RUN_CHARGED_OK",
    "RUN_CHARGED_FAIL",
    "RUN_SKIPPED",
    "RUN_STATUSES",
    "RUN_TERMINAL_STATUSES",
    "RUN_IN_FLIGHT_STATUSES",
]
