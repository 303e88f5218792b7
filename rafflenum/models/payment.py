"""Payment records for sold (or attempted) numbers."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    or_,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column

from ..db.utils import dt_iso, utcnow
from .base import Base
from .column_types import UTCDateTime
from .id_type import ID_TYPE

PAYMENT_PENDING = "pending"
PAYMENT_APPROVED = "approved"
PAYMENT_REJECTED = "rejected"
PAYMENT_REFUNDED = "refunded"
PAYMENT_CANCELED = "canceled"

PAYMENT_STATUSES = (
    PAYMENT_PENDING,
    PAYMENT_APPROVED,
    PAYMENT_REJECTED,
    PAYMENT_REFUNDED,
    PAYMENT_CANCELED,
)


def autopay_payment_id(
    provider: str,
    *,
    bill_id: Optional[str] = None,
    charge_id: Optional[str] = None,
) -> str:
    """Build the deterministic payment id used by autopay settlements.

    The id is derived from the provider's bill id (or charge id when no bill
    exists) so that re-delivered confirmations upsert the same row.
    """

    p = (provider or "").strip().lower()
    if bill_id is not None and str(bill_id).strip():
        return f"autopay:{p}:bill:{str(bill_id).strip()}"
    if charge_id is not None and str(charge_id).strip():
        return f"autopay:{p}:charge:{str(charge_id).strip()}"
    raise ValueError("A provider bill id or charge id is required")


class Payment(Base):
    """Money received (or attempted) for a set of numbers of one draw."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    """Provider-correlated identifier; deterministic for autopay."""

    owner_id: Mapped[int] = mapped_column(ID_TYPE, nullable=False, index=True)
    draw_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("draws.id", ondelete="CASCADE"), nullable=False, index=True
    )
    numbers: Mapped[list[int]] = mapped_column(JSON, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PAYMENT_PENDING
    )
    provider: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    provider_bill_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    provider_charge_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, index=True
    )
    provider_status: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    """Raw status string last reported by the provider."""

    provider_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utcnow
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','approved','rejected','refunded','canceled')",
            name="status_enum",
        ),
        # One payment per provider bill.
        UniqueConstraint("provider_bill_id", name="uq_payments_provider_bill_id"),
    )

    @property
    def is_approved(self) -> bool:
        return self.status == PAYMENT_APPROVED

    @classmethod
    def find_by_correlation(
        cls, session: Session, correlation_id: str
    ) -> Optional["Payment"]:
        """Look a payment up by its id, provider bill id or provider charge id."""

        direct = session.get(cls, correlation_id)
        if direct is not None:
            return direct
        stmt = select(cls).where(
            or_(
                cls.provider_bill_id == correlation_id,
                cls.provider_charge_id == correlation_id,
            )
        )
        return session.scalars(stmt).first()

    @classmethod
    def approved_numbers(cls, session: Session, draw_id: int) -> set[int]:
        """Numbers covered by an approved payment in ``draw_id``."""

        stmt = select(cls.numbers).where(
            cls.draw_id == draw_id, cls.status == PAYMENT_APPROVED
        )
        taken: set[int] = set()
        for numbers in session.scalars(stmt):
            taken.update(int(n) for n in numbers or [])
        return taken

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<Payment(id={self.id}, draw_id={self.draw_id}, owner_id={self.owner_id}, "
            f"amount_cents={self.amount_cents}, status={self.status}, paid_at={dt_iso(self.paid_at)})>"
        )


__all__ = [
    "Payment",
    "autopay_payment_id",
    "PAYMENT_PENDING",
    "PAYMENT_APPROVED",
    "PAYMENT_REJECTED",
    "PAYMENT_REFUNDED",
    "PAYMENT_CANCELED",
    "PAYMENT_STATUSES",
]
