"""Settlement: turn a paid hold into a sale and roll the draw over at sell-out."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db.utils import as_utc, utcnow
from .errors import ReservationNotFound, StaleReservation
from .inventory import InventoryStore
from .models.draw import SLOT_COUNT, SLOT_RESERVED, SLOT_SOLD, Draw, Slot
from .models.payment import (
    PAYMENT_APPROVED,
    PAYMENT_CANCELED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    PAYMENT_REJECTED,
    Payment,
)
from .models.reservation import (
    RESERVATION_ACTIVE,
    RESERVATION_PAID,
    RESERVATION_PENDING,
    Reservation,
)
from .reservations import ReservationManager

logger = logging.getLogger(__name__)

CALLBACK_STATUS_ALIASES = {
    "approved": PAYMENT_APPROVED,
    "paid": PAYMENT_APPROVED,
    "authorized": PAYMENT_APPROVED,
    "rejected": PAYMENT_REJECTED,
    "failed": PAYMENT_REJECTED,
    "canceled": PAYMENT_CANCELED,
    "cancelled": PAYMENT_CANCELED,
    "refunded": PAYMENT_REFUNDED,
    "pending": PAYMENT_PENDING,
}


@dataclass
class PaymentConfirmation:
    """A provider's confirmation that money was captured.

    Attributes
    ----------
    payment_id : str
        Id of the payment row to upsert. For autopay it is derived from the
        provider bill id, so re-delivery lands on the same row.
    amount_cents : int
        Captured amount.
    provider : Optional[str]
        Provider name, e.g. ``"vindi"``.
    bill_id, charge_id : Optional[str]
        Provider-side identifiers.
    provider_status : Optional[str]
        Raw status string reported by the provider.
    payload : Optional[dict]
        Provider response kept for audit.
    paid_at : Optional[datetime]
        Capture time; defaults to the settlement time.
    """

    payment_id: str
    amount_cents: int
    provider: Optional[str] = None
    bill_id: Optional[str] = None
    charge_id: Optional[str] = None
    provider_status: Optional[str] = None
    payload: Optional[dict] = None
    paid_at: Optional[datetime] = None


@dataclass
class SettlementResult:
    payment: Payment
    reservation: Optional[Reservation]
    already_settled: bool = False
    rolled_over_to: Optional[int] = None
    """Id of the draw opened because this sale sold the last number."""


@dataclass
class CallbackOutcome:
    """What :meth:`SettlementService.apply_callback` did with a notification."""

    action: str
    """``settled``, ``released``, ``marked`` or ``ignored``."""

    payment: Optional[Payment] = None
    settlement: Optional[SettlementResult] = None
    detail: dict[str, Any] = field(default_factory=dict)


class SettlementService:
    """Converts reservations into sales inside the caller's transaction."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def settle(
        self,
        reservation_id: str,
        confirmation: PaymentConfirmation,
        *,
        now: Optional[datetime] = None,
    ) -> SettlementResult:
        """Record an approved payment and mark the held numbers sold.

        The call is idempotent: when an approved payment with the same id (or
        the same provider bill) already exists, nothing is written and
        ``already_settled`` is ``True``.

        Parameters
        ----------
        reservation_id : str
            Hold being paid for.
        confirmation : PaymentConfirmation
            Provider confirmation of the capture.
        now : Optional[datetime], default: None
            Reference time for ``paid_at`` and a possible rollover.

        Returns
        -------
        SettlementResult
            The approved payment, the paid reservation and the id of the new
            draw if this sale sold the last number.

        Raises
        ------
        ReservationNotFound
            If ``reservation_id`` does not exist.
        StaleReservation
            If any held slot no longer references the reservation (it was
            reclaimed after expiry and possibly re-sold). Nothing is written.
        """

        now = as_utc(now) or utcnow()

        existing = self._find_existing(confirmation)
        if existing is not None and existing.is_approved:
            logger.info("Payment %s already settled; skipping", existing.id)
            reservation = Reservation.get_by_payment_id(self._session, existing.id)
            if reservation is None:
                reservation = self._session.get(Reservation, reservation_id)
            return SettlementResult(
                payment=existing, reservation=reservation, already_settled=True
            )

        reservation = self._session.scalars(
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .with_for_update()
        ).one_or_none()
        if reservation is None:
            raise ReservationNotFound(f"reservation {reservation_id} not found")

        if reservation.status == RESERVATION_PAID:
            paid_with = (
                self._session.get(Payment, reservation.payment_id)
                if reservation.payment_id
                else None
            )
            if paid_with is not None and paid_with.is_approved:
                logger.warning(
                    "Reservation %s already paid by %s; confirmation %s ignored",
                    reservation.id,
                    paid_with.id,
                    confirmation.payment_id,
                )
                return SettlementResult(
                    payment=paid_with, reservation=reservation, already_settled=True
                )

        numbers = sorted(int(n) for n in reservation.numbers or [])
        slots = list(
            self._session.scalars(
                select(Slot)
                .where(Slot.draw_id == reservation.draw_id, Slot.number.in_(numbers))
                .order_by(Slot.number)
                .with_for_update()
            )
        )
        owned = {
            slot.number
            for slot in slots
            if slot.reservation_id == reservation.id and slot.state == SLOT_RESERVED
        }
        lost = [n for n in numbers if n not in owned]
        if lost:
            logger.error(
                "Reservation %s lost numbers %s before payment %s settled",
                reservation.id,
                lost,
                confirmation.payment_id,
            )
            raise StaleReservation(reservation.id, lost)

        payment = existing or self._session.get(Payment, confirmation.payment_id)
        if payment is None:
            payment = Payment(id=confirmation.payment_id)
            self._session.add(payment)
        payment.owner_id = reservation.owner_id
        payment.draw_id = reservation.draw_id
        payment.numbers = numbers
        payment.amount_cents = int(confirmation.amount_cents)
        payment.status = PAYMENT_APPROVED
        payment.provider = confirmation.provider or payment.provider
        payment.provider_bill_id = confirmation.bill_id or payment.provider_bill_id
        payment.provider_charge_id = (
            confirmation.charge_id or payment.provider_charge_id
        )
        payment.provider_status = confirmation.provider_status or payment.provider_status
        if confirmation.payload is not None:
            payment.provider_payload = confirmation.payload
        payment.paid_at = as_utc(confirmation.paid_at) or now
        self._session.flush()

        reservation.status = RESERVATION_PAID
        reservation.payment_id = payment.id
        for slot in slots:
            slot.mark_sold()
        self._session.flush()
        logger.info(
            "Settled reservation %s with payment %s (numbers %s)",
            reservation.id,
            payment.id,
            numbers,
        )

        rolled_over_to = self._maybe_roll_over(reservation.draw_id, now)
        return SettlementResult(
            payment=payment, reservation=reservation, rolled_over_to=rolled_over_to
        )

    def attach_payment(
        self,
        reservation_id: str,
        payment_id: str,
        amount_cents: int,
        *,
        provider: Optional[str] = None,
        bill_id: Optional[str] = None,
        charge_id: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> Payment:
        """Record a pending payment for a manual checkout of ``reservation_id``.

        The hold moves to ``pending`` so the payment callback can find it.
        """

        reservation = self._session.scalars(
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .with_for_update()
        ).one_or_none()
        if reservation is None:
            raise ReservationNotFound(f"reservation {reservation_id} not found")
        if not reservation.is_live:
            raise StaleReservation(reservation.id, reservation.numbers or [])

        payment = self._session.get(Payment, payment_id)
        if payment is None:
            payment = Payment(
                id=payment_id,
                owner_id=reservation.owner_id,
                draw_id=reservation.draw_id,
                numbers=list(reservation.numbers or []),
                amount_cents=int(amount_cents),
                status=PAYMENT_PENDING,
                provider=provider,
                provider_bill_id=bill_id,
                provider_charge_id=charge_id,
                provider_payload=payload,
            )
            self._session.add(payment)
            self._session.flush()

        reservation.payment_id = payment.id
        if reservation.status == RESERVATION_ACTIVE:
            reservation.status = RESERVATION_PENDING
        self._session.flush()
        return payment

    def apply_callback(
        self,
        correlation_id: str,
        status: str,
        *,
        payload: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> CallbackOutcome:
        """Apply an at-least-once provider notification.

        ``approved`` settles the linked reservation; ``rejected`` and
        ``canceled`` mark the payment and release a still-live hold;
        ``refunded`` only marks the payment. Unknown payments and statuses are
        logged and ignored.
        """

        payment = Payment.find_by_correlation(self._session, correlation_id)
        if payment is None:
            logger.warning("Callback for unknown payment %s ignored", correlation_id)
            return CallbackOutcome(action="ignored", detail={"reason": "unknown_payment"})

        normalized = CALLBACK_STATUS_ALIASES.get((status or "").strip().lower())
        if normalized is None or normalized == PAYMENT_PENDING:
            logger.info(
                "Callback status %r for payment %s ignored", status, payment.id
            )
            return CallbackOutcome(
                action="ignored", payment=payment, detail={"reason": "status"}
            )

        if normalized == PAYMENT_APPROVED:
            reservation = Reservation.get_by_payment_id(self._session, payment.id)
            if reservation is None:
                if payment.is_approved:
                    return CallbackOutcome(action="ignored", payment=payment)
                logger.error(
                    "Approved callback for payment %s has no reservation", payment.id
                )
                return CallbackOutcome(
                    action="ignored",
                    payment=payment,
                    detail={"reason": "no_reservation"},
                )
            result = self.settle(
                reservation.id,
                PaymentConfirmation(
                    payment_id=payment.id,
                    amount_cents=payment.amount_cents,
                    provider=payment.provider,
                    bill_id=payment.provider_bill_id,
                    charge_id=payment.provider_charge_id,
                    provider_status=status,
                    payload=payload,
                ),
                now=now,
            )
            return CallbackOutcome(action="settled", payment=result.payment, settlement=result)

        if payment.is_approved and normalized != PAYMENT_REFUNDED:
            logger.warning(
                "Callback %r for approved payment %s ignored", status, payment.id
            )
            return CallbackOutcome(
                action="ignored", payment=payment, detail={"reason": "already_approved"}
            )

        payment.status = normalized
        payment.provider_status = status
        if payload is not None:
            payment.provider_payload = payload
        self._session.flush()

        if normalized == PAYMENT_REFUNDED:
            logger.info("Payment %s marked refunded", payment.id)
            return CallbackOutcome(action="marked", payment=payment)

        reservation = Reservation.get_by_payment_id(self._session, payment.id)
        if reservation is not None and reservation.is_live:
            ReservationManager(self._session).release(reservation.id, now=now)
            logger.info(
                "Payment %s %s; released reservation %s",
                payment.id,
                normalized,
                reservation.id,
            )
            return CallbackOutcome(action="released", payment=payment)
        return CallbackOutcome(action="marked", payment=payment)

    # -------- internals --------
    def _find_existing(self, confirmation: PaymentConfirmation) -> Optional[Payment]:
        payment = self._session.get(Payment, confirmation.payment_id)
        if payment is not None:
            return payment
        if confirmation.bill_id:
            return self._session.scalars(
                select(Payment).where(Payment.provider_bill_id == confirmation.bill_id)
            ).first()
        return None

    def _maybe_roll_over(self, draw_id: int, now: datetime) -> Optional[int]:
        store = InventoryStore(self._session)
        if store.counts(draw_id)[SLOT_SOLD] < SLOT_COUNT:
            return None

        draw = self._session.scalars(
            select(Draw).where(Draw.id == draw_id).with_for_update()
        ).one()
        if not draw.is_open:
            return None
        draw.close(timestamp=now)
        # The single-open-draw index must see the close before the insert.
        self._session.flush()
        new_draw = store.open_draw(now=now)
        logger.info("Draw %s sold out; opened draw %s", draw_id, new_draw.id)
        return new_draw.id


__all__ = [
    "PaymentConfirmation",
    "SettlementResult",
    "SettlementService",
    "CallbackOutcome",
]
