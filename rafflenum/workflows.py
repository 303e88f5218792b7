from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

import logging

from .config import Settings
from .errors import PurchaseLimitExceeded, RaffleError
from .inventory import InventorySnapshot, InventoryStore
from .models.draw import Draw
from .models.payment import Payment
from .models.reservation import Reservation
from .pricing import TicketPriceCache
from .reservations import ReservationManager, normalize_numbers
from .settlement import (
    CallbackOutcome,
    PaymentConfirmation,
    SettlementResult,
    SettlementService,
)

if TYPE_CHECKING:
    from .autopay.orchestrator import AutopayOrchestrator, AutopayReport
    from .gateway.base import PaymentGateway

logger = logging.getLogger(__name__)


def ensure_open_draw(session: Session, *, now: Optional[datetime] = None) -> Draw:
    """Return the open draw, opening a new one with 100 slots if none is open."""
    store = InventoryStore(session)
    draw = store.get_open_draw()
    if draw is None:
        draw = store.open_draw(now=now)
    else:
        store.ensure_slots(draw.id)
    return draw


def create_reservation(
    session: Session,
    owner_id: int,
    numbers: Iterable[int],
    *,
    draw_id: Optional[int] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    """Hold ``numbers`` for ``owner_id`` in the open draw.

    The request is all-or-nothing: either every number is held or nothing is
    written. The caller owns the transaction and commits it.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session.
    owner_id : int
        Buyer the hold is created for.
    numbers : Iterable[int]
        Requested numbers, distinct and within 0..99.
    draw_id : Optional[int], default: None
        Draw to reserve in. Defaults to the currently open draw.
    settings : Optional[Settings], default: None
        Engine settings; read from the environment when omitted. Supplies the
        hold lifetime and the per-draw purchase limit.
    now : Optional[datetime], default: None
        Reference time, mainly for tests.

    Returns
    -------
    Reservation
        The new ``active`` reservation.

    Raises
    ------
    InvalidNumbers
        If the request is malformed.
    NoOpenDraw
        If ``draw_id`` is omitted and no draw is open.
    PurchaseLimitExceeded
        If the buyer would exceed ``max_numbers_per_user`` in this draw.
    NumbersUnavailable
        If any number is sold or held; ``conflicts`` lists them.
    """
    settings = settings or Settings.from_env()
    requested = normalize_numbers(numbers)

    store = InventoryStore(session)
    if draw_id is None:
        draw_id = store.require_open_draw().id

    manager = ReservationManager(session)
    limit = settings.max_numbers_per_user
    if limit > 0:
        current = manager.count_owned(draw_id, owner_id, now=now)
        if current + len(requested) > limit:
            raise PurchaseLimitExceeded(current, len(requested), limit)

    return manager.reserve(
        draw_id,
        owner_id,
        requested,
        ttl=timedelta(minutes=settings.reservation_ttl_min),
        now=now,
    )


def release_reservation(
    session: Session, reservation_id: str, *, now: Optional[datetime] = None
) -> Reservation:
    """Cancel a hold and give its numbers back to the draw."""
    return ReservationManager(session).release(reservation_id, now=now)


def reclaim_expired_holds(
    session: Session,
    *,
    draw_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> list[str]:
    """Expire every live hold past its ``expires_at``; returns their ids."""
    return ReservationManager(session).reclaim_expired(draw_id, now=now)


def inventory_snapshot(
    Session: sessionmaker,
    draw_id: Optional[int] = None,
    *,
    reclaim: bool = True,
    now: Optional[datetime] = None,
) -> InventorySnapshot:
    """Return the visible state of every number of a draw.

    The read runs in its own transaction. Expired holds it comes across are
    then reclaimed in a separate one; a failure there is logged and never
    affects the returned snapshot.
    """
    with Session() as session:
        store = InventoryStore(session)
        if draw_id is None:
            draw_id = store.require_open_draw().id
        snapshot = store.snapshot(draw_id, now=now)

    if reclaim and snapshot.expired_reservation_ids:
        try:
            with Session.begin() as session:
                ReservationManager(session).reclaim(
                    snapshot.expired_reservation_ids, now=now
                )
        except SQLAlchemyError as e:
            logger.warning(
                "Could not reclaim %d expired holds of draw %s: %s",
                len(snapshot.expired_reservation_ids),
                draw_id,
                e,
            )
    return snapshot


def attach_checkout_payment(
    session: Session,
    reservation_id: str,
    payment_id: str,
    amount_cents: int,
    *,
    provider: Optional[str] = None,
    bill_id: Optional[str] = None,
    charge_id: Optional[str] = None,
) -> Payment:
    """Record the pending payment created for an interactive checkout."""
    return SettlementService(session).attach_payment(
        reservation_id,
        payment_id,
        amount_cents,
        provider=provider,
        bill_id=bill_id,
        charge_id=charge_id,
    )


def confirm_payment(
    session: Session,
    reservation_id: str,
    confirmation: PaymentConfirmation,
    *,
    now: Optional[datetime] = None,
) -> SettlementResult:
    """Turn a paid hold into a sale.

    Idempotent per ``confirmation.payment_id``. When the sale sells the last
    number of the draw, the draw is closed and the next one opened in the
    same transaction; ``SettlementResult.rolled_over_to`` carries its id.

    Raises
    ------
    ReservationNotFound
        If the reservation does not exist.
    StaleReservation
        If the hold lost any of its numbers before the payment arrived.
    """
    return SettlementService(session).settle(reservation_id, confirmation, now=now)


trigger_settlement = confirm_payment


def handle_payment_callback(
    session: Session,
    correlation_id: str,
    status: str,
    *,
    payload: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> CallbackOutcome:
    """Apply a provider notification; safe to call more than once."""
    return SettlementService(session).apply_callback(
        correlation_id, status, payload=payload, now=now
    )


def handle_vindi_webhook(session: Session, payload: dict) -> Optional[CallbackOutcome]:
    """Parse a Vindi webhook and apply it as a payment callback.

    Returns ``None`` for events that do not affect a payment.
    """
    from .gateway.api import VindiGateway

    event = VindiGateway.parse_webhook(payload)
    if event.payment_status is None or event.correlation_id is None:
        logger.info("Webhook %s ignored", event.type)
        return None
    return handle_payment_callback(
        session, event.correlation_id, event.payment_status, payload=dict(payload)
    )


def _orchestrator(
    Session: sessionmaker,
    gateway: "PaymentGateway",
    settings: Optional[Settings],
    price_cache: Optional[TicketPriceCache],
) -> "AutopayOrchestrator":
    from .autopay.orchestrator import AutopayOrchestrator

    settings = settings or Settings.from_env()
    if price_cache is None:
        price_cache = TicketPriceCache(
            Session,
            default_cents=settings.price_cents,
            ttl=settings.price_cache_ttl_sec,
        )
    return AutopayOrchestrator(
        Session,
        gateway,
        price_cache,
        reservation_ttl=timedelta(minutes=settings.reservation_ttl_min),
        recheck_delay=settings.autopay_recheck_sec,
    )


def run_autopay_for_draw(
    Session: sessionmaker,
    gateway: "PaymentGateway",
    draw_id: int,
    *,
    force: bool = False,
    settings: Optional[Settings] = None,
    price_cache: Optional[TicketPriceCache] = None,
) -> "AutopayReport":
    """Charge every eligible autopay subscriber of ``draw_id``.

    Parameters
    ----------
    Session : sessionmaker
        Session factory; the saga opens many short transactions itself.
    gateway : PaymentGateway
        Provider client used to charge stored cards.
    draw_id : int
        Draw to process. It must be open.
    force : bool, default: False
        Process the draw even if autopay already ran for it. Profiles already
        charged for the draw are still skipped.
    settings : Optional[Settings], default: None
        Engine settings; read from the environment when omitted.
    price_cache : Optional[TicketPriceCache], default: None
        Shared price cache. A private one is created when omitted.

    Returns
    -------
    AutopayReport
        Per-profile outcomes and aggregate counts.
    """
    return _orchestrator(Session, gateway, settings, price_cache).run_for_draw(
        draw_id, force=force
    )


def run_autopay_for_open_draws(
    Session: sessionmaker,
    gateway: "PaymentGateway",
    *,
    limit: int = 50,
    force: bool = False,
    settings: Optional[Settings] = None,
    price_cache: Optional[TicketPriceCache] = None,
) -> list["AutopayReport"]:
    """Scheduler entry point: process open draws autopay has not handled yet."""
    return _orchestrator(Session, gateway, settings, price_cache).run_for_open_draws(
        limit=limit, force=force
    )


def ensure_autopay_for_draw(
    Session: sessionmaker,
    gateway: "PaymentGateway",
    draw_id: int,
    *,
    force: bool = False,
    settings: Optional[Settings] = None,
    price_cache: Optional[TicketPriceCache] = None,
) -> Optional["AutopayReport"]:
    """Run autopay for ``draw_id`` only if it is open and not yet processed.

    Returns ``None`` when there was nothing to do. Failures are logged and
    re-raised as :class:`RaffleError` subclasses or database errors.
    """
    try:
        return _orchestrator(Session, gateway, settings, price_cache).ensure_for_draw(
            draw_id, force=force
        )
    except (RaffleError, SQLAlchemyError):
        logger.exception("ensure_autopay_for_draw failed for draw %s", draw_id)
        raise
