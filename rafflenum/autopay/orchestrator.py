"""Autopay saga: reserve, charge and settle numbers for every subscriber of a draw."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..db.locks import advisory_lock
from ..db.utils import utcnow
from ..errors import (
    ChargeFailed,
    ChargeTimeout,
    GatewayError,
    GatewayTimeout,
    PersistFailed,
    RaffleError,
)
from ..gateway.base import (
    CHARGE_APPROVED,
    CHARGE_CANCELED,
    CHARGE_PENDING,
    CHARGE_REFUNDED,
    ChargeResult,
    PaymentGateway,
    StoredPaymentMethod,
)
from ..inventory import InventoryStore
from ..models.autopay import (
    RUN_ATTEMPT,
    RUN_BILLED,
    RUN_CHARGED,
    RUN_CHARGED_FAIL,
    RUN_CHARGED_OK,
    RUN_IN_FLIGHT_STATUSES,
    RUN_RESERVED,
    RUN_SKIPPED,
    AutopayProfile,
    AutopayRun,
)
from ..models.draw import Draw
from ..models.payment import autopay_payment_id
from ..pricing import TicketPriceCache
from ..reservations import ReservationManager
from ..settlement import PaymentConfirmation, SettlementService
from .ledger import RunLedger

logger = logging.getLogger(__name__)

OUTCOME_OK = "ok"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERROR = "error"

REASON_NONE_AVAILABLE = "none_available"
REASON_ALREADY_PROCESSED = "already_processed"
REASON_RESERVE_FAILED = "reserve_failed"
REASON_CHARGE_FAILED = "charge_failed"
REASON_CHARGE_UNVERIFIED = "charge_unverified"
REASON_NOT_APPROVED = "not_approved"
REASON_PERSIST_FAILED = "persist_failed"
REASON_UNEXPECTED = "unexpected"

# Provider states that need neither a refund nor a cancel.
_CLOSED_STATUSES = (CHARGE_REFUNDED, CHARGE_CANCELED)


def autopay_idempotency_key(draw_id: int, autopay_id: str) -> str:
    """Key sent to the provider; one charge per (draw, profile)."""
    return f"autopay:draw:{draw_id}:profile:{autopay_id}"


@dataclass(frozen=True)
class _Candidate:
    autopay_id: str
    owner_id: int
    numbers: tuple[int, ...]
    method: StoredPaymentMethod


@dataclass
class ProfileOutcome:
    """Result of processing one autopay profile."""

    autopay_id: str
    owner_id: int
    status: str
    reason: Optional[str] = None
    numbers: list[int] = field(default_factory=list)
    amount_cents: Optional[int] = None
    payment_id: Optional[str] = None
    run_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class AutopayReport:
    """Summary of one orchestration run over a draw.

    Attributes
    ----------
    draw_id : int
        Processed draw.
    run_trace_id : str
        Trace id shared by every ledger row of this run.
    skipped_reason : Optional[str]
        Why the draw was not processed at all (``not_found``, ``not_open`` or
        ``already_processed``); ``None`` when it was.
    eligible : int
        Profiles that were attempted.
    outcomes : list[ProfileOutcome]
        One entry per examined profile.
    recovered : list[int]
        Ids of orphaned runs resolved before processing.
    """

    draw_id: int
    run_trace_id: str
    skipped_reason: Optional[str] = None
    eligible: int = 0
    outcomes: list[ProfileOutcome] = field(default_factory=list)
    recovered: list[int] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def charged(self) -> int:
        return self._count(OUTCOME_OK)

    @property
    def skipped(self) -> int:
        return self._count(OUTCOME_SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(OUTCOME_ERROR)

    def as_dict(self) -> dict:
        return {
            "draw_id": self.draw_id,
            "run_trace_id": self.run_trace_id,
            "skipped_reason": self.skipped_reason,
            "eligible": self.eligible,
            "charged": self.charged,
            "skipped": self.skipped,
            "failed": self.failed,
            "recovered": list(self.recovered),
            "outcomes": [
                {
                    "autopay_id": o.autopay_id,
                    "owner_id": o.owner_id,
                    "status": o.status,
                    "reason": o.reason,
                    "numbers": list(o.numbers),
                    "amount_cents": o.amount_cents,
                    "payment_id": o.payment_id,
                    "error": o.error,
                }
                for o in self.outcomes
            ],
        }


class AutopayOrchestrator:
    """Runs the autopay saga for a draw.

    Every database step runs in its own short transaction; provider calls
    are made with no transaction open. Runs over the same draw are
    serialized by a draw-scoped advisory lock.

    Parameters
    ----------
    Session : sessionmaker
        Session factory bound to the engine.
    gateway : PaymentGateway
        Provider client used to charge stored payment methods.
    price_cache : TicketPriceCache
        Source of the unit ticket price.
    reservation_ttl : timedelta, default: 5 minutes
        Lifetime of the holds taken on behalf of subscribers.
    recheck_delay : float, default: 1.0
        Seconds to wait before re-checking a charge that came back pending.
    sleep : Callable[[float], None], default: time.sleep
        Injected for tests.
    clock : Callable[[], datetime], default: utcnow
        Source of the current time for holds and settlements.
    engine : Optional[Engine], default: None
        Engine used for the advisory lock; defaults to the session's bind.
    """

    def __init__(
        self,
        Session: sessionmaker,
        gateway: PaymentGateway,
        price_cache: TicketPriceCache,
        *,
        reservation_ttl: timedelta = timedelta(minutes=5),
        recheck_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
        engine: Optional[Engine] = None,
    ) -> None:
        self._Session = Session
        self._gateway = gateway
        self._prices = price_cache
        self._ttl = reservation_ttl
        self._recheck_delay = recheck_delay
        self._sleep = sleep
        self._clock = clock
        self._engine = engine if engine is not None else Session.kw["bind"]
        self.ledger = RunLedger(Session)

    # -------- entry points --------
    def run_for_draw(self, draw_id: int, *, force: bool = False) -> AutopayReport:
        """Charge every eligible subscriber of ``draw_id`` once.

        A failure for one profile is compensated and recorded, and never
        stops the remaining profiles. Interrupted runs of an open draw are
        resolved first, even when the draw was already processed.
        """

        report = AutopayReport(draw_id=draw_id, run_trace_id=str(uuid.uuid4()))
        with advisory_lock(self._engine, draw_id):
            with self._Session.begin() as session:
                draw = session.get(Draw, draw_id)
                if draw is None:
                    report.skipped_reason = "not_found"
                elif not draw.is_open:
                    report.skipped_reason = "not_open"
                else:
                    InventoryStore(session).ensure_slots(draw_id)
                    if draw.autopay_ran_at is not None and not force:
                        report.skipped_reason = "already_processed"
            if report.skipped_reason in (None, "already_processed"):
                report.recovered = self.recover_incomplete(draw_id)
            if report.skipped_reason is not None:
                logger.info(
                    "Autopay skipped for draw %s: %s", draw_id, report.skipped_reason
                )
                return report

            candidates = self._load_candidates()
            unit_price = self._prices.get()
            logger.info(
                "Autopay run %s for draw %s: %d profiles, unit price %s",
                report.run_trace_id,
                draw_id,
                len(candidates),
                unit_price,
            )

            for candidate in candidates:
                if self.ledger.has_success(candidate.autopay_id, draw_id):
                    report.outcomes.append(
                        ProfileOutcome(
                            autopay_id=candidate.autopay_id,
                            owner_id=candidate.owner_id,
                            status=OUTCOME_SKIPPED,
                            reason=REASON_ALREADY_PROCESSED,
                        )
                    )
                    continue
                report.eligible += 1
                try:
                    outcome = self._process(
                        report.run_trace_id, draw_id, candidate, unit_price
                    )
                except Exception as e:
                    logger.exception(
                        "Autopay for profile %s in draw %s failed unexpectedly",
                        candidate.autopay_id,
                        draw_id,
                    )
                    outcome = ProfileOutcome(
                        autopay_id=candidate.autopay_id,
                        owner_id=candidate.owner_id,
                        status=OUTCOME_ERROR,
                        reason=REASON_UNEXPECTED,
                        error=str(e),
                    )
                report.outcomes.append(outcome)

            if report.eligible > 0 or force:
                with self._Session.begin() as session:
                    draw = session.get(Draw, draw_id)
                    if draw is not None:
                        draw.autopay_ran_at = self._clock()

        logger.info(
            "Autopay run %s for draw %s done: charged=%d skipped=%d failed=%d",
            report.run_trace_id,
            draw_id,
            report.charged,
            report.skipped,
            report.failed,
        )
        return report

    def ensure_for_draw(
        self, draw_id: int, *, force: bool = False
    ) -> Optional[AutopayReport]:
        """Run autopay for ``draw_id`` unless it is closed or already processed.

        A processed draw that still has interrupted runs is run again so they
        get resolved; nobody is charged twice.
        """

        with self._Session() as session:
            draw = session.get(Draw, draw_id)
            pending = (
                draw is not None
                and draw.is_open
                and (force or draw.autopay_ran_at is None)
            )
        if not pending and draw is not None and draw.is_open:
            pending = bool(self.ledger.incomplete_for_draw(draw_id))
        if not pending:
            return None
        return self.run_for_draw(draw_id, force=force)

    def run_for_open_draws(
        self, *, limit: int = 50, force: bool = False
    ) -> list[AutopayReport]:
        """Process open draws not yet handled by autopay, or with interrupted
        runs left to resolve, oldest first."""

        with self._Session() as session:
            stmt = select(Draw.id).where(Draw.status == "open")
            if not force:
                in_flight = (
                    select(AutopayRun.id)
                    .where(
                        AutopayRun.draw_id == Draw.id,
                        AutopayRun.status.in_(RUN_IN_FLIGHT_STATUSES),
                    )
                    .exists()
                )
                stmt = stmt.where(or_(Draw.autopay_ran_at.is_(None), in_flight))
            draw_ids = list(session.scalars(stmt.order_by(Draw.id).limit(limit)))

        reports = []
        for draw_id in draw_ids:
            try:
                reports.append(self.run_for_draw(draw_id, force=force))
            except (RaffleError, SQLAlchemyError):
                logger.exception("Autopay failed for draw %s", draw_id)
        return reports

    # -------- recovery --------
    def recover_incomplete(self, draw_id: int) -> list[int]:
        """Resolve runs of ``draw_id`` interrupted mid-saga.

        A run whose charge is confirmed captured and whose hold still owns its
        slots is settled. Anything else is refunded (if captured) or canceled,
        its hold released and the run marked ``charged_fail``. Runs that cannot
        be verified because the provider is unreachable are left for a later
        pass.
        """

        resolved: list[int] = []
        for run in self.ledger.incomplete_for_draw(draw_id):
            if run.status == RUN_ATTEMPT:
                self.ledger.transition(
                    run.id,
                    RUN_CHARGED_FAIL,
                    error_message="interrupted before reservation",
                )
                resolved.append(run.id)
                continue

            bill_id, charge_id = run.provider_bill_id, run.provider_charge_id
            try:
                if not (bill_id or charge_id) and run.idempotency_key:
                    found = self._gateway.lookup(run.idempotency_key)
                    if found is not None:
                        bill_id, charge_id = found.bill_id, found.charge_id
                captured = closed = False
                if bill_id or charge_id:
                    status = self._gateway.get_status(
                        bill_id=bill_id, charge_id=charge_id
                    )
                    captured = status.captured
                    closed = status.status in _CLOSED_STATUSES
                    bill_id = bill_id or status.bill_id
                    charge_id = charge_id or status.charge_id
            except GatewayError as e:
                logger.warning(
                    "Cannot verify interrupted autopay run %s yet: %s", run.id, e
                )
                continue

            if captured and run.reservation_id:
                try:
                    payment_id = self._settle(
                        run.reservation_id, bill_id, charge_id, run.amount_cents or 0
                    )
                except (RaffleError, ValueError) as e:
                    logger.error(
                        "Interrupted autopay run %s was charged but cannot be settled: %s",
                        run.id,
                        e,
                    )
                else:
                    self._advance(run.id, run.status, RUN_CHARGED,
                                  provider_bill_id=bill_id, provider_charge_id=charge_id)
                    self.ledger.transition(run.id, RUN_CHARGED_OK, payment_id=payment_id)
                    logger.info("Recovered autopay run %s as settled", run.id)
                    resolved.append(run.id)
                    continue

            self._compensate(
                run.id,
                run.reservation_id,
                bill_id,
                charge_id,
                error="interrupted run recovered",
                captured=captured,
                closed=closed,
            )
            resolved.append(run.id)
        return resolved

    # -------- saga steps --------
    def _load_candidates(self) -> list[_Candidate]:
        with self._Session() as session:
            profiles = AutopayProfile.all_with_numbers(session)
            candidates = []
            for profile in profiles:
                if not profile.active or not profile.has_payment_method:
                    continue
                numbers = profile.desired_numbers
                if not numbers:
                    continue
                candidates.append(
                    _Candidate(
                        autopay_id=profile.id,
                        owner_id=profile.owner_id,
                        numbers=tuple(numbers),
                        method=StoredPaymentMethod(
                            customer_id=profile.provider_customer_id,
                            payment_profile_id=profile.provider_payment_profile_id,
                        ),
                    )
                )
        return candidates

    def _process(
        self, run_trace_id: str, draw_id: int, candidate: _Candidate, unit_price: int
    ) -> ProfileOutcome:
        key = autopay_idempotency_key(draw_id, candidate.autopay_id)
        outcome = ProfileOutcome(
            autopay_id=candidate.autopay_id,
            owner_id=candidate.owner_id,
            status=OUTCOME_ERROR,
        )
        run = self.ledger.start(
            run_trace_id=run_trace_id,
            autopay_id=candidate.autopay_id,
            owner_id=candidate.owner_id,
            draw_id=draw_id,
            tried_numbers=candidate.numbers,
            idempotency_key=key,
            provider=self._gateway.provider,
        )
        outcome.run_id = run.id

        # 1. hold whatever is still free
        try:
            with self._Session.begin() as session:
                reservation = ReservationManager(session).reserve_available(
                    draw_id,
                    candidate.owner_id,
                    candidate.numbers,
                    ttl=self._ttl,
                    now=self._clock(),
                )
                reservation_id = reservation.id if reservation else None
                numbers = list(reservation.numbers) if reservation else []
        except (RaffleError, SQLAlchemyError) as e:
            logger.error(
                "Autopay reserve failed for profile %s in draw %s: %s",
                candidate.autopay_id,
                draw_id,
                e,
            )
            self.ledger.transition(run.id, RUN_CHARGED_FAIL, error_message=str(e))
            outcome.reason, outcome.error = REASON_RESERVE_FAILED, str(e)
            return outcome

        if not numbers:
            self.ledger.transition(
                run.id, RUN_SKIPPED, error_message=REASON_NONE_AVAILABLE
            )
            outcome.status, outcome.reason = OUTCOME_SKIPPED, REASON_NONE_AVAILABLE
            return outcome

        amount = unit_price * len(numbers)
        outcome.numbers, outcome.amount_cents = numbers, amount
        self.ledger.transition(
            run.id,
            RUN_RESERVED,
            reservation_id=reservation_id,
            reserved_numbers=numbers,
            amount_cents=amount,
        )

        # 2. charge, no transaction open
        try:
            result = self._charge(key, amount, candidate, draw_id, reservation_id, numbers)
        except ChargeFailed as e:
            if isinstance(e, ChargeTimeout) and not e.verified:
                # Outcome unknown: keep the hold and the run in flight for recovery.
                logger.error(
                    "Autopay charge %s for profile %s (%s cents) is unverified; "
                    "left for recovery: %s",
                    key,
                    candidate.autopay_id,
                    amount,
                    e,
                )
                self.ledger.transition(
                    run.id, RUN_RESERVED, error_message=f"charge outcome unknown: {e}"
                )
                outcome.reason, outcome.error = REASON_CHARGE_UNVERIFIED, str(e)
                return outcome
            bill_id = charge_id = None
            if not isinstance(e, ChargeTimeout):
                # A bill may exist even though the call failed.
                try:
                    found = self._gateway.lookup(key)
                except GatewayError as lookup_error:
                    logger.warning("Lookup of %s after failure failed: %s", key, lookup_error)
                    found = None
                if found is not None:
                    bill_id, charge_id = found.bill_id, found.charge_id
            self._compensate(run.id, reservation_id, bill_id, charge_id, error=str(e),
                             provider_status=e.provider_status)
            outcome.reason, outcome.error = REASON_CHARGE_FAILED, str(e)
            return outcome

        self.ledger.transition(
            run.id,
            RUN_BILLED,
            provider_bill_id=result.bill_id,
            provider_charge_id=result.charge_id,
            provider_status=result.http_status,
            provider_request=result.request,
            provider_response=_jsonable(result.response),
        )

        if result.status == CHARGE_PENDING:
            result = self._recheck(result)
        if not result.approved:
            message = result.message or f"charge {result.status}"
            self._compensate(run.id, reservation_id, result.bill_id, result.charge_id,
                             error=message)
            outcome.reason = (
                REASON_NOT_APPROVED if result.status == CHARGE_PENDING
                else REASON_CHARGE_FAILED
            )
            outcome.error = message
            return outcome

        self.ledger.transition(run.id, RUN_CHARGED)

        # 3. finalize the sale
        try:
            payment_id = self._settle(reservation_id, result.bill_id, result.charge_id, amount,
                                      provider_status=result.provider_status,
                                      payload=_jsonable(result.response))
        except (RaffleError, ValueError) as e:
            logger.error(
                "Autopay charged profile %s (bill %s, %s cents) but the sale could "
                "not be finalized: %s",
                candidate.autopay_id,
                result.bill_id,
                amount,
                e,
            )
            self._compensate(run.id, reservation_id, result.bill_id, result.charge_id,
                             error=f"persist failed: {e}", captured=True)
            outcome.reason, outcome.error = REASON_PERSIST_FAILED, str(e)
            return outcome

        self.ledger.transition(run.id, RUN_CHARGED_OK, payment_id=payment_id)
        outcome.status, outcome.payment_id = OUTCOME_OK, payment_id
        return outcome

    def _charge(
        self,
        key: str,
        amount: int,
        candidate: _Candidate,
        draw_id: int,
        reservation_id: str,
        numbers: list[int],
    ) -> ChargeResult:
        description = f"Autopay draw {draw_id}: " + ", ".join(f"{n:02d}" for n in numbers)
        metadata = {
            "draw_id": draw_id,
            "autopay_id": candidate.autopay_id,
            "reservation_id": reservation_id,
            "numbers": numbers,
        }
        try:
            return self._gateway.charge(
                idempotency_key=key,
                amount_cents=amount,
                method=candidate.method,
                description=description,
                metadata=metadata,
            )
        except GatewayTimeout as e:
            logger.warning("Charge %s timed out; verifying with the provider", key)
            try:
                found = self._gateway.lookup(key)
            except GatewayError as lookup_error:
                raise ChargeTimeout(
                    f"charge timed out and could not be verified: {lookup_error}",
                    verified=False,
                ) from e
            if found is None:
                raise ChargeTimeout("charge timed out and no charge was found") from e
            return found
        except GatewayError as e:
            raise ChargeFailed(str(e), provider_status=e.status, response=e.response) from e

    def _recheck(self, result: ChargeResult) -> ChargeResult:
        self._sleep(self._recheck_delay)
        try:
            status = self._gateway.get_status(
                bill_id=result.bill_id, charge_id=result.charge_id
            )
        except GatewayError as e:
            logger.warning("Re-check of bill %s failed: %s", result.bill_id, e)
            return result
        if status.captured:
            result.status = CHARGE_APPROVED
            result.provider_status = status.provider_status or result.provider_status
        return result

    def _settle(
        self,
        reservation_id: str,
        bill_id: Optional[str],
        charge_id: Optional[str],
        amount: int,
        *,
        provider_status: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> str:
        """Finalize a captured charge as a sale; returns the payment id.

        Raises
        ------
        PersistFailed
            If the database rejected the sale.
        StaleReservation
            If the hold lost its numbers before the sale.
        """
        payment_id = autopay_payment_id(
            self._gateway.provider, bill_id=bill_id, charge_id=charge_id
        )
        try:
            with self._Session.begin() as session:
                result = SettlementService(session).settle(
                    reservation_id,
                    PaymentConfirmation(
                        payment_id=payment_id,
                        amount_cents=amount,
                        provider=self._gateway.provider,
                        bill_id=bill_id,
                        charge_id=charge_id,
                        provider_status=provider_status,
                        payload=payload if isinstance(payload, dict) else None,
                    ),
                    now=self._clock(),
                )
                return result.payment.id
        except SQLAlchemyError as e:
            raise PersistFailed(
                f"sale of reservation {reservation_id} (bill {bill_id}, "
                f"{amount} cents) not recorded: {e}",
                reservation_id=reservation_id,
                bill_id=bill_id,
                charge_id=charge_id,
                amount_cents=amount,
            ) from e

    def _compensate(
        self,
        run_id: int,
        reservation_id: Optional[str],
        bill_id: Optional[str],
        charge_id: Optional[str],
        *,
        error: str,
        captured: Optional[bool] = None,
        closed: bool = False,
        provider_status: Optional[int] = None,
    ) -> None:
        """Undo a failed attempt: refund or cancel, release the hold, record it.

        ``captured`` is what the caller already knows about the charge; when
        it is ``None`` the provider is asked. ``closed`` means the provider
        already refunded or canceled the bill.
        """

        if (bill_id or charge_id) and captured is None:
            # Only a confirmed capture is refunded.
            try:
                status = self._gateway.get_status(bill_id=bill_id, charge_id=charge_id)
            except GatewayError as e:
                logger.error(
                    "Cannot confirm capture of bill %s / charge %s: %s",
                    bill_id,
                    charge_id,
                    e,
                )
                captured = False
            else:
                captured = status.captured
                closed = status.status in _CLOSED_STATUSES

        if (bill_id or charge_id) and closed:
            logger.info(
                "Bill %s / charge %s already closed at the provider", bill_id, charge_id
            )
        elif bill_id or charge_id:
            try:
                if captured:
                    self._gateway.refund(bill_id=bill_id, charge_id=charge_id)
                else:
                    self._gateway.cancel(bill_id=bill_id, charge_id=charge_id)
            except GatewayError as e:
                logger.error(
                    "Compensation (%s) failed for autopay run %s, bill %s / charge %s: %s",
                    "refund" if captured else "cancel",
                    run_id,
                    bill_id,
                    charge_id,
                    e,
                )

        if reservation_id:
            try:
                with self._Session.begin() as session:
                    ReservationManager(session).release(
                        reservation_id, now=self._clock()
                    )
            except (RaffleError, SQLAlchemyError) as e:
                logger.error(
                    "Could not release reservation %s of autopay run %s: %s",
                    reservation_id,
                    run_id,
                    e,
                )

        fields = {"error_message": error}
        if bill_id:
            fields["provider_bill_id"] = bill_id
        if charge_id:
            fields["provider_charge_id"] = charge_id
        if provider_status is not None:
            fields["provider_status"] = provider_status
        self.ledger.transition(run_id, RUN_CHARGED_FAIL, **fields)
        logger.warning("Autopay run %s failed: %s", run_id, error)

    def _advance(self, run_id: int, current: str, target: str, **fields) -> None:
        path = [RUN_RESERVED, RUN_BILLED, RUN_CHARGED]
        if current not in path:
            return
        for status in path[path.index(current) + 1 : path.index(target) + 1]:
            self.ledger.transition(run_id, status, **fields)


def _jsonable(value: object) -> Optional[dict]:
    if isinstance(value, dict):
        return value
    if value is None:
        return None
    return {"raw": repr(value)}


__all__ = [
    "AutopayOrchestrator",
    "AutopayReport",
    "ProfileOutcome",
    "autopay_idempotency_key",
]
