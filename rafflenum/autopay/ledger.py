"""Append-then-update audit trail of autopay attempts."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from ..models.autopay import (
    RUN_ATTEMPT,
    RUN_BILLED,
    RUN_CHARGED,
    RUN_CHARGED_FAIL,
    RUN_CHARGED_OK,
    RUN_IN_FLIGHT_STATUSES,
    RUN_RESERVED,
    RUN_SKIPPED,
    AutopayRun,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    RUN_ATTEMPT: (RUN_RESERVED, RUN_SKIPPED, RUN_CHARGED_FAIL),
    RUN_RESERVED: (RUN_BILLED, RUN_CHARGED_FAIL),
    RUN_BILLED: (RUN_CHARGED, RUN_CHARGED_FAIL),
    RUN_CHARGED: (RUN_CHARGED_OK, RUN_CHARGED_FAIL),
    RUN_CHARGED_OK: (),
    RUN_CHARGED_FAIL: (),
    RUN_SKIPPED: (),
}

_UPDATABLE_FIELDS = frozenset(
    {
        "reserved_numbers",
        "reservation_id",
        "amount_cents",
        "provider_status",
        "provider_bill_id",
        "provider_charge_id",
        "provider_request",
        "provider_response",
        "payment_id",
        "error_message",
    }
)


class RunLedger:
    """Records every autopay attempt, one short transaction per write.

    Writes never share a transaction with inventory or settlement changes, so
    the trail survives a rollback of the business step it describes.
    """

    def __init__(self, Session: sessionmaker) -> None:
        self._Session = Session

    def start(
        self,
        *,
        run_trace_id: str,
        autopay_id: str,
        owner_id: int,
        draw_id: int,
        tried_numbers: Iterable[int],
        idempotency_key: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> AutopayRun:
        """Append a new ``attempt`` row and return it (detached)."""

        with self._Session.begin() as session:
            run = AutopayRun(
                run_trace_id=run_trace_id,
                autopay_id=autopay_id,
                owner_id=owner_id,
                draw_id=draw_id,
                tried_numbers=sorted(int(n) for n in tried_numbers),
                idempotency_key=idempotency_key,
                provider=provider,
                status=RUN_ATTEMPT,
            )
            session.add(run)
            session.flush()
        logger.debug("Autopay run %s started for profile %s", run.id, autopay_id)
        return run

    def transition(self, run_id: int, status: str, **fields: Any) -> AutopayRun:
        """Move run ``run_id`` to ``status`` and record ``fields``.

        Re-applying the current status only updates the fields.

        Raises
        ------
        ValueError
            If the transition is not allowed or an unknown field is passed.
        LookupError
            If the run does not exist.
        """

        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown autopay run fields: {sorted(unknown)}")

        with self._Session.begin() as session:
            run = session.get(AutopayRun, run_id)
            if run is None:
                raise LookupError(f"autopay run {run_id} not found")
            if status != run.status and status not in ALLOWED_TRANSITIONS.get(
                run.status, ()
            ):
                raise ValueError(
                    f"autopay run {run_id} cannot move from {run.status!r} to {status!r}"
                )
            run.status = status
            for name, value in fields.items():
                setattr(run, name, value)
            session.flush()
        logger.debug("Autopay run %s -> %s", run_id, status)
        return run

    def has_success(self, autopay_id: str, draw_id: int) -> bool:
        with self._Session() as session:
            stmt = (
                select(AutopayRun.id)
                .where(
                    AutopayRun.autopay_id == autopay_id,
                    AutopayRun.draw_id == draw_id,
                    AutopayRun.status == RUN_CHARGED_OK,
                )
                .limit(1)
            )
            return session.scalar(stmt) is not None

    def incomplete_for_draw(self, draw_id: int) -> list[AutopayRun]:
        """Runs of ``draw_id`` left in a non-terminal state, oldest first."""

        with self._Session() as session:
            stmt = (
                select(AutopayRun)
                .where(
                    AutopayRun.draw_id == draw_id,
                    AutopayRun.status.in_(RUN_IN_FLIGHT_STATUSES),
                )
                .order_by(AutopayRun.id)
            )
            return list(session.scalars(stmt))

    def for_draw(self, draw_id: int) -> list[AutopayRun]:
        with self._Session() as session:
            stmt = (
                select(AutopayRun)
                .where(AutopayRun.draw_id == draw_id)
                .order_by(AutopayRun.id)
            )
            return list(session.scalars(stmt))


__all__ = ["RunLedger", "ALLOWED_TRANSITIONS"]
