"""Shared test doubles and database fixtures."""

import unittest
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import sessionmaker

from rafflenum.db.engine import get_sessionmaker, make_engine
from rafflenum.errors import GatewayError
from rafflenum.gateway.base import (
    ChargeResult,
    ChargeStatus,
    PaymentGateway,
    StoredPaymentMethod,
)
from rafflenum.models import Base
from rafflenum.workflows import ensure_open_draw

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
TTL = timedelta(minutes=5)
# A bill under the same key in one of these states is replaced by a new charge.
CLOSED_BILL_STATUSES = ("rejected", "refunded", "canceled")


class DBTestCase(unittest.TestCase):
    """In-memory SQLite database with one open draw."""

    open_draw = True

    def setUp(self):
        self.engine = make_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(self.engine)
        self.Session: sessionmaker = get_sessionmaker(self.engine)
        self.draw_id: Optional[int] = None
        if self.open_draw:
            with self.Session.begin() as session:
                self.draw_id = ensure_open_draw(session, now=NOW).id

    def tearDown(self):
        self.engine.dispose()


class FakeGateway(PaymentGateway):
    """In-memory payment provider.

    ``outcome`` decides what a new charge returns (``approved``, ``rejected``
    or ``pending``). ``capture_on_status`` makes a pending charge report as
    captured on the next :meth:`get_status`. ``charge_error`` is raised by
    :meth:`charge`; with ``create_before_error`` the bill is recorded first,
    as when the provider times out after accepting the request.
    """

    provider = "fake"

    def __init__(self, outcome: str = "approved"):
        self.outcome = outcome
        self.capture_on_status = False
        self.charge_error: Optional[Exception] = None
        self.create_before_error = False
        self.status_error: Optional[Exception] = None
        self.lookup_error: Optional[Exception] = None
        self.bills: dict[str, dict] = {}
        self.charges: list[dict] = []
        self.refunds: list[dict] = []
        self.cancels: list[dict] = []

    # helpers
    def _find(self, bill_id=None, charge_id=None) -> dict:
        for bill in self.bills.values():
            if bill_id is not None and bill["bill_id"] == bill_id:
                return bill
            if charge_id is not None and bill["charge_id"] == charge_id:
                return bill
        raise GatewayError(f"unknown bill {bill_id} / charge {charge_id}", status=404)

    def _result(self, bill: dict) -> ChargeResult:
        return ChargeResult(
            status=bill["status"],
            bill_id=bill["bill_id"],
            charge_id=bill["charge_id"],
            http_status=201,
            provider_status=bill["status"],
            response={"bill": dict(bill)},
        )

    @property
    def captured_total(self) -> int:
        return sum(b["amount"] for b in self.bills.values() if b["captured"])

    # interface
    def charge(self, *, idempotency_key, amount_cents, method, description, metadata=None):
        self.charges.append(
            {"key": idempotency_key, "amount": amount_cents, "metadata": metadata}
        )
        existing = self.bills.get(idempotency_key)
        if existing is not None and existing["status"] not in CLOSED_BILL_STATUSES:
            return self._result(existing)

        n = len(self.bills) + 1
        bill = {
            "bill_id": f"bill-{n}",
            "charge_id": f"charge-{n}",
            "status": self.outcome,
            "captured": self.outcome == "approved",
            "amount": amount_cents,
            "key": idempotency_key,
        }
        if self.charge_error is not None:
            if self.create_before_error:
                self.bills[idempotency_key] = bill
            raise self.charge_error
        self.bills[idempotency_key] = bill
        return self._result(bill)

    def refund(self, *, bill_id=None, charge_id=None):
        bill = self._find(bill_id, charge_id)
        bill["captured"] = False
        bill["status"] = "refunded"
        self.refunds.append({"bill_id": bill_id, "charge_id": charge_id})
        return {"refund": {"status": "success"}}

    def cancel(self, *, bill_id=None, charge_id=None):
        bill = self._find(bill_id, charge_id)
        bill["status"] = "canceled"
        self.cancels.append({"bill_id": bill_id, "charge_id": charge_id})
        return {}

    def get_status(self, *, bill_id=None, charge_id=None):
        if self.status_error is not None:
            raise self.status_error
        bill = self._find(bill_id, charge_id)
        if self.capture_on_status and bill["status"] == "pending":
            bill["status"] = "approved"
            bill["captured"] = True
        return ChargeStatus(
            status=bill["status"],
            captured=bill["captured"],
            bill_id=bill["bill_id"],
            charge_id=bill["charge_id"],
            provider_status=bill["status"],
        )

    def lookup(self, idempotency_key):
        if self.lookup_error is not None:
            raise self.lookup_error
        bill = self.bills.get(idempotency_key)
        return self._result(bill) if bill is not None else None


CARD = StoredPaymentMethod(customer_id="cus_1", payment_profile_id="pp_1")
