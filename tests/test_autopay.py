import unittest
from unittest.mock import patch

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from fakes import CARD, NOW, TTL, DBTestCase, FakeGateway
from rafflenum.autopay import AutopayOrchestrator, autopay_idempotency_key
from rafflenum.autopay.ledger import RunLedger
from rafflenum.errors import GatewayError, GatewayTimeout, PersistFailed
from rafflenum.inventory import InventoryStore
from rafflenum.models import AutopayProfile, AutopayRun, Draw, Payment, Reservation
from rafflenum.models.autopay import (
    RUN_BILLED,
    RUN_CHARGED_FAIL,
    RUN_CHARGED_OK,
    RUN_RESERVED,
    RUN_SKIPPED,
)
from rafflenum.models.draw import SLOT_AVAILABLE, SLOT_RESERVED, SLOT_SOLD
from rafflenum.models.payment import PAYMENT_APPROVED
from rafflenum.models.reservation import RESERVATION_EXPIRED, RESERVATION_PAID
from rafflenum.pricing import TicketPriceCache
from rafflenum.reservations import ReservationManager
from rafflenum.settlement import SettlementService


class SelectiveGateway(FakeGateway):
    """Fails every charge for one customer."""

    def __init__(self, bad_customer):
        super().__init__()
        self.bad_customer = bad_customer

    def charge(self, *, idempotency_key, amount_cents, method, description, metadata=None):
        if method.customer_id == self.bad_customer:
            self.charges.append({"key": idempotency_key, "amount": amount_cents})
            raise GatewayError("card declined", status=422, response={"errors": []})
        return super().charge(
            idempotency_key=idempotency_key,
            amount_cents=amount_cents,
            method=method,
            description=description,
            metadata=metadata,
        )


class AutopayTestCase(DBTestCase):
    def setUp(self):
        super().setUp()
        self.gateway = FakeGateway()
        self.sleeps = []

    def add_profile(self, owner_id, numbers, *, customer="cus_1", active=True):
        with self.Session.begin() as session:
            profile = AutopayProfile(
                owner_id=owner_id,
                provider="fake",
                provider_customer_id=customer,
                provider_payment_profile_id=f"pp_{owner_id}",
                active=active,
            )
            profile.set_numbers(numbers)
            session.add(profile)
            session.flush()
            return profile.id

    def orchestrator(self, gateway=None):
        return AutopayOrchestrator(
            self.Session,
            gateway or self.gateway,
            TicketPriceCache(self.Session, default_cents=5500, ttl=0),
            reservation_ttl=TTL,
            recheck_delay=0.5,
            sleep=self.sleeps.append,
            clock=lambda: NOW,
        )

    def hold(self, owner_id, numbers):
        with self.Session.begin() as session:
            return ReservationManager(session).reserve(
                self.draw_id, owner_id, numbers, ttl=TTL, now=NOW
            ).id

    def runs(self):
        with self.Session() as session:
            return list(session.scalars(select(AutopayRun).order_by(AutopayRun.id)))

    def counts(self, draw_id=None):
        with self.Session() as session:
            return InventoryStore(session).counts(draw_id or self.draw_id)


class TestAutopaySuccess(AutopayTestCase):
    def test_charges_and_sells_numbers(self):
        profile_id = self.add_profile(1, [1, 2])
        report = self.orchestrator().run_for_draw(self.draw_id)

        self.assertIsNone(report.skipped_reason)
        self.assertEqual((report.eligible, report.charged, report.failed), (1, 1, 0))
        outcome = report.outcomes[0]
        self.assertEqual(outcome.numbers, [1, 2])
        self.assertEqual(outcome.amount_cents, 11000)
        self.assertEqual(outcome.payment_id, "autopay:fake:bill:bill-1")

        charge = self.gateway.charges[0]
        self.assertEqual(charge["key"], autopay_idempotency_key(self.draw_id, profile_id))
        self.assertEqual(charge["amount"], 11000)

        with self.Session() as session:
            payment = session.get(Payment, outcome.payment_id)
            self.assertEqual(payment.status, PAYMENT_APPROVED)
            self.assertEqual(payment.numbers, [1, 2])
            self.assertEqual(payment.provider_bill_id, "bill-1")
            self.assertEqual(session.get(Draw, self.draw_id).autopay_ran_at, NOW)
        self.assertEqual(self.counts()[SLOT_SOLD], 2)

        (run,) = self.runs()
        self.assertEqual(run.status, RUN_CHARGED_OK)
        self.assertEqual(run.reserved_numbers, [1, 2])
        self.assertEqual(run.payment_id, outcome.payment_id)
        self.assertEqual(run.run_trace_id, report.run_trace_id)

    def test_uses_configured_price(self):
        self.add_profile(1, [5])
        TicketPriceCache(self.Session).set(1000)
        report = self.orchestrator().run_for_draw(self.draw_id)
        self.assertEqual(report.outcomes[0].amount_cents, 1000)

    def test_partial_grant_charges_only_held_numbers(self):
        self.add_profile(1, [1, 2, 3])
        self.hold(9, [2])
        report = self.orchestrator().run_for_draw(self.draw_id)
        self.assertEqual(report.outcomes[0].numbers, [1, 3])
        self.assertEqual(self.gateway.charges[0]["amount"], 11000)

    def test_nothing_free_skips_without_charging(self):
        self.add_profile(1, [1, 2])
        self.hold(9, [1, 2])
        report = self.orchestrator().run_for_draw(self.draw_id)
        self.assertEqual(report.skipped, 1)
        self.assertEqual(report.outcomes[0].reason, "none_available")
        self.assertEqual(self.gateway.charges, [])
        self.assertEqual(self.runs()[0].status, RUN_SKIPPED)

    def test_inactive_and_cardless_profiles_are_ignored(self):
        self.add_profile(1, [1], active=False)
        self.add_profile(2, [2], customer=None)
        report = self.orchestrator().run_for_draw(self.draw_id)
        self.assertEqual(report.outcomes, [])
        self.assertEqual(self.runs(), [])

    def test_pending_charge_captured_on_recheck(self):
        self.gateway.outcome = "pending"
        self.gateway.capture_on_status = True
        self.add_profile(1, [4])
        report = self.orchestrator().run_for_draw(self.draw_id)
        self.assertEqual(report.charged, 1)
        self.assertEqual(self.sleeps, [0.5])
        self.assertEqual(self.counts()[SLOT_SOLD], 1)

    def test_timeout_resolved_by_lookup(self):
        self.gateway.charge_error = GatewayTimeout("read timed out")
        self.gateway.create_before_error = True
        self.add_profile(1, [4])
        report = self.orchestrator().run_for_draw(self.draw_id)
        self.assertEqual(report.charged, 1)
        self.assertEqual(len(self.gateway.charges), 1)
        self.assertEqual(self.runs()[0].provider_bill_id, "bill-1")


class TestAutopayCompensation(AutopayTestCase):
    def assert_compensated(self, report):
        self.assertEqual(report.failed, 1)
        (run,) = self.runs()
        self.assertEqual(run.status, RUN_CHARGED_FAIL)
        self.assertTrue(run.error_message)
        self.assertEqual(self.counts(), {SLOT_AVAILABLE: 100, SLOT_RESERVED: 0, SLOT_SOLD: 0})
        with self.Session() as session:
            self.assertEqual(
                session.get(Reservation, run.reservation_id).status, RESERVATION_EXPIRED
            )
            self.assertEqual(session.scalars(select(Payment)).all(), [])
        self.assertEqual(self.gateway.captured_total, 0)
        return run

    def test_rejected_charge_is_canceled(self):
        self.gateway.outcome = "rejected"
        self.add_profile(1, [1, 2])
        report = self.orchestrator().run_for_draw(self.draw_id)
        self.assert_compensated(report)
        self.assertEqual(report.outcomes[0].reason, "charge_failed")
        self.assertEqual(len(self.gateway.cancels), 1)
        self.assertEqual(self.gateway.refunds, [])

    def test_still_pending_after_recheck_is_canceled(self):
        self.gateway.outcome = "pending"
        self.add_profile(1, [1])
        report = self.orchestrator().run_for_draw(self.draw_id)
        self.assert_compensated(report)
        self.assertEqual(report.outcomes[0].reason, "not_approved")
        self.assertEqual(len(self.gateway.cancels), 1)

    def test_timeout_without_charge_releases_hold(self):
        self.gateway.charge_error = GatewayTimeout("read timed out")
        self.add_profile(1, [1])
        report = self.orchestrator().run_for_draw(self.draw_id)
        run = self.assert_compensated(report)
        self.assertIsNone(run.provider_bill_id)
        self.assertEqual(self.gateway.cancels, [])
        self.assertEqual(self.gateway.refunds, [])

    def test_failed_call_with_captured_bill_is_refunded(self):
        self.gateway.charge_error = GatewayError("bad gateway", status=502)
        self.gateway.create_before_error = True
        self.add_profile(1, [1])
        report = self.orchestrator().run_for_draw(self.draw_id)
        run = self.assert_compensated(report)
        self.assertEqual(run.provider_bill_id, "bill-1")
        self.assertEqual(run.provider_status, 502)
        self.assertEqual(len(self.gateway.refunds), 1)

    def test_persist_failure_refunds_capture(self):
        self.add_profile(1, [1, 2])
        with patch.object(SettlementService, "settle", side_effect=SQLAlchemyError("db down")):
            with self.assertLogs("rafflenum.autopay.orchestrator", level="ERROR"):
                report = self.orchestrator().run_for_draw(self.draw_id)
        self.assert_compensated(report)
        self.assertEqual(report.outcomes[0].reason, "persist_failed")
        self.assertEqual(self.gateway.refunds, [{"bill_id": "bill-1", "charge_id": "charge-1"}])

    def test_persist_failure_refunds_without_status_check(self):
        self.add_profile(1, [1, 2])
        self.gateway.status_error = GatewayError("status endpoint down")
        with patch.object(SettlementService, "settle", side_effect=SQLAlchemyError("db down")):
            with self.assertLogs("rafflenum.autopay.orchestrator", level="ERROR"):
                report = self.orchestrator().run_for_draw(self.draw_id)
        self.assert_compensated(report)
        self.assertEqual(self.gateway.refunds, [{"bill_id": "bill-1", "charge_id": "charge-1"}])
        self.assertEqual(self.gateway.cancels, [])

    def test_settle_wraps_database_errors(self):
        with patch.object(SettlementService, "settle", side_effect=SQLAlchemyError("db down")):
            with self.assertRaises(PersistFailed) as ctx:
                self.orchestrator()._settle("res-1", "bill-9", "charge-9", 5500)
        self.assertEqual((ctx.exception.bill_id, ctx.exception.amount_cents), ("bill-9", 5500))
        self.assertIsInstance(ctx.exception.__cause__, SQLAlchemyError)

    def test_unverified_timeout_keeps_hold_until_recovered(self):
        self.gateway.charge_error = GatewayTimeout("read timed out")
        self.gateway.create_before_error = True
        self.gateway.lookup_error = GatewayError("unreachable")
        self.add_profile(1, [1])
        orchestrator = self.orchestrator()
        report = orchestrator.run_for_draw(self.draw_id)

        self.assertEqual(report.outcomes[0].reason, "charge_unverified")
        (run,) = self.runs()
        self.assertEqual(run.status, RUN_RESERVED)
        self.assertIn("unknown", run.error_message)
        self.assertEqual(self.counts()[SLOT_RESERVED], 1)
        self.assertEqual((self.gateway.refunds, self.gateway.cancels), ([], []))

        self.gateway.charge_error = self.gateway.lookup_error = None
        later = orchestrator.ensure_for_draw(self.draw_id)
        self.assertEqual(later.skipped_reason, "already_processed")
        self.assertEqual(later.recovered, [run.id])
        (run,) = self.runs()
        self.assertEqual(run.status, RUN_CHARGED_OK)
        self.assertEqual(run.provider_bill_id, "bill-1")
        self.assertEqual(self.counts()[SLOT_SOLD], 1)
        self.assertEqual(len(self.gateway.charges), 1)

    def test_one_failure_does_not_stop_others(self):
        gateway = SelectiveGateway("cus_bad")
        self.add_profile(1, [1], customer="cus_bad")
        self.add_profile(2, [2])
        report = self.orchestrator(gateway).run_for_draw(self.draw_id)
        self.assertEqual((report.charged, report.failed), (1, 1))
        self.assertCountEqual(
            [r.status for r in self.runs()], [RUN_CHARGED_FAIL, RUN_CHARGED_OK]
        )
        self.assertEqual(self.counts()[SLOT_SOLD], 1)


class TestAutopayIdempotency(AutopayTestCase):
    def test_second_run_is_skipped(self):
        self.add_profile(1, [1])
        orchestrator = self.orchestrator()
        orchestrator.run_for_draw(self.draw_id)
        again = orchestrator.run_for_draw(self.draw_id)
        self.assertEqual(again.skipped_reason, "already_processed")
        self.assertEqual(len(self.gateway.charges), 1)

    def test_forced_run_never_charges_twice(self):
        self.add_profile(1, [1])
        orchestrator = self.orchestrator()
        orchestrator.run_for_draw(self.draw_id)
        forced = orchestrator.run_for_draw(self.draw_id, force=True)
        self.assertIsNone(forced.skipped_reason)
        self.assertEqual(forced.outcomes[0].reason, "already_processed")
        self.assertEqual(forced.eligible, 0)
        self.assertEqual(len(self.gateway.charges), 1)
        self.assertEqual(len(self.runs()), 1)

    def test_forced_run_after_refund_charges_a_new_bill(self):
        self.add_profile(1, [1])
        with patch.object(SettlementService, "settle", side_effect=SQLAlchemyError("db down")):
            with self.assertLogs("rafflenum.autopay.orchestrator", level="ERROR"):
                self.orchestrator().run_for_draw(self.draw_id)
        self.assertEqual(self.gateway.captured_total, 0)

        report = self.orchestrator().run_for_draw(self.draw_id, force=True)
        self.assertEqual(report.charged, 1)
        self.assertEqual(report.outcomes[0].payment_id, "autopay:fake:bill:bill-2")
        self.assertEqual(self.gateway.captured_total, 5500)
        self.assertEqual(self.counts()[SLOT_SOLD], 1)

    def test_closed_or_missing_draw(self):
        orchestrator = self.orchestrator()
        self.assertEqual(orchestrator.run_for_draw(404).skipped_reason, "not_found")
        with self.Session.begin() as session:
            session.get(Draw, self.draw_id).close(timestamp=NOW)
        self.assertEqual(orchestrator.run_for_draw(self.draw_id).skipped_reason, "not_open")

    def test_no_eligible_profiles_leaves_draw_unprocessed(self):
        self.orchestrator().run_for_draw(self.draw_id)
        with self.Session() as session:
            self.assertIsNone(session.get(Draw, self.draw_id).autopay_ran_at)

    def test_ensure_and_open_draw_entry_points(self):
        self.add_profile(1, [1])
        orchestrator = self.orchestrator()
        reports = orchestrator.run_for_open_draws()
        self.assertEqual([r.draw_id for r in reports], [self.draw_id])
        self.assertEqual(orchestrator.run_for_open_draws(), [])
        self.assertIsNone(orchestrator.ensure_for_draw(self.draw_id))
        self.assertEqual(len(self.gateway.charges), 1)

    def test_report_as_dict(self):
        self.add_profile(1, [1])
        data = self.orchestrator().run_for_draw(self.draw_id).as_dict()
        self.assertEqual(data["charged"], 1)
        self.assertEqual(data["outcomes"][0]["numbers"], [1])


class TestAutopayRecovery(AutopayTestCase):
    def interrupted_run(self, profile_id, status, *, charge=True):
        with self.Session.begin() as session:
            reservation = ReservationManager(session).reserve_available(
                self.draw_id, 1, [1, 2], ttl=TTL, now=NOW
            )
            reservation_id = reservation.id
        key = autopay_idempotency_key(self.draw_id, profile_id)
        ledger = RunLedger(self.Session)
        run = ledger.start(
            run_trace_id="earlier",
            autopay_id=profile_id,
            owner_id=1,
            draw_id=self.draw_id,
            tried_numbers=[1, 2],
            idempotency_key=key,
            provider="fake",
        )
        ledger.transition(
            run.id,
            RUN_RESERVED,
            reservation_id=reservation_id,
            reserved_numbers=[1, 2],
            amount_cents=11000,
        )
        if charge:
            result = self.gateway.charge(
                idempotency_key=key, amount_cents=11000, method=CARD, description="autopay"
            )
            if status == RUN_BILLED:
                ledger.transition(
                    run.id,
                    RUN_BILLED,
                    provider_bill_id=result.bill_id,
                    provider_charge_id=result.charge_id,
                )
        return run.id, reservation_id

    def test_captured_run_is_settled(self):
        profile_id = self.add_profile(1, [1, 2])
        run_id, reservation_id = self.interrupted_run(profile_id, RUN_BILLED)
        report = self.orchestrator().run_for_draw(self.draw_id)

        self.assertEqual(report.recovered, [run_id])
        self.assertEqual(report.outcomes[0].reason, "already_processed")
        self.assertEqual(len(self.gateway.charges), 1)
        (run,) = self.runs()
        self.assertEqual(run.status, RUN_CHARGED_OK)
        with self.Session() as session:
            self.assertEqual(session.get(Reservation, reservation_id).status, RESERVATION_PAID)
        self.assertEqual(self.counts()[SLOT_SOLD], 2)

    def test_charged_bill_found_by_key(self):
        profile_id = self.add_profile(1, [1, 2])
        run_id, _ = self.interrupted_run(profile_id, RUN_RESERVED)
        report = self.orchestrator().run_for_draw(self.draw_id)
        self.assertEqual(report.recovered, [run_id])
        self.assertEqual(self.runs()[0].provider_bill_id, "bill-1")
        self.assertEqual(self.runs()[0].status, RUN_CHARGED_OK)

    def test_uncharged_run_is_released_then_retried(self):
        profile_id = self.add_profile(1, [1, 2])
        run_id, reservation_id = self.interrupted_run(profile_id, RUN_RESERVED, charge=False)
        report = self.orchestrator().run_for_draw(self.draw_id)

        self.assertEqual(report.recovered, [run_id])
        self.assertEqual(report.charged, 1)
        first, second = self.runs()
        self.assertEqual(first.status, RUN_CHARGED_FAIL)
        self.assertEqual(second.status, RUN_CHARGED_OK)
        with self.Session() as session:
            self.assertEqual(
                session.get(Reservation, reservation_id).status, RESERVATION_EXPIRED
            )
        self.assertEqual(len(self.gateway.charges), 1)

    def test_refunded_bill_is_not_refunded_again(self):
        profile_id = self.add_profile(1, [1, 2])
        run_id, reservation_id = self.interrupted_run(profile_id, RUN_BILLED)
        self.gateway.refund(bill_id="bill-1")
        self.assertEqual(self.orchestrator().recover_incomplete(self.draw_id), [run_id])

        self.assertEqual(len(self.gateway.refunds), 1)
        self.assertEqual(self.gateway.cancels, [])
        self.assertEqual(self.runs()[0].status, RUN_CHARGED_FAIL)
        with self.Session() as session:
            self.assertEqual(
                session.get(Reservation, reservation_id).status, RESERVATION_EXPIRED
            )

    def test_unreachable_provider_defers_recovery(self):
        profile_id = self.add_profile(1, [1, 2])
        run_id, _ = self.interrupted_run(profile_id, RUN_BILLED)
        self.gateway.status_error = GatewayError("unreachable")
        orchestrator = self.orchestrator()
        self.assertEqual(orchestrator.recover_incomplete(self.draw_id), [])
        self.assertEqual(self.runs()[0].status, RUN_BILLED)


if __name__ == "__main__":
    unittest.main()
