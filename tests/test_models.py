import unittest
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from fakes import NOW, DBTestCase
from rafflenum.models import AppConfig, AutopayProfile, Draw, Reservation, Slot
from rafflenum.models.draw import SLOT_AVAILABLE, SLOT_RESERVED, SLOT_SOLD
from rafflenum.models.payment import autopay_payment_id
from rafflenum.models.reservation import (
    RESERVATION_ACTIVE,
    RESERVATION_EXPIRED,
    RESERVATION_PAID,
)


class TestSlotStateMachine(unittest.TestCase):
    def test_forward_path(self):
        slot = Slot(number=4, state=SLOT_AVAILABLE)
        slot.mark_reserved("r-1")
        self.assertEqual((slot.state, slot.reservation_id), (SLOT_RESERVED, "r-1"))
        slot.mark_sold()
        self.assertEqual(slot.state, SLOT_SOLD)
        # sold keeps the back-reference
        self.assertEqual(slot.reservation_id, "r-1")

    def test_release_path(self):
        slot = Slot(number=4, state=SLOT_RESERVED, reservation_id="r-1")
        slot.mark_available()
        self.assertEqual((slot.state, slot.reservation_id), (SLOT_AVAILABLE, None))

    def test_illegal_transitions(self):
        with self.assertRaises(ValueError):
            Slot(number=1, state=SLOT_AVAILABLE).mark_sold()
        with self.assertRaises(ValueError):
            Slot(number=1, state=SLOT_SOLD).mark_reserved("r-2")
        with self.assertRaises(ValueError):
            Slot(number=1, state=SLOT_RESERVED, reservation_id="r").mark_reserved("x")


class TestReservationExpiry(unittest.TestCase):
    def _reservation(self, status):
        return Reservation(
            owner_id=1,
            draw_id=1,
            numbers=[1],
            status=status,
            created_at=NOW,
            expires_at=NOW + timedelta(minutes=5),
        )

    def test_expiry_boundary(self):
        r = self._reservation(RESERVATION_ACTIVE)
        self.assertFalse(r.is_expired(reference_time=NOW + timedelta(minutes=4)))
        self.assertTrue(r.is_expired(reference_time=NOW + timedelta(minutes=5)))

    def test_expired_status_wins(self):
        r = self._reservation(RESERVATION_EXPIRED)
        self.assertTrue(r.is_expired(reference_time=NOW))
        self.assertFalse(r.blocks_numbers(reference_time=NOW))

    def test_paid_never_expires(self):
        r = self._reservation(RESERVATION_PAID)
        self.assertFalse(r.is_expired(reference_time=NOW + timedelta(days=30)))
        self.assertFalse(r.is_live)


class TestAutopayPaymentId(unittest.TestCase):
    def test_bill_id_preferred(self):
        self.assertEqual(
            autopay_payment_id("Vindi", bill_id="123", charge_id="9"),
            "autopay:vindi:bill:123",
        )

    def test_charge_fallback(self):
        self.assertEqual(
            autopay_payment_id("vindi", charge_id=" 77 "), "autopay:vindi:charge:77"
        )

    def test_requires_an_id(self):
        with self.assertRaises(ValueError):
            autopay_payment_id("vindi", bill_id="", charge_id=None)


class TestSchemaConstraints(DBTestCase):
    def test_single_open_draw(self):
        with self.assertRaises(IntegrityError):
            with self.Session.begin() as session:
                session.add(Draw(status="open", opened_at=NOW))

    def test_closed_draws_do_not_conflict(self):
        with self.Session.begin() as session:
            session.add_all(
                [Draw(status="closed", opened_at=NOW), Draw(status="closed", opened_at=NOW)]
            )
        with self.Session() as session:
            self.assertEqual(len(session.scalars(select(Draw)).all()), 3)

    def test_slot_number_unique_per_draw(self):
        with self.assertRaises(IntegrityError):
            with self.Session.begin() as session:
                session.add(Slot(draw_id=self.draw_id, number=5))

    def test_timestamps_round_trip_as_utc(self):
        with self.Session() as session:
            draw = session.get(Draw, self.draw_id)
            self.assertEqual(draw.opened_at, NOW)
            self.assertIsNotNone(draw.opened_at.tzinfo)


class TestAutopayProfile(DBTestCase):
    def test_desired_numbers_sorted(self):
        with self.Session.begin() as session:
            profile = AutopayProfile(
                owner_id=10, provider_customer_id="c", provider_payment_profile_id="p"
            )
            profile.set_numbers([42, 7, 7, 13])
            session.add(profile)
        with self.Session() as session:
            loaded = session.scalars(select(AutopayProfile)).one()
            self.assertEqual(loaded.desired_numbers, [7, 13, 42])
            self.assertTrue(loaded.has_payment_method)

    def test_number_belongs_to_one_subscriber(self):
        with self.assertRaises(IntegrityError):
            with self.Session.begin() as session:
                a = AutopayProfile(owner_id=1)
                a.set_numbers([5])
                b = AutopayProfile(owner_id=2)
                b.set_numbers([5])
                session.add_all([a, b])

    def test_missing_card_means_no_payment_method(self):
        self.assertFalse(AutopayProfile(owner_id=3, provider_customer_id="c").has_payment_method)


class TestAppConfig(DBTestCase):
    def test_upsert(self):
        with self.Session.begin() as session:
            AppConfig.set_value(session, "ticket_price_cents", 5500)
            AppConfig.set_value(session, "ticket_price_cents", 6000)
        with self.Session() as session:
            self.assertEqual(AppConfig.get_value(session, "ticket_price_cents"), "6000")
            self.assertIsNone(AppConfig.get_value(session, "missing"))


if __name__ == "__main__":
    unittest.main()
