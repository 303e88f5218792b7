import unittest
from datetime import timedelta

from sqlalchemy import delete, select

from fakes import NOW, TTL, DBTestCase
from rafflenum.errors import DrawNotFound, NoOpenDraw
from rafflenum.inventory import InventoryStore
from rafflenum.models import Draw, Payment, Reservation, Slot
from rafflenum.models.draw import SLOT_AVAILABLE, SLOT_RESERVED, SLOT_SOLD
from rafflenum.models.payment import PAYMENT_APPROVED
from rafflenum.models.reservation import RESERVATION_ACTIVE, RESERVATION_EXPIRED
from rafflenum.reservations import ReservationManager
from rafflenum.workflows import inventory_snapshot


class TestOpenDraw(DBTestCase):
    def test_open_draw_has_100_available_slots(self):
        with self.Session() as session:
            counts = InventoryStore(session).counts(self.draw_id)
        self.assertEqual(counts, {SLOT_AVAILABLE: 100, SLOT_RESERVED: 0, SLOT_SOLD: 0})

    def test_cannot_open_second_draw(self):
        with self.Session.begin() as session:
            with self.assertRaises(ValueError):
                InventoryStore(session).open_draw(now=NOW)

    def test_require_open_draw(self):
        with self.Session.begin() as session:
            session.get(Draw, self.draw_id).close(timestamp=NOW)
        with self.Session() as session:
            with self.assertRaises(NoOpenDraw):
                InventoryStore(session).require_open_draw()

    def test_unknown_draw(self):
        with self.Session() as session:
            with self.assertRaises(DrawNotFound):
                InventoryStore(session).snapshot(999)


class TestEnsureSlots(DBTestCase):
    def test_idempotent(self):
        with self.Session.begin() as session:
            self.assertEqual(InventoryStore(session).ensure_slots(self.draw_id), 0)

    def test_inserts_only_missing_numbers(self):
        with self.Session.begin() as session:
            session.execute(
                delete(Slot).where(Slot.draw_id == self.draw_id, Slot.number >= 90)
            )
        with self.Session.begin() as session:
            with self.assertLogs("rafflenum.inventory", level="WARNING"):
                created = InventoryStore(session).ensure_slots(self.draw_id)
        self.assertEqual(created, 10)
        with self.Session() as session:
            numbers = session.scalars(
                select(Slot.number).where(Slot.draw_id == self.draw_id)
            ).all()
        self.assertEqual(sorted(numbers), list(range(100)))


class TestSnapshot(DBTestCase):
    def test_counts_always_sum_to_100(self):
        with self.Session.begin() as session:
            manager = ReservationManager(session)
            manager.reserve(self.draw_id, 1, [1, 2, 3], ttl=TTL, now=NOW)
            manager.reserve(self.draw_id, 2, [50], ttl=TTL, now=NOW)
        with self.Session() as session:
            store = InventoryStore(session)
            counts = store.counts(self.draw_id)
            snap = store.snapshot(self.draw_id, now=NOW)
        self.assertEqual(sum(counts.values()), 100)
        self.assertEqual(sum(snap.counts.values()), 100)
        self.assertEqual(snap.numbers_in(SLOT_RESERVED), [1, 2, 3, 50])

    def test_expired_holds_show_available_and_are_reported(self):
        with self.Session.begin() as session:
            r = ReservationManager(session).reserve(
                self.draw_id, 1, [8, 9], ttl=TTL, now=NOW
            )
            reservation_id = r.id
        later = NOW + TTL + timedelta(seconds=1)
        with self.Session() as session:
            snap = InventoryStore(session).snapshot(self.draw_id, now=later)
        self.assertEqual(snap.state_of(8), SLOT_AVAILABLE)
        self.assertEqual(snap.expired_reservation_ids, [reservation_id])

    def test_approved_payment_numbers_are_sold(self):
        with self.Session.begin() as session:
            session.add(
                Payment(
                    id="manual-1",
                    owner_id=4,
                    draw_id=self.draw_id,
                    numbers=[77],
                    amount_cents=5500,
                    status=PAYMENT_APPROVED,
                )
            )
        with self.Session() as session:
            snap = InventoryStore(session).snapshot(self.draw_id, now=NOW)
        self.assertEqual(snap.state_of(77), SLOT_SOLD)

    def test_snapshot_workflow_reclaims_expired_holds(self):
        with self.Session.begin() as session:
            r = ReservationManager(session).reserve(
                self.draw_id, 1, [10, 11], ttl=TTL, now=NOW
            )
            reservation_id = r.id
        later = NOW + TTL
        snap = inventory_snapshot(self.Session, now=later)
        self.assertEqual(snap.draw_id, self.draw_id)
        self.assertEqual(snap.numbers_in(SLOT_RESERVED), [])
        with self.Session() as session:
            self.assertEqual(
                session.get(Reservation, reservation_id).status, RESERVATION_EXPIRED
            )
            self.assertEqual(
                InventoryStore(session).counts(self.draw_id)[SLOT_AVAILABLE], 100
            )

    def test_live_hold_not_reclaimed_by_snapshot(self):
        with self.Session.begin() as session:
            r = ReservationManager(session).reserve(
                self.draw_id, 1, [12], ttl=TTL, now=NOW
            )
            reservation_id = r.id
        snap = inventory_snapshot(self.Session, now=NOW + timedelta(minutes=1))
        self.assertEqual(snap.numbers[12].reservation_id, reservation_id)
        with self.Session() as session:
            self.assertEqual(
                session.get(Reservation, reservation_id).status, RESERVATION_ACTIVE
            )


if __name__ == "__main__":
    unittest.main()
