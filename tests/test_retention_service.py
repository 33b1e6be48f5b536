from __future__ import annotations

import unittest

from db_support import ADMIN, add_item, line, make_session_factory, submit, utc
from sqlalchemy import select

from checkout_portal.models import AuditLog, CheckoutRecord, Reservation
from checkout_portal.services.checkout_record_service import return_all_for_reservation, return_unit
from checkout_portal.services.reservation_service import set_picked_up, update_status
from checkout_portal.services.retention_service import count_sweepable, months_before, sweep

NOW = utc(2026, 6, 15, 12, 0)


class RetentionServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.item = add_item(self.db, 'Tent', 10)

    def tearDown(self) -> None:
        self.db.close()

    def _picked_up(self, *, returned_at=None):
        reservation = submit(self.db, [line(self.item, 2)]).reservation
        update_status(self.db, reservation_id=reservation.id, new_status='approved', principal=ADMIN)
        set_picked_up(self.db, reservation_id=reservation.id, principal=ADMIN, now=utc(2026, 1, 2))
        if returned_at is not None:
            return_all_for_reservation(self.db, reservation_id=reservation.id, now=returned_at)
        return reservation

    def _reservation_ids(self) -> set[str]:
        return set(self.db.execute(select(Reservation.id)).scalars().all())

    def test_months_before_clamps_day(self) -> None:
        self.assertEqual(months_before(utc(2026, 4, 30), 2), utc(2026, 2, 28))
        self.assertEqual(months_before(utc(2026, 1, 15), 2), utc(2025, 11, 15))

    def test_sweep_deletes_only_settled_old_requests(self) -> None:
        old = self._picked_up(returned_at=utc(2026, 3, 1))
        recent = self._picked_up(returned_at=utc(2026, 5, 1))
        still_out = self._picked_up()
        never_fulfilled = submit(self.db, [line(self.item, 1)]).reservation

        self.assertEqual(count_sweepable(self.db, now=NOW, retention_months=2), 1)
        deleted = sweep(self.db, actor_id=ADMIN.id, now=NOW, retention_months=2)

        self.assertEqual(deleted, [old.id])
        self.assertEqual(self._reservation_ids(), {recent.id, still_out.id, never_fulfilled.id})
        remaining = self.db.execute(select(CheckoutRecord.reservation_id)).scalars().all()
        self.assertNotIn(old.id, remaining)
        self.assertEqual(remaining.count(still_out.id), 2)
        audit = self.db.execute(select(AuditLog).where(AuditLog.action == 'RETENTION_SWEEP')).scalar_one()
        self.assertEqual(audit.meta['deleted'], 1)

    def test_partially_returned_request_is_kept_regardless_of_age(self) -> None:
        reservation = self._picked_up()
        record = self.db.execute(
            select(CheckoutRecord).where(CheckoutRecord.reservation_id == reservation.id)
        ).scalars().first()
        return_unit(self.db, checkout_id=record.id, now=utc(2025, 1, 1))
        self.assertEqual(count_sweepable(self.db, now=NOW, retention_months=2), 0)
        self.assertEqual(sweep(self.db, now=NOW, retention_months=2), [])

    def test_dry_run_count_does_not_delete(self) -> None:
        self._picked_up(returned_at=utc(2026, 1, 10))
        self.assertEqual(count_sweepable(self.db, now=NOW, retention_months=2), 1)
        self.assertEqual(len(self._reservation_ids()), 1)


if __name__ == '__main__':
    unittest.main()
