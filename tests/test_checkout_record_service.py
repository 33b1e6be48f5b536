from __future__ import annotations

import unittest
from datetime import date

from db_support import ADMIN, FROM_DATE, TO_DATE, add_item, line, make_session_factory, submit, utc

from checkout_portal.errors import ConflictError, NotFoundError, ValidationError
from checkout_portal.models import CheckoutStatus
from checkout_portal.services.checkout_record_service import (
    CheckoutUnit,
    create_checkout_unit,
    create_checkout_units,
    list_checkouts,
    return_all_for_reservation,
    return_unit,
)
from checkout_portal.services.reservation_service import set_picked_up, update_status


class CheckoutRecordServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.table = add_item(self.db, 'Folding Table', 3)

    def tearDown(self) -> None:
        self.db.close()

    def test_direct_checkout_records_last_use(self) -> None:
        now = utc(2026, 2, 1, 9, 0)
        record = create_checkout_unit(
            self.db,
            item_id=self.table.id,
            from_date=FROM_DATE,
            due_date=TO_DATE,
            checked_out_by='  Jordan ',
            notes='  ',
            now=now,
        )
        self.assertEqual(record.status, CheckoutStatus.CHECKED_OUT)
        self.assertEqual(record.checked_out_by, 'Jordan')
        self.assertIsNone(record.notes)
        self.assertIsNone(record.reservation_id)
        self.assertEqual(self.table.last_used_by, 'Jordan')
        self.assertEqual(self.table.last_used_at, now)

    def test_due_date_before_from_date_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            create_checkout_unit(
                self.db,
                item_id=self.table.id,
                from_date=date(2026, 3, 5),
                due_date=date(2026, 3, 1),
                checked_out_by='Jordan',
            )

    def test_batch_over_quantity_inserts_nothing(self) -> None:
        units = [
            CheckoutUnit(item_id=self.table.id, from_date=FROM_DATE, due_date=TO_DATE, checked_out_by='Jordan')
            for _ in range(4)
        ]
        with self.assertRaises(ConflictError):
            create_checkout_units(self.db, units)
        self.assertEqual(list_checkouts(self.db), [])

    def test_return_unit_twice_conflicts(self) -> None:
        record = create_checkout_unit(
            self.db, item_id=self.table.id, from_date=FROM_DATE, due_date=TO_DATE, checked_out_by='Jordan'
        )
        returned = return_unit(self.db, checkout_id=record.id, now=utc(2026, 3, 6))
        self.assertEqual(returned.status, CheckoutStatus.RETURNED)
        self.assertIsNotNone(returned.returned_at)
        with self.assertRaises(ConflictError):
            return_unit(self.db, checkout_id=record.id)

    def test_return_unknown_checkout(self) -> None:
        with self.assertRaises(NotFoundError):
            return_unit(self.db, checkout_id=12345)

    def test_return_all_for_reservation_returns_every_active_unit(self) -> None:
        result = submit(self.db, [line(self.table, 2)])
        reservation_id = result.reservation.id
        update_status(self.db, reservation_id=reservation_id, new_status='approved', principal=ADMIN)
        set_picked_up(self.db, reservation_id=reservation_id, principal=ADMIN)

        returned = return_all_for_reservation(self.db, reservation_id=reservation_id, now=utc(2026, 3, 6))
        self.assertEqual(len(returned), 2)
        self.assertTrue(all(record.status == CheckoutStatus.RETURNED for record in returned))
        self.assertEqual(len(list_checkouts(self.db, status=CheckoutStatus.CHECKED_OUT)), 0)

        with self.assertRaises(ConflictError) as ctx:
            return_all_for_reservation(self.db, reservation_id=reservation_id)
        self.assertEqual(str(ctx.exception), 'No active checkouts found for this request')

    def test_return_all_for_unknown_reservation(self) -> None:
        with self.assertRaises(NotFoundError):
            return_all_for_reservation(self.db, reservation_id='missing')

    def test_list_checkouts_filters_by_borrower(self) -> None:
        create_checkout_unit(self.db, item_id=self.table.id, from_date=FROM_DATE, due_date=TO_DATE, checked_out_by='Jordan Lee')
        create_checkout_unit(self.db, item_id=self.table.id, from_date=FROM_DATE, due_date=TO_DATE, checked_out_by='Casey')
        rows = list_checkouts(self.db, checked_out_by='jordan')
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['item_name'], 'Folding Table')


if __name__ == '__main__':
    unittest.main()
