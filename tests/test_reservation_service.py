from __future__ import annotations

import unittest
from unittest.mock import patch
from datetime import date

from db_support import ADMIN, EDITOR, VIEWER, add_item, line, make_session_factory, submit, utc
from sqlalchemy import select

from checkout_portal.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from checkout_portal.models import AuditLog, CheckoutRecord, CheckoutStatus, FulfillmentReason, ReservationMessage, ReservationStatus
from checkout_portal.services.checkout_record_service import return_unit
from checkout_portal.services.inventory_ledger_service import availability
from checkout_portal.services.notification_service import TemplateKind
from checkout_portal.services.reservation_service import (
    PickupSchedule,
    delete_reservation,
    get_reservation_detail,
    list_reservations,
    round_to_quarter_hour,
    schedule_pickup,
    set_picked_up,
    set_ready_for_pickup,
    update_status,
)

SCHEDULE = PickupSchedule(pickup_date=date(2026, 3, 1), pickup_time='10:07', pickup_location='Front desk')


class ReservationServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.projector = add_item(self.db, 'Projector A', 2)
        self.screen = add_item(self.db, 'Screen', 1)

    def tearDown(self) -> None:
        self.db.close()

    def _records(self, reservation_id: str) -> list[CheckoutRecord]:
        return self.db.execute(
            select(CheckoutRecord).where(CheckoutRecord.reservation_id == reservation_id)
        ).scalars().all()

    def _approved(self, *lines):
        reservation = submit(self.db, list(lines)).reservation
        update_status(self.db, reservation_id=reservation.id, new_status='approved', principal=ADMIN)
        return reservation

    def test_submit_seeds_thread_and_confirmation(self) -> None:
        result = submit(self.db, [line(self.projector, 1)])
        reservation = result.reservation
        self.assertEqual(reservation.status, ReservationStatus.UNSEEN)
        self.assertEqual(len(reservation.id), 36)
        messages = self.db.execute(select(ReservationMessage)).scalars().all()
        self.assertEqual(len(messages), 1)
        self.assertEqual(messages[0].body, 'Community movie night')
        self.assertEqual([n.template_kind for n in result.notifications], [TemplateKind.SUBMISSION_CONFIRMATION])

    def test_submit_rejects_more_than_available(self) -> None:
        with self.assertRaises(ConflictError):
            submit(self.db, [line(self.screen, 2)])

    def test_submit_requires_lines_and_valid_email(self) -> None:
        with self.assertRaises(ValidationError):
            submit(self.db, [])
        with self.assertRaises(ValidationError):
            submit(self.db, [line(self.projector, 1)], email='not-an-email')

    def test_approval_does_not_create_records(self) -> None:
        reservation = submit(self.db, [line(self.projector, 2)]).reservation
        result = update_status(self.db, reservation_id=reservation.id, new_status='approved', principal=EDITOR, message='See you soon')

        self.assertEqual(reservation.status, ReservationStatus.APPROVED)
        self.assertEqual(reservation.approved_by, 'eddie@example.org')
        self.assertIsNotNone(reservation.approved_at)
        self.assertEqual(self._records(reservation.id), [])
        self.assertEqual(availability(self.db, self.projector.id), 2)
        self.assertEqual(result.notifications[0].template_kind, TemplateKind.STATUS_UPDATE)
        self.assertEqual(result.notifications[0].payload['message'], 'See you soon')

    def test_invalid_status_rejected(self) -> None:
        reservation = submit(self.db, [line(self.projector, 1)]).reservation
        with self.assertRaises(ValidationError):
            update_status(self.db, reservation_id=reservation.id, new_status='archived', principal=ADMIN)
        self.assertEqual(reservation.status, ReservationStatus.UNSEEN)

    def test_unknown_reservation(self) -> None:
        with self.assertRaises(NotFoundError):
            update_status(self.db, reservation_id='missing', new_status='seen', principal=ADMIN)

    def test_unseen_status_change_sends_no_email(self) -> None:
        reservation = submit(self.db, [line(self.projector, 1)]).reservation
        result = update_status(self.db, reservation_id=reservation.id, new_status='unseen', principal=ADMIN)
        self.assertEqual(result.notifications, [])

    def test_fulfillment_requires_approval(self) -> None:
        reservation = submit(self.db, [line(self.projector, 1)]).reservation
        with self.assertRaises(ConflictError):
            set_picked_up(self.db, reservation_id=reservation.id, principal=ADMIN)
        self.assertEqual(self._records(reservation.id), [])

    def test_ready_then_picked_up_materializes_once(self) -> None:
        reservation = self._approved(line(self.projector, 2), line(self.screen, 1))

        ready = set_ready_for_pickup(self.db, reservation_id=reservation.id, principal=ADMIN, schedule=SCHEDULE)
        self.assertEqual(len(ready.records), 3)
        self.assertEqual(reservation.fulfillment_reason, FulfillmentReason.READY_FOR_PICKUP)
        self.assertEqual(reservation.pickup_time, '10:00')
        self.assertEqual(ready.notifications[0].template_kind, TemplateKind.READY_FOR_PICKUP)

        again = set_ready_for_pickup(self.db, reservation_id=reservation.id, principal=ADMIN, schedule=SCHEDULE)
        self.assertEqual(again.notifications, [])

        set_picked_up(self.db, reservation_id=reservation.id, principal=ADMIN)
        set_picked_up(self.db, reservation_id=reservation.id, principal=ADMIN)

        records = self._records(reservation.id)
        self.assertEqual(len(records), 3)
        self.assertEqual(sorted((r.inventory_item_id, r.unit_sequence) for r in records), [
            (self.projector.id, 1),
            (self.projector.id, 2),
            (self.screen.id, 1),
        ])
        self.assertTrue(reservation.picked_up)
        self.assertEqual(reservation.fulfillment_reason, FulfillmentReason.READY_FOR_PICKUP)
        self.assertEqual(availability(self.db, self.projector.id), 0)

    def test_competing_reservation_waits_for_return(self) -> None:
        first = self._approved(line(self.projector, 2))
        second = self._approved(line(self.projector, 1))

        set_picked_up(self.db, reservation_id=first.id, principal=ADMIN)
        with self.assertRaises(ConflictError):
            set_picked_up(self.db, reservation_id=second.id, principal=ADMIN)
        self.assertFalse(second.picked_up)
        self.assertEqual(self._records(second.id), [])

        return_unit(self.db, checkout_id=self._records(first.id)[0].id)
        result = set_picked_up(self.db, reservation_id=second.id, principal=ADMIN)
        self.assertEqual(len(result.records), 1)
        self.assertEqual(len(self._records(second.id)), 1)
        self.assertEqual(availability(self.db, self.projector.id), 0)

    def test_fulfilled_request_cannot_leave_approved(self) -> None:
        reservation = self._approved(line(self.projector, 2))
        set_ready_for_pickup(self.db, reservation_id=reservation.id, principal=ADMIN, schedule=SCHEDULE)

        for status in ('denied', 'seen', 'unseen'):
            with self.assertRaises(ConflictError):
                update_status(self.db, reservation_id=reservation.id, new_status=status, principal=ADMIN)
        self.assertEqual(reservation.status, ReservationStatus.APPROVED)

        update_status(self.db, reservation_id=reservation.id, new_status='approved', principal=ADMIN, message='Still on')
        result = set_picked_up(self.db, reservation_id=reservation.id, principal=ADMIN)
        self.assertEqual(len(result.records), 2)

    def test_unfulfilled_approval_can_still_be_reversed(self) -> None:
        reservation = self._approved(line(self.projector, 1))
        update_status(self.db, reservation_id=reservation.id, new_status='denied', principal=ADMIN)
        self.assertEqual(reservation.status, ReservationStatus.DENIED)

    def test_concurrent_fulfillment_loses_on_unit_constraint(self) -> None:
        reservation = self._approved(line(self.projector, 1))
        set_ready_for_pickup(self.db, reservation_id=reservation.id, principal=ADMIN, schedule=SCHEDULE)
        self.db.commit()

        # The second writer did not see the first writer's records.
        with patch('checkout_portal.services.reservation_service.records_for_reservation', return_value=[]):
            with self.assertRaises(ConflictError):
                set_picked_up(self.db, reservation_id=reservation.id, principal=ADMIN)
        self.db.rollback()

        records = self._records(reservation.id)
        self.assertEqual([(r.inventory_item_id, r.unit_sequence) for r in records], [(self.projector.id, 1)])
        self.assertEqual(availability(self.db, self.projector.id), 1)

    def test_round_to_quarter_hour(self) -> None:
        self.assertEqual(round_to_quarter_hour('9:07'), '09:00')
        self.assertEqual(round_to_quarter_hour('09:08'), '09:15')
        self.assertEqual(round_to_quarter_hour('23:53'), '23:45')
        self.assertEqual(round_to_quarter_hour('23:59'), '23:45')
        with self.assertRaises(ValidationError):
            round_to_quarter_hour('25:00')

    def test_schedule_requires_all_fields(self) -> None:
        reservation = self._approved(line(self.projector, 1))
        incomplete = PickupSchedule(pickup_date=date(2026, 3, 1), pickup_time='10:00', pickup_location='  ')
        with self.assertRaises(ValidationError):
            set_ready_for_pickup(self.db, reservation_id=reservation.id, principal=ADMIN, schedule=incomplete)
        self.assertEqual(self._records(reservation.id), [])

    def test_requester_schedule_only_after_ready(self) -> None:
        reservation = self._approved(line(self.projector, 1))
        with self.assertRaises(ValidationError):
            schedule_pickup(self.db, reservation_id=reservation.id, schedule=SCHEDULE)

        set_ready_for_pickup(self.db, reservation_id=reservation.id, principal=ADMIN, schedule=SCHEDULE)
        moved = PickupSchedule(pickup_date=date(2026, 3, 2), pickup_time='14:31', pickup_location='Loading dock')
        schedule_pickup(self.db, reservation_id=reservation.id, schedule=moved)
        self.assertEqual(reservation.pickup_date, date(2026, 3, 2))
        self.assertEqual(reservation.pickup_time, '14:30')
        self.assertEqual(reservation.pickup_location, 'Loading dock')

    def test_viewer_cannot_delete(self) -> None:
        reservation = submit(self.db, [line(self.projector, 1)]).reservation
        with self.assertRaises(ForbiddenError):
            delete_reservation(self.db, reservation_id=reservation.id, principal=VIEWER)
        with self.assertRaises(ForbiddenError):
            delete_reservation(self.db, reservation_id='missing', principal=VIEWER)

    def test_delete_keeps_active_records_holding_inventory(self) -> None:
        reservation = self._approved(line(self.projector, 1))
        set_picked_up(self.db, reservation_id=reservation.id, principal=ADMIN)
        reservation_id = reservation.id

        delete_reservation(self.db, reservation_id=reservation_id, principal=EDITOR, ip='10.0.0.5')

        with self.assertRaises(NotFoundError):
            get_reservation_detail(self.db, reservation_id=reservation_id)
        records = self.db.execute(select(CheckoutRecord)).scalars().all()
        self.assertEqual(len(records), 1)
        self.assertIsNone(records[0].reservation_id)
        self.assertEqual(records[0].status, CheckoutStatus.CHECKED_OUT)
        self.assertEqual(availability(self.db, self.projector.id), 1)
        self.assertEqual(self.db.execute(select(ReservationMessage)).scalars().all(), [])
        audit = self.db.execute(select(AuditLog).where(AuditLog.action == 'RESERVATION_DELETED')).scalar_one()
        self.assertEqual(audit.ip, '10.0.0.5')

    def test_detail_purges_records_of_unfulfilled_reservation(self) -> None:
        reservation = submit(self.db, [line(self.projector, 1)]).reservation
        self.db.add(
            CheckoutRecord(
                inventory_item_id=self.projector.id,
                reservation_id=reservation.id,
                unit_sequence=1,
                status=CheckoutStatus.CHECKED_OUT,
                checked_out_by='Riley Requester',
                from_date=date(2026, 3, 1),
                due_date=date(2026, 3, 5),
                checked_out_at=utc(2026, 2, 1),
            )
        )
        self.db.flush()

        detail = get_reservation_detail(self.db, reservation_id=reservation.id)
        self.assertEqual(detail['checkouts'], [])
        self.assertEqual(availability(self.db, self.projector.id), 2)

    def test_list_reservations_filters(self) -> None:
        returned = self._approved(line(self.projector, 1))
        set_picked_up(self.db, reservation_id=returned.id, principal=ADMIN)
        for record in self._records(returned.id):
            return_unit(self.db, checkout_id=record.id)
        out = self._approved(line(self.screen, 1))
        set_picked_up(self.db, reservation_id=out.id, principal=ADMIN)
        pending = submit(self.db, [line(self.projector, 1)], email='other@example.org').reservation

        self.assertEqual({row['id'] for row in list_reservations(self.db, picked_up=True)}, {returned.id, out.id})
        self.assertEqual([row['id'] for row in list_reservations(self.db, returned=True)], [returned.id])
        self.assertEqual([row['id'] for row in list_reservations(self.db, statuses=['unseen'])], [pending.id])
        self.assertEqual([row['id'] for row in list_reservations(self.db, email='other@example.org')], [pending.id])
        self.assertEqual([row['id'] for row in list_reservations(self.db, email=' Other@Example.ORG ')], [pending.id])
        with self.assertRaises(ValidationError):
            list_reservations(self.db, statuses=['bogus'])


if __name__ == '__main__':
    unittest.main()
