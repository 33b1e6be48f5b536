from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from checkout_portal.db import get_db, run_in_transaction
from checkout_portal.dependencies import get_dispatcher
from checkout_portal.schemas import PickupScheduleRequest, SubmitReservationRequest
from checkout_portal.services.inventory_ledger_service import list_reservable_items
from checkout_portal.services.notification_service import NotificationDispatcher, dispatch_safely
from checkout_portal.services.reservation_service import (
    PickupSchedule,
    ReservationLine,
    get_reservation_detail,
    schedule_pickup,
    submit_reservation,
)

router = APIRouter(prefix='/checkout', tags=['checkout'])


@router.get('/items')
def reservable_items(db: Session = Depends(get_db)):
    return {'items': list_reservable_items(db)}


@router.post('/requests')
def submit_request(
    body: SubmitReservationRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    lines = [
        ReservationLine(item_id=line.itemId, quantity=line.quantity, from_date=line.fromDate, to_date=line.toDate)
        for line in body.items
    ]

    def _work():
        result = submit_reservation(
            db,
            requester_name=body.requesterName,
            requester_email=body.requesterEmail,
            requester_phone=body.requesterPhone,
            purpose=body.purpose,
            lines=lines,
        )
        return get_reservation_detail(db, reservation_id=result.reservation.id), result.notifications

    detail, notifications = run_in_transaction(db, _work)
    background_tasks.add_task(dispatch_safely, dispatcher, notifications)
    return {'success': True, 'request': detail}


@router.get('/requests/{reservation_id}')
def request_detail(reservation_id: str, db: Session = Depends(get_db)):
    return {'request': run_in_transaction(db, lambda: get_reservation_detail(db, reservation_id=reservation_id))}


@router.post('/requests/{reservation_id}/schedule')
def schedule(reservation_id: str, body: PickupScheduleRequest, db: Session = Depends(get_db)):
    pickup = PickupSchedule(
        pickup_date=body.pickupDate,
        pickup_time=body.pickupTime,
        pickup_location=body.pickupLocation,
    )
    reservation = run_in_transaction(db, lambda: schedule_pickup(db, reservation_id=reservation_id, schedule=pickup))
    return {
        'success': True,
        'pickupDate': reservation.pickup_date,
        'pickupTime': reservation.pickup_time,
        'pickupLocation': reservation.pickup_location,
    }


@router.get('/schedule/{reservation_id}')
def schedule_page(reservation_id: str, db: Session = Depends(get_db)):
    detail = run_in_transaction(db, lambda: get_reservation_detail(db, reservation_id=reservation_id))
    return {
        'id': detail['id'],
        'requesterName': detail['requester_name'],
        'items': detail['items'],
        'readyForPickup': detail['ready_for_pickup'],
        'pickupDate': detail['pickup_date'],
        'pickupTime': detail['pickup_time'],
        'pickupLocation': detail['pickup_location'],
    }
