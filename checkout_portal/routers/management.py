from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from checkout_portal.auth import Principal, Role, require_role
from checkout_portal.db import get_db, run_in_transaction
from checkout_portal.dependencies import get_client_ip, get_dispatcher
from checkout_portal.errors import ValidationError
from checkout_portal.models import CheckoutStatus
from checkout_portal.schemas import DirectCheckoutRequest, MessageRequest, PickupScheduleRequest, StatusUpdateRequest
from checkout_portal.services.checkout_record_service import (
    create_checkout_unit,
    list_checkouts,
    return_all_for_reservation,
    return_unit,
    serialize_checkout,
)
from checkout_portal.services.conversation_service import mark_messages_viewed, post_staff_reply, serialize_message
from checkout_portal.services.notification_aggregate_service import notification_summary
from checkout_portal.services.notification_service import NotificationDispatcher, dispatch_safely
from checkout_portal.services.reservation_service import (
    PickupSchedule,
    delete_reservation,
    get_reservation_detail,
    list_reservations,
    set_picked_up,
    set_ready_for_pickup,
    update_status,
)
from checkout_portal.services.retention_service import count_sweepable, sweep

router = APIRouter(prefix='/management', tags=['management'])
staff_access = require_role(Role.ADMIN, Role.EDITOR, Role.VIEWER)
elevated_access = require_role(Role.ADMIN, Role.EDITOR)
admin_access = require_role(Role.ADMIN)


def _flag(request: Request, name: str) -> bool:
    return request.query_params.get(name, '').strip().lower() == 'true'


@router.get('/requests')
def list_requests(
    request: Request,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    status_raw = request.query_params.get('status', '').strip()
    statuses = [value for value in status_raw.split(',') if value.strip()] if status_raw else None
    rows = run_in_transaction(
        db,
        lambda: list_reservations(
            db,
            statuses=statuses,
            email=request.query_params.get('email'),
            ready_for_pickup=_flag(request, 'readyForPickup'),
            picked_up=_flag(request, 'pickedUp'),
            returned=_flag(request, 'returned'),
        ),
    )
    return {'requests': rows}


@router.get('/requests/{reservation_id}')
def request_detail(
    reservation_id: str,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return {'request': run_in_transaction(db, lambda: get_reservation_detail(db, reservation_id=reservation_id))}


@router.put('/requests/{reservation_id}/status')
def change_status(
    reservation_id: str,
    body: StatusUpdateRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(elevated_access),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    def _work():
        result = update_status(
            db,
            reservation_id=reservation_id,
            new_status=body.status,
            principal=principal,
            message=body.message,
            ip=get_client_ip(request),
        )
        return get_reservation_detail(db, reservation_id=reservation_id), result.notifications

    detail, notifications = run_in_transaction(db, _work)
    background_tasks.add_task(dispatch_safely, dispatcher, notifications)
    return {'success': True, 'request': detail}


@router.post('/requests/{reservation_id}/ready-for-pickup')
def ready_for_pickup(
    reservation_id: str,
    body: PickupScheduleRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(elevated_access),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    schedule = PickupSchedule(
        pickup_date=body.pickupDate,
        pickup_time=body.pickupTime,
        pickup_location=body.pickupLocation,
    )

    def _work():
        result = set_ready_for_pickup(
            db,
            reservation_id=reservation_id,
            principal=principal,
            schedule=schedule,
            ip=get_client_ip(request),
        )
        return get_reservation_detail(db, reservation_id=reservation_id), result.notifications

    detail, notifications = run_in_transaction(db, _work)
    background_tasks.add_task(dispatch_safely, dispatcher, notifications)
    return {'success': True, 'request': detail}


@router.post('/requests/{reservation_id}/picked-up')
def picked_up(
    reservation_id: str,
    request: Request,
    principal: Principal = Depends(elevated_access),
    db: Session = Depends(get_db),
):
    def _work():
        set_picked_up(db, reservation_id=reservation_id, principal=principal, ip=get_client_ip(request))
        return get_reservation_detail(db, reservation_id=reservation_id)

    return {'success': True, 'request': run_in_transaction(db, _work)}


@router.post('/requests/{reservation_id}/return')
def return_request(
    reservation_id: str,
    _: Principal = Depends(elevated_access),
    db: Session = Depends(get_db),
):
    returned = run_in_transaction(db, lambda: return_all_for_reservation(db, reservation_id=reservation_id))
    return {'success': True, 'returnedCount': len(returned)}


@router.post('/requests/{reservation_id}/messages')
def reply(
    reservation_id: str,
    body: MessageRequest,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    def _work():
        message, notifications = post_staff_reply(db, reservation_id=reservation_id, principal=principal, body=body.message)
        return serialize_message(message), notifications

    message, notifications = run_in_transaction(db, _work)
    background_tasks.add_task(dispatch_safely, dispatcher, notifications)
    return {'success': True, 'message': message}


@router.post('/requests/{reservation_id}/messages/viewed')
def messages_viewed(
    reservation_id: str,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    reservation = run_in_transaction(db, lambda: mark_messages_viewed(db, reservation_id=reservation_id))
    return {'success': True, 'messagesLastViewedAt': reservation.messages_last_viewed_at}


@router.delete('/requests/{reservation_id}')
def remove_request(
    reservation_id: str,
    request: Request,
    principal: Principal = Depends(elevated_access),
    db: Session = Depends(get_db),
):
    run_in_transaction(
        db,
        lambda: delete_reservation(db, reservation_id=reservation_id, principal=principal, ip=get_client_ip(request)),
    )
    return {'success': True}


@router.get('/checkouts')
def checkouts(
    request: Request,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    status_raw = request.query_params.get('status', '').strip()
    try:
        status = CheckoutStatus(status_raw) if status_raw else None
    except ValueError as exc:
        raise ValidationError('Invalid checkout status') from exc
    return {'checkouts': list_checkouts(db, status=status, checked_out_by=request.query_params.get('user'))}


@router.post('/checkouts', status_code=201)
def direct_checkout(
    body: DirectCheckoutRequest,
    _: Principal = Depends(elevated_access),
    db: Session = Depends(get_db),
):
    record = run_in_transaction(
        db,
        lambda: create_checkout_unit(
            db,
            item_id=body.itemId,
            from_date=body.fromDate,
            due_date=body.toDate,
            checked_out_by=body.checkedOutBy,
            notes=body.notes,
        ),
    )
    return {'checkout': serialize_checkout(record)}


@router.post('/checkouts/{checkout_id}/return')
def return_checkout(
    checkout_id: int,
    _: Principal = Depends(elevated_access),
    db: Session = Depends(get_db),
):
    record = run_in_transaction(db, lambda: return_unit(db, checkout_id=checkout_id))
    return {'success': True, 'checkout': serialize_checkout(record)}


@router.get('/notifications')
def notifications(
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return notification_summary(db)


@router.get('/retention')
def retention_dry_run(
    _: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    count = count_sweepable(db)
    return {'count': count, 'message': f'{count} requests would be deleted'}


@router.post('/retention/sweep')
def retention_sweep(
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    deleted = run_in_transaction(db, lambda: sweep(db, actor_id=principal.id))
    return {'success': True, 'deletedCount': len(deleted), 'message': f'Deleted {len(deleted)} old returned requests'}
