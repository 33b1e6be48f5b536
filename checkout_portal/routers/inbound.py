from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from checkout_portal.db import get_db, run_in_transaction
from checkout_portal.errors import CheckoutError
from checkout_portal.services.conversation_service import route_inbound_message

logger = logging.getLogger(__name__)

router = APIRouter(prefix='/email', tags=['inbound'])


def _as_text(value) -> str:
    if value is None:
        return ''
    if isinstance(value, dict):
        return str(value.get('email') or '')
    if isinstance(value, list):
        return _as_text(value[0]) if value else ''
    return str(value)


@router.get('/webhook')
def webhook_status():
    return {'status': 'ok', 'message': 'Email webhook endpoint'}


@router.post('/webhook')
async def inbound_email(request: Request, db: Session = Depends(get_db)):
    try:
        body = await request.json()
    except ValueError:
        return {'received': True, 'error': 'Invalid JSON'}

    if not isinstance(body, dict) or body.get('type') != 'email.received':
        return {'received': True}

    data = body.get('data') or {}
    sender = _as_text(data.get('from') or data.get('from_email') or data.get('sender'))
    text = _as_text(data.get('text') or data.get('text_body') or data.get('plain_text'))
    html_body = _as_text(data.get('html') or data.get('html_body'))

    # Acknowledge with 200 even when the message is not stored.
    try:
        message = await run_in_threadpool(
            run_in_transaction,
            db,
            lambda: route_inbound_message(db, sender_email=sender, text=text, html_body=html_body),
        )
    except CheckoutError as exc:
        logger.warning('Inbound email from %s not stored: %s', sender, exc)
        return {'received': True, 'error': str(exc)}

    if message is None:
        return {'received': True, 'error': 'No active request found or message empty'}
    return {'received': True, 'success': True}
