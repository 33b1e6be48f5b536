from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from checkout_portal.errors import ConflictError, NotFoundError, ValidationError
from checkout_portal.models import CheckoutRecord, CheckoutStatus, InventoryItem


def get_item(db: Session, item_id: int) -> InventoryItem:
    item = db.execute(select(InventoryItem).where(InventoryItem.id == item_id)).scalar_one_or_none()
    if not item:
        raise NotFoundError(f'Item {item_id} not found')
    return item


def lock_items(db: Session, item_ids: Iterable[int]) -> dict[int, InventoryItem]:
    """Lock the given inventory rows for the rest of the transaction.

    Rows are locked in id order so two batches touching the same items cannot deadlock.
    """
    ids = sorted(set(item_ids))
    if not ids:
        return {}
    rows = db.execute(
        select(InventoryItem).where(InventoryItem.id.in_(ids)).order_by(InventoryItem.id.asc()).with_for_update()
    ).scalars().all()
    items = {item.id: item for item in rows}
    missing = [item_id for item_id in ids if item_id not in items]
    if missing:
        raise NotFoundError(f'Item {missing[0]} not found')
    return items


def active_checkout_count(db: Session, item_id: int) -> int:
    return db.execute(
        select(func.count(CheckoutRecord.id)).where(
            CheckoutRecord.inventory_item_id == item_id,
            CheckoutRecord.status == CheckoutStatus.CHECKED_OUT,
        )
    ).scalar_one()


def active_checkout_counts(db: Session, item_ids: Iterable[int]) -> dict[int, int]:
    ids = list(set(item_ids))
    if not ids:
        return {}
    rows = db.execute(
        select(CheckoutRecord.inventory_item_id, func.count(CheckoutRecord.id))
        .where(
            CheckoutRecord.inventory_item_id.in_(ids),
            CheckoutRecord.status == CheckoutStatus.CHECKED_OUT,
        )
        .group_by(CheckoutRecord.inventory_item_id)
    ).all()
    counts = {item_id: 0 for item_id in ids}
    for item_id, count in rows:
        counts[item_id] = count
    return counts


def raw_availability(item: InventoryItem, active_count: int) -> int:
    return item.quantity - active_count


def availability(db: Session, item_id: int) -> int:
    item = get_item(db, item_id)
    return max(0, raw_availability(item, active_checkout_count(db, item_id)))


def is_reservable(db: Session, item_id: int, wanted_qty: int) -> bool:
    item = get_item(db, item_id)
    if not item.checkout_enabled:
        return False
    return wanted_qty <= raw_availability(item, active_checkout_count(db, item_id))


def assert_reservable(db: Session, wanted_by_item: dict[int, int]) -> dict[int, InventoryItem]:
    """Lock every requested item and verify the whole batch fits, or raise before any write.

    Returns the locked items so callers can insert against them inside the same transaction.
    """
    for item_id, qty in wanted_by_item.items():
        if qty < 1:
            raise ValidationError(f'Quantity for item {item_id} must be at least 1')

    items = lock_items(db, wanted_by_item.keys())
    counts = active_checkout_counts(db, items.keys())
    for item_id in sorted(wanted_by_item):
        item = items[item_id]
        if not item.checkout_enabled:
            raise ValidationError(f'Item "{item.name}" is not available for checkout')
        available = raw_availability(item, counts[item_id])
        if wanted_by_item[item_id] > available:
            raise ConflictError(f'Only {max(0, available)} of "{item.name}" are available')
    return items


def list_reservable_items(db: Session) -> list[dict]:
    items = db.execute(
        select(InventoryItem).where(InventoryItem.checkout_enabled.is_(True)).order_by(InventoryItem.name.asc())
    ).scalars().all()
    counts = active_checkout_counts(db, [item.id for item in items])
    return [
        {
            'id': item.id,
            'name': item.name,
            'quantity': item.quantity,
            'available': max(0, raw_availability(item, counts.get(item.id, 0))),
        }
        for item in items
    ]
