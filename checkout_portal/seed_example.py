from sqlalchemy import select

from checkout_portal.db import SessionLocal, engine
from checkout_portal.models import Base, InventoryItem

DEMO_ITEMS = [
    ('Projector', 2),
    ('Portable PA Speaker', 1),
    ('Folding Table', 12),
    ('Extension Cord (25ft)', 6),
    ('DSLR Camera Kit', 1),
]


def seed() -> None:
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        existing = set(db.execute(select(InventoryItem.name)).scalars().all())
        for name, quantity in DEMO_ITEMS:
            if name in existing:
                continue
            db.add(InventoryItem(name=name, quantity=quantity, checkout_enabled=True))
        db.commit()


if __name__ == '__main__':
    seed()
    print('Seeded demo inventory items.')
