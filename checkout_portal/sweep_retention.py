from __future__ import annotations

import argparse
import logging

from checkout_portal.config import settings
from checkout_portal.db import SessionLocal, run_in_transaction
from checkout_portal.services.retention_service import count_sweepable, sweep


def run(*, dry_run: bool = False, retention_months: int | None = None) -> int:
    with SessionLocal() as db:
        if dry_run:
            return count_sweepable(db, retention_months=retention_months)
        deleted = run_in_transaction(db, lambda: sweep(db, actor_id='retention-cli', retention_months=retention_months))
        return len(deleted)


def main() -> None:
    parser = argparse.ArgumentParser(description='Delete checkout requests whose equipment was returned long ago.')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Only report how many requests would be deleted.',
    )
    parser.add_argument(
        '--months',
        type=int,
        default=None,
        help=f'Retention window in months (default {settings.retention_months}).',
    )
    args = parser.parse_args()
    logging.basicConfig(level=settings.log_level.upper(), format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    count = run(dry_run=args.dry_run, retention_months=args.months)
    if args.dry_run:
        print(f'Retention dry run: {count} requests would be deleted')
    else:
        print(f'Retention sweep complete: deleted={count}')


if __name__ == '__main__':
    main()
