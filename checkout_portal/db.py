from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from typing import TypeVar

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import RetryCallState, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from checkout_portal.config import settings
from checkout_portal.errors import UnavailableError

logger = logging.getLogger(__name__)

T = TypeVar('T')

engine = create_engine(
    settings.database_url_normalized,
    pool_pre_ping=True,
    future=True,
)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def get_db() -> Iterator[Session]:
    with SessionLocal() as db:
        yield db


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        'Transient database error, retrying in %.2fs (attempt %s): %s',
        retry_state.next_action.sleep if retry_state.next_action else 0.0,
        retry_state.attempt_number,
        retry_state.outcome.exception() if retry_state.outcome else None,
    )


def run_in_transaction(
    db: Session,
    work: Callable[[], T],
    *,
    attempts: int | None = None,
    base_delay: float | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``work`` and commit, retrying transient database failures.

    Pool exhaustion, serialization failures and deadlocks surface as OperationalError and are
    retried with exponential backoff. Anything else rolls back and propagates untouched.
    """
    max_attempts = max(1, attempts if attempts is not None else settings.db_retry_attempts)
    delay = base_delay if base_delay is not None else settings.db_retry_base_delay_seconds

    @retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=delay, min=0),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    def _attempt() -> T:
        try:
            result = work()
            db.commit()
            return result
        except Exception:
            db.rollback()
            raise

    try:
        return _attempt()
    except OperationalError as exc:
        logger.error('Database unavailable after %s attempts: %s', max_attempts, exc)
        raise UnavailableError('Service temporarily unavailable, please retry') from exc
