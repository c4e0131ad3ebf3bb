"""
Store-backed rate limiting for public API endpoints.

Counts live in the rate_limit_counters table (fixed windows), so every app
instance sees the same numbers and a restart does not reset them.
"""
from functools import wraps
from fastapi import Request
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import Callable, Optional
from datetime import datetime, timedelta
import logging

from enrollpay.core.config import settings
from enrollpay.core.errors import RateLimitExceeded
from enrollpay.models.rate_limit_counter import RateLimitCounter
from enrollpay.utils.client_ip import get_client_ip

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1)

# Windows older than this are deleted whenever a new window row is created
_RETENTION = timedelta(hours=1)


def window_start_for(now: datetime, window_seconds: int) -> datetime:
    elapsed = int((now - _EPOCH).total_seconds())
    return _EPOCH + timedelta(seconds=elapsed - elapsed % window_seconds)


def _increment(db: Session, key: str, window_start: datetime) -> int:
    return db.query(RateLimitCounter).filter(
        RateLimitCounter.key == key,
        RateLimitCounter.window_start == window_start,
    ).update({RateLimitCounter.count: RateLimitCounter.count + 1}, synchronize_session=False)


def hit(db: Session, key: str, window_seconds: int, now: Optional[datetime] = None) -> int:
    """Count one request for `key` in the current window and return the window's total."""
    now = now or datetime.utcnow()
    window_start = window_start_for(now, window_seconds)

    if not _increment(db, key, window_start):
        try:
            db.add(RateLimitCounter(key=key, window_start=window_start, count=1))
            db.flush()
        except IntegrityError:
            # Another instance opened the window first
            db.rollback()
            _increment(db, key, window_start)
        else:
            db.query(RateLimitCounter).filter(
                RateLimitCounter.window_start < now - max(_RETENTION, timedelta(seconds=window_seconds))
            ).delete(synchronize_session=False)
    db.commit()

    return db.query(RateLimitCounter.count).filter(
        RateLimitCounter.key == key,
        RateLimitCounter.window_start == window_start,
    ).scalar() or 0


def rate_limit(
    max_requests: Optional[int] = None,
    window_seconds: Optional[int] = None,
    identifier_func: Optional[Callable[[Optional[Request]], str]] = None,
):
    """
    Rate limiting decorator for synchronous FastAPI endpoints.

    The endpoint must take `request: Request` and `db: Session` parameters.
    Limits default to RATE_LIMIT_MAX_REQUESTS per RATE_LIMIT_WINDOW_SECONDS,
    keyed by endpoint name and client IP.

    Usage:
        @router.post("/endpoint")
        @rate_limit(max_requests=10, window_seconds=60)
        def my_endpoint(request: Request, db: Session = Depends(get_db)):
            ...
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            request = kwargs.get("request")
            if request is None:
                request = next((a for a in args if isinstance(a, Request)), None)
            db = kwargs.get("db")

            limit = max_requests or settings.RATE_LIMIT_MAX_REQUESTS
            window = window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS
            identifier = identifier_func(request) if identifier_func else get_client_ip(request)
            key = f"{func.__name__}:{identifier}"

            if db is not None:
                count = hit(db, key, window)
                if count > limit:
                    logger.warning("[RATE_LIMIT] %s exceeded: %s requests in %ss window", key, count, window)
                    raise RateLimitExceeded()

            return func(*args, **kwargs)

        return wrapper
    return decorator
