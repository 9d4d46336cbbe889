"""
Rate Limiting Service

WHY: Throttle abusive clients before they reach the business logic.

Counters live in the rate_limit_counters table rather than process memory,
so every app instance behind a load balancer enforces the same limit.

Fixed window per client key:
- First request (or first after expiry) starts a window of
  RATE_LIMIT_WINDOW_SECONDS with count 1
- Each further request increments count
- Once count reaches RATE_LIMIT_MAX_REQUESTS, requests are refused until
  the window expires
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import RateLimitCounter
from .concurrency import begin_write, lock_for_update
from murimi_pos.time_utils import utcnow


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil((self.reset_at - utcnow()).total_seconds()))


def _hit(key: str, max_requests: int, window: timedelta, now: datetime) -> RateLimitResult:
    begin_write()
    counter = lock_for_update(
        db.session.query(RateLimitCounter).filter_by(key=key)
    ).first()

    if counter is None:
        counter = RateLimitCounter(key=key, count=1, window_expires_at=now + window)
        db.session.add(counter)
        db.session.commit()
        return RateLimitResult(True, max_requests - 1, counter.window_expires_at)

    if counter.window_expires_at <= now:
        counter.count = 1
        counter.window_expires_at = now + window
        db.session.commit()
        return RateLimitResult(True, max_requests - 1, counter.window_expires_at)

    if counter.count >= max_requests:
        reset_at = counter.window_expires_at
        db.session.rollback()
        return RateLimitResult(False, 0, reset_at)

    counter.count += 1
    remaining = max_requests - counter.count
    reset_at = counter.window_expires_at
    db.session.commit()
    return RateLimitResult(True, remaining, reset_at)


def check_rate_limit(key: str, max_requests: int = 100, window_seconds: int = 60) -> RateLimitResult:
    """
    Count one request for key and report whether it is allowed.

    Two instances can race to create the same key; the loser's INSERT hits
    the unique constraint and is retried once as an update.
    """
    window = timedelta(seconds=window_seconds)
    now = utcnow()
    try:
        return _hit(key, max_requests, window, now)
    except IntegrityError:
        db.session.rollback()
        return _hit(key, max_requests, window, now)


def purge_expired(now: datetime | None = None) -> int:
    """Delete counters whose window has ended. Returns number of rows removed."""
    now = now or utcnow()
    deleted = db.session.query(RateLimitCounter).filter(
        RateLimitCounter.window_expires_at <= now
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
