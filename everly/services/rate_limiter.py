"""
Request rate limiting for externally triggerable endpoints.

The limiter is a strategy picked by RATE_LIMIT_BACKEND: per-process memory
for single-instance deployments, or counters in the database when several
instances must share a budget. Authoritative dedupe and locking live in the
queue table, not here.
"""
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Deque, Dict, Tuple

from sqlalchemy.exc import IntegrityError

from everly.datetime_utils import utcnow
from everly.logging_config import get_logger

logger = get_logger(__name__)

EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0  # seconds until a request would be allowed again


class RateLimiter:
    """Interface: check(scope, key, window_seconds, max_requests) -> RateLimitDecision."""

    def check(self, scope: str, key: str, window_seconds: int, max_requests: int) -> RateLimitDecision:
        raise NotImplementedError

    @staticmethod
    def bucket_id(scope, key, window_seconds):
        return f"{scope}:{key}:{window_seconds}"


class InMemoryRateLimiter(RateLimiter):
    """Sliding-window limiter keeping request timestamps per bucket.

    Buckets whose newest hit has left its window are dropped, on the next
    check for that bucket and by a sweep over all buckets at most once per
    sweep_interval seconds, so rotating keys cannot grow memory without bound.
    """

    def __init__(self, clock=time.monotonic, sweep_interval=60):
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, Tuple[int, Deque[float]]] = {}
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()

    def _sweep(self, now):
        expired = [
            bucket_id for bucket_id, (window_seconds, hits) in self._buckets.items()
            if not hits or hits[-1] <= now - window_seconds
        ]
        for bucket_id in expired:
            del self._buckets[bucket_id]
        self._last_sweep = now
        if expired:
            logger.debug("Rate limit buckets swept", removed=len(expired), remaining=len(self._buckets))

    def bucket_count(self):
        with self._lock:
            return len(self._buckets)

    def check(self, scope, key, window_seconds, max_requests):
        now = self._clock()
        bucket_id = self.bucket_id(scope, key, window_seconds)
        with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)

            _, hits = self._buckets.setdefault(bucket_id, (window_seconds, deque()))
            while hits and hits[0] <= now - window_seconds:
                hits.popleft()

            if max_requests < 1:
                if not hits:
                    del self._buckets[bucket_id]
                return RateLimitDecision(allowed=False, remaining=0, retry_after=window_seconds)

            if len(hits) >= max_requests:
                retry_after = max(0, math.ceil(hits[0] + window_seconds - now))
                return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

            hits.append(now)
            return RateLimitDecision(allowed=True, remaining=max_requests - len(hits))


class DatabaseRateLimiter(RateLimiter):
    """Fixed-window counters in rate_limit_counters, shared across instances."""

    def check(self, scope, key, window_seconds, max_requests):
        from everly.models import RateLimitCounter, db

        now = utcnow()
        elapsed = int((now - EPOCH).total_seconds())
        window_start = EPOCH + timedelta(seconds=elapsed - elapsed % window_seconds)
        retry_after = max(0, math.ceil((window_start + timedelta(seconds=window_seconds) - now).total_seconds()))
        if max_requests < 1:
            return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)
        bucket_id = self.bucket_id(scope, key, window_seconds)

        updated = RateLimitCounter.query.filter(
            RateLimitCounter.bucket_id == bucket_id,
            RateLimitCounter.window_start == window_start,
            RateLimitCounter.count < max_requests,
        ).update({RateLimitCounter.count: RateLimitCounter.count + 1}, synchronize_session=False)

        if updated:
            db.session.commit()
            count = RateLimitCounter.query.filter_by(bucket_id=bucket_id, window_start=window_start).first().count
            return RateLimitDecision(allowed=True, remaining=max(0, max_requests - count))

        exists = RateLimitCounter.query.filter_by(bucket_id=bucket_id, window_start=window_start).first()
        if exists is not None:
            db.session.commit()
            logger.info("Rate limit window exhausted", bucket_id=bucket_id, window_start=window_start.isoformat())
            return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

        try:
            db.session.add(RateLimitCounter(bucket_id=bucket_id, window_start=window_start, count=1))
            db.session.commit()
        except IntegrityError:
            # Another instance opened this window first; retry as an increment.
            db.session.rollback()
            return self.check(scope, key, window_seconds, max_requests)
        return RateLimitDecision(allowed=True, remaining=max_requests - 1)


RATE_LIMITER_BACKENDS = {
    "memory": InMemoryRateLimiter,
    "database": DatabaseRateLimiter,
}


def build_rate_limiter(backend: str) -> RateLimiter:
    try:
        return RATE_LIMITER_BACKENDS[backend]()
    except KeyError:
        raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {backend}. Available: {list(RATE_LIMITER_BACKENDS)}")


def client_ip(request) -> str:
    """First x-forwarded-for hop, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.remote_addr or "0.0.0.0"
