from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from .config import settings
from .logging import logger


class _TokenBucket:
    """Token bucket that refills to capacity every fixed interval (seconds).

    Not locked on its own; `QuotaService` serialises access.
    """

    def __init__(self, capacity: int, refill_interval_sec: float, now: float) -> None:
        self.capacity = max(1, int(capacity))
        self.tokens = self.capacity
        self.refill_interval = max(1.0, float(refill_interval_sec))
        self.last_refill = now

    def _refill(self, now: float) -> None:
        if now - self.last_refill >= self.refill_interval:
            self.tokens = self.capacity
            self.last_refill = now

    def peek(self, now: float) -> int:
        self._refill(now)
        return self.tokens

    def take(self, now: float) -> bool:
        self._refill(now)
        if self.tokens > 0:
            self.tokens -= 1
            return True
        return False


@dataclass
class _TrackedBucket:
    bucket: _TokenBucket
    last_seen: float


class QuotaService:
    """Per-key graded-submission quota (key = user id, or client IP when anonymous).

    - remaining(): 消費せずに残量を確認する（採点前のチェック用）
    - check_and_consume(): 1 単位を消費する（コミット成功後にのみ呼ぶ）
    長時間利用のないキーは TTL と上限件数で破棄する。
    """

    def __init__(
        self,
        *,
        capacity: int,
        interval_seconds: float,
        bucket_ttl_seconds: float | None = None,
        max_buckets: int = 10_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._capacity = max(1, int(capacity))
        self._interval = max(1.0, float(interval_seconds))
        self._ttl = max(self._interval, float(bucket_ttl_seconds or self._interval * 2))
        self._max_buckets = max(1, int(max_buckets))
        self._clock = clock
        self._buckets: OrderedDict[str, _TrackedBucket] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def _prune(self, now: float) -> None:
        expired = [key for key, entry in self._buckets.items() if now - entry.last_seen > self._ttl]
        for key in expired:
            self._buckets.pop(key, None)
        while len(self._buckets) >= self._max_buckets:
            self._buckets.popitem(last=False)

    def _bucket(self, key: str, now: float) -> _TokenBucket:
        entry = self._buckets.get(key)
        if entry is None:
            self._prune(now)
            entry = _TrackedBucket(
                bucket=_TokenBucket(self._capacity, self._interval, now), last_seen=now
            )
            self._buckets[key] = entry
        else:
            entry.last_seen = now
            self._buckets.move_to_end(key, last=True)
        return entry.bucket

    def remaining(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            entry = self._buckets.get(key)
            if entry is None:
                return self._capacity
            return entry.bucket.peek(now)

    def check_and_consume(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            allowed = self._bucket(key, now).take(now)
        if not allowed:
            logger.info("quota_exhausted", quota_key=key)
        return allowed


quota = QuotaService(
    capacity=settings.submission_quota_capacity,
    interval_seconds=settings.submission_quota_interval_seconds,
)
