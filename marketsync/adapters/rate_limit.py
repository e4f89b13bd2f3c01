"""
어댑터별 호출 속도 제한.

- FixedDelayLimiter: 호출 사이 최소 간격 보장
- TokenBucketLimiter: 기간당 최대 호출 수 + 최소 간격 (RS24: 30초 150회, 200ms)
"""
from __future__ import annotations

import threading
import time
from typing import Any, Callable


class FixedDelayLimiter:
    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = threading.Lock()

    def acquire(self) -> None:
        with self._lock:
            now = self._clock()
            if self._last is not None:
                wait = self._last + self.min_interval - now
                if wait > 0:
                    self._sleep(wait)
                    now = self._clock()
            self._last = now


class TokenBucketLimiter:
    def __init__(
        self,
        capacity: int,
        per_seconds: float,
        min_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if capacity < 1 or per_seconds <= 0:
            raise ValueError("capacity는 1 이상, per_seconds는 0보다 커야 합니다.")
        self.capacity = capacity
        self.rate = capacity / per_seconds  # 초당 충전 토큰 수
        self._tokens = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._spacing = FixedDelayLimiter(min_interval, clock=clock, sleep=sleep)
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
        self._updated = now

    def acquire(self) -> None:
        with self._lock:
            self._refill()
            if self._tokens < 1.0:
                self._sleep((1.0 - self._tokens) / self.rate)
                self._refill()
            self._tokens = max(0.0, self._tokens - 1.0)
        self._spacing.acquire()


def build_limiter(policy: dict[str, Any] | None, default: dict[str, Any], **kwargs):
    """
    ExternalSystemConfig.rate_limit 정책으로 리미터 생성.

    policy 예:
        {"type": "fixed_delay", "min_interval": 0.5}
        {"type": "token_bucket", "capacity": 150, "per_seconds": 30, "min_interval": 0.2}
    """
    merged = {**default, **(policy or {})}
    kind = merged.get("type", "fixed_delay")
    if kind == "token_bucket":
        return TokenBucketLimiter(
            capacity=int(merged.get("capacity", 60)),
            per_seconds=float(merged.get("per_seconds", 60)),
            min_interval=float(merged.get("min_interval", 0.0)),
            **kwargs,
        )
    if kind == "fixed_delay":
        return FixedDelayLimiter(float(merged.get("min_interval", 0.0)), **kwargs)
    raise ValueError(f"알 수 없는 rate limit 유형입니다: {kind}")
