"""Adjusts the number of concurrent requests from observed API latency."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass
class ConcurrencyStats:
    """Snapshot of a controller's settings and recent latency."""

    current: int
    min: int
    max: int
    target_latency_ms: int
    recent_latency_ms: int

    def __str__(self) -> str:
        return (
            f"并发：{self.current}/{self.max} "
            f"(目标：{self.target_latency_ms}ms, 最近：{self.recent_latency_ms}ms)"
        )


class ConcurrencyController:
    """Raises concurrency on fast responses and lowers it on slow ones or rate limits."""

    def __init__(
        self,
        initial_concurrency: int,
        min_concurrency: int,
        max_concurrency: int,
        target_latency_ms: int,
        cooldown_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.min_concurrency = min_concurrency
        self.max_concurrency = max_concurrency
        self.target_latency_ms = target_latency_ms
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._current = initial_concurrency
        self._recent_latency_ms = 0
        self._last_adjustment = 0
        self._slow_count = 0
        self._fast_count = 0
        self._rate_limit_errors = 0
        self._rate_limit_protection = False

    def current(self) -> int:
        with self._lock:
            return self._current

    def record_rate_limit_error(self) -> None:
        """Lower concurrency after a rate-limit error and enter protection mode."""
        with self._lock:
            self._rate_limit_errors += 1
            count = self._rate_limit_errors
            self._rate_limit_protection = True
            current = self._current
            if count >= 5:
                new_value = self.min_concurrency
                logger.warning("限流保护：连续 %d 次限流错误，强制降到最小并发 %d", count, new_value)
            else:
                step = 2 if count >= 3 else 1
                new_value = max(max(current - step, 0), self.min_concurrency)
                logger.warning("限流：连续 %d 次限流错误，降低并发 %d → %d", count, current, new_value)
            self._current = new_value

    def record_success(self) -> None:
        """Count down rate-limit errors; leave protection once none were pending."""
        with self._lock:
            previous = self._rate_limit_errors
            self._rate_limit_errors = max(previous - 1, 0)
            if previous == 0:
                self._rate_limit_protection = False

    def record_latency(self, latency_ms: int) -> None:
        """Record a response time and adjust concurrency outside the cooldown."""
        with self._lock:
            self._recent_latency_ms = int(self._recent_latency_ms * 0.7 + latency_ms * 0.3)
            target = self.target_latency_ms
            now = int(self._clock())
            if now - self._last_adjustment < self.cooldown_seconds:
                if latency_ms > target * 2:
                    self._slow_count += 1
                elif latency_ms < target // 2:
                    self._fast_count += 1
                return
            self._adjust(latency_ms, target)
            self._last_adjustment = now

    def _adjust(self, latency_ms: int, target_ms: int) -> None:
        current = self._current
        slow_count, self._slow_count = self._slow_count, 0
        fast_count, self._fast_count = self._fast_count, 0
        is_fast = latency_ms < target_ms // 2 and fast_count >= 2

        if self._rate_limit_protection and is_fast:
            logger.info("限流保护模式下，跳过并发增加 (响应时间：%dms)", latency_ms)
            return

        if latency_ms > target_ms * 2:
            reduction = 2 if slow_count >= 3 else 1
            new_value = max(current - reduction, 0)
            if new_value >= self.min_concurrency:
                logger.info("降低并发：%d → %d (响应时间：%dms)", current, new_value, latency_ms)
            else:
                new_value = self.min_concurrency
        elif is_fast:
            increase = 2 if fast_count >= 5 else 1
            new_value = current + increase
            if new_value <= self.max_concurrency:
                logger.info("增加并发：%d → %d (响应时间：%dms)", current, new_value, latency_ms)
            else:
                new_value = self.max_concurrency
        else:
            new_value = current
        self._current = new_value

    async def acquire_with_timeout(self, semaphore: asyncio.Semaphore, timeout: float) -> bool:
        """Acquire ``semaphore`` within ``timeout`` seconds; the caller releases it."""
        try:
            await asyncio.wait_for(semaphore.acquire(), timeout)
        except asyncio.TimeoutError:
            logger.warning("获取信号量超时 (%ss)", timeout)
            return False
        return True

    def stats(self) -> ConcurrencyStats:
        with self._lock:
            return ConcurrencyStats(
                current=self._current,
                min=self.min_concurrency,
                max=self.max_concurrency,
                target_latency_ms=self.target_latency_ms,
                recent_latency_ms=self._recent_latency_ms,
            )

    def set_concurrency(self, value: int) -> None:
        """Override the concurrency; values outside the bounds are ignored."""
        with self._lock:
            if self.min_concurrency <= value <= self.max_concurrency:
                old, self._current = self._current, value
                logger.info("手动设置并发：%d → %d", old, value)
            else:
                logger.warning(
                    "并发数超出范围 [%d, %d]: %d", self.min_concurrency, self.max_concurrency, value
                )