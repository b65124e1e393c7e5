"""
Detection throttling.

Bounds how often the detection pipeline may run so bursty DOM mutation
activity never degrades the host page:
- rolling window limiter (default 30 detections per 60s)
- full suspension while the tab is hidden
- adaptive limit: shrinks when the pipeline is slow or memory is tight,
  relaxes back after a sustained healthy period

Rejected attempts are dropped, never queued.
"""

import logging
import math
import threading
import time
from collections import deque
from typing import Callable, Dict, Optional

from .models import ThrottleState

logger = logging.getLogger(__name__)

LATENCY_SAMPLES = 20
SHRINK_FACTOR = 0.5
RELAX_FACTOR = 1.25


class ThrottleGovernor:
    """
    Rolling-window rate limiter for the detection pipeline.

    Usage:
        governor = ThrottleGovernor(config["throttle"])

        if not governor.try_acquire():
            return  # dropped
        start = time.perf_counter()
        run_pipeline()
        governor.record_latency((time.perf_counter() - start) * 1000)
    """

    def __init__(self, config: Optional[Dict] = None, clock: Callable[[], float] = time.time):
        """
        Initialize the governor.

        Args:
            config: Configuration with:
                - max_detections_per_window: Configured (maximum) limit (30)
                - window_ms: Window length in milliseconds (60000)
                - min_limit: Floor of the adaptive limit (5)
                - latency_budget_ms: Average latency above which the limit shrinks (500)
                - memory_threshold: Memory usage ratio above which the limit shrinks (0.8)
                - healthy_interval_ms: Healthy time needed before relaxing (30000)
            clock: Time source (seconds)
        """
        config = config or {}

        self.max_limit = config.get("max_detections_per_window", 30)
        self.window_seconds = config.get("window_ms", 60000) / 1000.0
        self.min_limit = min(config.get("min_limit", 5), self.max_limit)
        self.latency_budget_ms = config.get("latency_budget_ms", 500)
        self.memory_threshold = config.get("memory_threshold", 0.8)
        self.healthy_interval = config.get("healthy_interval_ms", 30000) / 1000.0

        self._clock = clock
        now = clock()
        self._state = ThrottleState(window_start=now, count_in_window=0, limit=self.max_limit)
        self._latencies = deque(maxlen=LATENCY_SAMPLES)
        self._memory_ratio = 0.0
        self._healthy_since = now
        self._rejected = 0
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._state.limit

    @property
    def suspended(self) -> bool:
        return self._state.suspended

    def _roll_window(self, now: float) -> None:
        if now - self._state.window_start >= self.window_seconds:
            self._state.window_start = now
            self._state.count_in_window = 0

    def try_acquire(self, now: Optional[float] = None) -> bool:
        """
        Admit or reject one detection attempt.

        Returns:
            True if the pipeline may run, False if the attempt is dropped
        """
        now = self._clock() if now is None else now

        with self._lock:
            if self._state.suspended:
                self._rejected += 1
                return False

            self._roll_window(now)

            if self._state.count_in_window < self._state.limit:
                self._state.count_in_window += 1
                return True

            self._rejected += 1
            if self._rejected % 10 == 1:
                logger.warning(
                    f"Detection limit reached ({self._state.limit}/{self.window_seconds:.0f}s); dropping"
                )
            return False

    def set_visible(self, visible: bool, now: Optional[float] = None) -> None:
        """
        Track tab visibility.

        Hidden suspends detection entirely; becoming visible again starts a
        fresh window.
        """
        now = self._clock() if now is None else now

        with self._lock:
            was_suspended = self._state.suspended
            self._state.suspended = not visible
            if visible and was_suspended:
                self._state.window_start = now
                self._state.count_in_window = 0
                logger.debug("Tab visible: throttle window reset")
            elif not visible and not was_suspended:
                logger.debug("Tab hidden: detection suspended")

    def record_latency(self, latency_ms: float, now: Optional[float] = None) -> None:
        """Add a pipeline latency sample and retune."""
        with self._lock:
            self._latencies.append(max(0.0, float(latency_ms)))
            self._tune(self._clock() if now is None else now)

    def report_memory_usage(self, usage_ratio: float, now: Optional[float] = None) -> None:
        """Record memory telemetry (used / limit) and retune."""
        with self._lock:
            self._memory_ratio = max(0.0, float(usage_ratio))
            self._tune(self._clock() if now is None else now)

    def average_latency_ms(self) -> float:
        if not self._latencies:
            return 0.0
        return sum(self._latencies) / len(self._latencies)

    def _tune(self, now: float) -> None:
        """Shrink the limit under pressure, relax it after sustained health."""
        state = self._state
        overloaded = (
            self.average_latency_ms() > self.latency_budget_ms
            or self._memory_ratio > self.memory_threshold
        )

        if overloaded:
            self._healthy_since = now
            new_limit = max(self.min_limit, int(math.floor(state.limit * SHRINK_FACTOR)))
            if new_limit != state.limit:
                logger.info(
                    f"Detection limit reduced {state.limit} → {new_limit} "
                    f"(latency {self.average_latency_ms():.0f}ms, memory {self._memory_ratio:.0%})"
                )
                state.limit = new_limit
                # Samples that triggered the reduction must not trigger it again
                self._latencies.clear()
            return

        if state.limit < self.max_limit and now - self._healthy_since >= self.healthy_interval:
            new_limit = min(self.max_limit, int(math.ceil(state.limit * RELAX_FACTOR)))
            logger.info(f"Detection limit relaxed {state.limit} → {new_limit}")
            state.limit = new_limit
            self._healthy_since = now

    def get_status(self, now: Optional[float] = None) -> Dict:
        now = self._clock() if now is None else now
        with self._lock:
            self._roll_window(now)
            return {
                "limit": self._state.limit,
                "max_limit": self.max_limit,
                "count_in_window": self._state.count_in_window,
                "window_seconds": self.window_seconds,
                "window_remaining_seconds": max(
                    0.0, self.window_seconds - (now - self._state.window_start)
                ),
                "suspended": self._state.suspended,
                "rejected_total": self._rejected,
                "average_latency_ms": round(self.average_latency_ms(), 1),
                "memory_usage_ratio": self._memory_ratio,
            }

    def reset(self) -> None:
        """Reset counters and the adaptive limit."""
        with self._lock:
            now = self._clock()
            self._state = ThrottleState(window_start=now, count_in_window=0, limit=self.max_limit)
            self._latencies.clear()
            self._memory_ratio = 0.0
            self._healthy_since = now
            self._rejected = 0
