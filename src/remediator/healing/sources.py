"""Metric sources feeding the health monitor.

- SystemMetricSource: real telemetry (psutil for the host, a request tracker
  fed by the application for error rate and latency)
- ReplayMetricSource: replays a recorded sequence, for tests and incident replays

Any object with a ``pull()`` method returning ``HealthMetrics`` (or an
awaitable of one) can be used as a source.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from typing import Protocol, runtime_checkable

from remediator.healing.metrics import HealthMetrics
from remediator.logging import get_logger

log = get_logger("remediator.healing.sources")


@runtime_checkable
class MetricSource(Protocol):
    """Collaborator that supplies one raw measurement per sampling tick."""

    def pull(self) -> HealthMetrics | Awaitable[HealthMetrics]: ...


class RequestTracker:
    """Sliding-window request statistics recorded by the host application.

    ``record()`` is cheap and thread-safe so it can be called from request
    handlers; the source reads aggregates once per sampling tick.
    """

    def __init__(self, window_seconds: float = 60.0) -> None:
        self._window = window_seconds
        self._events: deque[tuple[float, float, bool]] = deque()
        self._lock = threading.Lock()

    def record(self, latency_ms: float, success: bool = True) -> None:
        with self._lock:
            self._events.append((time.monotonic(), float(latency_ms), success))
            self._evict(time.monotonic())

    def _evict(self, now: float) -> None:
        cutoff = now - self._window
        while self._events and self._events[0][0] < cutoff:
            self._events.popleft()

    def error_rate_per_minute(self) -> float:
        with self._lock:
            self._evict(time.monotonic())
            errors = sum(1 for _, _, ok in self._events if not ok)
        return errors * 60.0 / self._window

    def average_latency_ms(self) -> float:
        with self._lock:
            self._evict(time.monotonic())
            latencies = [lat for _, lat, _ in self._events]
        if not latencies:
            return 0.0
        return sum(latencies) / len(latencies)


class SystemMetricSource:
    """Collects live health metrics.

    Designed for graceful degradation: a provider that raises (or psutil
    being unavailable) yields 0.0 for that metric rather than an exception.
    """

    def __init__(
        self,
        tracker: RequestTracker | None = None,
        queue_depth: Callable[[], float] | None = None,
        deadlock_risk: Callable[[], float] | None = None,
    ) -> None:
        self._tracker = tracker or RequestTracker()
        self._queue_depth = queue_depth
        self._deadlock_risk = deadlock_risk

    @property
    def tracker(self) -> RequestTracker:
        return self._tracker

    def pull(self) -> HealthMetrics:
        cpu, memory = self._system_usage()
        return HealthMetrics(
            cpu_usage=cpu,
            memory_usage=memory,
            error_rate=self._tracker.error_rate_per_minute(),
            response_time=self._tracker.average_latency_ms(),
            queue_depth=self._call_provider("queue_depth", self._queue_depth),
            deadlock_risk=self._call_provider("deadlock_risk", self._deadlock_risk),
        )

    def _system_usage(self) -> tuple[float, float]:
        try:
            import psutil

            cpu = psutil.cpu_percent(interval=None) / 100.0
            memory = psutil.virtual_memory().percent / 100.0
            return round(cpu, 4), round(memory, 4)
        except Exception as exc:
            log.debug("system_usage_unavailable", error=str(exc))
            return 0.0, 0.0

    def _call_provider(self, name: str, provider: Callable[[], float] | None) -> float:
        if provider is None:
            return 0.0
        try:
            return float(provider())
        except Exception as exc:
            log.warning("metric_provider_failed", metric=name, error=str(exc))
            return 0.0


class ReplayMetricSource:
    """Replays a fixed sequence of measurements in order."""

    def __init__(self, samples: Iterable[HealthMetrics], loop: bool = False) -> None:
        self._samples = list(samples)
        self._loop = loop
        self._position = 0

    @property
    def remaining(self) -> int:
        return len(self._samples) - self._position

    def extend(self, samples: Iterable[HealthMetrics]) -> None:
        self._samples.extend(samples)

    def pull(self) -> HealthMetrics:
        if self._position >= len(self._samples):
            if not self._loop or not self._samples:
                raise IndexError("replay source exhausted")
            self._position = 0
        sample = self._samples[self._position]
        self._position += 1
        return sample
