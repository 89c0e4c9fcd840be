"""Rolling-window health monitoring with statistical process control.

Samples the metric source on a fixed cadence, keeps the last
``window_size`` samples, and derives:

- an anomaly score (maximum z-score across the sampled metrics)
- threshold alerts in two tiers
- per-metric trends and an overall 0-100 health score

The monitor only observes; remediation is the coordinator's job.
"""

from __future__ import annotations

import asyncio
import inspect
import statistics
from dataclasses import replace
from datetime import datetime

from remediator.constants import DEFAULT_SAMPLING_INTERVAL_SECONDS, DEFAULT_WINDOW_SIZE
from remediator.healing.metrics import (
    FEATURE_SCALES,
    SAMPLED_METRICS,
    Alert,
    AlertSeverity,
    HealthHistory,
    HealthMetrics,
    HealthReport,
    HealthSample,
)
from remediator.healing.sources import MetricSource
from remediator.logging import get_logger
from remediator.utils import utcnow

log = get_logger("remediator.healing.monitor")

DEFAULT_ALERT_THRESHOLDS: dict[str, float] = {
    "cpu_usage": 0.9,
    "memory_usage": 0.85,
    "error_rate": 10.0,
    "response_time": 5000.0,
    "queue_depth": 100.0,
    "deadlock_risk": 0.5,
    "anomaly_score": 0.7,
}

DEFAULT_CRITICAL_THRESHOLDS: dict[str, float] = {
    "cpu_usage": 0.95,
    "memory_usage": 0.95,
    "error_rate": 20.0,
    "response_time": 10000.0,
    "queue_depth": 200.0,
    "deadlock_risk": 0.8,
    "anomaly_score": 0.9,
}

# Metrics where a rising value is an improvement. None of the built-in
# metrics qualify; custom sources extend this.
HIGHER_IS_BETTER: frozenset[str] = frozenset()

_MIN_SCORING_SAMPLES = 3
_Z_SCORE_SATURATION = 3.0
_TREND_EPSILON = 0.01


class NoMetricsError(RuntimeError):
    """Raised when a report is requested before any sample exists."""


class HealthMonitor:
    """Tracks the seven health metrics over a bounded window."""

    def __init__(
        self,
        source: MetricSource | None = None,
        window_size: int = DEFAULT_WINDOW_SIZE,
        sampling_interval: float = DEFAULT_SAMPLING_INTERVAL_SECONDS,
        alert_thresholds: dict[str, float] | None = None,
        critical_thresholds: dict[str, float] | None = None,
    ) -> None:
        self._source = source
        self._history = HealthHistory(window_size)
        self._interval = sampling_interval
        self._alert_thresholds = {**DEFAULT_ALERT_THRESHOLDS, **(alert_thresholds or {})}
        self._critical_thresholds = {**DEFAULT_CRITICAL_THRESHOLDS, **(critical_thresholds or {})}
        self._task: asyncio.Task[None] | None = None

    @property
    def window_size(self) -> int:
        return self._history.maxlen

    @property
    def sampling_interval(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def has_source(self) -> bool:
        return self._source is not None

    @property
    def history(self) -> list[HealthSample]:
        return self._history.snapshot()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start periodic sampling in a background task."""
        if self.is_running:
            log.debug("monitor_already_running")
            return
        if self._source is None:
            raise RuntimeError("HealthMonitor has no metric source to sample")
        self._task = asyncio.create_task(self._sampling_loop(), name="health-monitor")
        log.info(
            "monitor_started",
            sampling_interval=self._interval,
            window_size=self.window_size,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("monitor_stopped")

    async def _sampling_loop(self) -> None:
        while True:
            try:
                await self.sample()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning("monitor_sample_failed", error=str(exc))
            await asyncio.sleep(self._interval)

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    async def sample(self) -> HealthMetrics:
        """Pull one measurement from the source and record it."""
        if self._source is None:
            raise RuntimeError("HealthMonitor has no metric source to sample")
        pulled = self._source.pull()
        if inspect.isawaitable(pulled):
            pulled = await pulled
        return self.record(pulled)

    def record(self, metrics: HealthMetrics, timestamp: datetime | None = None) -> HealthMetrics:
        """Push a measurement into the window and score it.

        Returns the stored metrics with ``anomaly_score`` filled in.
        """
        sample = HealthSample(timestamp=timestamp or utcnow(), metrics=metrics)
        self._history.append(sample)

        scored = replace(metrics, anomaly_score=self.calculate_anomaly_score(metrics))
        sample.metrics = scored

        alerts = self.check_alerts(scored)
        for alert in alerts:
            log.warning(
                "health_alert",
                metric=alert.metric,
                value=round(alert.value, 4),
                threshold=alert.threshold,
                severity=alert.severity.value,
            )
        return scored

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def calculate_anomaly_score(self, metrics: HealthMetrics) -> float:
        """Max absolute z-score across sampled metrics, saturating at 3 sigma."""
        if len(self._history) < _MIN_SCORING_SAMPLES:
            return 0.0

        max_z = 0.0
        for metric in SAMPLED_METRICS:
            values = self._history.values(metric)
            mean = statistics.fmean(values)
            stddev = statistics.pstdev(values)
            if stddev == 0:
                continue
            max_z = max(max_z, abs(metrics.get(metric) - mean) / stddev)

        return min(1.0, max_z / _Z_SCORE_SATURATION)

    def mean_and_stddev(self, metric: str) -> tuple[float, float]:
        values = self._history.values(metric)
        if not values:
            raise NoMetricsError("No metrics collected yet")
        return statistics.fmean(values), statistics.pstdev(values)

    def check_alerts(self, metrics: HealthMetrics) -> list[Alert]:
        """Compare each sampled metric with the alert and critical tiers."""
        alerts: list[Alert] = []
        now = utcnow()

        for metric in SAMPLED_METRICS:
            value = metrics.get(metric)
            critical = self._critical_thresholds[metric]
            alert = self._alert_thresholds[metric]
            if value > critical:
                alerts.append(Alert(metric, value, critical, AlertSeverity.EMERGENCY, now))
            elif value > alert:
                alerts.append(Alert(metric, value, alert, AlertSeverity.CRITICAL, now))

        score_threshold = self._alert_thresholds["anomaly_score"]
        if metrics.anomaly_score > score_threshold:
            alerts.append(
                Alert(
                    "anomaly_score",
                    metrics.anomaly_score,
                    score_threshold,
                    AlertSeverity.WARNING,
                    now,
                )
            )

        return alerts

    def get_health_report(self) -> HealthReport:
        latest = self._history.latest()
        if latest is None:
            raise NoMetricsError("No metrics collected yet")

        current = latest.metrics
        alerts = self.check_alerts(current)
        recent = self._history.snapshot()[-3:]

        trends: dict[str, str] = {}
        for metric in SAMPLED_METRICS:
            if len(recent) < 2:
                trends[metric] = "stable"
                continue
            delta = (recent[-1].metrics.get(metric) - recent[0].metrics.get(metric)) / (
                FEATURE_SCALES[metric]
            )
            if abs(delta) < _TREND_EPSILON:
                trends[metric] = "stable"
            elif metric in HIGHER_IS_BETTER:
                trends[metric] = "improving" if delta > 0 else "degrading"
            else:
                trends[metric] = "degrading" if delta > 0 else "improving"

        emergencies = sum(1 for a in alerts if a.severity is AlertSeverity.EMERGENCY)
        criticals = sum(1 for a in alerts if a.severity is AlertSeverity.CRITICAL)
        health_score = float(max(0, 100 - emergencies * 30 - criticals * 10))

        return HealthReport(
            current_metrics=current,
            trends=trends,
            alerts=alerts,
            health_score=health_score,
        )
