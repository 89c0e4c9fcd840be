"""Health metric records shared by the monitor, detector and coordinator.

The seven-metric order below is the feature-vector order used everywhere in
the healing loop; pattern libraries persisted on disk depend on it.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from remediator.utils import utcnow

METRIC_NAMES: tuple[str, ...] = (
    "cpu_usage",
    "memory_usage",
    "error_rate",
    "response_time",
    "queue_depth",
    "deadlock_risk",
    "anomaly_score",
)

# Metrics that are sampled from a source; anomaly_score is computed.
SAMPLED_METRICS: tuple[str, ...] = METRIC_NAMES[:-1]

FEATURE_DIM = len(METRIC_NAMES)

# Divisors that map raw units into the 0..1 feature space.
FEATURE_SCALES: dict[str, float] = {
    "cpu_usage": 1.0,
    "memory_usage": 1.0,
    "error_rate": 100.0,  # errors per minute
    "response_time": 10_000.0,  # milliseconds
    "queue_depth": 200.0,  # queued tasks
    "deadlock_risk": 1.0,
    "anomaly_score": 1.0,
}


class AlertSeverity(Enum):
    """Alert tiers, mildest first."""

    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


@dataclass
class HealthMetrics:
    """One sample of the seven health metrics, in raw units."""

    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    error_rate: float = 0.0
    response_time: float = 0.0
    queue_depth: float = 0.0
    deadlock_risk: float = 0.0
    anomaly_score: float = 0.0

    def get(self, metric: str) -> float:
        if metric not in METRIC_NAMES:
            raise KeyError(metric)
        return float(getattr(self, metric))

    def to_dict(self) -> dict[str, float]:
        return {name: float(value) for name, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthMetrics:
        return cls(**{name: float(data.get(name, 0.0)) for name in METRIC_NAMES})

    def to_feature_vector(self) -> list[float]:
        """Return the normalised vector in ``METRIC_NAMES`` order."""
        return [self.get(name) / FEATURE_SCALES[name] for name in METRIC_NAMES]


@dataclass
class HealthSample:
    """A timestamped entry of the rolling window."""

    timestamp: datetime
    metrics: HealthMetrics

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "metrics": self.metrics.to_dict()}


class HealthHistory:
    """Bounded ring buffer of samples; the oldest entry is evicted on overflow."""

    def __init__(self, maxlen: int) -> None:
        if maxlen < 1:
            raise ValueError("maxlen must be >= 1")
        self._samples: deque[HealthSample] = deque(maxlen=maxlen)

    @property
    def maxlen(self) -> int:
        return self._samples.maxlen or 0

    def append(self, sample: HealthSample) -> None:
        self._samples.append(sample)

    def latest(self) -> HealthSample | None:
        return self._samples[-1] if self._samples else None

    def values(self, metric: str) -> list[float]:
        return [s.metrics.get(metric) for s in self._samples]

    def snapshot(self) -> list[HealthSample]:
        return list(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[HealthSample]:
        return iter(list(self._samples))


@dataclass
class Alert:
    """A threshold crossing for a single metric."""

    metric: str
    value: float
    threshold: float
    severity: AlertSeverity
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "value": round(self.value, 4),
            "threshold": self.threshold,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class HealthReport:
    """Point-in-time view of system health produced by ``HealthMonitor``."""

    current_metrics: HealthMetrics
    trends: dict[str, str]
    alerts: list[Alert]
    health_score: float
    generated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_metrics": self.current_metrics.to_dict(),
            "trends": dict(self.trends),
            "alerts": [a.to_dict() for a in self.alerts],
            "health_score": self.health_score,
            "generated_at": self.generated_at.isoformat(),
        }
