"""Anomaly detection and bug-type inference.

Two cooperating mechanisms score a feature vector:

- an Isolation Forest trained on unlabeled recent vectors
- a labeled pattern library searched by cosine similarity

The library is the durable learned state of the healing loop: it grows
through ``record_pattern`` and is persisted by a pattern store.
"""

from __future__ import annotations

import math
import statistics
import threading
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from remediator.constants import (
    DEFAULT_ANOMALY_THRESHOLD,
    DEFAULT_FOREST_TREES,
    DEFAULT_SIMILARITY_THRESHOLD,
    DEFAULT_Z_THRESHOLD,
)
from remediator.healing.forest import IsolationForest
from remediator.healing.metrics import FEATURE_DIM, METRIC_NAMES
from remediator.logging import get_logger
from remediator.utils import utcnow

log = get_logger("remediator.healing.detector")

# Which metric points at which class of bug. Checked in METRIC_NAMES order.
BUG_TYPE_BY_METRIC: dict[str, str] = {
    "cpu_usage": "infinite_loop",
    "memory_usage": "memory_leak",
    "error_rate": "exception_handling",
    "response_time": "performance_degradation",
    "queue_depth": "resource_exhaustion",
    "deadlock_risk": "deadlock",
}

UNKNOWN_BUG_TYPE = "unknown"

BUG_TYPES: tuple[str, ...] = (*BUG_TYPE_BY_METRIC.values(), UNKNOWN_BUG_TYPE)

RECOMMENDED_ACTIONS: dict[str, str] = {
    "memory_leak": "Check for unclosed connections and large object retention",
    "infinite_loop": "Review loop conditions and recursion base cases",
    "deadlock": "Analyze lock acquisition order and add timeouts",
    "exception_handling": "Add try/except blocks and improve error handling",
    "performance_degradation": "Profile hot paths and optimize algorithms",
    "resource_exhaustion": "Implement connection pooling and rate limiting",
    UNKNOWN_BUG_TYPE: "Conduct full system audit",
}

PATTERN_SEVERITIES = ("low", "medium", "high")


class DimensionError(ValueError):
    """Raised when a feature vector does not have ``FEATURE_DIM`` entries."""


@dataclass
class AnomalyPattern:
    """A labeled feature vector in the pattern library."""

    feature_vector: list[float]
    bug_occurred: bool
    severity: str = "medium"
    frequency: int = 1
    last_seen: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "feature_vector": list(self.feature_vector),
            "severity": self.severity,
            "frequency": self.frequency,
            "last_seen": self.last_seen.isoformat(),
            "bug_occurred": self.bug_occurred,
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnomalyPattern:
        last_seen = data.get("last_seen")
        return cls(
            id=str(data["id"]),
            feature_vector=[float(v) for v in data["feature_vector"]],
            severity=data.get("severity", "medium"),
            frequency=int(data.get("frequency", 1)),
            last_seen=datetime.fromisoformat(last_seen)
            if isinstance(last_seen, str)
            else (last_seen or utcnow()),
            bug_occurred=bool(data["bug_occurred"]),
            label=data.get("label"),
        )


@dataclass
class DetectionResult:
    """Outcome of scoring a single feature vector."""

    is_anomaly: bool
    confidence: float
    matched_pattern_id: str | None = None
    inferred_bug_type: str | None = None
    recommended_action: str | None = None
    forest_score: float = 0.0
    similarity: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_anomaly": self.is_anomaly,
            "confidence": round(self.confidence, 4),
            "matched_pattern_id": self.matched_pattern_id,
            "inferred_bug_type": self.inferred_bug_type,
            "recommended_action": self.recommended_action,
            "forest_score": round(self.forest_score, 4),
            "similarity": round(self.similarity, 4),
        }


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors; 0.0 if either is all zeros."""
    dot = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def default_patterns() -> list[AnomalyPattern]:
    """Seed library used when no persisted patterns exist.

    Vectors are in normalised feature space (see ``FEATURE_SCALES``).
    """
    seeds = [
        ("steady-state", [0.40, 0.50, 0.01, 0.02, 0.025, 0.05, 0.30], False, "low", 100),
        ("idle", [0.10, 0.30, 0.00, 0.01, 0.00, 0.00, 0.10], False, "low", 50),
        ("memory-leak", [0.50, 0.95, 0.20, 0.80, 0.10, 0.10, 0.90], True, "high", 5),
        ("runaway-cpu", [0.98, 0.60, 0.05, 0.60, 0.30, 0.10, 0.90], True, "high", 3),
        ("lock-contention", [0.20, 0.50, 0.10, 0.90, 0.90, 0.90, 0.90], True, "high", 2),
        ("error-storm", [0.50, 0.50, 0.60, 0.20, 0.10, 0.05, 0.90], True, "medium", 4),
        ("overload", [0.95, 0.98, 0.25, 0.80, 0.75, 0.90, 0.95], True, "high", 5),
    ]
    return [
        AnomalyPattern(
            id=f"seed-{label}",
            label=label,
            feature_vector=vector,
            bug_occurred=bug,
            severity=severity,
            frequency=frequency,
        )
        for label, vector, bug, severity, frequency in seeds
    ]


class AnomalyDetector:
    """Scores feature vectors and infers the likely bug type.

    Thread-safe: the pattern library is guarded by a lock so ``detect`` may
    run concurrently with ``record_pattern``; retraining swaps the forest and
    baseline atomically.
    """

    def __init__(
        self,
        patterns: Sequence[AnomalyPattern] | None = None,
        n_trees: int = DEFAULT_FOREST_TREES,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        anomaly_threshold: float = DEFAULT_ANOMALY_THRESHOLD,
        z_threshold: float = DEFAULT_Z_THRESHOLD,
        random_state: int | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._patterns: list[AnomalyPattern] = list(patterns or [])
        self._forest = IsolationForest(FEATURE_DIM, n_trees=n_trees, random_state=random_state)
        self._baseline: list[tuple[float, float]] | None = None
        self.similarity_threshold = similarity_threshold
        self.anomaly_threshold = anomaly_threshold
        self.z_threshold = z_threshold

    # ------------------------------------------------------------------
    # Training and library management
    # ------------------------------------------------------------------

    @property
    def is_trained(self) -> bool:
        return self._forest.is_fitted

    @property
    def patterns(self) -> list[AnomalyPattern]:
        """Copies of the library entries."""
        with self._lock:
            return [replace(p, feature_vector=list(p.feature_vector)) for p in self._patterns]

    def get_pattern(self, pattern_id: str) -> AnomalyPattern | None:
        with self._lock:
            for pattern in self._patterns:
                if pattern.id == pattern_id:
                    return replace(pattern, feature_vector=list(pattern.feature_vector))
        return None

    def load_patterns(self, patterns: Sequence[AnomalyPattern]) -> None:
        for pattern in patterns:
            self._check_dimension(pattern.feature_vector)
        with self._lock:
            self._patterns = list(patterns)
        log.info("patterns_loaded", count=len(patterns))

    def train(self, vectors: Sequence[Sequence[float]]) -> None:
        """Fit the forest and the per-feature baseline on unlabeled vectors."""
        rows = [list(map(float, v)) for v in vectors]
        for row in rows:
            self._check_dimension(row)
        self._forest.fit(rows)

        baseline = []
        for i in range(FEATURE_DIM):
            column = [row[i] for row in rows]
            baseline.append((statistics.fmean(column), statistics.pstdev(column)))
        self._baseline = baseline
        log.debug("detector_trained", samples=len(rows), trees=self._forest.n_trees)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect(self, vector: Sequence[float]) -> DetectionResult:
        """Score a vector; raises ``DimensionError`` for malformed input only."""
        self._check_dimension(vector)
        values = [float(v) for v in vector]

        forest_score = self._forest.score(values) if self._forest.is_fitted else 0.0
        match, similarity = self.find_similar_pattern(values)
        bug_match = match is not None and match.bug_occurred

        confidence = max(forest_score, similarity) if bug_match else forest_score
        if math.isnan(confidence):
            confidence = 0.0

        bug_type: str | None = None
        action: str | None = None
        if bug_match:
            bug_type = self.infer_bug_type(values)
            action = RECOMMENDED_ACTIONS.get(bug_type, "Investigate manually")

        return DetectionResult(
            is_anomaly=forest_score > self.anomaly_threshold or bug_match,
            confidence=min(1.0, max(0.0, confidence)),
            matched_pattern_id=match.id if match else None,
            inferred_bug_type=bug_type,
            recommended_action=action,
            forest_score=forest_score,
            similarity=similarity if match else 0.0,
        )

    def find_similar_pattern(
        self, vector: Sequence[float]
    ) -> tuple[AnomalyPattern | None, float]:
        """Best library match strictly above the similarity threshold.

        Exact ties go to the bug pattern: remediation is gated further
        downstream, a missed detection is not.
        """
        with self._lock:
            candidates = list(self._patterns)

        best: AnomalyPattern | None = None
        best_similarity = self.similarity_threshold
        for pattern in candidates:
            similarity = cosine_similarity(vector, pattern.feature_vector)
            if similarity > best_similarity or (
                best is not None
                and similarity == best_similarity
                and pattern.bug_occurred
                and not best.bug_occurred
            ):
                best, best_similarity = pattern, similarity
        return best, (best_similarity if best else 0.0)

    def infer_bug_type(self, vector: Sequence[float]) -> str:
        """First metric whose z-score against the training baseline exceeds the threshold."""
        baseline = self._baseline
        if baseline is None:
            return UNKNOWN_BUG_TYPE

        for index, metric in enumerate(METRIC_NAMES):
            bug_type = BUG_TYPE_BY_METRIC.get(metric)
            if bug_type is None:
                continue
            mean, stddev = baseline[index]
            deviation = vector[index] - mean
            if stddev == 0:
                z_score = math.inf if deviation > 0 else 0.0
            else:
                z_score = deviation / stddev
            if z_score > self.z_threshold:
                return bug_type
        return UNKNOWN_BUG_TYPE

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def record_pattern(
        self,
        vector: Sequence[float],
        bug_occurred: bool,
        severity: str = "medium",
    ) -> AnomalyPattern:
        """Merge into the closest pattern with the same outcome, or append a new one.

        Returns the merged or newly created library entry.
        """
        self._check_dimension(vector)
        if severity not in PATTERN_SEVERITIES:
            raise ValueError(f"severity must be one of {PATTERN_SEVERITIES}")
        values = [float(v) for v in vector]

        with self._lock:
            # Only entries with the same outcome are merge candidates, so an
            # identical vector with the opposite label never absorbs this one.
            existing: AnomalyPattern | None = None
            best_similarity = -1.0
            for pattern in self._patterns:
                if pattern.bug_occurred != bug_occurred:
                    continue
                similarity = cosine_similarity(values, pattern.feature_vector)
                if similarity > best_similarity:
                    existing, best_similarity = pattern, similarity

            if existing is not None and best_similarity >= self.similarity_threshold:
                existing.frequency += 1
                existing.last_seen = utcnow()
                log.debug("pattern_merged", pattern_id=existing.id, frequency=existing.frequency)
                return existing

            pattern = AnomalyPattern(
                feature_vector=values,
                bug_occurred=bug_occurred,
                severity=severity,
            )
            self._patterns.append(pattern)
            log.info("pattern_recorded", pattern_id=pattern.id, bug_occurred=bug_occurred)
            return pattern

    def pattern_stats(self) -> dict[str, int]:
        with self._lock:
            patterns = list(self._patterns)
        return {
            "total_patterns": len(patterns),
            "bug_patterns": sum(1 for p in patterns if p.bug_occurred),
            "safe_patterns": sum(1 for p in patterns if not p.bug_occurred),
            "high_severity": sum(1 for p in patterns if p.severity == "high"),
        }

    @staticmethod
    def _check_dimension(vector: Sequence[float]) -> None:
        if len(vector) != FEATURE_DIM:
            raise DimensionError(f"Expected {FEATURE_DIM} features, got {len(vector)}")
