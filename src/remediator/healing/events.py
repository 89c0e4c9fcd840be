"""Healing audit trail and the statistics derived from it.

The event log is the single source of truth for effectiveness metrics:
``HealingStats`` is always recomputed from the retained events and never
tracked separately.
"""

from __future__ import annotations

import statistics
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from remediator.constants import (
    BUG_DETECTION_TARGET,
    DEFAULT_EVENT_LOG_SIZE,
    MTTR_TARGET_SECONDS,
    PATCH_SUCCESS_TARGET,
)
from remediator.utils import utcnow


class HealingEventType(Enum):
    ANOMALY_DETECTED = "anomaly_detected"
    BUG_FOUND = "bug_found"
    PATCH_GENERATED = "patch_generated"
    PATCH_VALIDATED = "patch_validated"
    PATCH_APPLIED = "patch_applied"
    ROLLBACK = "rollback"


@dataclass
class HealingEvent:
    """One step of the healing loop."""

    type: HealingEventType
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealingEvent:
        timestamp = data.get("timestamp")
        return cls(
            id=str(data["id"]),
            type=HealingEventType(data["type"]),
            details=dict(data.get("details") or {}),
            timestamp=datetime.fromisoformat(timestamp)
            if isinstance(timestamp, str)
            else (timestamp or utcnow()),
        )


class HealingEventLog:
    """Bounded append-only event buffer; the oldest events are dropped first."""

    def __init__(self, maxlen: int = DEFAULT_EVENT_LOG_SIZE) -> None:
        self._events: deque[HealingEvent] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    @property
    def maxlen(self) -> int:
        return self._events.maxlen or 0

    def append(self, event: HealingEvent) -> None:
        with self._lock:
            self._events.append(event)

    def snapshot(self) -> list[HealingEvent]:
        with self._lock:
            return list(self._events)

    def filter(
        self,
        event_type: HealingEventType | None = None,
        limit: int | None = None,
    ) -> list[HealingEvent]:
        """Events oldest first, optionally of one type and limited to the newest N."""
        events = self.snapshot()
        if event_type is not None:
            events = [e for e in events if e.type is event_type]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def __len__(self) -> int:
        return len(self._events)


@dataclass
class HealingStats:
    total_events: int = 0
    anomalies_detected: int = 0
    bugs_found: int = 0
    patches_generated: int = 0
    patches_validated: int = 0
    patches_applied: int = 0
    failed_applications: int = 0
    rollbacks_performed: int = 0
    bugs_fixed: int = 0
    detection_rate: float = 0.0
    patch_success_rate: float = 0.0
    mean_time_to_repair_seconds: float = 0.0

    @classmethod
    def from_events(cls, events: list[HealingEvent]) -> HealingStats:
        counts = {event_type: 0 for event_type in HealingEventType}
        applied_patches: set[str] = set()
        rolled_back: set[str] = set()
        repair_times: list[float] = []
        failed = 0
        rollbacks = 0

        for event in events:
            counts[event.type] += 1
            if event.type is HealingEventType.PATCH_APPLIED:
                if event.details.get("success"):
                    patch_id = event.details.get("patch_id")
                    if patch_id:
                        applied_patches.add(patch_id)
                    ttr = event.details.get("time_to_repair_seconds")
                    if isinstance(ttr, (int, float)):
                        repair_times.append(float(ttr))
                else:
                    failed += 1
            elif event.type is HealingEventType.ROLLBACK and event.details.get("success", True):
                rollbacks += 1
                patch_id = event.details.get("patch_id")
                if patch_id:
                    rolled_back.add(patch_id)

        anomalies = counts[HealingEventType.ANOMALY_DETECTED]
        bugs = counts[HealingEventType.BUG_FOUND]
        validated = counts[HealingEventType.PATCH_VALIDATED]
        applied = counts[HealingEventType.PATCH_APPLIED] - failed

        return cls(
            total_events=len(events),
            anomalies_detected=anomalies,
            bugs_found=bugs,
            patches_generated=counts[HealingEventType.PATCH_GENERATED],
            patches_validated=validated,
            patches_applied=applied,
            failed_applications=failed,
            rollbacks_performed=rollbacks,
            bugs_fixed=len(applied_patches - rolled_back),
            detection_rate=bugs / anomalies if anomalies else 0.0,
            patch_success_rate=applied / validated if validated else 0.0,
            mean_time_to_repair_seconds=statistics.fmean(repair_times) if repair_times else 0.0,
        )

    @property
    def meets_targets(self) -> dict[str, bool]:
        return {
            "detection_rate": self.detection_rate >= BUG_DETECTION_TARGET,
            "patch_success_rate": self.patch_success_rate >= PATCH_SUCCESS_TARGET,
            "mean_time_to_repair": self.patches_applied > 0
            and self.mean_time_to_repair_seconds <= MTTR_TARGET_SECONDS,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_events": self.total_events,
            "anomalies_detected": self.anomalies_detected,
            "bugs_found": self.bugs_found,
            "patches_generated": self.patches_generated,
            "patches_validated": self.patches_validated,
            "patches_applied": self.patches_applied,
            "failed_applications": self.failed_applications,
            "rollbacks_performed": self.rollbacks_performed,
            "bugs_fixed": self.bugs_fixed,
            "detection_rate": round(self.detection_rate, 4),
            "patch_success_rate": round(self.patch_success_rate, 4),
            "mean_time_to_repair_seconds": round(self.mean_time_to_repair_seconds, 3),
            "meets_targets": self.meets_targets,
        }
