"""The closed healing loop.

``SelfHealingCoordinator`` ties the components together::

    HealthMonitor -> AnomalyDetector -> PatchGenerator -> SandboxValidator
        -> PatchApplier (only behind a passed validation)

Every step appends a ``HealingEvent`` to a bounded audit log;
``get_healing_stats()`` derives all effectiveness metrics from that log.

Collaborators the engine cannot know about (where the faulty code lives,
which tests cover it, how patches are materialised, where patterns are
persisted) are injected through ``HealingSources``. Missing collaborators
degrade to safe defaults: an echo regression check for validation and no
application at all.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from remediator.constants import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    DEFAULT_EVENT_LOG_SIZE,
    DEFAULT_HEALING_INTERVAL_SECONDS,
    DEFAULT_REMEDIATION_COOLDOWN_SECONDS,
)
from remediator.healing.detector import (
    UNKNOWN_BUG_TYPE,
    AnomalyDetector,
    DetectionResult,
    default_patterns,
)
from remediator.healing.events import (
    HealingEvent,
    HealingEventLog,
    HealingEventType,
    HealingStats,
)
from remediator.healing.monitor import HealthMonitor, NoMetricsError
from remediator.healing.patches import BugReport, PatchCandidate, PatchGenerator, score_patch
from remediator.healing.sandbox import PatchTestCase, SandboxLimits, SandboxValidator
from remediator.logging import get_logger
from remediator.utils import timed_operation, utcnow

if TYPE_CHECKING:
    from remediator.config import Settings
    from remediator.healing.applier import PatchApplier
    from remediator.healing.metrics import HealthReport
    from remediator.healing.sources import MetricSource
    from remediator.healing.storage import HealingStorage, PatternStore

log = get_logger("remediator.healing.coordinator")

# Samples (excluding the one being judged) needed before the detector is
# retrained on the live window.
MIN_TRAINING_SAMPLES = 8

ECHO_SOURCE = "def main(payload):\n    return payload\n"

CodeProvider = Callable[[BugReport, PatchCandidate], Any]
TestCaseProvider = Callable[[BugReport, PatchCandidate], Any]
EventListener = Callable[[HealingEvent], Awaitable[None] | None]


def echo_code_provider(bug: BugReport, patch: PatchCandidate) -> tuple[str, str]:
    """Original and patched code when no real code source is wired in."""
    return ECHO_SOURCE, ECHO_SOURCE


def regression_test_provider(bug: BugReport, patch: PatchCandidate) -> list[PatchTestCase]:
    return [PatchTestCase(name="regression", input={}, expected_output={})]


class CoordinatorState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


@dataclass
class HealingSources:
    """Optional collaborators for the healing loop.

    Providers may be plain callables or coroutine functions.
    """

    code_provider: CodeProvider = echo_code_provider
    test_case_provider: TestCaseProvider = regression_test_provider
    patch_applier: PatchApplier | None = None
    pattern_store: PatternStore | None = None
    event_storage: HealingStorage | None = None
    listeners: list[EventListener] = field(default_factory=list)


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class SelfHealingCoordinator:
    """Runs the detect, patch, validate and apply cycle on a fixed cadence."""

    def __init__(
        self,
        monitor: HealthMonitor,
        detector: AnomalyDetector | None = None,
        generator: PatchGenerator | None = None,
        validator: SandboxValidator | None = None,
        sources: HealingSources | None = None,
        healing_interval: float = DEFAULT_HEALING_INTERVAL_SECONDS,
        detection_confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        apply_confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        event_log_size: int = DEFAULT_EVENT_LOG_SIZE,
        heal_unknown_bug_types: bool = False,
        remediation_cooldown: float = DEFAULT_REMEDIATION_COOLDOWN_SECONDS,
    ) -> None:
        self._monitor = monitor
        self._detector = detector or AnomalyDetector()
        self._generator = generator or PatchGenerator()
        self._validator = validator or SandboxValidator()
        self._sources = sources or HealingSources()
        self._interval = healing_interval
        self._detection_threshold = detection_confidence_threshold
        self._apply_threshold = apply_confidence_threshold
        self._heal_unknown = heal_unknown_bug_types
        self._cooldown = remediation_cooldown
        # bug type -> monotonic time of the last remediation attempt
        self._last_remediation: dict[str, float] = {}
        self._events = HealingEventLog(event_log_size)
        self._listeners: list[EventListener] = list(self._sources.listeners)
        self._state = CoordinatorState.STOPPED
        self._task: asyncio.Task[None] | None = None
        self._tick_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        source: MetricSource | None = None,
        sources: HealingSources | None = None,
    ) -> SelfHealingCoordinator:
        monitor = HealthMonitor(
            source=source,
            window_size=settings.window_size,
            sampling_interval=settings.sampling_interval_seconds,
        )
        detector = AnomalyDetector(
            n_trees=settings.forest_trees,
            similarity_threshold=settings.similarity_threshold,
        )
        validator = SandboxValidator(
            limits=SandboxLimits(
                memory_limit_mb=settings.sandbox_memory_limit_mb,
                max_output_bytes=settings.sandbox_max_output_bytes,
            ),
            regression_tolerance=settings.regression_tolerance,
            history_size=settings.incident_history_size,
        )
        return cls(
            monitor,
            detector=detector,
            generator=PatchGenerator(history_size=settings.incident_history_size),
            validator=validator,
            sources=sources,
            healing_interval=settings.healing_interval_seconds,
            detection_confidence_threshold=settings.detection_confidence_threshold,
            apply_confidence_threshold=settings.apply_confidence_threshold,
            event_log_size=settings.event_log_size,
            heal_unknown_bug_types=settings.heal_unknown_bug_types,
            remediation_cooldown=settings.remediation_cooldown_seconds,
        )

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is CoordinatorState.ACTIVE

    @property
    def monitor(self) -> HealthMonitor:
        return self._monitor

    @property
    def detector(self) -> AnomalyDetector:
        return self._detector

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._state is not CoordinatorState.STOPPED:
            log.debug("coordinator_already_running", state=self._state.value)
            return

        self._state = CoordinatorState.STARTING
        try:
            await self.load_patterns()
            self._train_on_safe_patterns()
            if self._monitor.has_source:
                await self._monitor.start()
            self._task = asyncio.create_task(self._healing_loop(), name="healing-loop")
        except Exception:
            self._state = CoordinatorState.STOPPED
            raise

        self._state = CoordinatorState.ACTIVE
        log.info(
            "coordinator_started",
            healing_interval=self._interval,
            patterns=self._detector.pattern_stats()["total_patterns"],
        )

    async def stop(self) -> None:
        if self._state is not CoordinatorState.ACTIVE:
            return

        self._state = CoordinatorState.STOPPING
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self._monitor.stop()
        await self._persist_patterns()
        self._state = CoordinatorState.STOPPED
        log.info("coordinator_stopped")

    async def load_patterns(self) -> None:
        """Restore the pattern library, seeding defaults when nothing is stored."""
        patterns = []
        store = self._sources.pattern_store
        if store is not None:
            try:
                patterns = await store.load_patterns()
            except Exception as exc:
                log.warning("pattern_store_load_failed", error=str(exc))
        if not patterns:
            patterns = default_patterns()
            log.info("pattern_library_seeded", count=len(patterns))
        self._detector.load_patterns(patterns)

    def _train_on_safe_patterns(self) -> None:
        safe = [p.feature_vector for p in self._detector.patterns if not p.bug_occurred]
        if safe:
            self._detector.train(safe)

    async def _healing_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("healing_tick_failed")

    # ------------------------------------------------------------------
    # The healing cycle
    # ------------------------------------------------------------------

    async def tick(self) -> DetectionResult | None:
        """Run one healing cycle. Returns the detection, or None without metrics."""
        async with self._tick_lock:
            return await self._tick()

    async def _tick(self) -> DetectionResult | None:
        try:
            report = self._monitor.get_health_report()
        except NoMetricsError:
            log.debug("healing_tick_skipped", reason="no metrics")
            return None

        history = self._monitor.history
        incident_start = history[-1].timestamp if history else utcnow()
        vector = report.current_metrics.to_feature_vector()

        training = [sample.metrics.to_feature_vector() for sample in history[:-1]]
        if len(training) >= MIN_TRAINING_SAMPLES:
            self._detector.train(training)

        result = self._detector.detect(vector)
        if not result.is_anomaly:
            return result

        actionable = result.confidence > self._detection_threshold and self._is_actionable(
            result.inferred_bug_type
        )
        # An incident already being remediated is not reported again.
        if actionable and self._in_cooldown(result.inferred_bug_type):
            log.debug(
                "remediation_cooldown",
                bug_type=result.inferred_bug_type,
                cooldown_seconds=self._cooldown,
            )
            return result

        await self._emit(
            HealingEventType.ANOMALY_DETECTED,
            confidence=round(result.confidence, 4),
            forest_score=round(result.forest_score, 4),
            matched_pattern_id=result.matched_pattern_id,
            inferred_bug_type=result.inferred_bug_type,
            health_score=report.health_score,
        )

        if not actionable:
            log.debug(
                "anomaly_not_actionable",
                confidence=round(result.confidence, 4),
                bug_type=result.inferred_bug_type,
            )
            return result

        self._last_remediation[result.inferred_bug_type] = time.monotonic()
        bug =self._build_bug_report(result, report.current_metrics.to_dict(), incident_start)
        await self._emit(
            HealingEventType.BUG_FOUND,
            bug_id=bug.id,
            bug_type=bug.bug_type,
            severity=bug.severity,
            recommended_action=result.recommended_action,
        )
        self._detector.record_pattern(vector, True, severity=bug.severity)
        await self._persist_patterns()

        await self._remediate(bug)
        return result

    def _is_actionable(self, bug_type: str | None) -> bool:
        if bug_type is None:
            return False
        return bug_type != UNKNOWN_BUG_TYPE or self._heal_unknown

    def _in_cooldown(self, bug_type: str) -> bool:
        if self._cooldown <= 0:
            return False
        last = self._last_remediation.get(bug_type)
        return last is not None and time.monotonic() - last < self._cooldown

    def _build_bug_report(
        self,
        result: DetectionResult,
        metrics: dict[str, float],
        detected_at: datetime,
    ) -> BugReport:
        severity = "medium"
        if result.matched_pattern_id:
            pattern = self._detector.get_pattern(result.matched_pattern_id)
            if pattern is not None:
                severity = pattern.severity
        bug_type = result.inferred_bug_type or UNKNOWN_BUG_TYPE
        return BugReport(
            message=f"Anomaly consistent with {bug_type.replace('_', ' ')}",
            bug_type=bug_type,
            severity=severity,
            detected_at=detected_at,
            metrics=metrics,
        )

    async def _remediate(self, bug: BugReport) -> None:
        candidates = self._generator.generate_patches(bug)
        patch = self._generator.select_best_patch(candidates)
        if patch is None:
            await self._emit(
                HealingEventType.PATCH_GENERATED,
                bug_id=bug.id,
                aborted=True,
                reason="no candidate patch",
            )
            return

        await self._emit(
            HealingEventType.PATCH_GENERATED,
            bug_id=bug.id,
            patch_id=patch.id,
            strategy=patch.strategy.value,
            confidence=patch.confidence,
            score=score_patch(patch),
            candidates=len(candidates),
        )

        try:
            original, patched = await _resolve(self._sources.code_provider(bug, patch))
            test_cases: Sequence[PatchTestCase] = list(
                await _resolve(self._sources.test_case_provider(bug, patch))
            )
        except Exception as exc:
            log.warning("validation_inputs_unavailable", patch_id=patch.id, error=str(exc))
            await self._record_failure(bug, patch, f"validation inputs unavailable: {exc}")
            return

        async with timed_operation("sandbox_validation", log=log, patch_id=patch.id):
            validation = await self._validator.validate_patch(
                patch.id, original, patched, test_cases
            )
        await self._emit(
            HealingEventType.PATCH_VALIDATED,
            bug_id=bug.id,
            patch_id=patch.id,
            passed=validation.passed,
            pass_rate=round(validation.pass_rate, 4),
            safety_score=validation.safety_score,
            overall_confidence=round(validation.overall_confidence, 4),
            performance_regression=validation.performance_regression,
            memory_leak_detected=validation.memory_leak_detected,
        )

        if not validation.passed:
            await self._record_failure(bug, patch, "validation failed")
            return
        if validation.overall_confidence <= self._apply_threshold:
            await self._record_failure(bug, patch, "validation confidence below threshold")
            return
        applier = self._sources.patch_applier
        if applier is None:
            await self._record_failure(bug, patch, "no patch applier configured")
            return

        try:
            applied = await self._generator.apply_patch(
                patch, bug, validation, applier, min_confidence=self._apply_threshold
            )
        except Exception as exc:
            log.warning("patch_apply_failed", patch_id=patch.id, error=str(exc))
            await self._record_failure(bug, patch, f"apply failed: {exc}")
            return
        if not applied:
            await self._record_failure(bug, patch, "applier declined the patch")
            return

        time_to_repair = (utcnow() - bug.detected_at).total_seconds()
        await self._emit(
            HealingEventType.PATCH_APPLIED,
            bug_id=bug.id,
            patch_id=patch.id,
            strategy=patch.strategy.value,
            success=True,
            time_to_repair_seconds=round(time_to_repair, 3),
        )

    async def _record_failure(self, bug: BugReport, patch: PatchCandidate, reason: str) -> None:
        await self._emit(
            HealingEventType.PATCH_APPLIED,
            bug_id=bug.id,
            patch_id=patch.id,
            strategy=patch.strategy.value,
            success=False,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self, patch_id: str, reason: str) -> bool:
        """Revert an applied patch that regressed outside sandbox coverage."""
        applier = self._sources.patch_applier
        success = False
        if applier is None:
            log.warning("rollback_without_applier", patch_id=patch_id)
        else:
            try:
                success = await applier.rollback(patch_id)
            except Exception as exc:
                log.warning("rollback_failed", patch_id=patch_id, error=str(exc))

        await self._emit(
            HealingEventType.ROLLBACK,
            patch_id=patch_id,
            reason=reason,
            success=success,
        )
        return success

    # ------------------------------------------------------------------
    # Events and listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit(self, event_type: HealingEventType, **details: Any) -> HealingEvent:
        event = HealingEvent(type=event_type, details=details)
        self._events.append(event)
        log.info(event_type.value, event_id=event.id, **details)

        for listener in list(self._listeners):
            try:
                await _resolve(listener(event))
            except Exception as exc:
                log.warning("event_listener_failed", event_type=event_type.value, error=str(exc))

        storage = self._sources.event_storage
        if storage is not None:
            try:
                await storage.save_event(event)
            except Exception as exc:
                log.warning("event_persist_failed", event_id=event.id, error=str(exc))
        return event

    async def _persist_patterns(self) -> None:
        store = self._sources.pattern_store
        if store is None:
            return
        try:
            await store.save_patterns(self._detector.patterns)
        except Exception as exc:
            log.warning("pattern_store_save_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def events(
        self,
        event_type: HealingEventType | None = None,
        limit: int | None = None,
    ) -> list[HealingEvent]:
        return self._events.filter(event_type=event_type, limit=limit)

    def get_healing_stats(self) -> HealingStats:
        return HealingStats.from_events(self._events.snapshot())

    def get_health_report(self) -> HealthReport:
        return self._monitor.get_health_report()

    def get_pattern_stats(self) -> dict[str, int]:
        return self._detector.pattern_stats()
