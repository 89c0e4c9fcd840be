"""Tests for SelfHealingCoordinator.

Detection outcomes and sandbox verdicts are stubbed so each test drives one
branch of the healing cycle; the real components are covered by their own
suites and by the end-to-end integration test.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from remediator.config import Settings
from remediator.healing.coordinator import (
    CoordinatorState,
    HealingSources,
    SelfHealingCoordinator,
)
from remediator.healing.detector import (
    AnomalyDetector,
    AnomalyPattern,
    DetectionResult,
    default_patterns,
)
from remediator.healing.events import HealingEventType
from remediator.healing.monitor import HealthMonitor
from remediator.healing.sandbox import SandboxValidator, ValidationResult

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

ANOMALY = DetectionResult(
    is_anomaly=True,
    confidence=0.9,
    matched_pattern_id="seed-memory-leak",
    inferred_bug_type="memory_leak",
    recommended_action="inspect allocations",
    forest_score=0.8,
    similarity=0.99,
)


def _types(coordinator: SelfHealingCoordinator) -> list[str]:
    return [event.type.value for event in coordinator.events()]


def _validation_stub(passed: bool = True, confidence: float = 0.95) -> AsyncMock:
    async def validate(patch_id, original, patched, test_cases):
        return ValidationResult(
            patch_id=patch_id,
            passed=passed,
            test_results=[],
            pass_rate=1.0 if passed else 0.0,
            performance_regression=False,
            memory_leak_detected=False,
            safety_score=100.0,
            overall_confidence=confidence,
        )

    return AsyncMock(side_effect=validate)


@pytest.fixture()
def monitor(normal_metrics) -> HealthMonitor:
    monitor = HealthMonitor(window_size=12)
    for metrics in normal_metrics:
        monitor.record(metrics)
    return monitor


@pytest.fixture()
def detector() -> AnomalyDetector:
    detector = AnomalyDetector(patterns=default_patterns(), n_trees=20, random_state=3)
    detector.detect = MagicMock(return_value=ANOMALY)
    return detector


@pytest.fixture()
def validator() -> MagicMock:
    validator = MagicMock(spec=SandboxValidator)
    validator.validate_patch = _validation_stub()
    return validator


@pytest.fixture()
def applier() -> AsyncMock:
    applier = AsyncMock()
    applier.apply.return_value = True
    applier.rollback.return_value = True
    return applier


@pytest.fixture()
def make_coordinator(monitor, detector, validator, applier):
    def _make(**kwargs) -> SelfHealingCoordinator:
        sources = kwargs.pop("sources", None) or HealingSources(patch_applier=applier)
        return SelfHealingCoordinator(
            monitor,
            detector=detector,
            validator=validator,
            sources=sources,
            **kwargs,
        )

    return _make


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_seeds_and_trains(self):
        coordinator = SelfHealingCoordinator(HealthMonitor(), healing_interval=60)

        await coordinator.start()
        try:
            assert coordinator.state is CoordinatorState.ACTIVE
            assert coordinator.get_pattern_stats()["total_patterns"] == len(default_patterns())
            assert coordinator.detector.is_trained
        finally:
            await coordinator.stop()

        assert coordinator.state is CoordinatorState.STOPPED

    @pytest.mark.asyncio
    async def test_start_uses_stored_patterns(self):
        stored = [AnomalyPattern([0.1] * 7, bug_occurred=False, id="stored")]
        store = AsyncMock()
        store.load_patterns.return_value = stored
        coordinator = SelfHealingCoordinator(
            HealthMonitor(), sources=HealingSources(pattern_store=store), healing_interval=60
        )

        await coordinator.start()
        await coordinator.stop()

        assert [p.id for p in coordinator.detector.patterns] == ["stored"]
        store.save_patterns.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_store_failure_falls_back_to_seeds(self):
        store = AsyncMock()
        store.load_patterns.side_effect = OSError("disk gone")
        coordinator = SelfHealingCoordinator(
            HealthMonitor(), sources=HealingSources(pattern_store=store), healing_interval=60
        )

        await coordinator.load_patterns()

        assert coordinator.get_pattern_stats()["total_patterns"] == len(default_patterns())

    @pytest.mark.asyncio
    async def test_double_start_is_noop(self):
        coordinator = SelfHealingCoordinator(HealthMonitor(), healing_interval=60)
        await coordinator.start()
        task = coordinator._task

        await coordinator.start()

        assert coordinator._task is task
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self):
        coordinator = SelfHealingCoordinator(HealthMonitor())
        await coordinator.stop()
        assert coordinator.is_running is False

    @pytest.mark.asyncio
    async def test_loop_survives_tick_failure(self):
        coordinator = SelfHealingCoordinator(HealthMonitor(), healing_interval=0.01)
        coordinator.tick = AsyncMock(side_effect=RuntimeError("boom"))

        await coordinator.start()
        await asyncio.sleep(0.05)

        assert coordinator.tick.await_count >= 2
        assert coordinator.is_running
        await coordinator.stop()

    def test_from_settings(self):
        settings = Settings(
            _env_file=None,
            window_size=20,
            healing_interval_seconds=3.0,
            apply_confidence_threshold=0.8,
            heal_unknown_bug_types=True,
            remediation_cooldown_seconds=60,
            incident_history_size=4,
        )

        coordinator = SelfHealingCoordinator.from_settings(settings)

        assert coordinator.monitor.window_size == 20
        assert coordinator.monitor.has_source is False
        assert coordinator._interval == 3.0
        assert coordinator._apply_threshold == 0.8
        assert coordinator._heal_unknown is True
        assert coordinator._cooldown == 60
        assert coordinator._generator._generated.maxlen == 4
        assert coordinator._validator._history.maxlen == 4


# ---------------------------------------------------------------------------
# Healing cycle
# ---------------------------------------------------------------------------


class TestTick:
    @pytest.mark.asyncio
    async def test_no_metrics(self, detector, validator):
        coordinator = SelfHealingCoordinator(
            HealthMonitor(), detector=detector, validator=validator
        )
        assert await coordinator.tick() is None
        assert coordinator.events() == []

    @pytest.mark.asyncio
    async def test_normal_sample_emits_nothing(self, make_coordinator, detector):
        detector.detect.return_value = DetectionResult(is_anomaly=False, confidence=0.0)
        coordinator = make_coordinator()

        result = await coordinator.tick()

        assert result.is_anomaly is False
        assert coordinator.events() == []

    @pytest.mark.asyncio
    async def test_retrains_on_window_before_detecting(self, make_coordinator, detector, monitor):
        coordinator = make_coordinator()
        await coordinator.tick()

        assert detector.is_trained
        judged = detector.detect.call_args[0][0]
        assert judged == monitor.history[-1].metrics.to_feature_vector()

    @pytest.mark.asyncio
    async def test_full_remediation(self, make_coordinator, applier, validator):
        coordinator = make_coordinator()

        await coordinator.tick()

        assert _types(coordinator) == [
            "anomaly_detected",
            "bug_found",
            "patch_generated",
            "patch_validated",
            "patch_applied",
        ]
        applied = coordinator.events(HealingEventType.PATCH_APPLIED)[0].details
        assert applied["success"] is True
        assert applied["strategy"] == "resource_cleanup"
        assert applied["time_to_repair_seconds"] >= 0
        applier.apply.assert_awaited_once()

        patch_id, original, patched, tests = validator.validate_patch.call_args[0]
        assert patch_id == applied["patch_id"]
        assert original == patched
        assert [t.name for t in tests] == ["regression"]

    @pytest.mark.asyncio
    async def test_bug_report_uses_pattern_severity(self, make_coordinator):
        coordinator = make_coordinator()
        await coordinator.tick()
        bug = coordinator.events(HealingEventType.BUG_FOUND)[0].details
        assert bug["bug_type"] == "memory_leak"
        assert bug["severity"] == "high"

    @pytest.mark.asyncio
    async def test_low_detection_confidence_stops_after_anomaly(self, make_coordinator, detector):
        detector.detect.return_value = DetectionResult(
            is_anomaly=True, confidence=0.65, inferred_bug_type="memory_leak"
        )
        coordinator = make_coordinator()

        await coordinator.tick()

        assert _types(coordinator) == ["anomaly_detected"]

    @pytest.mark.asyncio
    async def test_unknown_bug_type_not_actionable_by_default(self, make_coordinator, detector):
        detector.detect.return_value = DetectionResult(
            is_anomaly=True, confidence=0.95, inferred_bug_type="unknown"
        )
        coordinator = make_coordinator()

        await coordinator.tick()

        assert _types(coordinator) == ["anomaly_detected"]

    @pytest.mark.asyncio
    async def test_unknown_bug_type_healed_when_enabled(self, make_coordinator, detector):
        detector.detect.return_value = DetectionResult(
            is_anomaly=True, confidence=0.95, inferred_bug_type="unknown"
        )
        coordinator = make_coordinator(heal_unknown_bug_types=True)

        await coordinator.tick()

        generated = coordinator.events(HealingEventType.PATCH_GENERATED)[0].details
        assert generated["strategy"] == "error_handling"
        assert coordinator.get_healing_stats().patches_applied == 1

    @pytest.mark.asyncio
    async def test_bug_pattern_recorded_and_persisted(self, monitor, detector, validator, applier):
        store = AsyncMock()
        coordinator = SelfHealingCoordinator(
            monitor,
            detector=detector,
            validator=validator,
            sources=HealingSources(patch_applier=applier, pattern_store=store),
        )
        before = detector.pattern_stats()["bug_patterns"]

        await coordinator.tick()

        stats = detector.pattern_stats()
        assert stats["bug_patterns"] >= before
        assert stats["total_patterns"] >= len(default_patterns())
        store.save_patterns.assert_awaited_once()


class TestApplyGate:
    @pytest.mark.asyncio
    async def test_failed_validation_is_not_applied(self, make_coordinator, validator, applier):
        validator.validate_patch = _validation_stub(passed=False)
        coordinator = make_coordinator()

        await coordinator.tick()

        applied = coordinator.events(HealingEventType.PATCH_APPLIED)[0].details
        assert applied["success"] is False
        assert applied["reason"] == "validation failed"
        applier.apply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_threshold_confidence_is_not_applied(self, make_coordinator, validator, applier):
        validator.validate_patch = _validation_stub(confidence=0.7)
        coordinator = make_coordinator()

        await coordinator.tick()

        applied = coordinator.events(HealingEventType.PATCH_APPLIED)[0].details
        assert applied["reason"] == "validation confidence below threshold"
        applier.apply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_applier_configured(self, make_coordinator):
        coordinator = make_coordinator(sources=HealingSources())

        await coordinator.tick()

        applied = coordinator.events(HealingEventType.PATCH_APPLIED)[0].details
        assert applied["success"] is False
        assert applied["reason"] == "no patch applier configured"

    @pytest.mark.asyncio
    async def test_applier_error_recorded(self, make_coordinator, applier):
        applier.apply.side_effect = OSError("read-only filesystem")
        coordinator = make_coordinator()

        await coordinator.tick()

        applied = coordinator.events(HealingEventType.PATCH_APPLIED)[0].details
        assert applied["success"] is False
        assert applied["reason"].startswith("apply failed")

    @pytest.mark.asyncio
    async def test_applier_declines(self, make_coordinator, applier):
        applier.apply.return_value = False
        coordinator = make_coordinator()

        await coordinator.tick()

        applied = coordinator.events(HealingEventType.PATCH_APPLIED)[0].details
        assert applied["reason"] == "applier declined the patch"
        assert coordinator.get_healing_stats().failed_applications == 1

    @pytest.mark.asyncio
    async def test_provider_failure_skips_validation(self, make_coordinator, validator, applier):
        def broken_provider(bug, patch):
            raise FileNotFoundError("no source for svc")

        coordinator = make_coordinator(
            sources=HealingSources(code_provider=broken_provider, patch_applier=applier)
        )

        await coordinator.tick()

        assert "patch_validated" not in _types(coordinator)
        applied = coordinator.events(HealingEventType.PATCH_APPLIED)[0].details
        assert applied["reason"].startswith("validation inputs unavailable")
        validator.validate_patch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_async_providers(self, make_coordinator, validator, applier):
        async def code(bug, patch):
            return "def main(p):\n    return 0\n", "def main(p):\n    return 1\n"

        async def tests(bug, patch):
            return []

        sources = HealingSources(
            code_provider=code, test_case_provider=tests, patch_applier=applier
        )
        coordinator = make_coordinator(sources=sources)

        await coordinator.tick()

        _, original, patched, test_cases = validator.validate_patch.call_args[0]
        assert original.endswith("return 0\n")
        assert patched.endswith("return 1\n")
        assert test_cases == []


# ---------------------------------------------------------------------------
# Rollback and stats
# ---------------------------------------------------------------------------


class TestRollback:
    @pytest.mark.asyncio
    async def test_rollback_unfixes_bug(self, make_coordinator, applier):
        coordinator = make_coordinator()
        await coordinator.tick()
        patch_id = coordinator.events(HealingEventType.PATCH_APPLIED)[0].details["patch_id"]
        assert coordinator.get_healing_stats().bugs_fixed == 1

        assert await coordinator.rollback(patch_id, "latency regression in production") is True

        applier.rollback.assert_awaited_once_with(patch_id)
        stats = coordinator.get_healing_stats()
        assert stats.rollbacks_performed == 1
        assert stats.bugs_fixed == 0

    @pytest.mark.asyncio
    async def test_failed_rollback_is_audited_but_not_counted(self, make_coordinator, applier):
        applier.rollback.side_effect = OSError("gone")
        coordinator = make_coordinator()

        assert await coordinator.rollback("p-1", "manual") is False

        event = coordinator.events(HealingEventType.ROLLBACK)[0]
        assert event.details == {"patch_id": "p-1", "reason": "manual", "success": False}
        assert coordinator.get_healing_stats().rollbacks_performed == 0

    @pytest.mark.asyncio
    async def test_rollback_without_applier(self, make_coordinator):
        coordinator = make_coordinator(sources=HealingSources())
        assert await coordinator.rollback("p-1", "manual") is False


class TestStats:
    @pytest.mark.asyncio
    async def test_rates_after_one_cycle(self, make_coordinator):
        coordinator = make_coordinator()
        await coordinator.tick()

        stats = coordinator.get_healing_stats()

        assert stats.anomalies_detected == 1
        assert stats.bugs_found == 1
        assert stats.detection_rate == 1.0
        assert stats.patch_success_rate == 1.0
        assert stats.meets_targets == {
            "detection_rate": True,
            "patch_success_rate": True,
            "mean_time_to_repair": True,
        }

    @pytest.mark.asyncio
    async def test_event_log_is_bounded(self, make_coordinator):
        coordinator = make_coordinator(event_log_size=3)
        await coordinator.tick()

        assert _types(coordinator) == ["patch_generated", "patch_validated", "patch_applied"]
        assert coordinator.events(limit=1)[0].type is HealingEventType.PATCH_APPLIED

    def test_health_report_passthrough(self, make_coordinator, monitor):
        coordinator = make_coordinator()
        expected = monitor.get_health_report().health_score
        assert coordinator.get_health_report().health_score == expected


# ---------------------------------------------------------------------------
# Listeners and event persistence
# ---------------------------------------------------------------------------


class TestListeners:
    @pytest.mark.asyncio
    async def test_sync_and_async_listeners(self, make_coordinator):
        seen: list[str] = []
        async_seen: list[str] = []

        async def async_listener(event):
            async_seen.append(event.type.value)

        coordinator = make_coordinator()
        coordinator.add_listener(lambda event: seen.append(event.type.value))
        coordinator.add_listener(async_listener)

        await coordinator.tick()

        assert seen == async_seen == _types(coordinator)

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_cycle(self, make_coordinator):
        def broken(event):
            raise ValueError("listener bug")

        coordinator = make_coordinator()
        coordinator.add_listener(broken)

        await coordinator.tick()

        assert coordinator.get_healing_stats().patches_applied == 1

    @pytest.mark.asyncio
    async def test_removed_listener_is_not_called(self, make_coordinator):
        listener = MagicMock()
        coordinator = make_coordinator()
        coordinator.add_listener(listener)
        coordinator.remove_listener(listener)
        coordinator.remove_listener(listener)

        await coordinator.tick()

        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_events_mirrored_to_storage(self, make_coordinator, applier):
        storage = AsyncMock()
        coordinator = make_coordinator(
            sources=HealingSources(patch_applier=applier, event_storage=storage)
        )

        await coordinator.tick()

        assert storage.save_event.await_count == 5

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_break_cycle(self, make_coordinator, applier):
        storage = AsyncMock()
        storage.save_event.side_effect = ConnectionError("db down")
        coordinator = make_coordinator(
            sources=HealingSources(patch_applier=applier, event_storage=storage)
        )

        await coordinator.tick()

        assert len(coordinator.events()) == 5


# ---------------------------------------------------------------------------
# Cooldown
# ---------------------------------------------------------------------------


class TestCooldown:
    @pytest.mark.asyncio
    async def test_persisting_incident_is_remediated_once(self, make_coordinator, applier):
        coordinator = make_coordinator()

        for _ in range(3):
            await coordinator.tick()

        stats = coordinator.get_healing_stats()
        assert stats.anomalies_detected == 1
        assert stats.bugs_found == 1
        assert stats.bugs_fixed == 1
        applier.apply.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_other_bug_type_is_not_held_back(self, make_coordinator, detector):
        coordinator = make_coordinator()
        await coordinator.tick()

        detector.detect.return_value = DetectionResult(
            is_anomaly=True,
            confidence=0.9,
            matched_pattern_id="seed-lock-contention",
            inferred_bug_type="deadlock",
        )
        await coordinator.tick()

        bug_types = [e.details["bug_type"] for e in coordinator.events(HealingEventType.BUG_FOUND)]
        assert bug_types == ["memory_leak", "deadlock"]

    @pytest.mark.asyncio
    async def test_remediates_again_after_cooldown(self, make_coordinator):
        coordinator = make_coordinator(remediation_cooldown=300)
        await coordinator.tick()

        coordinator._last_remediation["memory_leak"] -= 301
        await coordinator.tick()

        assert coordinator.get_healing_stats().bugs_found == 2

    @pytest.mark.asyncio
    async def test_zero_cooldown_disables(self, make_coordinator):
        coordinator = make_coordinator(remediation_cooldown=0)

        await coordinator.tick()
        await coordinator.tick()

        assert coordinator.get_healing_stats().bugs_found == 2

    @pytest.mark.asyncio
    async def test_non_actionable_anomaly_starts_no_cooldown(self, make_coordinator, detector):
        detector.detect.return_value = DetectionResult(
            is_anomaly=True, confidence=0.5, inferred_bug_type="memory_leak"
        )
        coordinator = make_coordinator()
        await coordinator.tick()

        detector.detect.return_value = ANOMALY
        await coordinator.tick()

        assert coordinator.get_healing_stats().bugs_found == 1
        assert coordinator.get_healing_stats().anomalies_detected == 2
