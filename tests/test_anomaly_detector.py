"""Tests for AnomalyDetector and the pattern library."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from remediator.healing.detector import (
    RECOMMENDED_ACTIONS,
    UNKNOWN_BUG_TYPE,
    AnomalyDetector,
    AnomalyPattern,
    DimensionError,
    cosine_similarity,
    default_patterns,
)
from remediator.healing.monitor import HealthMonitor

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def detector() -> AnomalyDetector:
    return AnomalyDetector(patterns=default_patterns(), n_trees=50, random_state=7)


@pytest.fixture()
def scored_vectors(normal_metrics, spike_metrics) -> tuple[list[list[float]], list[float]]:
    """Normal vectors and the spike vector, scored by a real monitor."""
    monitor = HealthMonitor(window_size=13)
    normal = [monitor.record(m).to_feature_vector() for m in normal_metrics]
    spike = monitor.record(spike_metrics).to_feature_vector()
    return normal, spike


def _seed(label: str) -> AnomalyPattern:
    return next(p for p in default_patterns() if p.label == label)


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([0.2, 0.4], [0.2, 0.4]) == pytest.approx(1.0)

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0.0, 0.0], [0.3, 0.1]) == 0.0

    def test_length_mismatch_raises(self):
        with pytest.raises(ValueError):
            cosine_similarity([0.1], [0.1, 0.2])


class TestFindSimilarPattern:
    def test_best_match_above_threshold(self, detector):
        pattern, similarity = detector.find_similar_pattern(_seed("runaway-cpu").feature_vector)
        assert pattern.id == "seed-runaway-cpu"
        assert similarity == pytest.approx(1.0)

    def test_no_match_below_threshold(self):
        detector = AnomalyDetector(patterns=[AnomalyPattern([1, 0, 0, 0, 0, 0, 0], True)])
        assert detector.find_similar_pattern([0, 1, 0, 0, 0, 0, 0]) == (None, 0.0)

    def test_exact_tie_prefers_bug_pattern(self):
        vector = [0.5] * 7
        safe = AnomalyPattern(list(vector), bug_occurred=False)
        bug = AnomalyPattern(list(vector), bug_occurred=True)
        detector = AnomalyDetector(patterns=[safe, bug])
        pattern, _ = detector.find_similar_pattern(vector)
        assert pattern is bug


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class TestDetect:
    def test_dimension_mismatch_raises(self, detector):
        with pytest.raises(DimensionError):
            detector.detect([0.1, 0.2, 0.3])

    def test_untrained_safe_match_is_not_anomalous(self, detector):
        result = detector.detect(_seed("steady-state").feature_vector)
        assert result.is_anomaly is False
        assert result.confidence == 0.0
        assert result.matched_pattern_id == "seed-steady-state"
        assert result.inferred_bug_type is None

    def test_untrained_bug_match_is_anomalous_with_unknown_type(self, detector):
        result = detector.detect(_seed("memory-leak").feature_vector)
        assert result.is_anomaly is True
        assert result.confidence == pytest.approx(1.0)
        assert result.inferred_bug_type == UNKNOWN_BUG_TYPE
        assert result.recommended_action == RECOMMENDED_ACTIONS[UNKNOWN_BUG_TYPE]

    def test_identical_vectors_distinguished_by_outcome(self):
        vector = [0.3, 0.6, 0.1, 0.2, 0.1, 0.1, 0.5]
        safe_only = AnomalyDetector(patterns=[AnomalyPattern(list(vector), bug_occurred=False)])
        bug_only = AnomalyDetector(patterns=[AnomalyPattern(list(vector), bug_occurred=True)])

        assert safe_only.detect(vector).is_anomaly is False
        assert bug_only.detect(vector).is_anomaly is True

    def test_spike_after_training_on_normal_window(self, detector, scored_vectors):
        normal, spike = scored_vectors
        detector.train(normal)

        result = detector.detect(spike)

        assert result.is_anomaly is True
        assert result.confidence > 0.7
        assert result.matched_pattern_id == "seed-memory-leak"
        assert result.inferred_bug_type == "memory_leak"
        assert result.recommended_action == RECOMMENDED_ACTIONS["memory_leak"]
        assert result.forest_score > 0.5

    def test_normal_vector_matches_safe_pattern(self, detector, scored_vectors):
        normal, _ = scored_vectors
        detector.train(normal)

        result = detector.detect(normal[-1])

        assert result.matched_pattern_id == "seed-steady-state"
        assert result.inferred_bug_type is None

    def test_result_serialises(self, detector):
        data = detector.detect(_seed("overload").feature_vector).to_dict()
        assert data["matched_pattern_id"] == "seed-overload"
        assert data["is_anomaly"] is True


class TestInferBugType:
    def test_unknown_without_baseline(self, detector):
        assert detector.infer_bug_type([0.9] * 7) == UNKNOWN_BUG_TYPE

    def test_first_deviating_metric_wins(self, detector, scored_vectors):
        normal, _ = scored_vectors
        detector.train(normal)
        vector = list(normal[-1])
        vector[3] = 0.9  # response time
        vector[5] = 0.9  # deadlock risk
        assert detector.infer_bug_type(vector) == "performance_degradation"

    def test_drop_below_baseline_is_not_a_bug(self, detector, scored_vectors):
        normal, _ = scored_vectors
        detector.train(normal)
        vector = list(normal[-1])
        vector[1] = 0.0
        assert detector.infer_bug_type(vector) == UNKNOWN_BUG_TYPE

    def test_constant_feature_rise_counts(self):
        detector = AnomalyDetector(n_trees=5, random_state=0)
        detector.train([[0.4, 0.5, 0.0, 0.02, 0.0, 0.05, 0.1]] * 5)
        assert detector.infer_bug_type([0.4, 0.5, 0.0, 0.02, 0.3, 0.05, 0.1]) == (
            "resource_exhaustion"
        )


# ---------------------------------------------------------------------------
# Library management
# ---------------------------------------------------------------------------


class TestRecordPattern:
    def test_merges_into_similar_pattern_with_same_outcome(self, detector):
        vector = [0.52, 0.94, 0.21, 0.78, 0.1, 0.1, 0.92]
        entry = detector.record_pattern(vector, bug_occurred=True, severity="high")

        assert entry.id == "seed-memory-leak"
        assert entry.frequency == 6
        assert detector.pattern_stats()["total_patterns"] == 7

    def test_repeated_new_vector_appends_once(self, detector):
        vector = [0.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0]

        first = detector.record_pattern(vector, bug_occurred=True)
        assert first.frequency == 1
        assert detector.pattern_stats()["total_patterns"] == 8

        second = detector.record_pattern(vector, bug_occurred=True)

        assert second.id == first.id
        assert second.frequency == 2
        assert detector.pattern_stats()["total_patterns"] == 8

    def test_opposite_outcome_appends(self):
        vector = [0.3, 0.6, 0.1, 0.2, 0.1, 0.1, 0.5]
        detector = AnomalyDetector(patterns=[AnomalyPattern(list(vector), bug_occurred=True)])

        entry = detector.record_pattern(vector, bug_occurred=False)

        assert entry.bug_occurred is False
        assert entry.frequency == 1
        assert detector.pattern_stats() == {
            "total_patterns": 2,
            "bug_patterns": 1,
            "safe_patterns": 1,
            "high_severity": 0,
        }

    def test_dissimilar_vector_appends(self, detector):
        detector.record_pattern([0.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0], bug_occurred=True)
        assert detector.pattern_stats()["total_patterns"] == 8

    def test_invalid_severity_rejected(self, detector):
        with pytest.raises(ValueError):
            detector.record_pattern([0.1] * 7, True, severity="catastrophic")

    def test_dimension_checked(self, detector):
        with pytest.raises(DimensionError):
            detector.record_pattern([0.1] * 6, True)

    def test_concurrent_detect_and_record(self, detector):
        def work(i: int) -> None:
            vector = [((i * 7 + j) % 10) / 10 for j in range(7)]
            detector.detect(vector)
            detector.record_pattern(vector, bug_occurred=i % 2 == 0)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(work, range(200)))

        stats = detector.pattern_stats()
        assert stats["total_patterns"] == stats["bug_patterns"] + stats["safe_patterns"]


class TestLibrary:
    def test_seed_stats(self, detector):
        assert detector.pattern_stats() == {
            "total_patterns": 7,
            "bug_patterns": 5,
            "safe_patterns": 2,
            "high_severity": 4,
        }

    def test_patterns_are_copies(self, detector):
        copy = detector.patterns[0]
        copy.feature_vector[0] = 99.0
        copy.frequency = 1000
        assert detector.patterns[0].feature_vector[0] != 99.0
        assert detector.get_pattern(copy.id).frequency != 1000

    def test_load_patterns_checks_dimension(self, detector):
        with pytest.raises(DimensionError):
            detector.load_patterns([AnomalyPattern([0.1, 0.2], True)])

    def test_pattern_dict_round_trip(self):
        pattern = _seed("lock-contention")
        restored = AnomalyPattern.from_dict(pattern.to_dict())
        assert restored == pattern
