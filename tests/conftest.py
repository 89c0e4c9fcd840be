"""Shared fixtures for the remediator test suite."""

from __future__ import annotations

import pytest

from remediator.config import get_settings
from remediator.healing.metrics import HealthMetrics


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Each test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def normal_metrics() -> list[HealthMetrics]:
    """Twelve samples of a healthy service (raw units)."""
    rows = [
        (0.35, 0.45, 1.0, 150.0, 4.0, 0.03),
        (0.42, 0.52, 0.0, 210.0, 6.0, 0.05),
        (0.38, 0.48, 2.0, 180.0, 3.0, 0.02),
        (0.45, 0.55, 1.0, 260.0, 8.0, 0.08),
        (0.31, 0.41, 0.0, 120.0, 2.0, 0.01),
        (0.48, 0.58, 1.0, 290.0, 9.0, 0.09),
        (0.40, 0.50, 2.0, 200.0, 5.0, 0.04),
        (0.36, 0.46, 1.0, 170.0, 4.0, 0.03),
        (0.44, 0.54, 0.0, 240.0, 7.0, 0.06),
        (0.33, 0.43, 1.0, 140.0, 3.0, 0.02),
        (0.46, 0.56, 2.0, 270.0, 8.0, 0.07),
        (0.39, 0.49, 1.0, 190.0, 5.0, 0.04),
    ]
    return [
        HealthMetrics(
            cpu_usage=cpu,
            memory_usage=mem,
            error_rate=err,
            response_time=rt,
            queue_depth=queue,
            deadlock_risk=deadlock,
        )
        for cpu, mem, err, rt, queue, deadlock in rows
    ]


@pytest.fixture
def spike_metrics() -> HealthMetrics:
    """A memory blow-up with an error storm and slow responses."""
    return HealthMetrics(
        cpu_usage=0.40,
        memory_usage=0.97,
        error_rate=22.0,
        response_time=9000.0,
        queue_depth=5.0,
        deadlock_risk=0.05,
    )
