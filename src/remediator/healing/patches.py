"""Rule-driven patch synthesis for detected bugs.

Each bug type maps to two fixed repair strategies. A strategy carries a
prior (confidence, impact, risk) that does not depend on the individual bug,
and renders a unified diff anchored at the bug's location. Candidates are
ranked by ``score_patch``; applying a candidate is delegated to a
``PatchApplier`` and only allowed behind a passed sandbox validation.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from remediator.constants import DEFAULT_CONFIDENCE_THRESHOLD, DEFAULT_INCIDENT_HISTORY_SIZE
from remediator.logging import get_logger
from remediator.utils import BoundedDict, utcnow

if TYPE_CHECKING:
    from remediator.healing.applier import PatchApplier
    from remediator.healing.sandbox import ValidationResult

log = get_logger("remediator.healing.patches")


class PatchStrategy(Enum):
    """Repair strategies known to the generator."""

    NULL_CHECK = "null_check"
    ERROR_HANDLING = "error_handling"
    RESOURCE_CLEANUP = "resource_cleanup"
    TIMEOUT_GUARD = "timeout_guard"
    RACE_CONDITION_FIX = "race_condition_fix"
    LOGIC_CORRECTION = "logic_correction"
    MEMORY_LEAK_FIX = "memory_leak_fix"


STRATEGIES_BY_BUG_TYPE: dict[str, tuple[PatchStrategy, PatchStrategy]] = {
    "null_pointer": (PatchStrategy.NULL_CHECK, PatchStrategy.ERROR_HANDLING),
    "memory_leak": (PatchStrategy.MEMORY_LEAK_FIX, PatchStrategy.RESOURCE_CLEANUP),
    "deadlock": (PatchStrategy.TIMEOUT_GUARD, PatchStrategy.RACE_CONDITION_FIX),
    "infinite_loop": (PatchStrategy.TIMEOUT_GUARD, PatchStrategy.LOGIC_CORRECTION),
    "exception_handling": (PatchStrategy.ERROR_HANDLING, PatchStrategy.NULL_CHECK),
    "performance_degradation": (PatchStrategy.RESOURCE_CLEANUP, PatchStrategy.LOGIC_CORRECTION),
    "resource_exhaustion": (PatchStrategy.RESOURCE_CLEANUP, PatchStrategy.TIMEOUT_GUARD),
}

FALLBACK_STRATEGIES: tuple[PatchStrategy, PatchStrategy] = (
    PatchStrategy.ERROR_HANDLING,
    PatchStrategy.NULL_CHECK,
)

IMPACT_BONUS = {"high": 0.1, "medium": 0.05, "low": 0.0}
RISK_PENALTY = {"high": 0.15, "medium": 0.05, "low": 0.0}
PREFERRED_STRATEGY_BONUS = 0.1
PREFERRED_STRATEGIES = frozenset({PatchStrategy.ERROR_HANDLING, PatchStrategy.NULL_CHECK})


@dataclass(frozen=True)
class _StrategyProfile:
    description: str
    confidence: float
    impact: str
    risk: str


_PROFILES: dict[PatchStrategy, _StrategyProfile] = {
    PatchStrategy.NULL_CHECK: _StrategyProfile(
        "Add a None check before attribute access", 0.75, "medium", "low"
    ),
    PatchStrategy.ERROR_HANDLING: _StrategyProfile(
        "Wrap the failing call in try/except with logged recovery", 0.80, "high", "low"
    ),
    PatchStrategy.RESOURCE_CLEANUP: _StrategyProfile(
        "Release resources deterministically with a context manager", 0.70, "high", "medium"
    ),
    PatchStrategy.TIMEOUT_GUARD: _StrategyProfile(
        "Bound the blocking loop with a monotonic deadline", 0.72, "medium", "low"
    ),
    PatchStrategy.RACE_CONDITION_FIX: _StrategyProfile(
        "Serialise shared-state updates behind a lock", 0.65, "high", "high"
    ),
    PatchStrategy.LOGIC_CORRECTION: _StrategyProfile(
        "Correct the boundary comparison at the failing branch", 0.60, "high", "medium"
    ),
    PatchStrategy.MEMORY_LEAK_FIX: _StrategyProfile(
        "Bound the growing cache and evict the oldest entries", 0.68, "high", "medium"
    ),
}


class PatchGateError(RuntimeError):
    """Raised when a patch is applied without a passing validation."""


@dataclass
class BugReport:
    """A bug inferred from an anomaly, the input to patch generation."""

    message: str
    bug_type: str
    severity: str = "medium"
    location: str = "unknown:0"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    detected_at: datetime = field(default_factory=utcnow)
    stack_trace: list[str] = field(default_factory=list)
    metrics: dict[str, float] = field(default_factory=dict)

    @property
    def file_path(self) -> str:
        path, _, _ = self.location.rpartition(":")
        return path or self.location

    @property
    def line_number(self) -> int:
        path, _, line = self.location.rpartition(":")
        if path and line.isdigit():
            return int(line)
        return 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "message": self.message,
            "location": self.location,
            "bug_type": self.bug_type,
            "severity": self.severity,
            "detected_at": self.detected_at.isoformat(),
            "stack_trace": list(self.stack_trace),
            "metrics": dict(self.metrics),
        }


@dataclass
class PatchCandidate:
    """One proposed fix for a bug."""

    bug_id: str
    description: str
    diff: str
    strategy: PatchStrategy
    confidence: float
    estimated_impact: str
    risk_level: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "bug_id": self.bug_id,
            "description": self.description,
            "diff": self.diff,
            "strategy": self.strategy.value,
            "confidence": self.confidence,
            "estimated_impact": self.estimated_impact,
            "risk_level": self.risk_level,
        }


def score_patch(candidate: PatchCandidate) -> float:
    """Rank score: prior confidence adjusted for impact, risk and strategy."""
    score = candidate.confidence
    score += IMPACT_BONUS.get(candidate.estimated_impact, 0.0)
    score -= RISK_PENALTY.get(candidate.risk_level, 0.0)
    if candidate.strategy in PREFERRED_STRATEGIES:
        score += PREFERRED_STRATEGY_BONUS
    return round(score, 6)


class PatchGenerator:
    """Synthesises and ranks patch candidates for bug reports."""

    def __init__(self, history_size: int = DEFAULT_INCIDENT_HISTORY_SIZE) -> None:
        # Oldest bug ids are evicted first.
        self._generated: BoundedDict = BoundedDict(history_size)

    def generate_patches(self, bug: BugReport) -> list[PatchCandidate]:
        strategies = STRATEGIES_BY_BUG_TYPE.get(bug.bug_type, FALLBACK_STRATEGIES)
        candidates = [self._build_candidate(bug, strategy) for strategy in strategies]
        self._generated[bug.id] = candidates
        log.info(
            "patches_generated",
            bug_id=bug.id,
            bug_type=bug.bug_type,
            strategies=[s.value for s in strategies],
        )
        return candidates

    def select_best_patch(self, candidates: Sequence[PatchCandidate]) -> PatchCandidate | None:
        if not candidates:
            return None
        return min(candidates, key=lambda c: (-score_patch(c), c.strategy.value, c.id))

    def get_patch_history(self, bug_id: str) -> list[PatchCandidate]:
        return list(self._generated.get(bug_id, []))

    async def apply_patch(
        self,
        patch: PatchCandidate,
        bug: BugReport,
        validation: ValidationResult,
        applier: PatchApplier,
        min_confidence: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> bool:
        """Hand a validated patch to the applier.

        Raises:
            PatchGateError: validation belongs to another patch, did not
                pass, or is not confident enough.
        """
        if validation.patch_id != patch.id:
            raise PatchGateError(
                f"validation {validation.patch_id} does not belong to patch {patch.id}"
            )
        if not validation.passed or validation.overall_confidence <= min_confidence:
            raise PatchGateError(
                f"patch {patch.id} failed the validation gate "
                f"(passed={validation.passed}, confidence={validation.overall_confidence:.2f})"
            )

        log.info(
            "applying_patch",
            patch_id=patch.id,
            strategy=patch.strategy.value,
            risk_level=patch.risk_level,
        )
        return await applier.apply(patch, bug)

    # ------------------------------------------------------------------
    # Candidate construction
    # ------------------------------------------------------------------

    def _build_candidate(self, bug: BugReport, strategy: PatchStrategy) -> PatchCandidate:
        profile = _PROFILES[strategy]
        return PatchCandidate(
            bug_id=bug.id,
            description=profile.description,
            diff=render_diff(strategy, bug.file_path, max(bug.line_number, 1)),
            strategy=strategy,
            confidence=profile.confidence,
            estimated_impact=profile.impact,
            risk_level=profile.risk,
        )


def render_diff(strategy: PatchStrategy, path: str, line: int) -> str:
    """Unified diff template for a strategy, anchored at ``path:line``."""
    old, new = _HUNKS[strategy]
    header = f"--- a/{path}\n+++ b/{path}\n@@ -{line},{len(old)} +{line},{len(new)} @@\n"
    body = [f"-{text}" for text in old] + [f"+{text}" for text in new]
    return header + "\n".join(body) + "\n"


_HUNKS: dict[PatchStrategy, tuple[list[str], list[str]]] = {
    PatchStrategy.NULL_CHECK: (
        ["    result = data.value"],
        [
            "    if data is None:",
            '        raise ValueError("data is required")',
            "    result = data.value",
        ],
    ),
    PatchStrategy.ERROR_HANDLING: (
        ["    result = process_item(item)"],
        [
            "    try:",
            "        result = process_item(item)",
            "    except Exception:",
            '        log.exception("process_item_failed")',
            "        return None",
        ],
    ),
    PatchStrategy.RESOURCE_CLEANUP: (
        [
            "    conn = create_connection()",
            "    return conn.query(sql)",
        ],
        [
            "    with closing(create_connection()) as conn:",
            "        return conn.query(sql)",
        ],
    ),
    PatchStrategy.TIMEOUT_GUARD: (
        ["    while condition():"],
        [
            "    deadline = time.monotonic() + 5.0",
            "    while condition():",
            "        if time.monotonic() > deadline:",
            '            raise TimeoutError("loop exceeded 5s")',
        ],
    ),
    PatchStrategy.RACE_CONDITION_FIX: (
        ["    shared_resource.update(data)"],
        [
            "    with self._lock:",
            "        shared_resource.update(data)",
        ],
    ),
    PatchStrategy.LOGIC_CORRECTION: (
        ["    if value >= threshold:"],
        ["    if value > threshold:"],
    ),
    PatchStrategy.MEMORY_LEAK_FIX: (
        ["    cache[key] = value"],
        [
            "    cache[key] = value",
            "    while len(cache) > MAX_CACHE_SIZE:",
            "        cache.pop(next(iter(cache)))",
        ],
    ),
}
