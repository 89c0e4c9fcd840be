"""Sandboxed validation of candidate patches.

Every test case runs the patched code in its own short-lived interpreter
(``_sandbox_worker.py``) under:

- a hard wall-clock timeout (the process group is killed when it expires)
- POSIX rlimits on address space, CPU seconds, open files and child processes
- an empty temporary working directory and a minimal environment
- isolated mode (``-I -S``) so neither user site-packages nor the host
  package are importable

Failures of any kind (exceptions, crashes, garbage output, timeouts) are
recorded as failed tests and never raised to the caller.
"""

from __future__ import annotations

import ast
import asyncio
import json
import math
import os
import signal
import statistics
import sys
import tempfile
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from remediator.constants import (
    DEFAULT_INCIDENT_HISTORY_SIZE,
    DEFAULT_REGRESSION_TOLERANCE,
    SANDBOX_DEFAULT_TIMEOUT_MS,
    SANDBOX_MAX_OUTPUT_BYTES,
    SANDBOX_MEMORY_LIMIT_MB,
)
from remediator.logging import get_logger
from remediator.utils import BoundedDict, utcnow

log = get_logger("remediator.healing.sandbox")

WORKER_PATH = Path(__file__).with_name("_sandbox_worker.py")

PASS_RATE_THRESHOLD = 0.8

_SANDBOX_ENV = {
    "LANG": "C.UTF-8",
    "LC_ALL": "C.UTF-8",
    "PYTHONNOUSERSITE": "1",
    "PYTHONPATH": "",
    "PYTHONDONTWRITEBYTECODE": "1",
}


@dataclass
class PatchTestCase:
    """One input/expected-output pair run against a candidate."""

    name: str
    input: Any
    expected_output: Any
    timeout_ms: int = SANDBOX_DEFAULT_TIMEOUT_MS


@dataclass
class TestCaseResult:
    name: str
    passed: bool
    execution_time_ms: float
    error: str | None = None
    output: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "execution_time_ms": round(self.execution_time_ms, 2),
            "error": self.error,
            "output": self.output,
        }


@dataclass(frozen=True)
class LeakFinding:
    """A leak-prone idiom found by ``scan_for_leaks``."""

    kind: str
    name: str
    line: int

    @property
    def key(self) -> tuple[str, str]:
        return self.kind, self.name

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "name": self.name, "line": self.line}


@dataclass
class ValidationResult:
    patch_id: str
    passed: bool
    test_results: list[TestCaseResult]
    pass_rate: float
    performance_regression: bool
    memory_leak_detected: bool
    safety_score: float
    overall_confidence: float
    leak_findings: list[LeakFinding] = field(default_factory=list)
    average_execution_ms: float = 0.0
    validated_at: datetime = field(default_factory=utcnow)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.test_results if not r.passed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "patch_id": self.patch_id,
            "passed": self.passed,
            "test_results": [r.to_dict() for r in self.test_results],
            "pass_rate": round(self.pass_rate, 4),
            "performance_regression": self.performance_regression,
            "memory_leak_detected": self.memory_leak_detected,
            "leak_findings": [f.to_dict() for f in self.leak_findings],
            "safety_score": self.safety_score,
            "overall_confidence": round(self.overall_confidence, 4),
            "average_execution_ms": round(self.average_execution_ms, 2),
            "validated_at": self.validated_at.isoformat(),
        }


@dataclass(frozen=True)
class SandboxLimits:
    memory_limit_mb: int = SANDBOX_MEMORY_LIMIT_MB
    max_output_bytes: int = SANDBOX_MAX_OUTPUT_BYTES
    max_open_files: int = 64


class _OutputTooLarge(Exception):
    pass


def calculate_safety_score(failed: int, regression: bool, leak: bool) -> float:
    return float(max(0, 100 - 10 * failed - 20 * int(regression) - 30 * int(leak)))


def calculate_confidence(pass_rate: float, safety_score: float) -> float:
    return 0.6 * pass_rate + 0.4 * (safety_score / 100.0)


class SandboxValidator:
    """Runs candidate code against test cases in isolated subprocesses."""

    def __init__(
        self,
        limits: SandboxLimits | None = None,
        regression_tolerance: float = DEFAULT_REGRESSION_TOLERANCE,
        entrypoint: str = "main",
        history_size: int = DEFAULT_INCIDENT_HISTORY_SIZE,
    ) -> None:
        self.limits = limits or SandboxLimits()
        self.regression_tolerance = regression_tolerance
        self.entrypoint = entrypoint
        # Both keyed by patch id; the least recently touched patch is evicted.
        self._baselines: BoundedDict = BoundedDict(history_size)
        self._history: BoundedDict = BoundedDict(history_size)
        # Present only while a check for the patch is running or waiting.
        self._baseline_locks: dict[str, asyncio.Lock] = {}
        self._baseline_users: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def validate_patch(
        self,
        patch_id: str,
        original_code: str,
        patched_code: str,
        test_cases: Sequence[PatchTestCase],
    ) -> ValidationResult:
        """Run every test case against ``patched_code`` and aggregate the verdict.

        Leak findings already present in ``original_code`` are not held
        against the patch; only idioms the patch introduces count.
        """
        results = [await self.run_test_case(patched_code, case) for case in test_cases]

        passed_count = sum(1 for r in results if r.passed)
        pass_rate = passed_count / len(results) if results else 0.0
        average_ms = statistics.fmean(r.execution_time_ms for r in results) if results else 0.0

        regression = False
        if results:
            regression = await self.check_performance_regression(patch_id, average_ms)

        existing = {finding.key for finding in scan_for_leaks(original_code)}
        introduced = [f for f in scan_for_leaks(patched_code) if f.key not in existing]
        leak = bool(introduced)

        safety = calculate_safety_score(len(results) - passed_count, regression, leak)
        validation = ValidationResult(
            patch_id=patch_id,
            passed=bool(results)
            and pass_rate >= PASS_RATE_THRESHOLD
            and not regression
            and not leak,
            test_results=results,
            pass_rate=pass_rate,
            performance_regression=regression,
            memory_leak_detected=leak,
            leak_findings=introduced,
            safety_score=safety,
            overall_confidence=calculate_confidence(pass_rate, safety),
            average_execution_ms=average_ms,
        )
        self._history[patch_id] = [*self._history.get(patch_id, []), validation]

        log.info(
            "patch_validated",
            patch_id=patch_id,
            passed=validation.passed,
            pass_rate=round(pass_rate, 4),
            regression=regression,
            leak=leak,
            confidence=round(validation.overall_confidence, 4),
        )
        return validation

    async def run_test_case(self, code: str, test_case: PatchTestCase) -> TestCaseResult:
        started = time.perf_counter()
        try:
            expected = json.loads(json.dumps(test_case.expected_output))
            request = json.dumps(
                {"code": code, "entrypoint": self.entrypoint, "input": test_case.input}
            ).encode()
        except (TypeError, ValueError) as exc:
            return TestCaseResult(
                test_case.name, False, 0.0, error=f"test case is not JSON-serialisable: {exc}"
            )

        try:
            envelope = await self._execute(request, test_case.timeout_ms)
        except TimeoutError:
            elapsed = (time.perf_counter() - started) * 1000
            log.warning("sandbox_timeout", test=test_case.name, timeout_ms=test_case.timeout_ms)
            return TestCaseResult(
                test_case.name, False, elapsed, error=f"timed out after {test_case.timeout_ms}ms"
            )
        except (OSError, ValueError, _OutputTooLarge) as exc:
            elapsed = (time.perf_counter() - started) * 1000
            return TestCaseResult(test_case.name, False, elapsed, error=str(exc) or repr(exc))

        elapsed = (time.perf_counter() - started) * 1000
        if not envelope.get("ok"):
            return TestCaseResult(
                test_case.name, False, elapsed, error=str(envelope.get("error", "unknown error"))
            )

        output = envelope.get("output")
        if output != expected:
            return TestCaseResult(
                test_case.name,
                False,
                elapsed,
                error=f"expected {expected!r}, got {output!r}",
                output=output,
            )
        return TestCaseResult(test_case.name, True, elapsed, output=output)

    async def check_performance_regression(self, patch_id: str, average_ms: float) -> bool:
        """True when ``average_ms`` exceeds the patch baseline by the tolerance.

        The first observation for a patch becomes its baseline and is never
        itself flagged.
        """
        lock = self._baseline_locks.get(patch_id)
        if lock is None:
            lock = self._baseline_locks[patch_id] = asyncio.Lock()
        self._baseline_users[patch_id] = self._baseline_users.get(patch_id, 0) + 1
        try:
            async with lock:
                baseline = self._baselines.get(patch_id)
                if baseline is None:
                    self._baselines[patch_id] = average_ms
                    log.debug("baseline_established", patch_id=patch_id, average_ms=average_ms)
                    return False
                return average_ms > baseline * (1 + self.regression_tolerance)
        finally:
            self._baseline_users[patch_id] -= 1
            if not self._baseline_users[patch_id]:
                del self._baseline_users[patch_id]
                del self._baseline_locks[patch_id]

    def set_baseline(self, patch_id: str, average_ms: float) -> None:
        self._baselines[patch_id] = average_ms

    def get_baseline(self, patch_id: str) -> float | None:
        return self._baselines.get(patch_id)

    def get_validation_history(self, patch_id: str) -> list[ValidationResult]:
        return list(self._history.get(patch_id, []))

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------

    async def _execute(self, request: bytes, timeout_ms: int) -> dict[str, Any]:
        timeout = max(timeout_ms, 1) / 1000.0
        with tempfile.TemporaryDirectory(prefix="remediator-sandbox-") as workdir:
            posix = os.name == "posix"
            proc = await asyncio.create_subprocess_exec(
                sys.executable,
                "-I",
                "-S",
                str(WORKER_PATH),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                cwd=workdir,
                env=dict(_SANDBOX_ENV),
                close_fds=True,
                start_new_session=posix,
                preexec_fn=self._preexec_limits(timeout) if posix else None,
            )
            try:
                raw = await asyncio.wait_for(self._exchange(proc, request), timeout)
            except BaseException:
                _kill_group(proc)
                await proc.wait()
                raise

        if not raw:
            raise ValueError(f"worker produced no result (exit code {proc.returncode})")
        envelope = json.loads(raw)
        if not isinstance(envelope, dict):
            raise ValueError("worker returned a malformed envelope")
        return envelope

    async def _exchange(self, proc: asyncio.subprocess.Process, request: bytes) -> bytes:
        assert proc.stdin is not None and proc.stdout is not None
        try:
            proc.stdin.write(request)
            await proc.stdin.drain()
            proc.stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            # Worker exited before reading its input.
            pass

        chunks: list[bytes] = []
        size = 0
        while chunk := await proc.stdout.read(65536):
            size += len(chunk)
            if size > self.limits.max_output_bytes:
                raise _OutputTooLarge(
                    f"worker output exceeded {self.limits.max_output_bytes} bytes"
                )
            chunks.append(chunk)
        await proc.wait()
        return b"".join(chunks)

    def _preexec_limits(self, timeout: float):
        memory_bytes = self.limits.memory_limit_mb * 1024 * 1024
        cpu_seconds = math.ceil(timeout) + 1
        max_files = self.limits.max_open_files

        def apply_limits() -> None:
            import resource

            for limit in (resource.RLIMIT_AS, resource.RLIMIT_DATA):
                try:
                    resource.setrlimit(limit, (memory_bytes, memory_bytes))
                except (ValueError, OSError):
                    continue
            for limit, value in (
                (resource.RLIMIT_CPU, cpu_seconds),
                (resource.RLIMIT_NOFILE, max_files),
                (resource.RLIMIT_NPROC, 0),
            ):
                try:
                    resource.setrlimit(limit, (value, value))
                except (ValueError, OSError):
                    pass

        return apply_limits


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


# ----------------------------------------------------------------------
# Static leak scan
# ----------------------------------------------------------------------

_TIMER_CALLS = frozenset({"Timer", "call_later", "call_at", "setitimer"})
_LISTENER_ADD = frozenset(
    {"add_listener", "add_handler", "addHandler", "subscribe", "connect", "add_signal_handler"}
)
_LISTENER_REMOVE = frozenset(
    {
        "remove_listener",
        "remove_handler",
        "removeHandler",
        "unsubscribe",
        "disconnect",
        "remove_signal_handler",
    }
)
_CONTAINER_FACTORIES = frozenset({"list", "dict", "set", "defaultdict", "OrderedDict", "deque"})
_GROWTH_METHODS = frozenset(
    {"append", "appendleft", "extend", "add", "update", "insert", "setdefault"}
)
_SHRINK_METHODS = frozenset({"clear", "pop", "popitem", "popleft", "remove", "discard"})


def _call_name(node: ast.expr) -> str | None:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return node.attr
    return None


def _is_unbounded_container(value: ast.expr) -> bool:
    if isinstance(value, (ast.List, ast.Dict, ast.Set)):
        return True
    if isinstance(value, ast.Call) and _call_name(value.func) in _CONTAINER_FACTORIES:
        return not any(kw.arg == "maxlen" for kw in value.keywords)
    return False


def _is_unbounded_cache(decorator: ast.expr) -> bool:
    if _call_name(decorator) == "cache":
        return True
    if isinstance(decorator, ast.Call) and _call_name(decorator.func) == "lru_cache":
        for kw in decorator.keywords:
            if kw.arg == "maxsize":
                return isinstance(kw.value, ast.Constant) and kw.value.value is None
        return bool(decorator.args) and (
            isinstance(decorator.args[0], ast.Constant) and decorator.args[0].value is None
        )
    return False


def scan_for_leaks(code: str) -> list[LeakFinding]:
    """Flag leak-prone idioms in Python source.

    Advisory and deliberately shallow: it looks for timers that are never
    cancelled, listeners that are never removed, module-level containers
    that only grow, and unbounded memoisation. Unparseable code yields no
    findings (the test run reports it instead).
    """
    try:
        tree = ast.parse(code)
    except SyntaxError:
        return []

    findings: list[LeakFinding] = []

    module_containers: dict[str, int] = {}
    for stmt in tree.body:
        if isinstance(stmt, ast.Assign) and _is_unbounded_container(stmt.value):
            for target in stmt.targets:
                if isinstance(target, ast.Name):
                    module_containers[target.id] = stmt.lineno
        elif (
            isinstance(stmt, ast.AnnAssign)
            and stmt.value is not None
            and isinstance(stmt.target, ast.Name)
            and _is_unbounded_container(stmt.value)
        ):
            module_containers[stmt.target.id] = stmt.lineno

    timers: list[tuple[str, int]] = []
    listeners: list[tuple[str, int]] = []
    cancels = False
    removals = False
    grown: set[str] = set()
    shrunk: set[str] = set()

    for node in ast.walk(tree):
        if isinstance(node, ast.Call):
            name = _call_name(node.func)
            if name in _TIMER_CALLS:
                timers.append((name, node.lineno))
            elif name == "cancel":
                cancels = True
            elif name in _LISTENER_ADD:
                listeners.append((name, node.lineno))
            elif name in _LISTENER_REMOVE:
                removals = True

            if isinstance(node.func, ast.Attribute) and isinstance(node.func.value, ast.Name):
                owner = node.func.value.id
                if node.func.attr in _GROWTH_METHODS:
                    grown.add(owner)
                elif node.func.attr in _SHRINK_METHODS:
                    shrunk.add(owner)
        elif isinstance(node, (ast.Assign, ast.AugAssign)):
            targets = node.targets if isinstance(node, ast.Assign) else [node.target]
            for target in targets:
                if isinstance(target, ast.Subscript) and isinstance(target.value, ast.Name):
                    grown.add(target.value.id)
        elif isinstance(node, ast.Delete):
            for target in node.targets:
                if isinstance(target, ast.Subscript) and isinstance(target.value, ast.Name):
                    shrunk.add(target.value.id)
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            for decorator in node.decorator_list:
                if _is_unbounded_cache(decorator):
                    findings.append(LeakFinding("unbounded_cache", node.name, node.lineno))

    if not cancels:
        findings.extend(LeakFinding("timer_without_cancel", n, line) for n, line in timers)
    if not removals:
        findings.extend(LeakFinding("listener_without_removal", n, line) for n, line in listeners)
    for name, line in module_containers.items():
        if name in grown and name not in shrunk:
            findings.append(LeakFinding("unbounded_container", name, line))

    return sorted(findings, key=lambda f: (f.line, f.kind, f.name))
