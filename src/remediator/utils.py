"""Shared utilities for remediator."""

import time
from collections import OrderedDict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog


def utcnow() -> datetime:
    """Timezone-aware current time; every audit timestamp goes through here."""
    return datetime.now(UTC)


class BoundedDict(OrderedDict):
    """Mapping that keeps at most ``maxlen`` keys, evicting the least recently set."""

    def __init__(self, maxlen: int) -> None:
        if maxlen < 1:
            raise ValueError("maxlen must be >= 1")
        super().__init__()
        self.maxlen = maxlen

    def __setitem__(self, key: Any, value: Any) -> None:
        super().__setitem__(key, value)
        self.move_to_end(key)
        while len(self) > self.maxlen:
            self.popitem(last=False)


@asynccontextmanager
async def timed_operation(
    name: str,
    log: structlog.stdlib.BoundLogger | None = None,
    **extra: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Time an async block.

    The yielded dict gains ``elapsed_ms`` when the block exits, including when
    it raises. With ``log`` set, one debug event named ``name`` is emitted
    carrying ``duration_ms``, ``failed`` and any ``extra`` context::

        async with timed_operation("sandbox_validation", log=log, patch_id=pid) as t:
            await validator.validate_patch(...)
        t["elapsed_ms"]
    """
    timing: dict[str, Any] = {}
    failed = True
    started = time.perf_counter()
    try:
        yield timing
        failed = False
    finally:
        timing["elapsed_ms"] = round((time.perf_counter() - started) * 1000, 2)
        if log is not None:
            log.debug(name, duration_ms=timing["elapsed_ms"], failed=failed, **extra)
