"""Delegated, reversible patch application.

The engine never edits running code itself. An accepted patch is handed to
a ``PatchApplier``; the default ``PatchQueue`` stages it on disk for
external tooling (a deploy pipeline, a reviewer) to materialise.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from remediator.logging import get_logger
from remediator.utils import utcnow

if TYPE_CHECKING:
    from remediator.healing.patches import BugReport, PatchCandidate

log = get_logger("remediator.healing.applier")


@runtime_checkable
class PatchApplier(Protocol):
    async def apply(self, patch: PatchCandidate, bug: BugReport) -> bool: ...

    async def rollback(self, patch_id: str) -> bool: ...


class PatchQueue:
    """Stages accepted patches as ``<id>.diff`` + ``<id>.json`` pairs.

    Applying a patch that is already staged is a successful no-op, so
    retries are safe. Rolling back moves the pair under ``rolled_back/``
    rather than deleting it.
    """

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)
        self._rolled_back = self._directory / "rolled_back"
        self._lock = asyncio.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def is_staged(self, patch_id: str) -> bool:
        return (self._directory / f"{patch_id}.json").exists()

    def staged_patch_ids(self) -> list[str]:
        if not self._directory.exists():
            return []
        return sorted(p.stem for p in self._directory.glob("*.json"))

    async def apply(self, patch: PatchCandidate, bug: BugReport) -> bool:
        async with self._lock:
            if self.is_staged(patch.id):
                log.info("patch_already_staged", patch_id=patch.id)
                return True
            manifest = {
                "patch": patch.to_dict(),
                "bug": bug.to_dict(),
                "staged_at": utcnow().isoformat(),
            }
            await asyncio.to_thread(self._stage, patch.id, patch.diff, manifest)
        log.info("patch_staged", patch_id=patch.id, directory=str(self._directory))
        return True

    async def rollback(self, patch_id: str) -> bool:
        async with self._lock:
            moved = await asyncio.to_thread(self._unstage, patch_id)
        if moved:
            log.info("patch_rolled_back", patch_id=patch_id)
        else:
            log.warning("rollback_unknown_patch", patch_id=patch_id)
        return moved

    def _stage(self, patch_id: str, diff: str, manifest: dict[str, Any]) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        # Diff first: a manifest without its diff would read as staged.
        _atomic_write(self._directory / f"{patch_id}.diff", diff)
        _atomic_write(self._directory / f"{patch_id}.json", json.dumps(manifest, indent=2))

    def _unstage(self, patch_id: str) -> bool:
        manifest = self._directory / f"{patch_id}.json"
        if not manifest.exists():
            return False
        self._rolled_back.mkdir(parents=True, exist_ok=True)
        os.replace(manifest, self._rolled_back / manifest.name)
        diff = self._directory / f"{patch_id}.diff"
        if diff.exists():
            os.replace(diff, self._rolled_back / diff.name)
        return True


def _atomic_write(path: Path, content: str) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(content)
    os.replace(tmp, path)
