"""Checkpointing of discovery state.

A checkpoint is one JSON document::

    {"version": 1, "saved_at": <epoch seconds>, "state": {...}}

``saved_at`` records when the state last changed: re-saving an identical
state keeps it, so save, load and save again writes the same bytes.

Writes go to a temp file in the same directory that is then renamed over the
checkpoint, so a crash mid-write leaves the previous checkpoint intact. The
replaced checkpoint is kept as a timestamped backup (newest three retained).
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
import json
import logging
from pathlib import Path
import shutil
import time
from typing import Any

from nrql_discovery import constants as C
from nrql_discovery.core.exceptions import CheckpointError
from nrql_discovery.discovery.state import SCHEMAS, DiscoveryState, DiscoveryStatus
from nrql_discovery.events import EventDispatcher, EventKind

logger = logging.getLogger(__name__)


class ProgressManager:
    """Saves and restores ``DiscoveryState`` snapshots.

    ``lock`` must be the lock the orchestrator holds while mutating state;
    snapshots are taken under it so they never observe a half-applied update.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        interval: float = C.CHECKPOINT_INTERVAL,
        max_age_hours: float = C.CHECKPOINT_MAX_AGE_HOURS,
        keep_backups: int = C.CHECKPOINT_BACKUPS,
        lock: asyncio.Lock | None = None,
        events: EventDispatcher | None = None,
        clock=time.time,
    ) -> None:
        self.path = Path(path)
        self.interval = interval
        self.max_age_seconds = max_age_hours * 3600
        self.keep_backups = keep_backups
        self.lock = lock or asyncio.Lock()
        self._events = events or EventDispatcher()
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def snapshot_dir(self) -> Path:
        return self.path.parent / "snapshots"

    # --- One-shot save / load ---

    async def save(self, state: DiscoveryState) -> Path:
        """Write a consistent snapshot of ``state``.

        Saving a state identical to the one on disk keeps its ``saved_at``,
        so an unchanged state always produces the same document.

        Raises:
            CheckpointError: If the state is not JSON-serializable or the
                checkpoint cannot be written.
        """
        async with self.lock:
            snapshot = state.to_dict()
        state_text = _encode(snapshot)
        saved_at = self._unchanged_since(state_text)
        document = {
            "version": C.CHECKPOINT_VERSION,
            "saved_at": self._clock() if saved_at is None else saved_at,
            "state": snapshot,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(_encode(document), encoding="utf-8")
            if self.path.exists() and self.keep_backups > 0:
                self._backup_current()
            tmp.replace(self.path)
        except OSError as e:
            raise CheckpointError(f"Failed to write checkpoint {self.path}: {e}") from e

        logger.debug("Checkpoint saved to %s", self.path)
        self._events.emit(
            EventKind.CHECKPOINT_SAVED,
            path=str(self.path),
            phase=snapshot.get("phase"),
            schemas=len(snapshot["discoveries"].get(SCHEMAS, [])),
        )
        return self.path

    async def load(self) -> DiscoveryState | None:
        """Restore the last checkpoint, or ``None`` if there is nothing usable."""
        if not self.path.exists():
            return None
        try:
            document = json.loads(self.path.read_text(encoding="utf-8"))
            saved_at = float(document.get("saved_at", 0))
            state_data = document["state"]
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Ignoring unreadable checkpoint %s: %s", self.path, e)
            return None

        age = self._clock() - saved_at
        if age > self.max_age_seconds:
            logger.info(
                "Checkpoint %s is %.1f hours old; starting fresh", self.path, age / 3600
            )
            return None
        try:
            state = DiscoveryState.from_dict(state_data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring malformed checkpoint %s: %s", self.path, e)
            return None
        logger.info(
            "Loaded checkpoint from %s (phase=%s, %d schemas)",
            self.path,
            state.phase,
            len(state.schemas),
        )
        return state

    def _unchanged_since(self, state_text: str) -> float | None:
        """``saved_at`` of the checkpoint on disk if it holds ``state_text``."""
        try:
            previous = json.loads(self.path.read_text(encoding="utf-8"))
            unchanged = _encode(previous["state"]) == state_text
            saved_at = float(previous["saved_at"])
        except (OSError, ValueError, KeyError, TypeError, CheckpointError):
            return None
        return saved_at if unchanged else None

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    # --- Auto-save ---

    def start_auto_save(self, state: DiscoveryState) -> asyncio.Task[None]:
        if self._task is not None and not self._task.done():
            raise RuntimeError("Auto-save is already running")
        self._task = asyncio.create_task(
            self._auto_save_loop(state), name="nrql-discovery-autosave"
        )
        return self._task

    async def stop_auto_save(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _auto_save_loop(self, state: DiscoveryState) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.save(state)
            except CheckpointError as e:
                logger.warning("Auto-save failed, will retry next interval: %s", e)

    # --- Backups and named snapshots ---

    def _backup_current(self) -> None:
        stamp = int(self._clock() * 1000)
        backup = self.path.with_name(f"{self.path.stem}.backup-{stamp}{self.path.suffix}")
        shutil.copy2(self.path, backup)
        for old in self.backups()[self.keep_backups :]:
            with suppress(OSError):
                old.unlink()

    def backups(self) -> list[Path]:
        """Backup files, newest first."""
        pattern = f"{self.path.stem}.backup-*{self.path.suffix}"

        def stamp(p: Path) -> int:
            digits = p.name.removeprefix(f"{self.path.stem}.backup-").removesuffix(
                self.path.suffix
            )
            return int(digits) if digits.isdigit() else 0

        return sorted(self.path.parent.glob(pattern), key=stamp, reverse=True)

    async def create_snapshot(self, state: DiscoveryState, name: str) -> Path:
        async with self.lock:
            snapshot = state.to_dict()
        self.snapshot_dir.mkdir(parents=True, exist_ok=True)
        target = self.snapshot_dir / f"{name}-{int(self._clock() * 1000)}.json"
        document = {"name": name, "saved_at": self._clock(), "state": snapshot}
        tmp = target.with_suffix(".json.tmp")
        tmp.write_text(_encode(document), encoding="utf-8")
        tmp.replace(target)
        logger.info("Created snapshot %s", target)
        return target

    def list_snapshots(self) -> list[dict[str, Any]]:
        if not self.snapshot_dir.exists():
            return []
        snapshots = []
        for path in self.snapshot_dir.glob("*.json"):
            try:
                document = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.debug("Skipping unreadable snapshot %s: %s", path, e)
                continue
            snapshots.append(
                {
                    "name": document.get("name", path.stem),
                    "path": path,
                    "saved_at": document.get("saved_at", 0),
                }
            )
        return sorted(snapshots, key=lambda s: s["saved_at"], reverse=True)

    def load_snapshot(self, path: str | Path) -> DiscoveryState:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
        return DiscoveryState.from_dict(document["state"])


def describe_progress(state: DiscoveryState, total_phases: int) -> dict[str, Any]:
    """Percentage complete and a short message for display."""
    if state.status is DiscoveryStatus.COMPLETED:
        percentage, message = 100.0, "Discovery completed"
    elif state.status is DiscoveryStatus.FAILED:
        percentage, message = 0.0, "Discovery failed"
    else:
        done = len(state.completed_phases)
        percentage = min(100.0, 100.0 * done / total_phases) if total_phases else 0.0
        message = f"Running {state.phase}" if state.phase else "Not started"
    return {
        "percentage": round(percentage, 1),
        "message": message,
        "details": {
            "schemas": len(state.schemas),
            "completed_phases": list(state.completed_phases),
            "queries_issued": state.statistics.queries_issued,
            "queries_failed": state.statistics.queries_failed,
        },
    }


def _encode(value: Any) -> str:
    try:
        return json.dumps(value, indent=2)
    except (TypeError, ValueError) as e:
        raise CheckpointError(f"Discovery state is not JSON-serializable: {e}") from e
