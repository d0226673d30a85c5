"""
Snapshot Store
==============

Durable, crash-safe storage of the full ``SystemState``.

- Atomic write-to-temp-then-rename so readers never observe a partial file
- World-readable snapshot (producer runs privileged, clients do not)
- Missing file loads as an empty state
- Corrupt content falls back to the last state this store decoded successfully

Usage:
    store = SnapshotStore(config.state_file)
    store.save(state)                 # producer
    state = await store.load_async()  # consumer
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

import aiofiles

from .models import SnapshotDecodeError, SystemState

logger = logging.getLogger(__name__)

SNAPSHOT_FILE_MODE = 0o644


class SnapshotStore:
    """Atomic JSON snapshot file shared across the process boundary."""

    def __init__(self, path: Path):
        self._path = Path(path)
        self._last_good: Optional[SystemState] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def last_good(self) -> Optional[SystemState]:
        return self._last_good.copy() if self._last_good is not None else None

    def exists(self) -> bool:
        return self._path.exists()

    # =========================================================================
    # WRITE
    # =========================================================================

    def save(self, state: SystemState) -> None:
        """
        Atomically replace the snapshot file with ``state``.

        Raises:
            OSError: the directory is missing or not writable, or the disk is full
        """
        content = state.to_json().encode("utf-8")

        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=self._path.parent,
            prefix=f".{self._path.name}.",
            suffix=".tmp",
        )
        try:
            os.write(tmp_fd, content)
            os.fsync(tmp_fd)
            os.close(tmp_fd)
            tmp_fd = -1

            # mkstemp creates 0600; clients need read access
            os.chmod(tmp_path, SNAPSHOT_FILE_MODE)
            os.replace(tmp_path, self._path)
        except BaseException:
            if tmp_fd >= 0:
                os.close(tmp_fd)
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

        self._last_good = state.copy()

    # =========================================================================
    # READ
    # =========================================================================

    def load(self) -> SystemState:
        """Synchronous load; never raises."""
        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return SystemState()
        except OSError as e:
            logger.warning(f"[SnapshotStore] Read failed for {self._path}: {e}")
            return self._fallback()
        return self._decode(content)

    async def load_async(self) -> SystemState:
        """Asynchronous load for event-loop consumers; never raises."""
        try:
            async with aiofiles.open(self._path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return SystemState()
        except OSError as e:
            logger.warning(f"[SnapshotStore] Read failed for {self._path}: {e}")
            return self._fallback()
        return self._decode(content)

    def _decode(self, content: str) -> SystemState:
        try:
            state = SystemState.from_json(content)
        except SnapshotDecodeError as e:
            logger.warning(f"[SnapshotStore] Corrupt snapshot {self._path}: {e}")
            return self._fallback()
        self._last_good = state
        return state.copy()

    def _fallback(self) -> SystemState:
        if self._last_good is not None:
            return self._last_good.copy()
        return SystemState()
