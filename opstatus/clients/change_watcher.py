"""
Change Watcher
==============

Reloads the client when the snapshot file is written.

The producer replaces the snapshot with a rename, which orphans a watch on
the file itself. The watcher therefore observes the *parent directory* and
filters events whose source or destination is the snapshot path.

- watchdog Observer thread, events marshalled onto the client loop
- Dormant when the directory does not exist yet; ``ensure_watching()``
  retries and is called on every poll tick
- Never raises into the caller: an unavailable watch leaves the poll
  fallback in charge
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional, Set, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .base import UpdateTrigger

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[], Union[None, Awaitable[None]]]


def _resolved(path) -> str:
    if isinstance(path, bytes):
        path = os.fsdecode(path)
    return os.path.realpath(path)


class _SnapshotEventHandler(FileSystemEventHandler):
    """Runs on the observer thread."""

    def __init__(self, watcher: "ChangeWatcher"):
        super().__init__()
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        self._check(event.src_path)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._check(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._check(event.dest_path)

    def _check(self, path) -> None:
        if path and _resolved(path) == self._watcher.target:
            self._watcher._notify_threadsafe()


class ChangeWatcher(UpdateTrigger):
    """
    Watches ``state_file`` for writes and calls ``on_change`` on the loop
    that started the watcher.

    Usage:
        watcher = ChangeWatcher(config.state_file, client.on_file_changed)
        await watcher.start()
        ...
        await watcher.stop()
    """

    name = "watcher"

    def __init__(self, state_file: Path, on_change: ChangeHandler):
        self._state_file = Path(state_file)
        self._on_change = on_change
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._observer: Optional[Observer] = None
        self._started = False
        self._events = 0
        self._handler_tasks: Set[asyncio.Task] = set()

    @property
    def state_file(self) -> Path:
        return self._state_file

    @property
    def target(self) -> str:
        return _resolved(self._state_file)

    @property
    def is_active(self) -> bool:
        return self._observer is not None

    @property
    def event_count(self) -> int:
        return self._events

    async def start(self) -> bool:
        self._loop = asyncio.get_running_loop()
        self._started = True
        return self.ensure_watching()

    def ensure_watching(self) -> bool:
        """Begin watching if the snapshot directory exists; returns True when watching."""
        if not self._started:
            return False
        if self._observer is not None:
            if self._observer.is_alive():
                return True
            # Observer died (directory removed underneath it)
            self._teardown()

        directory = self._state_file.parent
        if not directory.is_dir():
            logger.debug(f"[ChangeWatcher] {directory} does not exist yet; waiting")
            return False

        observer = Observer()
        try:
            observer.schedule(_SnapshotEventHandler(self), str(directory), recursive=False)
            observer.start()
        except OSError as e:
            logger.warning(f"[ChangeWatcher] Cannot watch {directory}: {e}")
            return False

        self._observer = observer
        logger.info(f"[ChangeWatcher] Watching {self._state_file}")
        return True

    async def stop(self) -> None:
        self._started = False
        self._teardown()

    def _teardown(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        if observer.is_alive():
            observer.join(timeout=2.0)

    def _notify_threadsafe(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._dispatch)
        except RuntimeError:
            # Loop closed between the check and the call
            pass

    def _dispatch(self) -> None:
        if not self._started:
            return
        self._events += 1
        try:
            result = self._on_change()
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._await_handler(result))
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)
        except Exception as e:
            logger.error(f"[ChangeWatcher] Change handler error: {e}")

    @staticmethod
    async def _await_handler(result: Awaitable[None]) -> None:
        try:
            await result
        except Exception as e:
            logger.error(f"[ChangeWatcher] Change handler error: {e}")
