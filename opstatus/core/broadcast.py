"""
Broadcast Channel
=================

Best-effort, low-latency push of operation deltas from the daemon to any
number of client processes on the same machine.

Transport:
    ┌──────────────┐   sendto()   ┌──────────────────────────────────┐
    │  Publisher   │ ───────────► │ <broadcast_dir>/<pid>-<id>.sock   │ client A
    │  (daemon)    │ ───────────► │ <broadcast_dir>/<pid>-<id>.sock   │ client B
    └──────────────┘              └──────────────────────────────────┘

Each subscriber binds its own Unix datagram socket inside a shared
rendezvous directory; the publisher fans out one datagram per socket.
No delivery guarantee: events are dropped when nobody listens or a
receive buffer is full. The snapshot file remains the source of truth.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import socket
import threading
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Optional, Set, Union

from .models import SnapshotDecodeError, StatusEvent

logger = logging.getLogger(__name__)

SOCKET_SUFFIX = ".sock"

EventCallback = Callable[[StatusEvent], Union[None, Awaitable[None]]]


# =============================================================================
# PUBLISHER (producer side)
# =============================================================================


class BroadcastPublisher:
    """
    Fans out status events to every subscriber socket in ``broadcast_dir``.

    Thread-safe; ``publish`` never raises.
    """

    def __init__(self, broadcast_dir: Path):
        self._dir = Path(broadcast_dir)
        self._sock: Optional[socket.socket] = None
        self._lock = threading.Lock()

    @property
    def broadcast_dir(self) -> Path:
        return self._dir

    def _socket(self) -> socket.socket:
        if self._sock is None:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
            sock.setblocking(False)
            self._sock = sock
        return self._sock

    def publish(self, event: StatusEvent) -> int:
        """
        Send ``event`` to all live subscribers.

        Returns:
            Number of subscribers the datagram was handed to
        """
        try:
            targets = list(self._dir.glob(f"*{SOCKET_SUFFIX}"))
        except OSError as e:
            logger.debug(f"[Broadcast] Cannot list {self._dir}: {e}")
            return 0
        if not targets:
            return 0

        payload = event.to_bytes()
        delivered = 0
        with self._lock:
            try:
                sock = self._socket()
            except OSError as e:
                logger.warning(f"[Broadcast] Cannot create publisher socket: {e}")
                return 0

            for target in targets:
                try:
                    sock.sendto(payload, str(target))
                    delivered += 1
                except (ConnectionRefusedError, FileNotFoundError):
                    # Subscriber process went away without cleaning up
                    self._discard(target)
                except BlockingIOError:
                    logger.debug(f"[Broadcast] Receive buffer full, dropped event for {target.name}")
                except OSError as e:
                    logger.warning(f"[Broadcast] Send to {target.name} failed: {e}")

        logger.debug(
            f"[Broadcast] {event.action.value} {event.operation_id} -> {delivered}/{len(targets)} subscribers"
        )
        return delivered

    def _discard(self, target: Path) -> None:
        try:
            target.unlink()
            logger.debug(f"[Broadcast] Removed dead subscriber socket {target.name}")
        except OSError:
            pass

    def close(self) -> None:
        with self._lock:
            if self._sock is not None:
                self._sock.close()
                self._sock = None


# =============================================================================
# SUBSCRIBER (consumer side)
# =============================================================================


class _EventProtocol(asyncio.DatagramProtocol):
    def __init__(self, subscriber: "BroadcastSubscriber"):
        self._subscriber = subscriber

    def datagram_received(self, data: bytes, addr) -> None:
        self._subscriber._on_datagram(data)

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"[Broadcast] Subscriber socket error: {exc}")


class BroadcastSubscriber:
    """
    Receives status events on the running event loop.

    Usage:
        subscriber = BroadcastSubscriber(config.broadcast_dir, on_event)
        await subscriber.start()
        ...
        await subscriber.stop()
    """

    def __init__(self, broadcast_dir: Path, on_event: EventCallback):
        self._dir = Path(broadcast_dir)
        self._on_event = on_event
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._path: Optional[Path] = None
        self._received = 0
        self._handler_tasks: Set[asyncio.Task] = set()

    @property
    def socket_path(self) -> Optional[Path]:
        return self._path

    @property
    def is_listening(self) -> bool:
        return self._transport is not None

    @property
    def received_count(self) -> int:
        return self._received

    async def start(self) -> bool:
        """Bind the subscriber socket; returns False if broadcast is unavailable."""
        if self._transport is not None:
            return True

        if not self._dir.is_dir():
            logger.warning(f"[Broadcast] Rendezvous directory {self._dir} missing; relying on file watch and poll")
            return False

        path = self._dir / f"{os.getpid()}-{uuid.uuid4().hex[:8]}{SOCKET_SUFFIX}"
        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _EventProtocol(self),
                local_addr=str(path),
                family=socket.AF_UNIX,
            )
        except OSError as e:
            logger.warning(f"[Broadcast] Cannot bind subscriber socket {path}: {e}")
            return False

        try:
            # The daemon may run as another user
            os.chmod(path, 0o666)
        except OSError:
            pass

        self._transport = transport
        self._path = path
        logger.info(f"[Broadcast] Subscribed at {path.name}")
        return True

    async def stop(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        if self._path is not None:
            try:
                self._path.unlink()
            except OSError:
                pass
            self._path = None

    def _on_datagram(self, data: bytes) -> None:
        try:
            event = StatusEvent.from_bytes(data)
        except SnapshotDecodeError as e:
            logger.debug(f"[Broadcast] Ignoring malformed event: {e}")
            return

        self._received += 1
        try:
            result = self._on_event(event)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._await_handler(result))
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)
        except Exception as e:
            logger.error(f"[Broadcast] Event handler error: {e}")

    @staticmethod
    async def _await_handler(result: Awaitable[None]) -> None:
        try:
            await result
        except Exception as e:
            logger.error(f"[Broadcast] Event handler error: {e}")
