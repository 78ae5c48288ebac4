"""Cooperative cancellation for recipe runs."""

import asyncio
import threading
from enum import Enum


class CancellationStatus(Enum):
    """Cancellation state of a run."""

    NONE = "none"
    REQUESTED = "requested"  # Graceful: finish in-flight steps, start no new ones
    IMMEDIATE = "immediate"  # Cancel in-flight steps at their next suspension point


class CancellationRequestedError(Exception):
    """Raised inside a step when its run is cancelled."""

    pass


class CancellationToken:
    """Thread-safe cancellation signal shared by one run.

    ``cancel()`` may be called from any thread; the engine awaits ``wait()``
    on its own loop.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._status = CancellationStatus.NONE
        self._reason: str | None = None
        self._event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def status(self) -> CancellationStatus:
        return self._status

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def is_cancelled(self) -> bool:
        return self._status != CancellationStatus.NONE

    @property
    def is_immediate(self) -> bool:
        return self._status == CancellationStatus.IMMEDIATE

    def cancel(self, reason: str | None = None, immediate: bool = True) -> None:
        """Request cancellation. Escalating from graceful to immediate is allowed."""
        with self._lock:
            if self._status == CancellationStatus.IMMEDIATE:
                return
            self._status = CancellationStatus.IMMEDIATE if immediate else CancellationStatus.REQUESTED
            self._reason = reason or self._reason
            event, loop = self._event, self._loop
        if event is not None and loop is not None and immediate:
            if loop.is_closed():
                return
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                event.set()
            else:
                loop.call_soon_threadsafe(event.set)

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise CancellationRequestedError(self._reason or "Run cancelled")

    async def wait(self) -> None:
        """Wait until immediate cancellation is requested."""
        with self._lock:
            if self._event is None:
                self._event = asyncio.Event()
                self._loop = asyncio.get_running_loop()
            if self._status == CancellationStatus.IMMEDIATE:
                self._event.set()
            event = self._event
        await event.wait()
