"""Scheduler: the two deferral points the sync engine needs (next turn, next frame)."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


class Handle:
    """A scheduled callback that can be cancelled until it has run."""

    def __init__(self, callback: Callback) -> None:
        self._callback = callback
        self._timer: asyncio.Handle | None = None
        self.cancelled = False
        self.done = False

    def cancel(self) -> None:
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()

    def run(self) -> None:
        """Invoke the callback once; errors are logged so one bad callback cannot stall the queue."""
        if self.cancelled or self.done:
            return
        self.done = True
        try:
            self._callback()
        except Exception:
            logger.exception("Scheduled callback failed")


class Scheduler(ABC):
    """
    Abstract event-loop seam.

    ``call_soon`` runs a callback on the next macrotask, after the current
    event handler (and any editor transaction it is part of) has returned.
    ``request_frame`` runs it once before the next frame, which lets bursts
    of events collapse into a single recomputation.
    """

    @abstractmethod
    def call_soon(self, callback: Callback) -> Handle:
        """Schedule *callback* for the next turn of the event loop."""

    @abstractmethod
    def request_frame(self, callback: Callback) -> Handle:
        """Schedule *callback* for the next animation frame."""


class ManualScheduler(Scheduler):
    """
    A scheduler driven explicitly by its owner.

    Used by tests and by the CLI, where there is no real event loop:
    nothing runs until ``run_pending()`` / ``run_frame()`` is called.
    """

    def __init__(self) -> None:
        self._tasks: deque[Handle] = deque()
        self._frames: deque[Handle] = deque()

    def call_soon(self, callback: Callback) -> Handle:
        handle = Handle(callback)
        self._tasks.append(handle)
        return handle

    def request_frame(self, callback: Callback) -> Handle:
        handle = Handle(callback)
        self._frames.append(handle)
        return handle

    @property
    def pending_tasks(self) -> int:
        return sum(1 for h in self._tasks if not h.cancelled)

    @property
    def pending_frames(self) -> int:
        return sum(1 for h in self._frames if not h.cancelled)

    def run_pending(self) -> int:
        """Run queued macrotasks, including ones queued while running. Returns how many ran."""
        count = 0
        while self._tasks:
            handle = self._tasks.popleft()
            if not handle.cancelled:
                handle.run()
                count += 1
        return count

    def run_frame(self) -> int:
        """Run the frame callbacks registered before this call. Returns how many ran."""
        frames, self._frames = self._frames, deque()
        count = 0
        for handle in frames:
            if not handle.cancelled:
                handle.run()
                count += 1
        return count

    def run_until_idle(self) -> None:
        """Alternate frames and macrotasks until both queues are empty."""
        while self._tasks or self._frames:
            self.run_frame()
            self.run_pending()


class AsyncioScheduler(Scheduler):
    """Scheduler backed by an asyncio event loop, for hosts that run one."""

    FRAME_INTERVAL = 1 / 60  # seconds; one display frame at 60 Hz

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        frame_interval: float = FRAME_INTERVAL,
    ) -> None:
        """
        Args:
            loop:           Event loop to schedule on. Defaults to the running loop,
                            so construct the scheduler from inside a coroutine.
            frame_interval: Delay used to approximate an animation frame.
        """
        self._loop = loop if loop is not None else asyncio.get_running_loop()
        self.frame_interval = frame_interval

    def call_soon(self, callback: Callback) -> Handle:
        handle = Handle(callback)
        handle._timer = self._loop.call_soon(handle.run)
        return handle

    def request_frame(self, callback: Callback) -> Handle:
        handle = Handle(callback)
        handle._timer = self._loop.call_later(self.frame_interval, handle.run)
        return handle
