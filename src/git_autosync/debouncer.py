"""Collapses bursts of file events into a single sync request.

The window slides: every event pushes the deadline out again, so a file that
is being written continuously never triggers a sync mid-write.
"""

import logging
import threading
import time
from collections.abc import Callable

from .constants import APP_NAME
from .models import ChangeEvent, SyncRequest

logger = logging.getLogger(APP_NAME)


def describe_burst(last: ChangeEvent, count: int) -> str:
    """Builds a request reason from the last event of a burst."""
    reason = f"{last.kind.value} {(last.dest_path or last.path).name}"
    if count > 1:
        reason += f" (+{count - 1} more)"
    return reason


class Debouncer:
    """Sliding-window aggregator owning the pending burst state.

    Events (`push`) and deadline expiry (`poll`/`run`) are serialized through
    one condition lock, so they may arrive from different threads.
    """

    def __init__(
        self,
        window: float,
        on_settle: Callable[[SyncRequest], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the debouncer.

        Args:
            window: Quiet period in seconds before a burst settles.
            on_settle: Called with each settled request by `run()`.
            clock: Monotonic time source.
        """
        self._window = window
        self._on_settle = on_settle
        self._clock = clock

        self._cond = threading.Condition()
        self._deadline: float | None = None
        self._last_event: ChangeEvent | None = None
        self._count = 0
        self._closed = False

    @property
    def pending(self) -> bool:
        with self._cond:
            return self._deadline is not None

    def push(self, event: ChangeEvent) -> None:
        """Records an event and slides the deadline to `now + window`."""
        with self._cond:
            if self._closed:
                return
            self._last_event = event
            self._count += 1
            self._deadline = self._clock() + self._window
            self._cond.notify_all()

    def poll(self) -> SyncRequest | None:
        """Returns the settled request if the window has elapsed, else None."""
        with self._cond:
            return self._settle_locked()

    def _settle_locked(self) -> SyncRequest | None:
        if self._deadline is None or self._last_event is None:
            return None
        if self._clock() < self._deadline:
            return None

        request = SyncRequest(reason=describe_burst(self._last_event, self._count))
        self._deadline = None
        self._last_event = None
        self._count = 0
        return request

    def run(self) -> None:
        """Blocks, emitting settled requests to `on_settle` until `close()`."""
        while True:
            with self._cond:
                while not self._closed and self._deadline is None:
                    self._cond.wait()
                if self._closed:
                    return
                remaining = self._deadline - self._clock()
                if remaining > 0:
                    self._cond.wait(remaining)
                    continue
                request = self._settle_locked()

            if request is not None and self._on_settle is not None:
                logger.debug(f"Debounce settled: {request.reason}")
                self._on_settle(request)

    def close(self) -> None:
        """Drops pending state and ends `run()`."""
        with self._cond:
            self._closed = True
            self._deadline = None
            self._last_event = None
            self._count = 0
            self._cond.notify_all()
