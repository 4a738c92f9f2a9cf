from __future__ import annotations

import threading
from collections import deque
from collections.abc import Hashable
from typing import Generic, TypeVar

from funktion.src.metrics import METRICS, OperatorMetrics

K = TypeVar("K", bound=Hashable)


class WorkQueue(Generic[K]):
    """Deduplicating FIFO of reconciliation keys.

    A key lives in at most one of two places at a time:

    ``_queue`` / ``_dirty``
        Waiting to be handed out by :meth:`get`. Adding a key that is already
        dirty is a no-op.
    ``_processing``
        Handed out and not yet marked :meth:`done`. Adding such a key only
        marks it dirty; it is re-queued once the current holder calls
        :meth:`done`, so a key is never processed by two workers at once and a
        change that arrives mid-reconcile is deferred rather than dropped.
    """

    def __init__(self, metrics: OperatorMetrics = METRICS) -> None:
        self._queue: deque[K] = deque()
        self._dirty: set[K] = set()
        self._processing: set[K] = set()
        self._shutting_down = False
        self._timers: set[threading.Timer] = set()
        self._cond = threading.Condition()
        self._metrics = metrics

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _record_depth(self) -> None:
        self._metrics.queue_depth.set(len(self._queue))

    def add(self, key: K) -> None:
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._record_depth()
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[K | None, bool]:
        """Block until a key is available; returns ``(key, shutdown)``.

        With a ``timeout`` an empty queue yields ``(None, False)`` once it
        expires. Once shut down, keys still queued are abandoned.
        """
        with self._cond:
            if not self._queue and not self._shutting_down:
                self._cond.wait_for(lambda: self._queue or self._shutting_down, timeout=timeout)
            if self._shutting_down:
                return None, True
            if not self._queue:
                return None, False
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            self._record_depth()
            return key, False

    def done(self, key: K) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._record_depth()
                self._cond.notify()

    def done_after(self, key: K, delay_seconds: float, requeue: bool = False) -> None:
        """Mark ``key`` done after ``delay_seconds``, keeping it blocked until then.

        With ``requeue`` the key is handed out again once released, as if it
        had been added while in flight.
        """

        def _release() -> None:
            if requeue:
                with self._cond:
                    if not self._shutting_down:
                        self._dirty.add(key)
            self.done(key)

        if delay_seconds <= 0:
            _release()
            return

        def _fire() -> None:
            with self._cond:
                self._timers.discard(timer)
            _release()

        timer = threading.Timer(delay_seconds, _fire)
        timer.daemon = True
        with self._cond:
            if self._shutting_down:
                return
            self._timers.add(timer)
        timer.start()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
