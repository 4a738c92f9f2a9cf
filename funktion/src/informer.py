from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from kubernetes.client import ApiException

from funktion.src.metrics import METRICS, OperatorMetrics
from funktion.src.resources import Kind, object_key

DEFAULT_RESYNC_SECONDS = 30


class ClusterWatchSource(Protocol):
    def list(self, kind: Kind, namespace: str | None = None) -> tuple[list[dict[str, Any]], str | None]: ...

    def watch(
        self,
        kind: Kind,
        namespace: str | None,
        resource_version: str | None,
        timeout_seconds: int,
    ) -> Any: ...


class ResourceEventHandler(Protocol):
    """Observer notified by an :class:`Informer` about cache changes."""

    def on_add(self, obj: dict[str, Any]) -> None: ...

    def on_update(self, old: dict[str, Any], new: dict[str, Any]) -> None: ...

    def on_delete(self, obj: dict[str, Any]) -> None: ...


class _ResourceExpired(Exception):
    pass


def _resource_version(obj: dict[str, Any]) -> str | None:
    return (obj.get("metadata") or {}).get("resourceVersion")


class Informer:
    """Locally cached mirror of one kind of cluster object.

    The informer lists every matching object, then streams watch events from
    the list's ``resourceVersion``, applying each delta to an in-memory cache
    keyed by ``namespace/name`` and notifying registered handlers. Every
    ``resync_seconds`` (and whenever the watch fails or the resourceVersion
    expires) it re-lists, which heals any silently dropped events: objects
    that vanished are reported as deletes and every surviving object is
    reported as an update.

    The cache is only written by the informer thread; readers get the stored
    dicts and must not mutate them.
    """

    def __init__(
        self,
        cluster: ClusterWatchSource,
        kind: Kind,
        namespace: str | None = None,
        resync_seconds: int = DEFAULT_RESYNC_SECONDS,
        logger: logging.Logger | None = None,
        metrics: OperatorMetrics = METRICS,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        if resync_seconds < 1:
            raise ValueError("resync_seconds must be >= 1")
        self.cluster = cluster
        self.kind = kind
        self.namespace = namespace or None
        self.resync_seconds = resync_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics
        self.monotonic_fn = monotonic_fn

        self._cache: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()
        self._handlers: list[ResourceEventHandler] = []
        self._resource_version: str | None = None
        self._last_list_at: float | None = None
        self.synced = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def has_synced(self) -> bool:
        return self.synced.is_set()

    def add_handler(self, handler: ResourceEventHandler) -> None:
        self._handlers.append(handler)

    def get_by_key(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            return self._cache.get(key)

    def list(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._cache.values())

    def list_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._cache)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run,
            name=f"informer-{self.kind.value.lower()}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def _notify(self, event: str, *objs: dict[str, Any]) -> None:
        for handler in list(self._handlers):
            try:
                getattr(handler, event)(*objs)
            except Exception:
                self.logger.exception(
                    "%s handler %s failed for %s",
                    self.kind.value,
                    event,
                    object_key(objs[-1]),
                )

    def list_and_replace(self) -> None:
        """Replace the cache with a fresh listing and emit the resulting deltas."""
        items, resource_version = self.cluster.list(self.kind, self.namespace)
        fresh = {object_key(item): item for item in items}
        with self._lock:
            previous = self._cache
            self._cache = fresh
            self._resource_version = resource_version
            self._last_list_at = self.monotonic_fn()
        if self.synced.is_set():
            self.metrics.resyncs_total.labels(kind=self.kind.value).inc()
        self.synced.set()

        for key, old in previous.items():
            if key not in fresh:
                self._notify("on_delete", old)
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._notify("on_add", obj)
            else:
                self._notify("on_update", old, obj)

    def apply_event(self, event_type: str, obj: dict[str, Any]) -> None:
        """Apply a single watch event to the cache and notify handlers."""
        if event_type == "ERROR":
            code = obj.get("code")
            if code == 410:
                raise _ResourceExpired()
            raise ApiException(status=code or 500, reason=str(obj.get("message", "watch error")))

        resource_version = _resource_version(obj)
        if event_type == "BOOKMARK":
            if resource_version:
                self._resource_version = resource_version
            return

        key = object_key(obj)
        with self._lock:
            if resource_version:
                self._resource_version = resource_version
            old = self._cache.get(key)
            if event_type == "DELETED":
                self._cache.pop(key, None)
            else:
                self._cache[key] = obj

        if event_type == "DELETED":
            # Deliver the last known state when we have one.
            self._notify("on_delete", old if old is not None else obj)
        elif old is None:
            self._notify("on_add", obj)
        else:
            self._notify("on_update", old, obj)

    def _resync_due_in(self) -> float:
        if self._last_list_at is None:
            return 0.0
        elapsed = self.monotonic_fn() - self._last_list_at
        return max(0.0, self.resync_seconds - elapsed)

    def _watch_once(self, timeout_seconds: int) -> None:
        stream = self.cluster.watch(
            self.kind,
            self.namespace,
            self._resource_version,
            timeout_seconds,
        )
        for event_type, obj in stream:
            if self._stop.is_set():
                break
            self.apply_event(event_type, obj)
            if self._resync_due_in() <= 0:
                break

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List-then-watch until stopped.

        1. List to seed the cache (retried with exponential backoff and
           jitter, capped at 30 s).
        2. Watch from the list's resourceVersion, with the stream timeout
           clamped to the time left before the next resync.
        3. When the resync period elapses, re-list.
        4. On ``410 Gone`` re-list immediately; on any other error back off
           and re-list, since events may have been missed.
        """
        stop = stop_event or self._stop
        backoff_seconds = 1.0
        need_list = True
        watch_count = 0

        def _stopped() -> bool:
            return stop.is_set() or self._stop.is_set()

        while not _stopped():
            try:
                if need_list or self._resync_due_in() <= 0:
                    self.list_and_replace()
                    need_list = False
                    self.logger.debug(
                        "%s informer listed %d object(s) at resourceVersion %s",
                        self.kind.value,
                        len(self._cache),
                        self._resource_version,
                    )
                if watch_count > 0:
                    self.metrics.watch_reconnects_total.labels(kind=self.kind.value).inc()
                watch_count += 1
                timeout_seconds = max(1, int(self._resync_due_in()) or 1)
                self._watch_once(timeout_seconds)
                backoff_seconds = 1.0
            except _ResourceExpired:
                self.logger.warning("%s watch resource version expired, re-listing", self.kind.value)
                need_list = True
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing", self.kind.value
                    )
                    need_list = True
                    continue
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API denied %s list/watch (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        self.kind.value,
                        exc.status,
                    )
                else:
                    self.logger.exception("Kubernetes API error watching %s", self.kind.value)
                self.metrics.watch_errors_total.labels(kind=self.kind.value).inc()
                need_list = True
                backoff_seconds = self._backoff(stop, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected error watching %s", self.kind.value)
                self.metrics.watch_errors_total.labels(kind=self.kind.value).inc()
                need_list = True
                backoff_seconds = self._backoff(stop, backoff_seconds)

        self.logger.info("%s informer stopped", self.kind.value)

    def _backoff(self, stop: threading.Event, backoff_seconds: float) -> float:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30.0)
