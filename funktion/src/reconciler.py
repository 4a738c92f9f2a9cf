from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from funktion.src.builders import (
    make_flow_deployment,
    make_function_deployment,
    make_function_service,
)
from funktion.src.errors import DependencyMissingError, ReconcileError, TeardownTimeoutError
from funktion.src.informer import DEFAULT_RESYNC_SECONDS, Informer
from funktion.src.kube import NotFoundError
from funktion.src.metrics import METRICS, OperatorMetrics
from funktion.src.resources import (
    CONNECTOR_LABEL,
    RUNTIME_LABEL,
    ConnectorRecord,
    FlowRecord,
    FunctionRecord,
    Kind,
    ResourceKey,
    RuntimeRecord,
    object_key,
)
from funktion.src.workqueue import WorkQueue

DEFAULT_RETRY_DELAY_SECONDS = 3.0
DEFAULT_POLL_INTERVAL_SECONDS = 1.0

# Which label on a dependent points at which dependency kind.
_REFERENCES: dict[Kind, tuple[Kind, str]] = {
    Kind.FUNCTION: (Kind.RUNTIME, RUNTIME_LABEL),
    Kind.FLOW: (Kind.CONNECTOR, CONNECTOR_LABEL),
}


class ClusterStore(Protocol):
    def list(self, kind: Kind, namespace: str | None = None) -> tuple[list[dict[str, Any]], str | None]: ...

    def watch(self, kind: Kind, namespace: str | None, resource_version: str | None, timeout_seconds: int) -> Any: ...

    def get(self, kind: Kind, namespace: str, name: str) -> dict[str, Any]: ...

    def create(self, kind: Kind, namespace: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, kind: Kind, namespace: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def delete(self, kind: Kind, namespace: str, name: str, cascade: bool = True) -> None: ...

    def set_replicas(self, namespace: str, name: str, count: int) -> None: ...


def dependency_key(reference: str, namespace: str) -> str:
    """Return the cache key for a label reference, qualifying bare names with ``namespace``."""
    if namespace and "/" not in reference:
        return f"{namespace}/{reference}"
    return reference


def _resource_version(obj: dict[str, Any]) -> str | None:
    return (obj.get("metadata") or {}).get("resourceVersion")


class _PrimaryHandler:
    """Re-queues a Function or Flow whenever it changes."""

    def __init__(self, operator: Operator, kind: Kind) -> None:
        self.operator = operator
        self.kind = kind

    def _enqueue(self, obj: dict[str, Any]) -> None:
        self.operator.enqueue(ResourceKey.for_object(self.kind, obj))

    def on_add(self, obj: dict[str, Any]) -> None:
        self._enqueue(obj)

    def on_update(self, old: dict[str, Any], new: dict[str, Any]) -> None:
        self._enqueue(new)

    def on_delete(self, obj: dict[str, Any]) -> None:
        self.operator.logger.info("%s %s deleted", self.kind.value, object_key(obj))
        self._enqueue(obj)


class _DependencyHandler:
    """Re-queues everything that references a changed Runtime or Connector."""

    def __init__(self, operator: Operator, kind: Kind) -> None:
        self.operator = operator
        self.kind = kind

    def _wake_dependents(self, obj: dict[str, Any]) -> None:
        for key in self.operator.dependents_of(self.kind, obj):
            self.operator.enqueue(key)

    def on_add(self, obj: dict[str, Any]) -> None:
        self.operator.logger.info("%s %s added", self.kind.value, object_key(obj))
        self._wake_dependents(obj)

    def on_update(self, old: dict[str, Any], new: dict[str, Any]) -> None:
        if _resource_version(old) == _resource_version(new):
            return
        self.operator.logger.info("%s %s updated", self.kind.value, object_key(new))
        self._wake_dependents(new)

    def on_delete(self, obj: dict[str, Any]) -> None:
        self.operator.logger.info("%s %s deleted", self.kind.value, object_key(obj))
        self._wake_dependents(obj)


class _DerivedHandler:
    """Re-queues the Function or Flow owning a changed Deployment or Service.

    Derived objects carry their owner's name, so the object's own key is the
    owner's key.
    """

    def __init__(self, operator: Operator, kind: Kind, owner_kinds: tuple[Kind, ...]) -> None:
        self.operator = operator
        self.kind = kind
        self.owner_kinds = owner_kinds

    def _wake_owner(self, obj: dict[str, Any]) -> None:
        owner = self.operator.owner_of(obj, self.owner_kinds)
        if owner is not None:
            self.operator.enqueue(owner)

    def on_add(self, obj: dict[str, Any]) -> None:
        self._wake_owner(obj)

    def on_update(self, old: dict[str, Any], new: dict[str, Any]) -> None:
        # Periodic resync resends unchanged objects; this also breaks the
        # loop created by our own writes.
        if _resource_version(old) == _resource_version(new):
            return
        self._wake_owner(new)

    def on_delete(self, obj: dict[str, Any]) -> None:
        self._wake_owner(obj)


class Operator:
    """Reconciles Functions and Flows into Deployments and Services.

    One informer per kind mirrors cluster state; change handlers resolve the
    affected Function or Flow and put its :class:`ResourceKey` on the work
    queue; a single worker thread drains the queue and runs :meth:`sync`.
    Syncs read dependencies from the informer caches at sync time, so a
    Runtime or Connector edit racing with a dependent's sync resolves to the
    latest known value.

    A failed sync is logged and its key is released only after
    ``retry_delay_seconds``, so the retry is deferred and never lost.
    """

    def __init__(
        self,
        cluster: ClusterStore,
        namespace: str | None = None,
        logger: logging.Logger | None = None,
        metrics: OperatorMetrics = METRICS,
        resync_seconds: int = DEFAULT_RESYNC_SECONDS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        teardown_timeout_seconds: float | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cluster = cluster
        self.namespace = namespace or None
        self.logger = logger or logging.getLogger(__name__)
        self.metrics = metrics
        self.retry_delay_seconds = retry_delay_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.teardown_timeout_seconds = teardown_timeout_seconds
        self.sleep_fn = sleep_fn
        self.monotonic_fn = monotonic_fn

        self.queue: WorkQueue[ResourceKey] = WorkQueue(metrics=metrics)
        self.informers: dict[Kind, Informer] = {
            kind: Informer(
                cluster,
                kind,
                namespace=self.namespace,
                resync_seconds=resync_seconds,
                logger=self.logger.getChild("informer"),
                metrics=metrics,
            )
            for kind in Kind
        }
        self.informers[Kind.FUNCTION].add_handler(_PrimaryHandler(self, Kind.FUNCTION))
        self.informers[Kind.FLOW].add_handler(_PrimaryHandler(self, Kind.FLOW))
        self.informers[Kind.RUNTIME].add_handler(_DependencyHandler(self, Kind.RUNTIME))
        self.informers[Kind.CONNECTOR].add_handler(_DependencyHandler(self, Kind.CONNECTOR))
        self.informers[Kind.DEPLOYMENT].add_handler(
            _DerivedHandler(self, Kind.DEPLOYMENT, (Kind.FUNCTION, Kind.FLOW))
        )
        self.informers[Kind.SERVICE].add_handler(
            _DerivedHandler(self, Kind.SERVICE, (Kind.FUNCTION,))
        )

        self.ready = threading.Event()
        self._external_stop = threading.Event()

    # -- event routing -------------------------------------------------

    def enqueue(self, key: ResourceKey) -> None:
        if not key.name:
            self.logger.warning("Ignoring %s event without a name", key.kind.value)
            return
        self.queue.add(key)

    def owner_of(self, obj: dict[str, Any], owner_kinds: tuple[Kind, ...]) -> ResourceKey | None:
        key = object_key(obj)
        for kind in owner_kinds:
            if self.informers[kind].get_by_key(key) is not None:
                return ResourceKey.parse(kind, key)
        return None

    def dependents_of(self, kind: Kind, obj: dict[str, Any]) -> list[ResourceKey]:
        """Return the keys of every Function or Flow referencing the ``kind`` object."""
        changed_key = object_key(obj)
        answer: list[ResourceKey] = []
        for dependent_kind, (dependency_kind, label) in _REFERENCES.items():
            if dependency_kind is not kind:
                continue
            informer = self.informers[dependent_kind]
            for dependent in informer.list():
                metadata = dependent.get("metadata") or {}
                reference = (metadata.get("labels") or {}).get(label, "")
                if reference and dependency_key(reference, metadata.get("namespace") or "") == changed_key:
                    answer.append(ResourceKey.for_object(dependent_kind, dependent))
            if informer.get_by_key(changed_key) is not None:
                same_name = ResourceKey.parse(dependent_kind, changed_key)
                if same_name not in answer:
                    answer.append(same_name)
        return sorted(answer, key=lambda k: k.namespaced_name)

    # -- reconciliation ------------------------------------------------

    def sync(self, key: ResourceKey) -> None:
        if key.kind is Kind.FUNCTION:
            self.sync_function(key)
        elif key.kind is Kind.FLOW:
            self.sync_flow(key)
        else:
            raise ReconcileError(f"Cannot reconcile {key}: only Functions and Flows are reconciled")

    def _resolve_dependency(self, dependent: FunctionRecord | FlowRecord, kind: Kind) -> dict[str, Any]:
        _, label = _REFERENCES[dependent.kind]
        reference = dependent.labels.get(label, "")
        owner = f"{dependent.kind.value} {dependent.namespace}/{dependent.name}"
        if not reference:
            raise DependencyMissingError(f"{owner} does not have label {label}")
        key = dependency_key(reference, dependent.namespace)
        informer = self.informers[kind]
        obj = informer.get_by_key(key)
        if obj is None:
            raise DependencyMissingError(
                f"{kind.value} {key} does not exist for {owner}; "
                f"current {kind.value.lower()} keys are {informer.list_keys()}"
            )
        return obj

    def _apply(self, kind: Kind, namespace: str, body: dict[str, Any], exists: bool) -> None:
        name = body["metadata"]["name"]
        if exists:
            self.cluster.update(kind, namespace, body)
            self.logger.info("Updated %s %s/%s", kind.value, namespace, name)
        else:
            self.cluster.create(kind, namespace, body)
            self.logger.info("Created %s %s/%s", kind.value, namespace, name)

    def sync_function(self, key: ResourceKey) -> None:
        """Converge the Deployment and Service of a Function, or tear them down if it is gone."""
        obj = self.informers[Kind.FUNCTION].get_by_key(key.namespaced_name)
        if obj is None:
            self.destroy_deployment(key.with_kind(Kind.DEPLOYMENT))
            self.destroy_service(key.with_kind(Kind.SERVICE))
            return

        function = FunctionRecord.from_config_map(obj)
        runtime = RuntimeRecord.from_config_map(self._resolve_dependency(function, Kind.RUNTIME))
        self.logger.debug(
            "Reconciling Function %s with labels %s on Runtime %s",
            key.namespaced_name,
            function.labels,
            runtime.name,
        )

        old_deployment = self.informers[Kind.DEPLOYMENT].get_by_key(key.namespaced_name)
        old_service = self.informers[Kind.SERVICE].get_by_key(key.namespaced_name)
        deployment = make_function_deployment(function, runtime, old_deployment)
        service = make_function_service(function, runtime, old_service, deployment)

        self._apply(Kind.DEPLOYMENT, key.namespace, deployment, exists=old_deployment is not None)
        self._apply(Kind.SERVICE, key.namespace, service, exists=old_service is not None)

    def sync_flow(self, key: ResourceKey) -> None:
        """Converge the Deployment of a Flow, or tear it down if the Flow is gone."""
        obj = self.informers[Kind.FLOW].get_by_key(key.namespaced_name)
        if obj is None:
            self.destroy_deployment(key.with_kind(Kind.DEPLOYMENT))
            return

        flow = FlowRecord.from_config_map(obj)
        connector = ConnectorRecord.from_config_map(self._resolve_dependency(flow, Kind.CONNECTOR))

        old_deployment = self.informers[Kind.DEPLOYMENT].get_by_key(key.namespaced_name)
        deployment = make_flow_deployment(flow, connector, old_deployment)
        self._apply(Kind.DEPLOYMENT, key.namespace, deployment, exists=old_deployment is not None)

    def _scaled_down(self, namespace: str, name: str, generation: int) -> bool | None:
        """Return whether the Deployment has settled at zero replicas, or None if it is gone."""
        try:
            current = self.cluster.get(Kind.DEPLOYMENT, namespace, name)
        except NotFoundError:
            return None
        metadata = current.get("metadata") or {}
        status = current.get("status") or {}
        target = max(generation, int(metadata.get("generation") or 0))
        observed = int(status.get("observedGeneration") or 0)
        replicas = int(status.get("replicas") or 0)
        return observed >= target and replicas == 0

    def destroy_deployment(self, key: ResourceKey) -> None:
        """Scale the derived Deployment to zero, wait for it to settle, then delete it.

        The poll is unbounded unless ``teardown_timeout_seconds`` is set.
        """
        deployment = self.informers[Kind.DEPLOYMENT].get_by_key(key.namespaced_name)
        if deployment is None:
            return
        metadata = deployment.get("metadata") or {}
        namespace = metadata.get("namespace") or key.namespace
        name = metadata.get("name") or key.name
        generation = int(metadata.get("generation") or 0)

        self.logger.info("Scaling down Deployment %s/%s before deletion", namespace, name)
        try:
            self.cluster.set_replicas(namespace, name, 0)
        except NotFoundError:
            return

        started = self.monotonic_fn()
        while True:
            settled = self._scaled_down(namespace, name, generation)
            if settled is None:
                return
            if settled:
                break
            if (
                self.teardown_timeout_seconds is not None
                and self.monotonic_fn() - started >= self.teardown_timeout_seconds
            ):
                raise TeardownTimeoutError(
                    f"Deployment {namespace}/{name} did not scale to zero within "
                    f"{self.teardown_timeout_seconds}s"
                )
            self.sleep_fn(self.poll_interval_seconds)

        try:
            self.cluster.delete(Kind.DEPLOYMENT, namespace, name, cascade=False)
        except NotFoundError:
            return
        self.metrics.teardowns_total.labels(kind=Kind.DEPLOYMENT.value).inc()
        self.logger.info("Deleted Deployment %s/%s", namespace, name)

    def destroy_service(self, key: ResourceKey) -> None:
        service = self.informers[Kind.SERVICE].get_by_key(key.namespaced_name)
        if service is None:
            return
        metadata = service.get("metadata") or {}
        namespace = metadata.get("namespace") or key.namespace
        name = metadata.get("name") or key.name
        try:
            self.cluster.delete(Kind.SERVICE, namespace, name, cascade=False)
        except NotFoundError:
            return
        self.metrics.teardowns_total.labels(kind=Kind.SERVICE.value).inc()
        self.logger.info("Deleted Service %s/%s", namespace, name)

    # -- worker --------------------------------------------------------

    def process_next(self, timeout: float | None = None) -> bool:
        """Run one worker iteration; returns False once the queue is shut down."""
        key, shutdown = self.queue.get(timeout=timeout)
        if shutdown:
            return False
        if key is None:
            return True

        started = self.monotonic_fn()
        try:
            self.sync(key)
        except ReconcileError as exc:
            self.logger.error(
                "Reconciliation of %s failed, re-enqueueing in %ss: %s",
                key,
                self.retry_delay_seconds,
                exc,
            )
            self._record_failure(key)
        except Exception:
            self.logger.exception(
                "Reconciliation of %s failed, re-enqueueing in %ss",
                key,
                self.retry_delay_seconds,
            )
            self._record_failure(key)
        else:
            self.metrics.reconciles_total.labels(kind=key.kind.value, result="success").inc()
            self.queue.done(key)
        finally:
            self.metrics.reconcile_duration_seconds.labels(kind=key.kind.value).observe(
                self.monotonic_fn() - started
            )
        return True

    def _record_failure(self, key: ResourceKey) -> None:
        self.metrics.reconciles_total.labels(kind=key.kind.value, result="error").inc()
        self.metrics.retries_total.labels(kind=key.kind.value).inc()
        # The key stays in-flight until the delay expires, so no other
        # attempt for it can start in between.
        self.queue.done_after(key, self.retry_delay_seconds, requeue=True)

    def _run_worker(self) -> None:
        while self.process_next():
            pass
        self.logger.info("Worker stopped")

    # -- lifecycle -----------------------------------------------------

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt any open watch streams."""
        self._external_stop.set()
        stop_watches = getattr(self.cluster, "stop_watches", None)
        if callable(stop_watches):
            stop_watches()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run(self, stop_event: threading.Event | None = None, shutdown_timeout_seconds: float = 30.0) -> None:
        """Start the informers and the worker, then block until stopped.

        On stop the queue is shut down (waking the worker), informers are
        stopped, and the worker is given ``shutdown_timeout_seconds`` to
        finish the item it is reconciling. A stopped operator can be run again,
        e.g. after leadership is regained: each run gets a fresh queue and the
        informers re-list, replaying every cached object.
        """
        stop = stop_event or threading.Event()
        self._external_stop.clear()
        self.queue = WorkQueue(metrics=self.metrics)

        for informer in self.informers.values():
            informer.start()

        for informer in self.informers.values():
            while not informer.synced.wait(timeout=0.5):
                if self._should_stop(stop):
                    break
        worker: threading.Thread | None = None
        if not self._should_stop(stop):
            self.logger.info("Informer caches synced; starting worker")
            self.ready.set()
            worker = threading.Thread(target=self._run_worker, name="funktion-worker", daemon=True)
            worker.start()

        while not self._should_stop(stop):
            stop.wait(timeout=0.5)

        self.ready.clear()
        self.queue.shut_down()
        for informer in self.informers.values():
            informer.stop()
        stop_watches = getattr(self.cluster, "stop_watches", None)
        if callable(stop_watches):
            stop_watches()
        if worker is not None:
            worker.join(timeout=shutdown_timeout_seconds)
            if worker.is_alive():
                self.logger.error(
                    "Worker did not finish its current item within %ss", shutdown_timeout_seconds
                )
        for informer in self.informers.values():
            informer.join(timeout=shutdown_timeout_seconds)
        self.logger.info("Operator stopped")


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_operator_from_env(cluster: ClusterStore) -> Operator:
    """Construct an :class:`Operator` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``: namespace to watch (empty: all namespaces).
        ``RESYNC_SECONDS``: informer full re-list period (``30``).
        ``RETRY_DELAY_SECONDS``: delay before a failed key is retried (``3``).
        ``TEARDOWN_POLL_SECONDS``: scale-down poll interval (``1``).
        ``TEARDOWN_TIMEOUT_SECONDS``: give up waiting for scale-down (``0``: never).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "").strip() or None
    resync_seconds = env_int("RESYNC_SECONDS", DEFAULT_RESYNC_SECONDS, minimum=1)
    retry_delay_seconds = env_int("RETRY_DELAY_SECONDS", int(DEFAULT_RETRY_DELAY_SECONDS), minimum=0)
    poll_seconds = env_int("TEARDOWN_POLL_SECONDS", int(DEFAULT_POLL_INTERVAL_SECONDS), minimum=1)
    teardown_timeout = env_int("TEARDOWN_TIMEOUT_SECONDS", 0, minimum=0)

    return Operator(
        cluster=cluster,
        namespace=namespace,
        resync_seconds=resync_seconds,
        retry_delay_seconds=float(retry_delay_seconds),
        poll_interval_seconds=float(poll_seconds),
        teardown_timeout_seconds=float(teardown_timeout) if teardown_timeout else None,
    )
