from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from funktion.src.metrics import METRICS, OperatorMetrics

LOGGER = logging.getLogger(__name__)

DEFAULT_LEASE_NAME = "funktion-operator-leader"


class LeaseLeaderElector:
    """Keeps a single operator replica reconciling through a ``coordination.k8s.io/v1`` Lease.

    Every ``retry_period_seconds`` the elector reads the Lease and either
    creates it, renews it (when this identity holds it) or takes it over
    once the holder has let ``renewTime + leaseDurationSeconds`` pass. A
    ``409 Conflict`` means another replica won the race and is retried on
    the next cycle.

    A leader whose renewals keep failing stays leader until
    ``renew_deadline_seconds`` have passed since the last good renewal, and
    only then reports ``on_stopped_leading`` so the operator's informers and
    worker can shut down before another replica starts its own.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str = DEFAULT_LEASE_NAME,
        identity: str = "",
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
        metrics: OperatorMetrics = METRICS,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity or default_identity()
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.metrics = metrics
        self.monotonic_fn = monotonic_fn
        self._is_leader = False
        self._wait_started = 0.0
        self._last_renewal = 0.0

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _lease_expired(self, spec: V1LeaseSpec, now: datetime) -> bool:
        if spec.renew_time is None:
            return True
        renewed = spec.renew_time if spec.renew_time.tzinfo else spec.renew_time.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renewed).total_seconds() >= duration

    def try_acquire_or_renew(self) -> bool:
        """Run one acquire-or-renew round against the Lease; True when we hold it afterwards."""
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s/%s: %s", self.namespace, self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is None or spec.holder_identity in (None, "", self.identity):
            return self._write_lease(lease, now)
        if not self._lease_expired(spec, now):
            LOGGER.debug("Lease %s is held by %s", self.lease_name, spec.holder_identity)
            return False
        LOGGER.info("Lease %s held by %s has expired; taking over", self.lease_name, spec.holder_identity)
        return self._write_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s was created concurrently, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def _write_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Claim or renew ``lease``; ``acquireTime`` moves only when the holder changes."""
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        if lease.spec.holder_identity != self.identity or lease.spec.acquire_time is None:
            lease.spec.acquire_time = now
        lease.spec.holder_identity = self.identity
        lease.spec.renew_time = now
        lease.spec.lease_duration_seconds = self.lease_duration_seconds
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s update conflict, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear our holder identity so a standby replica can take over at once."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec is None or lease.spec.holder_identity != self.identity:
                return
            lease.spec.holder_identity = None
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
            LOGGER.info("Released leader lease %s", self.lease_name)
        except ApiException as exc:
            LOGGER.warning("Failed to release leader lease %s: %s", self.lease_name, exc.reason)

    def _became_leader(self, on_started_leading: Callable[[], None]) -> None:
        self._is_leader = True
        self._last_renewal = self.monotonic_fn()
        LOGGER.info("Became leader (identity=%s)", self.identity)
        self.metrics.leader_state.set(1)
        self.metrics.leader_transitions_total.labels(transition="acquired").inc()
        self.metrics.leader_acquire_latency_seconds.observe(self._last_renewal - self._wait_started)
        on_started_leading()

    def _lost_leadership(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        self._wait_started = self.monotonic_fn()
        self.metrics.leader_state.set(0)
        self.metrics.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def step(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
    ) -> None:
        """Run one election round and fire a callback when leadership changes."""
        try:
            acquired = self.try_acquire_or_renew()
        except Exception:
            LOGGER.exception("Unexpected error in leader election round")
            acquired = False

        if acquired:
            if self._is_leader:
                self._last_renewal = self.monotonic_fn()
            else:
                self._became_leader(on_started_leading)
            return
        if not self._is_leader:
            return

        stale_for = self.monotonic_fn() - self._last_renewal
        if stale_for < self.renew_deadline_seconds:
            LOGGER.warning(
                "Lease renewal failed; keeping leadership for up to %ss (%.2fs since last renewal)",
                self.renew_deadline_seconds,
                stale_for,
            )
            return
        LOGGER.warning("Lost leader lease after %.2fs without a successful renewal", stale_for)
        self._lost_leadership(on_stopped_leading)

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign until ``stop_event`` is set, then release the lease if we hold it."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        self._wait_started = self.monotonic_fn()
        self.metrics.leader_state.set(0)

        while not stop_event.is_set():
            self.step(on_started_leading, on_stopped_leading)
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._lost_leadership(on_stopped_leading)


def default_identity() -> str:
    """Return this replica's identity: the pod name the downward API puts in ``HOSTNAME``."""
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))
