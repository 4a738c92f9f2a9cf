from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from funktion.src.leader import DEFAULT_LEASE_NAME, LeaseLeaderElector, default_identity


def _make_elector(
    coordination_api: Any = None,
    identity: str = "operator-0",
    monotonic_fn: Any = None,
    **kwargs: Any,
) -> LeaseLeaderElector:
    kwargs.setdefault("retry_period_seconds", 0)
    if monotonic_fn is not None:
        kwargs["monotonic_fn"] = monotonic_fn
    return LeaseLeaderElector(
        coordination_api=coordination_api or MagicMock(),
        namespace="funktion",
        identity=identity,
        metrics=MagicMock(),
        **kwargs,
    )


def _lease(holder: str | None, renewed_ago: float, acquired_ago: float = 60) -> V1Lease:
    now = datetime.now(UTC)
    return V1Lease(
        metadata=V1ObjectMeta(name=DEFAULT_LEASE_NAME, namespace="funktion"),
        spec=V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=15,
            renew_time=now - timedelta(seconds=renewed_ago),
            acquire_time=now - timedelta(seconds=acquired_ago),
        ),
    )


class TestAcquireOrRenew:
    def test_creates_missing_lease(self) -> None:
        api = MagicMock()
        api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")

        assert _make_elector(api).try_acquire_or_renew() is True

        body = api.create_namespaced_lease.call_args.kwargs["body"]
        assert body.metadata.name == "funktion-operator-leader"
        assert body.spec.holder_identity == "operator-0"

    def test_create_conflict_loses_the_race(self) -> None:
        api = MagicMock()
        api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
        api.create_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

        assert _make_elector(api).try_acquire_or_renew() is False

    def test_renewal_keeps_acquire_time(self) -> None:
        lease = _lease("operator-0", renewed_ago=5, acquired_ago=30)
        original_acquire = lease.spec.acquire_time
        api = MagicMock()
        api.read_namespaced_lease.return_value = lease

        assert _make_elector(api).try_acquire_or_renew() is True

        body = api.replace_namespaced_lease.call_args.kwargs["body"]
        assert body.spec.acquire_time == original_acquire
        assert body.spec.renew_time > original_acquire

    def test_active_holder_is_respected(self) -> None:
        api = MagicMock()
        api.read_namespaced_lease.return_value = _lease("operator-1", renewed_ago=2)

        assert _make_elector(api).try_acquire_or_renew() is False
        api.replace_namespaced_lease.assert_not_called()

    def test_expired_lease_is_taken_over(self) -> None:
        lease = _lease("operator-1", renewed_ago=60, acquired_ago=120)
        old_acquire = lease.spec.acquire_time
        api = MagicMock()
        api.read_namespaced_lease.return_value = lease

        assert _make_elector(api).try_acquire_or_renew() is True

        body = api.replace_namespaced_lease.call_args.kwargs["body"]
        assert body.spec.holder_identity == "operator-0"
        assert body.spec.acquire_time != old_acquire

    def test_released_lease_is_claimed(self) -> None:
        api = MagicMock()
        api.read_namespaced_lease.return_value = _lease(None, renewed_ago=1)

        assert _make_elector(api).try_acquire_or_renew() is True

    def test_read_failure_is_not_leadership(self) -> None:
        api = MagicMock()
        api.read_namespaced_lease.side_effect = ApiException(status=500, reason="boom")

        assert _make_elector(api).try_acquire_or_renew() is False


class TestStep:
    def test_transitions_fire_callbacks_once(self) -> None:
        clock = {"now": 0.0}
        elector = _make_elector(monotonic_fn=lambda: clock["now"])
        started, stopped = MagicMock(), MagicMock()
        results = iter([True, True, False, False])

        with patch.object(elector, "try_acquire_or_renew", side_effect=lambda: next(results)):
            elector.step(started, stopped)
            elector.step(started, stopped)
            clock["now"] = 5.0
            elector.step(started, stopped)
            assert elector.is_leader
            clock["now"] = 20.0
            elector.step(started, stopped)

        started.assert_called_once()
        stopped.assert_called_once()
        assert not elector.is_leader
        elector.metrics.leader_transitions_total.labels.assert_any_call(transition="acquired")
        elector.metrics.leader_transitions_total.labels.assert_any_call(transition="lost")

    def test_unexpected_errors_count_as_failed_round(self) -> None:
        elector = _make_elector()
        started = MagicMock()

        with patch.object(elector, "try_acquire_or_renew", side_effect=RuntimeError("boom")):
            elector.step(started, MagicMock())

        started.assert_not_called()


def test_run_releases_lease_on_stop() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        ApiException(status=404, reason="Not Found"),
        _lease("operator-0", renewed_ago=0),
    ]
    elector = _make_elector(api)
    stop = threading.Event()
    stopped = MagicMock()

    elector.run(on_started_leading=stop.set, on_stopped_leading=stopped, stop_event=stop)

    stopped.assert_called_once()
    assert not elector.is_leader
    released = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert released.spec.holder_identity is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"lease_duration_seconds": 10, "renew_deadline_seconds": 10},
        {"renew_deadline_seconds": 2, "retry_period_seconds": 2},
        {"lease_duration_seconds": 0},
    ],
)
def test_rejects_inconsistent_timings(kwargs: dict[str, int]) -> None:
    with pytest.raises(ValueError):
        _make_elector(**kwargs)


def test_default_identity_uses_pod_hostname(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOSTNAME", "funktion-operator-7d9c")

    assert default_identity() == "funktion-operator-7d9c"
    assert _make_elector(identity="").identity == "funktion-operator-7d9c"
