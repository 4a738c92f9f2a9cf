from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Callable, Iterator
from contextlib import ExitStack, contextmanager
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from funktion.src.__main__ import JSONFormatter, LeadershipRunner, _parse_bool_env, main


def _record(msg: str = "test message", exc_info: object = None) -> logging.LogRecord:
    return logging.LogRecord(
        name="funktion.operator",
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,  # type: ignore[arg-type]
    )


class TestJSONFormatter:
    def test_format_produces_single_line_json(self) -> None:
        output = JSONFormatter().format(_record(msg="line one\nline two"))
        parsed = json.loads(output)

        assert output.count("\n") == 0
        assert parsed["msg"] == "line one\nline two"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "funktion.operator"
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = _record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_redacts_sensitive_values(self) -> None:
        record = _record(
            msg=(
                "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
                "url=/readyz?access_token=qwerty"
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        for secret in ("abc123", "hunter2", "abc.def.ghi", "qwerty"):
            assert secret not in message

    def test_format_redacts_exception_text(self) -> None:
        try:
            raise ValueError("token=abc123")
        except ValueError:
            record = _record(exc_info=sys.exc_info())

        error = json.loads(JSONFormatter().format(record))["error"]

        assert "[REDACTED]" in error
        assert "abc123" not in error


class TestParseBoolEnv:
    def test_returns_default_when_unset(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TEST_BOOL_VAR", raising=False)
        assert _parse_bool_env("TEST_BOOL_VAR", default=False) is False
        assert _parse_bool_env("TEST_BOOL_VAR", default=True) is True

    @pytest.mark.parametrize("value", ["true", "TRUE", "1", "yes", "on", "  true  "])
    def test_truthy_values(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("TEST_BOOL_VAR", value)
        assert _parse_bool_env("TEST_BOOL_VAR") is True

    @pytest.mark.parametrize("value", ["false", "0", "no", "off", ""])
    def test_falsy_values(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("TEST_BOOL_VAR", value)
        assert _parse_bool_env("TEST_BOOL_VAR") is False


def _operator(run: Callable[..., None] | None = None) -> MagicMock:
    operator = MagicMock()
    operator.ready = threading.Event()
    operator.namespace = None
    operator.queue = []

    def stop_immediately(stop_event: threading.Event | None = None) -> None:
        if stop_event is not None:
            stop_event.set()

    operator.run.side_effect = run or stop_immediately
    return operator


@contextmanager
def _patched_main(operator: object, elector: object = None) -> Iterator[SimpleNamespace]:
    with ExitStack() as stack:
        stack.enter_context(patch("funktion.src.__main__.load_kube_configuration"))
        stack.enter_context(
            patch(
                "funktion.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            )
        )
        stack.enter_context(patch("funktion.src.__main__.KubeClusterStore"))
        stack.enter_context(
            patch("funktion.src.__main__.build_operator_from_env", return_value=operator)
        )
        health = stack.enter_context(patch("funktion.src.__main__.start_health_server"))
        stack.enter_context(patch("funktion.src.__main__.signal.signal"))
        stack.enter_context(patch("funktion.src.leader.default_identity", return_value="operator-0"))
        elector_cls = stack.enter_context(
            patch("funktion.src.leader.LeaseLeaderElector", return_value=elector or MagicMock())
        )
        stack.enter_context(patch("kubernetes.client.CoordinationV1Api", return_value=SimpleNamespace()))
        yield SimpleNamespace(health=health, elector_cls=elector_cls)


def _elector(script: Callable[..., None]) -> MagicMock:
    elector = MagicMock()
    elector.run.side_effect = script
    return elector


class TestMainEntrypoint:
    def test_main_without_leader_election(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "false")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        operator = _operator()

        with _patched_main(operator) as mocks:
            main()

        operator.run.assert_called_once()
        kwargs = mocks.health.call_args.kwargs
        assert kwargs["leader"] is None
        assert kwargs["synced"] is operator.ready
        assert kwargs["pending_fn"]() == 0
        mocks.health.return_value.shutdown.assert_called_once()

    def test_main_builds_elector_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "true")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("LEADER_ELECTION_LEASE_DURATION_SECONDS", "20")
        monkeypatch.setenv("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", "12")
        monkeypatch.setenv("LEADER_ELECTION_RETRY_PERIOD_SECONDS", "3")
        monkeypatch.delenv("LEADER_ELECTION_NAMESPACE", raising=False)
        monkeypatch.delenv("LEADER_ELECTION_IDENTITY", raising=False)
        operator = _operator()
        operator.namespace = "team-a"

        def script(*, on_started_leading, on_stopped_leading, stop_event) -> None:
            on_started_leading()
            on_stopped_leading()
            stop_event.set()

        with _patched_main(operator, _elector(script)) as mocks:
            main()

        assert isinstance(mocks.health.call_args.kwargs["leader"], threading.Event)
        ctor_kwargs = mocks.elector_cls.call_args.kwargs
        assert ctor_kwargs["namespace"] == "team-a"
        assert ctor_kwargs["identity"] == "operator-0"
        assert ctor_kwargs["lease_name"] == "funktion-operator-leader"
        assert ctor_kwargs["lease_duration_seconds"] == 20
        assert ctor_kwargs["renew_deadline_seconds"] == 12
        assert ctor_kwargs["retry_period_seconds"] == 3
        mocks.health.return_value.shutdown.assert_called_once()

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "false")
        operator = _operator()

        with _patched_main(operator):
            with patch("funktion.src.__main__.signal.signal") as register:
                main()

        registered = {call.args[0] for call in register.call_args_list}
        assert registered == {signal.SIGTERM, signal.SIGINT}
        handler = register.call_args_list[0].args[1]
        handler(signal.SIGTERM, None)
        operator.request_stop.assert_called()

    def test_main_rejects_invalid_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "false")
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with _patched_main(_operator()):
            with pytest.raises(ValueError, match="HEALTH_PORT must be <= 65535, got: 70000"):
                main()

    def test_main_rejects_invalid_leader_timing(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "true")
        monkeypatch.setenv("LEADER_ELECTION_LEASE_DURATION_SECONDS", "10")
        monkeypatch.setenv("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", "10")
        monkeypatch.setenv("LEADER_ELECTION_RETRY_PERIOD_SECONDS", "2")

        with _patched_main(_operator()):
            with pytest.raises(
                ValueError,
                match=(
                    "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
                    "LEADER_ELECTION_LEASE_DURATION_SECONDS"
                ),
            ):
                main()

    def test_leadership_handoff_does_not_set_global_shutdown(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "true")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        started = threading.Event()

        def run(stop_event: threading.Event | None = None) -> None:
            assert stop_event is not None
            started.set()
            stop_event.wait(timeout=1.0)

        operator = _operator(run)

        def script(*, on_started_leading, on_stopped_leading, stop_event) -> None:
            on_started_leading()
            assert started.wait(timeout=1.0)
            on_stopped_leading()
            assert not stop_event.is_set()
            stop_event.set()

        with _patched_main(operator, _elector(script)) as mocks:
            main()

        operator.run.assert_called_once()
        operator.request_stop.assert_called()
        mocks.health.return_value.shutdown.assert_called_once()

    def test_unexpected_operator_exit_shuts_down(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "true")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        operator = _operator(lambda stop_event=None: None)

        def script(*, on_started_leading, on_stopped_leading, stop_event) -> None:
            on_started_leading()
            assert stop_event.wait(timeout=1.0)

        with _patched_main(operator, _elector(script)) as mocks:
            main()

        operator.run.assert_called_once()
        mocks.health.return_value.shutdown.assert_called_once()

    def test_stuck_operator_blocks_a_second_start(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LEADER_ELECTION_ENABLED", "true")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("LEADER_ELECTION_OPERATOR_STOP_TIMEOUT_SECONDS", "1")
        started = threading.Event()

        def run(stop_event: threading.Event | None = None) -> None:
            started.set()
            # Ignores its stop event, like a watch stuck on a dead connection.
            threading.Event().wait(timeout=2.0)

        operator = _operator(run)

        def script(*, on_started_leading, on_stopped_leading, stop_event) -> None:
            on_started_leading()
            assert started.wait(timeout=1.0)
            on_stopped_leading()
            on_started_leading()
            assert stop_event.wait(timeout=2.0)

        with _patched_main(operator, _elector(script)) as mocks:
            main()

        operator.run.assert_called_once()
        assert operator.request_stop.call_count >= 1
        mocks.health.return_value.shutdown.assert_called_once()


def test_runner_tracks_leader_readiness() -> None:
    operator = _operator(lambda stop_event=None: stop_event.wait(timeout=1.0))
    shutdown, leader_ready = threading.Event(), threading.Event()
    runner = LeadershipRunner(operator, shutdown, leader_ready, stop_timeout_seconds=1)

    runner.on_started_leading()
    assert leader_ready.is_set()
    runner.on_stopped_leading()

    assert not leader_ready.is_set()
    assert not shutdown.is_set()
    operator.request_stop.assert_called_once()
