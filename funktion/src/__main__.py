from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from funktion.src.health import start_health_server
from funktion.src.kube import KubeClusterStore, build_clients, load_kube_configuration
from funktion.src.metrics import METRICS
from funktion.src.reconciler import Operator, build_operator_from_env, env_int

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger("funktion.operator")


def redact_sensitive_text(value: str) -> str:
    """Mask bearer tokens and credential-like values, e.g. from env vars echoed in errors."""
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def _parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


class LeadershipRunner:
    """Starts the operator when this replica becomes leader and stops it when it is not.

    Only one operator run may be alive at a time: if a previous run has not
    exited within ``stop_timeout_seconds`` of losing the lease, the process
    shuts down rather than risk two workers reconciling the same keys.
    """

    def __init__(
        self,
        operator: Operator,
        shutdown_event: threading.Event,
        leader_ready: threading.Event,
        stop_timeout_seconds: int,
    ) -> None:
        self.operator = operator
        self.shutdown_event = shutdown_event
        self.leader_ready = leader_ready
        self.stop_timeout_seconds = stop_timeout_seconds
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._lock = threading.Lock()

    def _run_operator(self, stop: threading.Event) -> None:
        unexpected_exit = False
        try:
            self.operator.run(stop_event=stop)
            unexpected_exit = not stop.is_set() and not self.shutdown_event.is_set()
            if unexpected_exit:
                LOGGER.error("Operator exited without a stop signal; terminating process")
        except Exception:
            unexpected_exit = True
            LOGGER.exception("Operator thread crashed")
        finally:
            if unexpected_exit:
                self.shutdown_event.set()

    def on_started_leading(self) -> None:
        with self._lock:
            if self.shutdown_event.is_set():
                return
            if self._thread is not None and self._thread.is_alive():
                LOGGER.error("Refusing to start the operator while the previous run is still stopping")
                self.shutdown_event.set()
                return
            self._stop = threading.Event()
            self.leader_ready.set()
            self._thread = threading.Thread(
                target=self._run_operator,
                args=(self._stop,),
                name="funktion-operator",
                daemon=True,
            )
            self._thread.start()

    def on_stopped_leading(self) -> None:
        with self._lock:
            self.leader_ready.clear()
            self.operator.request_stop()
            self._stop.set()
            if self._thread is None:
                return
            self._thread.join(timeout=self.stop_timeout_seconds)
            if self._thread.is_alive():
                LOGGER.error(
                    "Operator did not stop within %ss after losing leadership; forcing shutdown",
                    self.stop_timeout_seconds,
                )
                self.shutdown_event.set()
                return
            self._thread = None


def _build_elector(watch_namespace: str | None):
    from kubernetes.client import CoordinationV1Api

    from funktion.src.leader import DEFAULT_LEASE_NAME, LeaseLeaderElector, default_identity

    namespace = os.getenv("LEADER_ELECTION_NAMESPACE", "").strip() or watch_namespace or "default"
    lease_duration_seconds = env_int("LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1)
    renew_deadline_seconds = env_int("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1)
    retry_period_seconds = env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)

    if renew_deadline_seconds >= lease_duration_seconds:
        raise ValueError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period_seconds >= renew_deadline_seconds:
        raise ValueError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    return LeaseLeaderElector(
        coordination_api=CoordinationV1Api(),
        namespace=namespace,
        lease_name=os.getenv("LEADER_ELECTION_LEASE_NAME", DEFAULT_LEASE_NAME),
        identity=os.getenv("LEADER_ELECTION_IDENTITY", default_identity()),
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
    )


def main() -> None:
    """Operator entrypoint: configure logging, elect a leader and reconcile until signalled."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, apps_api = build_clients()
    operator = build_operator_from_env(KubeClusterStore(core_api, apps_api))

    leader_election_enabled = _parse_bool_env("LEADER_ELECTION_ENABLED", default=True)
    leader_ready = threading.Event() if leader_election_enabled else None
    health_server = start_health_server(
        synced=operator.ready,
        port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535),
        leader=leader_ready,
        pending_fn=lambda: len(operator.queue),
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        operator.request_stop()
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if leader_ready is not None:
        elector = _build_elector(operator.namespace)
        runner = LeadershipRunner(
            operator,
            shutdown_event,
            leader_ready,
            # Longer than a watch timeout, so a handoff never overlaps two runs.
            stop_timeout_seconds=env_int("LEADER_ELECTION_OPERATOR_STOP_TIMEOUT_SECONDS", 45, minimum=1),
        )
        elector.run(
            on_started_leading=runner.on_started_leading,
            on_stopped_leading=runner.on_stopped_leading,
            stop_event=shutdown_event,
        )
        runner.on_stopped_leading()
    else:
        operator.run(stop_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("Operator stopped")


if __name__ == "__main__":
    main()
