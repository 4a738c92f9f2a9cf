from __future__ import annotations

import threading
import urllib.error
import urllib.request

from funktion.src.health import start_health_server
from funktion.src.metrics import METRICS


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServerWithLeadership:
    def setup_method(self) -> None:
        self.synced = threading.Event()
        self.leader = threading.Event()
        self.pending = 0
        self.server = start_health_server(
            synced=self.synced,
            port=0,
            leader=self.leader,
            pending_fn=lambda: self.pending,
        )
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        assert _get(f"{self.base_url}/healthz") == (200, "ok")

    def test_readyz_waits_for_informer_sync(self) -> None:
        self.leader.set()

        status, body = _get(f"{self.base_url}/readyz")

        assert status == 503
        assert "synced=false" in body

    def test_readyz_requires_leadership(self) -> None:
        self.synced.set()

        status, body = _get(f"{self.base_url}/readyz")

        assert status == 503
        assert "leader=false" in body

    def test_readyz_reports_pending_keys(self) -> None:
        self.synced.set()
        self.leader.set()
        self.pending = 3

        assert _get(f"{self.base_url}/readyz") == (200, "synced=true leader=true pending=3")

    def test_leadz(self) -> None:
        assert _get(f"{self.base_url}/leadz") == (503, "not leader")
        self.leader.set()
        assert _get(f"{self.base_url}/leadz") == (200, "ok")

    def test_metrics_are_exposed(self) -> None:
        status, body = _get(f"{self.base_url}/metrics")

        assert status == 200
        assert METRICS.reconciles_total._name in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404


def test_readiness_without_leader_election() -> None:
    synced = threading.Event()
    server = start_health_server(synced=synced, port=0)
    base_url = f"http://127.0.0.1:{server.server_address[1]}"
    try:
        assert _get(f"{base_url}/readyz")[0] == 503
        synced.set()
        assert _get(f"{base_url}/readyz") == (200, "synced=true leader=true")
    finally:
        server.shutdown()
