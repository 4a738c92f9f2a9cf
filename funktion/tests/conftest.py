from __future__ import annotations

import copy
import threading
from typing import Any

import pytest

from funktion.src.kube import NotFoundError
from funktion.src.resources import KIND_LABEL, Kind


class FakeClusterStore:
    """In-memory cluster holding plain object dicts keyed by (kind, namespace, name).

    ``calls`` records every mutating call in order so tests can assert
    sequencing (e.g. scale-down strictly before delete).
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[Kind, str, str], dict[str, Any]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self._version = 0
        self._watch_stop = threading.Event()

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def put(self, kind: Kind, obj: dict[str, Any]) -> dict[str, Any]:
        """Seed an object without recording a call."""
        obj = copy.deepcopy(obj)
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("namespace", "default")
        metadata["resourceVersion"] = self._next_version()
        if kind.is_primary:
            metadata.setdefault("labels", {})[KIND_LABEL] = kind.value
        self.objects[(kind, metadata["namespace"], metadata["name"])] = obj
        return obj

    def list(self, kind: Kind, namespace: str | None = None) -> tuple[list[dict[str, Any]], str | None]:
        items = [
            copy.deepcopy(obj)
            for (k, ns, _), obj in sorted(self.objects.items(), key=lambda item: item[0][1:])
            if k is kind and (namespace is None or ns == namespace)
        ]
        return items, str(self._version)

    def watch(self, kind: Kind, namespace: str | None, resource_version: str | None, timeout_seconds: int):
        # An idle stream that ends quickly, like a watch timing out.
        self._watch_stop.wait(0.05)
        return iter(())

    def stop_watches(self) -> None:
        # Interrupts the streams open now; later watches block as usual.
        self._watch_stop.set()
        self._watch_stop = threading.Event()

    def get(self, kind: Kind, namespace: str, name: str) -> dict[str, Any]:
        try:
            return copy.deepcopy(self.objects[(kind, namespace, name)])
        except KeyError:
            raise NotFoundError(f"{kind.value} {namespace}/{name} not found") from None

    def create(self, kind: Kind, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        name = body["metadata"]["name"]
        self.calls.append(("create", kind, name))
        stored = copy.deepcopy(body)
        stored["metadata"]["namespace"] = namespace
        stored["metadata"]["resourceVersion"] = self._next_version()
        stored["metadata"]["generation"] = 1
        self.objects[(kind, namespace, name)] = stored
        return copy.deepcopy(stored)

    def update(self, kind: Kind, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        name = body["metadata"]["name"]
        self.calls.append(("update", kind, name))
        if (kind, namespace, name) not in self.objects:
            raise NotFoundError(f"{kind.value} {namespace}/{name} not found")
        previous = self.objects[(kind, namespace, name)]
        stored = copy.deepcopy(body)
        stored["metadata"]["namespace"] = namespace
        stored["metadata"]["resourceVersion"] = self._next_version()
        stored["metadata"]["generation"] = int(previous["metadata"].get("generation") or 0) + 1
        self.objects[(kind, namespace, name)] = stored
        return copy.deepcopy(stored)

    def delete(self, kind: Kind, namespace: str, name: str, cascade: bool = True) -> None:
        self.calls.append(("delete", kind, name, cascade))
        if self.objects.pop((kind, namespace, name), None) is None:
            raise NotFoundError(f"{kind.value} {namespace}/{name} not found")

    def set_replicas(self, namespace: str, name: str, count: int) -> None:
        self.calls.append(("set_replicas", name, count))
        deployment = self.objects.get((Kind.DEPLOYMENT, namespace, name))
        if deployment is None:
            raise NotFoundError(f"Deployment {namespace}/{name} not found")
        deployment.setdefault("spec", {})["replicas"] = count
        metadata = deployment["metadata"]
        metadata["generation"] = int(metadata.get("generation") or 0) + 1
        metadata["resourceVersion"] = self._next_version()

    def settle(self, namespace: str, name: str) -> None:
        """Play the deployment controller: observe the latest generation and its replica count."""
        deployment = self.objects[(Kind.DEPLOYMENT, namespace, name)]
        deployment["status"] = {
            "observedGeneration": deployment["metadata"]["generation"],
            "replicas": deployment["spec"].get("replicas", 1),
        }


@pytest.fixture
def cluster() -> FakeClusterStore:
    return FakeClusterStore()
