from __future__ import annotations

import logging
from typing import Any, Literal, Protocol

from funktion.src.kube import NotFoundError
from funktion.src.resources import (
    CONNECTOR_LABEL,
    RUNTIME_LABEL,
    Kind,
    Record,
    record_from_config_map,
)

LOGGER = logging.getLogger(__name__)

ApplyResult = Literal["created", "updated", "unchanged"]


class ResourceNotFoundError(LookupError):
    """Raised when a named Function, Flow, Runtime or Connector does not exist."""


class ConfigMapStore(Protocol):
    def list(self, kind: Kind, namespace: str | None = None) -> tuple[list[dict[str, Any]], str | None]: ...

    def create(self, kind: Kind, namespace: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, kind: Kind, namespace: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def delete(self, kind: Kind, namespace: str, name: str, cascade: bool = True) -> None: ...


class ResourceStore:
    """Kind-aware access to the ConfigMaps that hold primary resources.

    This is what the CLI talks to: it never goes through the operator, only
    through the same cluster store the operator watches.
    """

    def __init__(self, cluster: ConfigMapStore, namespace: str) -> None:
        self.cluster = cluster
        self.namespace = namespace

    def _config_maps(self, kind: Kind) -> list[dict[str, Any]]:
        if not kind.is_primary:
            raise ValueError(f"{kind.value} is not a ConfigMap backed kind")
        items, _ = self.cluster.list(kind, self.namespace)
        return items

    def list(self, kind: Kind) -> list[Record]:
        records = [record_from_config_map(kind, cm) for cm in self._config_maps(kind)]
        return sorted(records, key=lambda record: record.name)

    def get(self, kind: Kind, name: str) -> Record | None:
        for record in self.list(kind):
            if record.name == name:
                return record
        return None

    def require(self, kind: Kind, name: str) -> Record:
        record = self.get(kind, name)
        if record is None:
            raise ResourceNotFoundError(f'{kind.value.lower()} "{name}" not found')
        return record

    def names(self) -> set[str]:
        """Return every ConfigMap name of any primary kind in the namespace."""
        return {
            record.name
            for kind in (Kind.FUNCTION, Kind.FLOW, Kind.RUNTIME, Kind.CONNECTOR)
            for record in self.list(kind)
        }

    def deployments(self) -> dict[str, dict[str, Any]]:
        """Return the namespace's Deployments keyed by name, i.e. by owning resource."""
        items, _ = self.cluster.list(Kind.DEPLOYMENT, self.namespace)
        return {(item.get("metadata") or {}).get("name", ""): item for item in items}

    def create(self, record: Record) -> None:
        self.cluster.create(record.kind, self.namespace, record.to_config_map())
        LOGGER.info("Created %s %s/%s", record.kind.value, self.namespace, record.name)

    def update(self, record: Record) -> None:
        self.cluster.update(record.kind, self.namespace, record.to_config_map())
        LOGGER.info("Updated %s %s/%s", record.kind.value, self.namespace, record.name)

    def apply(self, record: Record) -> ApplyResult:
        """Create ``record``, or update it only when its data or reference label changed."""
        existing = self.get(record.kind, record.name)
        if existing is None:
            self.create(record)
            return "created"

        desired = record.to_config_map()
        current = existing.to_config_map()
        reference_label = {Kind.FUNCTION: RUNTIME_LABEL, Kind.FLOW: CONNECTOR_LABEL}.get(record.kind)
        same_reference = reference_label is None or (
            desired["metadata"]["labels"].get(reference_label)
            == current["metadata"]["labels"].get(reference_label)
        )
        if desired["data"] == current["data"] and same_reference:
            return "unchanged"
        self.update(record)
        return "updated"

    def delete(self, kind: Kind, name: str) -> None:
        record = self.require(kind, name)
        try:
            self.cluster.delete(kind, self.namespace, record.name)
        except NotFoundError as exc:
            raise ResourceNotFoundError(f'{kind.value.lower()} "{name}" not found') from exc
        LOGGER.info("Deleted %s %s/%s", kind.value, self.namespace, name)

    def delete_all(self, kind: Kind) -> int:
        count = 0
        for record in self.list(kind):
            self.cluster.delete(kind, self.namespace, record.name)
            count += 1
        return count
