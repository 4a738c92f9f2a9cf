from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from typing import Any

from kubernetes import client, config, watch
from kubernetes.client import ApiClient, ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException

from funktion.src.resources import Kind

LOGGER = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """Raised when the cluster reports that an object does not exist."""


def load_kube_configuration(kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development. An explicit ``kubeconfig`` path
    skips the in-cluster attempt.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
        return
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def current_namespace(default: str = "default") -> str:
    """Return the namespace of the active kubeconfig context, or ``default``."""
    try:
        _, active = config.list_kube_config_contexts()
    except (ConfigException, OSError):
        return default
    return (active or {}).get("context", {}).get("namespace") or default


class KubeClusterStore:
    """Cluster object store backed by the Kubernetes API.

    Objects go in and come out as plain camelCase dicts, the same shape as the
    YAML templates stored on Runtimes and Connectors, so the rest of the code
    never touches generated client models.
    """

    def __init__(self, core_api: CoreV1Api, apps_api: AppsV1Api) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self._serializer = ApiClient()
        self._watchers: set[watch.Watch] = set()
        self._watchers_lock = threading.Lock()

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self._serializer.sanitize_for_serialization(obj)

    def _list_function(self, kind: Kind, namespace: str | None) -> tuple[Any, dict[str, Any]]:
        kwargs: dict[str, Any] = {}
        selector = kind.selector()
        if selector:
            kwargs["label_selector"] = selector
        if kind is Kind.DEPLOYMENT:
            if namespace:
                return self.apps_api.list_namespaced_deployment, {"namespace": namespace, **kwargs}
            return self.apps_api.list_deployment_for_all_namespaces, kwargs
        if kind is Kind.SERVICE:
            if namespace:
                return self.core_api.list_namespaced_service, {"namespace": namespace, **kwargs}
            return self.core_api.list_service_for_all_namespaces, kwargs
        if namespace:
            return self.core_api.list_namespaced_config_map, {"namespace": namespace, **kwargs}
        return self.core_api.list_config_map_for_all_namespaces, kwargs

    def list(self, kind: Kind, namespace: str | None = None) -> tuple[list[dict[str, Any]], str | None]:
        """List every object of ``kind``; returns the items and the list's resourceVersion."""
        list_fn, kwargs = self._list_function(kind, namespace)
        result = list_fn(**kwargs)
        resource_version = getattr(getattr(result, "metadata", None), "resource_version", None)
        items = [self._to_dict(item) for item in (getattr(result, "items", None) or [])]
        return items, resource_version

    def watch(
        self,
        kind: Kind,
        namespace: str | None,
        resource_version: str | None,
        timeout_seconds: int,
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        """Stream ``(event_type, object)`` pairs starting at ``resource_version``."""
        list_fn, kwargs = self._list_function(kind, namespace)
        watcher = watch.Watch()
        with self._watchers_lock:
            self._watchers.add(watcher)
        try:
            for event in watcher.stream(
                list_fn,
                resource_version=resource_version,
                timeout_seconds=timeout_seconds,
                **kwargs,
            ):
                obj = event.get("object")
                if obj is None:
                    continue
                yield str(event.get("type", "")), self._to_dict(obj)
        finally:
            watcher.stop()
            with self._watchers_lock:
                self._watchers.discard(watcher)

    def stop_watches(self) -> None:
        """Interrupt every open watch stream."""
        with self._watchers_lock:
            watchers = list(self._watchers)
        for watcher in watchers:
            watcher.stop()

    def get(self, kind: Kind, namespace: str, name: str) -> dict[str, Any]:
        try:
            if kind is Kind.DEPLOYMENT:
                obj = self.apps_api.read_namespaced_deployment(name=name, namespace=namespace)
            elif kind is Kind.SERVICE:
                obj = self.core_api.read_namespaced_service(name=name, namespace=namespace)
            else:
                obj = self.core_api.read_namespaced_config_map(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                raise NotFoundError(f"{kind.value} {namespace}/{name} not found") from exc
            raise
        return self._to_dict(obj)

    def create(self, kind: Kind, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        if kind is Kind.DEPLOYMENT:
            obj = self.apps_api.create_namespaced_deployment(namespace=namespace, body=body)
        elif kind is Kind.SERVICE:
            obj = self.core_api.create_namespaced_service(namespace=namespace, body=body)
        else:
            obj = self.core_api.create_namespaced_config_map(namespace=namespace, body=body)
        return self._to_dict(obj)

    def update(self, kind: Kind, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        name = body["metadata"]["name"]
        if kind is Kind.DEPLOYMENT:
            obj = self.apps_api.replace_namespaced_deployment(name=name, namespace=namespace, body=body)
        elif kind is Kind.SERVICE:
            obj = self.core_api.replace_namespaced_service(name=name, namespace=namespace, body=body)
        else:
            obj = self.core_api.replace_namespaced_config_map(name=name, namespace=namespace, body=body)
        return self._to_dict(obj)

    def delete(self, kind: Kind, namespace: str, name: str, cascade: bool = True) -> None:
        """Delete an object; ``cascade=False`` orphans its dependents."""
        body = client.V1DeleteOptions(propagation_policy="Background" if cascade else "Orphan")
        try:
            if kind is Kind.DEPLOYMENT:
                self.apps_api.delete_namespaced_deployment(name=name, namespace=namespace, body=body)
            elif kind is Kind.SERVICE:
                self.core_api.delete_namespaced_service(name=name, namespace=namespace, body=body)
            else:
                self.core_api.delete_namespaced_config_map(name=name, namespace=namespace, body=body)
        except ApiException as exc:
            if exc.status == 404:
                raise NotFoundError(f"{kind.value} {namespace}/{name} not found") from exc
            raise

    def set_replicas(self, namespace: str, name: str, count: int) -> None:
        """Set the replica count through the deployment scale sub-resource."""
        try:
            self.apps_api.patch_namespaced_deployment_scale(
                name=name,
                namespace=namespace,
                body={"spec": {"replicas": count}},
            )
        except ApiException as exc:
            if exc.status == 404:
                raise NotFoundError(f"Deployment {namespace}/{name} not found") from exc
            raise
