from __future__ import annotations

import copy
from typing import Any

import yaml

from funktion.src.errors import TemplateError
from funktion.src.resources import (
    APPLICATION_PROPERTIES_PROPERTY,
    APPLICATION_YML_PROPERTY,
    CONFIGMAP_CONTROLLER_ANNOTATION,
    DEPLOYMENT_DEBUG_PROPERTY,
    DEPLOYMENT_PROPERTY,
    DEPLOYMENT_YML_PROPERTY,
    EXPOSE_LABEL,
    FUNKTION_YML_PROPERTY,
    NAME_LABEL,
    SERVICE_PROPERTY,
    SOURCE_PROPERTY,
    ConnectorRecord,
    EnvVar,
    FlowRecord,
    FunctionRecord,
    RuntimeRecord,
)

SOURCE_VOLUME = "source"
FLOW_CONFIG_VOLUME = "config"
FLOW_CONFIG_MOUNT_PATH = "/deployments/config"
NODE_PORT_SERVICE_TYPES = {"NodePort", "LoadBalancer"}


def _parse_template(text: str, prop: str, kind: str, owner: str) -> dict[str, Any]:
    if not text.strip():
        raise TemplateError(f"No property `{prop}` on the {kind} ConfigMap {owner}")
    try:
        parsed = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise TemplateError(
            f"Failed to parse YAML from property `{prop}` on the {kind} ConfigMap {owner}. "
            f"Error: {exc}"
        ) from exc
    if not isinstance(parsed, dict):
        raise TemplateError(
            f"Property `{prop}` on the {kind} ConfigMap {owner} is not an object definition"
        )
    return parsed


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
        obj["metadata"] = metadata
    if metadata.get("annotations") is None:
        metadata["annotations"] = {}
    if metadata.get("labels") is None:
        metadata["labels"] = {}
    return metadata


def _carry_forward(target: dict[str, str], source: dict[str, str] | None) -> None:
    """Copy every non-empty entry of ``source`` whose key is empty on ``target``."""
    for key, value in (source or {}).items():
        if not target.get(key):
            target[key] = value


def _old_map(old: dict[str, Any] | None, field: str) -> dict[str, str]:
    if old is None:
        return {}
    return (old.get("metadata") or {}).get(field) or {}


def _pod_spec(deployment: dict[str, Any], kind: str, owner: str, prop: str) -> dict[str, Any]:
    spec = deployment.setdefault("spec", {}) or {}
    deployment["spec"] = spec
    template = spec.setdefault("template", {}) or {}
    spec["template"] = template
    pod_spec = template.setdefault("spec", {}) or {}
    template["spec"] = pod_spec
    if not pod_spec.get("containers"):
        raise TemplateError(
            f"Deployment in property `{prop}` on the {kind} ConfigMap {owner} has no containers"
        )
    if pod_spec.get("volumes") is None:
        pod_spec["volumes"] = []
    return pod_spec


def _prepare_deployment(
    deployment: dict[str, Any],
    name: str,
    namespace: str,
    primary_labels: dict[str, str],
    old: dict[str, Any] | None,
) -> None:
    metadata = _metadata(deployment)
    metadata["name"] = name
    if namespace:
        metadata["namespace"] = namespace
    _carry_forward(metadata["annotations"], _old_map(old, "annotations"))
    _carry_forward(metadata["labels"], primary_labels)
    if not metadata["annotations"].get(CONFIGMAP_CONTROLLER_ANNOTATION):
        metadata["annotations"][CONFIGMAP_CONTROLLER_ANNOTATION] = name


def set_deployment_label(deployment: dict[str, Any], key: str, value: str) -> None:
    """Set a label on the Deployment, its selector and its pod template."""
    deployment["metadata"]["labels"][key] = value
    spec = deployment["spec"]
    selector = spec.get("selector") or {}
    spec["selector"] = selector
    match_labels = selector.get("matchLabels") or {}
    selector["matchLabels"] = match_labels
    match_labels[key] = value
    template_metadata = spec["template"].get("metadata") or {}
    spec["template"]["metadata"] = template_metadata
    template_labels = template_metadata.get("labels") or {}
    template_metadata["labels"] = template_labels
    template_labels[key] = value


def apply_env_vars(container: dict[str, Any], overrides: list[EnvVar] | tuple[EnvVar, ...]) -> None:
    """Override container env entries by name, appending the ones not present."""
    env = container.get("env") or []
    container["env"] = env
    for override in overrides:
        found = False
        for entry in env:
            if entry.get("name") == override.name:
                entry["value"] = override.value
                entry.pop("valueFrom", None)
                found = True
        if not found:
            env.append({"name": override.name, "value": override.value})


def _source_file_name(runtime: RuntimeRecord) -> str:
    if runtime.file_extensions:
        return f"source.{runtime.file_extensions[0].lstrip('.')}"
    return "source.js"


def make_function_deployment(
    function: FunctionRecord,
    runtime: RuntimeRecord,
    old: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the Deployment running ``function`` on ``runtime``.

    The Runtime's ``deployment`` template (``deploymentDebug`` when the
    function has debugging enabled) is used as the base. The function's
    source is mounted read-only from its own ConfigMap at the runtime's
    source mount path, and its env vars override same-named container env
    entries. Annotations present on ``old`` but absent from the template are
    kept so external edits (ingress or exposure markers) survive.
    """
    if function.debug:
        prop, template = DEPLOYMENT_DEBUG_PROPERTY, runtime.deployment_debug
    else:
        prop, template = DEPLOYMENT_PROPERTY, runtime.deployment
    deployment = _parse_template(template, prop, "Runtime", runtime.name)

    _prepare_deployment(deployment, function.name, function.namespace, function.labels, old)

    if not function.source:
        raise TemplateError(
            f"No property `{SOURCE_PROPERTY}` on the Function ConfigMap {function.name}"
        )

    pod_spec = _pod_spec(deployment, "Runtime", runtime.name, prop)
    found_volume = False
    for volume in pod_spec["volumes"]:
        if volume.get("name") == SOURCE_VOLUME and volume.get("configMap") is not None:
            volume["configMap"]["name"] = function.name
            found_volume = True
    if not found_volume:
        pod_spec["volumes"].append(
            {
                "name": SOURCE_VOLUME,
                "configMap": {
                    "name": function.name,
                    "items": [{"key": SOURCE_PROPERTY, "path": _source_file_name(runtime)}],
                },
            }
        )

    for container in pod_spec["containers"]:
        mounts = container.get("volumeMounts") or []
        container["volumeMounts"] = mounts
        if not any(mount.get("name") == SOURCE_VOLUME for mount in mounts):
            mounts.append(
                {
                    "name": SOURCE_VOLUME,
                    "mountPath": runtime.source_mount_path,
                    "readOnly": True,
                }
            )
        if function.env_vars:
            apply_env_vars(container, function.env_vars)

    if not pod_spec["containers"][0].get("name"):
        pod_spec["containers"][0]["name"] = "function"
    set_deployment_label(deployment, NAME_LABEL, function.name)
    return deployment


def make_flow_deployment(
    flow: FlowRecord,
    connector: ConnectorRecord,
    old: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the Deployment running ``flow`` with the ``connector`` image.

    The flow definition and Spring Boot configuration stored on the Flow are
    mounted as files under ``/deployments/config``; keys with no content are
    skipped.
    """
    deployment = _parse_template(connector.deployment, DEPLOYMENT_YML_PROPERTY, "Connector", connector.name)

    _prepare_deployment(deployment, flow.name, flow.namespace, flow.labels, old)

    items = [
        {"key": key, "path": key}
        for key, value in (
            (FUNKTION_YML_PROPERTY, flow.funktion_yml),
            (APPLICATION_PROPERTIES_PROPERTY, flow.application_properties),
            (APPLICATION_YML_PROPERTY, flow.application_yml),
        )
        if value
    ]

    pod_spec = _pod_spec(deployment, "Connector", connector.name, DEPLOYMENT_YML_PROPERTY)
    if items:
        config_volume = {"name": FLOW_CONFIG_VOLUME, "configMap": {"name": flow.name, "items": items}}
        volumes = pod_spec["volumes"]
        # Volume names are unique per pod; a template's own `config` volume is re-pointed.
        existing = [i for i, volume in enumerate(volumes) if volume.get("name") == FLOW_CONFIG_VOLUME]
        if existing:
            volumes[existing[0]] = config_volume
            for index in reversed(existing[1:]):
                del volumes[index]
        else:
            volumes.append(config_volume)
        for container in pod_spec["containers"]:
            mounts = container.get("volumeMounts") or []
            container["volumeMounts"] = mounts
            if not any(mount.get("name") == FLOW_CONFIG_VOLUME for mount in mounts):
                mounts.append(
                    {
                        "name": FLOW_CONFIG_VOLUME,
                        "mountPath": FLOW_CONFIG_MOUNT_PATH,
                        "readOnly": True,
                    }
                )

    if not pod_spec["containers"][0].get("name"):
        pod_spec["containers"][0]["name"] = "connector"
    set_deployment_label(deployment, NAME_LABEL, flow.name)
    return deployment


def merge_service(service: dict[str, Any], old: dict[str, Any]) -> dict[str, Any]:
    """Carry cluster-assigned and externally edited fields from ``old`` onto ``service``.

    ``clusterIP`` and ``resourceVersion`` are immutable once assigned, node
    ports are kept per port index, and the Service ``type`` on the cluster
    wins. Only the port list and selector come from the new template.
    """
    old_metadata = old.get("metadata") or {}
    metadata = service["metadata"]
    if old_metadata.get("resourceVersion"):
        metadata["resourceVersion"] = old_metadata["resourceVersion"]

    old_spec = old.get("spec") or {}
    spec = service.setdefault("spec", {})
    for field in ("clusterIP", "clusterIPs", "type"):
        if old_spec.get(field):
            spec[field] = copy.deepcopy(old_spec[field])

    if spec.get("type") in NODE_PORT_SERVICE_TYPES:
        old_ports = old_spec.get("ports") or []
        for index, port in enumerate(spec.get("ports") or []):
            if index >= len(old_ports):
                break
            node_port = old_ports[index].get("nodePort")
            if node_port and not port.get("nodePort"):
                port["nodePort"] = node_port
    return service


def make_function_service(
    function: FunctionRecord,
    runtime: RuntimeRecord,
    old: dict[str, Any] | None,
    deployment: dict[str, Any],
) -> dict[str, Any]:
    """Build the Service fronting the pods of ``deployment``."""
    service = _parse_template(runtime.service, SERVICE_PROPERTY, "Runtime", runtime.name)

    metadata = _metadata(service)
    metadata["name"] = function.name
    if function.namespace:
        metadata["namespace"] = function.namespace

    spec = service.get("spec") or {}
    service["spec"] = spec
    match_labels = ((deployment.get("spec") or {}).get("selector") or {}).get("matchLabels") or {}
    spec["selector"] = dict(match_labels)

    _carry_forward(metadata["annotations"], _old_map(old, "annotations"))
    _carry_forward(metadata["labels"], function.labels)
    _carry_forward(metadata["labels"], _old_map(old, "labels"))
    if not metadata["labels"].get(EXPOSE_LABEL):
        metadata["labels"][EXPOSE_LABEL] = "true"

    if old is not None:
        merge_service(service, old)
    return service
