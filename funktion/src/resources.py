from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any

import yaml

LOGGER = logging.getLogger(__name__)

KIND_LABEL = "funktion.fabric8.io/kind"
RUNTIME_LABEL = "runtime"
CONNECTOR_LABEL = "connector"
NAME_LABEL = "name"
EXPOSE_LABEL = "expose"
PROJECT_LABEL = "project"

# Connector data keys
DEPLOYMENT_YML_PROPERTY = "deployment.yml"
SCHEMA_YML_PROPERTY = "schema.yml"

# Flow data keys
FUNKTION_YML_PROPERTY = "funktion.yml"
APPLICATION_PROPERTIES_PROPERTY = "application.properties"
APPLICATION_YML_PROPERTY = "application.yml"

# Function data keys
SOURCE_PROPERTY = "source"
DEBUG_PROPERTY = "debug"
ENV_VARS_PROPERTY = "envVars"

# Runtime data keys
DEPLOYMENT_PROPERTY = "deployment"
DEPLOYMENT_DEBUG_PROPERTY = "deploymentDebug"
SERVICE_PROPERTY = "service"
DEBUG_PORT_PROPERTY = "debugPort"
SOURCE_MOUNT_PATH_PROPERTY = "sourceMountPath"
FILE_EXTENSIONS_PROPERTY = "fileExtensions"

CONFIGMAP_CONTROLLER_ANNOTATION = "configmap.fabric8.io/update-on-change"
DEFAULT_SOURCE_MOUNT_PATH = "/funktion"


class Kind(str, enum.Enum):
    """Every object kind the operator watches.

    The four primary kinds are ConfigMaps partitioned by the ``KIND_LABEL``
    label; ``DEPLOYMENT`` and ``SERVICE`` are the derived workload objects.
    """

    CONNECTOR = "Connector"
    RUNTIME = "Runtime"
    FUNCTION = "Function"
    FLOW = "Flow"
    DEPLOYMENT = "Deployment"
    SERVICE = "Service"

    @property
    def is_primary(self) -> bool:
        return self not in {Kind.DEPLOYMENT, Kind.SERVICE}

    def selector(self) -> str | None:
        """Return the label selector partitioning ConfigMaps of this kind."""
        if not self.is_primary:
            return None
        return f"{KIND_LABEL}={self.value}"

    @classmethod
    def from_text(cls, text: str) -> Kind:
        """Resolve a user supplied kind name such as ``function`` or ``flows``."""
        normalized = text.strip().lower().rstrip("s")
        for kind in cls:
            if kind.is_primary and kind.value.lower() == normalized:
                return kind
        choices = ", ".join(sorted(k.value.lower() for k in cls if k.is_primary))
        raise ValueError(f"Unknown resource kind {text!r}; possible values: {choices}")


@dataclass(frozen=True)
class ResourceKey:
    """Identity of a queued reconciliation: kind plus namespace/name."""

    kind: Kind
    namespace: str
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @classmethod
    def parse(cls, kind: Kind, text: str) -> ResourceKey:
        namespace, _, name = text.rpartition("/")
        return cls(kind=kind, namespace=namespace, name=name)

    @classmethod
    def for_object(cls, kind: Kind, obj: dict[str, Any]) -> ResourceKey:
        metadata = obj.get("metadata") or {}
        return cls(
            kind=kind,
            namespace=metadata.get("namespace") or "",
            name=metadata.get("name") or "",
        )

    def with_kind(self, kind: Kind) -> ResourceKey:
        return ResourceKey(kind=kind, namespace=self.namespace, name=self.name)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.namespaced_name}"


def object_key(obj: dict[str, Any]) -> str:
    """Return the ``namespace/name`` cache key for a cluster object dict."""
    metadata = obj.get("metadata") or {}
    namespace = metadata.get("namespace") or ""
    name = metadata.get("name") or ""
    if namespace:
        return f"{namespace}/{name}"
    return name


def _string_map(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): ("" if v is None else str(v)) for k, v in value.items()}


@dataclass(frozen=True)
class _Meta:
    name: str
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    @staticmethod
    def _read(config_map: dict[str, Any]) -> tuple[str, str, dict[str, str], dict[str, str], dict[str, str]]:
        metadata = config_map.get("metadata") or {}
        return (
            metadata.get("name") or "",
            metadata.get("namespace") or "",
            _string_map(metadata.get("labels")),
            _string_map(metadata.get("annotations")),
            _string_map(config_map.get("data")),
        )

    def _config_map(self, kind: Kind, data: dict[str, str], **extra_labels: str) -> dict[str, Any]:
        labels = dict(self.labels)
        labels[KIND_LABEL] = kind.value
        for key, value in extra_labels.items():
            if value:
                labels[key] = value
        metadata: dict[str, Any] = {"name": self.name, "labels": labels}
        if self.namespace:
            metadata["namespace"] = self.namespace
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        return {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": metadata,
            "data": {k: v for k, v in data.items() if v},
        }


@dataclass(frozen=True)
class EnvVar:
    name: str
    value: str


def parse_env_vars(text: str) -> list[EnvVar]:
    """Parse newline separated ``NAME=VALUE`` lines, skipping malformed ones."""
    answer: list[EnvVar] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        name, separator, value = stripped.partition("=")
        if not separator:
            LOGGER.warning(
                "Ignoring bad environment variable pair. Expecting `NAME=VALUE` but got: %s",
                stripped,
            )
            continue
        answer.append(EnvVar(name=name, value=value))
    return answer


@dataclass(frozen=True)
class FunctionRecord(_Meta):
    runtime: str = ""
    source: str = ""
    debug: bool = False
    env_vars: tuple[EnvVar, ...] = ()

    kind = Kind.FUNCTION

    @classmethod
    def from_config_map(cls, config_map: dict[str, Any]) -> FunctionRecord:
        name, namespace, labels, annotations, data = cls._read(config_map)
        return cls(
            name=name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
            runtime=labels.get(RUNTIME_LABEL, ""),
            source=data.get(SOURCE_PROPERTY, ""),
            debug=data.get(DEBUG_PROPERTY, "").strip().lower() == "true",
            env_vars=tuple(parse_env_vars(data.get(ENV_VARS_PROPERTY, ""))),
        )

    def to_config_map(self) -> dict[str, Any]:
        data = {
            SOURCE_PROPERTY: self.source,
            DEBUG_PROPERTY: "true" if self.debug else "",
            ENV_VARS_PROPERTY: "\n".join(f"{e.name}={e.value}" for e in self.env_vars),
        }
        return self._config_map(Kind.FUNCTION, data, **{RUNTIME_LABEL: self.runtime})


@dataclass(frozen=True)
class RuntimeRecord(_Meta):
    deployment: str = ""
    deployment_debug: str = ""
    service: str = ""
    debug_port: int | None = None
    source_mount_path: str = DEFAULT_SOURCE_MOUNT_PATH
    file_extensions: tuple[str, ...] = ()

    kind = Kind.RUNTIME

    @classmethod
    def from_config_map(cls, config_map: dict[str, Any]) -> RuntimeRecord:
        name, namespace, labels, annotations, data = cls._read(config_map)
        raw_port = data.get(DEBUG_PORT_PROPERTY, "").strip()
        try:
            debug_port = int(raw_port) if raw_port else None
        except ValueError:
            LOGGER.warning("Runtime %s has invalid debug port %r", name, raw_port)
            debug_port = None
        extensions = tuple(
            ext.strip()
            for ext in data.get(FILE_EXTENSIONS_PROPERTY, "").split(",")
            if ext.strip()
        )
        return cls(
            name=name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
            deployment=data.get(DEPLOYMENT_PROPERTY, ""),
            deployment_debug=data.get(DEPLOYMENT_DEBUG_PROPERTY, ""),
            service=data.get(SERVICE_PROPERTY, ""),
            debug_port=debug_port,
            source_mount_path=data.get(SOURCE_MOUNT_PATH_PROPERTY) or DEFAULT_SOURCE_MOUNT_PATH,
            file_extensions=extensions,
        )

    def to_config_map(self) -> dict[str, Any]:
        data = {
            DEPLOYMENT_PROPERTY: self.deployment,
            DEPLOYMENT_DEBUG_PROPERTY: self.deployment_debug,
            SERVICE_PROPERTY: self.service,
            DEBUG_PORT_PROPERTY: "" if self.debug_port is None else str(self.debug_port),
            SOURCE_MOUNT_PATH_PROPERTY: (
                "" if self.source_mount_path == DEFAULT_SOURCE_MOUNT_PATH else self.source_mount_path
            ),
            FILE_EXTENSIONS_PROPERTY: ",".join(self.file_extensions),
        }
        return self._config_map(Kind.RUNTIME, data)


@dataclass(frozen=True)
class ConnectorRecord(_Meta):
    deployment: str = ""
    schema: str = ""
    application_properties: str = ""

    kind = Kind.CONNECTOR

    @classmethod
    def from_config_map(cls, config_map: dict[str, Any]) -> ConnectorRecord:
        name, namespace, labels, annotations, data = cls._read(config_map)
        return cls(
            name=name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
            deployment=data.get(DEPLOYMENT_YML_PROPERTY, ""),
            schema=data.get(SCHEMA_YML_PROPERTY, ""),
            application_properties=data.get(APPLICATION_PROPERTIES_PROPERTY, ""),
        )

    def to_config_map(self) -> dict[str, Any]:
        data = {
            DEPLOYMENT_YML_PROPERTY: self.deployment,
            SCHEMA_YML_PROPERTY: self.schema,
            APPLICATION_PROPERTIES_PROPERTY: self.application_properties,
        }
        return self._config_map(Kind.CONNECTOR, data)

    def load_schema(self) -> ConnectorSchema:
        return load_connector_schema(self.schema)


class StepKind(str, enum.Enum):
    ENDPOINT = "endpoint"
    FUNCTION = "function"
    SET_BODY = "setBody"
    SET_HEADERS = "setHeaders"


@dataclass(frozen=True)
class FlowStep:
    kind: StepKind
    uri: str = ""
    name: str = ""
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        answer: dict[str, Any] = {"kind": self.kind.value}
        if self.uri:
            answer["uri"] = self.uri
        if self.name:
            answer["name"] = self.name
        if self.body:
            answer["body"] = self.body
        if self.headers:
            answer["headers"] = dict(self.headers)
        return answer

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlowStep:
        return cls(
            kind=StepKind(data.get("kind", StepKind.ENDPOINT.value)),
            uri=data.get("uri") or "",
            name=data.get("name") or "",
            body=data.get("body") or "",
            headers=_string_map(data.get("headers")),
        )

    def describe(self) -> str:
        if self.kind is StepKind.FUNCTION:
            return f"function {self.name}"
        if self.kind is StepKind.SET_BODY:
            return f"setBody {self.body}"
        if self.kind is StepKind.SET_HEADERS:
            return "setHeaders " + ",".join(f"{k}:{v}" for k, v in sorted(self.headers.items()))
        return f"endpoint {self.uri}"


@dataclass(frozen=True)
class FlowDefinition:
    name: str = "default"
    trace: bool = False
    log_result: bool = True
    steps: tuple[FlowStep, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "trace": self.trace,
            "logResult": self.log_result,
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlowDefinition:
        return cls(
            name=data.get("name") or "default",
            trace=bool(data.get("trace", False)),
            log_result=bool(data.get("logResult", True)),
            steps=tuple(FlowStep.from_dict(step) for step in data.get("steps") or []),
        )


@dataclass(frozen=True)
class FlowConfig:
    """The pipeline definition stored under ``funktion.yml`` in a Flow."""

    flows: tuple[FlowDefinition, ...] = ()

    def to_yaml(self) -> str:
        return yaml.safe_dump(
            {"flows": [flow.to_dict() for flow in self.flows]},
            default_flow_style=False,
            sort_keys=False,
        )

    @classmethod
    def from_yaml(cls, text: str) -> FlowConfig:
        loaded = yaml.safe_load(text) if text else None
        if loaded is None:
            return cls()
        if not isinstance(loaded, dict):
            raise ValueError("Flow YAML must be a mapping with a `flows` list")
        return cls(flows=tuple(FlowDefinition.from_dict(f) for f in loaded.get("flows") or []))


FUNCTION_ARG_PREFIX = "fn:"
SET_BODY_ARG_PREFIX = "setBody:"
SET_HEADERS_ARG_PREFIX = "setHeaders:"


def parse_headers(text: str) -> dict[str, str]:
    headers: dict[str, str] = {}
    for pair in text.split(","):
        name, separator, value = pair.partition(":")
        if not separator:
            raise ValueError(f"Missing ':' in header `{pair}`")
        headers[name] = value
    return headers


def parse_steps(args: list[str]) -> list[FlowStep]:
    """Parse ``[endpointUrl] [fn:name] [setBody:content] [setHeaders:a:b,c:d]`` arguments."""
    steps: list[FlowStep] = []
    for arg in args:
        if arg.startswith(FUNCTION_ARG_PREFIX):
            name = arg.removeprefix(FUNCTION_ARG_PREFIX)
            if not name:
                raise ValueError(f"Function name required after {FUNCTION_ARG_PREFIX}")
            steps.append(FlowStep(kind=StepKind.FUNCTION, name=name))
        elif arg.startswith(SET_BODY_ARG_PREFIX):
            steps.append(FlowStep(kind=StepKind.SET_BODY, body=arg.removeprefix(SET_BODY_ARG_PREFIX)))
        elif arg.startswith(SET_HEADERS_ARG_PREFIX):
            headers_text = arg.removeprefix(SET_HEADERS_ARG_PREFIX)
            if not headers_text:
                raise ValueError(f"Header name and values required after {SET_HEADERS_ARG_PREFIX}")
            steps.append(FlowStep(kind=StepKind.SET_HEADERS, headers=parse_headers(headers_text)))
        else:
            steps.append(FlowStep(kind=StepKind.ENDPOINT, uri=arg))
    return steps


@dataclass(frozen=True)
class FlowRecord(_Meta):
    connector: str = ""
    funktion_yml: str = ""
    application_properties: str = ""
    application_yml: str = ""

    kind = Kind.FLOW

    @classmethod
    def from_config_map(cls, config_map: dict[str, Any]) -> FlowRecord:
        name, namespace, labels, annotations, data = cls._read(config_map)
        return cls(
            name=name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
            connector=labels.get(CONNECTOR_LABEL, ""),
            funktion_yml=data.get(FUNKTION_YML_PROPERTY, ""),
            application_properties=data.get(APPLICATION_PROPERTIES_PROPERTY, ""),
            application_yml=data.get(APPLICATION_YML_PROPERTY, ""),
        )

    def to_config_map(self) -> dict[str, Any]:
        data = {
            FUNKTION_YML_PROPERTY: self.funktion_yml,
            APPLICATION_PROPERTIES_PROPERTY: self.application_properties,
            APPLICATION_YML_PROPERTY: self.application_yml,
        }
        return self._config_map(Kind.FLOW, data, **{CONNECTOR_LABEL: self.connector})

    def config(self) -> FlowConfig:
        return FlowConfig.from_yaml(self.funktion_yml)


Record = FunctionRecord | RuntimeRecord | ConnectorRecord | FlowRecord

RECORD_TYPES: dict[Kind, type[FunctionRecord] | type[RuntimeRecord] | type[ConnectorRecord] | type[FlowRecord]] = {
    Kind.FUNCTION: FunctionRecord,
    Kind.RUNTIME: RuntimeRecord,
    Kind.CONNECTOR: ConnectorRecord,
    Kind.FLOW: FlowRecord,
}


def record_from_config_map(kind: Kind, config_map: dict[str, Any]) -> Record:
    try:
        record_type = RECORD_TYPES[kind]
    except KeyError:
        raise ValueError(f"{kind.value} is not a ConfigMap backed kind") from None
    return record_type.from_config_map(config_map)


def convert_to_safe_resource_name(text: str) -> str:
    """Convert arbitrary text into a lowercase, hyphen separated Kubernetes name.

    Runs of characters outside ``[a-z0-9]`` collapse into a single hyphen and
    the result never starts or ends with one, e.g. ``"My Twitter-Feed!"``
    becomes ``"my-twitter-feed"``.
    """
    parts: list[str] = []
    current: list[str] = []
    for ch in text.lower():
        if ("a" <= ch <= "z") or ("0" <= ch <= "9"):
            current.append(ch)
        elif current:
            parts.append("".join(current))
            current = []
    if current:
        parts.append("".join(current))
    return "-".join(parts)


def convert_to_safe_label_value(text: str) -> str:
    """Convert text into a usable label value.

    Alphanumerics are kept; ``-``, ``_`` and ``.`` are kept only between
    alphanumerics; any other run becomes one hyphen.
    """
    out: list[str] = []
    last = len(text) - 1
    last_valid = False
    for i, ch in enumerate(text):
        valid = ch.isascii() and ch.isalnum()
        if 0 < i < last:
            valid = valid or ch in "-_."
        if valid:
            out.append(ch)
            last_valid = True
        else:
            if last_valid and i < last:
                out.append("-")
            last_valid = False
    return "".join(out).strip("-_.")


def name_from_file(file_name: str, configured_name: str = "") -> str:
    if configured_name:
        return convert_to_safe_resource_name(configured_name)
    if not file_name:
        return ""
    base = file_name.replace("\\", "/").rsplit("/", 1)[-1]
    stem, dot, _ = base.rpartition(".")
    if dot and stem:
        base = stem
    return convert_to_safe_resource_name(base)


@dataclass(frozen=True)
class PropertySpec:
    kind: str = ""
    type: str = ""
    java_type: str = ""
    description: str = ""
    group: str = ""
    label: str = ""
    default_value: str = ""
    enum: tuple[str, ...] = ()
    required: bool = False
    deprecated: bool = False
    secret: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PropertySpec:
        default_value = data.get("defaultValue")
        return cls(
            kind=str(data.get("kind") or ""),
            type=str(data.get("type") or ""),
            java_type=str(data.get("javaType") or ""),
            description=str(data.get("description") or ""),
            group=str(data.get("group") or ""),
            label=str(data.get("label") or ""),
            default_value="" if default_value is None else str(default_value),
            enum=tuple(str(v) for v in data.get("enum") or ()),
            required=bool(data.get("required", False)),
            deprecated=bool(data.get("deprecated", False)),
            secret=bool(data.get("secret", False)),
        )


@dataclass(frozen=True)
class ComponentSpec:
    kind: str = ""
    scheme: str = ""
    syntax: str = ""
    title: str = ""
    description: str = ""
    label: str = ""
    java_type: str = ""
    group_id: str = ""
    artifact_id: str = ""
    version: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComponentSpec:
        return cls(
            kind=str(data.get("kind") or ""),
            scheme=str(data.get("scheme") or ""),
            syntax=str(data.get("syntax") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            label=str(data.get("label") or ""),
            java_type=str(data.get("javaType") or ""),
            group_id=str(data.get("groupId") or ""),
            artifact_id=str(data.get("artifactId") or ""),
            version=str(data.get("version") or ""),
        )


@dataclass(frozen=True)
class ConnectorSchema:
    """Property schema a Connector publishes under ``schema.yml``."""

    component: ComponentSpec = field(default_factory=ComponentSpec)
    component_properties: dict[str, PropertySpec] = field(default_factory=dict)
    properties: dict[str, PropertySpec] = field(default_factory=dict)


def load_connector_schema(text: str) -> ConnectorSchema:
    try:
        loaded = yaml.safe_load(text) if text else None
    except yaml.YAMLError as exc:
        raise ValueError(f"Failed to parse schema YAML: {exc}") from exc
    if loaded is None:
        return ConnectorSchema()
    if not isinstance(loaded, dict):
        raise ValueError("Failed to parse schema YAML: expected a mapping")
    return ConnectorSchema(
        component=ComponentSpec.from_dict(loaded.get("component") or {}),
        component_properties={
            str(name): PropertySpec.from_dict(spec or {})
            for name, spec in (loaded.get("componentProperties") or {}).items()
        },
        properties={
            str(name): PropertySpec.from_dict(spec or {})
            for name, spec in (loaded.get("properties") or {}).items()
        },
    )
