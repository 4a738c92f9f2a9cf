from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from kubernetes.client import ApiException
from kubernetes.config.config_exception import ConfigException

from funktion.src.kube import (
    KubeClusterStore,
    build_clients,
    current_namespace,
    load_kube_configuration,
)
from funktion.src.resources import (
    PROJECT_LABEL,
    ConnectorRecord,
    FlowConfig,
    FlowDefinition,
    FlowRecord,
    FlowStep,
    FunctionRecord,
    Kind,
    RuntimeRecord,
    StepKind,
    convert_to_safe_label_value,
    convert_to_safe_resource_name,
    name_from_file,
    parse_env_vars,
    parse_steps,
)
from funktion.src.store import ResourceStore

DEFAULT_APPLICATION_PROPERTIES = "# put your spring boot configuration properties here..."


class CommandError(RuntimeError):
    """A user command failed; reported as a single line on stderr."""


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="funktion",
        description="Manage Functions, Flows, Runtimes and Connectors stored as labeled ConfigMaps",
    )
    parser.add_argument("--kubeconfig", help="Path to the kubeconfig file to use")
    parser.add_argument("-n", "--namespace", help="Namespace to operate in")
    commands = parser.add_subparsers(dest="command", required=True)

    get = commands.add_parser("get", help="List resources of a kind, or show one resource")
    get.add_argument("kind", help="connector, flow, function or runtime")
    get.add_argument("name", nargs="?")

    delete = commands.add_parser("delete", help="Delete one or all resources of a kind")
    delete.add_argument("kind")
    delete.add_argument("name", nargs="?")
    delete.add_argument("--all", action="store_true", help="Delete every resource of the kind")

    create = commands.add_parser("create", help="Create or update a Function or Flow")
    create_kinds = create.add_subparsers(dest="create_kind", required=True)

    function = create_kinds.add_parser("function", help="Create a Function from source code")
    source = function.add_mutually_exclusive_group(required=True)
    source.add_argument("-s", "--source", help="Function source code")
    source.add_argument("-f", "--file", help="File containing the function source code")
    function.add_argument("-r", "--runtime", help="Runtime name; defaults from the file extension")
    function.add_argument("--name", default="", help="Function name; defaults from the file name")
    function.add_argument("--debug", action="store_true", help="Run the function in debug mode")
    function.add_argument(
        "-e",
        "--env",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Environment variable for the function (repeatable)",
    )

    flow = create_kinds.add_parser(
        "flow",
        help="Create a Flow: [endpointUrl] [fn:name] [setBody:content] [setHeaders:a:b,c:d]",
    )
    flow.add_argument("steps", nargs="+")
    flow.add_argument("--name", default="", help="Flow name")
    flow.add_argument("-c", "--connector", default="", help="Connector; defaults to the first URL scheme")
    flow.add_argument("--trace", action="store_true", help="Enable tracing on the flow")
    flow.add_argument(
        "--no-log-result",
        dest="log_result",
        action="store_false",
        help="Do not log each result in the flow pod",
    )
    return parser.parse_args(argv)


def _parse_kind(text: str) -> Kind:
    try:
        return Kind.from_text(text)
    except ValueError as exc:
        raise CommandError(str(exc)) from exc


def _deployment_status(deployments: dict[str, dict[str, Any]], name: str) -> str:
    deployment = deployments.get(name)
    if deployment is None:
        return "-"
    status = deployment.get("status") or {}
    ready = status.get("readyReplicas") or 0
    wanted = (deployment.get("spec") or {}).get("replicas") or 0
    return f"{ready}/{wanted}"


def run_get(store: ResourceStore, kind: Kind, name: str | None) -> None:
    if name:
        record = store.require(kind, name)
        sys.stdout.write(yaml.safe_dump(record.to_config_map(), default_flow_style=False))
        return

    records = store.list(kind)
    deployments = store.deployments() if kind in {Kind.FUNCTION, Kind.FLOW} else {}

    rows: list[tuple[str, ...]] = []
    if kind is Kind.FUNCTION:
        rows.append(("NAME", "RUNTIME", "PODS"))
    elif kind is Kind.FLOW:
        rows.append(("NAME", "CONNECTOR", "PODS", "STEPS"))
    elif kind is Kind.RUNTIME:
        rows.append(("NAME", "EXTENSIONS"))
    else:
        rows.append(("NAME", "TITLE"))

    for record in records:
        if isinstance(record, FunctionRecord):
            rows.append((record.name, record.runtime, _deployment_status(deployments, record.name)))
        elif isinstance(record, FlowRecord):
            steps = ", ".join(s.describe() for f in record.config().flows for s in f.steps)
            rows.append(
                (record.name, record.connector, _deployment_status(deployments, record.name), steps)
            )
        elif isinstance(record, RuntimeRecord):
            rows.append((record.name, ",".join(record.file_extensions)))
        else:
            rows.append((record.name, record.load_schema().component.title))

    widths = [max(len(row[i]) for row in rows) for i in range(len(rows[0]))]
    for row in rows:
        print("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())


def run_delete(store: ResourceStore, kind: Kind, name: str | None, delete_all: bool) -> None:
    label = kind.value.lower()
    if name:
        store.delete(kind, name)
        print(f'Deleted {label} "{name}" resource')
        return
    if not delete_all:
        raise CommandError(f"No `name` specified or the `--all` flag specified so cannot delete a {label}")
    count = store.delete_all(kind)
    print(f"Deleted {count} {label} resource(s)")


def _generate_name(existing: set[str], prefix: str) -> str:
    counter = 1
    while f"{prefix}{counter}" in existing:
        counter += 1
    return f"{prefix}{counter}"


def runtime_for_file(runtimes: list[RuntimeRecord], file_name: str) -> str:
    """Return the Runtime whose file extensions include the extension of ``file_name``."""
    suffix = Path(file_name).suffix.lstrip(".")
    if not suffix:
        return ""
    for runtime in runtimes:
        if suffix in (ext.lstrip(".") for ext in runtime.file_extensions):
            return runtime.name
    return ""


def run_create_function(store: ResourceStore, args: argparse.Namespace) -> None:
    source = args.source
    if args.file:
        try:
            source = Path(args.file).read_text(encoding="utf-8")
        except OSError as exc:
            raise CommandError(f"Failed to read {args.file}: {exc.strerror}") from exc

    runtime = args.runtime
    if not runtime and args.file:
        runtimes = [r for r in store.list(Kind.RUNTIME) if isinstance(r, RuntimeRecord)]
        runtime = runtime_for_file(runtimes, args.file)
    if not runtime:
        raise CommandError("No runtime supplied! Please pass `-r nodejs` or some other valid runtime")
    if store.get(Kind.RUNTIME, runtime) is None:
        raise CommandError(f"No runtime exists called `{runtime}`")

    name = name_from_file(args.file or "", args.name) or _generate_name(store.names(), "function")
    labels: dict[str, str] = {}
    if args.file:
        # Functions created from a file are grouped by the folder they live in.
        project = convert_to_safe_label_value(Path(args.file).resolve().parent.name)
        if project:
            labels[PROJECT_LABEL] = project
    record = FunctionRecord(
        name=name,
        namespace=store.namespace,
        labels=labels,
        runtime=runtime,
        source=source,
        debug=args.debug,
        env_vars=tuple(parse_env_vars("\n".join(args.env))),
    )
    action = store.apply(record)
    print(f"Function {name} {action}")


def _flow_name_prefix(steps: list[FlowStep]) -> str:
    for step in steps:
        if step.kind is StepKind.ENDPOINT and step.uri:
            parsed = urlparse(step.uri)
            prefix = parsed.scheme
            host = parsed.netloc.strip("/") or parsed.path.split("?", 1)[0].strip("/")
            if host:
                prefix = f"{prefix}-{host}"
            return convert_to_safe_resource_name(prefix) or "flow"
    return "flow"


def run_create_flow(store: ResourceStore, args: argparse.Namespace) -> None:
    try:
        steps = parse_steps(args.steps)
    except ValueError as exc:
        raise CommandError(str(exc)) from exc

    connector_name = args.connector
    if not connector_name:
        for step in steps:
            if step.kind is StepKind.ENDPOINT and step.uri:
                connector_name = urlparse(step.uri).scheme
                if not connector_name:
                    raise CommandError(f"No scheme specified for from URI {step.uri}")
                break
    if not connector_name:
        raise CommandError("No connector specified and no endpoint URL to take its scheme from")

    connector = store.get(Kind.CONNECTOR, connector_name)
    if not isinstance(connector, ConnectorRecord):
        raise CommandError(f'Connector "{connector_name}" not found so cannot create this flow')

    name = convert_to_safe_resource_name(args.name) if args.name else ""
    if not name:
        name = _generate_name(store.names(), _flow_name_prefix(steps))

    config = FlowConfig(
        flows=(
            FlowDefinition(
                name="default",
                trace=args.trace,
                log_result=args.log_result,
                steps=tuple(steps),
            ),
        )
    )
    record = FlowRecord(
        name=name,
        namespace=store.namespace,
        connector=connector_name,
        funktion_yml=config.to_yaml(),
        application_properties=connector.application_properties or DEFAULT_APPLICATION_PROPERTIES,
    )
    action = store.apply(record)
    print(f"Flow {name} {action} " + " => ".join(step.describe() for step in steps))


def _build_store(args: argparse.Namespace) -> ResourceStore:
    load_kube_configuration(args.kubeconfig)
    core_api, apps_api = build_clients()
    namespace = args.namespace or current_namespace()
    return ResourceStore(KubeClusterStore(core_api, apps_api), namespace)


def main(argv: Sequence[str] | None = None, store: ResourceStore | None = None) -> int:
    args = _parse_args(argv)
    try:
        store = store or _build_store(args)
        if args.command == "get":
            run_get(store, _parse_kind(args.kind), args.name)
        elif args.command == "delete":
            run_delete(store, _parse_kind(args.kind), args.name, args.all)
        elif args.create_kind == "function":
            run_create_function(store, args)
        else:
            run_create_flow(store, args)
    except (CommandError, LookupError, ValueError, ConfigException) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except ApiException as exc:
        print(f"error: Kubernetes API request failed ({exc.status}): {exc.reason}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
