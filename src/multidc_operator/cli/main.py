"""multidc CLI: command-line interface for multidc-operator.

Commands:
    validate    Validate a cluster definition
    plan        Show which datacenters may progress, given observed state
    reconcile   Run one reconcile pass (``--dry-run`` uses an in-memory client)
    delete      Run the deletion cascade for a cluster
    status      Show the stored cluster status
    run         Start the event-driven operator
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

import click
import yaml

from multidc_operator import __version__
from multidc_operator.client.base import RemoteClient
from multidc_operator.client.memory import InMemoryClient
from multidc_operator.config import OperatorConfig, load_config
from multidc_operator.datacenter.template import observe
from multidc_operator.loader import ClusterLoadError, load_cluster
from multidc_operator.models import (
    READY,
    Cluster,
    ClusterStatus,
    ConditionStatus,
    ObjectKey,
    ObservedState,
    ResourceKind,
)
from multidc_operator.reconciler.reconciler import ConfigurationError, Reconciler, validate_cluster
from multidc_operator.reconciler.result import ReconcileResult
from multidc_operator.sequencer.sequencer import decide
from multidc_operator.status.store import (
    FileStatusStore,
    RemoteStatusStore,
    StatusStore,
    StatusStoreError,
)

# --- Defaults ---

DEFAULT_STATUS_FILE = "./.multidc-status.json"
DRY_RUN_CONTROL_PLANE = "control-plane"
UNREACHABLE = "unreachable"


def _resolve_cfg(path: str | None) -> OperatorConfig:
    """Load config from multidc-operator.yaml (auto-discover, never error unless explicit)."""
    if path is not None:
        try:
            return load_config(path)
        except (FileNotFoundError, ValueError) as e:
            click.echo(f"Error loading config: {e}", err=True)
            sys.exit(1)
    try:
        return load_config()
    except Exception:
        return OperatorConfig()


def _or(explicit: str | None, cfg_val: str | None, fallback: str | None) -> str | None:
    """Return first non-None value: explicit CLI flag > config > fallback."""
    return explicit or cfg_val or fallback


def _load(cluster_file: str) -> Cluster:
    try:
        return load_cluster(cluster_file)
    except ClusterLoadError as e:
        click.echo(click.style("ERROR", fg="red") + f"  {e}", err=True)
        sys.exit(1)


def _ready_badge(status: ConditionStatus) -> str:
    colors = {
        ConditionStatus.TRUE: "green",
        ConditionStatus.FALSE: "red",
        ConditionStatus.UNKNOWN: "yellow",
    }
    return click.style(str(status), fg=colors[status])


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", default=None, help="Path to multidc-operator.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """multidc: drive multi-datacenter Cassandra clusters across contexts."""
    cfg = _resolve_cfg(config_path)
    # Without -v or a config file, only warnings reach stderr
    if verbose or cfg.config_path is not None:
        logging.basicConfig(
            level=logging.DEBUG if verbose else getattr(logging, cfg.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    ctx.obj = cfg


# --- validate command ---


@cli.command()
@click.argument("cluster_file")
def validate(cluster_file: str) -> None:
    """Validate a cluster definition file."""
    cluster = _load(cluster_file)
    try:
        validate_cluster(cluster)
    except ConfigurationError as e:
        click.echo(click.style("FAIL", fg="red") + f"  {cluster_file}: {e}")
        sys.exit(1)

    click.echo(
        click.style("OK", fg="green")
        + f"    {cluster.namespace}/{cluster.name}:"
        f" {len(cluster.datacenters)} datacenter(s)"
        f" in {len(cluster.contexts())} context(s)"
    )
    for dc in cluster.datacenters:
        click.echo(f"  - {dc.name} (context={dc.context}, size={dc.size})")
    if cluster.backup is not None:
        click.echo(f"  backup image: {cluster.backup.image.ref()}")


# --- plan command ---


def _load_observed(path: str | None) -> tuple[dict[str, ObservedState | None], set[str]]:
    """Parse an observed-state YAML.

    Each key is a datacenter name mapping to ``null`` (absent),
    ``unreachable``, or an object with ``generation`` and ``status``::

        dc1:
          generation: 2
          status:
            observedGeneration: 2
            conditions: [{type: Ready, status: "True"}]
        dc2: null
    """
    observed: dict[str, ObservedState | None] = {}
    unreachable: set[str] = set()
    if path is None:
        return observed, unreachable

    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        click.echo(f"Error reading observed state: {e}", err=True)
        sys.exit(1)
    if not isinstance(raw, dict):
        click.echo(f"Error: observed state must be a mapping: {path}", err=True)
        sys.exit(1)

    for name, value in raw.items():
        if value == UNREACHABLE:
            unreachable.add(name)
            observed[name] = None
        elif value is None:
            observed[name] = None
        elif isinstance(value, dict):
            observed[name] = observe({
                "metadata": {"generation": value.get("generation", 1)},
                "status": value.get("status") or {},
            })
        else:
            click.echo(f"Error: invalid observed state for {name}: {value!r}", err=True)
            sys.exit(1)
    return observed, unreachable


@cli.command()
@click.argument("cluster_file")
@click.option("--observed", "observed_file", default=None, help="Observed-state YAML file")
@click.option("--secrets-pending", is_flag=True, help="Treat prerequisite secrets as missing")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def plan(
    cluster_file: str,
    observed_file: str | None,
    secrets_pending: bool,
    json_output: bool,
) -> None:
    """Show the sequencing decision for CLUSTER_FILE without touching any cluster."""
    cluster = _load(cluster_file)
    observed, unreachable = _load_observed(observed_file)
    decision = decide(
        cluster.datacenters,
        observed,
        secrets_ready=not secrets_pending,
        unreachable=unreachable,
    )

    if json_output:
        click.echo(json.dumps(decision.model_dump(mode="json"), indent=2))
        return

    for dc in cluster.datacenters:
        if dc.name in decision.create:
            action = click.style("create", fg="green")
        elif dc.name in decision.update:
            action = click.style("update", fg="cyan")
        else:
            action = click.style("defer ", fg="yellow")
        click.echo(f"  {action}  {dc.name} (context={dc.context})")
    if decision.reason:
        click.echo(f"\n  reason: {decision.reason}")
    if decision.requeue:
        click.echo("  requeue: yes")


# --- reconcile / delete commands ---


def _seed_dry_run(client: InMemoryClient, cluster: Cluster, context: str) -> None:
    """Give the in-memory world the objects a real control plane would hold."""
    client.put(
        ObjectKey(context, cluster.namespace, cluster.name),
        ResourceKind.CLUSTER,
        {"metadata": {"name": cluster.name, "namespace": cluster.namespace}},
    )
    if cluster.backup is not None:
        for secret in cluster.backup.secret_refs():
            client.put(
                ObjectKey(context, cluster.namespace, secret),
                ResourceKind.SECRET,
                {"type": "Opaque", "data": {}},
            )


def _build(
    cfg: OperatorConfig,
    cluster: Cluster,
    dry_run: bool,
    kubeconfig: str | None,
    control_plane_context: str | None,
    status_file: str | None,
) -> tuple[RemoteClient, StatusStore, str]:
    """Assemble client, status store and control-plane context for a command."""
    if dry_run:
        context = _or(control_plane_context, cfg.control_plane_context, DRY_RUN_CONTROL_PLANE)
        assert context is not None
        client = InMemoryClient()
        _seed_dry_run(client, cluster, context)
        store: StatusStore = (
            FileStatusStore(status_file) if status_file else RemoteStatusStore(client, context)
        )
        return client, store, context

    context = _or(control_plane_context, cfg.control_plane_context, None)
    if context is None:
        click.echo("Error: --control-plane-context is required (or set it in config)", err=True)
        sys.exit(1)

    try:
        from multidc_operator.client.k8s_client import KubernetesClient

        k8s = KubernetesClient(
            kubeconfig=_or(kubeconfig, cfg.kubeconfig, None),
            control_plane_context=context,
            in_cluster=cfg.in_cluster,
        )
    except ImportError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    path = _or(status_file, cfg.status_file, None)
    store = FileStatusStore(path) if path else RemoteStatusStore(k8s, context)
    return k8s, store, context


def _reconciler(cfg: OperatorConfig, client: RemoteClient, store: StatusStore, context: str) -> Reconciler:
    return Reconciler(
        client,
        store,
        control_plane_context=context,
        requeue_delay=cfg.requeue_delay,
        backoff_base=cfg.backoff_base,
        backoff_max=cfg.backoff_max,
        max_workers=cfg.max_workers,
    )


def _print_status(status: ClusterStatus) -> None:
    if not status.datacenters:
        click.echo("  (no datacenters tracked yet)")
    for name, entry in status.datacenters.items():
        standalone = _ready_badge(entry.standalone_ready)
        click.echo(
            f"  {name:<16} ready={_ready_badge(entry.condition(READY))}"
            f"  gen={entry.observed_generation}/{entry.generation}"
            f"  sidecar={'yes' if entry.sidecar_injected else 'no'}"
            f"  standalone={standalone}"
            f"  rebuild={entry.rebuild.state}"
        )
        if entry.standalone_error:
            click.echo(f"  {'':<16} standalone error: {entry.standalone_error}")
        if entry.rebuild.message:
            click.echo(f"  {'':<16} rebuild: {entry.rebuild.message}")
    ready = click.style("READY", fg="green", bold=True) if status.ready else click.style(
        "NOT READY", fg="yellow", bold=True,
    )
    click.echo(f"\n  cluster: {ready}")
    if status.error:
        click.echo(click.style("  error: ", fg="red") + status.error)


def _report(result: ReconcileResult, json_output: bool, writes: list[Any] | None = None) -> None:
    if json_output:
        data = result.model_dump(mode="json")
        if writes is not None:
            data["writes"] = [
                {"verb": c.verb, "kind": str(c.kind), "key": str(c.key)} for c in writes
            ]
        click.echo(json.dumps(data, indent=2))
    else:
        if writes is not None:
            click.echo(click.style("Dry run writes:", bold=True))
            for call in writes:
                click.echo(f"  {call.verb:<12} {call.kind:<12} {call.key}")
            click.echo("")
        if result.status is not None:
            _print_status(result.status)
        if result.terminal:
            click.echo(click.style("FAILED", fg="red", bold=True) + f"  {result.error}")
        elif result.done:
            click.echo(click.style("DONE", fg="green", bold=True) + f"  {result.reason}")
        else:
            click.echo(
                click.style("REQUEUE", fg="yellow", bold=True)
                + f"  after {result.requeue_after:.0f}s: {result.reason}"
            )
    if result.terminal:
        sys.exit(1)


@cli.command()
@click.argument("cluster_file")
@click.option("--dry-run", is_flag=True, help="Run against an in-memory client")
@click.option("--kubeconfig", default=None, help="Kubeconfig file with all datacenter contexts")
@click.option("--control-plane-context", default=None, help="Context holding secrets and status")
@click.option("--status-file", default=None, help="Store status in this JSON file")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_obj
def reconcile(
    cfg: OperatorConfig,
    cluster_file: str,
    dry_run: bool,
    kubeconfig: str | None,
    control_plane_context: str | None,
    status_file: str | None,
    json_output: bool,
) -> None:
    """Run one reconcile pass for CLUSTER_FILE."""
    cluster = _load(cluster_file)
    client, store, context = _build(
        cfg, cluster, dry_run, kubeconfig, control_plane_context, status_file,
    )
    result = _reconciler(cfg, client, store, context).reconcile(cluster)
    writes = None
    if isinstance(client, InMemoryClient):
        writes = [c for c in client.writes() if c.kind != ResourceKind.CLUSTER]
    _report(result, json_output, writes)


@cli.command()
@click.argument("cluster_file")
@click.option("--kubeconfig", default=None, help="Kubeconfig file with all datacenter contexts")
@click.option("--control-plane-context", default=None, help="Context holding secrets and status")
@click.option("--status-file", default=None, help="Status JSON file to clear")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_obj
def delete(
    cfg: OperatorConfig,
    cluster_file: str,
    kubeconfig: str | None,
    control_plane_context: str | None,
    status_file: str | None,
    yes: bool,
) -> None:
    """Delete every object owned by CLUSTER_FILE's cluster, in cascade order."""
    cluster = _load(cluster_file)
    if not yes:
        click.confirm(
            f"Delete {len(cluster.datacenters)} datacenter(s) of {cluster.namespace}/{cluster.name}?",
            abort=True,
        )
    client, store, context = _build(
        cfg, cluster, False, kubeconfig, control_plane_context, status_file,
    )
    result = _reconciler(cfg, client, store, context).delete(cluster)
    _report(result, json_output=False)


# --- status command ---


@cli.command()
@click.argument("cluster_file")
@click.option("--kubeconfig", default=None, help="Kubeconfig file with all datacenter contexts")
@click.option("--control-plane-context", default=None, help="Context holding the status")
@click.option("--status-file", default=None, help="Read status from this JSON file")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_obj
def status(
    cfg: OperatorConfig,
    cluster_file: str,
    kubeconfig: str | None,
    control_plane_context: str | None,
    status_file: str | None,
    json_output: bool,
) -> None:
    """Show the stored status of CLUSTER_FILE's cluster."""
    cluster = _load(cluster_file)
    path = _or(status_file, cfg.status_file, None)
    if path is None and _or(control_plane_context, cfg.control_plane_context, None) is None:
        path = DEFAULT_STATUS_FILE

    if path is not None:
        store: StatusStore = FileStatusStore(path)
    else:
        _, store, _ = _build(cfg, cluster, False, kubeconfig, control_plane_context, None)

    try:
        current = store.load(cluster)
    except StatusStoreError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if current is None:
        click.echo(f"No status recorded for {cluster.namespace}/{cluster.name}.")
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(current.to_dict(), indent=2))
        return
    click.echo(click.style(f"{cluster.namespace}/{cluster.name}", bold=True))
    _print_status(current)


# --- run command ---


@cli.command()
@click.option("--namespace", "-n", "namespaces", multiple=True, help="Namespace(s) to watch")
@click.option("--all-namespaces", "-A", is_flag=True, help="Watch every namespace")
@click.option("--kubeconfig", default=None, help="Kubeconfig file with all datacenter contexts")
@click.option("--control-plane-context", default=None, help="Context holding secrets and status")
@click.pass_obj
def run(
    cfg: OperatorConfig,
    namespaces: tuple[str, ...],
    all_namespaces: bool,
    kubeconfig: str | None,
    control_plane_context: str | None,
) -> None:
    """Start the event-driven operator (requires the 'operator' extra)."""
    if not namespaces and not all_namespaces:
        click.echo("Error: pass --namespace or --all-namespaces", err=True)
        sys.exit(1)
    try:
        import kopf

        from multidc_operator.operator import runtime
    except ImportError as e:
        click.echo(
            f"Error: {e}. Install it with: pip install multidc-operator[operator]", err=True,
        )
        sys.exit(1)

    context = _or(control_plane_context, cfg.control_plane_context, None)
    if context is None:
        click.echo("Error: --control-plane-context is required (or set it in config)", err=True)
        sys.exit(1)

    runtime.configure(replace(
        cfg,
        kubeconfig=_or(kubeconfig, cfg.kubeconfig, None),
        control_plane_context=context,
    ))
    click.echo(f"Starting operator (control plane context: {context})")
    kopf.run(clusterwide=all_namespaces, namespaces=list(namespaces))
