"""flux-orchestrator CLI.

Commands:
    run             Load clusters and run the sync loop (or one tick with --once)
    sync            Sync one cluster, or every candidate cluster, now
    health          Show recorded (or live, with --live) cluster health
    clusters list   Show registered clusters
    clusters add    Register a cluster from a kubeconfig file
    clusters remove Remove a cluster and its stored resources
    resources       List stored Flux resources of a cluster
    tree            Show the live ownership tree of a cluster
    stats           Show live Flux resource counts of a cluster
    inventory       Show what a Kustomization or HelmRelease applied
    summary         Show stored resource counts by cluster, kind and status
    reconcile       Request reconciliation of a Flux object
    suspend/resume  Suspend or resume a Flux object
    update-spec     Merge fields into an object's spec
    scale           Scale a Deployment, StatefulSet or ReplicaSet
    restart         Roll out a Deployment, StatefulSet or DaemonSet again
    delete-pod      Delete a pod
    interval        Set the automatic sync interval
    init-db         Create or migrate the local database
"""

from __future__ import annotations

import json
import logging
import shutil
import sys
import threading
from pathlib import Path
from typing import Any

import click
import yaml

from flux_orchestrator import __version__
from flux_orchestrator.config import OrchestratorConfig, load_config
from flux_orchestrator.engine import Orchestrator
from flux_orchestrator.models import ClusterHealth, OrchestratorError, ResourceNode, SyncOutcome
from flux_orchestrator.store.database import Database
from flux_orchestrator.store.migrations import run_migrations

logger = logging.getLogger(__name__)

_HEALTH_COLORS = {
    ClusterHealth.HEALTHY: "green",
    ClusterHealth.UNHEALTHY: "red",
    ClusterHealth.UNKNOWN: "yellow",
}

_NODE_COLORS = {
    "Healthy": "green",
    "Degraded": "red",
    "Progressing": "yellow",
    "Unknown": "white",
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def _fail(message: str) -> None:
    click.echo(click.style("Error: ", fg="red") + message, err=True)
    sys.exit(1)


def _config(ctx: click.Context) -> OrchestratorConfig:
    return ctx.obj["config"]


def _orchestrator(ctx: click.Context, load: bool = True) -> Orchestrator:
    """Return the orchestrator for this invocation, building it on first use."""
    orch = ctx.obj.get("orchestrator")
    if orch is None:
        cfg = _config(ctx)
        orch = Orchestrator.from_config(cfg)
        ctx.call_on_close(orch.close)
        ctx.obj["orchestrator"] = orch
        if load:
            orch.load_clusters(cfg.in_cluster_id if cfg.in_cluster else None)
    return orch


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _echo_outcome(outcome: SyncOutcome) -> None:
    color = "green" if outcome.ok else "red"
    label = "OK" if outcome.ok else "FAIL"
    click.echo(
        click.style(f"{label:<5}", fg=color)
        + f"{outcome.cluster_id:<24} {outcome.health_status:<10} "
        + f"{outcome.resources_synced} resource(s) in {outcome.duration_seconds:.2f}s"
    )
    if outcome.error:
        click.echo(f"      {outcome.error}")
    for kind, error in sorted(outcome.kind_errors.items()):
        click.echo(f"      {kind}: {error}")


def _echo_tree(node: ResourceNode, depth: int = 0) -> None:
    color = _NODE_COLORS.get(str(node.health), "white")
    click.echo(
        "  " * depth
        + f"{node.kind}/{node.name} "
        + click.style(f"[{node.status}]", fg=color)
        + (f"  ({node.namespace})" if node.namespace and depth == 0 else "")
    )
    for child in node.children:
        _echo_tree(child, depth + 1)


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "config_path", default=None, help="Path to flux-orchestrator.yaml")
@click.option("--log-level", default=None, help="Logging level (default from config)")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """flux-orchestrator: multi-cluster Flux sync and resource graph engine."""
    ctx.ensure_object(dict)
    if "config" not in ctx.obj:
        try:
            ctx.obj["config"] = load_config(config_path)
        except (FileNotFoundError, ValueError) as e:
            _fail(str(e))
    _configure_logging(log_level or _config(ctx).log_level)


# --- run / sync ---


@cli.command()
@click.option("--once", is_flag=True, help="Run a single sync tick and exit")
@click.pass_context
def run(ctx: click.Context, once: bool) -> None:
    """Load clusters and run the sync loop until interrupted."""
    orch = _orchestrator(ctx)
    if once:
        for outcome in orch.sync_now():
            _echo_outcome(outcome)
        return

    orch.start()
    click.echo(f"Syncing every {orch.scheduler.interval:.0f}s. Press Ctrl+C to stop.")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        click.echo("Stopping...")
    finally:
        orch.stop()


@cli.command()
@click.argument("cluster_id", required=False)
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def sync(ctx: click.Context, cluster_id: str | None, json_output: bool) -> None:
    """Sync CLUSTER_ID now, or every healthy/unknown cluster."""
    orch = _orchestrator(ctx)
    try:
        outcomes = [orch.sync_cluster(cluster_id)] if cluster_id else orch.sync_now()
    except OrchestratorError as e:
        _fail(str(e))

    if json_output:
        _echo_json([o.model_dump(mode="json") for o in outcomes])
        return
    if not outcomes:
        click.echo("No clusters to sync.")
        return
    for outcome in outcomes:
        _echo_outcome(outcome)
    if not all(o.ok for o in outcomes):
        sys.exit(1)


# --- health ---


@cli.command()
@click.argument("cluster_id")
@click.option("--live", is_flag=True, help="Check the cluster live instead of reading the store")
@click.pass_context
def health(ctx: click.Context, cluster_id: str, live: bool) -> None:
    """Show the health of CLUSTER_ID."""
    orch = _orchestrator(ctx, load=live)
    try:
        status = orch.check_health(cluster_id) if live else orch.get_health(cluster_id)
    except OrchestratorError as e:
        _fail(str(e))
    click.echo(f"{cluster_id}: " + click.style(str(status), fg=_HEALTH_COLORS[status], bold=True))
    if status != ClusterHealth.HEALTHY:
        sys.exit(1)


# --- clusters ---


@cli.group()
def clusters() -> None:
    """Manage registered clusters."""


@clusters.command("list")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def clusters_list(ctx: click.Context, json_output: bool) -> None:
    """Show registered clusters."""
    records = _orchestrator(ctx, load=False).list_clusters()
    if json_output:
        _echo_json([r.model_dump(mode="json") for r in records])
        return
    if not records:
        click.echo("No clusters registered.")
        return
    for r in records:
        checked = r.last_health_check.isoformat() if r.last_health_check else "never"
        click.echo(
            f"  {r.cluster_id:<24} "
            + click.style(f"{r.status:<10}", fg=_HEALTH_COLORS[r.status])
            + f" {r.resource_count:>5} resource(s)  checked {checked}"
        )
    click.echo(f"\n{len(records)} cluster(s).")


@clusters.command("add")
@click.argument("cluster_id")
@click.argument("kubeconfig", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", default=None, help="Display name (default: cluster id)")
@click.pass_context
def clusters_add(ctx: click.Context, cluster_id: str, kubeconfig: str, name: str | None) -> None:
    """Register CLUSTER_ID from a KUBECONFIG file."""
    cfg = _config(ctx)
    orch = _orchestrator(ctx, load=False)
    blob = Path(kubeconfig).read_text(encoding="utf-8")
    try:
        record = orch.add_cluster(cluster_id, blob, name=name)
    except OrchestratorError as e:
        _fail(str(e))

    if cfg.kubeconfig_dir:
        target = Path(cfg.kubeconfig_dir) / f"{cluster_id}.yaml"
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(kubeconfig, target)
    else:
        click.echo(
            "Warning: no kubeconfig_dir configured; the cluster must be re-added "
            "after a restart.",
            err=True,
        )

    click.echo(
        click.style("Added ", fg="green")
        + f"{record.cluster_id} ("
        + click.style(str(record.status), fg=_HEALTH_COLORS[record.status])
        + ")"
    )


@clusters.command("remove")
@click.argument("cluster_id")
@click.pass_context
def clusters_remove(ctx: click.Context, cluster_id: str) -> None:
    """Remove CLUSTER_ID and its stored resources."""
    cfg = _config(ctx)
    removed = _orchestrator(ctx, load=False).remove_cluster(cluster_id)
    if cfg.kubeconfig_dir:
        (Path(cfg.kubeconfig_dir) / f"{cluster_id}.yaml").unlink(missing_ok=True)
    if not removed:
        _fail(f"Cluster '{cluster_id}' is not registered")
    click.echo(f"Removed {cluster_id}")


# --- resources / tree / stats / inventory ---


@cli.command()
@click.argument("cluster_id")
@click.option("--kind", default=None, help="Only show this kind")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def resources(ctx: click.Context, cluster_id: str, kind: str | None, json_output: bool) -> None:
    """List stored Flux resources of CLUSTER_ID."""
    try:
        rows = _orchestrator(ctx, load=False).list_resources(cluster_id, kind)
    except OrchestratorError as e:
        _fail(str(e))

    if json_output:
        _echo_json([r.model_dump(mode="json", exclude={"metadata"}) for r in rows])
        return
    if not rows:
        click.echo("No resources found.")
        return
    for r in rows:
        color = {"Ready": "green", "NotReady": "red"}.get(str(r.status), "yellow")
        suspended = click.style(" (suspended)", fg="cyan") if r.suspended else ""
        click.echo(
            f"  {r.kind:<15} {r.namespace + '/' + r.name:<45} "
            + click.style(f"{r.status:<9}", fg=color)
            + suspended
            + (f"  {r.message}" if r.message else "")
        )
    click.echo(f"\n{len(rows)} resource(s).")


@cli.command()
@click.argument("cluster_id")
@click.option("--inventory", "include_inventory", is_flag=True, help="Link Flux inventories")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def tree(ctx: click.Context, cluster_id: str, include_inventory: bool, json_output: bool) -> None:
    """Show the live ownership tree of CLUSTER_ID."""
    try:
        roots = _orchestrator(ctx).get_resource_tree(cluster_id, include_inventory)
    except OrchestratorError as e:
        _fail(str(e))

    if json_output:
        _echo_json([r.model_dump(mode="json") for r in roots])
        return
    for root in roots:
        _echo_tree(root)


@cli.command()
@click.argument("cluster_id")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def stats(ctx: click.Context, cluster_id: str, json_output: bool) -> None:
    """Show live Flux resource counts of CLUSTER_ID."""
    try:
        counts = _orchestrator(ctx).get_flux_stats(cluster_id)
    except OrchestratorError as e:
        _fail(str(e))

    if json_output:
        _echo_json(counts)
        return
    click.echo(f"  {'KIND':<16} {'TOTAL':>6} {'READY':>6} {'NOT READY':>10} {'SUSPENDED':>10}")
    for kind, c in counts.items():
        click.echo(
            f"  {kind:<16} {c['total']:>6} {c['ready']:>6} {c['notReady']:>10} {c['suspended']:>10}"
        )


@cli.command()
@click.argument("cluster_id")
@click.argument("kind")
@click.argument("namespace")
@click.argument("name")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def inventory(
    ctx: click.Context, cluster_id: str, kind: str, namespace: str, name: str, json_output: bool,
) -> None:
    """Show the objects a Flux KIND NAMESPACE/NAME applied."""
    try:
        entries = _orchestrator(ctx).get_flux_inventory(cluster_id, kind, namespace, name)
    except OrchestratorError as e:
        _fail(str(e))

    if json_output:
        _echo_json([e.model_dump(mode="json") for e in entries])
        return
    for entry in entries:
        target = f"{entry.namespace}/{entry.name}" if entry.namespace else entry.name
        click.echo(f"  {entry.kind:<20} {target}")
    click.echo(f"\n{len(entries)} object(s).")


@cli.command()
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def summary(ctx: click.Context, json_output: bool) -> None:
    """Show stored resource counts by cluster, kind and status."""
    try:
        rows = _orchestrator(ctx, load=False).resource_summary()
    except OrchestratorError as e:
        _fail(str(e))

    if json_output:
        _echo_json(rows)
        return
    if not rows:
        click.echo("No resources stored.")
        return
    click.echo(f"  {'CLUSTER':<24} {'KIND':<16} {'STATUS':<10} {'COUNT':>6}")
    for r in rows:
        click.echo(f"  {r['cluster_id']:<24} {r['kind']:<16} {r['status']:<10} {r['count']:>6}")


# --- operator actions ---


def _flux_action(ctx: click.Context, action: str, args: tuple[str, str, str, str]) -> None:
    orch = _orchestrator(ctx)
    cluster_id, kind, namespace, name = args
    try:
        if action == "reconcile":
            orch.trigger_reconcile(cluster_id, kind, namespace, name)
        else:
            orch.set_suspended(cluster_id, kind, namespace, name, action == "suspend")
    except OrchestratorError as e:
        _fail(str(e))
    click.echo(click.style("OK ", fg="green") + f"{action} {kind} {namespace}/{name}")


@cli.command()
@click.argument("cluster_id")
@click.argument("kind")
@click.argument("namespace")
@click.argument("name")
@click.pass_context
def reconcile(ctx: click.Context, cluster_id: str, kind: str, namespace: str, name: str) -> None:
    """Request reconciliation of a Flux object."""
    _flux_action(ctx, "reconcile", (cluster_id, kind, namespace, name))


@cli.command()
@click.argument("cluster_id")
@click.argument("kind")
@click.argument("namespace")
@click.argument("name")
@click.pass_context
def suspend(ctx: click.Context, cluster_id: str, kind: str, namespace: str, name: str) -> None:
    """Suspend a Flux object."""
    _flux_action(ctx, "suspend", (cluster_id, kind, namespace, name))


@cli.command()
@click.argument("cluster_id")
@click.argument("kind")
@click.argument("namespace")
@click.argument("name")
@click.pass_context
def resume(ctx: click.Context, cluster_id: str, kind: str, namespace: str, name: str) -> None:
    """Resume a suspended Flux object."""
    _flux_action(ctx, "resume", (cluster_id, kind, namespace, name))


def _workload_action(ctx: click.Context, label: str, call: Any) -> None:
    try:
        call(_orchestrator(ctx))
    except (OrchestratorError, ValueError) as e:
        _fail(str(e))
    click.echo(click.style("OK ", fg="green") + label)


@cli.command("update-spec")
@click.argument("cluster_id")
@click.argument("kind")
@click.argument("namespace")
@click.argument("name")
@click.argument("patch")
@click.pass_context
def update_spec(
    ctx: click.Context, cluster_id: str, kind: str, namespace: str, name: str, patch: str,
) -> None:
    """Merge PATCH (a JSON or YAML mapping of spec fields) into an object's spec."""
    try:
        fields = yaml.safe_load(patch)
    except yaml.YAMLError as e:
        _fail(f"Invalid patch: {e}")
    if not isinstance(fields, dict):
        _fail("Patch must be a mapping of spec fields")
    _workload_action(
        ctx,
        f"update-spec {kind} {namespace}/{name}",
        lambda orch: orch.update_spec(cluster_id, kind, namespace, name, fields),
    )


@cli.command()
@click.argument("cluster_id")
@click.argument("kind")
@click.argument("namespace")
@click.argument("name")
@click.argument("replicas", type=click.IntRange(min=0))
@click.pass_context
def scale(
    ctx: click.Context, cluster_id: str, kind: str, namespace: str, name: str, replicas: int,
) -> None:
    """Scale a Deployment, StatefulSet or ReplicaSet to REPLICAS."""
    _workload_action(
        ctx,
        f"scale {kind} {namespace}/{name} to {replicas}",
        lambda orch: orch.scale(cluster_id, kind, namespace, name, replicas),
    )


@cli.command()
@click.argument("cluster_id")
@click.argument("kind")
@click.argument("namespace")
@click.argument("name")
@click.pass_context
def restart(ctx: click.Context, cluster_id: str, kind: str, namespace: str, name: str) -> None:
    """Roll out a Deployment, StatefulSet or DaemonSet again."""
    _workload_action(
        ctx,
        f"restart {kind} {namespace}/{name}",
        lambda orch: orch.restart(cluster_id, kind, namespace, name),
    )


@cli.command("delete-pod")
@click.argument("cluster_id")
@click.argument("namespace")
@click.argument("name")
@click.pass_context
def delete_pod(ctx: click.Context, cluster_id: str, namespace: str, name: str) -> None:
    """Delete a pod so its controller recreates it."""
    _workload_action(
        ctx,
        f"delete Pod {namespace}/{name}",
        lambda orch: orch.delete_pod(cluster_id, namespace, name),
    )


# --- settings / database ---


@cli.command()
@click.argument("minutes", type=float)
@click.pass_context
def interval(ctx: click.Context, minutes: float) -> None:
    """Set the automatic sync interval in MINUTES."""
    try:
        _orchestrator(ctx, load=False).set_sync_interval(minutes)
    except (OrchestratorError, ValueError) as e:
        _fail(str(e))
    click.echo(f"Sync interval set to {minutes:g} minute(s).")


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create or migrate the local database."""
    cfg = _config(ctx)
    db = Database(cfg.database)
    try:
        version = run_migrations(db)
    finally:
        db.close()
    click.echo(f"Database {cfg.database} at schema version {version}.")
