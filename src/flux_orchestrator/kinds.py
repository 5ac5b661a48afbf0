"""Catalog of the resource kinds flux-orchestrator knows how to read.

Each kind is described as data (group, version, plural, scope) so that a
single generic client can list, get and replace any of them.  Flux kinds
are the ones persisted by the sync loop and accept reconcile, suspend and
resume; workload kinds are read live when building trees.  Each kind also
lists the generic operator actions (spec update, scale, restart, delete)
it accepts.
"""

from __future__ import annotations

from dataclasses import dataclass

from flux_orchestrator.models import OrchestratorError


class UnknownKindError(OrchestratorError):
    """Raised when a kind name is not in the catalog."""


class UnsupportedKindError(OrchestratorError):
    """Raised when an operator action targets a non-Flux kind."""


@dataclass(frozen=True)
class KindSpec:
    """Maps a kind name to its REST coordinates."""

    kind: str
    group: str
    version: str
    plural: str
    namespaced: bool = True
    flux: bool = False
    reconcile_time_path: tuple[str, ...] = ()
    has_phase: bool = False
    actions: frozenset[str] = frozenset()

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


_FLUX_RECONCILE_PATH = ("status", "lastHandledReconcileAt")

UPDATE = "update"
SCALE = "scale"
RESTART = "restart"
DELETE = "delete"

_UPDATE = frozenset({UPDATE})
_SCALED = frozenset({UPDATE, SCALE, RESTART})

FLUX_KINDS: tuple[KindSpec, ...] = (
    KindSpec(
        kind="Kustomization",
        group="kustomize.toolkit.fluxcd.io",
        version="v1",
        plural="kustomizations",
        flux=True,
        reconcile_time_path=_FLUX_RECONCILE_PATH,
        actions=_UPDATE,
    ),
    KindSpec(
        kind="HelmRelease",
        group="helm.toolkit.fluxcd.io",
        version="v2",
        plural="helmreleases",
        flux=True,
        reconcile_time_path=_FLUX_RECONCILE_PATH,
        actions=_UPDATE,
    ),
    KindSpec(
        kind="GitRepository",
        group="source.toolkit.fluxcd.io",
        version="v1",
        plural="gitrepositories",
        flux=True,
        reconcile_time_path=_FLUX_RECONCILE_PATH,
        actions=_UPDATE,
    ),
    KindSpec(
        kind="HelmRepository",
        group="source.toolkit.fluxcd.io",
        version="v1",
        plural="helmrepositories",
        flux=True,
        reconcile_time_path=_FLUX_RECONCILE_PATH,
        actions=_UPDATE,
    ),
    KindSpec(
        kind="Bucket",
        group="source.toolkit.fluxcd.io",
        version="v1beta2",
        plural="buckets",
        flux=True,
        reconcile_time_path=_FLUX_RECONCILE_PATH,
        actions=_UPDATE,
    ),
    KindSpec(
        kind="OCIRepository",
        group="source.toolkit.fluxcd.io",
        version="v1beta2",
        plural="ocirepositories",
        flux=True,
        reconcile_time_path=_FLUX_RECONCILE_PATH,
        actions=_UPDATE,
    ),
)

WORKLOAD_KINDS: tuple[KindSpec, ...] = (
    KindSpec(kind="Namespace", group="", version="v1", plural="namespaces", namespaced=False),
    KindSpec(kind="Deployment", group="apps", version="v1", plural="deployments", actions=_SCALED),
    KindSpec(
        kind="ReplicaSet", group="apps", version="v1", plural="replicasets",
        actions=frozenset({UPDATE, SCALE}),
    ),
    KindSpec(
        kind="StatefulSet", group="apps", version="v1", plural="statefulsets", actions=_SCALED,
    ),
    KindSpec(
        kind="DaemonSet", group="apps", version="v1", plural="daemonsets",
        actions=frozenset({UPDATE, RESTART}),
    ),
    KindSpec(
        kind="Pod", group="", version="v1", plural="pods", has_phase=True,
        actions=frozenset({DELETE}),
    ),
    KindSpec(kind="Service", group="", version="v1", plural="services"),
    KindSpec(kind="ConfigMap", group="", version="v1", plural="configmaps"),
    KindSpec(kind="Secret", group="", version="v1", plural="secrets"),
    KindSpec(
        kind="Ingress", group="networking.k8s.io", version="v1", plural="ingresses",
        actions=_UPDATE,
    ),
    KindSpec(kind="Job", group="batch", version="v1", plural="jobs", actions=_UPDATE),
    KindSpec(kind="CronJob", group="batch", version="v1", plural="cronjobs", actions=_UPDATE),
)

ALL_KINDS: tuple[KindSpec, ...] = FLUX_KINDS + WORKLOAD_KINDS

NAMESPACE_KIND = WORKLOAD_KINDS[0]

_BY_NAME: dict[str, KindSpec] = {spec.kind.lower(): spec for spec in ALL_KINDS}


def kind_spec(kind: str) -> KindSpec:
    """Look up a kind by name (case-insensitive)."""
    spec = _BY_NAME.get(kind.lower())
    if spec is None:
        known = ", ".join(s.kind for s in ALL_KINDS)
        raise UnknownKindError(f"Unknown kind '{kind}' (known: {known})")
    return spec


def flux_kind_spec(kind: str) -> KindSpec:
    """Look up a kind that accepts reconcile/suspend actions."""
    spec = kind_spec(kind)
    if not spec.flux:
        raise UnsupportedKindError(
            f"Kind '{spec.kind}' is not a Flux resource; "
            "only Flux kinds can be reconciled or suspended"
        )
    return spec


def action_kind_spec(kind: str, action: str) -> KindSpec:
    """Look up a kind and check that it accepts *action*."""
    spec = kind_spec(kind)
    if action not in spec.actions:
        supported = ", ".join(s.kind for s in ALL_KINDS if action in s.actions)
        raise UnsupportedKindError(
            f"Kind '{spec.kind}' does not support {action} (supported: {supported})"
        )
    return spec
