"""Map heterogeneous Kubernetes status blocks onto ``{status, health}``.

Every function here is pure and total: malformed, missing or oddly typed
fields degrade to the ``Unknown`` branch instead of raising.  Objects are
plain ``dict`` trees as returned by the API server.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from flux_orchestrator.kinds import FLUX_KINDS, KindSpec
from flux_orchestrator.models import (
    HealthState,
    InventoryEntry,
    ManagedResource,
    NormalizedStatus,
    ResourceStatus,
)

_PHASE_HEALTH: dict[str, HealthState] = {
    "Running": HealthState.HEALTHY,
    "Succeeded": HealthState.HEALTHY,
    "Pending": HealthState.PROGRESSING,
    "Failed": HealthState.DEGRADED,
    "Unknown": HealthState.DEGRADED,
}

# Fields dropped from the stored snapshot; large and never read back.
_SNAPSHOT_DROP = ("managedFields",)


def dig(obj: Any, *path: str) -> Any:
    """Walk nested mappings, returning ``None`` as soon as a step is missing."""
    current = obj
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    return 0


def normalize_status(
    conditions: Iterable[Any] | None,
    phase: str | None = None,
) -> NormalizedStatus:
    """Apply the Ready-condition rule, then the phase rule, then Unknown.

    The first condition with ``type == "Ready"`` decides: ``"True"`` is
    Ready/Healthy, any other value is NotReady/Degraded.  Without a Ready
    condition a phase string is kept verbatim as the status and mapped to a
    health value.
    """
    if conditions is not None and not isinstance(conditions, (str, bytes, Mapping)):
        try:
            items = list(conditions)
        except TypeError:
            items = []
        for cond in items:
            if not isinstance(cond, Mapping) or cond.get("type") != "Ready":
                continue
            message = cond.get("message")
            message = message if isinstance(message, str) else ""
            if cond.get("status") == "True":
                return NormalizedStatus(
                    status=ResourceStatus.READY,
                    health=HealthState.HEALTHY,
                    message=message,
                )
            return NormalizedStatus(
                status=ResourceStatus.NOT_READY,
                health=HealthState.DEGRADED,
                message=message,
            )

    if isinstance(phase, str) and phase:
        return NormalizedStatus(
            status=phase,
            health=_PHASE_HEALTH.get(phase, HealthState.UNKNOWN),
        )

    return NormalizedStatus()


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp; anything unparsable yields ``None``."""
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def normalize_object(obj: Mapping[str, Any], spec: KindSpec) -> NormalizedStatus:
    """Normalize one raw object using the generic condition/phase rules."""
    phase = dig(obj, "status", "phase") if spec.has_phase else None
    return normalize_status(dig(obj, "status", "conditions"), phase)


def last_reconcile_of(obj: Mapping[str, Any], spec: KindSpec) -> datetime | None:
    if not spec.reconcile_time_path:
        return None
    return parse_timestamp(dig(obj, *spec.reconcile_time_path))


def is_suspended(obj: Mapping[str, Any]) -> bool:
    return dig(obj, "spec", "suspend") is True


def object_snapshot(obj: Mapping[str, Any]) -> dict[str, Any]:
    """Return a JSON-safe copy of *obj* without bulky server bookkeeping."""
    snapshot = dict(obj)
    meta = snapshot.get("metadata")
    if isinstance(meta, Mapping):
        snapshot["metadata"] = {
            k: v for k, v in meta.items() if k not in _SNAPSHOT_DROP
        }
    return snapshot


def to_managed_resource(
    cluster_id: str,
    spec: KindSpec,
    obj: Mapping[str, Any],
) -> ManagedResource:
    """Build the store row for one fetched object.

    Raises:
        TypeError: If *obj* is not a mapping.
        ValueError: If *obj* has no ``metadata.name``.
    """
    if not isinstance(obj, Mapping):
        raise TypeError(f"expected an object mapping, got {type(obj).__name__}")
    name = dig(obj, "metadata", "name")
    if not isinstance(name, str) or not name:
        raise ValueError(f"{spec.kind} object has no metadata.name")
    normalized = normalize_object(obj, spec)
    namespace = dig(obj, "metadata", "namespace")
    return ManagedResource(
        cluster_id=cluster_id,
        kind=spec.kind,
        namespace=namespace if isinstance(namespace, str) else "",
        name=name,
        status=normalized.status,
        health=normalized.health,
        message=normalized.message,
        last_reconcile=last_reconcile_of(obj, spec),
        suspended=is_suspended(obj),
        metadata=object_snapshot(obj),
    )


# --- Kind-specific workload rules ---


def _replica_status(ready: int, desired: int) -> NormalizedStatus:
    if desired > 0 and ready == desired:
        return NormalizedStatus(status="Ready", health=HealthState.HEALTHY)
    if ready > 0:
        return NormalizedStatus(status="Progressing", health=HealthState.PROGRESSING)
    return NormalizedStatus(status="Not Ready", health=HealthState.DEGRADED)


def _has_lb_ingress(obj: Mapping[str, Any]) -> bool:
    ingress = dig(obj, "status", "loadBalancer", "ingress")
    return isinstance(ingress, list) and len(ingress) > 0


def describe_workload(obj: Mapping[str, Any], spec: KindSpec) -> NormalizedStatus:
    """Status for a tree node, using per-kind rules for built-in workloads.

    Kinds without a dedicated rule fall back to :func:`normalize_object`.
    """
    kind = spec.kind

    if kind in ("Deployment", "StatefulSet"):
        return _replica_status(
            _as_int(dig(obj, "status", "readyReplicas")),
            _as_int(dig(obj, "status", "replicas")),
        )

    if kind == "DaemonSet":
        return _replica_status(
            _as_int(dig(obj, "status", "numberReady")),
            _as_int(dig(obj, "status", "desiredNumberScheduled")),
        )

    if kind == "Service":
        service_type = dig(obj, "spec", "type")
        service_type = service_type if isinstance(service_type, str) else "ClusterIP"
        if service_type == "LoadBalancer":
            if _has_lb_ingress(obj):
                return NormalizedStatus(
                    status="LoadBalancer Ready", health=HealthState.HEALTHY,
                )
            return NormalizedStatus(
                status="LoadBalancer Pending", health=HealthState.PROGRESSING,
            )
        return NormalizedStatus(status=f"Type: {service_type}", health=HealthState.HEALTHY)

    if kind == "Ingress":
        if _has_lb_ingress(obj):
            return NormalizedStatus(status="Ready", health=HealthState.HEALTHY)
        return NormalizedStatus(status="Pending", health=HealthState.PROGRESSING)

    if kind == "Job":
        if _as_int(dig(obj, "status", "succeeded")) > 0:
            return NormalizedStatus(status="Completed", health=HealthState.HEALTHY)
        if _as_int(dig(obj, "status", "failed")) > 0:
            return NormalizedStatus(status="Failed", health=HealthState.DEGRADED)
        return NormalizedStatus(status="Running", health=HealthState.PROGRESSING)

    if kind in ("ConfigMap", "Secret"):
        return NormalizedStatus(status="Available", health=HealthState.HEALTHY)

    if kind == "Namespace":
        phase = dig(obj, "status", "phase")
        if isinstance(phase, str) and phase:
            health = HealthState.HEALTHY if phase == "Active" else HealthState.DEGRADED
            return NormalizedStatus(status=phase, health=health)
        return NormalizedStatus()

    return normalize_object(obj, spec)


# --- Flux helpers ---


def flux_stats(objects_by_kind: Mapping[str, Iterable[Mapping[str, Any]]]) -> dict[str, dict[str, int]]:
    """Count total/ready/notReady/suspended objects per Flux kind.

    Suspended objects are counted only as suspended.  Kinds missing from
    *objects_by_kind* report zeros.
    """
    stats: dict[str, dict[str, int]] = {}
    for spec in FLUX_KINDS:
        counts = {"total": 0, "ready": 0, "notReady": 0, "suspended": 0}
        for obj in objects_by_kind.get(spec.kind, ()):
            counts["total"] += 1
            if is_suspended(obj):
                counts["suspended"] += 1
                continue
            status = normalize_object(obj, spec).status
            if status == ResourceStatus.READY:
                counts["ready"] += 1
            elif status == ResourceStatus.NOT_READY:
                counts["notReady"] += 1
        stats[spec.kind] = counts
    return stats


def parse_inventory_id(entry_id: str, version: str = "") -> InventoryEntry:
    """Split a Flux inventory id (``<namespace>_<name>_<group>_<kind>``)."""
    parts = entry_id.split("_")
    if len(parts) >= 4:
        return InventoryEntry(
            id=entry_id,
            version=version,
            namespace=parts[0],
            name=parts[1],
            group=parts[2],
            kind=parts[3],
        )
    if len(parts) == 3:
        return InventoryEntry(
            id=entry_id, version=version, name=parts[0], group=parts[1], kind=parts[2],
        )
    return InventoryEntry(id=entry_id, version=version)


def inventory_of(obj: Mapping[str, Any]) -> list[InventoryEntry]:
    """Read ``status.inventory.entries`` of a Flux object."""
    entries = dig(obj, "status", "inventory", "entries")
    if not isinstance(entries, list):
        return []
    result: list[InventoryEntry] = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        entry_id = entry.get("id")
        if not isinstance(entry_id, str) or not entry_id:
            continue
        version = entry.get("v")
        result.append(parse_inventory_id(entry_id, version if isinstance(version, str) else ""))
    return result
