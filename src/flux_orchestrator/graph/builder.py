"""Assemble an ownership forest from a flat set of fetched objects.

Nodes are indexed by ``(namespace, kind, name)`` and linked through
explicit child-id lists; the :class:`ResourceNode` tree is materialized
from the index only at the end, so no node is ever shared between two
parents in memory.  Owner references are resolved within the owner's
namespace, matching Kubernetes semantics.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from flux_orchestrator.kinds import KindSpec
from flux_orchestrator.models import HealthState, ResourceNode, ResourceStatus
from flux_orchestrator.status.normalizer import (
    describe_workload,
    dig,
    inventory_of,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

NodeKey = tuple[str, str, str]

_INVENTORY_KINDS = frozenset(("Kustomization", "HelmRelease"))


def node_id(namespace: str, kind: str, name: str) -> str:
    return f"{namespace}/{kind}/{name}"


def _node_metadata(obj: Mapping[str, Any], spec: KindSpec) -> dict[str, Any]:
    metadata: dict[str, Any] = {"apiVersion": obj.get("apiVersion") or spec.api_version}
    labels = dig(obj, "metadata", "labels")
    if isinstance(labels, Mapping) and labels:
        metadata["labels"] = dict(labels)
    annotations = dig(obj, "metadata", "annotations")
    if isinstance(annotations, Mapping) and annotations:
        metadata["annotations"] = dict(annotations)
    return metadata


def _owner_keys(obj: Mapping[str, Any], namespace: str) -> list[NodeKey] | None:
    """Return owner keys, or None when the owner data is malformed."""
    refs = dig(obj, "metadata", "ownerReferences")
    if refs is None:
        return []
    if not isinstance(refs, list):
        return None
    keys: list[NodeKey] = []
    for ref in refs:
        if not isinstance(ref, Mapping):
            return None
        kind, name = ref.get("kind"), ref.get("name")
        if not isinstance(kind, str) or not isinstance(name, str) or not kind or not name:
            return None
        keys.append((namespace, kind, name))
    return keys


class ResourceGraphBuilder:
    """Builds a fresh forest per call; holds no state between calls."""

    def __init__(self, include_inventory: bool = False) -> None:
        self._include_inventory = include_inventory

    def build(self, objects: Iterable[tuple[KindSpec, Mapping[str, Any]]]) -> list[ResourceNode]:
        """Return the root nodes, in discovery order, with children attached."""
        nodes: dict[NodeKey, ResourceNode] = {}
        raw: dict[NodeKey, Mapping[str, Any]] = {}
        order: list[NodeKey] = []

        for spec, obj in objects:
            name = dig(obj, "metadata", "name")
            if not isinstance(name, str) or not name:
                logger.warning("Skipping %s without a name", spec.kind)
                continue
            namespace = dig(obj, "metadata", "namespace")
            namespace = namespace if isinstance(namespace, str) else ""
            key = (namespace, spec.kind, name)
            if key in nodes:
                continue
            status = describe_workload(obj, spec)
            nodes[key] = ResourceNode(
                id=node_id(*key),
                kind=spec.kind,
                name=name,
                namespace=namespace,
                status=status.status,
                health=status.health,
                message=status.message,
                created_at=parse_timestamp(dig(obj, "metadata", "creationTimestamp")),
                metadata=_node_metadata(obj, spec),
            )
            raw[key] = obj
            order.append(key)

        children: dict[NodeKey, list[NodeKey]] = {key: [] for key in order}
        attached: set[NodeKey] = set()

        for key in order:
            owners = _owner_keys(raw[key], key[0])
            if owners is None:
                logger.warning("Malformed ownerReferences on %s; keeping it as a root", node_id(*key))
                continue
            for owner in owners:
                if owner in children:
                    children[owner].append(key)
                    attached.add(key)

        if self._include_inventory:
            self._link_inventory(order, raw, nodes, children, attached)

        roots: list[ResourceNode] = []
        for key in order:
            if key not in attached:
                roots.append(self._materialize(key, nodes, children, frozenset()))
        roots.extend(self._cycle_roots(order, children, attached, nodes))
        return roots

    # --- Private ---

    def _materialize(
        self,
        key: NodeKey,
        nodes: dict[NodeKey, ResourceNode],
        children: dict[NodeKey, list[NodeKey]],
        path: frozenset[NodeKey],
    ) -> ResourceNode:
        path = path | {key}
        kids = []
        for child in children.get(key, ()):
            if child in path:
                logger.warning("Ownership cycle at %s; cutting edge", node_id(*child))
                continue
            kids.append(self._materialize(child, nodes, children, path))
        return nodes[key].model_copy(update={"children": kids})

    def _cycle_roots(
        self,
        order: list[NodeKey],
        children: dict[NodeKey, list[NodeKey]],
        attached: set[NodeKey],
        nodes: dict[NodeKey, ResourceNode],
    ) -> list[ResourceNode]:
        """Surface nodes that are only reachable through an ownership cycle."""
        reachable: set[NodeKey] = set()
        stack = [key for key in order if key not in attached]
        while stack:
            key = stack.pop()
            if key in reachable:
                continue
            reachable.add(key)
            stack.extend(children.get(key, ()))

        extra: list[ResourceNode] = []
        for key in order:
            if key in reachable:
                continue
            logger.warning("Ownership cycle through %s; promoting it to a root", node_id(*key))
            extra.append(self._materialize(key, nodes, children, frozenset()))
            stack = [key]
            while stack:
                current = stack.pop()
                if current in reachable:
                    continue
                reachable.add(current)
                stack.extend(children.get(current, ()))
        return extra

    def _link_inventory(
        self,
        order: list[NodeKey],
        raw: dict[NodeKey, Mapping[str, Any]],
        nodes: dict[NodeKey, ResourceNode],
        children: dict[NodeKey, list[NodeKey]],
        attached: set[NodeKey],
    ) -> None:
        for key in list(order):
            if key[1] not in _INVENTORY_KINDS:
                continue
            for entry in inventory_of(raw[key]):
                if not entry.kind or not entry.name:
                    continue
                target = (entry.namespace, entry.kind, entry.name)
                if target == key:
                    continue
                if target not in nodes:
                    nodes[target] = ResourceNode(
                        id=node_id(*target),
                        kind=entry.kind,
                        name=entry.name,
                        namespace=entry.namespace,
                        status=ResourceStatus.UNKNOWN,
                        health=HealthState.UNKNOWN,
                        metadata={
                            "apiVersion": f"{entry.group}/{entry.version}".strip("/"),
                            "source": "flux-inventory",
                        },
                    )
                    children[target] = []
                    attached.add(target)
                    children[key].append(target)
                    continue
                if target in attached:
                    continue
                children[key].append(target)
                attached.add(target)
