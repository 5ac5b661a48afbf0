"""Pull raw objects from a remote cluster.

Three operations: a cheap health check, a single-kind list across all
namespaces, and a parallel pass over a list of kinds where each kind
succeeds or fails on its own.  A missing API (HTTP 404, e.g. Flux not
installed) is an empty list, not an error.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

import urllib3
from kubernetes.client.exceptions import ApiException

from flux_orchestrator.clusters.registry import ClusterHandle
from flux_orchestrator.kinds import NAMESPACE_KIND, KindSpec
from flux_orchestrator.models import ClusterHealth, OrchestratorError

logger = logging.getLogger(__name__)

DEFAULT_HEALTH_TIMEOUT = 10.0
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_PASS_TIMEOUT = 120.0


class ClusterUnreachableError(OrchestratorError):
    """Raised on transport failures and timeouts talking to a cluster."""


class KindNotInstalledError(OrchestratorError):
    """A kind's API group is not served by the cluster (HTTP 404)."""


class RemoteAPIError(OrchestratorError):
    """Raised when the API server answers with an error status."""

    def __init__(self, message: str, status: int | None = None, reason: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason


def translate_error(
    exc: BaseException,
    cluster_id: str,
    what: str,
    *,
    missing_ok: bool = True,
) -> OrchestratorError:
    """Map client-library exceptions onto the orchestrator's error types.

    With *missing_ok* a 404 becomes :class:`KindNotInstalledError`;
    otherwise it is an ordinary :class:`RemoteAPIError`.
    """
    if isinstance(exc, OrchestratorError):
        return exc
    if isinstance(exc, ApiException):
        # status 0: the client raised before any response (TLS failure)
        if not exc.status:
            return ClusterUnreachableError(
                f"Cluster '{cluster_id}' unreachable during {what}: {exc.reason}"
            )
        if exc.status == 404 and missing_ok:
            return KindNotInstalledError(f"{what} not found on cluster '{cluster_id}'")
        return RemoteAPIError(
            f"K8s API error on cluster '{cluster_id}' for {what} ({exc.status}): {exc.reason}",
            status=exc.status,
            reason=str(exc.reason or ""),
        )
    if isinstance(exc, (urllib3.exceptions.HTTPError, OSError, TimeoutError)):
        return ClusterUnreachableError(
            f"Cluster '{cluster_id}' unreachable during {what}: {exc}"
        )
    return RemoteAPIError(f"Unexpected error on cluster '{cluster_id}' for {what}: {exc}")


@dataclass
class FetchResult:
    """Outcome of :meth:`ResourceFetcher.fetch_all`.

    ``objects`` holds one entry per kind that was fetched successfully
    (possibly empty), in the order the kinds were requested.  ``errors``
    holds the failure of every other kind.
    """

    objects: dict[str, tuple[KindSpec, list[dict[str, Any]]]] = field(default_factory=dict)
    errors: dict[str, OrchestratorError] = field(default_factory=dict)

    def items(self) -> list[tuple[KindSpec, dict[str, Any]]]:
        """Flatten to ``(spec, object)`` pairs in request order."""
        return [(spec, obj) for spec, objs in self.objects.values() for obj in objs]

    @property
    def count(self) -> int:
        return sum(len(objs) for _, objs in self.objects.values())


class ResourceFetcher:
    """Reads cluster state through a handle's :class:`ResourceClient`."""

    def __init__(
        self,
        health_timeout: float = DEFAULT_HEALTH_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        pass_timeout: float = DEFAULT_PASS_TIMEOUT,
        max_workers: int = 4,
    ) -> None:
        self._health_timeout = health_timeout
        self._request_timeout = request_timeout
        self._pass_timeout = pass_timeout
        self._max_workers = max(1, max_workers)

    def fetch_health(
        self, handle: ClusterHandle,
    ) -> tuple[ClusterHealth, OrchestratorError | None]:
        """Check the API server by listing at most one namespace."""
        try:
            handle.client.list(NAMESPACE_KIND, limit=1, timeout=self._health_timeout)
        except Exception as exc:
            error = translate_error(exc, handle.cluster_id, "health check")
            logger.warning("Health check failed for %s: %s", handle.cluster_id, error)
            return ClusterHealth.UNHEALTHY, error
        return ClusterHealth.HEALTHY, None

    def fetch_kind(self, handle: ClusterHandle, spec: KindSpec) -> list[dict[str, Any]]:
        """List every instance of *spec* across all namespaces.

        Raises:
            ClusterUnreachableError: On transport failures or timeouts.
            RemoteAPIError: On any API error other than 404.
        """
        try:
            return handle.client.list(spec, timeout=self._request_timeout)
        except Exception as exc:
            error = translate_error(exc, handle.cluster_id, spec.kind)
            if isinstance(error, KindNotInstalledError):
                logger.debug("%s not installed on %s", spec.kind, handle.cluster_id)
                return []
            if error is exc:
                raise
            raise error from exc

    def fetch_object(
        self, handle: ClusterHandle, spec: KindSpec, namespace: str, name: str,
    ) -> dict[str, Any]:
        """Read one object; a 404 surfaces as :class:`RemoteAPIError`."""
        try:
            return handle.client.get(spec, namespace, name, timeout=self._request_timeout)
        except Exception as exc:
            error = translate_error(
                exc, handle.cluster_id, f"{spec.kind} {namespace}/{name}", missing_ok=False,
            )
            if error is exc:
                raise
            raise error from exc

    def fetch_all(self, handle: ClusterHandle, specs: Sequence[KindSpec]) -> FetchResult:
        """Fetch *specs* concurrently; one kind failing never affects another.

        Kinds still running when the pass deadline expires are recorded as
        :class:`ClusterUnreachableError`; their threads are left to finish
        on their own request timeout.
        """
        result = FetchResult()
        if not specs:
            return result

        pool = ThreadPoolExecutor(
            max_workers=min(self._max_workers, len(specs)),
            thread_name_prefix=f"fetch-{handle.cluster_id}",
        )
        try:
            futures = {spec.kind: pool.submit(self.fetch_kind, handle, spec) for spec in specs}
            started = time.monotonic()
            wait(futures.values(), timeout=self._pass_timeout)
            elapsed = time.monotonic() - started

            for spec in specs:
                future = futures[spec.kind]
                if not future.done():
                    future.cancel()
                    result.errors[spec.kind] = ClusterUnreachableError(
                        f"Fetching {spec.kind} from '{handle.cluster_id}' "
                        f"exceeded {self._pass_timeout:.0f}s"
                    )
                    continue
                exc = future.exception()
                if exc is not None:
                    error = translate_error(exc, handle.cluster_id, spec.kind)
                    logger.warning(
                        "Failed to fetch %s from %s: %s", spec.kind, handle.cluster_id, error,
                    )
                    result.errors[spec.kind] = error
                    continue
                result.objects[spec.kind] = (spec, future.result())
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        logger.debug(
            "Fetched %d objects of %d kinds from %s in %.2fs (%d failed)",
            result.count, len(result.objects), handle.cluster_id, elapsed, len(result.errors),
        )
        return result
