"""Generic resource client for one remote cluster.

Kinds are passed as :class:`~flux_orchestrator.kinds.KindSpec` data, so the
same calls (list, get, replace, delete) serve Flux custom resources and
built-in workloads alike.  Kinds with an API group go through
``CustomObjectsApi``, which accepts any group/version/plural and returns
plain JSON mappings.  Core-group kinds go through ``CoreV1Api`` with
``_preload_content=False`` so the raw JSON is returned instead of the
generated model classes.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Protocol, runtime_checkable

from kubernetes import client, config

from flux_orchestrator.kinds import KindSpec, UnsupportedKindError

logger = logging.getLogger(__name__)


@runtime_checkable
class ResourceClient(Protocol):
    """Capability interface used by the fetcher and operator actions."""

    def list(
        self,
        spec: KindSpec,
        namespace: str | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of *spec*, across all namespaces when *namespace* is None."""
        ...

    def get(
        self,
        spec: KindSpec,
        namespace: str,
        name: str,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Read one object."""
        ...

    def replace(
        self,
        spec: KindSpec,
        namespace: str,
        name: str,
        body: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Replace one object; *body* carries the resourceVersion precondition."""
        ...

    def delete(
        self,
        spec: KindSpec,
        namespace: str,
        name: str,
        timeout: float | None = None,
    ) -> None:
        """Delete one object."""
        ...


def _snake(kind: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", kind).lower()


class KubernetesResourceClient:
    """:class:`ResourceClient` backed by the official kubernetes client.

    Build with :meth:`from_kubeconfig` (parsed kubeconfig mapping) or
    :meth:`in_cluster` (pod service account).  API errors surface as
    ``kubernetes.client.exceptions.ApiException``; transport failures as
    ``urllib3`` exceptions.

    Core-group kinds are read-only here: replacing them would need the
    generated model classes, and no operator action writes to them.
    """

    def __init__(self, api_client: Any) -> None:
        self._api = api_client
        self._custom = client.CustomObjectsApi(api_client)
        self._core = client.CoreV1Api(api_client)

    @classmethod
    def from_kubeconfig(
        cls,
        kubeconfig: dict[str, Any],
        context: str | None = None,
    ) -> KubernetesResourceClient:
        api_client = config.new_client_from_config_dict(
            config_dict=kubeconfig,
            context=context,
            persist_config=False,
        )
        return cls(api_client)

    @classmethod
    def in_cluster(cls) -> KubernetesResourceClient:
        configuration = client.Configuration()
        config.load_incluster_config(client_configuration=configuration)
        return cls(client.ApiClient(configuration))

    @property
    def host(self) -> str:
        return str(getattr(self._api.configuration, "host", ""))

    def list(
        self,
        spec: KindSpec,
        namespace: str | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> list[dict[str, Any]]:
        scoped = spec.namespaced and namespace is not None
        logger.debug("list %s on %s (namespace=%s)", spec.kind, self.host, namespace)
        if spec.group:
            if scoped:
                data = self._custom.list_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural,
                    limit=limit, _request_timeout=timeout,
                )
            else:
                data = self._custom.list_cluster_custom_object(
                    spec.group, spec.version, spec.plural,
                    limit=limit, _request_timeout=timeout,
                )
        else:
            snake = _snake(spec.kind)
            if not spec.namespaced:
                data = self._core_call(f"list_{snake}", limit=limit, _request_timeout=timeout)
            elif scoped:
                data = self._core_call(
                    f"list_namespaced_{snake}", namespace, limit=limit, _request_timeout=timeout,
                )
            else:
                data = self._core_call(
                    f"list_{snake}_for_all_namespaces", limit=limit, _request_timeout=timeout,
                )
        items = data.get("items") if isinstance(data, dict) else None
        return list(items or [])

    def get(
        self,
        spec: KindSpec,
        namespace: str,
        name: str,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        logger.debug("get %s %s/%s on %s", spec.kind, namespace, name, self.host)
        if spec.group:
            if spec.namespaced:
                data = self._custom.get_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, name,
                    _request_timeout=timeout,
                )
            else:
                data = self._custom.get_cluster_custom_object(
                    spec.group, spec.version, spec.plural, name, _request_timeout=timeout,
                )
        elif spec.namespaced:
            data = self._core_call(
                f"read_namespaced_{_snake(spec.kind)}", name, namespace, _request_timeout=timeout,
            )
        else:
            data = self._core_call(f"read_{_snake(spec.kind)}", name, _request_timeout=timeout)
        return data if isinstance(data, dict) else {}

    def replace(
        self,
        spec: KindSpec,
        namespace: str,
        name: str,
        body: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        if not spec.group:
            raise UnsupportedKindError(f"Kind '{spec.kind}' cannot be replaced")
        logger.debug("replace %s %s/%s on %s", spec.kind, namespace, name, self.host)
        if spec.namespaced:
            data = self._custom.replace_namespaced_custom_object(
                spec.group, spec.version, namespace, spec.plural, name, body,
                _request_timeout=timeout,
            )
        else:
            data = self._custom.replace_cluster_custom_object(
                spec.group, spec.version, spec.plural, name, body, _request_timeout=timeout,
            )
        return data if isinstance(data, dict) else {}

    def delete(
        self,
        spec: KindSpec,
        namespace: str,
        name: str,
        timeout: float | None = None,
    ) -> None:
        logger.debug("delete %s %s/%s on %s", spec.kind, namespace, name, self.host)
        if spec.group:
            if spec.namespaced:
                self._custom.delete_namespaced_custom_object(
                    spec.group, spec.version, namespace, spec.plural, name,
                    _request_timeout=timeout,
                )
            else:
                self._custom.delete_cluster_custom_object(
                    spec.group, spec.version, spec.plural, name, _request_timeout=timeout,
                )
        elif spec.namespaced:
            self._core_call(
                f"delete_namespaced_{_snake(spec.kind)}", name, namespace, _request_timeout=timeout,
            )
        else:
            self._core_call(f"delete_{_snake(spec.kind)}", name, _request_timeout=timeout)

    def close(self) -> None:
        self._api.close()

    # --- Private ---

    def _core_call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        response = getattr(self._core, method)(*args, _preload_content=False, **kwargs)
        raw = response.data
        return json.loads(raw) if raw else None
