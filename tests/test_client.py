"""Tests for the kubernetes-backed resource client.

The client is pointed at a local HTTP server that answers like a minimal
API server, so requests go through the installed kubernetes library end
to end.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Generator
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlsplit

import pytest
import yaml
from fakes import kubeconfig
from kubernetes.client.exceptions import ApiException

from flux_orchestrator.clusters.client import KubernetesResourceClient, ResourceClient
from flux_orchestrator.clusters.registry import ClusterRegistry
from flux_orchestrator.fetch.fetcher import ClusterUnreachableError, ResourceFetcher
from flux_orchestrator.kinds import UnsupportedKindError, kind_spec
from flux_orchestrator.models import ClusterHealth

NOT_FOUND = {"kind": "Status", "apiVersion": "v1", "status": "Failure", "reason": "NotFound", "code": 404}


class _APIHandler(BaseHTTPRequestHandler):
    def _respond(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        raw = self.rfile.read(length) if length else b""
        url = urlsplit(self.path)
        self.server.requests.append({
            "method": self.command,
            "path": url.path,
            "query": parse_qs(url.query),
            "authorization": self.headers.get("Authorization"),
            "body": json.loads(raw) if raw else None,
        })
        status, payload = self.server.routes.get((self.command, url.path), (404, NOT_FOUND))
        data = json.dumps(payload).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    do_GET = do_PUT = do_DELETE = _respond

    def log_message(self, format: str, *args: Any) -> None:
        pass


class _APIServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self) -> None:
        super().__init__(("127.0.0.1", 0), _APIHandler)
        self.routes: dict[tuple[str, str], tuple[int, Any]] = {}
        self.requests: list[dict[str, Any]] = []

    @property
    def url(self) -> str:
        return f"http://127.0.0.1:{self.server_address[1]}"


@pytest.fixture()
def api_server() -> Generator[_APIServer, None, None]:
    server = _APIServer()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture()
def resource_client(api_server: _APIServer) -> Generator[KubernetesResourceClient, None, None]:
    rc = KubernetesResourceClient.from_kubeconfig(yaml.safe_load(kubeconfig(api_server.url)))
    yield rc
    rc.close()


def _list(*names: str) -> dict[str, Any]:
    return {"kind": "List", "items": [{"metadata": {"name": n}} for n in names]}


class TestKubernetesResourceClient:
    def test_satisfies_protocol(self, resource_client: KubernetesResourceClient) -> None:
        assert isinstance(resource_client, ResourceClient)

    def test_host(self, api_server: _APIServer, resource_client: KubernetesResourceClient) -> None:
        assert resource_client.host == api_server.url

    def test_list_flux_kind_all_namespaces(
        self, api_server: _APIServer, resource_client: KubernetesResourceClient,
    ) -> None:
        api_server.routes[("GET", "/apis/kustomize.toolkit.fluxcd.io/v1/kustomizations")] = (
            200, _list("apps", "infra"),
        )
        items = resource_client.list(kind_spec("Kustomization"), timeout=5)
        assert [i["metadata"]["name"] for i in items] == ["apps", "infra"]
        assert api_server.requests[0]["authorization"] == "Bearer abc123"

    def test_list_flux_kind_in_namespace(
        self, api_server: _APIServer, resource_client: KubernetesResourceClient,
    ) -> None:
        path = "/apis/helm.toolkit.fluxcd.io/v2/namespaces/apps/helmreleases"
        api_server.routes[("GET", path)] = (200, _list("web"))
        assert len(resource_client.list(kind_spec("HelmRelease"), namespace="apps")) == 1
        assert api_server.requests[0]["path"] == path

    def test_list_core_cluster_scoped_with_limit(
        self, api_server: _APIServer, resource_client: KubernetesResourceClient,
    ) -> None:
        api_server.routes[("GET", "/api/v1/namespaces")] = (200, _list("default"))
        items = resource_client.list(kind_spec("Namespace"), limit=1, timeout=3)
        assert items == [{"metadata": {"name": "default"}}]
        assert api_server.requests[0]["query"] == {"limit": ["1"]}

    def test_list_core_all_namespaces_and_namespaced(
        self, api_server: _APIServer, resource_client: KubernetesResourceClient,
    ) -> None:
        api_server.routes[("GET", "/api/v1/configmaps")] = (200, _list("a", "b"))
        api_server.routes[("GET", "/api/v1/namespaces/default/pods")] = (200, _list("p"))
        assert len(resource_client.list(kind_spec("ConfigMap"))) == 2
        assert len(resource_client.list(kind_spec("Pod"), namespace="default")) == 1

    def test_list_tolerates_missing_items(
        self, api_server: _APIServer, resource_client: KubernetesResourceClient,
    ) -> None:
        api_server.routes[("GET", "/apis/apps/v1/deployments")] = (200, {"kind": "List"})
        assert resource_client.list(kind_spec("Deployment")) == []

    def test_get_grouped_kind(
        self, api_server: _APIServer, resource_client: KubernetesResourceClient,
    ) -> None:
        body = {"kind": "Deployment", "metadata": {"name": "web", "namespace": "apps"}}
        api_server.routes[("GET", "/apis/apps/v1/namespaces/apps/deployments/web")] = (200, body)
        assert resource_client.get(kind_spec("Deployment"), "apps", "web") == body

    def test_get_core_kinds(
        self, api_server: _APIServer, resource_client: KubernetesResourceClient,
    ) -> None:
        api_server.routes[("GET", "/api/v1/namespaces/default/pods/x")] = (
            200, {"kind": "Pod", "metadata": {"name": "x"}},
        )
        api_server.routes[("GET", "/api/v1/namespaces/apps")] = (
            200, {"kind": "Namespace", "metadata": {"name": "apps"}},
        )
        assert resource_client.get(kind_spec("Pod"), "default", "x")["kind"] == "Pod"
        assert resource_client.get(kind_spec("Namespace"), "", "apps")["metadata"]["name"] == "apps"

    def test_get_missing_raises_api_exception(self, resource_client: KubernetesResourceClient) -> None:
        with pytest.raises(ApiException) as exc_info:
            resource_client.get(kind_spec("Kustomization"), "flux-system", "gone")
        assert exc_info.value.status == 404

    def test_replace_sends_body(
        self, api_server: _APIServer, resource_client: KubernetesResourceClient,
    ) -> None:
        path = "/apis/kustomize.toolkit.fluxcd.io/v1/namespaces/flux-system/kustomizations/apps"
        body = {
            "apiVersion": "kustomize.toolkit.fluxcd.io/v1",
            "kind": "Kustomization",
            "metadata": {"name": "apps", "namespace": "flux-system", "resourceVersion": "7"},
            "spec": {"suspend": True},
        }
        api_server.routes[("PUT", path)] = (200, body)
        assert resource_client.replace(kind_spec("Kustomization"), "flux-system", "apps", body) == body
        sent = api_server.requests[0]
        assert sent["method"] == "PUT"
        assert sent["body"] == body

    def test_replace_conflict(
        self, api_server: _APIServer, resource_client: KubernetesResourceClient,
    ) -> None:
        path = "/apis/apps/v1/namespaces/apps/deployments/web"
        api_server.routes[("PUT", path)] = (409, {"kind": "Status", "reason": "Conflict", "code": 409})
        with pytest.raises(ApiException) as exc_info:
            resource_client.replace(kind_spec("Deployment"), "apps", "web", {"metadata": {}})
        assert exc_info.value.status == 409

    def test_replace_core_kind_rejected(
        self, api_server: _APIServer, resource_client: KubernetesResourceClient,
    ) -> None:
        with pytest.raises(UnsupportedKindError):
            resource_client.replace(kind_spec("ConfigMap"), "default", "cfg", {})
        assert api_server.requests == []

    def test_delete_pod(
        self, api_server: _APIServer, resource_client: KubernetesResourceClient,
    ) -> None:
        path = "/api/v1/namespaces/default/pods/web-1"
        api_server.routes[("DELETE", path)] = (200, {"kind": "Pod", "metadata": {"name": "web-1"}})
        assert resource_client.delete(kind_spec("Pod"), "default", "web-1") is None
        assert [(r["method"], r["path"]) for r in api_server.requests] == [("DELETE", path)]

    def test_delete_missing(self, resource_client: KubernetesResourceClient) -> None:
        with pytest.raises(ApiException) as exc_info:
            resource_client.delete(kind_spec("Pod"), "default", "gone")
        assert exc_info.value.status == 404

    def test_close(self) -> None:
        api = MagicMock()
        KubernetesResourceClient(api).close()
        api.close.assert_called_once()

    def test_from_kubeconfig(self) -> None:
        with patch("flux_orchestrator.clusters.client.config.new_client_from_config_dict") as factory:
            rc = KubernetesResourceClient.from_kubeconfig({"clusters": []}, context="dev")
        factory.assert_called_once_with(
            config_dict={"clusters": []}, context="dev", persist_config=False,
        )
        assert isinstance(rc, KubernetesResourceClient)

    def test_in_cluster(self) -> None:
        with patch("flux_orchestrator.clusters.client.config.load_incluster_config") as load:
            rc = KubernetesResourceClient.in_cluster()
        load.assert_called_once()
        assert isinstance(rc, KubernetesResourceClient)


class TestHealthCheckOverHTTP:
    def test_registered_cluster_is_healthy(self, api_server: _APIServer) -> None:
        api_server.routes[("GET", "/api/v1/namespaces")] = (200, _list("default"))
        registry = ClusterRegistry()
        handle = registry.register("c1", kubeconfig(api_server.url))
        status, error = ResourceFetcher(health_timeout=5).fetch_health(handle)
        assert status == ClusterHealth.HEALTHY
        assert error is None
        assert api_server.requests[0]["query"] == {"limit": ["1"]}

    def test_closed_port_is_unreachable(self) -> None:
        server = _APIServer()
        url = server.url
        server.server_close()
        handle = ClusterRegistry().register("c1", kubeconfig(url))
        status, error = ResourceFetcher(health_timeout=2).fetch_health(handle)
        assert status == ClusterHealth.UNHEALTHY
        assert isinstance(error, ClusterUnreachableError)
