"""Tests for the resource fetcher and error translation."""

from __future__ import annotations

import threading

import pytest
import urllib3
from fakes import FakeResourceClient, make_obj
from kubernetes.client.exceptions import ApiException

from flux_orchestrator.clusters.registry import ClusterHandle
from flux_orchestrator.fetch.fetcher import (
    ClusterUnreachableError,
    KindNotInstalledError,
    RemoteAPIError,
    ResourceFetcher,
    translate_error,
)
from flux_orchestrator.kinds import FLUX_KINDS, kind_spec
from flux_orchestrator.models import ClusterHealth


def _handle(client: FakeResourceClient) -> ClusterHandle:
    return ClusterHandle(cluster_id="c1", client=client)


class TestTranslateError:
    def test_404_is_not_installed(self) -> None:
        err = translate_error(ApiException(status=404, reason="Not Found"), "c1", "Bucket")
        assert isinstance(err, KindNotInstalledError)

    def test_404_when_missing_not_ok(self) -> None:
        err = translate_error(ApiException(status=404), "c1", "x", missing_ok=False)
        assert isinstance(err, RemoteAPIError)
        assert err.status == 404

    def test_api_error(self) -> None:
        err = translate_error(ApiException(status=403, reason="Forbidden"), "c1", "Pod")
        assert isinstance(err, RemoteAPIError)
        assert err.status == 403
        assert err.reason == "Forbidden"
        assert "403" in str(err)

    def test_transport_errors(self) -> None:
        for exc in (
            urllib3.exceptions.MaxRetryError(None, "/", "refused"),
            ConnectionRefusedError("refused"),
            TimeoutError("slow"),
            ApiException(status=0, reason="SSLError\ncertificate verify failed"),
        ):
            assert isinstance(translate_error(exc, "c1", "x"), ClusterUnreachableError)

    def test_passthrough(self) -> None:
        original = ClusterUnreachableError("down")
        assert translate_error(original, "c1", "x") is original

    def test_unexpected(self) -> None:
        assert isinstance(translate_error(KeyError("items"), "c1", "x"), RemoteAPIError)


class TestFetchHealth:
    def test_healthy(self) -> None:
        client = FakeResourceClient()
        status, error = ResourceFetcher(health_timeout=3).fetch_health(_handle(client))
        assert status == ClusterHealth.HEALTHY
        assert error is None
        assert client.calls == [("list", "Namespace", 1, 3)]

    def test_unreachable(self) -> None:
        client = FakeResourceClient(health_error=ConnectionRefusedError("refused"))
        status, error = ResourceFetcher().fetch_health(_handle(client))
        assert status == ClusterHealth.UNHEALTHY
        assert isinstance(error, ClusterUnreachableError)

    def test_unauthorized(self) -> None:
        client = FakeResourceClient(health_error=ApiException(status=401, reason="Unauthorized"))
        status, error = ResourceFetcher().fetch_health(_handle(client))
        assert status == ClusterHealth.UNHEALTHY
        assert isinstance(error, RemoteAPIError)


class TestFetchKind:
    def test_lists_objects(self) -> None:
        client = FakeResourceClient({"Kustomization": [make_obj("Kustomization", "a")]})
        objs = ResourceFetcher().fetch_kind(_handle(client), kind_spec("Kustomization"))
        assert [o["metadata"]["name"] for o in objs] == ["a"]

    def test_not_installed_is_empty(self) -> None:
        client = FakeResourceClient(errors={"Bucket": ApiException(status=404)})
        assert ResourceFetcher().fetch_kind(_handle(client), kind_spec("Bucket")) == []

    def test_other_errors_raise(self) -> None:
        client = FakeResourceClient(errors={"Bucket": ApiException(status=500, reason="boom")})
        with pytest.raises(RemoteAPIError):
            ResourceFetcher().fetch_kind(_handle(client), kind_spec("Bucket"))

    def test_fetch_object_missing(self) -> None:
        with pytest.raises(RemoteAPIError) as exc_info:
            ResourceFetcher().fetch_object(
                _handle(FakeResourceClient()), kind_spec("Kustomization"), "flux-system", "gone",
            )
        assert exc_info.value.status == 404


class TestFetchAll:
    def test_failures_are_isolated(self) -> None:
        client = FakeResourceClient(
            objects={
                "Kustomization": [make_obj("Kustomization", "a"), make_obj("Kustomization", "b")],
                "GitRepository": [make_obj("GitRepository", "repo")],
            },
            errors={
                "HelmRelease": ApiException(status=403, reason="Forbidden"),
                "Bucket": ApiException(status=404),
            },
        )
        result = ResourceFetcher().fetch_all(_handle(client), FLUX_KINDS)
        assert list(result.objects) == [
            "Kustomization", "GitRepository", "HelmRepository", "Bucket", "OCIRepository",
        ]
        assert list(result.errors) == ["HelmRelease"]
        assert isinstance(result.errors["HelmRelease"], RemoteAPIError)
        assert result.count == 3
        assert [obj["metadata"]["name"] for _, obj in result.items()] == ["a", "b", "repo"]

    def test_empty_kind_list(self) -> None:
        result = ResourceFetcher().fetch_all(_handle(FakeResourceClient()), [])
        assert result.count == 0
        assert result.errors == {}

    def test_pass_timeout(self) -> None:
        release = threading.Event()

        class SlowClient(FakeResourceClient):
            def list(self, spec, namespace=None, limit=None, timeout=None):
                if spec.kind == "HelmRelease":
                    release.wait(5)
                return super().list(spec, namespace, limit, timeout)

        fetcher = ResourceFetcher(pass_timeout=0.2, max_workers=4)
        try:
            result = fetcher.fetch_all(
                _handle(SlowClient()), [kind_spec("Kustomization"), kind_spec("HelmRelease")],
            )
        finally:
            release.set()
        assert "Kustomization" in result.objects
        assert isinstance(result.errors["HelmRelease"], ClusterUnreachableError)
