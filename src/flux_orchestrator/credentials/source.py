"""Credential sources: where cluster kubeconfigs come from.

The orchestrator only needs a kubeconfig blob per cluster id.  Sources
satisfy the :class:`CredentialSource` protocol; built-in backends:

- StaticCredentialSource: in-memory mapping, with env var fallback
  (``FLUX_ORCH_KUBECONFIG_<ID>``); for development and tests
- FileCredentialSource: explicit cluster id to kubeconfig path mapping
- DirectoryCredentialSource: one ``<cluster_id>.yaml`` file per cluster
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from flux_orchestrator.models import OrchestratorError

logger = logging.getLogger(__name__)

KUBECONFIG_SUFFIXES = (".yaml", ".yml", ".kubeconfig")


class CredentialSourceError(OrchestratorError):
    """Raised when a source cannot read a credential it claims to have."""


@runtime_checkable
class CredentialSource(Protocol):
    """Protocol for kubeconfig providers."""

    def get_credential(self, cluster_id: str) -> str | None:
        """Return the kubeconfig text for *cluster_id*, or None if unknown."""
        ...

    def cluster_ids(self) -> list[str]:
        """Return every cluster id this source can provide."""
        ...


def _env_name(prefix: str, cluster_id: str) -> str:
    return f"{prefix}{cluster_id.upper().replace('-', '_').replace('.', '_')}"


class StaticCredentialSource:
    """Kubeconfigs from a static mapping, falling back to env vars."""

    def __init__(
        self,
        credentials: dict[str, str] | None = None,
        env_prefix: str = "FLUX_ORCH_KUBECONFIG_",
    ) -> None:
        self._credentials = dict(credentials or {})
        self._env_prefix = env_prefix

    def get_credential(self, cluster_id: str) -> str | None:
        if cluster_id in self._credentials:
            return self._credentials[cluster_id]
        return os.environ.get(_env_name(self._env_prefix, cluster_id))

    def cluster_ids(self) -> list[str]:
        return sorted(self._credentials)


class FileCredentialSource:
    """Kubeconfigs read from explicit per-cluster file paths."""

    def __init__(self, paths: dict[str, str | Path]) -> None:
        self._paths = {cid: Path(p) for cid, p in paths.items()}

    def get_credential(self, cluster_id: str) -> str | None:
        path = self._paths.get(cluster_id)
        if path is None:
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CredentialSourceError(
                f"Cannot read kubeconfig for '{cluster_id}' at {path}: {exc}"
            ) from exc

    def cluster_ids(self) -> list[str]:
        return sorted(self._paths)


class DirectoryCredentialSource:
    """Kubeconfigs stored as ``<directory>/<cluster_id>.yaml`` files.

    The directory is rescanned on every call, so dropping in a new file
    (or rotating one) is picked up by the next :meth:`cluster_ids` call.
    """

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    def _files(self) -> dict[str, Path]:
        if not self._directory.is_dir():
            return {}
        files: dict[str, Path] = {}
        for path in sorted(self._directory.iterdir()):
            if path.is_file() and path.suffix in KUBECONFIG_SUFFIXES:
                files.setdefault(path.stem, path)
        return files

    def get_credential(self, cluster_id: str) -> str | None:
        path = self._files().get(cluster_id)
        if path is None:
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CredentialSourceError(
                f"Cannot read kubeconfig for '{cluster_id}' at {path}: {exc}"
            ) from exc

    def cluster_ids(self) -> list[str]:
        return list(self._files())


def build_credential_sources(config: dict[str, Any]) -> list[CredentialSource]:
    """Build credential sources from a configuration dict.

    Supported keys:
    - clusters: mapping of cluster id to kubeconfig path
    - kubeconfig_dir: directory of ``<cluster_id>.yaml`` files
    - kubeconfigs: mapping of cluster id to inline kubeconfig text
    """
    sources: list[CredentialSource] = []

    if config.get("clusters"):
        sources.append(FileCredentialSource(config["clusters"]))

    if config.get("kubeconfig_dir") is not None:
        sources.append(DirectoryCredentialSource(config["kubeconfig_dir"]))

    if config.get("kubeconfigs"):
        sources.append(StaticCredentialSource(config["kubeconfigs"]))

    return sources
