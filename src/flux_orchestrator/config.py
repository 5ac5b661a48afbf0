"""Config file loading and auto-discovery for flux-orchestrator.

Searches for ``flux-orchestrator.yaml`` in the current directory and parent
directories, parses it, resolves relative paths against the config file's
location, then applies ``FLUX_ORCH_*`` environment variable overrides
(e.g. ``FLUX_ORCH_SYNC_INTERVAL_SECONDS=60``).
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "flux-orchestrator.yaml"
ENV_PREFIX = "FLUX_ORCH_"

_PATH_KEYS = ("database", "kubeconfig_dir")


@dataclass(frozen=True)
class OrchestratorConfig:
    """Parsed flux-orchestrator configuration."""

    config_path: Path | None = None
    database: str = "flux-orchestrator.db"
    kubeconfig_dir: str | None = None
    clusters: dict[str, str] = field(default_factory=dict)
    in_cluster: bool = False
    in_cluster_id: str = "in-cluster"
    sync_interval_seconds: float = 300.0
    health_timeout_seconds: float = 10.0
    request_timeout_seconds: float = 30.0
    fetch_timeout_seconds: float = 120.0
    max_cluster_workers: int = 8
    max_kind_workers: int = 4
    stale_after_ticks: int = 3
    prune_missing: bool = False
    recover_unhealthy: bool = True
    webhook_urls: list[str] = field(default_factory=list)
    slack_webhook_url: str | None = None
    slack_channel: str | None = None
    log_level: str = "INFO"

    def notifier_config(self) -> dict[str, Any]:
        return {
            "webhook_urls": self.webhook_urls,
            "slack_webhook_url": self.slack_webhook_url,
            "slack_channel": self.slack_channel,
        }

    def credential_config(self) -> dict[str, Any]:
        return {"clusters": self.clusters, "kubeconfig_dir": self.kubeconfig_dir}


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``flux-orchestrator.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
    environ: Mapping[str, str] | None = None,
) -> OrchestratorConfig:
    """Load a flux-orchestrator config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Defaults.

    Environment overrides are applied on top in every case.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    cfg = _parse_config(config_path) if config_path is not None else OrchestratorConfig()
    return apply_env(cfg, os.environ if environ is None else environ)


def _parse_config(config_path: Path) -> OrchestratorConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ValueError(msg)

    known = {f.name for f in dataclasses.fields(OrchestratorConfig)} - {"config_path"}
    unknown = sorted(set(data) - known)
    if unknown:
        msg = f"Unknown config keys in {config_path}: {', '.join(unknown)}"
        raise ValueError(msg)

    base = config_path.parent
    values: dict[str, Any] = dict(data)

    for key in _PATH_KEYS:
        if values.get(key) is not None:
            values[key] = str((base / values[key]).resolve())

    clusters = values.get("clusters") or {}
    if not isinstance(clusters, dict):
        msg = f"'clusters' must map cluster ids to kubeconfig paths in {config_path}"
        raise ValueError(msg)
    values["clusters"] = {str(cid): str((base / p).resolve()) for cid, p in clusters.items()}

    if "webhook_urls" in values:
        values["webhook_urls"] = _as_list(values["webhook_urls"])

    return OrchestratorConfig(config_path=config_path, **values)


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [p.strip() for p in value.split(",") if p.strip()]
    return [str(v) for v in value]


def apply_env(cfg: OrchestratorConfig, environ: Mapping[str, str]) -> OrchestratorConfig:
    """Return *cfg* with ``FLUX_ORCH_<FIELD>`` overrides applied."""
    overrides: dict[str, Any] = {}
    for fld in dataclasses.fields(cfg):
        if fld.name in ("config_path", "clusters"):
            continue
        val = environ.get(f"{ENV_PREFIX}{fld.name.upper()}")
        if val is None:
            continue
        if fld.name == "webhook_urls":
            overrides[fld.name] = _as_list(val)
        elif fld.type == "bool":
            overrides[fld.name] = val.lower() in ("1", "true", "yes")
        elif fld.type == "int":
            overrides[fld.name] = int(val)
        elif fld.type == "float":
            overrides[fld.name] = float(val)
        else:
            overrides[fld.name] = val
    if not overrides:
        return cfg
    return dataclasses.replace(cfg, **overrides)
