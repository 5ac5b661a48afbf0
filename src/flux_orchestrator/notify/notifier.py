"""Event notification dispatch.

Sends notifications when cluster health changes, a Flux object stops
being ready, or a sync pass completes or fails.  Fire-and-forget:
failures are logged but never block the sync loop.

Built-in backends:
- WebhookNotifier: POST the event as JSON to a URL (stdlib only)
- SlackNotifier: POST a formatted message to a Slack incoming webhook

Custom notifiers just need a ``notify(event: OrchestratorEvent) -> None`` method.
"""

from __future__ import annotations

import enum
import json
import logging
import urllib.request
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

USER_AGENT = "FluxOrchestrator/1.0"


class EventType(enum.StrEnum):
    CLUSTER_HEALTH_CHANGED = "cluster.health.changed"
    RECONCILIATION_FAILED = "reconciliation.failed"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"


class Severity(enum.StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ResourceRef(BaseModel):
    kind: str
    namespace: str = ""
    name: str


class OrchestratorEvent(BaseModel):
    """Payload delivered to every notifier."""

    type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    cluster_id: str
    resource: ResourceRef | None = None
    message: str = ""
    severity: Severity = Severity.INFO


@runtime_checkable
class EventNotifier(Protocol):
    """Protocol for event notifiers."""

    def notify(self, event: OrchestratorEvent) -> None:
        """Deliver one event."""
        ...


class WebhookNotifier:
    """POST events as JSON to a webhook URL.

    Uses stdlib urllib.request -- no extra dependencies required.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout

    @property
    def url(self) -> str:
        return self._url

    def notify(self, event: OrchestratorEvent) -> None:
        body = json.dumps(event.model_dump(mode="json"), sort_keys=True).encode("utf-8")
        req = urllib.request.Request(
            self._url,
            data=body,
            headers={
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
                "X-Flux-Event-Type": str(event.type),
                **self._headers,
            },
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=self._timeout):  # noqa: S310
            pass


_SLACK_ICONS = {
    Severity.INFO: ":white_check_mark:",
    Severity.WARNING: ":warning:",
    Severity.ERROR: ":x:",
}


class SlackNotifier:
    """Send events to Slack via incoming webhook."""

    def __init__(
        self,
        webhook_url: str,
        channel: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._webhook_url = webhook_url
        self._channel = channel
        self._timeout = timeout

    def notify(self, event: OrchestratorEvent) -> None:
        lines = [
            f"{_SLACK_ICONS[event.severity]} *{event.type}*",
            f"*Cluster:* `{event.cluster_id}`",
        ]
        if event.resource is not None:
            ref = event.resource
            target = f"{ref.namespace}/{ref.name}" if ref.namespace else ref.name
            lines.append(f"*Resource:* `{ref.kind} {target}`")
        if event.message:
            lines.append(event.message)

        payload: dict[str, Any] = {"text": "\n".join(lines)}
        if self._channel:
            payload["channel"] = self._channel

        req = urllib.request.Request(
            self._webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=self._timeout):  # noqa: S310
            pass


def dispatch_events(
    notifiers: Iterable[EventNotifier],
    event: OrchestratorEvent,
) -> None:
    """Fire-and-forget dispatch; a failing notifier never affects the others."""
    for notifier in notifiers:
        try:
            notifier.notify(event)
        except Exception as exc:
            logger.warning(
                "Notifier %s failed for %s on %s: %s",
                type(notifier).__name__, event.type, event.cluster_id, exc,
            )


def parse_webhook_urls(value: str | Iterable[str] | None) -> list[str]:
    """Accept a comma-separated string or a list; drop blanks."""
    if value is None:
        return []
    parts = value.split(",") if isinstance(value, str) else list(value)
    return [p.strip() for p in parts if p and p.strip()]


def build_notifiers(config: dict[str, Any]) -> list[EventNotifier]:
    """Build notifier instances from a configuration dict.

    Supported keys:
    - webhook_urls: list or comma-separated string of webhook URLs
    - webhook_headers: optional headers dict
    - webhook_timeout: optional timeout (default 10.0)
    - slack_webhook_url: Slack incoming webhook URL
    - slack_channel: optional Slack channel override
    """
    notifiers: list[EventNotifier] = []

    for url in parse_webhook_urls(config.get("webhook_urls")):
        notifiers.append(
            WebhookNotifier(
                url=url,
                headers=config.get("webhook_headers"),
                timeout=config.get("webhook_timeout", 10.0),
            ),
        )

    if config.get("slack_webhook_url") is not None:
        notifiers.append(
            SlackNotifier(
                webhook_url=config["slack_webhook_url"],
                channel=config.get("slack_channel"),
            ),
        )

    return notifiers
