"""Terminal rollout notifications."""

import logging
import sys
from typing import Optional, Protocol, Sequence, TextIO, runtime_checkable

import httpx

from .models import RolloutOutcome

logger = logging.getLogger(__name__)

BANNER_WIDTH = 60


@runtime_checkable
class Notifier(Protocol):
    """Receives exactly one outcome per finished run."""

    def notify(self, outcome: RolloutOutcome) -> None:
        ...


def format_outcome(outcome: RolloutOutcome, service_url: str = "") -> str:
    """Human-readable summary of a rollout outcome."""
    if outcome.success:
        lines = [
            "PRODUCTION DEPLOYMENT SUCCESSFUL!",
            f"Version: {outcome.version}",
        ]
        if service_url:
            lines.append(f"URL: {service_url}")
        lines += [
            f"Deployment Time: {outcome.timestamp.isoformat()}",
            f"Duration: {outcome.duration_seconds:.2f}s",
        ]
        if outcome.registration_error:
            lines.append(f"Warning: update registration failed: {outcome.registration_error}")
        else:
            lines.append("Status: All systems operational")
        return "\n".join(lines)

    if outcome.rollback_failed:
        headline = "PRODUCTION DEPLOYMENT FAILED AND ROLLBACK FAILED!"
    elif outcome.cancelled:
        headline = "PRODUCTION DEPLOYMENT ABORTED!"
    else:
        headline = "PRODUCTION DEPLOYMENT FAILED!"
    lines = [
        headline,
        f"Version: {outcome.version or 'unknown'}",
        f"Error: {outcome.error}",
    ]
    if outcome.detail:
        lines.append(f"Detail: {outcome.detail}")
    lines.append(f"Timestamp: {outcome.timestamp.isoformat()}")
    if outcome.rollback_performed:
        lines.append(f"Rollback: restored {outcome.rollback_version}")
    elif outcome.rollback_failed:
        lines.append(
            f"Rollback to {outcome.rollback_version} FAILED: {outcome.rollback_error}"
        )
        lines.append("System state is UNVERIFIED")
    lines.append("Action Required: Manual intervention needed")
    return "\n".join(lines)


class ConsoleNotifier:
    """Prints a framed banner to a stream."""

    def __init__(self, stream: Optional[TextIO] = None, service_url: str = ""):
        self._stream = stream or sys.stdout
        self.service_url = service_url

    def notify(self, outcome: RolloutOutcome) -> None:
        rule = "=" * BANNER_WIDTH
        self._stream.write(
            f"\n{rule}\nPRODUCTION DEPLOYMENT NOTIFICATION\n{rule}\n"
            f"{format_outcome(outcome, self.service_url)}\n{rule}\n\n"
        )
        self._stream.flush()


class WebhookNotifier:
    """POSTs the outcome payload to a webhook (chat, incident tooling)."""

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10.0,
        http_transport: Optional[httpx.BaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self._client = httpx.Client(timeout=timeout, transport=http_transport)

    def notify(self, outcome: RolloutOutcome) -> None:
        payload = outcome.to_dict()
        payload["text"] = format_outcome(outcome)
        response = self._client.post(self.webhook_url, json=payload)
        response.raise_for_status()
        logger.info("Rollout notification delivered to webhook")


class CompositeNotifier:
    """Fans one outcome out to several notifiers.

    A failing channel is logged and does not stop the others.
    """

    def __init__(self, notifiers: Sequence[Notifier]):
        self._notifiers = list(notifiers)

    def notify(self, outcome: RolloutOutcome) -> None:
        for notifier in self._notifiers:
            try:
                notifier.notify(outcome)
            except Exception as exc:
                logger.error(
                    "Notifier %s failed: %s", type(notifier).__name__, exc
                )
