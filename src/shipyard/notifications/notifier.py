"""
Run-completion notifications.

Sinks receive a structured RunEvent when a run reaches a terminal status.
Delivery is best effort: a failing sink is logged and never changes the
run's outcome.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional

import httpx

from shipyard.shared.domain.base_model import BaseDomainModel
from shipyard.shared.infrastructure.config import settings
from shipyard.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

_STATUS_EMOJI = {
    "success": ":white_check_mark:",
    "unstable": ":warning:",
    "failed": ":x:",
    "aborted": ":no_entry_sign:",
}


@dataclass
class RunEvent(BaseDomainModel):
    """Structured completion event."""

    run_id: str
    pipeline: str
    status: str
    branch: str
    commit: str
    environment: str
    url: str = ""
    reason: Optional[str] = None

    @classmethod
    def from_run(cls, run) -> RunEvent:
        return cls(
            run_id=run.id,
            pipeline=run.pipeline,
            status=run.status.value,
            branch=run.context.branch,
            commit=run.context.commit,
            environment=run.context.environment,
            url=run.context.build_url,
            reason=run.reason,
        )

    def summary(self) -> str:
        emoji = _STATUS_EMOJI.get(self.status, "")
        text = f"{emoji} {self.pipeline} #{self.run_id} {self.status.upper()} ({self.branch} @ {self.commit[:8] or '-'}) -> {self.environment}"
        if self.reason:
            text += f" reason={self.reason}"
        if self.url:
            text += f" {self.url}"
        return text.strip()


class NotificationSink(ABC):
    """Destination for run events."""

    @abstractmethod
    async def send(self, event: RunEvent) -> None:
        ...


class LogNotifier(NotificationSink):
    """Writes run events to the structured log."""

    async def send(self, event: RunEvent) -> None:
        logger.info("run_notification", **event.to_json())


class WebhookNotifier(NotificationSink):
    """
    POSTs run events as JSON, with a Slack-compatible ``text`` field.
    """

    def __init__(
        self,
        url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout if timeout is not None else settings.notification_timeout
        self.transport = transport

    async def send(self, event: RunEvent) -> None:
        payload = {"text": event.summary(), "event": event.to_json()}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.url, json=payload)
            response.raise_for_status()


async def notify_all(sinks: Iterable[NotificationSink], event: RunEvent) -> int:
    """
    Deliver an event to every sink.

    Returns:
        Number of sinks that failed
    """
    failures = 0
    for sink in sinks:
        try:
            await sink.send(event)
        except Exception as e:
            failures += 1
            logger.error(
                "notification_delivery_failed",
                sink=type(sink).__name__,
                run_id=event.run_id,
                error=str(e),
            )
    return failures
