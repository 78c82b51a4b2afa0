"""Outbound status events for clients watching a work unit."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from agentform.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, channel_key: str, event: dict[str, Any]) -> None: ...


class RepositoryNotifier:
    """Stores status events so pollers and the CLI can read them back."""

    def __init__(self, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def notify(self, channel_key: str, event: dict[str, Any]) -> None:
        self.repository.add_status_event(channel_key=channel_key, event=event)
        logger.info(
            "Status event %s on %s for %s",
            event.get("type", "unknown"),
            channel_key,
            event.get("work_unit_id", "-"),
        )


class RecordingNotifier:
    """In-memory notifier for tests and dry runs."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def notify(self, channel_key: str, event: dict[str, Any]) -> None:
        self.events.append((channel_key, dict(event)))
