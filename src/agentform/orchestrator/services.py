"""Use-case services for the work unit queue."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from agentform.orchestrator.models import EventType, WorkUnitCreate, WorkUnitView
from agentform.orchestrator.registry import WorkflowRegistry
from agentform.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 100


class OrchestratorService:
    """Inbound trigger: turns domain events into queued work units."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        registry: WorkflowRegistry,
    ) -> None:
        self.repository = repository
        self.registry = registry

    def enqueue(  # noqa: PLR0913
        self,
        event_type: EventType | str,
        payload: dict[str, Any],
        *,
        work_unit_id: str | None = None,
        priority: int = DEFAULT_PRIORITY,
        max_attempts: int | None = None,
        run_after: datetime | None = None,
    ) -> str:
        """Queue a work unit on the queue its workflow runs on; returns its id."""

        handler = self.registry.resolve(event_type)
        unit = self.repository.enqueue(
            WorkUnitCreate(
                event_type=handler.event_type,
                payload=dict(payload),
                work_unit_id=work_unit_id,
                queue_name=handler.queue_name,
                priority=priority,
                max_attempts=max_attempts or handler.retry_rules.max_attempts,
                run_after=run_after,
            ),
        )
        logger.info(
            "Enqueued %s as %s on queue %s",
            unit.event_type.value,
            unit.work_unit_id,
            unit.queue_name,
        )
        return unit.work_unit_id

    def get(self, work_unit_id: str) -> WorkUnitView | None:
        return self.repository.get(work_unit_id=work_unit_id)
