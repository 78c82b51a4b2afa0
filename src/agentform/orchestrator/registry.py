"""Event type -> workflow handler dispatch, resolved once at startup."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from agentform.orchestrator.errors import ValidationError
from agentform.orchestrator.models import EventType, WorkUnitView
from agentform.orchestrator.retry_policy import RetryRules
from agentform.orchestrator.workflow import StepDescriptor


@dataclass(slots=True)
class WorkflowPlan:
    """Steps to run for one claimed work unit."""

    steps: Sequence[StepDescriptor]
    metadata: dict[str, object] = field(default_factory=dict)


class WorkflowHandler(Protocol):
    """Builds the plan for one event type.

    `prepare` checks prerequisites and raises a categorized error when the
    unit cannot run: `ValidationError`/`NotFoundError` fail it outright and
    `RateLimitedError` defers it.
    """

    event_type: EventType
    queue_name: str
    retry_rules: RetryRules

    def prepare(self, unit: WorkUnitView) -> WorkflowPlan: ...

    def channel_key(self, unit: WorkUnitView) -> str | None: ...

    def error_entity_key(self, unit: WorkUnitView) -> str | None: ...


class WorkflowRegistry:
    def __init__(self, handlers: Iterable[WorkflowHandler] = ()) -> None:
        self._handlers: dict[EventType, WorkflowHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: WorkflowHandler) -> None:
        if handler.event_type in self._handlers:
            raise ValueError(f"Handler already registered for {handler.event_type.value}")
        self._handlers[handler.event_type] = handler

    def resolve(self, event_type: EventType | str) -> WorkflowHandler:
        try:
            key = EventType(event_type)
        except ValueError as error:
            raise ValidationError(f"Unknown event type: {event_type}") from error
        handler = self._handlers.get(key)
        if handler is None:
            raise ValidationError(f"No workflow registered for event type: {key.value}")
        return handler

    def event_types(self) -> list[EventType]:
        return list(self._handlers)

    def queue_names(self) -> tuple[str, ...]:
        names: list[str] = []
        for handler in self._handlers.values():
            if handler.queue_name not in names:
                names.append(handler.queue_name)
        return tuple(names)
