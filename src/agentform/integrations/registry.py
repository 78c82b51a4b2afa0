"""Integration type registry: one handler per supported integration."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from agentform.forms.contracts import FormEventPayload
from agentform.integrations.dispatcher import WebhookDispatcher
from agentform.integrations.payloads import build_event_payload, build_slack_payload
from agentform.orchestrator.errors import ValidationError

logger = logging.getLogger(__name__)

EMAIL_TYPES = ("notification", "autoresponder", "admin_alert")


class IntegrationType(str, Enum):
    WEBHOOK = "webhook"
    SLACK = "slack"
    ZAPIER = "zapier"
    CRM = "crm"
    EMAIL = "email"


_ALIASES = {
    "salesforce": IntegrationType.CRM,
    "hubspot": IntegrationType.CRM,
}


@dataclass(slots=True)
class IntegrationContext:
    """Everything a handler needs to deliver one trigger event."""

    name: str
    trigger_event: str
    config: dict[str, Any]
    event: FormEventPayload
    timestamp: datetime
    answer_analyses: dict[str, dict[str, Any]] = field(default_factory=dict)
    response_analysis: dict[str, Any] | None = None

    def event_headers(self) -> dict[str, str]:
        return {
            "X-AgentForm-Event": self.trigger_event,
            "X-AgentForm-Form-Id": self.event.form.form_id,
            "X-AgentForm-Response-Id": self.event.response.response_id,
        }

    def event_payload(self) -> dict[str, Any]:
        return build_event_payload(
            self.event,
            self.trigger_event,
            self.config,
            timestamp=self.timestamp,
            answer_analyses=self.answer_analyses,
            response_analysis=self.response_analysis,
        )


class IntegrationHandler(Protocol):
    def __call__(self, context: IntegrationContext) -> dict[str, Any]: ...


class WebhookIntegration:
    def __init__(self, dispatcher: WebhookDispatcher) -> None:
        self.dispatcher = dispatcher

    def __call__(self, context: IntegrationContext) -> dict[str, Any]:
        return self.dispatcher.deliver(
            context.config,
            context.event_payload(),
            headers=context.event_headers(),
        )


class ZapierIntegration:
    """Zapier catch hooks are plain webhooks with their own URL key."""

    def __init__(self, dispatcher: WebhookDispatcher) -> None:
        self.dispatcher = dispatcher

    def __call__(self, context: IntegrationContext) -> dict[str, Any]:
        config = dict(context.config)
        config["url"] = config.get("webhook_url") or config.get("zapier_webhook_url")
        return self.dispatcher.deliver(
            config,
            context.event_payload(),
            headers=context.event_headers(),
            context="Zapier webhook",
        )


class SlackIntegration:
    def __init__(self, dispatcher: WebhookDispatcher) -> None:
        self.dispatcher = dispatcher

    def __call__(self, context: IntegrationContext) -> dict[str, Any]:
        payload = build_slack_payload(
            context.event,
            context.trigger_event,
            context.config,
            timestamp=context.timestamp,
            response_analysis=context.response_analysis,
        )
        return self.dispatcher.deliver(context.config, payload, context="Slack webhook")


class CrmIntegration:
    """Pushes the response as a CRM record to a provider relay endpoint."""

    def __init__(self, dispatcher: WebhookDispatcher) -> None:
        self.dispatcher = dispatcher

    def __call__(self, context: IntegrationContext) -> dict[str, Any]:
        provider = str(context.config.get("provider") or context.name)
        payload = {
            "provider": provider,
            "object_type": context.config.get("object_type", "lead"),
            "record": context.event_payload(),
        }
        delivered = self.dispatcher.deliver(
            context.config,
            payload,
            headers=context.event_headers(),
            context=f"CRM ({provider})",
        )
        return {"provider": provider, **delivered}


class EmailIntegration:
    """Email delivery is out of process; the request is only recorded."""

    def __call__(self, context: IntegrationContext) -> dict[str, Any]:
        email_type = str(context.config.get("email_type") or "notification")
        if email_type not in EMAIL_TYPES:
            raise ValidationError(f"Unknown email type: {email_type}")
        recipients = context.config.get("recipients") or []
        logger.info(
            "Recorded %s email for response %s (%d recipients)",
            email_type,
            context.event.response.response_id,
            len(recipients),
        )
        return {"email_type": email_type, "recipients": len(recipients), "recorded": True}


class IntegrationRegistry:
    """Maps configured integration names to handlers."""

    def __init__(self, handlers: Mapping[IntegrationType, IntegrationHandler]) -> None:
        self._handlers = dict(handlers)

    @classmethod
    def default(cls, dispatcher: WebhookDispatcher) -> IntegrationRegistry:
        return cls(
            {
                IntegrationType.WEBHOOK: WebhookIntegration(dispatcher),
                IntegrationType.ZAPIER: ZapierIntegration(dispatcher),
                IntegrationType.SLACK: SlackIntegration(dispatcher),
                IntegrationType.CRM: CrmIntegration(dispatcher),
                IntegrationType.EMAIL: EmailIntegration(),
            },
        )

    @staticmethod
    def type_for(name: str, config: Mapping[str, Any]) -> IntegrationType:
        raw = str(config.get("type") or name).strip().lower()
        if raw in _ALIASES:
            return _ALIASES[raw]
        try:
            return IntegrationType(raw)
        except ValueError as exc:
            raise ValidationError(f"Unknown integration type: {raw}") from exc

    def resolve(self, name: str, config: Mapping[str, Any]) -> IntegrationHandler:
        integration_type = self.type_for(name, config)
        handler = self._handlers.get(integration_type)
        if handler is None:
            raise ValidationError(f"No handler registered for integration {integration_type.value}")
        return handler
