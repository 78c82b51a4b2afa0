"""Outbound integration payload builders."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from agentform.forms.contracts import FormEventPayload, ResponseSnapshot

SLACK_COLOR_COMPLETED = "#36a64f"
SLACK_COLOR_IN_PROGRESS = "#ff9900"
SLACK_COLOR_ABANDONED = "#ff0000"
SLACK_COLOR_DEFAULT = "#439fe0"
SLACK_MAX_ANSWER_FIELDS = 5
SLACK_MAX_ANSWER_CHARS = 100


def build_event_payload(
    event: FormEventPayload,
    trigger_event: str,
    config: dict[str, Any],
    *,
    timestamp: datetime,
    answer_analyses: dict[str, dict[str, Any]] | None = None,
    response_analysis: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """JSON body `{event, timestamp, form, response, answers, metadata}` for webhooks."""

    response = event.response
    answers: dict[str, Any] = {}
    for answer in event.answers:
        entry: dict[str, Any] = {
            "question_id": answer.question.question_id,
            "question_title": answer.question.title,
            "question_type": answer.question.question_type,
            "answer": answer.answer,
            "answered_at": _iso(answer.answered_at),
        }
        analysis = (answer_analyses or {}).get(answer.question_response_id)
        if analysis:
            entry["ai_analysis"] = {
                "sentiment": analysis.get("sentiment"),
                "quality": analysis.get("quality"),
                "confidence_score": analysis.get("confidence_score"),
            }
        answers[answer.question.question_id] = entry

    payload: dict[str, Any] = {
        "event": trigger_event,
        "timestamp": timestamp.isoformat(),
        "form": {
            "id": event.form.form_id,
            "name": event.form.name,
            "description": event.form.description,
        },
        "response": {
            "id": response.response_id,
            "submitted_at": _iso(response.submitted_at),
            "completed_at": _iso(response.completed_at),
            "status": response.status,
            "progress_percentage": response.progress_percentage,
        },
        "answers": answers,
        "metadata": {
            "user_agent": response.metadata.get("user_agent"),
            "ip_address": response.metadata.get("ip_address"),
            "referrer": response.metadata.get("referrer"),
        },
    }
    if response_analysis:
        payload["ai_analysis"] = {
            "overall_sentiment": response_analysis.get("overall_sentiment"),
            "overall_quality": response_analysis.get("overall_quality"),
            "key_insights": response_analysis.get("key_insights"),
        }
    if config.get("include_custom_fields"):
        payload["custom_fields"] = dict(response.metadata.get("custom_fields") or {})
    return payload


def build_slack_payload(
    event: FormEventPayload,
    trigger_event: str,
    config: dict[str, Any],
    *,
    timestamp: datetime,
    response_analysis: dict[str, Any] | None = None,
) -> dict[str, Any]:
    form_name = event.form.name
    texts = {
        "form_completed": f"New form submission received for '{form_name}'",
        "form_abandoned": f"Form '{form_name}' was abandoned",
        "response_updated": f"Form response updated for '{form_name}'",
    }
    payload: dict[str, Any] = {
        "text": texts.get(trigger_event, f"Form event '{trigger_event}' for '{form_name}'"),
        "attachments": [
            {
                "color": slack_color(event.response),
                "fields": _slack_fields(event, response_analysis),
                "footer": "AgentForm",
                "ts": int(timestamp.timestamp()),
            },
        ],
    }
    if config.get("channel"):
        payload["channel"] = config["channel"]
    if config.get("username"):
        payload["username"] = config["username"]
    return payload


def slack_color(response: ResponseSnapshot) -> str:
    if response.completed:
        return SLACK_COLOR_COMPLETED
    if response.in_progress:
        return SLACK_COLOR_IN_PROGRESS
    if response.abandoned:
        return SLACK_COLOR_ABANDONED
    return SLACK_COLOR_DEFAULT


def sentiment_label(score: float) -> str:
    if score < 0.3:
        return "Negative"
    if score < 0.7:
        return "Neutral"
    return "Positive"


def truncate_answer(text: str) -> str:
    if len(text) <= SLACK_MAX_ANSWER_CHARS:
        return text
    return f"{text[: SLACK_MAX_ANSWER_CHARS - 3]}..."


def _slack_fields(
    event: FormEventPayload,
    response_analysis: dict[str, Any] | None,
) -> list[dict[str, Any]]:
    response = event.response
    fields: list[dict[str, Any]] = [
        {"title": "Response ID", "value": response.response_id, "short": True},
        {"title": "Status", "value": response.status.replace("_", " ").capitalize(), "short": True},
    ]
    if response.completed_at is not None:
        fields.append(
            {
                "title": "Completed At",
                "value": response.completed_at.strftime("%Y-%m-%d %H:%M:%S"),
                "short": True,
            },
        )
    for answer in event.answers[:SLACK_MAX_ANSWER_FIELDS]:
        if not answer.has_answer:
            continue
        fields.append(
            {
                "title": answer.question.title,
                "value": truncate_answer(answer.answer_text),
                "short": False,
            },
        )
    sentiment = (response_analysis or {}).get("overall_sentiment")
    if isinstance(sentiment, int | float):
        fields.append(
            {"title": "AI Sentiment", "value": sentiment_label(float(sentiment)), "short": True},
        )
    return fields


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
