"""Payload contracts carried by form work units.

Each work unit payload holds a snapshot of the records its workflow needs:
`user`, `form`, `response` and `answers`, plus event-specific keys
(`question_response_id`, `source_question_id`, `trigger_event`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from agentform.orchestrator.errors import NotFoundError, ValidationError
from agentform.storage.common import from_iso


@dataclass(slots=True, frozen=True)
class UserSnapshot:
    user_id: str
    can_use_ai: bool = False
    can_use_integrations: bool = False


@dataclass(slots=True, frozen=True)
class QuestionSnapshot:
    question_id: str
    title: str
    question_type: str = "text_short"
    ai_enhanced: bool = False
    generates_followups: bool = False
    max_followups: int = 2
    position: int = 0


@dataclass(slots=True, frozen=True)
class AnswerSnapshot:
    """One answered question within a response."""

    question_response_id: str
    question: QuestionSnapshot
    answer: Any
    answered_at: datetime | None = None

    @property
    def has_answer(self) -> bool:
        if self.answer is None:
            return False
        if isinstance(self.answer, str | list | dict):
            return bool(self.answer)
        return True

    @property
    def answer_text(self) -> str:
        if isinstance(self.answer, list):
            return ", ".join(str(item) for item in self.answer)
        return "" if self.answer is None else str(self.answer)


@dataclass(slots=True, frozen=True)
class FormSnapshot:
    form_id: str
    name: str
    user_id: str
    description: str = ""
    ai_enhanced: bool = False
    integrations_enabled: bool = False
    integration_settings: dict[str, dict[str, Any]] = field(default_factory=dict)
    notification_settings: dict[str, Any] = field(default_factory=dict)
    max_dynamic_questions: int = 3
    responses_count: int = 0
    questions: tuple[QuestionSnapshot, ...] = ()
    rate_limit_per_minute: int | None = None


@dataclass(slots=True, frozen=True)
class ResponseSnapshot:
    response_id: str
    form_id: str
    status: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    submitted_at: datetime | None = None
    progress_percentage: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    @property
    def abandoned(self) -> bool:
        return self.status == "abandoned"

    @property
    def in_progress(self) -> bool:
        return self.status == "in_progress"


@dataclass(slots=True, frozen=True)
class FormEventPayload:
    """Parsed work unit payload shared by all form workflows."""

    user: UserSnapshot
    form: FormSnapshot
    response: ResponseSnapshot
    answers: tuple[AnswerSnapshot, ...]
    extra: dict[str, Any] = field(default_factory=dict)

    def answer(self, question_response_id: str) -> AnswerSnapshot:
        for answer in self.answers:
            if answer.question_response_id == question_response_id:
                return answer
        raise NotFoundError(f"Question response not found: {question_response_id}")

    def answer_for_question(self, question_id: str) -> AnswerSnapshot:
        for answer in self.answers:
            if answer.question.question_id == question_id:
                return answer
        raise ValidationError(f"No response found for source question {question_id}")

    def require_extra(self, key: str) -> str:
        value = self.extra.get(key)
        if not isinstance(value, str | int) or not str(value).strip():
            raise ValidationError(f"payload.{key} must be a non-empty string")
        return str(value)


def parse_form_event(raw: dict[str, Any]) -> FormEventPayload:
    """Validate a work unit payload; malformed payloads raise `ValidationError`."""

    user = _parse_user(_object(raw, "user"))
    form = _parse_form(_object(raw, "form"))
    response = _parse_response(_object(raw, "response"))
    raw_answers = raw.get("answers", [])
    if not isinstance(raw_answers, list):
        raise ValidationError("payload.answers must be an array")
    answers = tuple(_parse_answer(item) for item in raw_answers)
    extra = {
        key: value
        for key, value in raw.items()
        if key not in {"user", "form", "response", "answers"}
    }
    if response.form_id != form.form_id:
        raise ValidationError(
            f"Form response {response.response_id} does not belong to form {form.form_id}",
        )
    return FormEventPayload(user=user, form=form, response=response, answers=answers, extra=extra)


def _parse_user(raw: dict[str, Any]) -> UserSnapshot:
    return UserSnapshot(
        user_id=_text(raw, "id", "user"),
        can_use_ai=bool(raw.get("can_use_ai", False)),
        can_use_integrations=bool(raw.get("can_use_integrations", False)),
    )


def _parse_form(raw: dict[str, Any]) -> FormSnapshot:
    integration_settings = raw.get("integration_settings") or {}
    if not isinstance(integration_settings, dict):
        raise ValidationError("form.integration_settings must be an object")
    notification_settings = raw.get("notification_settings") or {}
    if not isinstance(notification_settings, dict):
        raise ValidationError("form.notification_settings must be an object")
    raw_questions = raw.get("questions") or []
    if not isinstance(raw_questions, list):
        raise ValidationError("form.questions must be an array")
    return FormSnapshot(
        form_id=_text(raw, "id", "form"),
        name=str(raw.get("name", "")),
        user_id=_text(raw, "user_id", "form"),
        description=str(raw.get("description") or ""),
        ai_enhanced=bool(raw.get("ai_enhanced", False)),
        integrations_enabled=bool(raw.get("integrations_enabled", False)),
        integration_settings={
            str(name): config
            for name, config in integration_settings.items()
            if isinstance(config, dict)
        },
        notification_settings=notification_settings,
        max_dynamic_questions=_int(raw, "max_dynamic_questions", 3, "form"),
        responses_count=_int(raw, "responses_count", 0, "form"),
        questions=tuple(_parse_question(item) for item in raw_questions),
        rate_limit_per_minute=_rate_limit_override(raw),
    )


def _rate_limit_override(raw: dict[str, Any]) -> int | None:
    """`ai_configuration.ai_engine.rate_limiting.max_requests_per_minute`, if set."""

    section: Any = raw.get("ai_configuration")
    for key in ("ai_engine", "rate_limiting"):
        if not isinstance(section, dict):
            return None
        section = section.get(key)
    if not isinstance(section, dict):
        return None
    limit = _int(section, "max_requests_per_minute", 0, "form.ai_configuration.rate_limiting")
    if limit < 0:
        raise ValidationError(
            "form.ai_configuration.rate_limiting.max_requests_per_minute must be >= 0",
        )
    return limit or None


def _parse_response(raw: dict[str, Any]) -> ResponseSnapshot:
    metadata = raw.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("response.metadata must be an object")
    progress = raw.get("progress_percentage", 0.0)
    if not isinstance(progress, int | float):
        raise ValidationError("response.progress_percentage must be a number")
    return ResponseSnapshot(
        response_id=_text(raw, "id", "response"),
        form_id=_text(raw, "form_id", "response"),
        status=_text(raw, "status", "response"),
        started_at=_datetime(raw, "started_at", "response"),
        completed_at=_datetime(raw, "completed_at", "response"),
        submitted_at=_datetime(raw, "submitted_at", "response"),
        progress_percentage=float(progress),
        metadata=metadata,
    )


def _parse_question(raw: Any) -> QuestionSnapshot:
    if not isinstance(raw, dict):
        raise ValidationError("question entry must be an object")
    return QuestionSnapshot(
        question_id=_text(raw, "id", "question"),
        title=str(raw.get("title", "")),
        question_type=str(raw.get("question_type", "text_short")),
        ai_enhanced=bool(raw.get("ai_enhanced", False)),
        generates_followups=bool(raw.get("generates_followups", False)),
        max_followups=_int(raw, "max_followups", 2, "question"),
        position=_int(raw, "position", 0, "question"),
    )


def _parse_answer(raw: Any) -> AnswerSnapshot:
    if not isinstance(raw, dict):
        raise ValidationError("answers entry must be an object")
    return AnswerSnapshot(
        question_response_id=_text(raw, "id", "answers"),
        question=_parse_question(_object(raw, "question")),
        answer=raw.get("answer"),
        answered_at=_datetime(raw, "answered_at", "answers"),
    )


def _object(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    if not isinstance(value, dict):
        raise ValidationError(f"payload.{key} must be an object")
    return value


def _text(raw: dict[str, Any], key: str, scope: str) -> str:
    value = raw.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{scope}.{key} must be a non-empty string")
    return value


def _int(raw: dict[str, Any], key: str, default: int, scope: str) -> int:
    value = raw.get(key, default)
    if value is None:
        return default
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"{scope}.{key} must be an integer")
    return value


def _datetime(raw: dict[str, Any], key: str, scope: str) -> datetime | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{scope}.{key} must be an ISO-8601 string")
    try:
        return from_iso(value)
    except ValueError as error:
        raise ValidationError(f"{scope}.{key} is not a valid ISO-8601 timestamp") from error
