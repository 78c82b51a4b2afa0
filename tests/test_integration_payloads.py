from __future__ import annotations

import hashlib
import hmac
import json

import allure
import httpx
import pytest

from agentform.forms.contracts import parse_form_event
from agentform.http.client import HttpPoster
from agentform.integrations.dispatcher import WebhookDispatcher, encode_body, sign_payload
from agentform.integrations.payloads import (
    SLACK_COLOR_ABANDONED,
    SLACK_COLOR_COMPLETED,
    SLACK_COLOR_IN_PROGRESS,
    build_event_payload,
    build_slack_payload,
    sentiment_label,
    slack_color,
    truncate_answer,
)
from agentform.orchestrator.errors import (
    DependencyTimeoutError,
    ExternalApiError,
    RateLimitedError,
    ValidationError,
)

pytestmark = [
    allure.epic("Integrations"),
    allure.feature("Payloads and Delivery"),
]


def test_event_payload_includes_answers_and_analysis(make_payload, clock) -> None:
    raw = make_payload()
    raw["response"]["metadata"]["custom_fields"] = {"plan": "pro"}
    event = parse_form_event(raw)

    payload = build_event_payload(
        event,
        "form_completed",
        {"include_custom_fields": True},
        timestamp=clock(),
        answer_analyses={"qr-1": {"sentiment": {"score": 0.5}, "quality": {"overall": 0.6}}},
        response_analysis={"overall_sentiment": 0.8, "overall_quality": 0.7, "key_insights": []},
    )

    assert payload["event"] == "form_completed"
    assert payload["timestamp"] == "2026-10-16T12:00:00+00:00"
    assert payload["form"] == {
        "id": "form-1",
        "name": "Customer Onboarding",
        "description": "Post-signup survey",
    }
    assert payload["response"]["status"] == "completed"
    assert payload["answers"]["q-1"]["ai_analysis"]["quality"] == {"overall": 0.6}
    assert "ai_analysis" not in payload["answers"]["q-2"]
    assert payload["ai_analysis"]["overall_sentiment"] == 0.8
    assert payload["custom_fields"] == {"plan": "pro"}
    assert payload["metadata"]["user_agent"] == "pytest"


def test_event_payload_omits_optional_sections(make_payload, clock) -> None:
    payload = build_event_payload(
        parse_form_event(make_payload()),
        "response_updated",
        {},
        timestamp=clock(),
    )

    assert "ai_analysis" not in payload
    assert "custom_fields" not in payload


def test_slack_payload_fields(make_payload, clock) -> None:
    raw = make_payload()
    raw["answers"][0]["answer"] = "x" * 150
    event = parse_form_event(raw)

    payload = build_slack_payload(
        event,
        "form_abandoned",
        {"username": "forms-bot"},
        timestamp=clock(),
        response_analysis={"overall_sentiment": 0.2},
    )

    attachment = payload["attachments"][0]
    titles = [field["title"] for field in attachment["fields"]]
    assert payload["text"] == "Form 'Customer Onboarding' was abandoned"
    assert payload["username"] == "forms-bot"
    assert "channel" not in payload
    assert attachment["color"] == SLACK_COLOR_COMPLETED
    assert titles[:3] == ["Response ID", "Status", "Completed At"]
    assert attachment["fields"][3]["value"] == "x" * 97 + "..."
    assert attachment["fields"][-1] == {"title": "AI Sentiment", "value": "Negative", "short": True}


@pytest.mark.parametrize(
    ("status", "color"),
    [
        ("completed", SLACK_COLOR_COMPLETED),
        ("in_progress", SLACK_COLOR_IN_PROGRESS),
        ("abandoned", SLACK_COLOR_ABANDONED),
    ],
)
def test_slack_color(make_payload, status: str, color: str) -> None:
    event = parse_form_event(make_payload(status=status))

    assert slack_color(event.response) == color


@pytest.mark.parametrize(
    ("score", "label"),
    [(0.0, "Negative"), (0.29, "Negative"), (0.3, "Neutral"), (0.69, "Neutral"), (0.7, "Positive")],
)
def test_sentiment_label_thresholds(score: float, label: str) -> None:
    assert sentiment_label(score) == label


def test_truncate_answer_keeps_short_text() -> None:
    assert truncate_answer("a" * 100) == "a" * 100
    assert len(truncate_answer("a" * 101)) == 100


def _dispatcher(handler) -> WebhookDispatcher:
    return WebhookDispatcher(HttpPoster(transport=httpx.MockTransport(handler)))


def test_dispatcher_merges_headers_and_signs_body() -> None:
    captured: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202, text="accepted")

    result = _dispatcher(_handler).deliver(
        {"url": "https://hooks.example.com", "secret": "k", "headers": {"X-Team": 7}},
        {"b": 2, "a": 1},
        headers={"X-AgentForm-Event": "form_completed"},
    )

    request = captured[0]
    assert result == {"status_code": 202, "response_body": "accepted"}
    assert request.content == encode_body({"b": 2, "a": 1})
    assert json.loads(request.content) == {"b": 2, "a": 1}
    assert request.headers["X-Team"] == "7"
    assert request.headers["X-AgentForm-Event"] == "form_completed"
    assert request.headers["X-Signature"] == sign_payload(request.content, "k")
    assert request.headers["User-Agent"] == "AgentForm/1.0"


def test_dispatcher_requires_url() -> None:
    dispatcher = _dispatcher(lambda _request: httpx.Response(200))

    with pytest.raises(ValidationError, match="Slack webhook URL not configured"):
        dispatcher.deliver({"url": "  "}, {}, context="Slack webhook")


def test_dispatcher_maps_rate_limit_with_retry_after() -> None:
    dispatcher = _dispatcher(
        lambda _request: httpx.Response(429, headers={"Retry-After": "42"}, text="slow down"),
    )

    with pytest.raises(RateLimitedError) as excinfo:
        dispatcher.deliver({"url": "https://hooks.example.com"}, {})

    assert excinfo.value.retry_after == 42.0


def test_dispatcher_maps_server_error_and_timeout() -> None:
    def _timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timed out", request=request)

    server_error = _dispatcher(lambda _request: httpx.Response(502, text="bad gateway"))
    timing_out = _dispatcher(_timeout)

    with pytest.raises(ExternalApiError) as excinfo:
        server_error.deliver({"url": "https://hooks.example.com"}, {})
    with pytest.raises(DependencyTimeoutError, match="Webhook timeout"):
        timing_out.deliver({"url": "https://hooks.example.com"}, {})

    assert excinfo.value.status_code == 502
    assert "HTTP 502: bad gateway" in str(excinfo.value)


def test_signature_is_hmac_sha256_hex() -> None:
    expected = hmac.new(b"secret", b"{}", hashlib.sha256).hexdigest()

    assert sign_payload(b"{}", "secret") == expected
