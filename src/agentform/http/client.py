"""HTTP client for outbound JSON deliveries with timeout and error mapping."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

from agentform.orchestrator.errors import (
    DependencyTimeoutError,
    ExternalApiError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from agentform.orchestrator.failure_classifier import classify_http_status
from agentform.orchestrator.models import ErrorCategory

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_USER_AGENT = "AgentForm/1.0"
_MAX_BODY_PREVIEW = 200


@dataclass(slots=True)
class PostResult:
    """Result of one POST; transport failures have status_code 0."""

    url: str
    status_code: int
    body: str
    is_success: bool
    error: str | None = None
    timed_out: bool = False
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def retry_after_seconds(self) -> float | None:
        raw = self.headers.get("retry-after")
        if raw is None:
            return None
        try:
            return max(float(raw), 0.0)
        except ValueError:
            return None


class HttpPoster:
    """httpx wrapper posting pre-serialized JSON bodies."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"User-Agent": user_agent, "Content-Type": "application/json"},
            transport=transport,
        )

    def post(
        self,
        url: str,
        body: bytes,
        *,
        headers: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> PostResult:
        timeout = httpx.Timeout(timeout_seconds or self._timeout_seconds, connect=10.0)
        try:
            response = self._client.post(url, content=body, headers=headers, timeout=timeout)
        except httpx.TimeoutException:
            logger.warning("Timeout posting to %s", url)
            return PostResult(
                url=url,
                status_code=0,
                body="",
                is_success=False,
                error="timeout",
                timed_out=True,
            )
        except httpx.HTTPError as exc:
            logger.warning("HTTP error posting to %s: %s", url, exc)
            return PostResult(url=url, status_code=0, body="", is_success=False, error=str(exc))
        return PostResult(
            url=url,
            status_code=response.status_code,
            body=response.text,
            is_success=response.is_success,
            error=None if response.is_success else f"HTTP {response.status_code}",
            headers={key.lower(): value for key, value in response.headers.items()},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpPoster:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def raise_for_result(result: PostResult, *, context: str) -> None:
    """Raise the categorized error for an unsuccessful POST."""

    if result.is_success:
        return
    if result.timed_out:
        raise DependencyTimeoutError(f"{context} timeout")
    if result.status_code == 0:
        raise ExternalApiError(f"{context} delivery failed: {result.error}")

    message = f"{context} returned HTTP {result.status_code}: {result.body[:_MAX_BODY_PREVIEW]}"
    category = classify_http_status(result.status_code)
    if category == ErrorCategory.RATE_LIMITED:
        raise RateLimitedError(message, retry_after=result.retry_after_seconds)
    if category == ErrorCategory.NOT_FOUND:
        raise NotFoundError(message)
    if category == ErrorCategory.VALIDATION:
        raise ValidationError(message)
    raise ExternalApiError(message, status_code=result.status_code)
