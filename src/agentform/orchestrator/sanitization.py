"""Redaction of error text before it is stored on runs or published to clients."""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import NamedTuple

MAX_ERROR_CHARS = 500
_MAX_PREVIEW_CHARS = 2_000


class _Rule(NamedTuple):
    name: str
    pattern: re.Pattern[str]
    replacement: str | Callable[[re.Match[str]], str]


def _mask_param(match: re.Match[str]) -> str:
    return f"{match.group('param')}=[redacted]"


_RULES: tuple[_Rule, ...] = (
    _Rule(
        "bearer",
        re.compile(r"(?i)\b(?P<scheme>bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\g<scheme> [redacted-token]",
    ),
    _Rule("provider_key", re.compile(r"(?i)\bsk-[a-z0-9\-]{8,}\b"), "[redacted-token]"),
    _Rule(
        "named_secret",
        re.compile(
            r"(?i)\b(?:agentform|openai|anthropic|slack|hubspot|salesforce|zapier|webhook)"
            r"[a-z0-9_]*_(?:api_)?(?:key|token|secret)\b\s*[:=]\s*['\"]?[^'\"\s]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    _Rule(
        "signature_header",
        re.compile(r"(?i)\b(?P<header>x-signature)\s*[:=]\s*[0-9a-f]{16,}"),
        r"\g<header>: [redacted]",
    ),
    _Rule(
        "slack_hook",
        re.compile(r"(?i)(?P<prefix>https://hooks\.slack\.com/services/)[A-Za-z0-9/]+"),
        r"\g<prefix>[redacted]",
    ),
    _Rule(
        "query_secret",
        re.compile(
            r"(?i)(?P<param>[?&](?:token|key|secret|signature|auth|api_key|password))=[^&\s]+",
        ),
        _mask_param,
    ),
    _Rule(
        "email",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[redacted-email]",
    ),
)


def sanitize_preview(text: str, *, max_chars: int = _MAX_PREVIEW_CHARS) -> str:
    """Redact credentials, webhook URLs and email addresses, then clamp to `max_chars`."""

    redacted = text.strip()
    for rule in _RULES:
        redacted = rule.pattern.sub(rule.replacement, redacted)
    return redacted[:max_chars]


def error_message(error: BaseException, *, max_chars: int = MAX_ERROR_CHARS) -> str:
    """Client-safe message for a failed step or prepare; falls back to the type name."""

    return sanitize_preview(str(error) or type(error).__name__, max_chars=max_chars)
