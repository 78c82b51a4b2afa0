"""Signed JSON delivery to integration endpoints."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any

from agentform.http.client import HttpPoster, raise_for_result
from agentform.orchestrator.errors import ValidationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Signature"
_MAX_BODY_PREVIEW = 200


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact request body."""

    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def encode_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


class WebhookDispatcher:
    """One POST per integration config `{url, secret?, headers?, timeout?}`.

    2xx is success. Other outcomes raise the categorized error: 429 rate
    limited, 404 not found, other 4xx validation, 5xx external API error,
    transport timeouts timeout.
    """

    def __init__(self, poster: HttpPoster) -> None:
        self.poster = poster

    def deliver(
        self,
        config: dict[str, Any],
        payload: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
        context: str = "Webhook",
    ) -> dict[str, Any]:
        url = config.get("url") or config.get("webhook_url")
        if not isinstance(url, str) or not url.strip():
            raise ValidationError(f"{context} URL not configured")

        body = encode_body(payload)
        request_headers = dict(headers or {})
        custom_headers = config.get("headers")
        if isinstance(custom_headers, dict):
            request_headers.update({str(key): str(value) for key, value in custom_headers.items()})
        secret = config.get("secret")
        if isinstance(secret, str) and secret:
            request_headers[SIGNATURE_HEADER] = sign_payload(body, secret)

        timeout = config.get("timeout")
        result = self.poster.post(
            url,
            body,
            headers=request_headers,
            timeout_seconds=float(timeout) if isinstance(timeout, int | float) else None,
        )
        raise_for_result(result, context=context)
        logger.info("%s delivered to %s (HTTP %d)", context, url, result.status_code)
        return {
            "status_code": result.status_code,
            "response_body": result.body[:_MAX_BODY_PREVIEW],
        }
