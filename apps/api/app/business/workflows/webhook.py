from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any

import httpx
from opentelemetry import trace

from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.errors import DeliveryError
from app.metrics import observe_webhook_call
from app.otel import set_span_attributes


tracer = trace.get_tracer("app.workflows.webhook")

TIMESTAMP_HEADER = "X-Pipeline-Timestamp"
SIGNATURE_HEADER = "X-Pipeline-Signature"


def sign_payload(secret: str, timestamp: str, body: bytes) -> str:
    signed = timestamp.encode("utf-8") + b"." + body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, timestamp: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(secret, timestamp, body), signature)


class WebhookClient:
    def __init__(self, timeout: float | None = None, transport: httpx.BaseTransport | None = None) -> None:
        self.timeout = timeout
        self.transport = transport

    def post(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        secret: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        body = json.dumps(payload, default=str, separators=(",", ":")).encode("utf-8")
        request_headers = {**(headers or {}), "Content-Type": "application/json"}
        correlation_id = get_correlation_id()
        if correlation_id:
            request_headers.setdefault("X-Correlation-Id", correlation_id)
        if secret:
            timestamp = str(int(time.time()))
            request_headers[TIMESTAMP_HEADER] = timestamp
            request_headers[SIGNATURE_HEADER] = sign_payload(secret, timestamp, body)

        timeout = self.timeout if self.timeout is not None else get_settings().webhook_timeout_seconds
        with tracer.start_as_current_span("workflows.webhook") as span:
            set_span_attributes(span, url=url)
            try:
                with httpx.Client(timeout=timeout, transport=self.transport) as client:
                    response = client.post(url, content=body, headers=request_headers)
            except httpx.TimeoutException as exc:
                observe_webhook_call("timeout")
                raise DeliveryError(f"webhook timed out after {timeout}s") from exc
            except httpx.HTTPError as exc:
                observe_webhook_call("error")
                raise DeliveryError(f"webhook request failed: {type(exc).__name__}") from exc

            set_span_attributes(span, status_code=response.status_code)
            if not 200 <= response.status_code < 300:
                observe_webhook_call("error")
                raise DeliveryError(
                    f"webhook returned {response.status_code}",
                    details={"status_code": response.status_code},
                )
            observe_webhook_call("success")
            return response
