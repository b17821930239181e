from __future__ import annotations

import logging
import time
from dataclasses import asdict

import httpx

from pushrelay.core.config import get_settings
from pushrelay.core.errors import DeliveryConfigError
from pushrelay.domain.jobs import DeliveryTarget
from pushrelay.providers.delivery.base import DeliveryContent, DeliveryResult
from pushrelay.services.telemetry import record_external_call

logger = logging.getLogger(__name__)

# Auth and throttling failures clear up once credentials refresh or the rate window passes.
_RETRYABLE_STATUS_CODES = {401, 403, 408, 429}


def classify_status(status_code: int) -> bool:
    # Return True when a failed HTTP status is worth retrying.
    if status_code in _RETRYABLE_STATUS_CODES:
        return True
    return status_code >= 500


class GatewayDeliveryAdapter:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.push_gateway_url or "").rstrip("/")
        self._api_key = api_key if api_key is not None else settings.push_gateway_api_key
        self._timeout_s = settings.delivery_timeout_s
        self._client = client
        if not self._base_url:
            raise DeliveryConfigError("PUSH_GATEWAY_URL is required for the gateway delivery provider")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per adapter for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def _payload(self, target: DeliveryTarget, content: DeliveryContent) -> dict:
        notification = asdict(content)
        # Gateways expect string-valued data maps.
        notification["data"] = {str(key): str(value) for key, value in (content.data or {}).items()}
        return {"target": {"kind": target.kind, "value": target.value}, "notification": notification}

    async def send(self, target: DeliveryTarget, content: DeliveryContent) -> DeliveryResult:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await client.post(
                f"{self._base_url}/send",
                json=self._payload(target, content),
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            record_external_call(
                integration="push.gateway", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            return DeliveryResult(success=False, error_code="timeout", error_message=str(exc) or "timeout", retryable=True)
        except httpx.TransportError as exc:
            record_external_call(
                integration="push.gateway", latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            return DeliveryResult(
                success=False, error_code="transport_error", error_message=str(exc) or type(exc).__name__, retryable=True
            )

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            record_external_call(integration="push.gateway", latency_ms=latency_ms, success=False)
            error_code, error_message = _error_details(response)
            return DeliveryResult(
                success=False,
                error_code=error_code,
                error_message=error_message,
                retryable=classify_status(response.status_code),
            )

        record_external_call(integration="push.gateway", latency_ms=latency_ms, success=True)
        body = _json_body(response)
        message_id = body.get("message_id") or body.get("name")
        return DeliveryResult(success=True, message_id=str(message_id) if message_id else None)


def _json_body(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_details(response: httpx.Response) -> tuple[str, str]:
    # Prefer the gateway's own error code so responses stay comparable across providers.
    body = _json_body(response)
    error = body.get("error")
    if isinstance(error, dict):
        code = error.get("code") or error.get("status")
        message = error.get("message")
    else:
        code = None
        message = error if isinstance(error, str) else None
    return str(code or f"http_{response.status_code}"), str(message or response.reason_phrase or "gateway error")
