"""
Webhook Transport — signed, retried, timeout-bounded HTTP delivery.

Each send:
  1. Serializes the payload once; the same bytes are signed and posted.
  2. Signs with HMAC-SHA256 (hex) in `X-Webhook-Signature` when a secret is set.
  3. POSTs with a hard per-attempt deadline.
  4. Retries non-2xx, network errors and timeouts with exponential backoff
     (delay = base × 2^attempt index), stopping at the first success.
  5. Logs Pending → Sent | Failed | Error.

`Failed` means the endpoint answered with a non-2xx status; `Error` means
no usable answer (timeout, DNS, connection reset).

Bulk sends run in fixed-size chunks: requests inside a chunk overlap,
chunks run one after another.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from alerts.delivery_log import (
    STATUS_ERROR,
    STATUS_FAILED,
    STATUS_SENT,
    DeliveryLog,
    DeliveryMetadata,
    DeliveryRecord,
)
from core.config import get_settings

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-Webhook-Signature"


# ── Errors ────────────────────────────────────────────────────────────────


class WebhookDeliveryError(Exception):
    """Base for a failed delivery attempt."""


class WebhookHTTPError(WebhookDeliveryError):
    def __init__(self, status_code: int, reason: str = "", response: Any = None):
        self.status_code = status_code
        self.response = response
        super().__init__(f"HTTP {status_code}: {reason}".rstrip(": "))


class WebhookTimeoutError(WebhookDeliveryError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Webhook request timed out after {timeout:g}s")


class WebhookTransportError(WebhookDeliveryError):
    """DNS, connect, reset and other network-level failures."""


# ── Data containers ───────────────────────────────────────────────────────


@dataclass
class WebhookConfig:
    url: str
    secret: str | None = None
    timeout: float = 30.0
    retry_attempts: int = 3
    retry_delay: float = 1.0
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, url: str, secret: str | None = None, headers: dict[str, str] | None = None) -> "WebhookConfig":
        settings = get_settings()
        return cls(
            url=url,
            secret=secret,
            timeout=settings.webhook_timeout_seconds,
            retry_attempts=settings.webhook_retry_attempts,
            retry_delay=settings.webhook_retry_delay_seconds,
            headers=dict(headers or {}),
        )


@dataclass
class WebhookMessage:
    url: str
    payload: dict[str, Any]
    shop_id: uuid.UUID
    product_id: uuid.UUID | None = None
    product_title: str | None = None
    alert_type: str | None = None
    alert_id: uuid.UUID | None = None
    secret: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class WebhookResult:
    success: bool
    status_code: int | None = None
    response: Any = None
    error: str | None = None
    retry_count: int = 0
    duration: float = 0.0
    transport_error: bool = False

    @property
    def log_status(self) -> str:
        if self.success:
            return STATUS_SENT
        return STATUS_ERROR if self.transport_error else STATUS_FAILED


# ── Signing ───────────────────────────────────────────────────────────────


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    expected = sign_payload(body, secret)
    return hmac.compare_digest(expected, signature or "")


def _parse_response(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


# ── Transport ─────────────────────────────────────────────────────────────


class WebhookTransport:
    def __init__(
        self,
        config: WebhookConfig,
        delivery_log: DeliveryLog | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        chunk_size: int | None = None,
    ):
        self.config = config
        self.delivery_log = delivery_log or DeliveryLog()
        self._client = client
        self._sleep = sleep
        self.chunk_size = chunk_size or get_settings().webhook_bulk_chunk_size

    @asynccontextmanager
    async def _client_session(self):
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient() as client:
            yield client

    def build_headers(self, message: WebhookMessage, body: bytes) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": get_settings().webhook_user_agent,
            **self.config.headers,
            **message.headers,
        }
        secret = message.secret or self.config.secret
        if secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, secret)
        return headers

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.retry_attempts)),
            wait=wait_exponential(multiplier=self.config.retry_delay, exp_base=2, min=0),
            retry=retry_if_exception_type(WebhookDeliveryError),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    @staticmethod
    def _log_retry(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "webhook.attempt_failed",
            attempt=retry_state.attempt_number,
            next_delay=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(exc),
        )

    async def _perform_request(self, client: httpx.AsyncClient, message: WebhookMessage, body: bytes) -> WebhookResult:
        headers = self.build_headers(message, body)
        try:
            response = await asyncio.wait_for(
                client.post(message.url, content=body, headers=headers, timeout=self.config.timeout),
                timeout=self.config.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise WebhookTimeoutError(self.config.timeout) from exc
        except httpx.HTTPError as exc:
            raise WebhookTransportError(str(exc) or exc.__class__.__name__) from exc

        data = _parse_response(response)
        if not response.is_success:
            raise WebhookHTTPError(response.status_code, response.reason_phrase, data)
        return WebhookResult(success=True, status_code=response.status_code, response=data)

    async def send(self, message: WebhookMessage) -> WebhookResult:
        started = time.monotonic()
        body = encode_payload(message.payload)
        signed = bool(message.secret or self.config.secret)
        record = DeliveryRecord(
            shop_id=message.shop_id,
            channel="Webhook",
            recipient=message.url,
            message=body.decode("utf-8"),
            product_id=message.product_id,
            product_title=message.product_title,
            alert_type=message.alert_type,
            alert_id=message.alert_id,
        )
        delivery_id = await self.delivery_log.pending(
            record, DeliveryMetadata(payload_size=len(body), has_signature=signed)
        )

        attempts = 0
        try:
            async with self._client_session() as client:
                async for attempt in self._retrying():
                    with attempt:
                        attempts += 1
                        result = await self._perform_request(client, message, body)
        except WebhookHTTPError as exc:
            result = WebhookResult(success=False, status_code=exc.status_code, response=exc.response, error=str(exc))
        except WebhookDeliveryError as exc:
            result = WebhookResult(success=False, error=str(exc), transport_error=True)

        result.retry_count = max(attempts - 1, 0)
        result.duration = time.monotonic() - started

        await self.delivery_log.complete(
            delivery_id,
            record,
            result.log_status,
            error=result.error,
            retry_count=result.retry_count,
            metadata=DeliveryMetadata(
                payload_size=len(body),
                has_signature=signed,
                status_code=result.status_code,
                attempts=attempts,
                duration_ms=int(result.duration * 1000),
                extra={"url": message.url},
            ),
        )
        logger.info(
            "webhook.sent" if result.success else "webhook.failed",
            url=message.url,
            status_code=result.status_code,
            attempts=attempts,
            error=result.error,
        )
        return result

    async def bulk_send(self, messages: list[WebhookMessage]) -> list[WebhookResult]:
        """Send in chunks; at most `chunk_size` requests are in flight."""
        results: list[WebhookResult] = []
        for start in range(0, len(messages), self.chunk_size):
            chunk = messages[start : start + self.chunk_size]
            results.extend(await asyncio.gather(*(self.send(m) for m in chunk)))
        return results


# ── Payload builders ──────────────────────────────────────────────────────


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_payload(
    event: str,
    shop_id: uuid.UUID | str,
    shop_domain: str,
    product: dict[str, Any],
    alert: dict[str, Any] | None = None,
    inventory: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "event": event,
        "shop": {"id": str(shop_id), "domain": shop_domain},
        "product": product,
        "timestamp": _now_iso(),
    }
    if alert is not None:
        payload["alert"] = alert
    if inventory is not None:
        payload["inventory"] = inventory
    if metadata:
        payload["metadata"] = metadata
    return payload


def payload_severity(severity: str) -> str:
    """Map alert severity onto the three-level webhook vocabulary."""
    if severity in ("CRITICAL", "HIGH"):
        return "high"
    if severity == "MEDIUM":
        return "medium"
    return "low"


def create_inventory_alert_webhook(
    url: str,
    shop_id: uuid.UUID,
    shop_domain: str,
    product_id: uuid.UUID,
    product_title: str,
    current_quantity: int,
    threshold: int,
    alert_id: uuid.UUID,
    secret: str | None = None,
) -> WebhookMessage:
    return WebhookMessage(
        url=url,
        shop_id=shop_id,
        product_id=product_id,
        product_title=product_title,
        alert_type="LOW_STOCK",
        alert_id=alert_id,
        secret=secret,
        payload=build_payload(
            "inventory.low_stock",
            shop_id,
            shop_domain,
            {"id": str(product_id), "title": product_title, "currentQuantity": current_quantity, "threshold": threshold},
            alert={
                "id": str(alert_id),
                "type": "LOW_STOCK",
                "severity": "medium",
                "message": f"{product_title} is running low on stock. Current: {current_quantity}, Threshold: {threshold}",
            },
        ),
    )


def create_out_of_stock_webhook(
    url: str,
    shop_id: uuid.UUID,
    shop_domain: str,
    product_id: uuid.UUID,
    product_title: str,
    alert_id: uuid.UUID,
    secret: str | None = None,
) -> WebhookMessage:
    return WebhookMessage(
        url=url,
        shop_id=shop_id,
        product_id=product_id,
        product_title=product_title,
        alert_type="OUT_OF_STOCK",
        alert_id=alert_id,
        secret=secret,
        payload=build_payload(
            "inventory.out_of_stock",
            shop_id,
            shop_domain,
            {"id": str(product_id), "title": product_title, "currentQuantity": 0},
            alert={
                "id": str(alert_id),
                "type": "OUT_OF_STOCK",
                "severity": "high",
                "message": f"{product_title} is completely out of stock",
            },
        ),
    )


def create_inventory_update_webhook(
    url: str,
    shop_id: uuid.UUID,
    shop_domain: str,
    product_id: uuid.UUID,
    product_title: str,
    previous_quantity: int,
    new_quantity: int,
    change_reason: str,
    secret: str | None = None,
) -> WebhookMessage:
    return WebhookMessage(
        url=url,
        shop_id=shop_id,
        product_id=product_id,
        product_title=product_title,
        alert_type="INVENTORY_UPDATE",
        secret=secret,
        payload=build_payload(
            "inventory.updated",
            shop_id,
            shop_domain,
            {"id": str(product_id), "title": product_title, "currentQuantity": new_quantity},
            inventory={
                "previousQuantity": previous_quantity,
                "newQuantity": new_quantity,
                "changeReason": change_reason,
            },
        ),
    )


def create_high_demand_webhook(
    url: str,
    shop_id: uuid.UUID,
    shop_domain: str,
    product_id: uuid.UUID,
    product_title: str,
    sales_velocity: float,
    current_quantity: int,
    alert_id: uuid.UUID,
    secret: str | None = None,
) -> WebhookMessage:
    metadata: dict[str, Any] = {"salesVelocity": sales_velocity}
    if sales_velocity > 0:
        metadata["estimatedStockoutDays"] = current_quantity / sales_velocity
    return WebhookMessage(
        url=url,
        shop_id=shop_id,
        product_id=product_id,
        product_title=product_title,
        alert_type="HIGH_DEMAND",
        alert_id=alert_id,
        secret=secret,
        payload=build_payload(
            "inventory.high_demand",
            shop_id,
            shop_domain,
            {"id": str(product_id), "title": product_title, "currentQuantity": current_quantity},
            alert={
                "id": str(alert_id),
                "type": "HIGH_DEMAND",
                "severity": "low",
                "message": f"{product_title} is experiencing high demand. Sales velocity: {sales_velocity:.1f} units/day",
            },
            metadata=metadata,
        ),
    )
