"""Webhook dispatcher for wa-hub instance events.

Every state transition and every qualifying engine event of an instance is
reported to that instance's webhook URL as a JSON envelope:

    {"event": "...", "instanceId": "...", "data": {...}, "timestamp": "..."}

The body is signed with HMAC-SHA256 over the exact bytes sent, in the
``x-wa-hub-signature`` header. Dispatch is fire-and-forget: emitting an event
schedules a background delivery and returns immediately, so a slow or dead
receiver can never stall a state transition. Delivery retries a bounded
number of times with exponential backoff and then gives up with an error log.

Example:
    delivery = WebhookDelivery(secret="s3cret", retry_count=2)
    dispatcher = WebhookDispatcher(delivery)
    dispatcher.emit(
        "tenant-1",
        WebhookTarget(url="https://example.com/hook"),
        WebhookEvent.state_changed,
        {"from": "syncing", "to": "active"},
    )
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from wahub.clock import Clock, SystemClock
from wahub.config import WebhookConfig

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-wa-hub-signature"
PROTECTION_BYPASS_HEADER = "x-vercel-protection-bypass"


class WebhookEvent(str, Enum):
    """Types of webhook events emitted for an instance."""

    state_changed = "state_changed"
    qr = "qr"
    authenticated = "authenticated"
    ready = "ready"
    disconnected = "disconnected"
    auth_failure = "auth_failure"
    change_state = "change_state"
    message = "message"
    vote_update = "vote_update"
    ready_timeout = "ready_timeout"
    qr_timeout = "qr_timeout"
    restore_failed = "restore_failed"
    zombie_suspected = "zombie_suspected"
    deleted = "deleted"


@dataclass
class WebhookTarget:
    """Per-instance webhook destination.

    Attributes:
        url: Receiver URL.
        events: Event names to deliver; empty means every event.
    """

    url: str
    events: list[str] = field(default_factory=list)

    def accepts(self, event: WebhookEvent) -> bool:
        """Return True if ``event`` passes this target's filter."""
        return not self.events or event.value in self.events


class WebhookEnvelope(BaseModel):
    """JSON body POSTed to a webhook receiver.

    Attributes:
        event: The type of event being delivered.
        instance_id: Instance the event belongs to (``instanceId`` on the wire).
        data: Event-specific data payload.
        timestamp: ISO 8601 timestamp of the event.
    """

    model_config = ConfigDict(populate_by_name=True)

    event: WebhookEvent
    instance_id: str = Field(..., alias="instanceId")
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str


class WebhookDelivery:
    """Delivers signed envelopes over HTTP with bounded retries.

    Args:
        secret: Shared secret for the signature header (unsigned if None).
        auth_token: Optional bearer token.
        protection_bypass: Optional deployment-protection bypass value.
        retry_count: Retries after the first attempt.
        timeout_seconds: Request timeout.
        sleep: Coroutine used between retries.
    """

    def __init__(
        self,
        secret: str | None = None,
        auth_token: str | None = None,
        protection_bypass: str | None = None,
        retry_count: int = 2,
        timeout_seconds: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.secret = secret
        self.auth_token = auth_token
        self.protection_bypass = protection_bypass
        self.retry_count = retry_count
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None
        self.logger = logger.bind(component="webhook_delivery")

    @classmethod
    def from_config(cls, config: WebhookConfig) -> WebhookDelivery:
        return cls(
            secret=config.secret,
            auth_token=config.auth_token,
            protection_bypass=config.protection_bypass,
            retry_count=config.retry_count,
            timeout_seconds=config.timeout_seconds,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self) -> None:
        """Close the pooled HTTP client, if one was opened."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def sign(self, body: str) -> str:
        """Hex HMAC-SHA256 of ``body`` under the configured secret.

        Raises:
            ValueError: If no secret is configured.
        """
        if not self.secret:
            raise ValueError("Cannot sign webhook body without a secret")
        return hmac.new(
            self.secret.encode(),
            body.encode(),
            hashlib.sha256,
        ).hexdigest()

    def build_headers(self, envelope: WebhookEnvelope, body: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "X-WaHub-Event": envelope.event.value,
            "X-WaHub-Timestamp": envelope.timestamp,
        }
        if self.secret:
            headers[SIGNATURE_HEADER] = self.sign(body)
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        if self.protection_bypass:
            headers[PROTECTION_BYPASS_HEADER] = self.protection_bypass
        return headers

    async def deliver(self, url: str, envelope: WebhookEnvelope) -> bool:
        """POST ``envelope`` to ``url`` with retries.

        Returns:
            True if any attempt got a 2xx response, False otherwise.
        """
        body = envelope.model_dump_json(by_alias=True)
        headers = self.build_headers(envelope, body)
        client = await self._get_client()
        last_error: Exception | None = None

        for attempt in range(self.retry_count + 1):
            try:
                response = await client.post(
                    url,
                    content=body,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
                if response.is_success:
                    self.logger.debug(
                        "webhook_delivered",
                        url=url,
                        event_type=envelope.event.value,
                        instance_id=envelope.instance_id,
                        status_code=response.status_code,
                        attempt=attempt + 1,
                    )
                    return True

                self.logger.warning(
                    "webhook_non_success_status",
                    url=url,
                    event_type=envelope.event.value,
                    status_code=response.status_code,
                    attempt=attempt + 1,
                )
                last_error = httpx.HTTPStatusError(
                    f"HTTP {response.status_code}",
                    request=response.request,
                    response=response,
                )

            except httpx.TimeoutException as e:
                last_error = e
                self.logger.warning(
                    "webhook_delivery_timeout",
                    url=url,
                    event_type=envelope.event.value,
                    attempt=attempt + 1,
                    error=str(e),
                )

            except httpx.RequestError as e:
                last_error = e
                self.logger.warning(
                    "webhook_delivery_error",
                    url=url,
                    event_type=envelope.event.value,
                    attempt=attempt + 1,
                    error=str(e),
                )

            # Exponential backoff before retry (1s, 2s, 4s, ...)
            if attempt < self.retry_count:
                await self._sleep(2**attempt)

        self.logger.error(
            "webhook_delivery_failed",
            url=url,
            event_type=envelope.event.value,
            instance_id=envelope.instance_id,
            retry_count=self.retry_count,
            error=str(last_error),
        )
        return False


class WebhookDispatcher:
    """Fire-and-forget fan-out of instance events.

    Args:
        delivery: Delivery collaborator performing the HTTP POST.
        clock: Time source for envelope timestamps.
    """

    def __init__(self, delivery: WebhookDelivery, clock: Clock | None = None) -> None:
        self.delivery = delivery
        self.clock = clock or SystemClock()
        self._pending: set[asyncio.Task[bool]] = set()
        self.logger = logger.bind(component="webhook_dispatcher")

    @property
    def pending(self) -> int:
        """Number of deliveries still in flight."""
        return len(self._pending)

    def emit(
        self,
        instance_id: str,
        target: WebhookTarget | None,
        event: WebhookEvent,
        data: dict[str, Any] | None = None,
    ) -> asyncio.Task[bool] | None:
        """Schedule delivery of one event without waiting for it.

        Returns:
            The background delivery task, or None if the event was filtered
            out or the instance has no webhook configured.
        """
        if target is None or not target.url:
            return None
        if not target.accepts(event):
            self.logger.debug(
                "webhook_filtered",
                instance_id=instance_id,
                event_type=event.value,
            )
            return None

        envelope = WebhookEnvelope(
            event=event,
            instance_id=instance_id,
            data=data or {},
            timestamp=utc_isoformat(self.clock.now()),
        )
        task = asyncio.create_task(self._deliver(target.url, envelope))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def send(
        self,
        instance_id: str,
        target: WebhookTarget | None,
        event: WebhookEvent,
        data: dict[str, Any] | None = None,
    ) -> bool:
        """Deliver one event and wait for the outcome.

        Used where the caller must know whether delivery succeeded, such as
        flushing buffered inbound events. Filtered events and instances
        without a webhook count as delivered.
        """
        if target is None or not target.url or not target.accepts(event):
            return True
        envelope = WebhookEnvelope(
            event=event,
            instance_id=instance_id,
            data=data or {},
            timestamp=utc_isoformat(self.clock.now()),
        )
        return await self._deliver(target.url, envelope)

    async def _deliver(self, url: str, envelope: WebhookEnvelope) -> bool:
        try:
            return await self.delivery.deliver(url, envelope)
        except Exception as e:
            self.logger.error(
                "webhook_dispatch_crashed",
                url=url,
                event_type=envelope.event.value,
                instance_id=envelope.instance_id,
                error=str(e),
                exc_info=True,
            )
            return False

    async def drain(self) -> None:
        """Wait for all in-flight deliveries to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        """Finish in-flight deliveries and release the HTTP client."""
        await self.drain()
        await self.delivery.close()


def utc_isoformat(when: datetime) -> str:
    """Render ``when`` as an ISO 8601 UTC string."""
    return when.astimezone(timezone.utc).isoformat()
