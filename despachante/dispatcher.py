"""
Outbound replies through the Z-API gateway.

ReplyDispatcher owns the per-phone cooldown state. It is created once at
startup and handed to the routes and the background pipeline.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from despachante.errors import GatewayError
from despachante.metrics import record_reply_outcome
from despachante.utils import normalize_phone, preview

logger = logging.getLogger(__name__)

STATUS_SENT = "sent"
STATUS_COOLDOWN = "cooldown"
STATUS_GATEWAY_ERROR = "gateway_error"
STATUS_DISABLED = "disabled"


@dataclass
class SendResult:
    """Outcome of a send attempt, returned to API callers as-is."""
    status: str
    phone: str
    remaining_seconds: int = 0
    gateway_message_id: Optional[str] = None
    http_status: Optional[int] = None
    error: Optional[str] = None
    details: Optional[Any] = None

    @property
    def sent(self) -> bool:
        return self.status == STATUS_SENT

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "sent": self.sent,
            "phone": self.phone,
            "remaining_seconds": self.remaining_seconds,
            "gateway_message_id": self.gateway_message_id,
            "http_status": self.http_status,
            "error": self.error,
            "details": self.details,
        }


class ZApiClient:
    """Thin client for the gateway's send-text API."""

    def __init__(self, base_url: str, client_token: str, http: httpx.AsyncClient, timeout: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.client_token = client_token
        self.http = http
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def send_text(self, phone: str, message: str) -> dict:
        """
        Send a text message.

        Args:
            phone: Normalized destination phone
            message: Message body

        Returns:
            Decoded gateway response body

        Raises:
            GatewayError: gateway not configured, non-2xx response or network failure
        """
        if not self.configured:
            raise GatewayError("gateway not configured")

        headers = {"Content-Type": "application/json"}
        if self.client_token:
            headers["Client-Token"] = self.client_token

        try:
            response = await self.http.post(
                f"{self.base_url}/send-text",
                json={"phone": phone, "message": message},
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.error(f"Gateway request failed: {e}")
            raise GatewayError(str(e) or type(e).__name__, status=0)

        try:
            data = response.json()
        except ValueError:
            data = response.text

        if response.is_error:
            detail = data.get("message") if isinstance(data, dict) else None
            raise GatewayError(
                detail or f"gateway returned HTTP {response.status_code}",
                status=response.status_code,
                details=data,
            )

        logger.info(f"Gateway accepted message for {phone}: HTTP {response.status_code}")
        return data if isinstance(data, dict) else {"raw": data}


@dataclass
class ReplyDispatcher:
    """
    Cooldown-gated sender.

    The cooldown check and the timestamp update for a phone happen under that
    phone's lock, so near-simultaneous sends to the same number are
    serialized and the second one sees the first one's timestamp.
    """
    gateway: ZApiClient
    cooldown_seconds: float = 30.0
    enabled: bool = False
    clock: Callable[[], float] = time.monotonic
    _last_sent: dict = field(default_factory=dict, repr=False)
    _locks: dict = field(default_factory=dict, repr=False)
    _in_flight: dict = field(default_factory=dict, repr=False)

    def _lock_for(self, phone: str) -> asyncio.Lock:
        lock = self._locks.get(phone)
        if lock is None:
            lock = self._locks[phone] = asyncio.Lock()
        return lock

    def _prune(self) -> None:
        """Forget phones whose window has expired and that have no send in flight."""
        now = self.clock()
        for phone, last in list(self._last_sent.items()):
            if now - last >= self.cooldown_seconds:
                del self._last_sent[phone]
        for phone in list(self._locks):
            if phone not in self._last_sent and not self._in_flight.get(phone):
                del self._locks[phone]

    def remaining_cooldown(self, phone: str) -> int:
        """Whole seconds left before phone can receive another reply, 0 if none."""
        last = self._last_sent.get(normalize_phone(phone))
        if last is None:
            return 0
        remaining = self.cooldown_seconds - (self.clock() - last)
        return math.ceil(remaining) if remaining > 0 else 0

    async def send(self, phone: str, text: str) -> SendResult:
        """
        Send text to phone unless the phone is cooling down.

        Only a successful send starts a new cooldown window.
        """
        normalized = normalize_phone(phone)
        self._prune()

        self._in_flight[normalized] = self._in_flight.get(normalized, 0) + 1
        try:
            return await self._send_serialized(normalized, text)
        finally:
            self._in_flight[normalized] -= 1
            if not self._in_flight[normalized]:
                del self._in_flight[normalized]

    async def _send_serialized(self, normalized: str, text: str) -> SendResult:
        async with self._lock_for(normalized):
            last = self._last_sent.get(normalized)
            if last is not None:
                elapsed = self.clock() - last
                if elapsed < self.cooldown_seconds:
                    remaining = max(1, math.ceil(self.cooldown_seconds - elapsed))
                    logger.info(f"Cooldown active for {normalized}: {remaining}s remaining")
                    record_reply_outcome(STATUS_COOLDOWN)
                    return SendResult(
                        status=STATUS_COOLDOWN,
                        phone=normalized,
                        remaining_seconds=remaining,
                        error=f"cooldown active, wait {remaining} seconds",
                    )

            logger.info(f"Sending reply to {normalized}: {preview(text)}")
            try:
                data = await self.gateway.send_text(normalized, text)
            except GatewayError as e:
                logger.error(f"Reply to {normalized} failed: {e.message}")
                record_reply_outcome(STATUS_GATEWAY_ERROR)
                return SendResult(
                    status=STATUS_GATEWAY_ERROR,
                    phone=normalized,
                    http_status=e.status,
                    error=e.message,
                    details=e.details,
                )

            self._last_sent[normalized] = self.clock()

        record_reply_outcome(STATUS_SENT)
        return SendResult(
            status=STATUS_SENT,
            phone=normalized,
            gateway_message_id=data.get("messageId") or data.get("id"),
            details=data,
        )

    async def auto_reply(self, phone: str, text: str) -> SendResult:
        """Automatic reply after an inbound message; a no-op unless enabled."""
        if not self.enabled:
            record_reply_outcome(STATUS_DISABLED)
            return SendResult(status=STATUS_DISABLED, phone=phone, error="automatic replies disabled")
        return await self.send(phone, text)
