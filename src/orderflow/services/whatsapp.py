"""Outbound channel adapter for the WhatsApp Cloud API.

Two operations, ``send_text`` and ``send_choices`` (interactive reply
buttons). Neither raises on delivery problems: an unconfigured channel
returns ``DeliveryResult(ok=False, configured=False)`` and HTTP/network
failures return ``ok=False`` with the error text, so the orchestrator can
treat "not delivered" as a normal outcome and record it.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from src.orderflow.config import Settings, get_settings
from src.orderflow.core.logging import mask_phone
from src.orderflow.core.monitoring import outbound_messages_total

logger = structlog.get_logger(__name__)

NOT_CONFIGURED = "whatsapp_noop_env_missing"

# Cloud API limits for interactive reply buttons
MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_BODY_TEXT = 1024


@dataclass(frozen=True)
class Choice:
    """One reply button: a stable id and a display title."""

    id: str
    title: str


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one send attempt."""

    ok: bool
    id: str | None = None
    error: str | None = None
    configured: bool = True

    @property
    def noop(self) -> bool:
        return not self.configured


class WhatsAppChannel:
    """Async client for the WhatsApp Cloud API ``/messages`` endpoint.

    Args:
        token: Bearer access token. Empty means not configured.
        phone_id: Sender phone number id. Empty means not configured.
        api_version: Graph API version segment (default v20.0).
        timeout: Per-request timeout in seconds.
        enabled: Global kill switch; False behaves like missing credentials.
        transport: Optional httpx transport (tests inject MockTransport).
    """

    BASE_URL = "https://graph.facebook.com"

    def __init__(
        self,
        token: str,
        phone_id: str,
        api_version: str = "v20.0",
        timeout: float = 15.0,
        enabled: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = token.strip()
        self._phone_id = phone_id.strip()
        self._api_version = api_version
        self._timeout = timeout
        self._enabled = enabled
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> WhatsAppChannel:
        settings = settings or get_settings()
        return cls(
            token=settings.WHATSAPP_TOKEN,
            phone_id=settings.WHATSAPP_PHONE_ID,
            api_version=settings.WHATSAPP_API_VERSION,
            timeout=settings.WHATSAPP_TIMEOUT,
            enabled=settings.WHATSAPP_ENABLED,
        )

    @property
    def configured(self) -> bool:
        return bool(self._enabled and self._token and self._phone_id)

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with auth headers and timeout."""
        return httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
            transport=self._transport,
        )

    @property
    def _messages_url(self) -> str:
        return f"{self.BASE_URL}/{self._api_version}/{self._phone_id}/messages"

    async def send_text(self, to: str, body: str) -> DeliveryResult:
        """Send a plain text message (link previews disabled)."""
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"preview_url": False, "body": body},
        }
        return await self._post("text", to, payload)

    async def send_choices(self, to: str, title: str, choices: list[Choice]) -> DeliveryResult:
        """Send an interactive message with up to three reply buttons."""
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "interactive",
            "interactive": {
                "type": "button",
                "body": {"text": title[:MAX_BODY_TEXT]},
                "action": {
                    "buttons": [
                        {
                            "type": "reply",
                            "reply": {"id": c.id, "title": c.title[:MAX_BUTTON_TITLE]},
                        }
                        for c in choices[:MAX_BUTTONS]
                    ],
                },
            },
        }
        return await self._post("choices", to, payload)

    async def _post(self, kind: str, to: str, payload: dict) -> DeliveryResult:
        if not self.configured:
            outbound_messages_total.labels(kind=kind, result="noop").inc()
            logger.info("whatsapp_noop_unconfigured", kind=kind, to=mask_phone(to))
            return DeliveryResult(ok=False, error=NOT_CONFIGURED, configured=False)

        try:
            async with self._client() as client:
                response = await client.post(self._messages_url, json=payload)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            outbound_messages_total.labels(kind=kind, result="failed").inc()
            logger.warning(
                "whatsapp_send_failed",
                kind=kind,
                to=mask_phone(to),
                error=str(exc),
            )
            return DeliveryResult(ok=False, error=str(exc) or type(exc).__name__)

        messages = data.get("messages") or [{}]
        message_id = messages[0].get("id")
        outbound_messages_total.labels(kind=kind, result="sent").inc()
        logger.info("whatsapp_sent", kind=kind, to=mask_phone(to), message_id=message_id)
        return DeliveryResult(ok=True, id=message_id)
