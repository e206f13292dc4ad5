"""
WhatsApp Transport — WhatsApp Business Cloud API integration.

Provides:
- Outbound: free-form text or approved template, per-device phone_number_id
- Error mapping from Graph API responses to the delivery error taxonomy
- Webhook verification (hub.verify_token challenge)
- Inbound: text, interactive (button_reply, list_reply), media captions, location
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from config.settings import WhatsAppConfig, get_settings
from models.schemas import InboundMessage
from channels.base import (
    OutboundTransport, TransientDeliveryError, RateLimitedError,
    PermanentDeliveryError, DeviceUnavailableError,
)

logger = structlog.get_logger()

# Graph API error codes that mean "slow down" even when the HTTP status is 400
_RATE_LIMIT_CODES = {4, 80007, 130429, 131048, 131056}
# Access token expired / revoked
_AUTH_CODES = {190}


class WhatsAppCloudTransport(OutboundTransport):
    """
    Sends through the WhatsApp Business Cloud API.

    Each device maps to a phone_number_id. Payload shapes:
      {"text": "..."}                                            free-form text
      {"template": "name", "language": "en", "components": []}   approved template
    """

    def __init__(self, config: WhatsAppConfig = None, client: httpx.AsyncClient = None):
        self.config = config or get_settings().whatsapp
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self.config.api_base_url}/{self.config.api_version}",
                headers={"Authorization": f"Bearer {self.config.access_token}"},
                timeout=self.config.timeout_seconds,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    # ── Send ──────────────────────────────────────────────────

    @staticmethod
    def build_body(recipient: str, payload: dict[str, Any]) -> dict[str, Any]:
        body: dict[str, Any] = {"messaging_product": "whatsapp", "to": recipient}
        if payload.get("template"):
            body["type"] = "template"
            body["template"] = {
                "name": payload["template"],
                "language": {"code": payload.get("language", "en")},
                "components": payload.get("components", []),
            }
        elif payload.get("text"):
            body["type"] = "text"
            body["text"] = {"body": payload["text"], "preview_url": bool(payload.get("preview_url"))}
        else:
            raise PermanentDeliveryError("Payload has neither 'text' nor 'template'", code="bad_payload")
        return body

    async def send(self, device_id: str, recipient: str, payload: dict[str, Any]) -> str:
        phone_number_id = self.config.phone_number_ids.get(device_id)
        if not phone_number_id:
            raise DeviceUnavailableError(f"No phone_number_id configured for device {device_id}", device_id)

        body = self.build_body(recipient, payload)
        try:
            response = await self._get_client().post(f"/{phone_number_id}/messages", json=body)
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Timeout sending to {recipient}: {e}", device_id, code="timeout")
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"Network error sending to {recipient}: {e}", device_id, code="network")

        if response.status_code >= 400:
            raise self._map_error(device_id, response)

        data = response.json()
        messages = data.get("messages") or []
        if not messages or not messages[0].get("id"):
            raise TransientDeliveryError("Send acknowledged without a message id", device_id, code="no_message_id")

        message_id = messages[0]["id"]
        logger.info("whatsapp_message_sent", device_id=device_id, to=recipient, message_id=message_id)
        return message_id

    @staticmethod
    def _map_error(device_id: str, response: httpx.Response) -> Exception:
        try:
            error = response.json().get("error", {})
        except ValueError:
            error = {}
        code = error.get("code")
        message = error.get("message") or response.text[:200] or f"HTTP {response.status_code}"
        status = response.status_code

        logger.warning("whatsapp_send_rejected", device_id=device_id, status=status, code=code, error=message)

        if status == 429 or code in _RATE_LIMIT_CODES:
            retry_after = response.headers.get("retry-after")
            return RateLimitedError(device_id, float(retry_after) if retry_after else None)
        if status in (401, 403) or code in _AUTH_CODES:
            return DeviceUnavailableError(message, device_id, code=str(code or status))
        if status >= 500:
            return TransientDeliveryError(message, device_id, code=str(code or status))
        return PermanentDeliveryError(message, device_id, code=str(code or status))

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self.config.verify_token and token == self.config.verify_token:
            return challenge
        return None

    # ── Inbound parsing ───────────────────────────────────────

    def parse_inbound(self, device_id: str, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        """Parse a Cloud API webhook payload into inbound messages (status updates are skipped)."""
        inbound: list[InboundMessage] = []

        for entry in raw_payload.get("entry", []) or []:
            for change in entry.get("changes", []) or []:
                value = change.get("value", {}) or {}
                names = {
                    c.get("wa_id", ""): c.get("profile", {}).get("name", "")
                    for c in value.get("contacts", []) or []
                }
                for msg in value.get("messages", []) or []:
                    sender = msg.get("from", "")
                    if not sender:
                        continue
                    inbound.append(InboundMessage(
                        device_id=device_id,
                        sender_id=sender,
                        text=self._extract_text(msg),
                        timestamp=self._parse_timestamp(msg.get("timestamp")),
                        message_id=msg.get("id") or None,
                        sender_name=names.get(sender, ""),
                    ))

        return inbound

    @staticmethod
    def _extract_text(msg: dict[str, Any]) -> str:
        msg_type = msg.get("type", "text")

        if msg_type == "text":
            return msg.get("text", {}).get("body", "")

        if msg_type == "interactive":
            interactive = msg.get("interactive", {})
            reply = interactive.get(interactive.get("type", ""), {})
            return reply.get("title", "")

        if msg_type == "button":
            return msg.get("button", {}).get("text", "")

        if msg_type in ("image", "video", "document"):
            media = msg.get(msg_type, {})
            return media.get("caption") or media.get("filename") or f"[{msg_type.capitalize()}]"

        if msg_type == "location":
            loc = msg.get("location", {})
            return f"Location: {loc.get('latitude', 0)}, {loc.get('longitude', 0)}"

        if msg_type == "audio":
            return "[Voice message]"

        return f"[{msg_type}]"

    @staticmethod
    def _parse_timestamp(value: Any) -> datetime:
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (TypeError, ValueError):
            return datetime.now(timezone.utc)
