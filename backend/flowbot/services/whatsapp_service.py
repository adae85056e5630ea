# /flowbot/services/whatsapp_service.py

import re
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
import tenacity

from flowbot.config.settings import Settings
from flowbot.utils.circuit_breaker import CircuitBreaker
from flowbot.utils.errors import ProviderError, UpstreamTimeoutError
from flowbot.utils.metrics import outbound_messages_counter

logger = logging.getLogger(__name__)

MAX_REPLY_BUTTONS = 3
MAX_BUTTON_TITLE = 20
MAX_LIST_ROWS = 10
MAX_TEXT_BODY = 4096
MAX_CAPTION = 1024
MEDIA_TYPES = ("image", "video", "audio", "document")


@dataclass
class SendResult:
    delivered: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


# ==================== Message builders ====================
# Each builder returns the type-specific part of a Cloud API message; the
# service adds the envelope (messaging_product, recipient).

def build_text(body: str) -> Dict[str, Any]:
    return {"type": "text", "text": {"body": body[:MAX_TEXT_BODY]}}


def build_media(media_type: str, url: str, caption: str = "") -> Dict[str, Any]:
    media_type = (media_type or "image").lower()
    if media_type not in MEDIA_TYPES:
        media_type = "image"
    media: Dict[str, Any] = {"link": url}
    # WhatsApp rejects captions on audio
    if caption and media_type != "audio":
        media["caption"] = caption[:MAX_CAPTION]
    return {"type": media_type, media_type: media}


def _header_footer(interactive: Dict[str, Any], header: Optional[str], footer: Optional[str]) -> Dict[str, Any]:
    if header:
        interactive["header"] = {"type": "text", "text": header}
    if footer:
        interactive["footer"] = {"text": footer}
    return interactive


def build_buttons(body: str, buttons: List[Dict[str, Any]], header: Optional[str] = None, footer: Optional[str] = None) -> Dict[str, Any]:
    """Reply buttons: at most three, titles capped at 20 characters."""
    interactive = {
        "type": "button",
        "body": {"text": body},
        "action": {
            "buttons": [
                {
                    "type": "reply",
                    "reply": {
                        "id": str(btn.get("id") or f"btn_{idx}"),
                        "title": str(btn.get("text") or btn.get("title") or f"Button {idx + 1}")[:MAX_BUTTON_TITLE],
                    },
                }
                for idx, btn in enumerate(buttons[:MAX_REPLY_BUTTONS])
            ]
        },
    }
    return {"type": "interactive", "interactive": _header_footer(interactive, header, footer)}


def build_list(body: str, button_text: str, sections: List[Dict[str, Any]], header: Optional[str] = None, footer: Optional[str] = None) -> Dict[str, Any]:
    """List message; rows beyond the first ten (across all sections) are dropped."""
    remaining = MAX_LIST_ROWS
    out_sections = []
    for s_idx, section in enumerate(sections):
        rows = []
        for r_idx, row in enumerate(section.get("rows") or []):
            if remaining <= 0:
                break
            item = {
                "id": str(row.get("id") or f"row_{s_idx}_{r_idx}"),
                "title": str(row.get("title") or row.get("text") or f"Option {r_idx + 1}")[:24],
            }
            if row.get("description"):
                item["description"] = str(row["description"])[:72]
            rows.append(item)
            remaining -= 1
        if rows:
            out_sections.append({"title": str(section.get("title") or f"Section {s_idx + 1}")[:24], "rows": rows})

    interactive = {
        "type": "list",
        "body": {"text": body},
        "action": {"button": button_text[:MAX_BUTTON_TITLE], "sections": out_sections},
    }
    return {"type": "interactive", "interactive": _header_footer(interactive, header, footer)}


def build_cta_url(body: str, display_text: str, url: str, header: Optional[str] = None, footer: Optional[str] = None) -> Dict[str, Any]:
    interactive = {
        "type": "cta_url",
        "body": {"text": body},
        "action": {"name": "cta_url", "parameters": {"display_text": display_text[:MAX_BUTTON_TITLE], "url": url}},
    }
    return {"type": "interactive", "interactive": _header_footer(interactive, header, footer)}


def build_template(name: str, language_code: str = "en_US", components: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    template: Dict[str, Any] = {"name": name, "language": {"code": language_code or "en_US"}}
    if components:
        template["components"] = components
    return {"type": "template", "template": template}


def build_location(latitude: float, longitude: float, name: str = "", address: str = "") -> Dict[str, Any]:
    location: Dict[str, Any] = {"latitude": latitude, "longitude": longitude}
    if name:
        location["name"] = name
    if address:
        location["address"] = address
    return {"type": "location", "location": location}


def build_request_location(body: str) -> Dict[str, Any]:
    return {
        "type": "interactive",
        "interactive": {"type": "location_request_message", "body": {"text": body}, "action": {"name": "send_location"}},
    }


def build_flow(body: str, flow_id: str, flow_cta: str, flow_token: str = "unused", header: Optional[str] = None,
               footer: Optional[str] = None, screen: Optional[str] = None, flow_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    parameters: Dict[str, Any] = {
        "flow_message_version": "3",
        "flow_token": flow_token,
        "flow_id": flow_id,
        "flow_cta": flow_cta[:MAX_BUTTON_TITLE],
        "flow_action": "navigate" if screen else "data_exchange",
    }
    if screen:
        parameters["flow_action_payload"] = {"screen": screen, "data": flow_data or {}}
    interactive = {"type": "flow", "body": {"text": body}, "action": {"name": "flow", "parameters": parameters}}
    return {"type": "interactive", "interactive": _header_footer(interactive, header, footer)}


def build_product(catalog_id: str, product_retailer_id: str, body: str = "", footer: Optional[str] = None) -> Dict[str, Any]:
    interactive: Dict[str, Any] = {
        "type": "product",
        "action": {"catalog_id": catalog_id, "product_retailer_id": product_retailer_id},
    }
    if body:
        interactive["body"] = {"text": body}
    return {"type": "interactive", "interactive": _header_footer(interactive, None, footer)}


# ==================== Service ====================

class WhatsAppService:
    """Outbound messaging collaborator backed by the WhatsApp Cloud API."""

    def __init__(self, access_token: Optional[str], phone_id: Optional[str], api_version: str = "v18.0"):
        self.access_token = access_token
        self.phone_id = phone_id
        self.http_client = httpx.AsyncClient(timeout=15.0)
        self.base_url = f"https://graph.facebook.com/{api_version}"
        self.circuit_breaker = CircuitBreaker("whatsapp")

    @classmethod
    def from_settings(cls, settings: Settings) -> "WhatsAppService":
        return cls(settings.whatsapp_access_token, settings.whatsapp_phone_id, settings.whatsapp_api_version)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    @staticmethod
    def normalize_address(address: str) -> str:
        return re.sub(r"[^\d+]", "", address or "")

    async def send(self, address: str, content: Dict[str, Any]) -> SendResult:
        """
        Sends one message built by the module-level builders.

        Returns:
            SendResult with delivered=False for missing credentials or a
            non-2xx answer from the API.

        Raises:
            UpstreamTimeoutError: The API did not answer after retries.
            ProviderError: Transport failure after retries, or open circuit.
        """
        message_type = content.get("type", "unknown")
        to_phone = self.normalize_address(address)
        if not self.access_token or not self.phone_id:
            logger.error("WhatsApp credentials not configured; message not sent.")
            outbound_messages_counter.labels(message_type=message_type, status="not_configured").inc()
            return SendResult(delivered=False, error="whatsapp_not_configured")
        if not to_phone:
            logger.error(f"send_whatsapp_request_invalid_phone: {address}")
            return SendResult(delivered=False, error="invalid_recipient")

        payload = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": to_phone, **content}
        url = f"{self.base_url}/{self.phone_id}/messages"
        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

        try:
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            outbound_messages_counter.labels(message_type=message_type, status="timeout").inc()
            raise UpstreamTimeoutError(f"WhatsApp API timed out: {e}") from e
        except httpx.RequestError as e:
            outbound_messages_counter.labels(message_type=message_type, status="error").inc()
            raise ProviderError(f"WhatsApp API request failed: {e}") from e

        if response.status_code == 200:
            message_id = (response.json().get("messages") or [{}])[0].get("id")
            logger.info(f"WhatsApp {message_type} sent to {to_phone}, wamid: {message_id}")
            outbound_messages_counter.labels(message_type=message_type, status="sent").inc()
            return SendResult(delivered=True, provider_message_id=message_id)

        try:
            error_message = (response.json().get("error") or {}).get("message", "Unknown error")
        except ValueError:
            error_message = response.text
        logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
        outbound_messages_counter.labels(message_type=message_type, status="failed").inc()
        return SendResult(delivered=False, error=f"{response.status_code}: {error_message}")

    async def close(self):
        await self.http_client.aclose()
