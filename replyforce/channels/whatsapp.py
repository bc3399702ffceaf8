"""WhatsApp Cloud API channel adapter."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from ..agents.schemas import Channel, ContentType
from ..conversations.models import NormalizedMessage
from .base import ChannelAdapter, timestamp_from_millis, verify_hub_signature

_MEDIA_TYPES = {
    "image": ContentType.IMAGE,
    "video": ContentType.VIDEO,
    "audio": ContentType.AUDIO,
    "document": ContentType.FILE,
}


class WhatsAppAdapter(ChannelAdapter):
    channel = Channel.WHATSAPP

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        secret: str | None,
    ) -> bool:
        return verify_hub_signature(body, headers, secret)

    def parse_incoming(self, payload: Mapping[str, Any]) -> Iterable[NormalizedMessage]:
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                if change.get("field") != "messages":
                    continue
                value = change.get("value") or {}
                phone_number_id = (value.get("metadata") or {}).get("phone_number_id", "")
                contacts = {c.get("wa_id"): c for c in value.get("contacts") or []}
                for message in value.get("messages") or []:
                    if not message.get("id"):
                        continue
                    sender_id = str(message.get("from") or "")
                    message_type = message.get("type", "text")
                    media = message.get(message_type) if message_type in _MEDIA_TYPES else None
                    media = media or {}
                    text = (
                        (message.get("text") or {}).get("body")
                        or media.get("caption")
                        or message.get("caption")
                        or ""
                    )
                    try:
                        sent_millis: Any = int(message.get("timestamp")) * 1000
                    except (TypeError, ValueError):
                        sent_millis = None
                    profile = (contacts.get(sender_id) or {}).get("profile") or {}
                    yield NormalizedMessage(
                        channel=self.channel,
                        platform_message_id=str(message["id"]),
                        sender_id=sender_id,
                        recipient_id=str(phone_number_id),
                        text=text,
                        content_type=_MEDIA_TYPES.get(message_type, ContentType.TEXT),
                        media_url=media.get("id"),
                        sender_name=profile.get("name"),
                        sent_at=timestamp_from_millis(sent_millis),
                        raw=dict(message),
                    )

    def build_outgoing_payload(self, recipient_id: str, text: str) -> dict[str, Any]:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": recipient_id,
            "type": "text",
            "text": {"body": text},
        }
