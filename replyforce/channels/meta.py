"""Messenger-style adapters for Facebook pages and Instagram business accounts."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from ..agents.schemas import Channel, ContentType
from ..conversations.models import NormalizedMessage
from .base import ChannelAdapter, timestamp_from_millis, verify_hub_signature

_ATTACHMENT_TYPES = {"image": ContentType.IMAGE, "video": ContentType.VIDEO}


class MessengerAdapter(ChannelAdapter):
    objects = frozenset({"page", "instagram"})

    def __init__(self, channel: Channel) -> None:
        self.channel = channel

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        secret: str | None,
    ) -> bool:
        return verify_hub_signature(body, headers, secret)

    def parse_incoming(self, payload: Mapping[str, Any]) -> Iterable[NormalizedMessage]:
        if payload.get("object") not in self.objects:
            return
        for entry in payload.get("entry") or []:
            for event in entry.get("messaging") or []:
                message = event.get("message")
                # Read receipts, deliveries and typing indicators carry no message.
                if not message or not message.get("mid"):
                    continue
                attachment = (message.get("attachments") or [{}])[0] or {}
                yield NormalizedMessage(
                    channel=self.channel,
                    platform_message_id=str(message["mid"]),
                    sender_id=str((event.get("sender") or {}).get("id", "")),
                    recipient_id=str((event.get("recipient") or {}).get("id", "")),
                    text=message.get("text") or "",
                    content_type=_ATTACHMENT_TYPES.get(attachment.get("type"), ContentType.TEXT),
                    media_url=(attachment.get("payload") or {}).get("url"),
                    sent_at=timestamp_from_millis(event.get("timestamp")),
                    raw=dict(event),
                )

    def build_outgoing_payload(self, recipient_id: str, text: str) -> dict[str, Any]:
        return {
            "recipient": {"id": recipient_id},
            "message": {"text": text},
            "messaging_type": "RESPONSE",
        }
