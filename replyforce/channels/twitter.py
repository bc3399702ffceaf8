"""Twitter (X) direct message adapter."""

from __future__ import annotations

import base64
import hashlib
import hmac
from collections.abc import Iterable, Mapping
from typing import Any

from ..agents.schemas import Channel, ContentType
from ..conversations.models import NormalizedMessage
from .base import ChannelAdapter, header_value, timestamp_from_millis

SIGNATURE_HEADER = "X-Twitter-Webhooks-Signature"


def _signed(secret: str, data: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    return "sha256=" + base64.b64encode(digest).decode("ascii")


def crc_response(crc_token: str, secret: str) -> dict[str, str]:
    """Answer a Challenge-Response Check with the token signed by the API secret."""

    return {"response_token": _signed(secret, crc_token.encode("utf-8"))}


class TwitterAdapter(ChannelAdapter):
    channel = Channel.TWITTER

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        secret: str | None,
    ) -> bool:
        """Check ``X-Twitter-Webhooks-Signature`` (base64 HMAC-SHA256 of the body)."""

        if not secret:
            return True
        received = header_value(headers, SIGNATURE_HEADER)
        if not received:
            return False
        return hmac.compare_digest(received, _signed(secret, body))

    def parse_incoming(self, payload: Mapping[str, Any]) -> Iterable[NormalizedMessage]:
        for event in payload.get("direct_message_events") or []:
            if event.get("type") != "message_create" or not event.get("id"):
                continue
            create = event.get("message_create") or {}
            data = create.get("message_data") or {}
            attachment = data.get("attachment") or {}
            is_media = attachment.get("type") == "media"
            yield NormalizedMessage(
                channel=self.channel,
                platform_message_id=str(event["id"]),
                sender_id=str(create.get("sender_id", "")),
                recipient_id=str((create.get("target") or {}).get("recipient_id", "")),
                text=data.get("text") or "",
                content_type=ContentType.IMAGE if is_media else ContentType.TEXT,
                media_url=(attachment.get("media") or {}).get("media_url_https") if is_media else None,
                sent_at=timestamp_from_millis(event.get("created_timestamp")),
                raw=dict(event),
            )

    def build_outgoing_payload(self, recipient_id: str, text: str) -> dict[str, Any]:
        return {
            "event": {
                "type": "message_create",
                "message_create": {
                    "target": {"recipient_id": recipient_id},
                    "message_data": {"text": text},
                },
            }
        }
