"""Base abstractions for channel adapters."""

from __future__ import annotations

import hashlib
import hmac
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from ..agents.schemas import Channel
from ..conversations.models import NormalizedMessage

SIGNATURE_HEADER = "X-Hub-Signature-256"


def header_value(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup for plain mappings."""

    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def verify_hub_signature(body: bytes, headers: Mapping[str, str], secret: str | None) -> bool:
    """Check a Meta ``X-Hub-Signature-256`` header; no secret means no check."""

    if not secret:
        return True
    received = header_value(headers, SIGNATURE_HEADER)
    if not received:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(received, f"sha256={digest}")


def timestamp_from_millis(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return datetime.now(timezone.utc)


class ChannelAdapter(ABC):
    """Channel-specific parsing, verification and outbound payload shaping."""

    channel: Channel

    @abstractmethod
    def parse_incoming(self, payload: Mapping[str, Any]) -> Iterable[NormalizedMessage]:
        """Convert a webhook payload into normalized messages, skipping non-message events."""

    def verify_signature(
        self,
        body: bytes,
        headers: Mapping[str, str],
        secret: str | None,
    ) -> bool:
        """Validate authenticity of the webhook payload.

        The default implementation accepts everything.
        """

        return True

    @abstractmethod
    def build_outgoing_payload(self, recipient_id: str, text: str) -> dict[str, Any]:
        """Shape a text reply for the platform's send API."""
