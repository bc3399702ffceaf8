"""Pydantic payloads exchanged over the ingestion, delivery and realtime queues."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..agents.schemas import Channel, ContentType, LeadTag, PipelineOutput
from .models import NormalizedMessage, TokenBudget


class InboundMessageJob(BaseModel):
    job_id: str
    channel: Channel
    platform_message_id: str
    sender_id: str
    recipient_id: str
    text: str = ""
    content_type: ContentType = ContentType.TEXT
    media_url: str | None = None
    sender_name: str | None = None
    sent_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 0

    @classmethod
    def from_message(cls, message: NormalizedMessage) -> InboundMessageJob:
        return cls(
            job_id=message.job_id,
            channel=message.channel,
            platform_message_id=message.platform_message_id,
            sender_id=message.sender_id,
            recipient_id=message.recipient_id,
            text=message.text,
            content_type=message.content_type,
            media_url=message.media_url,
            sender_name=message.sender_name,
            sent_at=message.sent_at,
        )

    @property
    def dedup_key(self) -> str:
        return f"dedup:{self.channel.value}:{self.platform_message_id}"


class IngestionStatus(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class IngestionResult(BaseModel):
    status: IngestionStatus
    job_id: str
    message_id: str | None = None
    conversation_id: str | None = None
    output: PipelineOutput | None = None
    auto_replied: bool = False
    budget: TokenBudget | None = None


class DeliveryRequest(BaseModel):
    channel: Channel
    recipient_id: str
    text: str
    page_id: str
    tenant_id: str
    conversation_id: str
    payload: dict[str, Any] = Field(default_factory=dict)


class RealtimeEvent(BaseModel):
    event: str = "message.new"
    tenant_id: str
    conversation_id: str
    message_id: str
    contact_name: str | None = None
    preview: str = ""
    channel: Channel
    lead_tag: LeadTag
    auto_replied: bool = False
