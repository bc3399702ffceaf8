"""Domain models used by the ingestion coordinator and its stores."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..agents.schemas import (
    Channel,
    ContentType,
    LeadSnapshot,
    LeadTag,
    PipelineInput,
    PipelineOutput,
    TurnRole,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStatus(str, Enum):
    OPEN = "OPEN"
    NEEDS_HUMAN = "NEEDS_HUMAN"
    CLOSED = "CLOSED"


@dataclass
class NormalizedMessage:
    """Uniform representation of an inbound platform message."""

    channel: Channel
    platform_message_id: str
    sender_id: str
    recipient_id: str
    text: str
    content_type: ContentType = ContentType.TEXT
    media_url: str | None = None
    sender_name: str | None = None
    sent_at: datetime = field(default_factory=_utcnow)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def dedup_key(self) -> str:
        return f"dedup:{self.channel.value}:{self.platform_message_id}"

    @property
    def job_id(self) -> str:
        return f"msg-{self.channel.value}-{self.platform_message_id}"


@dataclass
class ChannelAccount:
    """A connected page or number; resolved by ``(channel, page_id)``."""

    id: str
    tenant_id: str
    channel: Channel
    page_id: str
    company_name: str
    auto_reply_enabled: bool = True
    access_token: str | None = None


@dataclass
class Contact:
    id: str
    tenant_id: str
    channel: Channel
    platform_id: str
    name: str | None = None


@dataclass
class Conversation:
    id: str
    tenant_id: str
    contact_id: str
    channel_account_id: str
    status: ConversationStatus = ConversationStatus.OPEN
    lead_id: str | None = None
    last_message_at: datetime | None = None
    preview: str = ""
    message_count: int = 0


@dataclass
class StoredMessage:
    id: str
    conversation_id: str
    role: TurnRole
    content: str
    platform_message_id: str | None = None
    content_type: ContentType = ContentType.TEXT
    media_url: str | None = None
    analysis: dict[str, Any] = field(default_factory=dict)
    ai_confidence: float | None = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Lead:
    id: str
    tenant_id: str
    contact_id: str
    tag: LeadTag
    score: int
    intent: str = "unknown"
    signals: list[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=_utcnow)

    def snapshot(self) -> LeadSnapshot:
        return LeadSnapshot(id=self.id, tag=self.tag, score=self.score, signals=tuple(self.signals))


@dataclass(frozen=True)
class TokenBudget:
    """Per-tenant token allowance passed into and returned from ingestion."""

    daily_limit: int
    daily_used: int = 0
    monthly_used: int = 0
    hard_cap: bool = False

    @property
    def exhausted(self) -> bool:
        return self.daily_used >= self.daily_limit

    @property
    def templates_only(self) -> bool:
        return self.hard_cap and self.exhausted


@dataclass
class JobProgress:
    """Ingestion steps already completed for one job, keyed by its dedup key.

    A retried job resumes after the last recorded stage instead of storing the
    message, blending the lead or queueing the reply a second time.
    """

    key: str
    message_id: str | None = None
    conversation_id: str | None = None
    data: PipelineInput | None = None
    output: PipelineOutput | None = None
    stages: set[str] = field(default_factory=set)

    def done(self, stage: str) -> bool:
        return stage in self.stages
