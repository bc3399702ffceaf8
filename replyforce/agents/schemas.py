"""Pydantic data model for the message decision pipeline.

Every object here is an immutable value: a ``PipelineInput`` is built fresh for
each inbound event and the result objects are created once per cycle, then
handed to the ingestion coordinator for persistence. Numeric fields are
clamped on construction so downstream consumers never see out-of-range
scores, confidences or risk values.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Channel(str, Enum):
    FACEBOOK = "FACEBOOK"
    INSTAGRAM = "INSTAGRAM"
    WHATSAPP = "WHATSAPP"
    TWITTER = "TWITTER"


class ContentType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"
    AUDIO = "AUDIO"
    FILE = "FILE"


class TurnRole(str, Enum):
    CONTACT = "contact"
    AUTOMATED_REPLY = "automated-reply"
    HUMAN_AGENT = "human-agent"


class Topic(str, Enum):
    PRICING = "pricing"
    SUPPORT = "support"
    COMPLAINT = "complaint"
    INQUIRY = "inquiry"
    FEEDBACK = "feedback"
    GREETING = "greeting"
    OTHER = "other"


class EntityKind(str, Enum):
    PRODUCT = "product"
    PERSON = "person"
    COMPANY = "company"
    LOCATION = "location"
    PRICE = "price"
    DATE = "date"


class SentimentLabel(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"
    MIXED = "mixed"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LeadTag(str, Enum):
    HOT = "HOT"
    WARM = "WARM"
    COLD = "COLD"

    @classmethod
    def for_score(cls, score: int) -> LeadTag:
        if score >= 70:
            return cls.HOT
        if score >= 40:
            return cls.WARM
        return cls.COLD


class PipelineState(str, Enum):
    START = "start"
    BLOCKED = "blocked"
    PARALLEL_ANALYSIS = "parallel_analysis"
    SCORED = "scored"
    ESCALATED = "escalated"
    GENERATED = "generated"
    GUARDED_OUTPUT = "guarded_output"
    COMPLETED = "completed"


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class _Value(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Pipeline input


class ConversationTurn(_Value):
    role: TurnRole
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BrandVoice(_Value):
    """Tenant persona parameters injected into reply generation."""

    company_name: str
    tone: str = "professional"
    style: str = "helpful"
    guidelines: str | None = None
    knowledge_base: str | None = None
    max_reply_length: int = 500
    use_emojis: bool = False
    language: str = "en"


class LeadSnapshot(_Value):
    """Latest persisted lead state, resolved by the caller before a cycle."""

    id: str | None = None
    tag: LeadTag
    score: int
    signals: tuple[str, ...] = ()


class PipelineInput(_Value):
    message_id: str | None = None
    tenant_id: str | None = None
    conversation_id: str | None = None
    channel: Channel
    text: str
    content_type: ContentType = ContentType.TEXT
    media_url: str | None = None
    sender_id: str
    sender_name: str | None = None
    history: tuple[ConversationTurn, ...] = ()
    brand_voice: BrandVoice
    prior_lead: LeadSnapshot | None = None

    def customer_turns(self) -> list[ConversationTurn]:
        return [turn for turn in self.history if turn.role == TurnRole.CONTACT]


# ---------------------------------------------------------------------------
# Stage results


class Entity(_Value):
    kind: EntityKind
    value: str


class ClassificationResult(_Value):
    language: str = "en"
    entities: tuple[Entity, ...] = ()
    topic: Topic = Topic.OTHER
    is_question: bool = False
    summary: str = ""
    key_phrases: tuple[str, ...] = ()

    @field_validator("topic", mode="before")
    @classmethod
    def _coerce_topic(cls, value: Any) -> Any:
        if isinstance(value, Topic):
            return value
        try:
            return Topic(str(value).strip().lower())
        except ValueError:
            return Topic.OTHER

    @field_validator("summary", mode="before")
    @classmethod
    def _cap_summary(cls, value: Any) -> str:
        return str(value or "")[:200]

    @field_validator("entities", mode="after")
    @classmethod
    def _cap_entities(cls, value: tuple[Entity, ...]) -> tuple[Entity, ...]:
        return value[:5]

    @field_validator("key_phrases", mode="before")
    @classmethod
    def _cap_key_phrases(cls, value: Any) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple)):
            return ()
        return tuple(str(item) for item in value[:5])


class SentimentResult(_Value):
    sentiment: SentimentLabel = SentimentLabel.NEUTRAL
    score: float = 0.0
    urgency: Urgency = Urgency.LOW
    emotions: tuple[str, ...] = ("neutral",)

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> float:
        return clamp(float(value), -1.0, 1.0)

    @field_validator("emotions", mode="before")
    @classmethod
    def _non_empty_emotions(cls, value: Any) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple)):
            return ("neutral",)
        emotions = tuple(str(item) for item in value if str(item).strip())
        return emotions or ("neutral",)


class LeadScore(_Value):
    intent: str = "unknown"
    confidence: float = 0.5
    score: int = 0
    tag: LeadTag = LeadTag.COLD
    signals: tuple[str, ...] = ()
    recommended_action: str = "monitor"

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        return clamp(float(value), 0.0, 1.0)

    @field_validator("score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> int:
        return int(clamp(int(value), 0, 100))

    @model_validator(mode="after")
    def _tag_matches_score(self) -> LeadScore:
        if self.tag != LeadTag.for_score(self.score):
            raise ValueError(f"tag {self.tag.value} does not match score {self.score}")
        return self


class GuardrailVerdict(_Value):
    passed: bool = True
    flags: tuple[str, ...] = ()
    risk_score: float = 0.0
    blocked_reason: str | None = None

    @field_validator("risk_score", mode="before")
    @classmethod
    def _clamp_risk(cls, value: Any) -> float:
        return clamp(float(value), 0.0, 1.0)


class ReplyResult(_Value):
    text: str = ""
    confidence: float = 0.0
    requires_human: bool = False
    suggested_actions: tuple[str, ...] = ()
    tokens_used: int = 0
    #: Low-confidence generated text kept for human review; never delivered.
    draft: str | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        return clamp(float(value), 0.0, 1.0)

    @field_validator("tokens_used", mode="before")
    @classmethod
    def _non_negative_tokens(cls, value: Any) -> int:
        return max(0, int(value or 0))


class PipelineOutput(_Value):
    """Everything one decision cycle produced; persisted and broadcast as a unit."""

    state: PipelineState
    guardrail_input: GuardrailVerdict
    classification: ClassificationResult
    sentiment: SentimentResult
    lead_score: LeadScore
    reply: ReplyResult
    guardrail_output: GuardrailVerdict
    processing_time_ms: float = 0.0
    tokens_used: int = 0
    escalation_reason: str | None = None
    trail: tuple[PipelineState, ...] = ()

    def analysis(self) -> dict[str, Any]:
        """Return the JSON-ready analysis blob stored alongside the message."""

        return {
            "classification": self.classification.model_dump(mode="json"),
            "sentiment": self.sentiment.model_dump(mode="json"),
            "lead_score": self.lead_score.model_dump(mode="json"),
            "guardrail": self.guardrail_input.model_dump(mode="json"),
            "state": self.state.value,
            "trail": [step.value for step in self.trail],
        }
