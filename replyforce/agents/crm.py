"""CRM/audit payload produced after each decision cycle.

The payload is handed to the CRM sink; field mapping for a specific CRM is
done downstream.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from .schemas import Channel, LeadTag, PipelineInput, PipelineOutput, SentimentLabel


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True)


class CrmContact(_Payload):
    name: str
    platform_id: str
    channel: Channel


class CrmLead(_Payload):
    tag: LeadTag
    score: int
    intent: str
    signals: tuple[str, ...] = ()


class CrmConversation(_Payload):
    id: str | None
    summary: str
    message_count: int
    sentiment: SentimentLabel
    last_activity: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CrmMetadata(_Payload):
    ai_confidence: float
    processing_time_ms: float
    auto_replied: bool


class CrmPayload(_Payload):
    tenant_id: str | None = None
    contact: CrmContact
    lead: CrmLead
    conversation: CrmConversation
    metadata: CrmMetadata


def summarize_conversation(data: PipelineInput, output: PipelineOutput) -> str:
    """Render the multi-line note attached to the CRM record."""

    sentiment = output.sentiment
    lead = output.lead_score
    status = (
        "Status: Escalated to human agent"
        if output.reply.requires_human
        else "Status: Auto-replied by AI"
    )
    parts = [
        f"Channel: {data.channel.value}",
        f"Topic: {output.classification.topic.value}",
        f"Sentiment: {sentiment.sentiment.value} ({sentiment.urgency.value} urgency)",
        f"Lead Score: {lead.score}/100 ({lead.tag.value})",
        f"Intent: {lead.intent}",
        f'Last Message: "{data.text[:200]}"',
        status,
    ]
    if lead.signals:
        parts.append(f"Signals: {', '.join(lead.signals)}")
    return "\n".join(parts)


def build_crm_payload(
    data: PipelineInput,
    output: PipelineOutput,
    *,
    message_count: int | None = None,
) -> CrmPayload:
    return CrmPayload(
        tenant_id=data.tenant_id,
        contact=CrmContact(
            name=data.sender_name or "Unknown",
            platform_id=data.sender_id,
            channel=data.channel,
        ),
        lead=CrmLead(
            tag=output.lead_score.tag,
            score=output.lead_score.score,
            intent=output.lead_score.intent,
            signals=output.lead_score.signals,
        ),
        conversation=CrmConversation(
            id=data.conversation_id,
            summary=summarize_conversation(data, output),
            message_count=message_count if message_count is not None else len(data.history) + 1,
            sentiment=output.sentiment.sentiment,
        ),
        metadata=CrmMetadata(
            ai_confidence=output.reply.confidence,
            processing_time_ms=output.processing_time_ms,
            auto_replied=not output.reply.requires_human,
        ),
    )
