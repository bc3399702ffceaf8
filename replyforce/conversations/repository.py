"""Storage protocols for conversation state and an in-memory implementation."""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from ..agents.schemas import BrandVoice, Channel, ContentType, LeadScore, TurnRole
from .models import (
    ChannelAccount,
    Contact,
    Conversation,
    ConversationStatus,
    Lead,
    JobProgress,
    StoredMessage,
    TokenBudget,
)


class ConversationRepository(Protocol):
    """Resolve and persist the state surrounding one inbound message."""

    def find_channel_account(self, channel: Channel, page_id: str) -> ChannelAccount | None: ...

    def get_or_create_contact(
        self, tenant_id: str, channel: Channel, platform_id: str, name: str | None = None
    ) -> Contact: ...

    def get_or_create_open_conversation(
        self, tenant_id: str, contact_id: str, channel_account_id: str
    ) -> Conversation: ...

    def get_conversation(self, conversation_id: str) -> Conversation: ...

    def recent_turns(self, conversation_id: str, limit: int) -> list[StoredMessage]: ...

    def latest_lead(self, tenant_id: str, contact_id: str) -> Lead | None: ...

    def add_message(
        self,
        conversation_id: str,
        role: TurnRole,
        content: str,
        *,
        platform_message_id: str | None = None,
        content_type: ContentType = ContentType.TEXT,
        media_url: str | None = None,
    ) -> StoredMessage: ...

    def annotate_message(
        self, message_id: str, analysis: Mapping[str, Any], ai_confidence: float
    ) -> None: ...

    def upsert_lead(self, tenant_id: str, contact_id: str, score: LeadScore) -> Lead: ...

    def touch_conversation(
        self,
        conversation_id: str,
        *,
        lead_id: str | None,
        last_message_at: datetime,
        preview: str,
        status: ConversationStatus,
        increment: int = 1,
    ) -> Conversation: ...

    def increment_message_count(self, conversation_id: str, amount: int = 1) -> None: ...

    def get_token_budget(self, tenant_id: str) -> TokenBudget: ...

    def increment_token_usage(self, tenant_id: str, tokens: int) -> TokenBudget: ...

    def get_job_progress(self, key: str) -> JobProgress | None: ...

    def save_job_progress(self, progress: JobProgress) -> None: ...

    def clear_job_progress(self, key: str) -> None: ...


class BrandConfigurationProvider(Protocol):
    def brand_voice(self, tenant_id: str, company_name: str) -> BrandVoice: ...


class StaticBrandConfigurationProvider:
    """Brand voice from a per-tenant mapping, with fallbacks for unknown tenants."""

    def __init__(self, voices: Mapping[str, BrandVoice] | None = None) -> None:
        self._voices = dict(voices or {})

    def brand_voice(self, tenant_id: str, company_name: str) -> BrandVoice:
        voice = self._voices.get(tenant_id)
        if voice is not None:
            return voice
        return BrandVoice(company_name=company_name)


def _new_id() -> str:
    return uuid.uuid4().hex


class InMemoryConversationRepository:
    """Process-local :class:`ConversationRepository` used by tests and local runs."""

    def __init__(self, *, default_daily_token_limit: int = 100_000) -> None:
        self.channel_accounts: dict[tuple[Channel, str], ChannelAccount] = {}
        self.contacts: dict[str, Contact] = {}
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, StoredMessage] = {}
        self.leads: dict[str, Lead] = {}
        self.budgets: dict[str, TokenBudget] = {}
        self.job_progress: dict[str, JobProgress] = {}
        self._default_daily_token_limit = default_daily_token_limit

    # Setup ---------------------------------------------------------------
    def add_channel_account(self, account: ChannelAccount) -> ChannelAccount:
        self.channel_accounts[(account.channel, account.page_id)] = account
        return account

    def set_token_budget(self, tenant_id: str, budget: TokenBudget) -> None:
        self.budgets[tenant_id] = budget

    def load_channel_accounts(self, path: str | Path) -> list[ChannelAccount]:
        """Register channel accounts from a JSON list of account objects.

        Each object needs ``tenant_id``, ``channel``, ``page_id`` and
        ``company_name``; ``id`` defaults to ``{channel}:{page_id}``.
        """

        with Path(path).open("r", encoding="utf-8") as fh:
            entries = json.load(fh)
        accounts = []
        for entry in entries:
            channel = Channel(str(entry["channel"]).upper())
            accounts.append(
                self.add_channel_account(
                    ChannelAccount(
                        id=entry.get("id") or f"{channel.value}:{entry['page_id']}",
                        tenant_id=entry["tenant_id"],
                        channel=channel,
                        page_id=str(entry["page_id"]),
                        company_name=entry["company_name"],
                        auto_reply_enabled=entry.get("auto_reply_enabled", True),
                        access_token=entry.get("access_token"),
                    )
                )
            )
        return accounts

    # Resolution ----------------------------------------------------------
    def find_channel_account(self, channel: Channel, page_id: str) -> ChannelAccount | None:
        return self.channel_accounts.get((channel, page_id))

    def get_or_create_contact(
        self, tenant_id: str, channel: Channel, platform_id: str, name: str | None = None
    ) -> Contact:
        for contact in self.contacts.values():
            if (
                contact.tenant_id == tenant_id
                and contact.channel == channel
                and contact.platform_id == platform_id
            ):
                if name and not contact.name:
                    contact.name = name
                return contact
        contact = Contact(
            id=_new_id(), tenant_id=tenant_id, channel=channel, platform_id=platform_id, name=name
        )
        self.contacts[contact.id] = contact
        return contact

    def get_or_create_open_conversation(
        self, tenant_id: str, contact_id: str, channel_account_id: str
    ) -> Conversation:
        active = (ConversationStatus.OPEN, ConversationStatus.NEEDS_HUMAN)
        for conversation in self.conversations.values():
            if (
                conversation.contact_id == contact_id
                and conversation.channel_account_id == channel_account_id
                and conversation.status in active
            ):
                return conversation
        conversation = Conversation(
            id=_new_id(),
            tenant_id=tenant_id,
            contact_id=contact_id,
            channel_account_id=channel_account_id,
        )
        self.conversations[conversation.id] = conversation
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        return self.conversations[conversation_id]

    def recent_turns(self, conversation_id: str, limit: int) -> list[StoredMessage]:
        turns = [m for m in self.messages.values() if m.conversation_id == conversation_id]
        turns.sort(key=lambda m: m.created_at)
        return turns[-limit:] if limit > 0 else []

    def latest_lead(self, tenant_id: str, contact_id: str) -> Lead | None:
        candidates = [
            lead
            for lead in self.leads.values()
            if lead.tenant_id == tenant_id and lead.contact_id == contact_id
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda lead: lead.updated_at)

    # Writes --------------------------------------------------------------
    def add_message(
        self,
        conversation_id: str,
        role: TurnRole,
        content: str,
        *,
        platform_message_id: str | None = None,
        content_type: ContentType = ContentType.TEXT,
        media_url: str | None = None,
    ) -> StoredMessage:
        """Store a turn.

        A platform message id already stored in the conversation returns the
        existing turn, so a retried job never duplicates the inbound message.
        """

        if platform_message_id is not None:
            for existing in self.messages.values():
                if (
                    existing.conversation_id == conversation_id
                    and existing.platform_message_id == platform_message_id
                ):
                    return existing
        message = StoredMessage(
            id=_new_id(),
            conversation_id=conversation_id,
            role=role,
            content=content,
            platform_message_id=platform_message_id,
            content_type=content_type,
            media_url=media_url,
        )
        self.messages[message.id] = message
        return message

    def annotate_message(
        self, message_id: str, analysis: Mapping[str, Any], ai_confidence: float
    ) -> None:
        message = self.messages[message_id]
        message.analysis = dict(analysis)
        message.ai_confidence = ai_confidence

    def upsert_lead(self, tenant_id: str, contact_id: str, score: LeadScore) -> Lead:
        lead = self.latest_lead(tenant_id, contact_id)
        now = datetime.now(timezone.utc)
        if lead is None:
            lead = Lead(id=_new_id(), tenant_id=tenant_id, contact_id=contact_id, tag=score.tag, score=score.score)
            self.leads[lead.id] = lead
        lead.tag = score.tag
        lead.score = score.score
        lead.intent = score.intent
        lead.signals = list(score.signals)
        lead.updated_at = now
        return lead

    def touch_conversation(
        self,
        conversation_id: str,
        *,
        lead_id: str | None,
        last_message_at: datetime,
        preview: str,
        status: ConversationStatus,
        increment: int = 1,
    ) -> Conversation:
        conversation = self.conversations[conversation_id]
        if lead_id is not None:
            conversation.lead_id = lead_id
        conversation.last_message_at = last_message_at
        conversation.preview = preview
        conversation.status = status
        conversation.message_count += increment
        return conversation

    def increment_message_count(self, conversation_id: str, amount: int = 1) -> None:
        self.conversations[conversation_id].message_count += amount

    # Token budget --------------------------------------------------------
    def get_token_budget(self, tenant_id: str) -> TokenBudget:
        return self.budgets.get(tenant_id) or TokenBudget(daily_limit=self._default_daily_token_limit)

    def increment_token_usage(self, tenant_id: str, tokens: int) -> TokenBudget:
        current = self.get_token_budget(tenant_id)
        updated = replace(
            current,
            daily_used=current.daily_used + tokens,
            monthly_used=current.monthly_used + tokens,
        )
        self.budgets[tenant_id] = updated
        return updated

    # Job progress --------------------------------------------------------
    def get_job_progress(self, key: str) -> JobProgress | None:
        return self.job_progress.get(key)

    def save_job_progress(self, progress: JobProgress) -> None:
        self.job_progress[progress.key] = progress

    def clear_job_progress(self, key: str) -> None:
        self.job_progress.pop(key, None)
