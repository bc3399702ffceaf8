"""Conversation state and inbound message ingestion."""

from . import schemas
from .models import (
    ChannelAccount,
    Contact,
    Conversation,
    ConversationStatus,
    NormalizedMessage,
    TokenBudget,
)

__all__ = [
    "ChannelAccount",
    "Contact",
    "Conversation",
    "ConversationStatus",
    "NormalizedMessage",
    "TokenBudget",
    "schemas",
]
