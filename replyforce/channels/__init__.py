"""Channel dispatch table keyed by :class:`~replyforce.agents.schemas.Channel`."""

from __future__ import annotations

from ..agents.schemas import Channel
from .base import ChannelAdapter
from .meta import MessengerAdapter
from .twitter import TwitterAdapter
from .whatsapp import WhatsAppAdapter

_ADAPTERS: dict[Channel, ChannelAdapter] = {
    Channel.FACEBOOK: MessengerAdapter(Channel.FACEBOOK),
    Channel.INSTAGRAM: MessengerAdapter(Channel.INSTAGRAM),
    Channel.WHATSAPP: WhatsAppAdapter(),
    Channel.TWITTER: TwitterAdapter(),
}


def parse_channel(name: str | Channel) -> Channel:
    """Resolve a route or config name (any case) to a channel or raise ``KeyError``."""

    if isinstance(name, Channel):
        return name
    try:
        return Channel(str(name).upper())
    except ValueError:
        raise KeyError(f"Channel '{name}' is not configured") from None


def get_adapter(name: str | Channel) -> ChannelAdapter:
    """Retrieve the adapter for ``name`` or raise ``KeyError``."""

    return _ADAPTERS[parse_channel(name)]


__all__ = ["ChannelAdapter", "get_adapter", "parse_channel"]
