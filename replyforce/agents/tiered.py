"""Two-tier resolution: deterministic first, generative on demand, fallback on failure."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)

DETERMINISTIC = "deterministic"
GENERATIVE = "generative"
FALLBACK = "fallback"


@dataclass(frozen=True)
class Tiered(Generic[T]):
    value: T
    source: str
    error: Exception | None = None


async def resolve_tiered(
    *,
    stage: str,
    escalate: Callable[[], Awaitable[T]],
    fallback: Callable[[], T],
    fast: Callable[[], tuple[T, float] | None] | None = None,
    threshold: float = 0.7,
) -> Tiered[T]:
    """Resolve a stage value through up to three tiers.

    ``fast`` is a cheap deterministic producer returning ``(value, confidence)``
    or ``None`` when it has nothing to offer. Its value is used as is when the
    confidence is strictly above ``threshold``. Otherwise ``escalate`` is
    awaited; any exception it raises is logged and ``fallback`` supplies the
    value. Cancellation is not intercepted.
    """

    if fast is not None:
        candidate = fast()
        if candidate is not None:
            value, confidence = candidate
            if confidence > threshold:
                return Tiered(value, DETERMINISTIC)
    try:
        return Tiered(await escalate(), GENERATIVE)
    except Exception as exc:
        logger.warning("%s: generative tier failed (%s: %s); using fallback", stage, type(exc).__name__, exc)
        return Tiered(fallback(), FALLBACK, exc)
