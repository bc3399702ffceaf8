"""Two-tier sentiment estimation: lexicon scoring first, generative call when unsure."""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import ValidationError

from ..config import PipelineSettings
from .prompts import PromptTemplateStore
from .providers import GenerationRequest, GenerativeCallService, MalformedResponseError
from .responses import ResponseParameterStore
from .schemas import PipelineInput, SentimentLabel, SentimentResult, Urgency
from .tiered import resolve_tiered

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = 0.7

POSITIVE_WORDS = frozenset(
    {
        "great", "amazing", "awesome", "excellent", "fantastic", "love", "wonderful",
        "perfect", "best", "thank", "thanks", "appreciate", "happy", "glad", "excited",
        "pleased", "helpful", "impressed", "beautiful", "brilliant", "outstanding",
        "superb", "terrific", "delighted", "enjoy", "good", "nice", "cool",
        "interesting", "recommend",
    }
)

NEGATIVE_WORDS = frozenset(
    {
        "terrible", "awful", "horrible", "worst", "hate", "angry", "frustrated",
        "disappointed", "unacceptable", "useless", "pathetic", "ridiculous",
        "disgusting", "annoying", "waste", "scam", "fraud", "broken", "bad", "slow",
        "poor", "rude", "incompetent", "never", "complaint", "refund", "cancel",
        "problem", "issue", "bug", "error", "fail", "wrong",
    }
)

URGENCY_WORDS = frozenset(
    {"urgent", "asap", "immediately", "emergency", "critical", "now", "today", "hurry", "deadline"}
)
URGENCY_PHRASES = ("right away", "time-sensitive")

_TOKEN = re.compile(r"\W+")
# Only the word directly after a negation token is flipped.
_NEGATION = re.compile(
    r"\b(not|no|don't|doesn't|won't|can't|never|neither|nor|hardly|barely)\s+(\w+)", re.I
)
_GRATEFUL = re.compile(r"\b(thank|thanks|appreciate)", re.I)
_CONFUSED = re.compile(r"\b(confused|don't understand|unclear)\b", re.I)
_ANGRY = re.compile(r"\b(angry|furious|outraged)\b", re.I)


def analyze_rules(text: str) -> tuple[SentimentResult, float]:
    """Score ``text`` against the word lists; returns the result and its confidence."""

    text = text or ""
    lowered = text.lower()
    words = [word for word in _TOKEN.split(lowered) if word]

    positive = sum(1 for word in words if word in POSITIVE_WORDS)
    negative = sum(1 for word in words if word in NEGATIVE_WORDS)
    urgency_hits = sum(1 for word in words if word in URGENCY_WORDS)
    urgency_hits += sum(1 for phrase in URGENCY_PHRASES if phrase in lowered)

    for match in _NEGATION.finditer(lowered):
        negated = match.group(2)
        if negated in POSITIVE_WORDS:
            positive = max(0, positive - 1)
            negative += 1
        elif negated in NEGATIVE_WORDS:
            negative = max(0, negative - 1)
            positive += 1

    exclamations = text.count("!")
    letters = [char for char in text if char.isalpha()]
    caps_ratio = sum(1 for char in letters if char.isupper()) / len(letters) if letters else 0.0

    total = positive + negative
    score = (positive - negative) / (total or 1)

    if positive > 0 and negative > 0:
        label = SentimentLabel.MIXED
    elif score > 0.2:
        label = SentimentLabel.POSITIVE
    elif score < -0.2:
        label = SentimentLabel.NEGATIVE
    else:
        label = SentimentLabel.NEUTRAL

    urgency = Urgency.LOW
    if urgency_hits > 0 or exclamations > 2 or caps_ratio > 0.5:
        urgency = Urgency.HIGH
    elif negative > 2 or exclamations > 0:
        urgency = Urgency.MEDIUM
    if urgency_hits > 1 and negative > 1:
        urgency = Urgency.CRITICAL

    emotions: list[str] = []
    if positive > 1:
        emotions.append("satisfied")
    if negative > 1:
        emotions.append("frustrated")
    if urgency_hits > 0:
        emotions.append("anxious")
    if _GRATEFUL.search(lowered):
        emotions.append("grateful")
    if _CONFUSED.search(lowered):
        emotions.append("confused")
    if _ANGRY.search(lowered):
        emotions.append("angry")

    confidence = min(1.0, 0.4 + total * 0.15)
    result = SentimentResult(sentiment=label, score=score, urgency=urgency, emotions=emotions)
    return result, confidence


def sentiment_from_payload(payload: dict[str, Any]) -> SentimentResult:
    try:
        return SentimentResult(
            sentiment=str(payload.get("sentiment", "neutral")).strip().lower(),
            score=payload.get("score", 0.0),
            urgency=str(payload.get("urgency", "low")).strip().lower(),
            emotions=payload.get("emotions") or (),
        )
    except (ValidationError, TypeError, ValueError) as exc:
        raise MalformedResponseError(f"Invalid sentiment payload: {exc}") from exc


class SentimentEstimator:
    """Lexicon scorer that escalates to a generative call below 0.7 confidence.

    When escalation fails the lexicon result is returned whatever its
    confidence.
    """

    stage = "sentiment"

    def __init__(
        self,
        service: GenerativeCallService,
        settings: PipelineSettings | None = None,
        prompts: PromptTemplateStore | None = None,
        params: ResponseParameterStore | None = None,
    ) -> None:
        self._service = service
        self._settings = settings or PipelineSettings()
        self._prompts = prompts or PromptTemplateStore()
        self._params = params or ResponseParameterStore()

    analyze_rules = staticmethod(analyze_rules)

    async def estimate(self, data: PipelineInput) -> SentimentResult:
        deterministic, confidence = analyze_rules(data.text)
        resolved = await resolve_tiered(
            stage=self.stage,
            fast=lambda: (deterministic, confidence),
            escalate=lambda: self._generate(data),
            fallback=lambda: deterministic,
            threshold=CONFIDENCE_THRESHOLD,
        )
        return resolved.value

    async def _generate(self, data: PipelineInput) -> SentimentResult:
        params = self._params.defaults_for_stage(self.stage)
        request = GenerationRequest(
            model=self._settings.model_for(params["model"]),
            system_prompt=self._prompts.resolve(self.stage),
            messages=({"role": "user", "content": data.text},),
            temperature=params["temperature"],
            max_tokens=params["max_tokens"],
            json_output=params["json_output"],
        )
        result = await self._service.generate(request)
        return sentiment_from_payload(result.json())
