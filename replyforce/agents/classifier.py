"""Message understanding: topic, entities, question flag, language and summary."""

from __future__ import annotations

import logging
import re
from typing import Any

from langdetect import DetectorFactory, LangDetectException, detect
from pydantic import ValidationError

from ..config import PipelineSettings
from .prompts import PromptTemplateStore
from .providers import GenerationRequest, GenerativeCallService, MalformedResponseError
from .responses import ResponseParameterStore
from .schemas import ClassificationResult, Entity, EntityKind, PipelineInput, Topic
from .tiered import resolve_tiered

logger = logging.getLogger(__name__)

# langdetect is probabilistic unless seeded.
DetectorFactory.seed = 0

_QUESTION = re.compile(
    r"\?|^(what|how|when|where|why|who|which|can|could|would|do|does|is|are)\b", re.I
)

# Checked in order; the first match wins.
_TOPIC_KEYWORDS: tuple[tuple[Topic, re.Pattern[str]], ...] = (
    (Topic.PRICING, re.compile(r"\b(price|cost|plan|pricing|subscription|pay|fee)", re.I)),
    (Topic.SUPPORT, re.compile(r"\b(help|issue|problem|error|broken|fix|support)", re.I)),
    (
        Topic.COMPLAINT,
        re.compile(r"\b(angry|terrible|worst|hate|disappointed|unacceptable)", re.I),
    ),
    (Topic.INQUIRY, re.compile(r"\b(tell me|info|information|details|learn|about)", re.I)),
    (Topic.FEEDBACK, re.compile(r"\b(great|love|awesome|thanks|good|excellent)", re.I)),
    (Topic.GREETING, re.compile(r"^\s*(hi|hello|hey|good morning|good evening|howdy)\b", re.I)),
)

_WORD = re.compile(r"\s+")


def _detect_language(text: str) -> str:
    try:
        return detect(text)
    except LangDetectException:
        return "en"


def fallback_classification(text: str) -> ClassificationResult:
    """Classify ``text`` with keyword rules only; every field is populated."""

    text = text or ""
    topic = Topic.OTHER
    for candidate, pattern in _TOPIC_KEYWORDS:
        if pattern.search(text):
            topic = candidate
            break
    words = [word for word in _WORD.split(text) if len(word) > 4]
    return ClassificationResult(
        language=_detect_language(text) if text.strip() else "en",
        entities=(),
        topic=topic,
        is_question=bool(_QUESTION.search(text.strip())),
        summary=text[:100],
        key_phrases=tuple(words[:5]),
    )


def _entities_from(raw: Any) -> tuple[Entity, ...]:
    if not isinstance(raw, list):
        return ()
    entities: list[Entity] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            kind = EntityKind(str(item.get("type", "")).strip().lower())
        except ValueError:
            continue
        value = item.get("value")
        if value is None:
            continue
        entities.append(Entity(kind=kind, value=str(value)))
    return tuple(entities)


def classification_from_payload(payload: dict[str, Any]) -> ClassificationResult:
    """Validate a model response; unknown topics become ``other``."""

    try:
        return ClassificationResult(
            language=str(payload.get("language") or "en"),
            entities=_entities_from(payload.get("entities")),
            topic=payload.get("topic", Topic.OTHER.value),
            is_question=bool(payload.get("is_question", False)),
            summary=payload.get("summary") or "",
            key_phrases=payload.get("key_phrases") or (),
        )
    except ValidationError as exc:
        raise MalformedResponseError(f"Invalid classification payload: {exc}") from exc


class MessageClassifier:
    """Classify the current message with one structured generative call.

    Any failure of that call, including a malformed response, falls back to
    :func:`fallback_classification`, which ignores the conversation context.
    """

    stage = "classifier"

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

    async def classify(self, data: PipelineInput) -> ClassificationResult:
        resolved = await resolve_tiered(
            stage=self.stage,
            escalate=lambda: self._generate(data),
            fallback=lambda: fallback_classification(data.text),
        )
        return resolved.value

    async def _generate(self, data: PipelineInput) -> ClassificationResult:
        params = self._params.defaults_for_stage(self.stage)
        request = GenerationRequest(
            model=self._settings.model_for(params["model"]),
            system_prompt=self._prompts.resolve(self.stage),
            messages=({"role": "user", "content": self._prompts.render_classifier_input(data)},),
            temperature=params["temperature"],
            max_tokens=params["max_tokens"],
            json_output=params["json_output"],
        )
        result = await self._service.generate(request)
        return classification_from_payload(result.json())
