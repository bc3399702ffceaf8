"""Brand-voice reply generation with template short-circuits."""

from __future__ import annotations

import logging
import random
import re

from ..config import PipelineSettings
from .prompts import PromptTemplateStore
from .providers import GenerationRequest, GenerationResult, GenerativeCallService
from .responses import ResponseParameterStore
from .schemas import (
    ClassificationResult,
    LeadScore,
    LeadTag,
    PipelineInput,
    ReplyResult,
    SentimentResult,
    Topic,
    TurnRole,
)
from .tiered import resolve_tiered

logger = logging.getLogger(__name__)

GREETING_TEMPLATES = (
    "Hi there! Welcome to {company}. How can I help you today?",
    "Hello! Thanks for reaching out to {company}. What can I assist you with?",
    "Hey! Great to hear from you. How can {company} help you today?",
)
THANKS_TEMPLATE = (
    "You're welcome! If you need anything else, don't hesitate to reach out. "
    "We're here to help!"
)
FAILURE_TEMPLATE = (
    "Thank you for reaching out to {company}! A team member will get back to you shortly."
)
LOW_CONFIDENCE_HANDOFF = "Let me connect you with a team member who can help with that."

TEMPLATE_CONFIDENCE = 0.95
BASE_CONFIDENCE = 0.8
HUMAN_REVIEW_THRESHOLD = 0.5
CONTEXT_TURNS = 5

_THANKS = re.compile(r"^\s*(thank|thanks|thx|ty)\b", re.I)
_HEDGING = re.compile(r"I'm not sure|I don't know|I cannot", re.I)

_TOPIC_ADJUSTMENTS = {
    Topic.COMPLAINT: -0.1,
    Topic.SUPPORT: -0.05,
    Topic.GREETING: 0.15,
    Topic.FEEDBACK: 0.1,
}


def suggested_actions(classification: ClassificationResult, lead_score: LeadScore) -> tuple[str, ...]:
    actions: list[str] = []
    if lead_score.tag == LeadTag.HOT:
        actions.extend(["notify_sales_team", "schedule_follow_up"])
    if classification.topic == Topic.PRICING:
        actions.append("send_pricing_info")
    if classification.topic == Topic.COMPLAINT:
        actions.extend(["create_support_ticket", "escalate_if_unresolved"])
    return tuple(actions)


def estimate_confidence(text: str, topic: Topic, truncated: bool) -> float:
    confidence = BASE_CONFIDENCE
    if len(text) < 20:
        confidence -= 0.2
    if _HEDGING.search(text):
        confidence -= 0.2
    confidence += _TOPIC_ADJUSTMENTS.get(topic, 0.0)
    if truncated:
        confidence -= 0.15
    return max(0.1, min(1.0, confidence))


class ReplyGenerator:
    """Produce the customer-facing reply for one message.

    Greetings and bare thanks are answered from templates without a model
    call. Everything else goes through one generative call; a failed call
    yields a fixed apology that is routed to a human.
    """

    stage = "reply"

    def __init__(
        self,
        service: GenerativeCallService,
        settings: PipelineSettings | None = None,
        prompts: PromptTemplateStore | None = None,
        params: ResponseParameterStore | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._service = service
        self._settings = settings or PipelineSettings()
        self._prompts = prompts or PromptTemplateStore()
        self._params = params or ResponseParameterStore(
            {
                "reply": {
                    "temperature": self._settings.temperature,
                    "max_tokens": self._settings.max_tokens,
                }
            }
        )
        self._rng = rng or random.Random()

    def with_service(self, service: GenerativeCallService) -> ReplyGenerator:
        """Copy sharing prompts, parameters and the template rng, calling ``service``."""

        return ReplyGenerator(service, self._settings, self._prompts, self._params, self._rng)

    def template_reply(
        self,
        data: PipelineInput,
        classification: ClassificationResult,
        lead_score: LeadScore,
    ) -> ReplyResult | None:
        company = data.brand_voice.company_name
        if classification.topic == Topic.GREETING and not classification.is_question:
            text = self._rng.choice(GREETING_TEMPLATES).format(company=company)
        elif _THANKS.search(data.text or "") and not classification.is_question:
            text = THANKS_TEMPLATE
        else:
            return None
        return ReplyResult(
            text=text,
            confidence=TEMPLATE_CONFIDENCE,
            requires_human=False,
            suggested_actions=suggested_actions(classification, lead_score),
            tokens_used=0,
        )

    async def generate(
        self,
        data: PipelineInput,
        classification: ClassificationResult,
        sentiment: SentimentResult,
        lead_score: LeadScore,
    ) -> ReplyResult:
        templated = self.template_reply(data, classification, lead_score)
        if templated is not None:
            return templated

        resolved = await resolve_tiered(
            stage=self.stage,
            escalate=lambda: self._generate(data, classification, sentiment, lead_score),
            fallback=lambda: self._failure_reply(data),
        )
        return resolved.value

    async def _generate(
        self,
        data: PipelineInput,
        classification: ClassificationResult,
        sentiment: SentimentResult,
        lead_score: LeadScore,
    ) -> ReplyResult:
        params = self._params.defaults_for_stage(self.stage)
        request = GenerationRequest(
            model=self._settings.model_for(params["model"]),
            system_prompt=self._prompts.render_reply(data, classification, sentiment, lead_score),
            messages=self._dialogue(data),
            temperature=params["temperature"],
            max_tokens=params["max_tokens"],
            json_output=params["json_output"],
        )
        result = await self._service.generate(request)
        return self._to_reply(result, classification, lead_score)

    def _dialogue(self, data: PipelineInput) -> tuple[dict[str, str], ...]:
        turns = [
            {
                "role": "user" if turn.role == TurnRole.CONTACT else "assistant",
                "content": turn.content,
            }
            for turn in data.history[-CONTEXT_TURNS:]
        ]
        turns.append({"role": "user", "content": data.text})
        return tuple(turns)

    def _to_reply(
        self,
        result: GenerationResult,
        classification: ClassificationResult,
        lead_score: LeadScore,
    ) -> ReplyResult:
        text = result.text.strip()
        confidence = estimate_confidence(text, classification.topic, result.truncated)
        actions = suggested_actions(classification, lead_score)
        if confidence < HUMAN_REVIEW_THRESHOLD:
            # Generated text is held back for the agent; the customer gets the handoff.
            return ReplyResult(
                text=LOW_CONFIDENCE_HANDOFF,
                confidence=confidence,
                requires_human=True,
                suggested_actions=actions,
                tokens_used=result.tokens_used,
                draft=text,
            )
        return ReplyResult(
            text=text,
            confidence=confidence,
            requires_human=False,
            suggested_actions=actions,
            tokens_used=result.tokens_used,
        )

    def _failure_reply(self, data: PipelineInput) -> ReplyResult:
        return ReplyResult(
            text=FAILURE_TEMPLATE.format(company=data.brand_voice.company_name),
            confidence=0.3,
            requires_human=True,
            suggested_actions=("escalate_to_human",),
            tokens_used=0,
        )
