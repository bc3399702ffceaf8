"""Pipeline orchestration for one inbound message.

The cycle runs through these states::

    START -> BLOCKED
          -> PARALLEL_ANALYSIS -> SCORED -> ESCALATED
                                        -> GENERATED -> GUARDED_OUTPUT -> COMPLETED

BLOCKED and ESCALATED are early exits. Classification and sentiment run
concurrently; every other step consumes the output of the one before it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time

from ..config import PipelineSettings
from .classifier import MessageClassifier
from .guardrail import GuardrailEvaluator
from .lead_scoring import LeadScorer
from .prompts import PromptTemplateStore
from .providers import DisabledGenerativeService, GenerativeCallService
from .reply import ReplyGenerator
from .responses import ResponseParameterStore
from .schemas import (
    ClassificationResult,
    GuardrailVerdict,
    LeadScore,
    LeadTag,
    PipelineInput,
    PipelineOutput,
    PipelineState,
    ReplyResult,
    SentimentLabel,
    SentimentResult,
    Topic,
    TurnRole,
    Urgency,
)
from .sentiment import SentimentEstimator

logger = logging.getLogger(__name__)

HANDOFF_REPLY = (
    "Thank you for reaching out. Let me connect you with a team member who can assist "
    "you further. Someone will be with you shortly."
)

OUTBOUND_FALLBACKS: dict[Topic, str] = {
    Topic.PRICING: (
        "Thanks for your interest in {company}! I'll have a team member get back to you "
        "with detailed pricing information shortly."
    ),
    Topic.SUPPORT: "Thank you for reaching out to {company}. A support team member will assist you soon.",
    Topic.COMPLAINT: (
        "We're sorry to hear about your experience. A team member will look into this "
        "and get back to you as soon as possible."
    ),
}
DEFAULT_OUTBOUND_FALLBACK = "Thank you for contacting {company}! A team member will be with you shortly."

STALE_THREAD_WINDOW = 5
STALE_THREAD_TURNS = 4

ESCALATION_RULES: tuple[tuple[str, tuple[re.Pattern[str], ...]], ...] = (
    (
        "human_request",
        tuple(
            re.compile(pattern, re.I)
            for pattern in (
                r"speak.*(human|person|agent|someone|representative)",
                r"talk.*(human|person|agent|someone|representative)",
                r"real (person|human)",
                r"transfer.*agent",
                r"customer (service|support)",
            )
        ),
    ),
    (
        "legal_or_dispute",
        tuple(
            re.compile(pattern, re.I)
            for pattern in (
                r"\b(lawyers?|attorneys?|legal\w*|lawsuits?|su(?:e|ed|es|ing)|courts?)\b",
                r"\b(gdpr|privacy|data (deletion|removal))\b",
                r"\b(refund\w*|chargebacks?|disput\w*)\b",
            )
        ),
    ),
)


def check_escalation(
    data: PipelineInput, sentiment: SentimentResult
) -> str | None:
    """Return the name of the first escalation rule that fires, if any."""

    if sentiment.urgency == Urgency.CRITICAL and sentiment.sentiment == SentimentLabel.NEGATIVE:
        return "critical_negative"
    text = data.text or ""
    for name, patterns in ESCALATION_RULES:
        if any(pattern.search(text) for pattern in patterns):
            return name
    recent = data.history[-STALE_THREAD_WINDOW:]
    if sum(1 for turn in recent if turn.role == TurnRole.CONTACT) >= STALE_THREAD_TURNS:
        return "stale_thread"
    return None


def outbound_fallback_text(topic: Topic, company: str) -> str:
    return OUTBOUND_FALLBACKS.get(topic, DEFAULT_OUTBOUND_FALLBACK).format(company=company)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


# ---------------------------------------------------------------------------
# Terminal builders


def build_blocked_output(
    verdict: GuardrailVerdict,
    started: float,
    trail: tuple[PipelineState, ...] = (PipelineState.START, PipelineState.BLOCKED),
) -> PipelineOutput:
    return PipelineOutput(
        state=PipelineState.BLOCKED,
        guardrail_input=verdict,
        classification=ClassificationResult(
            language="unknown", topic=Topic.OTHER, summary="Message blocked by guardrail"
        ),
        sentiment=SentimentResult(),
        lead_score=LeadScore(
            intent="blocked",
            confidence=1.0,
            score=0,
            tag=LeadTag.COLD,
            signals=("guardrail_blocked",),
            recommended_action="ignore",
        ),
        reply=ReplyResult(
            text="",
            confidence=0.0,
            requires_human=False,
            suggested_actions=("blocked_by_guardrail",),
        ),
        guardrail_output=GuardrailVerdict(passed=True),
        processing_time_ms=_elapsed_ms(started),
        tokens_used=0,
        trail=trail,
    )


def build_escalation_output(
    verdict: GuardrailVerdict,
    classification: ClassificationResult,
    sentiment: SentimentResult,
    lead_score: LeadScore,
    reason: str,
    started: float,
    tokens_used: int,
    trail: tuple[PipelineState, ...] = (),
) -> PipelineOutput:
    return PipelineOutput(
        state=PipelineState.ESCALATED,
        guardrail_input=verdict,
        classification=classification,
        sentiment=sentiment,
        lead_score=lead_score,
        reply=ReplyResult(
            text=HANDOFF_REPLY,
            confidence=1.0,
            requires_human=True,
            suggested_actions=("escalate_to_human", "notify_agent"),
        ),
        guardrail_output=GuardrailVerdict(passed=True),
        processing_time_ms=_elapsed_ms(started),
        tokens_used=tokens_used,
        escalation_reason=reason,
        trail=trail,
    )


def build_fallback_output(processing_time_ms: float = 0.0) -> PipelineOutput:
    """Minimal output for a cycle that could not run; always routed to a human."""

    return PipelineOutput(
        state=PipelineState.COMPLETED,
        guardrail_input=GuardrailVerdict(passed=True, flags=("pipeline_fallback",)),
        classification=ClassificationResult(summary="Processing failed"),
        sentiment=SentimentResult(urgency=Urgency.MEDIUM),
        lead_score=LeadScore(
            intent="unknown",
            confidence=0.3,
            score=20,
            tag=LeadTag.COLD,
            signals=("pipeline_fallback",),
            recommended_action="monitor",
        ),
        reply=ReplyResult(
            text="",
            confidence=0.0,
            requires_human=True,
            suggested_actions=("escalate_to_human",),
        ),
        guardrail_output=GuardrailVerdict(passed=True),
        processing_time_ms=processing_time_ms,
        tokens_used=0,
    )


# ---------------------------------------------------------------------------
# Orchestrator


class PipelineOrchestrator:
    """Run one decision cycle over a :class:`PipelineInput`.

    ``process`` never raises for a valid input: every stage recovers from its
    own generative failures and the guardrail blocks on internal faults.
    """

    def __init__(
        self,
        service: GenerativeCallService,
        settings: PipelineSettings | None = None,
        *,
        guardrail: GuardrailEvaluator | None = None,
        prompts: PromptTemplateStore | None = None,
        params: ResponseParameterStore | None = None,
        scorer: LeadScorer | None = None,
        reply_generator: ReplyGenerator | None = None,
    ) -> None:
        self.service = service
        self.settings = settings or PipelineSettings()
        self.guardrail = guardrail or GuardrailEvaluator()
        self.prompts = prompts or PromptTemplateStore()
        self.params = params
        self.scorer = scorer or LeadScorer()
        self.classifier = MessageClassifier(service, self.settings, self.prompts, params)
        self.sentiment = SentimentEstimator(service, self.settings, self.prompts, params)
        self.reply_generator = reply_generator or ReplyGenerator(
            service, self.settings, self.prompts, params
        )

    def with_generator(self, service: GenerativeCallService) -> PipelineOrchestrator:
        """Return a copy of this orchestrator that calls ``service`` instead."""

        return PipelineOrchestrator(
            service,
            self.settings,
            guardrail=self.guardrail,
            prompts=self.prompts,
            params=self.params,
            scorer=self.scorer,
            reply_generator=self.reply_generator.with_service(service),
        )

    def templates_only(self) -> PipelineOrchestrator:
        return self.with_generator(DisabledGenerativeService("token budget exhausted"))

    async def process(self, data: PipelineInput) -> PipelineOutput:
        started = time.perf_counter()
        trail = [PipelineState.START]

        inbound = self.guardrail.evaluate_inbound(data.text, {"channel": data.channel.value})
        if not inbound.passed:
            logger.info("Inbound message blocked: %s", inbound.blocked_reason)
            trail.append(PipelineState.BLOCKED)
            return build_blocked_output(inbound, started, tuple(trail))

        classification, sentiment = await asyncio.gather(
            self.classifier.classify(data),
            self.sentiment.estimate(data),
        )
        trail.append(PipelineState.PARALLEL_ANALYSIS)

        lead_score = self.scorer.score(data, classification, sentiment)
        trail.append(PipelineState.SCORED)
        classifier_tokens = self.settings.classifier_token_estimate

        reason = check_escalation(data, sentiment)
        if reason is not None:
            logger.info("Escalating to a human (%s)", reason)
            trail.append(PipelineState.ESCALATED)
            return build_escalation_output(
                inbound,
                classification,
                sentiment,
                lead_score,
                reason,
                started,
                classifier_tokens,
                tuple(trail),
            )

        reply = await self.reply_generator.generate(data, classification, sentiment, lead_score)
        trail.append(PipelineState.GENERATED)

        outbound = self.guardrail.evaluate_outbound(reply.text, {"topic": classification.topic.value})
        if not outbound.passed:
            logger.warning("Generated reply blocked: %s", outbound.blocked_reason)
            reply = ReplyResult(
                text=outbound_fallback_text(classification.topic, data.brand_voice.company_name),
                confidence=0.5,
                requires_human=True,
                suggested_actions=reply.suggested_actions,
                tokens_used=reply.tokens_used,
            )
        trail.append(PipelineState.GUARDED_OUTPUT)
        trail.append(PipelineState.COMPLETED)

        return PipelineOutput(
            state=PipelineState.COMPLETED,
            guardrail_input=inbound,
            classification=classification,
            sentiment=sentiment,
            lead_score=lead_score,
            reply=reply,
            guardrail_output=outbound,
            processing_time_ms=_elapsed_ms(started),
            tokens_used=reply.tokens_used + classifier_tokens,
            trail=tuple(trail),
        )
