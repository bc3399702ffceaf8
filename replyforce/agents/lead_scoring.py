"""Deterministic lead scoring.

The scorer walks its rule tables in a fixed order, accumulating points and an
ordered list of signals. The signal list doubles as the audit trail written to
CRM notes, so rule order matters and must not be sorted.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field

from .schemas import (
    ClassificationResult,
    EntityKind,
    LeadScore,
    LeadTag,
    PipelineInput,
    SentimentLabel,
    SentimentResult,
    Topic,
)

MOMENTUM_BONUS = 10
FRESH_WEIGHT = 0.7
PRIOR_WEIGHT = 0.3


@dataclass(frozen=True)
class ScoringRule:
    points: int
    signal: str
    intent: str | None = None
    pattern: re.Pattern[str] | None = None


TOPIC_RULES: dict[Topic, ScoringRule] = {
    Topic.PRICING: ScoringRule(30, "pricing_inquiry", "purchase_evaluation"),
    Topic.INQUIRY: ScoringRule(20, "product_inquiry", "information_seeking"),
    Topic.SUPPORT: ScoringRule(10, "support_request", "support"),
    Topic.COMPLAINT: ScoringRule(-10, "complaint", "complaint_resolution"),
    Topic.FEEDBACK: ScoringRule(15, "feedback", "engagement"),
    Topic.GREETING: ScoringRule(5, "initial_contact", "initial_contact"),
}

QUESTION_RULE = ScoringRule(5, "active_inquiry")
PRICE_ENTITY_RULE = ScoringRule(20, "price_mention", "purchase_evaluation")
PRODUCT_ENTITY_POINTS = 15

KEYWORD_RULES: tuple[ScoringRule, ...] = (
    ScoringRule(
        25,
        "high_intent_keyword",
        "purchase_intent",
        re.compile(r"\b(buy|purchase|order|subscribe|sign up|get started|pricing|demo|trial)\b"),
    ),
    ScoringRule(
        15,
        "availability_inquiry",
        pattern=re.compile(r"\b(available|in stock|how soon|when can|delivery|shipping)\b"),
    ),
    ScoringRule(
        15,
        "urgency_language",
        pattern=re.compile(r"\b(need|asap|urgent|today|right now|immediately)\b"),
    ),
    ScoringRule(
        10,
        "comparison_shopping",
        "evaluation",
        re.compile(r"\b(compare|vs|versus|alternative|better than|difference)\b"),
    ),
    ScoringRule(
        -30,
        "negative_intent",
        "opt_out",
        re.compile(r"\b(not interested|unsubscribe|stop|remove|spam)\b"),
    ),
    ScoringRule(
        -15,
        "cancellation_signal",
        "cancellation",
        re.compile(r"\b(cancel|refund|return|exchange)\b"),
    ),
)

SENTIMENT_POINTS = 10
REPEAT_ENGAGEMENT = ScoringRule(15, "repeat_engagement")
HIGH_ENGAGEMENT = ScoringRule(10, "high_engagement")

RECOMMENDED_ACTIONS: dict[LeadTag, str] = {
    LeadTag.HOT: "immediate_follow_up",
    LeadTag.WARM: "nurture_campaign",
    LeadTag.COLD: "monitor",
}


@dataclass
class _Tally:
    score: int = 0
    intent: str = "unknown"
    signals: list[str] = field(default_factory=list)

    def add(self, rule: ScoringRule, signal: str | None = None) -> None:
        self.score += rule.points
        self.signals.append(signal or rule.signal)
        if rule.intent:
            self.intent = rule.intent


def blend(fresh: int, prior: int) -> int:
    """Blend the fresh score with the prior one, rounding halves up."""

    return math.floor(FRESH_WEIGHT * fresh + PRIOR_WEIGHT * prior + 0.5)


class LeadScorer:
    """Pure function over the classifier and sentiment output; never calls a model."""

    def score(
        self,
        data: PipelineInput,
        classification: ClassificationResult,
        sentiment: SentimentResult,
    ) -> LeadScore:
        tally = _Tally()

        topic_rule = TOPIC_RULES.get(classification.topic)
        if topic_rule is not None:
            tally.add(topic_rule)

        if classification.is_question:
            tally.add(QUESTION_RULE)

        for entity in classification.entities:
            if entity.kind == EntityKind.PRODUCT:
                tally.add(
                    ScoringRule(PRODUCT_ENTITY_POINTS, "product_mention", "product_interest"),
                    signal=f"product_mention:{entity.value}",
                )
            elif entity.kind == EntityKind.PRICE:
                tally.add(PRICE_ENTITY_RULE)

        lowered = (data.text or "").lower()
        for rule in KEYWORD_RULES:
            if rule.pattern is not None and rule.pattern.search(lowered):
                tally.add(rule)

        if sentiment.sentiment == SentimentLabel.POSITIVE:
            tally.add(ScoringRule(SENTIMENT_POINTS, "positive_sentiment"))
        elif sentiment.sentiment == SentimentLabel.NEGATIVE:
            tally.add(ScoringRule(-SENTIMENT_POINTS, "negative_sentiment"))

        customer_turns = len(data.customer_turns())
        if customer_turns >= 3:
            tally.add(REPEAT_ENGAGEMENT)
        if customer_turns >= 5:
            tally.add(HIGH_ENGAGEMENT)

        final = tally.score
        prior = data.prior_lead
        if prior is not None:
            if prior.tag == LeadTag.WARM and tally.score > 30:
                tally.score += MOMENTUM_BONUS
                tally.signals.append("warming_up")
            final = blend(tally.score, prior.score)

        final = max(0, min(100, final))
        tag = LeadTag.for_score(final)
        return LeadScore(
            intent=tally.intent,
            confidence=min(1.0, 0.5 + 0.08 * len(tally.signals)),
            score=final,
            tag=tag,
            signals=tuple(tally.signals),
            recommended_action=RECOMMENDED_ACTIONS[tag],
        )
