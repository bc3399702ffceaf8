import itertools

import pytest

from replyforce.agents.lead_scoring import LeadScorer, blend
from replyforce.agents.schemas import (
    ClassificationResult,
    Entity,
    EntityKind,
    LeadTag,
    SentimentLabel,
    SentimentResult,
    Topic,
)


@pytest.fixture
def scorer():
    return LeadScorer()


def test_pricing_question_with_purchase_keyword(scorer, make_input):
    classification = ClassificationResult(topic=Topic.PRICING, is_question=True)
    result = scorer.score(make_input("can I buy it?"), classification, SentimentResult())

    assert result.score == 60
    assert result.tag == LeadTag.WARM
    assert result.signals == ("pricing_inquiry", "active_inquiry", "high_intent_keyword")
    assert result.intent == "purchase_intent"
    assert result.recommended_action == "nurture_campaign"
    assert result.confidence == pytest.approx(0.74)


def test_momentum_bonus_and_blend(scorer, make_input):
    classification = ClassificationResult(topic=Topic.PRICING, is_question=True)
    data = make_input("can I buy it?", prior=("WARM", 50))

    result = scorer.score(data, classification, SentimentResult())

    assert result.signals[-1] == "warming_up"
    assert result.score == 64
    assert result.tag == LeadTag.WARM


def test_no_momentum_for_hot_prior(scorer, make_input):
    classification = ClassificationResult(topic=Topic.PRICING, is_question=True)
    result = scorer.score(
        make_input("can I buy it?", prior=("HOT", 80)), classification, SentimentResult()
    )
    assert "warming_up" not in result.signals
    assert result.score == blend(60, 80) == 66


def test_entities_add_points_and_signals(scorer, make_input):
    classification = ClassificationResult(
        topic=Topic.INQUIRY,
        entities=(
            Entity(kind=EntityKind.PRODUCT, value="Pro plan"),
            Entity(kind=EntityKind.PRICE, value="$49"),
            Entity(kind=EntityKind.PERSON, value="Sam"),
        ),
    )
    result = scorer.score(make_input("tell me more"), classification, SentimentResult())
    assert result.score == 55
    assert result.signals == ("product_inquiry", "product_mention:Pro plan", "price_mention")
    assert result.intent == "purchase_evaluation"


def test_opt_out_language_clamps_at_zero(scorer, make_input):
    classification = ClassificationResult(topic=Topic.COMPLAINT)
    sentiment = SentimentResult(sentiment=SentimentLabel.NEGATIVE, score=-0.8)
    result = scorer.score(
        make_input("not interested, stop messaging me and cancel everything"), classification, sentiment
    )
    assert result.score == 0
    assert result.tag == LeadTag.COLD
    assert result.recommended_action == "monitor"
    assert result.signals == (
        "complaint",
        "negative_intent",
        "cancellation_signal",
        "negative_sentiment",
    )
    assert result.intent == "cancellation"


def test_engagement_thresholds_both_fire(scorer, make_input):
    history = [("contact", "hi")] * 5 + [("automated-reply", "hello")]
    result = scorer.score(make_input("ok", history=history), ClassificationResult(), SentimentResult())
    assert result.signals == ("repeat_engagement", "high_engagement")
    assert result.score == 25


def test_hot_lead(scorer, make_input):
    classification = ClassificationResult(topic=Topic.PRICING, is_question=True)
    sentiment = SentimentResult(sentiment=SentimentLabel.POSITIVE, score=0.9)
    result = scorer.score(
        make_input("I need a demo today, how soon is delivery?"), classification, sentiment
    )
    # 30 + 5 + 25 + 15 + 15 + 10
    assert result.score == 100
    assert result.tag == LeadTag.HOT
    assert result.recommended_action == "immediate_follow_up"
    assert result.confidence == pytest.approx(0.98)


@pytest.mark.parametrize(
    "topic,text,prior",
    list(
        itertools.product(
            list(Topic),
            ["buy now, compare vs others", "unsubscribe and refund", "hello"],
            [None, ("WARM", 45), ("COLD", 0), ("HOT", 100)],
        )
    ),
)
def test_score_and_tag_always_consistent(scorer, make_input, topic, text, prior):
    result = scorer.score(
        make_input(text, prior=prior),
        ClassificationResult(topic=topic, is_question=True),
        SentimentResult(sentiment=SentimentLabel.NEGATIVE),
    )
    assert 0 <= result.score <= 100
    assert result.tag == LeadTag.for_score(result.score)
    assert 0.0 <= result.confidence <= 1.0
