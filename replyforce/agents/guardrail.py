"""Rule based guardrail for inbound messages and outbound replies.

Both rule sets are ordered tuples of :class:`GuardrailRule`. A rule contributes
its weight once when any of its patterns match, or once per matching pattern
when ``compound`` is set. Risk is capped at 1.0 and compared against a
per-direction threshold: inbound text blocks at 0.7, outbound replies at 0.5.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .schemas import GuardrailVerdict

logger = logging.getLogger(__name__)

INBOUND_BLOCK_THRESHOLD = 0.7
OUTBOUND_BLOCK_THRESHOLD = 0.5


@dataclass(frozen=True)
class GuardrailRule:
    flag: str
    weight: float
    patterns: tuple[re.Pattern[str], ...] = ()
    predicate: Callable[[str], bool] | None = None
    compound: bool = False

    def hits(self, text: str) -> int:
        if self.predicate is not None:
            return 1 if self.predicate(text) else 0
        matched = sum(1 for pattern in self.patterns if pattern.search(text))
        if self.compound:
            return matched
        return 1 if matched else 0


def _compile(*patterns: str, flags: int = re.I) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, flags) for p in patterns)


_PROFANITY = _compile(r"\b(fuck|shit|damn|bitch|ass(?:hole)?|bastard|crap)\b")

INBOUND_RULES: tuple[GuardrailRule, ...] = (
    GuardrailRule(
        "prompt_injection",
        0.8,
        _compile(
            r"ignore\s+(all\s+)?(previous|prior|above)\s+instructions",
            r"\bsystem\s*:\s*",
            r"\byou\s+are\s+now\s+",
            r"\bpretend\s+you\s+are\b",
            r"\bact\s+as\s+if\s+you\s+are\b",
            r"\bforget\s+(everything|all|your)\b",
            r"\bnew\s+instructions?\s*:",
            r"\boverride\s+(previous|your|all)\b",
            r"jailbreak",
            r"\[system\]",
            r"\[instruction\]",
            r"\bDAN\s+mode\b",
        ),
    ),
    GuardrailRule(
        "spam",
        0.5,
        _compile(r"(.)\1{10,}", flags=0)
        + _compile(
            r"(?:https?://\S+\s*){3,}",
            r"\b(bit\.ly|tinyurl\.com|t\.co|goo\.gl)/",
            r"\b(buy|cheap|discount|free|click|winner|congratulations)\b.*\b(buy|cheap|discount|free|click|winner)\b",
        )
        + _compile(r"\b[A-Z][A-Z\s]{19,}\b", flags=0),
    ),
    GuardrailRule("profanity", 0.2, _PROFANITY),
    GuardrailRule("excessive_length", 0.3, predicate=lambda text: len(text) > 5000),
    GuardrailRule("empty_message", 0.1, predicate=lambda text: not text.strip()),
)

OUTBOUND_RULES: tuple[GuardrailRule, ...] = (
    GuardrailRule(
        "pii_leak",
        0.9,
        _compile(
            r"\b\d{3}[-.]?\d{2}[-.]?\d{4}\b",
            r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b",
            r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
            r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b",
        ),
    ),
    GuardrailRule(
        "dangerous_promise",
        0.4,
        _compile(
            r"guarantee",
            r"100%\s*(refund|money\s*back)",
            r"lawsuit|legal\s*action",
            r"free\s*(forever|lifetime)",
            r"\$\d+.*(?:off|discount)",
        ),
        compound=True,
    ),
    GuardrailRule("profanity_in_output", 0.8, _PROFANITY),
    GuardrailRule("excessive_length", 0.2, predicate=lambda text: len(text) > 2000),
    GuardrailRule("empty_response", 1.0, predicate=lambda text: not text.strip()),
)


@dataclass
class GuardrailEvaluator:
    """Stateless evaluator for the inbound and outbound rule sets."""

    inbound_rules: tuple[GuardrailRule, ...] = field(default=INBOUND_RULES)
    outbound_rules: tuple[GuardrailRule, ...] = field(default=OUTBOUND_RULES)

    def evaluate_inbound(
        self, text: str | None, context: Mapping[str, Any] | None = None
    ) -> GuardrailVerdict:
        return self._evaluate(text, self.inbound_rules, INBOUND_BLOCK_THRESHOLD, "Blocked")

    def evaluate_outbound(
        self, text: str | None, context: Mapping[str, Any] | None = None
    ) -> GuardrailVerdict:
        return self._evaluate(
            text, self.outbound_rules, OUTBOUND_BLOCK_THRESHOLD, "Output blocked"
        )

    def _evaluate(
        self,
        text: str | None,
        rules: tuple[GuardrailRule, ...],
        threshold: float,
        reason_prefix: str,
    ) -> GuardrailVerdict:
        try:
            return _apply_rules(text or "", rules, threshold, reason_prefix)
        except Exception:
            logger.exception("Guardrail evaluation failed; blocking")
            return GuardrailVerdict(
                passed=False,
                flags=("guardrail_error",),
                risk_score=1.0,
                blocked_reason=f"{reason_prefix}: guardrail_error",
            )


def _apply_rules(
    text: str,
    rules: tuple[GuardrailRule, ...],
    threshold: float,
    reason_prefix: str,
) -> GuardrailVerdict:
    flags: list[str] = []
    risk = 0.0
    for rule in rules:
        hits = rule.hits(text)
        if hits:
            flags.append(rule.flag)
            risk += rule.weight * hits
    risk = round(min(1.0, risk), 4)
    passed = risk < threshold
    return GuardrailVerdict(
        passed=passed,
        flags=tuple(flags),
        risk_score=risk,
        blocked_reason=None if passed else f"{reason_prefix}: {', '.join(flags)}",
    )
