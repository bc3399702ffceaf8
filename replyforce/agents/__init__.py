"""Decision pipeline: guardrail, classification, sentiment, lead scoring and replies."""

from . import schemas
from .classifier import MessageClassifier
from .crm import CrmPayload, build_crm_payload
from .guardrail import GuardrailEvaluator
from .lead_scoring import LeadScorer
from .orchestrator import PipelineOrchestrator, build_fallback_output
from .providers import (
    DisabledGenerativeService,
    GenerationError,
    GenerationTimeout,
    GenerativeCallService,
    MalformedResponseError,
    OpenAIGenerativeService,
)
from .reply import ReplyGenerator
from .sentiment import SentimentEstimator

__all__ = [
    "CrmPayload",
    "DisabledGenerativeService",
    "GenerationError",
    "GenerationTimeout",
    "GenerativeCallService",
    "GuardrailEvaluator",
    "LeadScorer",
    "MalformedResponseError",
    "MessageClassifier",
    "OpenAIGenerativeService",
    "PipelineOrchestrator",
    "ReplyGenerator",
    "SentimentEstimator",
    "build_crm_payload",
    "build_fallback_output",
    "schemas",
]
