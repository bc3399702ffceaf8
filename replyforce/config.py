"""Environment driven settings for the pipeline and the ingestion worker."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class PipelineSettings:
    openai_api_key: str | None = None
    primary_model: str = "gpt-4o"
    fast_model: str = "gpt-4o-mini"
    max_tokens: int = 1000
    temperature: float = 0.7
    request_timeout: float = 15.0
    classifier_token_estimate: int = 200
    dedup_ttl_seconds: int = 86400
    history_limit: int = 10
    queue_concurrency: int = 10
    redis_url: str | None = None
    channel_accounts_file: str | None = None
    webhook_secrets: dict[str, str] = field(default_factory=dict)
    verify_tokens: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls) -> PipelineSettings:
        secrets: dict[str, str] = {}
        meta_secret = os.getenv("META_APP_SECRET")
        if meta_secret:
            secrets["FACEBOOK"] = meta_secret
            secrets["INSTAGRAM"] = meta_secret
        whatsapp_secret = os.getenv("WHATSAPP_APP_SECRET") or meta_secret
        if whatsapp_secret:
            secrets["WHATSAPP"] = whatsapp_secret
        twitter_secret = os.getenv("TWITTER_API_SECRET")
        if twitter_secret:
            secrets["TWITTER"] = twitter_secret
        tokens: dict[str, str] = {}
        facebook_token = os.getenv("FACEBOOK_VERIFY_TOKEN")
        if facebook_token:
            tokens["FACEBOOK"] = facebook_token
            tokens["INSTAGRAM"] = facebook_token
        whatsapp_token = os.getenv("WHATSAPP_VERIFY_TOKEN")
        if whatsapp_token:
            tokens["WHATSAPP"] = whatsapp_token
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            primary_model=os.getenv("OPENAI_MODEL_PRIMARY", "gpt-4o"),
            fast_model=os.getenv("OPENAI_MODEL_FAST", "gpt-4o-mini"),
            max_tokens=_env_int("OPENAI_MAX_TOKENS", 1000),
            temperature=_env_float("OPENAI_TEMPERATURE", 0.7),
            request_timeout=_env_float("LLM_TIMEOUT_SECONDS", 15.0),
            classifier_token_estimate=_env_int("CLASSIFIER_TOKEN_ESTIMATE", 200),
            dedup_ttl_seconds=_env_int("DEDUP_TTL_SECONDS", 86400),
            history_limit=_env_int("HISTORY_LIMIT", 10),
            queue_concurrency=_env_int("QUEUE_AI_CONCURRENCY", 10),
            redis_url=os.getenv("REDIS_URL") or None,
            channel_accounts_file=os.getenv("CHANNEL_ACCOUNTS_FILE") or None,
            webhook_secrets=secrets,
            verify_tokens=tokens,
        )

    def model_for(self, role: str) -> str:
        """Resolve a stage model role (``fast``/``primary``) to a model id."""

        if role == "primary":
            return self.primary_model
        if role == "fast":
            return self.fast_model
        return role
