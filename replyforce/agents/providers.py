"""Generative call service used by the pipeline stages.

The pipeline only depends on the :class:`GenerativeCallService` protocol. The
OpenAI implementation maps every failure mode onto the small error hierarchy
below so callers can tell a timeout from a malformed response from any other
provider error.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import openai
from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


class GenerationError(RuntimeError):
    """Raised when a generative call fails."""


class GenerationTimeout(GenerationError):
    """Raised when a generative call does not finish in time."""


class MalformedResponseError(GenerationError):
    """Raised when a response is empty or cannot be parsed."""


@dataclass(frozen=True)
class GenerationRequest:
    """One call to a generative model."""

    model: str
    system_prompt: str
    messages: Sequence[Mapping[str, str]] = ()
    temperature: float = 0.7
    max_tokens: int = 1000
    json_output: bool = False


@dataclass(frozen=True)
class GenerationResult:
    text: str
    finish_reason: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str | None = None

    @property
    def tokens_used(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"

    def json(self) -> dict[str, Any]:
        """Parse the text as a JSON object.

        Markdown code fences are stripped and, failing a direct parse, the
        first ``{...}`` block is extracted.
        """

        return parse_json_object(self.text)


class GenerativeCallService(Protocol):
    async def generate(self, request: GenerationRequest) -> GenerationResult: ...


_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.I)
_OBJECT = re.compile(r"\{[\s\S]*\}")


def parse_json_object(text: str) -> dict[str, Any]:
    cleaned = _FENCE.sub("", (text or "").strip()).strip()
    if not cleaned:
        raise MalformedResponseError("Empty response")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _OBJECT.search(cleaned)
        if not match:
            raise MalformedResponseError("Response is not JSON") from None
        try:
            parsed = json.loads(match.group())
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(f"Response is not JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedResponseError("Response JSON is not an object")
    return parsed


class OpenAIGenerativeService:
    """Chat-completions backed implementation of :class:`GenerativeCallService`."""

    def __init__(
        self,
        api_key: str | None,
        *,
        timeout: float = 15.0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._timeout = timeout
        if client is not None:
            self._client: AsyncOpenAI | None = client
        elif api_key:
            self._client = AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        else:
            self._client = None

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        if self._client is None:
            raise GenerationError("OPENAI_API_KEY not configured")
        messages = [{"role": "system", "content": request.system_prompt}]
        messages.extend({"role": m["role"], "content": m["content"]} for m in request.messages)
        params: dict[str, Any] = {
            "model": request.model,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "messages": messages,
        }
        if request.json_output:
            params["response_format"] = {"type": "json_object"}
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(**params), timeout=self._timeout
            )
        except (asyncio.TimeoutError, openai.APITimeoutError) as exc:
            raise GenerationTimeout(f"{request.model} timed out after {self._timeout}s") from exc
        except openai.OpenAIError as exc:
            raise GenerationError(f"{request.model} call failed: {exc}") from exc

        if not response.choices:
            raise MalformedResponseError("Response has no choices")
        choice = response.choices[0]
        content = choice.message.content if choice.message else None
        if content is None:
            raise MalformedResponseError("Response has no content")
        usage = response.usage
        return GenerationResult(
            text=content,
            finish_reason=choice.finish_reason,
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            model=response.model,
        )


@dataclass
class DisabledGenerativeService:
    """Service that refuses every call; used for templates-only processing."""

    reason: str = "generation disabled"
    calls: int = field(default=0, init=False)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.calls += 1
        raise GenerationError(self.reason)
