import json
import pathlib
import sys
from collections import deque
from dataclasses import dataclass, field

import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from replyforce.agents.providers import (
    GenerationError,
    GenerationRequest,
    GenerationResult,
    GenerationTimeout,
)
from replyforce.agents.schemas import (
    BrandVoice,
    Channel,
    ConversationTurn,
    LeadSnapshot,
    PipelineInput,
    TurnRole,
)
from replyforce.app_logging import init_logging


@dataclass
class ScriptedGenerativeService:
    """Fake generative service replaying queued responses.

    Each queued item is a ``GenerationResult``, a ``dict`` (serialised as
    JSON), a ``str`` or an exception instance to raise. When the script runs
    dry, ``default`` is used the same way; ``None`` means "raise".
    """

    script: deque = field(default_factory=deque)
    default: object = None
    requests: list[GenerationRequest] = field(default_factory=list)

    def push(self, *items: object) -> "ScriptedGenerativeService":
        self.script.extend(items)
        return self

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.requests.append(request)
        item = self.script.popleft() if self.script else self.default
        if item is None:
            raise GenerationError("no scripted response")
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, GenerationResult):
            return item
        if isinstance(item, dict):
            return GenerationResult(text=json.dumps(item), finish_reason="stop", prompt_tokens=10, completion_tokens=5)
        return GenerationResult(text=str(item), finish_reason="stop", prompt_tokens=40, completion_tokens=20)


@pytest.fixture
def failing_service() -> ScriptedGenerativeService:
    return ScriptedGenerativeService(default=GenerationTimeout("timed out"))


@pytest.fixture
def make_input():
    def _make(
        text: str,
        *,
        channel: Channel = Channel.FACEBOOK,
        history: list[tuple[str, str]] | None = None,
        prior: tuple[str, int] | None = None,
        company: str = "Acme",
    ) -> PipelineInput:
        turns = tuple(
            ConversationTurn(role=TurnRole(role), content=content) for role, content in history or []
        )
        prior_lead = LeadSnapshot(tag=prior[0], score=prior[1]) if prior else None
        return PipelineInput(
            message_id="m-1",
            tenant_id="t-1",
            conversation_id="c-1",
            channel=channel,
            text=text,
            sender_id="user-1",
            sender_name="Dana",
            history=turns,
            brand_voice=BrandVoice(company_name=company),
            prior_lead=prior_lead,
        )

    return _make


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
