import asyncio
from types import SimpleNamespace

import pytest

from replyforce.agents.providers import (
    DisabledGenerativeService,
    GenerationError,
    GenerationRequest,
    GenerationTimeout,
    MalformedResponseError,
    OpenAIGenerativeService,
    parse_json_object,
)


class FakeCompletions:
    def __init__(self, response=None, delay=0.0):
        self.response = response
        self.delay = delay
        self.calls = []

    async def create(self, **params):
        self.calls.append(params)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.response


def _client(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def _response(content, finish_reason="stop"):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason=finish_reason)],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=8),
        model="gpt-4o-mini",
    )


REQUEST = GenerationRequest(
    model="gpt-4o-mini",
    system_prompt="classify",
    messages=({"role": "user", "content": "hi"},),
    temperature=0.1,
    max_tokens=300,
    json_output=True,
)


def test_chat_completion_is_mapped_to_result():
    completions = FakeCompletions(_response('{"topic": "greeting"}'))
    service = OpenAIGenerativeService(None, client=_client(completions))

    result = asyncio.run(service.generate(REQUEST))

    assert result.json() == {"topic": "greeting"}
    assert result.tokens_used == 20
    assert not result.truncated
    params = completions.calls[0]
    assert params["messages"][0] == {"role": "system", "content": "classify"}
    assert params["messages"][1] == {"role": "user", "content": "hi"}
    assert params["response_format"] == {"type": "json_object"}
    assert params["max_tokens"] == 300


def test_plain_text_request_has_no_response_format():
    completions = FakeCompletions(_response("Hello!", finish_reason="length"))
    service = OpenAIGenerativeService(None, client=_client(completions))
    request = GenerationRequest(model="gpt-4o", system_prompt="reply")

    result = asyncio.run(service.generate(request))

    assert result.truncated
    assert "response_format" not in completions.calls[0]


def test_missing_key_raises_generation_error():
    with pytest.raises(GenerationError):
        asyncio.run(OpenAIGenerativeService(None).generate(REQUEST))


def test_slow_call_times_out():
    completions = FakeCompletions(_response("{}"), delay=0.2)
    service = OpenAIGenerativeService(None, timeout=0.01, client=_client(completions))
    with pytest.raises(GenerationTimeout):
        asyncio.run(service.generate(REQUEST))


def test_empty_choices_are_malformed():
    response = SimpleNamespace(choices=[], usage=None, model="x")
    service = OpenAIGenerativeService(None, client=_client(FakeCompletions(response)))
    with pytest.raises(MalformedResponseError):
        asyncio.run(service.generate(REQUEST))


def test_disabled_service_counts_and_refuses():
    service = DisabledGenerativeService("token budget exhausted")
    with pytest.raises(GenerationError, match="token budget exhausted"):
        asyncio.run(service.generate(REQUEST))
    assert service.calls == 1


@pytest.mark.parametrize(
    "text,expected",
    [
        ('{"a": 1}', {"a": 1}),
        ('```json\n{"a": 1}\n```', {"a": 1}),
        ('Sure, here you go: {"a": 1} hope that helps', {"a": 1}),
    ],
)
def test_parse_json_object(text, expected):
    assert parse_json_object(text) == expected


@pytest.mark.parametrize("text", ["", "   ", "no json here", "[1, 2]", "{broken"])
def test_parse_json_object_rejects(text):
    with pytest.raises(MalformedResponseError):
        parse_json_object(text)
