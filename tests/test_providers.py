import json

import pytest
import requests

from gdbcopilot.core.cancel import CancelToken
from gdbcopilot.core.state import ChatMessage
from gdbcopilot.errors import ErrorKind, OperationCancelled, ProviderError
from gdbcopilot.llm.metrics import MetricsCollector
from gdbcopilot.llm.providers import ProviderClient, default_provider_configs


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else (json.dumps(payload) if payload is not None else "")

    def json(self):
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.posts = []
        self.closed = False

    def post(self, url, headers=None, json=None, timeout=None):
        self.posts.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.response

    def close(self):
        self.closed = True


def client_for(session, metrics=None):
    return ProviderClient(default_provider_configs(), session_factory=lambda: session, metrics=metrics)


MESSAGES = [ChatMessage("system", "summary"), ChatMessage("user", "hi")]


def test_anthropic_wire_shape():
    session = FakeSession(
        FakeResponse(
            payload={
                "content": [{"type": "tool_use"}, {"type": "text", "text": "hello"}],
                "usage": {"input_tokens": 5, "output_tokens": 7},
            }
        )
    )
    metrics = MetricsCollector()
    reply = client_for(session, metrics).send("anthropic", "sk-a", "claude-x", MESSAGES, system_prompt="SYS")
    assert reply.text == "hello"
    assert reply.usage["total_tokens"] == 12
    post = session.posts[0]
    assert post["url"] == "https://api.anthropic.com/v1/messages"
    assert post["headers"]["x-api-key"] == "sk-a"
    assert post["headers"]["anthropic-version"] == "2023-06-01"
    body = post["json"]
    assert body["model"] == "claude-x"
    assert body["system"] == "SYS\n\nsummary"
    assert body["messages"] == [{"role": "user", "content": "hi"}]
    assert body["max_tokens"] == 4096
    assert session.closed
    assert metrics.provider("anthropic").tokens_used == 12


def test_openai_wire_shape():
    session = FakeSession(FakeResponse(payload={"choices": [{"message": {"content": "yo"}}]}))
    reply = client_for(session).send("openai", "sk-o", "gpt-4o", MESSAGES, system_prompt="SYS")
    assert reply.text == "yo"
    post = session.posts[0]
    assert post["url"] == "https://api.openai.com/v1/chat/completions"
    assert post["headers"]["Authorization"] == "Bearer sk-o"
    body = post["json"]
    assert body["messages"][0] == {"role": "system", "content": "SYS"}
    assert body["messages"][1] == {"role": "system", "content": "summary"}
    assert body["response_format"] == {"type": "json_object"}
    assert "max_tokens" not in body


def test_openrouter_headers():
    session = FakeSession(FakeResponse(payload={"choices": [{"message": {"content": "r"}}]}))
    client_for(session).send("openrouter", "sk-r", "openai/gpt-4o", MESSAGES, system_prompt="SYS")
    post = session.posts[0]
    assert post["url"] == "https://openrouter.ai/api/v1/chat/completions"
    assert post["headers"]["Authorization"] == "Bearer sk-r"
    assert post["headers"]["HTTP-Referer"]
    assert "response_format" not in post["json"]


@pytest.mark.parametrize(
    "status,kind,retryable",
    [
        (401, ErrorKind.AUTH, False),
        (403, ErrorKind.AUTH, False),
        (429, ErrorKind.RATE_LIMIT, True),
        (400, ErrorKind.VALIDATION, False),
        (503, ErrorKind.NETWORK, True),
    ],
)
def test_http_errors_are_classified(status, kind, retryable):
    session = FakeSession(FakeResponse(status, payload={"error": {"message": "nope"}}))
    with pytest.raises(ProviderError) as exc:
        client_for(session).send("openai", "k", "m", MESSAGES)
    assert exc.value.kind is kind
    assert exc.value.retryable is retryable
    assert exc.value.status_code == status
    assert "nope" in exc.value.message


def test_transport_errors():
    with pytest.raises(ProviderError) as exc:
        client_for(FakeSession(exc=requests.Timeout("slow"))).send("openai", "k", "m", MESSAGES)
    assert exc.value.kind is ErrorKind.TIMEOUT and exc.value.retryable

    with pytest.raises(ProviderError) as exc:
        client_for(FakeSession(exc=requests.ConnectionError("refused"))).send("openai", "k", "m", MESSAGES)
    assert exc.value.kind is ErrorKind.NETWORK and exc.value.retryable


def test_unusable_success_is_a_model_error():
    with pytest.raises(ProviderError) as exc:
        client_for(FakeSession(FakeResponse(200, text="<html>"))).send("anthropic", "k", "m", MESSAGES)
    assert exc.value.kind is ErrorKind.MODEL

    with pytest.raises(ProviderError) as exc:
        client_for(FakeSession(FakeResponse(200, payload={"choices": []}))).send("openai", "k", "m", MESSAGES)
    assert exc.value.kind is ErrorKind.MODEL


def test_validation_and_missing_key():
    session = FakeSession(FakeResponse(payload={}))
    with pytest.raises(ProviderError) as exc:
        client_for(session).send("gemini", "k", "m", MESSAGES)
    assert exc.value.kind is ErrorKind.VALIDATION
    with pytest.raises(ProviderError) as exc:
        client_for(session).send("openai", "", "m", MESSAGES)
    assert exc.value.kind is ErrorKind.AUTH
    assert session.posts == []


def test_cancelled_token_short_circuits():
    token = CancelToken()
    token.cancel()
    session = FakeSession(FakeResponse(payload={}))
    with pytest.raises(OperationCancelled):
        client_for(session).send("openai", "k", "m", MESSAGES, token=token)
    assert session.posts == []


def test_timeout_is_clamped_to_deadline():
    session = FakeSession(FakeResponse(payload={"choices": [{"message": {"content": "x"}}]}))
    client_for(session).send("openai", "k", "m", MESSAGES, token=CancelToken(timeout=5.0))
    assert session.posts[0]["timeout"] <= 5.0


def test_connection_check_sends_one_token():
    session = FakeSession(FakeResponse(payload={"content": [{"type": "text", "text": "t"}]}))
    client_for(session).test_connection("anthropic", "k")
    body = session.posts[0]["json"]
    assert body["max_tokens"] == 1
    assert body["model"] == "claude-3-sonnet-20240229"
    assert body["messages"] == [{"role": "user", "content": "test"}]
