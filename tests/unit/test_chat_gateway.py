from __future__ import annotations

import json
import threading
import time
from types import SimpleNamespace
from typing import Any

import httpx
import openai
import pytest

from summarium.core.errors import ConfigurationError, GenerationError, HttpStatusError
from summarium.infrastructure.http.client import HttpResponse, RetryPolicy
from summarium.infrastructure.llm.chat_gateway import (
    ChatGateway,
    ChatMessage,
    CompletionReason,
    ProviderHost,
    parse_chat_completion,
    parse_token_estimate,
)

PRIMARY = ProviderHost(name="primary", base_url="https://primary.example/v1")
FALLBACK = ProviderHost(name="fallback", base_url="https://fallback.example/v1")


def _reply(content: str, finish_reason: Any = "stop") -> dict[str, Any]:
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": finish_reason}]}


class _FakeCompletions:
    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = outcomes
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class _FakeClientFactory:
    def __init__(self, **outcomes_by_host: list[Any]) -> None:
        self.completions = {name: _FakeCompletions(list(items)) for name, items in outcomes_by_host.items()}

    def __call__(self, host: ProviderHost, api_key: str) -> Any:
        return SimpleNamespace(chat=SimpleNamespace(completions=self.completions[host.name]))


def _gateway(factory: _FakeClientFactory, *, attempts: int = 2, **kwargs: Any) -> ChatGateway:
    policy = RetryPolicy(attempts=attempts, timeout_seconds=30.0, sleep=lambda _: None)
    return ChatGateway(
        hosts=[PRIMARY, FALLBACK],
        api_key=kwargs.pop("api_key", "secret-key"),
        policy=policy,
        client_factory=factory,
        **kwargs,
    )


def _messages() -> list[ChatMessage]:
    return [ChatMessage("system", "persona"), ChatMessage("user", "summarize")]


def test_primary_host_success_passes_request_options() -> None:
    factory = _FakeClientFactory(primary=[_reply("Summary text", "length")], fallback=[])

    result = _gateway(factory).complete(model="kimi-k2.5", messages=_messages(), max_tokens=7000)

    assert result.content == "Summary text"
    assert result.completion_reason is CompletionReason.LENGTH
    assert result.host == "primary"
    call = factory.completions["primary"].calls[0]
    assert call["max_tokens"] == 7000
    assert call["timeout"] == 30.0
    assert call["extra_body"] == {"thinking": {"type": "enabled"}}
    assert "temperature" not in call
    assert call["messages"][0] == {"role": "system", "content": "persona"}


def test_other_models_use_temperature() -> None:
    factory = _FakeClientFactory(primary=[_reply("x")], fallback=[])

    _gateway(factory).complete(model="moonshot-v1-128k", messages=_messages(), max_tokens=100)

    assert factory.completions["primary"].calls[0]["temperature"] == 0.35


def test_partial_assistant_message_is_flagged() -> None:
    assert ChatMessage("assistant", "so far", partial=True).to_payload() == {
        "role": "assistant",
        "content": "so far",
        "partial": True,
    }


def test_falls_back_after_primary_exhausts_retries() -> None:
    factory = _FakeClientFactory(
        primary=[ConnectionError("reset"), ConnectionError("reset")],
        fallback=[_reply("From fallback")],
    )

    result = _gateway(factory, attempts=2).complete(model="m", messages=_messages(), max_tokens=10)

    assert result.content == "From fallback"
    assert result.host == "fallback"
    assert len(factory.completions["primary"].calls) == 2


def test_falls_back_immediately_on_authentication_error() -> None:
    request = httpx.Request("POST", f"{PRIMARY.base_url}/chat/completions")
    denied = openai.AuthenticationError("bad key", response=httpx.Response(401, request=request), body=None)
    factory = _FakeClientFactory(primary=[denied], fallback=[_reply("ok")])

    result = _gateway(factory, attempts=3).complete(model="m", messages=_messages(), max_tokens=10)

    assert result.host == "fallback"
    assert len(factory.completions["primary"].calls) == 1


def test_both_hosts_failing_names_both() -> None:
    factory = _FakeClientFactory(
        primary=[ConnectionError("down")] * 2,
        fallback=[ConnectionError("down")] * 2,
    )

    with pytest.raises(GenerationError) as info:
        _gateway(factory).complete(model="m", messages=_messages(), max_tokens=10)

    message = str(info.value)
    assert PRIMARY.base_url in message
    assert FALLBACK.base_url in message


def test_unusable_reply_does_not_switch_hosts() -> None:
    factory = _FakeClientFactory(primary=[_reply("   ")], fallback=[_reply("never used")])

    with pytest.raises(GenerationError):
        _gateway(factory).complete(model="m", messages=_messages(), max_tokens=10)
    assert factory.completions["fallback"].calls == []


def test_missing_api_key_is_a_configuration_error() -> None:
    factory = _FakeClientFactory(primary=[], fallback=[])

    with pytest.raises(ConfigurationError):
        _gateway(factory, api_key=None).complete(model="m", messages=_messages(), max_tokens=10)


def test_parse_chat_completion_is_strict() -> None:
    assert parse_chat_completion(_reply("text", "stop")).completion_reason is CompletionReason.STOP
    assert parse_chat_completion(_reply("text", None)).completion_reason is CompletionReason.UNKNOWN
    assert parse_chat_completion(_reply("text", "content_filter")).completion_reason is CompletionReason.OTHER

    with pytest.raises(GenerationError):
        parse_chat_completion({"choices": []})
    with pytest.raises(GenerationError):
        parse_chat_completion({"choices": [{"message": {"content": None}}]})
    with pytest.raises(GenerationError):
        parse_chat_completion(_reply("text", 3))


class _FakeHttpClient:
    def __init__(self, outcomes: list[Any]) -> None:
        self.outcomes = outcomes
        self.calls: list[tuple[str, Any, dict[str, str]]] = []

    def post_json(self, url: str, payload: Any, *, label: str, headers=None, policy=None) -> HttpResponse:
        self.calls.append((url, payload, dict(headers or {})))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return HttpResponse(status=200, headers={}, body=json.dumps(outcome).encode("utf-8"))


def test_estimate_tokens_uses_fallback_host() -> None:
    http_client = _FakeHttpClient(
        [
            HttpStatusError(404, "Not Found", f"{PRIMARY.base_url}/tokenizers/estimate-token-count"),
            {"data": {"total_tokens": 1234}},
        ]
    )
    gateway = _gateway(_FakeClientFactory(primary=[], fallback=[]), http_client=http_client)

    assert gateway.estimate_tokens(model="m", messages=_messages()) == 1234
    assert http_client.calls[1][0] == f"{FALLBACK.base_url}/tokenizers/estimate-token-count"
    assert http_client.calls[1][2]["Authorization"] == "Bearer secret-key"


def test_parse_token_estimate_rejects_missing_total() -> None:
    assert parse_token_estimate({"data": {"total_tokens": 0}}) == 0
    with pytest.raises(GenerationError):
        parse_token_estimate({"data": {}})
    with pytest.raises(GenerationError):
        parse_token_estimate({"data": {"total_tokens": True}})


class _HangingClient:
    """Blocks in create() until close() is called, like a stalled streaming response."""

    def __init__(self) -> None:
        self.closed = threading.Event()
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs: Any) -> Any:
        self.closed.wait(5.0)
        raise ConnectionError("connection closed")

    def close(self) -> None:
        self.closed.set()


def test_generation_call_is_aborted_at_deadline() -> None:
    clients: list[_HangingClient] = []

    def factory(host: ProviderHost, api_key: str) -> _HangingClient:
        clients.append(_HangingClient())
        return clients[-1]

    gateway = ChatGateway(
        hosts=[PRIMARY],
        api_key="secret-key",
        policy=RetryPolicy(attempts=2, timeout_seconds=0.3, sleep=lambda _: None),
        client_factory=factory,
    )

    started = time.perf_counter()
    with pytest.raises(GenerationError) as info:
        gateway.complete(model="m", messages=_messages(), max_tokens=10)
    elapsed = time.perf_counter() - started

    assert elapsed < 2.0
    assert "exceeded" in str(info.value)
    # Each timed-out attempt closes its client and the retry gets a fresh one.
    assert len(clients) == 2
    assert all(client.closed.is_set() for client in clients)
