from __future__ import annotations

import concurrent.futures
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import openai
from openai import OpenAI

from summarium.core.errors import (
    ConfigurationError,
    GenerationError,
    HttpStatusError,
    RetryExhaustedError,
)
from summarium.infrastructure.http.client import HttpClient, RetryPolicy, is_retryable_error

logger = logging.getLogger(__name__)

_RETRYABLE_PROVIDER_STATUSES = frozenset({408, 409, 425, 429})


class CompletionReason(str, enum.Enum):
    STOP = "stop"
    LENGTH = "length"
    OTHER = "other"
    UNKNOWN = "unknown"

    @classmethod
    def from_provider(cls, value: Any) -> "CompletionReason":
        if value is None:
            return cls.UNKNOWN
        if not isinstance(value, str):
            raise GenerationError(f"Provider returned a non-string finish_reason: {value!r}")
        normalized = value.strip().lower()
        if normalized == "stop":
            return cls.STOP
        if normalized == "length":
            return cls.LENGTH
        return cls.OTHER

    @property
    def is_natural_stop(self) -> bool:
        return self is CompletionReason.STOP


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: str
    content: str
    partial: bool = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.partial:
            payload["partial"] = True
        return payload


@dataclass(frozen=True, slots=True)
class ChatResult:
    content: str
    completion_reason: CompletionReason
    raw_finish_reason: str | None = None
    host: str | None = None


@dataclass(frozen=True, slots=True)
class ProviderHost:
    name: str
    base_url: str


def parse_chat_completion(payload: Mapping[str, Any]) -> ChatResult:
    """Decode a chat-completion reply into a ChatResult or reject it."""
    if not isinstance(payload, Mapping):
        raise GenerationError("Provider reply is not a JSON object.")
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise GenerationError("Provider reply has no choices.")
    first = choices[0]
    if not isinstance(first, Mapping):
        raise GenerationError("Provider reply choice is not an object.")
    message = first.get("message")
    if not isinstance(message, Mapping):
        raise GenerationError("Provider reply choice has no message.")
    content = message.get("content")
    if not isinstance(content, str) or not content.strip():
        raise GenerationError("Provider returned empty content.")
    raw_finish = first.get("finish_reason")
    return ChatResult(
        content=content,
        completion_reason=CompletionReason.from_provider(raw_finish),
        raw_finish_reason=raw_finish if isinstance(raw_finish, str) else None,
    )


def parse_token_estimate(payload: Any) -> int:
    data = payload.get("data") if isinstance(payload, Mapping) else None
    total = data.get("total_tokens") if isinstance(data, Mapping) else None
    if isinstance(total, bool) or not isinstance(total, int) or total < 0:
        raise GenerationError("Token estimate reply has no valid total_tokens.")
    return total


def is_retryable_provider_error(exc: BaseException) -> bool:
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code in _RETRYABLE_PROVIDER_STATUSES or exc.status_code >= 500
    if isinstance(exc, GenerationError):
        return False
    return is_retryable_error(exc)


class ChatGateway:
    """OpenAI-compatible chat completions against a primary host with a secondary fallback.

    Each host gets the full retry policy; the secondary is tried only once the primary has
    failed outright (retries exhausted or a non-retryable response such as 401).
    """

    def __init__(
        self,
        *,
        hosts: Sequence[ProviderHost],
        api_key: str | None,
        policy: RetryPolicy,
        http_client: HttpClient | None = None,
        client_factory: Callable[[ProviderHost, str], Any] | None = None,
    ) -> None:
        if not hosts:
            raise ValueError("ChatGateway needs at least one provider host")
        self.hosts = list(hosts)
        self.api_key = api_key
        self.policy = policy
        self.http_client = http_client or HttpClient(policy)
        self._client_factory = client_factory or _default_client_factory
        self._clients: dict[str, Any] = {}

    def complete(
        self,
        *,
        model: str,
        messages: Sequence[ChatMessage],
        max_tokens: int,
    ) -> ChatResult:
        request: dict[str, Any] = {
            "model": model,
            "messages": [m.to_payload() for m in messages],
            "max_tokens": int(max_tokens),
        }
        request.update(_sampling_options(model))

        def call_host(host: ProviderHost) -> ChatResult:
            def attempt(timeout: float) -> ChatResult:
                response = self._create_with_deadline(host, request, timeout)
                payload = response.model_dump() if hasattr(response, "model_dump") else response
                result = parse_chat_completion(payload)
                return ChatResult(
                    content=result.content,
                    completion_reason=result.completion_reason,
                    raw_finish_reason=result.raw_finish_reason,
                    host=host.name,
                )

            return self.policy.run(
                attempt,
                label=f"generation API ({host.name} host)",
                is_retryable=is_retryable_provider_error,
            )

        return self._with_fallback(call_host, what="generation API")

    def estimate_tokens(self, *, model: str, messages: Sequence[ChatMessage]) -> int:
        body = {"model": model, "messages": [m.to_payload() for m in messages]}

        def call_host(host: ProviderHost) -> int:
            response = self.http_client.post_json(
                f"{host.base_url.rstrip('/')}/tokenizers/estimate-token-count",
                body,
                label=f"token estimate ({host.name} host)",
                headers={"Authorization": f"Bearer {self._require_api_key()}"},
                policy=self.policy,
            )
            try:
                payload = response.json()
            except ValueError as exc:
                raise GenerationError(f"Token estimate reply is not JSON: {exc}") from exc
            return parse_token_estimate(payload)

        return self._with_fallback(call_host, what="token estimate")

    def _with_fallback(self, call_host: Callable[[ProviderHost], Any], *, what: str) -> Any:
        failures: list[str] = []
        for index, host in enumerate(self.hosts):
            try:
                return call_host(host)
            except (RetryExhaustedError, HttpStatusError, openai.APIError) as exc:
                failures.append(f"{host.name} host {host.base_url}: {exc}")
                if index + 1 < len(self.hosts):
                    logger.warning(
                        "%s failed on %s host, trying %s host: %s",
                        what,
                        host.name,
                        self.hosts[index + 1].name,
                        exc,
                    )
        raise GenerationError(f"{what} failed on all hosts ({'; '.join(failures)})")

    def _create_with_deadline(self, host: ProviderHost, request: dict[str, Any], timeout: float) -> Any:
        """Run one completion call, abandoning it once ``timeout`` seconds of wall-clock time pass."""
        client = self._client(host)
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(client.chat.completions.create, timeout=timeout, **request)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as exc:
            # Closing the client aborts the request still running in the worker thread.
            self._discard_client(host)
            raise TimeoutError(f"generation call on {host.name} host exceeded {timeout:g}s") from exc
        finally:
            executor.shutdown(wait=False)

    def _client(self, host: ProviderHost) -> Any:
        client = self._clients.get(host.base_url)
        if client is None:
            client = self._client_factory(host, self._require_api_key())
            self._clients[host.base_url] = client
        return client

    def _discard_client(self, host: ProviderHost) -> None:
        client = self._clients.pop(host.base_url, None)
        close = getattr(client, "close", None)
        if close is not None:
            close()

    def _require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigurationError("Missing generation API key. Set MOONSHOT_API_KEY.")
        return self.api_key


def _default_client_factory(host: ProviderHost, api_key: str) -> OpenAI:
    # Retries are owned by RetryPolicy, not the SDK.
    return OpenAI(api_key=api_key, base_url=host.base_url, max_retries=0)


def _sampling_options(model: str) -> dict[str, Any]:
    # kimi-k2.5 runs with fixed sampling; passing temperature is rejected.
    if model == "kimi-k2.5":
        return {"extra_body": {"thinking": {"type": "enabled"}}}
    return {"temperature": 0.35}
