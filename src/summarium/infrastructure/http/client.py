from __future__ import annotations

import json
import logging
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, TypeVar

from summarium.core.errors import HttpStatusError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})
_USER_AGENT = "summarium/0.1"
_READ_CHUNK_BYTES = 64 * 1024


def is_retryable_error(exc: BaseException) -> bool:
    """Network faults, timeouts, throttling and 5xx responses are worth another attempt."""
    if isinstance(exc, HttpStatusError):
        return exc.status in _RETRYABLE_STATUSES or exc.status >= 500
    return isinstance(exc, (urllib.error.URLError, TimeoutError, socket.timeout, ConnectionError, OSError))


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff and an optional overall deadline.

    ``timeout_seconds`` bounds a single attempt; ``deadline_seconds`` bounds the whole
    run including backoff sleeps. Each attempt receives the smaller of the two as its timeout.
    """

    attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_factor: float = 2.0
    timeout_seconds: float = 60.0
    deadline_seconds: float | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False, compare=False)

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt: base, base*factor, base*factor^2..."""
        return self.backoff_base_seconds * (self.backoff_factor ** max(0, attempt - 1))

    def run(
        self,
        fn: Callable[[float], T],
        *,
        label: str,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    ) -> T:
        attempts = max(1, int(self.attempts))
        started = self.clock()
        last_error: BaseException | None = None
        attempts_made = 0

        for attempt in range(1, attempts + 1):
            timeout = self._attempt_timeout(started)
            if timeout <= 0:
                logger.warning("%s: deadline of %ss reached before attempt %s", label, self.deadline_seconds, attempt)
                break
            attempts_made = attempt
            try:
                return fn(timeout)
            except Exception as exc:
                if not is_retryable(exc):
                    raise
                last_error = exc
                logger.warning("%s attempt %s/%s failed: %s", label, attempt, attempts, exc)
                if attempt >= attempts:
                    break
                delay = self.backoff_delay(attempt)
                if self.deadline_seconds is not None:
                    remaining = self.deadline_seconds - (self.clock() - started)
                    if remaining <= delay:
                        logger.warning("%s: not enough time left before deadline for another attempt", label)
                        break
                self.sleep(delay)

        raise RetryExhaustedError(label, attempts_made, last_error)

    def _attempt_timeout(self, started: float) -> float:
        timeout = float(self.timeout_seconds)
        if self.deadline_seconds is None:
            return timeout
        remaining = float(self.deadline_seconds) - (self.clock() - started)
        return min(timeout, remaining)


@dataclass(slots=True)
class HttpResponse:
    status: int
    headers: dict[str, str]
    body: bytes

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class HttpClient:
    """urllib-based client; every request runs under a RetryPolicy."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        opener: Callable[..., Any] = urllib.request.urlopen,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._opener = opener

    def request(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
        label: str,
        policy: RetryPolicy | None = None,
    ) -> HttpResponse:
        active = policy or self.policy
        merged_headers = {"User-Agent": _USER_AGENT}
        merged_headers.update(headers or {})

        def attempt(timeout: float) -> HttpResponse:
            ends_at = active.clock() + timeout
            req = urllib.request.Request(url, data=body, headers=merged_headers, method=method)
            try:
                with self._opener(req, timeout=timeout) as resp:
                    status = int(getattr(resp, "status", 200))
                    payload = _read_body(resp, ends_at=ends_at, clock=active.clock, url=url)
                    response_headers = {str(k): str(v) for k, v in resp.headers.items()} if resp.headers else {}
            except urllib.error.HTTPError as exc:
                excerpt = _read_error_excerpt(exc)
                raise HttpStatusError(exc.code, str(exc.reason or ""), url, excerpt) from exc
            if not 200 <= status < 300:
                raise HttpStatusError(status, "", url, payload[:500].decode("utf-8", errors="replace"))
            return HttpResponse(status=status, headers=response_headers, body=payload)

        return active.run(attempt, label=label)

    def get(
        self,
        url: str,
        *,
        label: str,
        headers: Mapping[str, str] | None = None,
        policy: RetryPolicy | None = None,
    ) -> HttpResponse:
        return self.request(url, method="GET", headers=headers, label=label, policy=policy)

    def post_json(
        self,
        url: str,
        payload: Any,
        *,
        label: str,
        headers: Mapping[str, str] | None = None,
        policy: RetryPolicy | None = None,
    ) -> HttpResponse:
        merged = {"Content-Type": "application/json"}
        merged.update(headers or {})
        body = json.dumps(payload).encode("utf-8")
        return self.request(url, method="POST", headers=merged, body=body, label=label, policy=policy)


def _read_error_excerpt(exc: urllib.error.HTTPError, limit: int = 500) -> str:
    try:
        raw = exc.read()
    except Exception:
        return ""
    if not raw:
        return ""
    return raw[:limit].decode("utf-8", errors="replace").strip()


def _read_body(resp: Any, *, ends_at: float, clock: Callable[[], float], url: str) -> bytes:
    """Read a response body in chunks; raises TimeoutError once ``ends_at`` has passed.

    The socket timeout bounds each read, not the whole body.
    """
    chunks: list[bytes] = []
    while True:
        if clock() > ends_at:
            raise TimeoutError(f"Reading {url} exceeded the attempt time limit")
        chunk = resp.read1(_READ_CHUNK_BYTES)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)
