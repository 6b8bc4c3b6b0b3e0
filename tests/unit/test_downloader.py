from __future__ import annotations

from typing import Any

import pytest

from summarium.core.errors import HttpStatusError, RetryExhaustedError, SourceDownloadError
from summarium.domain.models.job import SourceReference
from summarium.infrastructure.http.client import HttpResponse
from summarium.infrastructure.sources.downloader import DRIVE_FILES_ENDPOINT, SourceDownloader


class _FakeHttpClient:
    def __init__(self, outcome: Any = b"%PDF-1.7") -> None:
        self.outcome = outcome
        self.calls: list[tuple[str, str, dict[str, str]]] = []

    def get(self, url: str, *, label: str, headers=None, policy=None) -> HttpResponse:
        self.calls.append((url, label, dict(headers or {})))
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return HttpResponse(status=200, headers={}, body=self.outcome)


def test_url_source_is_fetched_directly() -> None:
    http = _FakeHttpClient()

    data = SourceDownloader(http).download(SourceReference(url="https://files.example/book.pdf"))

    assert data == b"%PDF-1.7"
    assert http.calls == [("https://files.example/book.pdf", "download source document", {})]


def test_file_host_source_sends_bearer_token() -> None:
    http = _FakeHttpClient()

    SourceDownloader(http).download(SourceReference(file_id="abc/123", access_token="tok"))

    url, _, headers = http.calls[0]
    assert url == f"{DRIVE_FILES_ENDPOINT}/abc%2F123?alt=media"
    assert headers == {"Authorization": "Bearer tok"}


def test_url_wins_over_file_host() -> None:
    http = _FakeHttpClient()

    SourceDownloader(http).download(
        SourceReference(url="https://files.example/book.pdf", file_id="abc", access_token="tok")
    )

    assert http.calls[0][0] == "https://files.example/book.pdf"


def test_incomplete_reference_is_rejected() -> None:
    http = _FakeHttpClient()

    with pytest.raises(SourceDownloadError):
        SourceDownloader(http).download(SourceReference(file_id="abc"))
    assert http.calls == []


@pytest.mark.parametrize(
    "failure",
    [
        HttpStatusError(403, "Forbidden", "https://files.example/book.pdf"),
        RetryExhaustedError("download source document", 3, TimeoutError("slow")),
    ],
)
def test_transport_failures_become_download_errors(failure: Exception) -> None:
    with pytest.raises(SourceDownloadError) as info:
        SourceDownloader(_FakeHttpClient(failure)).download(SourceReference(url="https://files.example/book.pdf"))
    assert "download source document failed" in str(info.value)
