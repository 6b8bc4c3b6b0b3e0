from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

from summarium.application.services.continuation_service import ContinuationService
from summarium.application.services.summary_job_service import SummaryJobService
from summarium.core.config import AppPaths, PipelineSettings
from summarium.core.errors import GenerationError
from summarium.domain.models.job import STATUS_RUNNING, SourceReference
from summarium.infrastructure.db.repos.summary_job_repo import SummaryJobRepo
from summarium.infrastructure.llm.chat_gateway import ChatResult, CompletionReason
from summarium.infrastructure.parsers.pdf_text import ExtractedDocument
from summarium.web.app import create_app

SECRET = "s3cret"
HEADERS = {"x-import-secret": SECRET}
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class _FakeDownloader:
    def __init__(self) -> None:
        self.calls: list[SourceReference] = []

    def download(self, source: SourceReference) -> bytes:
        self.calls.append(source)
        return b"%PDF"


class _FakeExtractor:
    def extract(self, data: bytes) -> ExtractedDocument:
        return ExtractedDocument(text="[PAGE 1]\nBody.", source_page_count=1, pages_read=1, non_empty_pages=1)


class _FakeGateway:
    def __init__(self) -> None:
        self.replies: list[Any] = []

    def complete(self, *, model: str, messages, max_tokens: int) -> ChatResult:
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


def _paths(tmp_path: Path) -> AppPaths:
    data_dir = tmp_path / "proj" / ".summarium"
    return AppPaths(project_root=tmp_path / "proj", data_dir=data_dir, db_path=data_dir / "summarium.db")


def _client(tmp_path: Path, *, secret: str | None = SECRET):
    paths = _paths(tmp_path)
    gateway = _FakeGateway()
    downloader = _FakeDownloader()

    def factory() -> SummaryJobService:
        return SummaryJobService(
            job_repo=SummaryJobRepo(paths.db_path),
            downloader=downloader,
            extractor=_FakeExtractor(),
            continuation=ContinuationService(gateway),
            instruction="Summarize.",
            default_model="kimi-k2.5",
            clock=lambda: NOW,
        )

    app = create_app(paths, PipelineSettings(trigger_secret=secret), service_factory=factory)
    return TestClient(app), gateway, downloader, paths


def _create_job(client: TestClient, **body: Any) -> str:
    payload = {"fileName": "Deep Work - Cal Newport.pdf", "sourceUrl": "https://files.example/dw.pdf"}
    payload.update(body)
    r = client.post("/api/jobs", json=payload, headers=HEADERS)
    assert r.status_code == 200, r.text
    return r.json()["jobId"]


def test_health_needs_no_secret(tmp_path: Path) -> None:
    client, *_ = _client(tmp_path)

    r = client.get("/api/health")

    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_secret_is_required(tmp_path: Path) -> None:
    client, *_ = _client(tmp_path)

    assert client.post("/api/jobs/any/trigger").status_code == 401
    assert client.post("/api/jobs/any/trigger", headers={"x-import-secret": "wrong"}).status_code == 401
    assert client.get("/api/jobs", headers=HEADERS).status_code == 200


def test_unconfigured_secret_rejects_everything(tmp_path: Path) -> None:
    client, *_ = _client(tmp_path, secret=None)

    assert client.post("/api/jobs/any/trigger", headers=HEADERS).status_code == 500


def test_trigger_runs_steps_until_done(tmp_path: Path) -> None:
    client, gateway, _, _ = _client(tmp_path)
    job_id = _create_job(client)
    gateway.replies = [
        ChatResult(content="First part. ", completion_reason=CompletionReason.LENGTH),
        ChatResult(content="Second part.", completion_reason=CompletionReason.STOP),
    ]

    r1 = client.post(f"/api/jobs/{job_id}/trigger", headers=HEADERS)
    assert r1.status_code == 200
    assert r1.json() == {"ok": True, "jobId": job_id, "status": "queued"}

    r2 = client.post(f"/api/jobs/{job_id}/trigger", headers=HEADERS)
    assert r2.json()["status"] == "done"

    # Terminal jobs are idempotent.
    r3 = client.post(f"/api/jobs/{job_id}/trigger", headers=HEADERS)
    assert r3.status_code == 200
    assert r3.json()["status"] == "done"

    job = client.get(f"/api/jobs/{job_id}", headers=HEADERS).json()
    assert job["resultText"] == "First part. Second part."
    assert job["title"] == "Deep Work"
    assert job["author"] == "Cal Newport"
    assert job["stepCount"] == 2


def test_trigger_unknown_job_is_404(tmp_path: Path) -> None:
    client, *_ = _client(tmp_path)

    assert client.post("/api/jobs/nope/trigger", headers=HEADERS).status_code == 404
    assert client.get("/api/jobs/nope", headers=HEADERS).status_code == 404


def test_trigger_busy_job_is_409(tmp_path: Path) -> None:
    client, _, _, paths = _client(tmp_path)
    job_id = _create_job(client)
    SummaryJobRepo(paths.db_path).update_fields(
        job_id,
        status=STATUS_RUNNING,
        updated_at=(NOW - timedelta(minutes=1)).isoformat(),
    )

    r = client.post(f"/api/jobs/{job_id}/trigger", headers=HEADERS)

    assert r.status_code == 409


def test_failed_step_reports_error_then_requeue(tmp_path: Path) -> None:
    client, gateway, _, _ = _client(tmp_path)
    job_id = _create_job(client)
    gateway.replies = [GenerationError("generation API failed on all hosts")]

    r = client.post(f"/api/jobs/{job_id}/trigger", headers=HEADERS)
    assert r.status_code == 500
    body = r.json()
    assert body["ok"] is False
    assert body["status"] == "error"
    assert "all hosts" in body["error"]

    r = client.post(f"/api/jobs/{job_id}/trigger", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["status"] == "error"
    assert "all hosts" in r.json()["error"]

    r = client.post(f"/api/jobs/{job_id}/requeue", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["status"] == "queued"
    assert client.post(f"/api/jobs/{job_id}/requeue", headers=HEADERS).status_code == 409


def test_trigger_body_supplies_file_host_token(tmp_path: Path) -> None:
    client, gateway, downloader, _ = _client(tmp_path)
    job_id = _create_job(client, sourceUrl=None, driveFileId="file-9")
    gateway.replies = [ChatResult(content="Done.", completion_reason=CompletionReason.STOP)]

    r = client.post(
        f"/api/jobs/{job_id}/trigger",
        json={"driveAccessToken": "tok"},
        headers=HEADERS,
    )

    assert r.status_code == 200
    assert downloader.calls == [SourceReference(file_id="file-9", access_token="tok")]


def test_create_job_validation(tmp_path: Path) -> None:
    client, *_ = _client(tmp_path)

    r = client.post("/api/jobs", json={"fileName": "Book.pdf"}, headers=HEADERS)
    assert r.status_code == 400
    r = client.post("/api/jobs", json={"sourceUrl": "https://files.example/x.pdf"}, headers=HEADERS)
    assert r.status_code == 422


def test_list_jobs_filters_by_status(tmp_path: Path) -> None:
    client, *_ = _client(tmp_path)
    _create_job(client)
    _create_job(client)

    r = client.get("/api/jobs", params={"status": "queued"}, headers=HEADERS)
    assert r.json()["count"] == 2
    r = client.get("/api/jobs", params={"status": "done"}, headers=HEADERS)
    assert r.json()["count"] == 0
