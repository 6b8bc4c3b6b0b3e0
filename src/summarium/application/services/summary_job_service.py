from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path, PurePath
from typing import Callable

from summarium.application.services.continuation_service import ContinuationService
from summarium.core.config import PipelineSettings
from summarium.core.errors import (
    JobBusyError,
    JobFailedError,
    JobNotFoundError,
    JobStateError,
    SourceDownloadError,
    ValidationError,
)
from summarium.core.ids import new_uuid
from summarium.core.time import now_utc, parse_iso
from summarium.domain.models.job import (
    STATUS_DONE,
    STATUS_ERROR,
    STATUS_QUEUED,
    STATUS_RUNNING,
    SourceReference,
    SummaryJob,
)
from summarium.infrastructure.db.repos.summary_job_repo import SummaryJobRepo
from summarium.infrastructure.http.client import HttpClient, RetryPolicy
from summarium.infrastructure.llm.chat_gateway import ChatGateway, ProviderHost
from summarium.infrastructure.parsers.pdf_text import PdfTextExtractor
from summarium.infrastructure.sources.downloader import SourceDownloader

logger = logging.getLogger(__name__)

_TITLE_AUTHOR_SPLIT_RE = re.compile(r"\s+(?:-+|—|–)\s+|\s*_\s*")
_KNOWN_SUFFIXES = {".pdf", ".epub", ".txt"}


@dataclass(slots=True)
class JobStepOutcome:
    job: SummaryJob
    advanced: bool
    recovered_stale: bool = False

    @property
    def status(self) -> str:
        return self.job.status


def infer_title_author(file_name: str) -> tuple[str, str | None]:
    """Guess ``(title, author)`` from names like ``"Deep Work - Cal Newport.pdf"``."""
    path = PurePath(file_name.strip())
    base = path.stem if path.suffix.lower() in _KNOWN_SUFFIXES else path.name
    base = base.strip()
    parts = [p.strip() for p in _TITLE_AUTHOR_SPLIT_RE.split(base) if p and p.strip()]
    if len(parts) >= 2:
        author = parts.pop()
        return " - ".join(parts), author
    return base or "Untitled", None


class SummaryJobService:
    """Runs summary jobs one bounded step per invocation.

    Each call to :meth:`run_step` moves a job ``queued -> running -> {queued, done, error}``.
    Callers keep re-triggering until the job is terminal; all state lives in the job table.
    """

    def __init__(
        self,
        *,
        job_repo: SummaryJobRepo,
        downloader: SourceDownloader,
        extractor: PdfTextExtractor,
        continuation: ContinuationService,
        instruction: str,
        default_model: str,
        prompt_version: str | None = None,
        stale_after_seconds: int = 30 * 60,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.job_repo = job_repo
        self.downloader = downloader
        self.extractor = extractor
        self.continuation = continuation
        self.instruction = instruction
        self.default_model = default_model
        self.prompt_version = prompt_version
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self._clock = clock

    @classmethod
    def from_settings(cls, db_path: Path, settings: PipelineSettings) -> "SummaryJobService":
        download_policy = RetryPolicy(
            attempts=settings.http_attempts,
            timeout_seconds=settings.download_timeout_seconds,
            deadline_seconds=settings.download_timeout_seconds * settings.http_attempts,
        )
        generation_policy = RetryPolicy(
            attempts=settings.http_attempts,
            timeout_seconds=settings.generation_timeout_seconds,
            deadline_seconds=settings.generation_timeout_seconds * settings.http_attempts,
        )
        gateway = ChatGateway(
            hosts=[
                ProviderHost(name="primary", base_url=settings.primary_base_url),
                ProviderHost(name="fallback", base_url=settings.fallback_base_url),
            ],
            api_key=settings.api_key,
            policy=generation_policy,
            http_client=HttpClient(generation_policy),
        )
        continuation = ContinuationService(
            gateway,
            max_output_tokens=settings.max_output_tokens,
            partial_max_chars=settings.partial_max_chars,
            tail_chars=settings.tail_chars,
            context_limit_tokens=settings.context_limit_tokens,
            token_safety_margin=settings.token_safety_margin,
            min_output_tokens=settings.min_output_tokens,
        )
        return cls(
            job_repo=SummaryJobRepo(db_path),
            downloader=SourceDownloader(HttpClient(download_policy)),
            extractor=PdfTextExtractor(max_pages=settings.max_pages, max_chars=settings.max_source_chars),
            continuation=continuation,
            instruction=settings.instruction,
            default_model=settings.default_model,
            prompt_version=settings.prompt_version,
            stale_after_seconds=settings.stale_after_seconds,
        )

    def create_job(
        self,
        *,
        source_file_name: str,
        source_url: str | None = None,
        drive_file_id: str | None = None,
        title: str | None = None,
        author: str | None = None,
        model: str | None = None,
    ) -> SummaryJob:
        file_name = (source_file_name or "").strip()
        if not file_name:
            raise ValidationError("A source file name is required.")
        if not (source_url or drive_file_id):
            raise ValidationError("Provide a source URL or a file-host file id.")

        inferred_title, inferred_author = infer_title_author(file_name)
        now = self._now_iso()
        job = SummaryJob(
            id=new_uuid(),
            status=STATUS_QUEUED,
            source_url=source_url or None,
            drive_file_id=drive_file_id or None,
            source_file_name=file_name,
            title=title or inferred_title,
            author=author if author is not None else inferred_author,
            model=model or self.default_model,
            prompt_version=self.prompt_version,
            instruction=self.instruction,
            source_text=None,
            result_text="",
            error_message=None,
            step_count=0,
            created_at=now,
            updated_at=now,
        )
        self.job_repo.insert(job)
        logger.info("Created summary job %s for %s", job.id, file_name)
        return job

    def get_job(self, job_id: str) -> SummaryJob:
        job = self.job_repo.get_by_id(job_id)
        if job is None:
            raise JobNotFoundError(f"Summary job not found: {job_id}")
        return job

    def list_jobs(self, *, status: str | None = None, limit: int = 100) -> list[SummaryJob]:
        return self.job_repo.list(status=status, limit=max(1, min(int(limit), 10_000)))

    def requeue_job(self, job_id: str) -> SummaryJob:
        job = self.get_job(job_id)
        if job.status != STATUS_ERROR:
            raise JobStateError(f"Only failed jobs can be re-queued (job {job_id} is {job.status}).")
        changed = self.job_repo.update_fields(
            job_id,
            expected_status=STATUS_ERROR,
            status=STATUS_QUEUED,
            error_message=None,
            updated_at=self._now_iso(),
        )
        if not changed:
            raise JobBusyError(f"Job {job_id} changed state while being re-queued.")
        logger.info("Re-queued failed job %s", job_id)
        return self.get_job(job_id)

    def run_step(self, job_id: str, *, source: SourceReference | None = None) -> JobStepOutcome:
        job = self.get_job(job_id)

        if job.is_terminal:
            return JobStepOutcome(job=job, advanced=False)

        recovered = False
        if job.status == STATUS_RUNNING:
            if not self._is_stale(job):
                raise JobBusyError(f"Job {job_id} is already running (last update {job.updated_at}).")
            if not self.job_repo.update_fields(
                job_id,
                expected_status=STATUS_RUNNING,
                status=STATUS_QUEUED,
                updated_at=self._now_iso(),
            ):
                raise JobBusyError(f"Job {job_id} changed state during stale recovery.")
            logger.warning("Recovered stale running job %s (last update %s)", job_id, job.updated_at)
            recovered = True

        if not self.job_repo.update_fields(
            job_id,
            expected_status=STATUS_QUEUED,
            status=STATUS_RUNNING,
            error_message=None,
            updated_at=self._now_iso(),
        ):
            raise JobBusyError(f"Job {job_id} was claimed by another invocation.")

        try:
            source_text = job.source_text or ""
            if not source_text:
                source_text = self._populate_source_text(job, source)
            step = self.continuation.step(
                source_text=source_text,
                instruction=job.instruction or self.instruction,
                accumulated_output=job.result_text,
                model=job.model or self.default_model,
            )
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error("Summary job %s failed: %s", job_id, message)
            self.job_repo.update_fields(
                job_id,
                expected_status=STATUS_RUNNING,
                status=STATUS_ERROR,
                error_message=message,
                updated_at=self._now_iso(),
            )
            raise JobFailedError(job_id, message) from exc

        next_status = STATUS_DONE if step.is_complete else STATUS_QUEUED
        persisted = self.job_repo.update_fields(
            job_id,
            expected_status=STATUS_RUNNING,
            result_text=job.result_text + step.addition,
            status=next_status,
            step_count=job.step_count + 1,
            updated_at=self._now_iso(),
        )
        if not persisted:
            raise JobBusyError(f"Job {job_id} left the running state before its step was saved.")

        logger.info(
            "Job %s step %s finished: %s (+%s chars)",
            job_id,
            job.step_count + 1,
            next_status,
            len(step.addition),
        )
        return JobStepOutcome(job=self.get_job(job_id), advanced=True, recovered_stale=recovered)

    def drive(
        self,
        job_id: str,
        *,
        max_steps: int = 50,
        source: SourceReference | None = None,
        on_step: Callable[[JobStepOutcome], None] | None = None,
    ) -> JobStepOutcome:
        """Re-trigger :meth:`run_step` until the job is terminal or ``max_steps`` steps ran."""
        outcome = JobStepOutcome(job=self.get_job(job_id), advanced=False)
        for _ in range(max(1, int(max_steps))):
            outcome = self.run_step(job_id, source=source)
            if on_step is not None:
                on_step(outcome)
            if outcome.job.is_terminal:
                break
        return outcome

    def _populate_source_text(self, job: SummaryJob, source: SourceReference | None) -> str:
        reference = self._resolve_source(job, source)
        data = self.downloader.download(reference)
        document = self.extractor.extract(data)
        logger.info(
            "Extracted %s chars from %s/%s pages for job %s%s",
            document.char_count,
            document.pages_read,
            document.source_page_count,
            job.id,
            " (truncated)" if document.truncated else "",
        )
        if self.job_repo.store_source_text_once(job.id, source_text=document.text, updated_at=self._now_iso()):
            return document.text
        # Another writer got there first; the stored text wins.
        stored = self.get_job(job.id).source_text
        return stored or document.text

    @staticmethod
    def _resolve_source(job: SummaryJob, source: SourceReference | None) -> SourceReference:
        override = source or SourceReference()
        url = override.url or job.source_url
        if url:
            return SourceReference(url=url)
        file_id = override.file_id or job.drive_file_id
        if file_id and override.access_token:
            return SourceReference(file_id=file_id, access_token=override.access_token)
        raise SourceDownloadError("Missing source URL or (file id + access token).")

    def _is_stale(self, job: SummaryJob) -> bool:
        updated = parse_iso(job.updated_at)
        if updated is None:
            return True
        return self._clock() - updated > self.stale_after

    def _now_iso(self) -> str:
        return self._clock().isoformat()
