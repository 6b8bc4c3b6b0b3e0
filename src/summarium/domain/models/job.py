from __future__ import annotations

from dataclasses import dataclass

STATUS_QUEUED = "queued"
STATUS_RUNNING = "running"
STATUS_DONE = "done"
STATUS_ERROR = "error"

JOB_STATUSES = (STATUS_QUEUED, STATUS_RUNNING, STATUS_DONE, STATUS_ERROR)
TERMINAL_STATUSES = frozenset({STATUS_DONE, STATUS_ERROR})


@dataclass(slots=True)
class SummaryJob:
    id: str
    status: str
    source_url: str | None
    drive_file_id: str | None
    source_file_name: str | None
    title: str | None
    author: str | None
    model: str | None
    prompt_version: str | None
    instruction: str | None
    source_text: str | None
    result_text: str
    error_message: str | None
    step_count: int
    created_at: str
    updated_at: str

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True, slots=True)
class SourceReference:
    """Where a job's source document comes from: a URL, or a file id on the third-party host plus a token."""

    url: str | None = None
    file_id: str | None = None
    access_token: str | None = None

    @property
    def is_url(self) -> bool:
        return bool(self.url)

    @property
    def is_file_host(self) -> bool:
        return bool(self.file_id and self.access_token)
