from __future__ import annotations

from pathlib import Path
from typing import Any

from summarium.domain.models.job import SummaryJob
from summarium.infrastructure.db.sqlite import get_connection

_UPDATABLE_COLUMNS = frozenset(
    {
        "status",
        "result_text",
        "error_message",
        "step_count",
        "updated_at",
    }
)


class SummaryJobRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def insert(self, job: SummaryJob) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO summary_jobs (
                    id,
                    status,
                    source_url,
                    drive_file_id,
                    source_file_name,
                    title,
                    author,
                    model,
                    prompt_version,
                    instruction,
                    source_text,
                    result_text,
                    error_message,
                    step_count,
                    created_at,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.status,
                    job.source_url,
                    job.drive_file_id,
                    job.source_file_name,
                    job.title,
                    job.author,
                    job.model,
                    job.prompt_version,
                    job.instruction,
                    job.source_text,
                    job.result_text,
                    job.error_message,
                    job.step_count,
                    job.created_at,
                    job.updated_at,
                ),
            )
            conn.commit()

    def get_by_id(self, job_id: str) -> SummaryJob | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM summary_jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
        return self._to_model(row) if row else None

    def list(self, *, status: str | None = None, limit: int = 100) -> list[SummaryJob]:
        with get_connection(self.db_path) as conn:
            if status:
                rows = conn.execute(
                    """
                    SELECT * FROM summary_jobs
                    WHERE status = ?
                    ORDER BY created_at DESC, id DESC
                    LIMIT ?
                    """,
                    (status, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM summary_jobs
                    ORDER BY created_at DESC, id DESC
                    LIMIT ?
                    """,
                    (limit,),
                ).fetchall()
        return [self._to_model(row) for row in rows]

    def update_fields(self, job_id: str, *, expected_status: str | None = None, **fields: Any) -> bool:
        """Update the given columns in one statement.

        With ``expected_status`` the write only lands if the row is still in that status,
        which lets callers claim a job without a separate lock. Returns whether a row changed.
        """
        if not fields:
            raise ValueError("update_fields requires at least one column")
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns are not updatable: {', '.join(sorted(unknown))}")

        columns = sorted(fields)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params: list[Any] = [fields[column] for column in columns]
        sql = f"UPDATE summary_jobs SET {assignments} WHERE id = ?"
        params.append(job_id)
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status)

        with get_connection(self.db_path) as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount > 0

    def store_source_text_once(self, job_id: str, *, source_text: str, updated_at: str) -> bool:
        """Persist extracted text unless the job already has some; the column is write-once."""
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE summary_jobs
                SET source_text = ?, updated_at = ?
                WHERE id = ? AND (source_text IS NULL OR source_text = '')
                """,
                (source_text, updated_at, job_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _to_model(row) -> SummaryJob:
        return SummaryJob(
            id=row["id"],
            status=row["status"],
            source_url=row["source_url"],
            drive_file_id=row["drive_file_id"],
            source_file_name=row["source_file_name"],
            title=row["title"],
            author=row["author"],
            model=row["model"],
            prompt_version=row["prompt_version"],
            instruction=row["instruction"],
            source_text=row["source_text"],
            result_text=row["result_text"] or "",
            error_message=row["error_message"],
            step_count=int(row["step_count"] or 0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
