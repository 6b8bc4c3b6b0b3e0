from __future__ import annotations

from typing import Any, Callable

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from summarium.application.services.project_service import ProjectService
from summarium.application.services.summary_job_service import SummaryJobService
from summarium.core.config import AppPaths, PipelineSettings
from summarium.core.errors import (
    JobBusyError,
    JobFailedError,
    JobNotFoundError,
    JobStateError,
    ValidationError,
)
from summarium.domain.models.job import STATUS_DONE, STATUS_ERROR, SourceReference, SummaryJob


SECRET_HEADER = "x-import-secret"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreateJobRequest(_CamelModel):
    file_name: str = Field(alias="fileName", min_length=1)
    source_url: str | None = Field(default=None, alias="sourceUrl")
    drive_file_id: str | None = Field(default=None, alias="driveFileId")
    title: str | None = None
    author: str | None = None
    model: str | None = None


class TriggerJobRequest(_CamelModel):
    source_url: str | None = Field(default=None, alias="sourceUrl")
    drive_file_id: str | None = Field(default=None, alias="driveFileId")
    drive_access_token: str | None = Field(default=None, alias="driveAccessToken")


def _job_payload(job: SummaryJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "title": job.title,
        "author": job.author,
        "model": job.model,
        "promptVersion": job.prompt_version,
        "stepCount": job.step_count,
        "resultText": job.result_text if job.status == STATUS_DONE else None,
        "error": job.error_message if job.status == STATUS_ERROR else None,
        "createdAt": job.created_at,
        "updatedAt": job.updated_at,
    }


def create_app(
    paths: AppPaths,
    settings: PipelineSettings | None = None,
    service_factory: Callable[[], SummaryJobService] | None = None,
) -> FastAPI:
    app = FastAPI(title="Summarium", version="0.1.0")
    active_settings = settings or PipelineSettings.from_env()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    ProjectService(paths).init_project()

    def get_job_service() -> SummaryJobService:
        if service_factory is not None:
            return service_factory()
        return SummaryJobService.from_settings(paths.db_path, active_settings)

    def require_secret(provided: str | None) -> None:
        expected = active_settings.trigger_secret
        if not expected:
            raise HTTPException(status_code=500, detail="Trigger secret is not configured.")
        if provided is None or provided != expected:
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return {"ok": True}

    @app.post("/api/jobs")
    def api_create_job(
        req: CreateJobRequest,
        x_import_secret: str | None = Header(default=None, alias=SECRET_HEADER),
    ) -> dict[str, Any]:
        require_secret(x_import_secret)
        try:
            job = get_job_service().create_job(
                source_file_name=req.file_name,
                source_url=req.source_url,
                drive_file_id=req.drive_file_id,
                title=req.title,
                author=req.author,
                model=req.model,
            )
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"ok": True, "jobId": job.id, "status": job.status}

    @app.get("/api/jobs")
    def api_list_jobs(
        status: str | None = None,
        limit: int = Query(default=100, ge=1, le=10_000),
        x_import_secret: str | None = Header(default=None, alias=SECRET_HEADER),
    ) -> dict[str, Any]:
        require_secret(x_import_secret)
        jobs = get_job_service().list_jobs(status=status, limit=limit)
        return {"ok": True, "count": len(jobs), "jobs": [_job_payload(job) for job in jobs]}

    @app.get("/api/jobs/{job_id}")
    def api_get_job(
        job_id: str,
        x_import_secret: str | None = Header(default=None, alias=SECRET_HEADER),
    ) -> dict[str, Any]:
        require_secret(x_import_secret)
        try:
            job = get_job_service().get_job(job_id)
        except JobNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return _job_payload(job)

    @app.post("/api/jobs/{job_id}/trigger", response_model=None)
    def api_trigger_job(
        job_id: str,
        req: TriggerJobRequest | None = None,
        x_import_secret: str | None = Header(default=None, alias=SECRET_HEADER),
    ) -> dict[str, Any] | JSONResponse:
        require_secret(x_import_secret)
        body = req or TriggerJobRequest()
        source = SourceReference(
            url=body.source_url,
            file_id=body.drive_file_id,
            access_token=body.drive_access_token,
        )
        try:
            outcome = get_job_service().run_step(job_id, source=source)
        except JobNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except JobBusyError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except JobFailedError as exc:
            return JSONResponse(
                status_code=500,
                content={"ok": False, "jobId": job_id, "status": STATUS_ERROR, "error": str(exc)},
            )
        payload: dict[str, Any] = {"ok": True, "jobId": job_id, "status": outcome.status}
        if outcome.status == STATUS_ERROR:
            payload["error"] = outcome.job.error_message
        return payload

    @app.post("/api/jobs/{job_id}/requeue")
    def api_requeue_job(
        job_id: str,
        x_import_secret: str | None = Header(default=None, alias=SECRET_HEADER),
    ) -> dict[str, Any]:
        require_secret(x_import_secret)
        try:
            job = get_job_service().requeue_job(job_id)
        except JobNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except JobStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"ok": True, "jobId": job.id, "status": job.status}

    return app
