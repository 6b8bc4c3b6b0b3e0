from __future__ import annotations

import argparse
from pathlib import Path

from rich.panel import Panel
from rich.table import Table

from summarium.application.services.project_service import ProjectService
from summarium.application.services.summary_job_service import JobStepOutcome, SummaryJobService
from summarium.cli.context import CLIContext
from summarium.core.errors import ProjectNotInitializedError
from summarium.domain.models.job import JOB_STATUSES, STATUS_DONE, SourceReference, SummaryJob


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("jobs", help="Summary job management")
    jobs_subparsers = parser.add_subparsers(dest="jobs_command", required=True)

    create_parser = jobs_subparsers.add_parser("create", help="Queue a new summary job")
    create_parser.add_argument("--file-name", required=True, help="Original file name of the book")
    create_parser.add_argument("--source-url", help="Direct download URL of the PDF")
    create_parser.add_argument("--drive-file-id", help="File-host file id of the PDF")
    create_parser.add_argument("--title")
    create_parser.add_argument("--author")
    create_parser.add_argument("--model")
    create_parser.set_defaults(handler=run_create)

    status_parser = jobs_subparsers.add_parser("status", help="Show one job")
    status_parser.add_argument("job_id")
    status_parser.set_defaults(handler=run_status)

    list_parser = jobs_subparsers.add_parser("list", help="List jobs")
    list_parser.add_argument("--status", choices=sorted(JOB_STATUSES))
    list_parser.add_argument("--limit", type=int, default=100)
    list_parser.set_defaults(handler=run_list)

    step_parser = jobs_subparsers.add_parser("step", help="Run a single generation step")
    step_parser.add_argument("job_id")
    _add_source_arguments(step_parser)
    step_parser.set_defaults(handler=run_step)

    drive_parser = jobs_subparsers.add_parser("drive", help="Run steps until the job finishes")
    drive_parser.add_argument("job_id")
    drive_parser.add_argument("--max-steps", type=int, default=50)
    _add_source_arguments(drive_parser)
    drive_parser.set_defaults(handler=run_drive)

    requeue_parser = jobs_subparsers.add_parser("requeue", help="Move a failed job back to the queue")
    requeue_parser.add_argument("job_id")
    requeue_parser.set_defaults(handler=run_requeue)

    result_parser = jobs_subparsers.add_parser("show-result", help="Print or save the generated summary")
    result_parser.add_argument("job_id")
    result_parser.add_argument("--output", help="Write the summary to this file instead of stdout")
    result_parser.set_defaults(handler=run_show_result)


def _add_source_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--source-url", help="Override the stored download URL")
    parser.add_argument("--drive-file-id", help="Override the stored file-host file id")
    parser.add_argument("--drive-access-token", help="Bearer token for the file host (never stored)")


def _require_initialized_project(ctx: CLIContext) -> None:
    project_service = ProjectService(ctx.paths)
    if not project_service.is_initialized():
        raise ProjectNotInitializedError(
            f"Project is not initialized. Run 'summarium init' first in {ctx.paths.project_root}"
        )
    project_service.init_project()


def _service(ctx: CLIContext) -> SummaryJobService:
    return SummaryJobService.from_settings(ctx.paths.db_path, ctx.settings)


def _source_from_args(args: argparse.Namespace) -> SourceReference | None:
    source = SourceReference(
        url=args.source_url,
        file_id=args.drive_file_id,
        access_token=args.drive_access_token,
    )
    if source.url or source.file_id or source.access_token:
        return source
    return None


def _job_panel(job: SummaryJob) -> Panel:
    lines = [
        f"Job ID: {job.id}",
        f"Status: {job.status}",
        f"Title: {job.title or '-'}",
        f"Author: {job.author or '-'}",
        f"Model: {job.model or '(default)'}",
        f"Steps: {job.step_count}",
        f"Source chars: {len(job.source_text or '')}",
        f"Output chars: {len(job.result_text)}",
        f"Updated: {job.updated_at}",
    ]
    if job.error_message:
        lines.append(f"Error: {job.error_message}")
    return Panel.fit("\n".join(lines), title="Summary Job")


def _print_outcome(ctx: CLIContext, outcome: JobStepOutcome) -> None:
    job = outcome.job
    note = "" if outcome.advanced else " (no step run)"
    if outcome.recovered_stale:
        note += " (recovered stale run)"
    ctx.console.print(
        f"[cyan]{job.id}[/cyan] step {job.step_count}: [bold]{job.status}[/bold] "
        f"output={len(job.result_text)} chars{note}"
    )


def run_create(args: argparse.Namespace, ctx: CLIContext) -> int:
    _require_initialized_project(ctx)
    job = _service(ctx).create_job(
        source_file_name=args.file_name,
        source_url=args.source_url,
        drive_file_id=args.drive_file_id,
        title=args.title,
        author=args.author,
        model=args.model,
    )
    ctx.console.print(_job_panel(job))
    return 0


def run_status(args: argparse.Namespace, ctx: CLIContext) -> int:
    _require_initialized_project(ctx)
    ctx.console.print(_job_panel(_service(ctx).get_job(args.job_id)))
    return 0


def run_list(args: argparse.Namespace, ctx: CLIContext) -> int:
    _require_initialized_project(ctx)
    jobs = _service(ctx).list_jobs(status=args.status, limit=args.limit)

    table = Table(title=f"Summary Jobs ({len(jobs)})")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Title")
    table.add_column("Steps", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Updated")

    for job in jobs:
        table.add_row(
            job.id,
            job.status,
            job.title or job.source_file_name,
            str(job.step_count),
            str(len(job.result_text)),
            job.updated_at,
        )

    ctx.console.print(table)
    return 0


def run_step(args: argparse.Namespace, ctx: CLIContext) -> int:
    _require_initialized_project(ctx)
    outcome = _service(ctx).run_step(args.job_id, source=_source_from_args(args))
    _print_outcome(ctx, outcome)
    return 0


def run_drive(args: argparse.Namespace, ctx: CLIContext) -> int:
    _require_initialized_project(ctx)
    outcome = _service(ctx).drive(
        args.job_id,
        max_steps=args.max_steps,
        source=_source_from_args(args),
        on_step=lambda item: _print_outcome(ctx, item),
    )
    if outcome.job.status != STATUS_DONE:
        ctx.console.print(f"[yellow]Job stopped in status {outcome.job.status}[/yellow]")
        return 1
    ctx.console.print("[green]Summary complete[/green]")
    return 0


def run_requeue(args: argparse.Namespace, ctx: CLIContext) -> int:
    _require_initialized_project(ctx)
    job = _service(ctx).requeue_job(args.job_id)
    ctx.console.print(f"[green]Re-queued[/green] {job.id}")
    return 0


def run_show_result(args: argparse.Namespace, ctx: CLIContext) -> int:
    _require_initialized_project(ctx)
    job = _service(ctx).get_job(args.job_id)
    if job.status != STATUS_DONE:
        ctx.console.print(f"[yellow]Job {job.id} is {job.status}; partial output follows[/yellow]")

    if args.output:
        output_path = Path(args.output)
        output_path.write_text(job.result_text, encoding="utf-8")
        ctx.console.print(f"[green]Wrote[/green] {len(job.result_text)} chars to {output_path}")
        return 0

    ctx.console.print(job.result_text, markup=False, highlight=False)
    return 0
