"""Main CLI entry point for eval-jobs."""

import asyncio
import json
import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any, Coroutine, Optional

import typer
from rich.console import Console
from rich.table import Table

from eval_jobs import __version__
from eval_jobs.config import EvalJobsConfig, load_config
from eval_jobs.errors import EvalJobsError
from eval_jobs.jobs.models import Job
from eval_jobs.models.enums import JobStatus
from eval_jobs.services import Services, build_services
from eval_jobs.utils.logging import setup_logging


def _load_dotenv() -> None:
    """Load .env file if it exists."""
    current = Path.cwd()
    for path in [current, *current.parents]:
        env_file = path / ".env"
        if env_file.exists():
            with open(env_file) as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith("#") and "=" in line:
                        key, _, value = line.partition("=")
                        key = key.strip()
                        value = value.strip().strip("\"'")
                        if key and key not in os.environ:
                            os.environ[key] = value
            break


_load_dotenv()

app = typer.Typer(
    name="eval-jobs",
    help="""Asynchronous evaluation job service.

Submit evaluation jobs, run queue workers, and follow jobs to completion.

[bold]Examples:[/bold]

  [dim]# Start the API[/dim]
  eval-jobs serve --port 8000

  [dim]# Run a worker with four concurrent messages[/dim]
  eval-jobs worker --concurrency 4

  [dim]# Submit a job from a request file and follow it[/dim]
  eval-jobs submit request.json
  eval-jobs status job_AbC123xYz789

[bold]Configuration:[/bold]

  Create [cyan]eval-jobs.config.json[/cyan] in your project root, set
  [cyan]EVAL_JOBS_<SECTION>__<KEY>[/cyan] environment variables, or use CLI flags.
  Set [cyan]ANTHROPIC_API_KEY[/cyan] to score with the Claude judge.
""",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

STATUS_STYLES = {
    JobStatus.PENDING: "yellow",
    JobStatus.RUNNING: "cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "dim",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"eval-jobs version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Submit, run and track evaluation jobs."""
    pass


ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help="Path to configuration file.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
]

VerboseOption = Annotated[
    int,
    typer.Option(
        "--verbose",
        "-v",
        help="Verbosity level (0=quiet, 1=normal, 2=verbose, 3=debug).",
        min=0,
        max=3,
        count=True,
    ),
]

JobIdArgument = Annotated[str, typer.Argument(help="Job ID.")]


def _setup(config: Optional[Path], verbose: int, **overrides: Any) -> EvalJobsConfig:
    cfg = load_config(config_path=config, verbose=verbose, **overrides)
    setup_logging(verbosity=cfg.verbosity, log_file=cfg.log_file)
    return cfg


def _run(coro: Coroutine, verbose: int) -> Any:
    """Run a coroutine, turning errors into a red message and exit code 1."""
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(1)
    except EvalJobsError as e:
        console.print(f"[bold red]Error ({e.code}):[/bold red] {e.message}")
        if e.details and verbose >= 2:
            console.print_json(data=e.details)
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose >= 2:
            console.print_exception()
        sys.exit(1)


def _status_text(status: JobStatus) -> str:
    return f"[{STATUS_STYLES[status]}]{status.value}[/]"


def _print_job(job: Job) -> None:
    table = Table(title=f"Job {job.id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Name", job.name)
    table.add_row("Type", job.type.value)
    table.add_row("Status", _status_text(job.status))
    table.add_row("Priority", job.priority.value)
    table.add_row(
        "Progress",
        f"{job.progress.completed_items}/{job.progress.total_items} "
        f"({job.progress.percentage:.1f}%)",
    )
    table.add_row("Created", job.created_at.isoformat())
    table.add_row("Updated", job.updated_at.isoformat())
    if job.completed_at:
        table.add_row("Completed", job.completed_at.isoformat())
    elif job.estimated_completion:
        table.add_row("ETA", job.estimated_completion.isoformat())
    if job.error_details:
        table.add_row("Error", f"{job.error_details.error_code}: {job.error_details.error_message}")
    if job.results:
        summary = job.results.summary
        table.add_row(
            "Results",
            f"{summary.passed_evaluations}/{summary.total_evaluations} passed, "
            f"average {summary.average_score:.3f}",
        )
    if job.result_reference:
        table.add_row("Results object", job.result_reference.object_id)

    console.print(table)


@app.command()
def serve(
    host: Annotated[Optional[str], typer.Option("--host", help="Bind address.")] = None,
    port: Annotated[Optional[int], typer.Option("--port", "-p", help="Port.")] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from eval_jobs.api.app import create_app

    cfg = _setup(config, verbose)
    api = create_app(cfg)

    console.print("[bold green]Starting API[/bold green]")
    console.print(f"  Jobs DB:  {cfg.store.db_path}")
    console.print(f"  Queue DB: {cfg.queue.db_path}")
    uvicorn.run(api, host=host or cfg.api.host, port=port or cfg.api.port, log_level="info")


@app.command()
def worker(
    once: Annotated[
        bool,
        typer.Option("--once", help="Process one message and exit."),
    ] = False,
    concurrency: Annotated[
        Optional[int],
        typer.Option("--concurrency", help="Maximum concurrent messages.", min=1, max=64),
    ] = None,
    provider: Annotated[
        Optional[str],
        typer.Option("--provider", "-p", help="Scoring provider (similarity, claude)."),
    ] = None,
    model: Annotated[
        Optional[str],
        typer.Option("--model", "-m", help="Claude model for the judge scorer."),
    ] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Run a queue worker until interrupted."""
    from eval_jobs.jobs.worker import build_worker

    cfg = _setup(config, verbose, concurrency=concurrency, provider=provider, model=model)

    console.print("[bold green]Starting worker[/bold green]")
    console.print(f"  Queue:       {cfg.queue.queue_name} ({cfg.queue.db_path})")
    console.print(f"  Concurrency: {cfg.worker.max_concurrency}")
    console.print(f"  Scorer:      {cfg.scoring.provider.value}")

    job_worker = build_worker(cfg)
    _run(job_worker.run(once=once), verbose)


@app.command()
def submit(
    request_file: Annotated[
        Path,
        typer.Argument(help="JSON file with the job request.", exists=True, dir_okay=False),
    ],
    idempotency_key: Annotated[
        Optional[str],
        typer.Option("--idempotency-key", "-k", help="Idempotency key for safe retries."),
    ] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Submit a job from a JSON request file."""
    cfg = _setup(config, verbose)
    with open(request_file) as f:
        request = json.load(f)

    async def _submit():
        services = build_services(cfg)
        await services.initialize()
        return await services.producer.submit_job(request, idempotency_key=idempotency_key)

    receipt = _run(_submit(), verbose)
    if receipt.created:
        console.print(f"[green]Submitted[/green] {receipt.job_id}")
    else:
        console.print(f"[yellow]Already submitted[/yellow] {receipt.job_id}")
    console.print(f"  Status URL: {receipt.status_url}")


async def _with_services(cfg: EvalJobsConfig, action) -> Any:
    services = build_services(cfg)
    await services.initialize()
    return await action(services)


@app.command()
def status(
    job_id: JobIdArgument,
    config: ConfigOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Show a job."""
    cfg = _setup(config, verbose)
    job = _run(_with_services(cfg, lambda s: s.query.get_job(job_id)), verbose)
    _print_job(job)


@app.command("list")
def list_jobs(
    status_filter: Annotated[
        Optional[str],
        typer.Option("--status", "-s", help="Filter by status."),
    ] = None,
    type_filter: Annotated[
        Optional[str],
        typer.Option("--type", "-t", help="Filter by job type."),
    ] = None,
    page: Annotated[int, typer.Option("--page", help="Page number.")] = 1,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Jobs per page.")] = 20,
    sort: Annotated[
        Optional[str],
        typer.Option("--sort", help="created_at, updated_at or name."),
    ] = None,
    order: Annotated[Optional[str], typer.Option("--order", help="asc or desc.")] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """List jobs."""
    cfg = _setup(config, verbose)
    result = _run(
        _with_services(
            cfg,
            lambda s: s.query.list_jobs(
                status=status_filter,
                job_type=type_filter,
                page=page,
                page_size=limit,
                sort=sort,
                order=order,
            ),
        ),
        verbose,
    )

    pages = max(result.total_pages, 1)
    table = Table(title=f"Jobs (page {result.page}/{pages}, {result.total_count} total)")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Created")

    for job in result.items:
        table.add_row(
            job.id,
            job.name,
            job.type.value,
            _status_text(job.status),
            f"{job.progress.percentage:.0f}%",
            job.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)


@app.command()
def cancel(
    job_id: JobIdArgument,
    reason: Annotated[
        Optional[str],
        typer.Option("--reason", "-r", help="Cancellation reason."),
    ] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Cancel a pending or running job."""
    cfg = _setup(config, verbose)
    job = _run(_with_services(cfg, lambda s: s.query.cancel_job(job_id, reason=reason)), verbose)
    console.print(f"[yellow]Cancelled[/yellow] {job.id}")


@app.command()
def results(
    job_id: JobIdArgument,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Write the full results JSON to this file."),
    ] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Show the results of a completed job."""
    cfg = _setup(config, verbose)
    job_results = _run(_with_services(cfg, lambda s: s.query.get_results(job_id)), verbose)

    summary = job_results.summary
    table = Table(title=f"Results for {job_id}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Total", str(summary.total_evaluations))
    table.add_row("Passed", str(summary.passed_evaluations))
    table.add_row("Failed", str(summary.failed_evaluations))
    table.add_row("Average Score", f"{summary.average_score:.3f}")
    table.add_row("Pass Rate", f"{summary.pass_rate:.1f}%")
    console.print(table)

    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(job_results.model_dump_json(indent=2), encoding="utf-8")
        console.print(f"  Written to {output}")


@app.command("dead-letters")
def dead_letters(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum entries to show.")] = 50,
    resubmit: Annotated[
        Optional[int],
        typer.Option("--resubmit", help="Return the entry with this sequence number to the queue."),
    ] = None,
    config: ConfigOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Inspect (or resubmit) dead-lettered messages."""
    cfg = _setup(config, verbose)

    async def _dead_letters(services: Services):
        if resubmit is not None:
            return await services.queue.resubmit_dead_letter(resubmit)
        return await services.queue.list_dead_letters(limit=limit)

    outcome = _run(_with_services(cfg, _dead_letters), verbose)

    if resubmit is not None:
        if outcome:
            console.print(f"[green]Resubmitted[/green] message #{resubmit}")
        else:
            console.print(f"[red]No dead-lettered message #{resubmit}[/red]")
            raise typer.Exit(1)
        return

    table = Table(title=f"Dead letters ({len(outcome)})")
    table.add_column("#", justify="right")
    table.add_column("Job", style="cyan")
    table.add_column("Deliveries", justify="right")
    table.add_column("Reason", style="red")
    table.add_column("Description")
    table.add_column("When")

    for entry in outcome:
        when = entry.dead_lettered_datetime
        table.add_row(
            str(entry.seq),
            entry.job_id,
            str(entry.delivery_count),
            entry.reason or "",
            (entry.description or "")[:80],
            when.strftime("%Y-%m-%d %H:%M:%S") if when else "",
        )

    console.print(table)


@app.command("requeue-stale")
def requeue_stale(
    older_than_minutes: Annotated[
        float,
        typer.Option("--older-than", help="Minimum age (minutes) of a pending job."),
    ] = 15.0,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum jobs to re-enqueue.")] = 100,
    config: ConfigOption = None,
    verbose: VerboseOption = 1,
) -> None:
    """Re-enqueue jobs stuck in pending."""
    cfg = _setup(config, verbose)
    requeued = _run(
        _with_services(
            cfg,
            lambda s: s.producer.requeue_stale_pending(
                timedelta(minutes=older_than_minutes), limit=limit
            ),
        ),
        verbose,
    )

    console.print(f"Re-enqueued {len(requeued)} job(s)")
    for job_id in requeued:
        console.print(f"  {job_id}")


if __name__ == "__main__":
    app()
