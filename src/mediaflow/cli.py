from __future__ import annotations

import json
import logging
import signal
import time
from typing import Optional

import typer
import uvicorn

from mediaflow import __version__
from mediaflow.config import get_settings

app = typer.Typer(add_completion=False, help="Mediaflow CLI")


def _configure_logging() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@app.command()
def start(
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    reload: bool = typer.Option(False, help="Auto-reload on changes (dev)"),
) -> None:
    settings = get_settings()
    _configure_logging()
    uvicorn.run(
        "mediaflow.api.app:app",
        host=host or settings.HOST,
        port=port or settings.PORT,
        reload=reload,
    )


@app.command()
def version() -> None:
    typer.echo(__version__)


@app.command()
def worker(
    worker_id: Optional[str] = typer.Option(None, help="Worker id"),
    concurrency: Optional[int] = typer.Option(None, help="Parallel task slots"),
    poll_interval: Optional[float] = typer.Option(None, help="Poll interval seconds"),
    once: bool = typer.Option(False, help="Process one task then exit"),
) -> None:
    """
    Run the media-processing worker.

    Polls the queue table for due tasks. SIGTERM/SIGINT drain the worker:
    no new claims, in-flight tasks get the shutdown grace period.
    """
    _configure_logging()
    from mediaflow.media_engine.services.job_worker import JobWorker, WorkerOptions
    from mediaflow.media_engine.services.jobs_service import PROCESS_MEDIA_TASK
    from mediaflow.media_engine.tasks.media_tasks import MediaProcessor

    options = WorkerOptions.from_settings()
    if concurrency is not None:
        options.concurrency = concurrency
    if poll_interval is not None:
        options.poll_interval = poll_interval

    w = JobWorker(worker_id or "worker-1", options=options)
    w.register_handler(PROCESS_MEDIA_TASK, MediaProcessor())

    if once:
        processed = w.run_once()
        if processed:
            typer.echo("Processed one task.")
        else:
            typer.echo("No pending tasks.")
        return

    stopping = {"flag": False}

    def _request_stop(signum, _frame) -> None:
        stopping["flag"] = True

    signal.signal(signal.SIGTERM, _request_stop)

    w.start()
    typer.echo(f"Worker '{w.worker_id}' started. Press Ctrl+C to stop.", err=True)
    try:
        while not stopping["flag"]:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    w.stop()
    typer.echo(f"Worker '{w.worker_id}' stopped.", err=True)


@app.command("db")
def db_command(
    action: str = typer.Argument(..., help="upgrade|downgrade|revision|current|history"),
    message: Optional[str] = typer.Option(
        None, "--message", "-m", help="Migration message (for revision)"
    ),
    autogenerate: bool = typer.Option(
        True, "--autogenerate/--no-autogenerate", help="Autogenerate migration"
    ),
    revision: Optional[str] = typer.Option(
        None, "--revision", "-r", help="Target revision (for upgrade/downgrade)"
    ),
) -> None:
    """
    Database migrations via Alembic.

    Actions:
      upgrade   - Apply migrations (default: head)
      downgrade - Revert migrations
      revision  - Create new migration
      current   - Show current revision
      history   - Show migration history
    """
    import os
    import subprocess
    import sys

    alembic_ini = os.path.join(os.getcwd(), "alembic.ini")
    if not os.path.exists(alembic_ini):
        pkg_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
        alembic_ini = os.path.join(pkg_dir, "alembic.ini")
        if not os.path.exists(alembic_ini):
            typer.echo("Error: alembic.ini not found", err=True)
            raise typer.Exit(1)

    cmd = [sys.executable, "-m", "alembic", "-c", alembic_ini]

    if action == "upgrade":
        cmd.extend(["upgrade", revision or "head"])
    elif action == "downgrade":
        cmd.extend(["downgrade", revision or "-1"])
    elif action == "revision":
        cmd.append("revision")
        if autogenerate:
            cmd.append("--autogenerate")
        if message:
            cmd.extend(["-m", message])
        else:
            typer.echo("Warning: No message provided, using default", err=True)
            cmd.extend(["-m", "auto migration"])
    elif action == "current":
        cmd.append("current")
    elif action == "history":
        cmd.append("history")
    else:
        typer.echo(f"Unknown action: {action}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Running: {' '.join(cmd)}", err=True)
    result = subprocess.run(cmd, cwd=os.getcwd())
    raise typer.Exit(result.returncode)


@app.command("init-db")
def init_db_command() -> None:
    """Create tables directly from the models (dev only)."""
    from mediaflow.database import init_db

    init_db(create_tables=True)
    typer.echo("Database initialized.")


@app.command("init-storage")
def init_storage() -> None:
    """
    Initialize the configured object store.

    Creates the S3 bucket or the local storage root if missing.
    """
    from mediaflow.exceptions.handlers import MediaflowException
    from mediaflow.media_engine.storage import get_object_store

    settings = get_settings()
    try:
        created = get_object_store(settings).ensure_bucket()
    except MediaflowException as exc:
        typer.echo(f"Error initializing storage: {exc.message}", err=True)
        raise typer.Exit(1)
    if created:
        typer.echo(f"Initialized {settings.STORAGE_TYPE} storage.")
    else:
        typer.echo(f"{settings.STORAGE_TYPE} storage already exists.")


@app.command("queue-stats")
def queue_stats() -> None:
    from mediaflow.database import get_db_session
    from mediaflow.media_engine.services.jobs_service import MediaJobsService

    with get_db_session() as session:
        stats = MediaJobsService(session).get_stats()
    typer.echo(json.dumps(stats, indent=2))


@app.command("queue-retry")
def queue_retry(job_id: str = typer.Argument(..., help="Task handle, e.g. media-<asset id>")) -> None:
    from mediaflow.database import get_db_session
    from mediaflow.exceptions.handlers import MediaflowException
    from mediaflow.media_engine.services.jobs_service import MediaJobsService

    try:
        with get_db_session() as session:
            status = MediaJobsService(session).retry_job(job_id)
    except MediaflowException as exc:
        typer.echo(f"Error: {exc.message}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Task {job_id} requeued (retry #{status.retry_count}).")


@app.command("queue-remove")
def queue_remove(job_id: str = typer.Argument(..., help="Task handle")) -> None:
    from mediaflow.database import get_db_session
    from mediaflow.exceptions.handlers import MediaflowException
    from mediaflow.media_engine.services.jobs_service import MediaJobsService

    try:
        with get_db_session() as session:
            MediaJobsService(session).remove_job(job_id)
    except MediaflowException as exc:
        typer.echo(f"Error: {exc.message}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Task {job_id} removed.")


@app.command("cleanup-jobs")
def cleanup_jobs(
    days: Optional[int] = typer.Option(None, help="Retention window in days"),
) -> None:
    """Delete completed job records older than the retention window."""
    from mediaflow.database import get_db_session
    from mediaflow.media_engine.services.jobs_service import MediaJobsService

    _configure_logging()
    retention = days if days is not None else get_settings().JOB_RETENTION_DAYS
    with get_db_session() as session:
        deleted = MediaJobsService(session).cleanup_old_jobs(retention)
    typer.echo(f"Deleted {deleted} job record(s).")


def main() -> None:
    app()
