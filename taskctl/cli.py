import json
import logging
from datetime import datetime, timedelta

import click

from .config import DB_ENV_VAR, Settings, db_path, env_modules
from .db import init_db, connect_db
from .api import enqueue
from .dispatcher import BackgroundDispatcher
from .models import STATUSES
from .repository import (
    counts, flush, get_config, get_job, list_jobs, prune, requeue_failed,
    set_config, set_paused,
)
from .schedules import schedules
from .tasks import discover, registry
from .utils import parse_delay_to_seconds
from .worker import start_workers


def _connect(ctx):
    return connect_db(ctx.obj["db"])


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


def _make_dispatcher(conn, name="cli"):
    return BackgroundDispatcher(conn, registry, schedules, name=name)


@click.group(help="taskctl — background task scheduling and dispatch")
@click.option("--db", "db_file", envvar=DB_ENV_VAR, default=None,
              help="SQLite database file (default: taskctl.db)")
@click.option("-m", "--module", "modules", multiple=True,
              help="Module that registers tasks and schedules (repeatable)")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db_file, modules, verbose):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db"] = db_file or db_path()
    # Ensure DB/schema exist before any command runs
    init_db(ctx.obj["db"])
    try:
        discover(list(modules) + env_modules())
    except ImportError as e:
        raise click.ClickException(f"Could not load task module: {e}")


# ---------- Enqueue ----------
@cli.command("enqueue", help="Add a new job to the queue")
@click.option("--type", "task_type", required=True, help="Registered task type")
@click.option("--payload", default="{}", show_default=True, help="JSON payload")
@click.option("--queue", default="default", show_default=True, help="Queue name")
@click.option("--run-at", default=None, help="ISO datetime; treated as UTC when it has no offset")
@click.option("--delay", "delay_str", default=None,
              help="Run after a delay, e.g. 20s, 5m, 1h30m, 2d3h (mutually exclusive with --run-at)")
@click.pass_context
def enqueue_cmd(ctx, task_type, payload, queue, run_at, delay_str):
    conn = _connect(ctx)
    try:
        if run_at and delay_str:
            raise click.ClickException("Use either --run-at or --delay, not both.")
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid --payload JSON: {e}")

        delay = timedelta(seconds=parse_delay_to_seconds(delay_str)) if delay_str else None
        when = None
        if run_at:
            try:
                when = datetime.fromisoformat(run_at.replace("Z", "+00:00"))
            except ValueError as e:
                raise ValueError(f"Invalid --run-at format: {run_at} ({e})")

        job_id = enqueue(conn, task_type, data, queue=queue, delay=delay, run_at=when)
        if task_type not in registry:
            click.secho(f"Warning: no handler registered for '{task_type}' in this process", fg="yellow")
        click.secho(f"Enqueued {job_id} -> {task_type} (queue={queue})", fg="green")
    except (ValueError, RuntimeError, click.ClickException) as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Run ----------
@cli.command("run", help="Run one background cycle")
@click.option("--only", type=click.Choice(["pending", "retry"]), default=None,
              help="pending: never-attempted jobs only; retry: jobs waiting for a retry")
@click.pass_context
def run_cmd(ctx, only):
    conn = _connect(ctx)
    try:
        report = _make_dispatcher(conn).run_cycle(only=only)
        click.echo(json.dumps(report.summary(), indent=2))
    finally:
        conn.close()


# ---------- Workers ----------
@cli.group("worker", help="Manage polling workers")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--count", type=int, default=1, show_default=True, help="Number of worker threads")
@click.option("--interval", type=float, default=60.0, show_default=True, help="Seconds between cycles")
@click.pass_context
def worker_start(ctx, count, interval):
    click.secho(f"Starting {count} worker(s). Press Ctrl+C to stop…", fg="cyan")
    start_workers(count, _make_dispatcher, interval=interval, db_path=ctx.obj["db"])
    click.secho("Workers stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--status", type=click.Choice(STATUSES), default=None)
@click.option("--queue", default=None)
@click.option("--limit", type=int, default=None)
@click.pass_context
def list_cmd(ctx, status, queue, limit):
    conn = _connect(ctx)
    try:
        jobs = list_jobs(conn, status=status, queue=queue, limit=limit)
    finally:
        conn.close()

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        click.echo(
            f"{j.id} | {j.status:<9} | {j.queue} | {j.task_type} | attempts={j.attempts}/{j.max_attempts} "
            f"| next={j.scheduled_at.isoformat()} | last_error={j.last_error}"
        )


@cli.command("describe")
@click.argument("job_id")
@click.pass_context
def describe_cmd(ctx, job_id):
    conn = _connect(ctx)
    try:
        job = get_job(conn, job_id)
    finally:
        conn.close()
    if job is None:
        _fail(f"Job {job_id} not found.")
    click.echo(json.dumps(job.to_dict(), indent=2))


@cli.command("status")
@click.pass_context
def status_cmd(ctx):
    conn = _connect(ctx)
    try:
        out = counts(conn)
        out["paused"] = Settings.load(conn).paused
        click.echo(json.dumps(out, indent=2))
    finally:
        conn.close()


# ---------- Failed ----------
@cli.group("failed", help="Terminally failed jobs")
def failed_group():
    pass


@failed_group.command("list")
@click.pass_context
def failed_list_cmd(ctx):
    conn = _connect(ctx)
    try:
        jobs = list_jobs(conn, status="failed")
    finally:
        conn.close()

    if not jobs:
        click.echo("No failed jobs.")
        return

    for j in jobs:
        click.echo(f"{j.id} | {j.task_type} | attempts={j.attempts} | last_error={j.last_error}")


@failed_group.command("retry")
@click.argument("job_id", required=False)
@click.option("--all", "retry_all", is_flag=True, help="Re-queue every failed job")
@click.pass_context
def failed_retry_cmd(ctx, job_id, retry_all):
    conn = _connect(ctx)
    try:
        if bool(job_id) == retry_all:
            raise click.ClickException("Give either a JOB_ID or --all.")
        n = requeue_failed(conn, None if retry_all else job_id)
        if job_id and n == 0:
            raise click.ClickException(f"Job {job_id} is not in failed state.")
        click.secho(f"Re-queued {n} failed job(s).", fg="green")
    except (ValueError, RuntimeError, click.ClickException) as e:
        _fail(e)
    finally:
        conn.close()


# ---------- Maintenance ----------
@cli.command("flush", help="Delete jobs by status and/or queue")
@click.option("--status", type=click.Choice(STATUSES), default=None)
@click.option("--queue", default=None)
@click.confirmation_option(prompt="Delete the matching jobs?")
@click.pass_context
def flush_cmd(ctx, status, queue):
    conn = _connect(ctx)
    try:
        n = flush(conn, status=status, queue=queue)
        click.secho(f"Deleted {n} job(s).", fg="green")
    finally:
        conn.close()


@cli.command("prune", help="Delete completed/failed jobs older than N days")
@click.option("--days", type=int, default=None, help="Defaults to the retention_days setting")
@click.pass_context
def prune_cmd(ctx, days):
    conn = _connect(ctx)
    try:
        if days is None:
            days = Settings.load(conn).retention_days
        n = prune(conn, days)
        click.secho(f"Pruned {n} job(s) older than {days} day(s).", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


@cli.command("pause", help="Stop queue processing (schedules and deferred callbacks still run)")
@click.pass_context
def pause_cmd(ctx):
    conn = _connect(ctx)
    try:
        set_paused(conn, True)
        click.secho("Queue processing paused.", fg="yellow")
    finally:
        conn.close()


@cli.command("resume", help="Resume queue processing")
@click.pass_context
def resume_cmd(ctx):
    conn = _connect(ctx)
    try:
        set_paused(conn, False)
        click.secho("Queue processing resumed.", fg="green")
    finally:
        conn.close()


@cli.command("schedules", help="Show registered tasks and schedules")
def schedules_cmd():
    click.echo("Tasks:")
    for name in registry.names() or ["(none)"]:
        click.echo(f"  {name}")
    click.echo("Schedules:")
    if not len(schedules):
        click.echo("  (none)")
    for d in schedules:
        click.echo(f"  {d.name} | {d.rule!r} -> {d.task_type} (queue={d.queue})")


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    conn = _connect(ctx)
    try:
        click.echo(json.dumps(get_config(conn), indent=2))
    finally:
        conn.close()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = _connect(ctx)
    try:
        stored = set_config(conn, key, value)
        click.secho(f"Config updated: {key}={stored}", fg="green")
    except ValueError as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli()
