import json
from datetime import timedelta

import click

from .config import DB_FILE, load_config
from .db import init_db, connect_db
from .dispatcher import Dispatcher
from .errors import OptQueueError
from .events import EventBus
from .models import PRIORITIES, STATES
from .processor import QueueProcessor
from .reconciler import CallbackReconciler
from .repository import counts, get_config, list_jobs, purge_finished, set_config, stats
from .utils import parse_delay_to_seconds, setup_logging, to_iso, utc_now
from .webhook import WebhookClient
from .worker import run_scheduler


@click.group(help="optqueue: optimization job dispatch queue")
@click.option("--db", "db_path", default=DB_FILE, show_default=True, envvar="OPTQUEUE_DB",
              help="SQLite database file")
@click.option("--log-level", default="INFO", show_default=True, envvar="OPTQUEUE_LOG_LEVEL")
@click.pass_context
def cli(ctx, db_path, log_level):
    setup_logging(log_level)
    # Ensure DB/schema exist before any command runs
    init_db(db_path)
    ctx.obj = {"db_path": db_path}


def _config(ctx):
    conn = connect_db(ctx.obj["db_path"])
    try:
        return load_config(get_config(conn))
    finally:
        conn.close()


def _components(ctx):
    config = _config(ctx)
    db_path = ctx.obj["db_path"]
    events = EventBus()
    dispatcher = Dispatcher(config, db_path, events=events)
    return config, dispatcher, events


def _fail(e):
    click.secho(f"Error: {e}", fg="red")
    raise SystemExit(1)


# ---------- Enqueue ----------
@cli.command("enqueue", help="Queue an optimization job for a subject")
@click.option("--subject", "subject_id", required=True, help="Content item id, e.g. post-42")
@click.option("--payload", "payload_json", default=None, help="Payload as a JSON object")
@click.option("--payload-file", type=click.File("r"), default=None, help="Read the payload JSON from a file")
@click.option("--priority", type=click.Choice(list(PRIORITIES)), default="normal", show_default=True)
@click.option("--target-score", type=float, default=None)
@click.option("--current-score", type=float, default=None)
@click.option("--delay", "delay_str", default=None,
              help="Hold the job back, e.g. 20s, 5m, 1h30m")
@click.pass_context
def enqueue_cmd(ctx, subject_id, payload_json, payload_file, priority, target_score, current_score, delay_str):
    try:
        if payload_json and payload_file:
            raise click.ClickException("Use either --payload or --payload-file, not both.")
        raw = payload_file.read() if payload_file else (payload_json or "")
        try:
            payload = json.loads(raw) if raw else None
        except ValueError as e:
            raise click.ClickException(f"Payload is not valid JSON: {e}")

        delay_seconds = parse_delay_to_seconds(delay_str) if delay_str else None
        _, dispatcher, _ = _components(ctx)
        job_id = dispatcher.enqueue(
            subject_id,
            payload,
            priority=priority,
            target_score=target_score,
            current_score=current_score,
            delay_seconds=delay_seconds,
        )
        click.secho(f"Enqueued {job_id} for {subject_id} (priority={priority})", fg="green")
    except (ValueError, OptQueueError, click.ClickException) as e:
        _fail(e)


# ---------- Dispatch / scheduling ----------
@cli.command("dispatch", help="Make one send attempt for a job now")
@click.argument("job_id")
@click.pass_context
def dispatch_cmd(ctx, job_id):
    try:
        _, dispatcher, _ = _components(ctx)
        job = dispatcher.dispatch(job_id)
    except OptQueueError as e:
        _fail(e)
    if job is None:
        click.secho(f"Job {job_id} is not claimable (in flight, terminal, not due or unknown).", fg="yellow")
        return
    click.echo(json.dumps(job.to_status(), indent=2))


@cli.command("tick", help="Run a single scheduling pass")
@click.option("--batch-size", type=int, default=None, help="Override the configured batch size")
@click.pass_context
def tick_cmd(ctx, batch_size):
    try:
        config, dispatcher, events = _components(ctx)
        processor = QueueProcessor(config, ctx.obj["db_path"], dispatcher=dispatcher, events=events)
        report = processor.tick(batch_size)
    except OptQueueError as e:
        _fail(e)
    click.echo(json.dumps(report.__dict__, indent=2))


@cli.group("worker", help="Run the periodic scheduler")
def worker_group():
    pass


@worker_group.command("start")
@click.option("--interval", type=float, default=None, help="Seconds between ticks (default: config)")
@click.option("--max-ticks", type=int, default=None, help="Stop after this many ticks")
@click.pass_context
def worker_start(ctx, interval, max_ticks):
    try:
        config, dispatcher, events = _components(ctx)
        config.require_endpoint()
    except OptQueueError as e:
        _fail(e)
    processor = QueueProcessor(config, ctx.obj["db_path"], dispatcher=dispatcher, events=events)
    interval = interval if interval is not None else config.tick_interval_seconds
    click.secho(f"Worker ticking every {interval}s. Press Ctrl+C to stop…", fg="cyan")
    run_scheduler(processor, interval, max_ticks=max_ticks)
    click.secho("Worker stopped.", fg="yellow")


# ---------- Jobs ----------
@cli.command("list")
@click.option("--status", type=click.Choice(list(STATES)), default=None)
@click.option("--limit", type=int, default=100, show_default=True)
@click.pass_context
def list_cmd(ctx, status, limit):
    conn = connect_db(ctx.obj["db_path"])
    try:
        jobs = list_jobs(conn, status=status, limit=limit)
    finally:
        conn.close()

    if not jobs:
        click.echo("No jobs.")
        return

    for j in jobs:
        _echo_job(j)


def _echo_job(j):
    click.echo(
        f"{j.id:>32} | {j.status:<10} | {j.priority:<6} | subject={j.subject_id} "
        f"| attempts={j.attempts}/{j.max_attempts} | next={j.next_attempt_at} | last_error={j.last_error}"
    )


@cli.command("history", help="Show the most recent jobs for a subject")
@click.argument("subject_id")
@click.option("--limit", type=int, default=10, show_default=True)
@click.pass_context
def history_cmd(ctx, subject_id, limit):
    try:
        _, dispatcher, _ = _components(ctx)
        jobs = dispatcher.history(subject_id, limit=limit)
    except OptQueueError as e:
        _fail(e)
    if not jobs:
        click.echo(f"No jobs for {subject_id}.")
        return
    for j in jobs:
        _echo_job(j)
        if j.current_score is not None or j.target_score is not None:
            click.echo(f"    score={j.current_score} target={j.target_score}")


@cli.command("status", help="Show one job")
@click.argument("job_id")
@click.pass_context
def status_cmd(ctx, job_id):
    try:
        _, dispatcher, _ = _components(ctx)
        click.echo(json.dumps(dispatcher.get_status(job_id), indent=2))
    except OptQueueError as e:
        _fail(e)


@cli.command("stats", help="Queue counts per status")
@click.option("--detailed", is_flag=True, help="Include success rate, processing time and score improvement")
@click.pass_context
def stats_cmd(ctx, detailed):
    conn = connect_db(ctx.obj["db_path"])
    try:
        click.echo(json.dumps(stats(conn) if detailed else counts(conn), indent=2))
    finally:
        conn.close()


@cli.command("cancel", help="Abandon a queued or failed job, or every such job for a subject")
@click.argument("job_id", required=False)
@click.option("--subject", "subject_id", default=None, help="Cancel all queued/failed jobs for this subject")
@click.pass_context
def cancel_cmd(ctx, job_id, subject_id):
    try:
        if bool(job_id) == bool(subject_id):
            raise click.ClickException("Give either JOB_ID or --subject.")
        _, dispatcher, _ = _components(ctx)
        if subject_id:
            cancelled = dispatcher.cancel_subject(subject_id)
            click.secho(f"Cancelled {len(cancelled)} job(s) for {subject_id}.", fg="green")
        elif dispatcher.cancel(job_id):
            click.secho(f"Cancelled {job_id}.", fg="green")
        else:
            raise click.ClickException(f"Job {job_id} is in flight or already finished.")
    except (OptQueueError, click.ClickException) as e:
        _fail(e)


@cli.command("purge", help="Delete finished jobs older than N days")
@click.option("--days", type=int, default=30, show_default=True)
@click.pass_context
def purge_cmd(ctx, days):
    conn = connect_db(ctx.obj["db_path"])
    try:
        deleted = purge_finished(conn, to_iso(utc_now() - timedelta(days=days)))
    except RuntimeError as e:
        _fail(e)
    finally:
        conn.close()
    click.secho(f"Purged {deleted} job(s).", fg="green")


@cli.command("ping", help="Send a signed test message to the webhook endpoint")
@click.option("--endpoint", default=None, help="URL to test instead of the configured endpoint")
@click.pass_context
def ping_cmd(ctx, endpoint):
    try:
        config = _config(ctx)
        endpoint = endpoint or config.require_endpoint()
    except OptQueueError as e:
        _fail(e)
    client = WebhookClient(timeout_ms=config.timeout_ms, api_key=config.api_key)
    result = client.ping(endpoint, secret=config.secret)
    if not result.accepted:
        _fail(result.describe())
    click.secho(f"Connection successful (HTTP {result.status_code})", fg="green")
    if result.raw_body:
        click.echo(result.raw_body)


# ---------- HTTP ----------
@cli.command("serve", help="Serve the callback and job API")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", type=int, default=8080, show_default=True)
@click.pass_context
def serve_cmd(ctx, host, port):
    import uvicorn

    from .server import create_app

    try:
        config, dispatcher, events = _components(ctx)
    except OptQueueError as e:
        _fail(e)
    reconciler = CallbackReconciler(config, ctx.obj["db_path"], events=events)
    uvicorn.run(create_app(dispatcher, reconciler), host=host, port=port)


# ---------- Config ----------
@cli.group("config", help="Configuration")
def config_group():
    pass


@config_group.command("get")
@click.pass_context
def config_get(ctx):
    try:
        click.echo(json.dumps(_config(ctx).redacted(), indent=2))
    except OptQueueError as e:
        _fail(e)


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set_cmd(ctx, key, value):
    conn = connect_db(ctx.obj["db_path"])
    try:
        set_config(conn, key, value)
        click.secho(f"Config updated: {key}", fg="green")
    except (ValueError, OptQueueError) as e:
        _fail(e)
    finally:
        conn.close()


def main():
    cli()
