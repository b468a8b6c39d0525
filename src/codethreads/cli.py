"""CLI entrypoint for codethreads."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import click

from codethreads.config.loader import DEFAULT_CONFIG_NAME, load_config
from codethreads.config.schema import CodethreadsConfig
from codethreads.coordinator.orchestrator import (
    Orchestrator,
    QueuedNotice,
    RateLimitPrompt,
)
from codethreads.errors import ThreadsError
from codethreads.logging_setup import bind_thread, get_logger, setup_logging, unbind_thread
from codethreads.store.state import open_stores

logger = get_logger("codethreads.cli")


def _config(ctx: click.Context) -> CodethreadsConfig:
    return ctx.obj["config"]


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_NAME,
    show_default=True,
    help="YAML configuration file (missing file = defaults)",
)
@click.option("--debug", "debug_flag", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.pass_context
def main(ctx: click.Context, config_path: Path, debug_flag: bool, json_logs: bool) -> None:
    """Run coding-assistant threads against isolated git working copies."""
    try:
        cfg = load_config(config_path)
    except ThreadsError as exc:
        raise click.ClickException(str(exc)) from exc
    setup_logging(debug=debug_flag or cfg.run.debug, json_output=json_logs or cfg.run.json_logs)
    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg


@main.command("send")
@click.argument("thread_id")
@click.argument("message", nargs=-1, required=True)
@click.option("--repo", "repository", default=None, help="Repository as org/name (first use)")
@click.option("--isolated-env", is_flag=True, help="Run the assistant inside a dev container")
@click.pass_context
def send_cmd(
    ctx: click.Context,
    thread_id: str,
    message: tuple[str, ...],
    repository: str | None,
    isolated_env: bool,
) -> None:
    """Send MESSAGE to THREAD_ID and print progress and the answer."""
    cfg = _config(ctx)
    text = " ".join(message).strip()
    if not text:
        raise click.ClickException("Message text is required")

    async def _run() -> Any:
        orchestrator = Orchestrator(cfg)
        orchestrator.set_progress_callback(click.echo)
        await orchestrator.restore_active_threads()
        await orchestrator.create_or_get_worker(thread_id)
        if repository:
            await orchestrator.configure_repository(
                thread_id, repository, use_isolated_env=isolated_env
            )
        bind_thread(thread_id)
        try:
            return await orchestrator.route_message(thread_id, text)
        finally:
            unbind_thread()
            await orchestrator.shutdown()

    try:
        outcome = asyncio.run(_run())
    except ThreadsError as exc:
        logger.error("send_failed", kind=str(exc.kind), error=str(exc))
        raise click.ClickException(f"[{exc.kind}] {exc}") from exc

    if isinstance(outcome, RateLimitPrompt):
        click.echo(outcome.text)
        click.echo("Run `codethreads restore --wait` to let the auto-resume fire.")
    elif isinstance(outcome, QueuedNotice):
        click.echo(outcome.text)
    else:
        click.echo("")
        click.echo(outcome.text)


@main.command("restore")
@click.option("--wait", "wait_flag", is_flag=True, help="Stay running until pending auto-resumes fire")
@click.pass_context
def restore_cmd(ctx: click.Context, wait_flag: bool) -> None:
    """Rebuild active threads and replay or re-arm auto-resume timers."""
    cfg = _config(ctx)

    async def _run() -> tuple[list[str], dict[str, str]]:
        orchestrator = Orchestrator(cfg)

        async def _continue(thread_id: str, continuation: str) -> None:
            click.echo(f"[{thread_id}] auto-resume: {continuation}")
            outcome = await orchestrator.route_message(
                thread_id, continuation, lambda line: click.echo(f"[{thread_id}] {line}")
            )
            click.echo(f"[{thread_id}] {outcome.text}")

        orchestrator.set_auto_resume_callback(_continue)
        restored = await orchestrator.restore_active_threads()
        timers = await orchestrator.restore_rate_limit_timers()
        if wait_flag:
            await orchestrator.scheduler.wait_all()
        await orchestrator.shutdown()
        return restored, timers

    try:
        restored, timers = asyncio.run(_run())
    except ThreadsError as exc:
        raise click.ClickException(f"[{exc.kind}] {exc}") from exc
    click.echo(f"Restored {len(restored)} active threads")
    for thread_id, mode in sorted(timers.items()):
        click.echo(f"  {thread_id}: auto-resume {mode}")


@main.command("threads")
@click.option(
    "--status",
    type=click.Choice(["active", "archived", "all"]),
    default="active",
    show_default=True,
)
@click.pass_context
def threads_cmd(ctx: click.Context, status: str) -> None:
    """List persisted threads."""
    stores = open_stores(_config(ctx).base_path)
    records = [r for r in stores.threads.list_all() if status == "all" or r.status == status]
    if not records:
        click.echo("No threads")
        return
    for record in records:
        repo = record.repository.full_name if record.repository else "-"
        flags = []
        if record.rate_limit_timestamp is not None:
            flags.append("rate-limited" + (" (auto)" if record.auto_resume_after_rate_limit else ""))
        if record.isolated_environment and record.isolated_environment.use_isolated_env:
            flags.append("isolated-env")
        depth = stores.queue.length(record.thread_id)
        if depth:
            flags.append(f"{depth} queued")
        click.echo(
            f"{record.thread_id}  {record.status:<8}  {record.worker_name or '-':<14}  {repo}"
            + (f"  [{', '.join(flags)}]" if flags else "")
        )


@main.command("terminate")
@click.argument("thread_id")
@click.pass_context
def terminate_cmd(ctx: click.Context, thread_id: str) -> None:
    """Archive THREAD_ID and remove its isolated working copy."""
    cfg = _config(ctx)

    async def _run() -> bool:
        orchestrator = Orchestrator(cfg)
        await orchestrator.restore_active_threads()
        return await orchestrator.terminate_thread(thread_id)

    if asyncio.run(_run()):
        click.echo(f"Terminated {thread_id}")
    else:
        click.echo(f"No active worker for {thread_id}")


@main.command("audit")
@click.option("--date", "day", default=None, help="Day partition, YYYY-MM-DD")
@click.option("--thread", "thread_id", default=None, help="Filter by thread id")
@click.option("--action", default=None, help="Filter by action tag")
@click.option("--days", default=7, show_default=True, help="Days searched for thread/action filters")
@click.option("--tail", default=50, show_default=True, help="How many entries to show")
@click.pass_context
def audit_cmd(
    ctx: click.Context,
    day: str | None,
    thread_id: str | None,
    action: str | None,
    days: int,
    tail: int,
) -> None:
    """Query the audit trail."""
    stores = open_stores(_config(ctx).base_path)
    if day:
        entries = stores.audit.entries_for_date(day)
        if thread_id:
            entries = [e for e in entries if e.thread_id == thread_id]
        if action:
            entries = [e for e in entries if e.action == action]
    elif thread_id:
        entries = stores.audit.by_thread(thread_id, days=days)
        if action:
            entries = [e for e in entries if e.action == action]
    elif action:
        entries = stores.audit.by_action(action, days=days)
    else:
        dates = stores.audit.dates()
        entries = stores.audit.entries_for_date(dates[0]) if dates else []
    if not entries:
        click.echo("No audit entries")
        return
    for entry in entries[-tail:]:
        click.echo(json.dumps(entry.to_dict(), ensure_ascii=False))


@main.command("audit-cleanup")
@click.option("--days", default=None, type=int, help="Retention in days (default from config)")
@click.pass_context
def audit_cleanup_cmd(ctx: click.Context, days: int | None) -> None:
    """Delete audit partitions older than the retention window."""
    cfg = _config(ctx)
    stores = open_stores(cfg.base_path)
    removed = stores.audit.cleanup(days or cfg.audit.retention_days)
    click.echo(f"Removed {len(removed)} audit partitions")


@main.command("queues")
@click.option("--prune", is_flag=True, help="Drop stale messages and empty backlog files first")
@click.pass_context
def queues_cmd(ctx: click.Context, prune: bool) -> None:
    """List message backlogs, deepest first."""
    cfg = _config(ctx)
    stores = open_stores(cfg.base_path)
    if prune:
        dropped = stores.queue.remove_older_than(cfg.queue.max_message_age_seconds)
        emptied = stores.queue.cleanup_empty()
        click.echo(f"Dropped {dropped} stale messages, removed {emptied} empty backlogs")
    queues = stores.queue.list_queues()
    if not queues:
        click.echo("No queued messages")
        return
    for queue in queues:
        click.echo(f"{queue.thread_id}: {len(queue.messages)} queued")
