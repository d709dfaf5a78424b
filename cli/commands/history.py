"""History commands: list extraction sessions and re-run failed URLs."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

import typer

from cli.runtime import build_pipeline, echo_json, open_history
from pagemill.config import BatchOptions, settings
from pagemill.pipeline import BatchOrchestrator

history_app = typer.Typer(help="Extraction sessions and retries.", no_args_is_help=True)


def _fmt_ts(ts: Optional[int]) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M") if ts else "-"


@history_app.command("sessions")
def history_sessions(
    user: str = typer.Option("anonymous", "--user", help="Owner of the sessions."),
    limit: int = typer.Option(20, "--limit", help="Maximum sessions to show."),
    status: Optional[str] = typer.Option(None, "--status", help="Filter by session status."),
) -> None:
    """List recent extraction sessions, newest first."""
    store = open_history()
    try:
        sessions = store.list_sessions(user, limit=limit, status=status)
    finally:
        store.close()
    if not sessions:
        typer.echo("[history] No sessions found.")
        return
    for s in sessions:
        typer.echo(
            f"  {s.id}  {_fmt_ts(s.created_at)}  [{s.status}]  "
            f"{s.successful_urls}/{s.total_urls} ok  {s.session_name!r}"
        )


@history_app.command("retryable")
def history_retryable(
    user: str = typer.Option("anonymous", "--user", help="Owner of the sessions."),
    session: Optional[str] = typer.Option(None, "--session", help="Limit to one session."),
    error_code: Optional[str] = typer.Option(None, "--error-code", help="Limit to one error type."),
) -> None:
    """List failed URLs that are eligible for another attempt."""
    store = open_history()
    try:
        records = store.list_retryable_urls(
            user,
            session_id=session,
            error_code=error_code,
            min_retry_interval_ms=settings.retry_min_interval_ms,
        )
    finally:
        store.close()
    if not records:
        typer.echo("[history] Nothing to retry.")
        return
    for r in records:
        typer.echo(f"  {r.url}  {r.error_code}  (attempts: {r.retry_count})")
    typer.echo(f"[history] {len(records)} retryable URL(s)")


@history_app.command("retry")
def history_retry(
    user: str = typer.Option("anonymous", "--user", help="Owner of the sessions."),
    session: Optional[str] = typer.Option(None, "--session", help="Limit to one session."),
    error_code: Optional[str] = typer.Option(None, "--error-code", help="Limit to one error type."),
    mode: str = typer.Option("discover", "--mode", help="convert | discover"),
    as_json: bool = typer.Option(False, "--json", help="Print the full result as JSON."),
) -> None:
    """Re-run retryable failed URLs as a new tracked session."""
    options = BatchOptions(mode=mode)

    async def _run():
        pipeline = build_pipeline()
        store = open_history()
        try:
            orchestrator = BatchOrchestrator(pipeline, settings, history=store)
            return await orchestrator.retry_failed(
                user, session_id=session, error_code=error_code, options=options
            )
        finally:
            await pipeline.close()
            store.close()

    result = asyncio.run(_run())
    if as_json:
        echo_json(result.to_dict())
        return
    if not result.results:
        typer.echo("[history retry] Nothing to retry.")
        return
    s = result.summary
    typer.echo(
        f"[history retry] Session {result.session_id}: "
        f"{s.successful}/{s.total} succeeded"
    )
