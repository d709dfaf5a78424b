"""pagemill CLI entry-point for all pipeline operations.

Usage:
    python cli/main.py --help

Command groups:
    validate / convert / discover   → single-URL pipeline
    batch                           → chunked batch over a file of URLs
    history                         → extraction sessions and retries
    cache                           → cache health
    serve                           → run the HTTP API under uvicorn
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure the project root is on sys.path so that `from pagemill.xxx import ...`
# works when the CLI is invoked as `python cli/main.py` from any directory.
_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

import asyncio
from typing import Optional

import typer

from cli.commands.cache import cache_app
from cli.commands.history import history_app
from cli.runtime import build_pipeline, echo_json
from pagemill.config import BatchOptions, PipelineOptions, settings
from pagemill.errors import ConfigError
from pagemill.logging_setup import configure_logging
from pagemill.pipeline import BatchOrchestrator
from pagemill.scraper import check_url

app = typer.Typer(
    name="pagemill",
    help="Render web pages and mill their content into Markdown.",
    no_args_is_help=True,
)
app.add_typer(history_app, name="history")
app.add_typer(cache_app, name="cache")


@app.callback()
def main(
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Logging level."),
) -> None:
    configure_logging(log_level)


# ---------------------------------------------------------------------------
# Single URL
# ---------------------------------------------------------------------------
@app.command("validate")
def validate(url: str = typer.Argument(..., help="URL to check.")) -> None:
    """Check a URL against the scheme, length and internal-network rules."""
    result = check_url(url)
    if result.valid:
        typer.echo(f"[validate] OK  {result.url}")
        return
    typer.echo(f"[validate] {result.error_type}: {result.error}")
    raise typer.Exit(1)


@app.command("convert")
def convert(
    url: str = typer.Argument(..., help="URL to convert."),
    text: bool = typer.Option(False, "--text", help="Emit plain text instead of Markdown."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the result to FILE."),
    no_cache: bool = typer.Option(False, "--no-cache", help="Bypass the content cache."),
) -> None:
    """Fetch URL in a headless browser and print its main content as Markdown."""
    options = PipelineOptions(skip_cache=no_cache)

    async def _run():
        pipeline = build_pipeline()
        try:
            if text:
                return await pipeline.convert_url_to_text(url, options)
            return await pipeline.convert_url(url, options)
        finally:
            await pipeline.close()

    typer.echo(f"[convert] Fetching {url!r} …", err=True)
    result = asyncio.run(_run())
    if not result.success:
        typer.echo(f"[convert] {result.error_type}: {result.error_message}", err=True)
        raise typer.Exit(1)

    body = result.data["text"] if text else result.data["markdown"]
    if output is not None:
        output.write_text(body, encoding="utf-8")
        typer.echo(f"[convert] Wrote {len(body)} characters to {output}", err=True)
    else:
        typer.echo(body)
    typer.echo(
        f"[convert] {result.data.get('title') or '(untitled)'}  "
        f"in {result.processing_time_ms}ms",
        err=True,
    )


@app.command("discover")
def discover(
    url: str = typer.Argument(..., help="Page whose links to collect."),
    as_json: bool = typer.Option(False, "--json", help="Print the full result as JSON."),
) -> None:
    """List every link on a page, grouped by category."""

    async def _run():
        pipeline = build_pipeline()
        try:
            return await pipeline.discover_links(url)
        finally:
            await pipeline.close()

    result = asyncio.run(_run())
    if not result.success:
        typer.echo(f"[discover] {result.error_type}: {result.error_message}", err=True)
        raise typer.Exit(1)

    if as_json:
        echo_json(result.data)
        return

    summary = result.data["summary"]
    typer.echo(
        f"[discover] {summary['totalLinks']} links "
        f"({summary['internalLinks']} internal, {summary['externalLinks']} external)"
    )
    for category, links in result.data["categories"].items():
        if not links:
            continue
        typer.echo(f"\n{category} ({len(links)})")
        for link in links:
            typer.echo(f"  {link['resolvedUrl']}  {link['text']!r}")


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------
@app.command("batch")
def batch(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="File with one URL per line."),
    mode: str = typer.Option("convert", "--mode", help="convert | discover"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", help="Pages processed at once."),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", help="URLs per chunk."),
    as_json: bool = typer.Option(False, "--json", help="Print the full result as JSON."),
) -> None:
    """Run the pipeline over every URL in FILE (blank lines and # comments skipped)."""
    urls = [
        line.strip()
        for line in file.read_text(encoding="utf-8").splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    ]
    if not urls:
        typer.echo(f"[batch] No URLs in {file}")
        raise typer.Exit(1)
    try:
        options = BatchOptions(max_concurrent=concurrency, chunk_size=chunk_size, mode=mode)
    except ConfigError as exc:
        typer.echo(f"[batch] {exc.message}")
        raise typer.Exit(1) from exc

    async def _run():
        pipeline = build_pipeline()
        try:
            return await BatchOrchestrator(pipeline, settings).run_batch(urls, options)
        finally:
            await pipeline.close()

    typer.echo(f"[batch] {len(urls)} URLs, mode={mode}")
    result = asyncio.run(_run())

    if as_json:
        echo_json(result.to_dict())
        return
    for item in result.results:
        if item.succeeded:
            typer.echo(f"  ok    {item.url}")
        else:
            typer.echo(f"  FAIL  {item.url}  {item.error_type}: {item.error_message}")
    s = result.summary
    typer.echo(
        f"[batch] {s.successful}/{s.total} succeeded "
        f"({s.success_rate:.0%}) in {result.processing_time_ms}ms"
    )
    if s.failed:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------
@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8000, help="Bind port."),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes."),
) -> None:
    """Run the HTTP API."""
    import uvicorn

    uvicorn.run("pagemill.api.app:app", host=host, port=port, reload=reload)


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    app()
