"""Cache commands."""

from __future__ import annotations

import typer

from cli.runtime import echo_json
from pagemill.cache import CacheService
from pagemill.config import settings

cache_app = typer.Typer(help="Cache inspection.", no_args_is_help=True)


@cache_app.command("health")
def cache_health() -> None:
    """Print cache health and configured limits for this process."""
    cache = CacheService(settings)
    echo_json({"health": cache.health(), "stats": cache.stats(), "config": settings.summary()["cache"]})
