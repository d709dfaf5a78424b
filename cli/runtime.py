"""Shared helpers for CLI commands: building services and printing JSON."""

from __future__ import annotations

import json
from typing import Any

import typer

from pagemill.config import settings
from pagemill.history import SqliteHistoryStore
from pagemill.pipeline import Pipeline


def build_pipeline() -> Pipeline:
    return Pipeline(settings)


def open_history() -> SqliteHistoryStore:
    """Open the history database under the workspace, creating it if needed."""
    settings.ensure_workspace()
    return SqliteHistoryStore(db_path=settings.db_path)


def echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))
