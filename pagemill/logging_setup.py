"""Console logging configuration for the CLI and the API server."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process.

    Library modules only create named loggers; this is called by entry points.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    # Playwright's driver and asyncio are chatty at DEBUG.
    logging.getLogger("asyncio").setLevel(logging.WARNING)
