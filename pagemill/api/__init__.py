"""FastAPI HTTP layer package.

Public re-export so callers can write::

    from pagemill.api import app

    uvicorn pagemill.api:app --reload
"""

from pagemill.api.app import app, create_app

__all__ = ["app", "create_app"]
