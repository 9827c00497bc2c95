"""Database package for ORM models and migrations."""

from __future__ import annotations

import logging

from sqlalchemy.engine import Engine

from backend.db.base import Base
from backend.db import models

logger = logging.getLogger(__name__)


def create_schema(engine: Engine) -> None:
    """Create every ledger table on the given engine (dev and test databases)."""
    Base.metadata.create_all(engine)
    logger.info("Ledger schema ensured on %s.", engine.url.render_as_string(hide_password=True))


__all__ = ["Base", "create_schema", "models"]
