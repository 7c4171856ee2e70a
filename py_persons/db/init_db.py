#!/usr/bin/env python3
"""Initialize the database for py-persons."""

import structlog
from sqlalchemy import inspect

from ..config import configure_logging, settings
from .connection import db

logger = structlog.get_logger()


def main():
    """Initialize the database."""
    configure_logging(settings)
    try:
        db.initialize()
        tables = inspect(db.engine).get_table_names()
        logger.info("Database initialized", tables=sorted(tables))
    except Exception as e:
        logger.error("Database initialization failed", error=str(e))
        return False

    return True


if __name__ == "__main__":
    main()
