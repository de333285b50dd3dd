#!/usr/bin/env python
"""
Database setup script for Submitin.
Creates the tables defined in schema.sql (idempotent: CREATE ... IF NOT EXISTS).

Run from the repository root: python -m db.setup_db
"""

import asyncio
import logging
import os
import sys

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger("backend.db.setup")

SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "schema.sql")


def load_statements(schema_path: str = SCHEMA_PATH):
    """Split schema.sql into single statements (both drivers execute one at a time)."""
    with open(schema_path, "r") as f:
        schema_sql = f.read()
    lines = [line for line in schema_sql.splitlines() if not line.strip().startswith("--")]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


async def setup_tables(engine: AsyncEngine) -> None:
    """Create tables from schema.sql"""
    statements = load_statements()
    async with engine.begin() as conn:
        for stmt in statements:
            await conn.execute(text(stmt))
    logger.info("Tables created successfully (%d statements)", len(statements))


async def _main() -> int:
    from db.database import engine

    try:
        await setup_tables(engine)
    except Exception:
        logger.exception("Error setting up tables")
        return 1
    finally:
        await engine.dispose()
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    logger.info("Setting up Submitin database...")
    sys.exit(asyncio.run(_main()))
