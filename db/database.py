"""
Database connection module for Submitin using SQLAlchemy async engine.

PostgreSQL (asyncpg) in production; any SQLAlchemy async URL works, which
the test-suite uses to run against SQLite (aiosqlite).
"""

import os
from pathlib import Path
from typing import AsyncGenerator

from dotenv import load_dotenv
from sqlalchemy import DateTime, bindparam
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Load environment variables (do not override shell env)
load_dotenv()
backend_env = Path(__file__).resolve().parents[1] / ".env"
if backend_env.exists():
    load_dotenv(dotenv_path=str(backend_env), override=False)

# Database connection parameters
DATABASE_URL_ENV = os.getenv("DATABASE_URL", "")
DB_NAME = os.getenv("POSTGRES_DB", "submitin")
DB_USER = os.getenv("POSTGRES_USER", "postgres")
DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "")
DB_HOST = os.getenv("POSTGRES_HOST", "localhost")
DB_PORT = os.getenv("POSTGRES_PORT", "5432")


def _normalize_async_url(dsn: str) -> str:
    # Ensure SQLAlchemy uses the asyncpg driver for bare postgres URLs
    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://"):]
    if dsn.startswith("postgres://"):
        return "postgresql+asyncpg://" + dsn[len("postgres://"):]
    return dsn


if DATABASE_URL_ENV:
    DATABASE_URL = _normalize_async_url(DATABASE_URL_ENV)
else:
    # Build from discrete env vars
    DATABASE_URL = URL.create(
        drivername="postgresql+asyncpg",
        username=DB_USER,
        password=DB_PASSWORD,
        host=DB_HOST,
        port=int(DB_PORT) if str(DB_PORT).isdigit() else None,
        database=DB_NAME,
    ).render_as_string(hide_password=False)


def create_engine_for_url(url: str):
    """Create an async engine; SQLite gets no pool tuning (single file, tests)."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )


engine = create_engine_for_url(DATABASE_URL)

# Create session factory
async_session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def ts_param(name: str):
    """Timestamp bind parameter; lets each dialect serialize aware datetimes itself."""
    return bindparam(name, type_=DateTime(timezone=True))


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an AsyncSession and manages commit/rollback/close."""
    session = async_session_maker()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
