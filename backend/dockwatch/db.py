"""Database configuration and session management."""

import os
import logging
from pathlib import Path
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

# Default to /data/dockwatch.db (production path mounted as volume)
default_db = "sqlite+aiosqlite:////data/dockwatch.db"
DATABASE_URL = os.getenv("DATABASE_URL", default_db)

# Ensure database directory exists (skip for in-memory databases used in tests)
if DATABASE_URL.startswith("sqlite") and ":memory:" not in DATABASE_URL:
    db_path = DATABASE_URL.replace("sqlite+aiosqlite:///", "").replace("sqlite+aiosqlite://", "")
    try:
        db_dir = Path(db_path).resolve().parent
        if db_dir and str(db_dir) != ".":
            db_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Invalid database path: {db_path} - {e}")
        raise ValueError(f"Invalid DATABASE_URL path: {e}")

if "sqlite" in DATABASE_URL:
    # SQLite: single persistent connection avoids locking issues
    from sqlalchemy.pool import StaticPool
    engine = create_async_engine(
        DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        pool_reset_on_return=None,
    )
else:
    engine = create_async_engine(
        DATABASE_URL,
        echo=False,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

# Session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

# Base class for models
Base = declarative_base()


async def get_db() -> AsyncSession:
    """Dependency for getting database sessions."""
    async with AsyncSessionLocal() as session:
        yield session


async def init_db():
    """Initialize database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        if "sqlite" in DATABASE_URL:
            # WAL mode allows concurrent reads/writes
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA synchronous=NORMAL"))
            await conn.execute(text("PRAGMA busy_timeout=5000"))
            await conn.execute(text("PRAGMA foreign_keys=ON"))
            logger.info("SQLite optimizations applied: WAL mode, 5s busy timeout")
