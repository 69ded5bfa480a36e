"""Async engine and session factory for the payments database.

Callbacks for the same payment can arrive concurrently; on SQLite a writer
waits for the lock (``SQLITE_BUSY_TIMEOUT`` seconds) instead of failing
at once.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite+aiosqlite:///{BASE_DIR / 'payments.db'}")


def _engine_options(url: str) -> dict:
    options = {"echo": os.getenv("SQL_ECHO", "").lower() in ("1", "true", "yes")}
    if url.startswith("sqlite"):
        options["connect_args"] = {"timeout": float(os.getenv("SQLITE_BUSY_TIMEOUT", "15"))}
    else:
        options["pool_pre_ping"] = True
    return options


engine = create_async_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
SessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
    autoflush=False,
    class_=AsyncSession,
)
