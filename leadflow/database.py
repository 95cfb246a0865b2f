"""
Database engine and sessions for Leadflow.

Postgres in deployment, SQLite for tests and local runs; both go through
build_engine() so pool settings live in one place.

Environment:
    DATABASE_URL   required (loaded from .env when present)
    DB_POOL_SIZE   connections per process (Postgres only, default 5)
    DB_ECHO        "true" to log every SQL statement
"""

import os
from contextlib import contextmanager
from typing import Generator

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

load_dotenv()


def build_engine(url: str) -> Engine:
    """
    Create an engine for `url`.

    In-memory SQLite ("sqlite://") gets a single shared connection, so every
    session and thread (FastAPI's threadpool included) sees the same tables.
    """
    if url.startswith("postgres://"):
        # SQLAlchemy only accepts the postgresql:// scheme
        url = url.replace("postgres://", "postgresql://", 1)

    echo = os.getenv("DB_ECHO", "false").lower() == "true"

    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **options)

    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
    )


DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise ValueError(
        "DATABASE_URL environment variable not set. "
        "Please configure it in .env file."
    )

engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def get_db() -> Generator[Session, None, None]:
    """
    Session scoped to a block; rolled back if the block raises.

    Usage:
        with get_db() as db:
            AutomationService(db, collaborators).handle_event(event)
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db_session() -> Session:
    """Unmanaged session; the caller closes it (FastAPI's get_db dependency does)."""
    return SessionLocal()
