"""Database session management with connection pooling"""

from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from chama_gateway.config import settings

SessionFactory = Callable[[], Session]


def _engine_options(database_url: str) -> Dict[str, Any]:
    if database_url.startswith("sqlite"):
        # Webhook reconciliation runs on worker threads
        return {"connect_args": {"check_same_thread": False}}
    # Connection pool: max 20 connections, recycle after 1 hour to avoid stale connections
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 10,
        "pool_recycle": 3600,
    }


engine = create_engine(settings.database_url, **_engine_options(settings.database_url))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Iterator[Session]:
    """Request-scoped session; services decide when to commit"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: SessionFactory = SessionLocal) -> Iterator[Session]:
    """Own transaction for work outside a request (webhooks, audit): commit on success, roll back on error"""
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
