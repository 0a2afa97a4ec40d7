"""
Database engine and session management.

The engine is built from the DATABASE_URL environment variable. Route handlers
receive a request-scoped Session through the get_db dependency, which tests
override to point at an in-memory database.
"""

import logging
import os
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./teamtrack.db")

# SQLite connections are shared across FastAPI's threadpool workers
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Yield a database session and close it when the request finishes."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create all tables that do not exist yet."""
    # Import models so every table is registered on Base.metadata
    from teamtrack import models  # noqa: F401

    logger.debug(f"Creating tables on {engine.url.render_as_string(hide_password=True)}")
    Base.metadata.create_all(bind=engine)
