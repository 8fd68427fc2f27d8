"""
Oracly - Database Configuration
===============================

Central database configuration and session management.
"""

import logging
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from oracly.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL

_engine_kwargs = {"echo": settings.DEBUG, "pool_pre_ping": True}
if DATABASE_URL.startswith("sqlite"):
    # SQLite connections are shared between FastAPI's threadpool workers
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    _engine_kwargs["pool_recycle"] = 300

# Create engine
engine = create_engine(DATABASE_URL, **_engine_kwargs)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Dependency for getting database sessions
def get_db() -> Generator:
    """Database session dependency for FastAPI."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """Check if database is accessible."""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"❌ Database health check failed: {e}")
        return False
    finally:
        db.close()
