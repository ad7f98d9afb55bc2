"""
Database engine and session management.

The application uses one SQLAlchemy session per request, provided by the
get_db dependency. Tests override get_db with an in-memory SQLite session.
"""

import logging
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from config import DATABASE_URL

logger = logging.getLogger(__name__)

engine = create_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Yield a database session for the duration of a request.

    Any transaction left open by a failing handler is rolled back when the
    session is closed.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
