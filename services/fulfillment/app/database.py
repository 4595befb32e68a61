"""
Database configuration and session management for the Fulfillment service.

This module sets up the database connection using SQLAlchemy and provides
a session factory for database operations.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DATABASE_URL

engine_options = {}
if DATABASE_URL.startswith("sqlite"):
    # SQLite connections are shared across the request threadpool
    engine_options["connect_args"] = {"check_same_thread": False}
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        engine_options["poolclass"] = StaticPool

# Create SQLAlchemy engine
engine = create_engine(DATABASE_URL, **engine_options)

# Create SessionLocal class for database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for declarative models
Base = declarative_base()

def get_db():
    """
    Dependency function that provides a database session.

    Yields:
        Session: SQLAlchemy database session

    Usage:
        Use as a FastAPI dependency to inject database sessions into route handlers.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
