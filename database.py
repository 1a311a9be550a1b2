"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the HashPay reconciliation engine.
"""

import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, text, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.pool import StaticPool
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with pool settings suited to the database driver"""
    if database_url.startswith("sqlite"):
        # SQLite: allow worker threads (asyncio.to_thread) to share the connection
        kwargs = {}
        if ":memory:" in database_url:
            # One connection, otherwise every thread sees its own empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            **kwargs,
        )

    return create_engine(
        database_url,
        pool_size=5,           # Base pool for the engine's worker threads
        max_overflow=10,       # Burst capacity during concurrent poll groups
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for connection during bursts
        echo=echo,
        connect_args={
            "connect_timeout": 10,  # Fail fast on slow connections
            "application_name": "hashpay_engine",
        },
    )


engine = build_engine(Config.DATABASE_URL, echo=Config.DATABASE_ECHO)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,  # Rows are handed to async callers after the session closes
    bind=engine,
)


def create_tables(bind: Engine = None) -> bool:
    """Create all database tables if they don't exist"""
    bind = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

        try:
            Base.metadata.create_all(bind=bind, checkfirst=True)
        except ProgrammingError as e:
            # Indexes that already exist are expected on restarts
            if "already exists" in str(e):
                logger.info(f"⚠️ Some database objects already exist (this is normal): {e}")
            else:
                raise

        existing_tables = inspect(bind).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        logger.info(f"📋 Tables: {', '.join(sorted(existing_tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False


@contextmanager
def managed_session(session_factory: sessionmaker = None):
    """Sync context manager for database sessions: commit on success, rollback on error"""
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def test_connection() -> bool:
    """Test database connection"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
