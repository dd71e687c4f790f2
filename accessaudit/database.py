import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import get_settings

logger = logging.getLogger(__name__)

# Base class for all models
Base = declarative_base()


def make_engine(url: str, echo: bool = False) -> Engine:
    """
    Build an engine for the given URL.
    SQLite needs cross-thread access (background jobs) and, when in-memory,
    a single shared connection.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, future=True, **kwargs)

    return create_engine(
        url,
        pool_pre_ping=True,              # Detect broken connections
        pool_recycle=1800,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        echo=echo,
        future=True,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


_settings = get_settings()

# ── Database Engine ──────────────────────────────────────────────────────────
engine = make_engine(_settings.DATABASE_URL, echo=_settings.DB_ECHO)

# Session factory
SessionLocal = make_session_factory(engine)


def init_db(bind: Optional[Engine] = None, drop_all: bool = False) -> None:
    """
    Initialize database schema.

    WARNING: drop_all=True will DELETE ALL DATA. Use only in dev/testing!
    """
    bind = bind or engine
    try:
        # Import all models so they register with Base.metadata
        from . import models  # noqa: F401

        if drop_all:
            logger.warning("Dropping all tables! This will delete all data.")
            Base.metadata.drop_all(bind=bind)

        logger.info("Creating database tables if they don't exist...")
        Base.metadata.create_all(bind=bind)
        logger.info("Database initialized successfully.")

    except SQLAlchemyError as e:
        logger.error("Database initialization failed: %s", e)
        raise


def dispose_engine() -> None:
    engine.dispose()
    logger.info("Database engine disposed.")
