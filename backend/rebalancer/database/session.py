"""
Database Engine & Session Management
The allocation store lives in a single relational database. SQLite is the
default for local runs and tests; any SQLAlchemy URL works in production.
"""
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase
from typing import Generator
from loguru import logger

from rebalancer.core.config import get_settings

settings = get_settings()


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine with pool options suited to the backend."""
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=echo,
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        url,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        echo=echo,
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        bind=bind,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


# ============================================================================
# Engine & Session Factory
# ============================================================================
engine = build_engine(settings.DATABASE_URL, echo=False)
SessionLocal = build_session_factory(engine)


# ============================================================================
# Declarative Base
# ============================================================================
class Base(DeclarativeBase):
    """Base for allocation store tables."""
    pass


# ============================================================================
# Dependencies (for FastAPI)
# ============================================================================
def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Factory used by the orchestrator to open one session per SKU."""
    return SessionLocal


def get_engine() -> Engine:
    return engine


def init_db(bind: Engine = None) -> None:
    """Create all tables that do not exist yet."""
    import rebalancer.models  # noqa: F401  (register mappers)

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Allocation store schema ready")


# ============================================================================
# Health Checks
# ============================================================================
def check_db_connection(bind: Engine = None) -> bool:
    """Verify database connectivity."""
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
