import logging
import os
import time

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

# Get environment-specific pool settings
POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "30"))
POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "300"))
ENABLE_QUERY_LOGGING = os.getenv("DB_LOG_SLOW_QUERIES", "true").lower() == "true"
SLOW_QUERY_THRESHOLD = float(os.getenv("DB_SLOW_QUERY_THRESHOLD", "1.0"))

Base = declarative_base()


def create_db_engine(database_url: str, **overrides) -> Engine:
    """Build the engine for one process. Callers own its lifetime and must dispose() it."""
    if database_url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
    else:
        options = {
            "pool_pre_ping": True,  # Test connections before using
            "pool_recycle": POOL_RECYCLE,
            "pool_size": POOL_SIZE,
            "max_overflow": MAX_OVERFLOW,
            "pool_timeout": POOL_TIMEOUT,
        }
    options.update(overrides)

    try:
        engine = create_engine(database_url, echo=False, **options)
        logger.info("✅ Database engine created successfully")
    except Exception as e:
        logger.error(f"❌ Failed to create database engine: {e}")
        raise

    if ENABLE_QUERY_LOGGING:
        _attach_slow_query_logging(engine)

    return engine


def _attach_slow_query_logging(engine: Engine) -> None:
    @event.listens_for(engine, "before_cursor_execute")
    def before_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
        conn.info.setdefault("query_start_time", []).append(time.time())

    @event.listens_for(engine, "after_cursor_execute")
    def after_cursor_execute(conn, _cursor, statement, _parameters, context, _executemany):
        total = time.time() - conn.info["query_start_time"].pop(-1)
        if total > SLOW_QUERY_THRESHOLD:
            logger.warning(f"🐌 Slow query ({total:.2f}s): {statement[:200]}...")


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request):
    """Yield a request-scoped session from the factory built in the app lifespan"""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
