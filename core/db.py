import logging
import os
import re
import ssl
import time
import urllib.parse
from contextlib import contextmanager

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

load_dotenv(override=False)

DATABASE_URL = os.getenv("DATABASE_URL")

# Tests build their own engine; this only keeps imports working without a database.
TESTING = os.getenv("TESTING", "false").lower() == "true"

logger = logging.getLogger(__name__)

if not DATABASE_URL:
    if TESTING:
        DATABASE_URL = "sqlite:///:memory:"
    else:
        raise ValueError("DATABASE_URL environment variable is not set")

ssl_mode = None
if not DATABASE_URL.startswith("sqlite"):
    # Heroku-style URLs
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

    parsed = urllib.parse.urlparse(DATABASE_URL)
    ssl_mode = urllib.parse.parse_qs(parsed.query).get("sslmode", [None])[0]

    # Switch to the pg8000 driver; SSL is passed through connect_args instead of the URL
    if DATABASE_URL.startswith("postgresql://"):
        match = re.match(
            r"postgresql://([^:]+):([^@]+)@([^:/]+):?(\d*)/?([^?]*)", DATABASE_URL
        )
        if match:
            username, password, host, port, dbname = match.groups()
            DATABASE_URL = (
                f"postgresql+pg8000://{username}:{password}@{host}:{port or '5432'}/{dbname}"
            )


def _build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})

    connect_args = {}
    if ssl_mode != "disable" and not TESTING:
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        connect_args["ssl_context"] = ssl_context

    return create_engine(
        url,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_timeout=int(os.getenv("DB_POOL_TIMEOUT_SECONDS", "30")),
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE_SECONDS", "300")),
        pool_pre_ping=True,
        echo=False,
        connect_args=connect_args,
    )


engine = _build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def install_slow_query_logging(_engine):
    threshold_ms = float(os.getenv("SLOW_DB_QUERY_THRESHOLD_MS", "200"))
    if threshold_ms <= 0:
        return

    slow_logger = logging.getLogger("db.slow_query")

    @event.listens_for(_engine, "before_cursor_execute")
    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        context._query_start_time = time.perf_counter()

    @event.listens_for(_engine, "after_cursor_execute")
    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start = getattr(context, "_query_start_time", None)
        if start is None:
            return
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        if elapsed_ms < threshold_ms:
            return

        stmt = " ".join(str(statement).split())
        if len(stmt) > 500:
            stmt = stmt[:500] + "…"
        slow_logger.warning("SLOW_DB_QUERY | ms=%.1f | stmt=%s", elapsed_ms, stmt)


install_slow_query_logging(engine)


def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context():
    """Context manager for database sessions (used outside request scope, e.g. websockets)"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
