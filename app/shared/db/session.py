import ssl
import time
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()
settings = get_settings()

if not settings.DATABASE_URL:
    raise ConfigurationError("DATABASE_URL is not set")

SSL_MODES = ("disable", "require", "verify-ca", "verify-full")
SLOW_QUERY_THRESHOLD_SECONDS = 0.2


def _ssl_context(ssl_mode: str, ca_cert_path: Optional[str]):
    """asyncpg ``ssl`` argument for a libpq-style DB_SSL_MODE."""
    if ssl_mode not in SSL_MODES:
        raise ConfigurationError(f"Invalid DB_SSL_MODE {ssl_mode!r}, expected one of {', '.join(SSL_MODES)}")

    if ssl_mode == "disable":
        logger.warning("database_ssl_disabled")
        return False

    if ssl_mode == "require" and not ca_cert_path:
        if settings.is_production:
            raise ConfigurationError("DB_SSL_CA_CERT_PATH is mandatory for DB_SSL_MODE=require in production")
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        logger.warning("database_ssl_unverified")
        return context

    if not ca_cert_path:
        raise ConfigurationError(f"DB_SSL_CA_CERT_PATH is required for DB_SSL_MODE={ssl_mode}")
    context = ssl.create_default_context(cafile=ca_cert_path)
    context.verify_mode = ssl.CERT_REQUIRED
    context.check_hostname = ssl_mode == "verify-full"
    logger.info("database_ssl_verified", mode=ssl_mode)
    return context


def _build_connect_args(database_url: str, ssl_mode: str) -> dict:
    if database_url.startswith("sqlite"):
        return {}
    return {
        # pgbouncer transaction pooling cannot keep prepared statements
        "statement_cache_size": 0,
        "ssl": _ssl_context(ssl_mode, settings.DB_SSL_CA_CERT_PATH),
    }


database_url = settings.DATABASE_URL
if settings.TESTING and not database_url.startswith("sqlite"):
    database_url = "sqlite+aiosqlite:///:memory:"

if database_url.startswith("sqlite"):
    # Connections must not cross event loops (each Celery job runs its own)
    pool_args = {"poolclass": NullPool}
else:
    pool_args = {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

engine = create_async_engine(
    database_url,
    echo=settings.DEBUG,
    connect_args=_build_connect_args(database_url, settings.DB_SSL_MODE.lower()),
    **pool_args,
)


@event.listens_for(engine.sync_engine, "before_cursor_execute")
def _mark_query_start(conn, _cursor, _statement, _parameters, _context, _executemany):
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


@event.listens_for(engine.sync_engine, "after_cursor_execute")
def _log_slow_query(conn, _cursor, statement, _parameters, _context, _executemany):
    elapsed = time.perf_counter() - conn.info["query_start_time"].pop()
    if elapsed > SLOW_QUERY_THRESHOLD_SECONDS:
        logger.warning("slow_query_detected", duration_seconds=round(elapsed, 3), statement=statement[:200])


async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request."""
    async with async_session_maker() as session:
        yield session
