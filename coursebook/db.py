import logging, time
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy import text, event
from contextlib import asynccontextmanager
from .config import get_settings

log = logging.getLogger("coursebook.sql")
S = get_settings()


def _build_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        eng = create_async_engine(url, future=True, connect_args={"timeout": 30})
        _serialize_sqlite_writers(eng)
    else:
        eng = create_async_engine(url, future=True, pool_pre_ping=True, pool_size=10, max_overflow=20)
    _log_slow_queries(eng, S.SLOW_QUERY_MS)
    return eng


def _serialize_sqlite_writers(eng: AsyncEngine) -> None:
    # SQLite has no row locks; taking the write lock at BEGIN serializes
    # locked transactions the way FOR UPDATE on the session row does on Postgres.
    @event.listens_for(eng.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def _log_slow_queries(eng: AsyncEngine, threshold_ms: int) -> None:
    @event.listens_for(eng.sync_engine, "before_cursor_execute")
    def _before(conn, cursor, statement, parameters, context, executemany):
        context._query_start_time = time.perf_counter()

    @event.listens_for(eng.sync_engine, "after_cursor_execute")
    def _after(conn, cursor, statement, parameters, context, executemany):
        started = getattr(context, "_query_start_time", None)
        if started is None:
            return
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if elapsed_ms >= threshold_ms:
            log.warning("slow_query", extra={"elapsed_ms": elapsed_ms, "sql": statement[:200]})


engine = _build_engine(S.DATABASE_URL)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def _ping() -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


@asynccontextmanager
async def lifespan_db():
    try:
        await _ping()
        log.info("database_ready", extra={"dialect": engine.dialect.name})
        yield
    finally:
        await engine.dispose()


async def db_health() -> bool:
    try:
        await _ping()
        return True
    except Exception:
        log.warning("db_health_failed", exc_info=True)
        return False


async def get_db() -> AsyncSession:
    async with SessionLocal() as session:
        yield session
