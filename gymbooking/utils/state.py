import logging
from typing import Any, TypedDict

import redis
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from gymbooking.core.utils.config import Settings
from gymbooking.types.admission_guard import AdmissionGuard
from gymbooking.types.sqlalchemy import SessionLocalType


class LifespanState(TypedDict):
    """
    The LifespanState is contained instead of the FastAPI app
    """

    # Booking store engine
    engine: AsyncEngine
    # Booking store session creator
    SessionLocal: SessionLocalType
    # External stores are read only and may not be configured
    master_engine: AsyncEngine | None
    card_engine: AsyncEngine | None
    # We may not have a Redis Client if it was not configured
    redis_client: redis.Redis | None
    admission_guard: AdmissionGuard


class RuntimeLifespanState(LifespanState):
    """
    Requests contains an extended version of the LifespanState for each request.
    """

    request_id: str


def _enable_sqlite_transactional_ddl(engine: AsyncEngine) -> None:
    """
    By default, the sqlite3 driver does not open a transaction before DDL statements,
    which are then committed immediately. We emit BEGIN ourselves so that schema changes
    are rolled back with the rest of the transaction.

    See https://docs.sqlalchemy.org/en/20/dialects/sqlite.html#serializable-isolation-savepoints-transactional-ddl
    """

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(connection):
        connection.exec_driver_sql("BEGIN")


def create_store_engine(
    url: str,
    pool_size: int,
    echo: bool = False,
    **kwargs: Any,
) -> AsyncEngine:
    """
    Create the engine of a store. Connections are checked before use, stores may be restarted independently.
    """
    engine_kwargs: dict[str, Any] = {"echo": echo, "pool_pre_ping": True, **kwargs}
    is_sqlite = make_url(url).get_backend_name() == "sqlite"
    if not is_sqlite:
        engine_kwargs["pool_size"] = pool_size
        engine_kwargs["max_overflow"] = 0

    engine = create_async_engine(url, **engine_kwargs)
    if is_sqlite:
        _enable_sqlite_transactional_ddl(engine)
    return engine


def init_engine(settings: Settings) -> AsyncEngine:
    """
    Return the (asynchronous) booking store engine
    """
    return create_store_engine(
        settings.SQLALCHEMY_DATABASE_URL,
        pool_size=settings.DATABASE_POOL_SIZE,
        echo=settings.DATABASE_DEBUG,
    )


def init_SessionLocal(engine: AsyncEngine) -> SessionLocalType:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def init_external_engines(
    settings: Settings,
    gymbooking_error_logger: logging.Logger,
) -> tuple[AsyncEngine | None, AsyncEngine | None]:
    """
    Return the engines of the master employee store and of the card store, None if they are not configured.
    """
    master_engine: AsyncEngine | None = None
    card_engine: AsyncEngine | None = None

    if settings.MASTER_DATABASE_URL:
        master_engine = create_store_engine(
            settings.MASTER_DATABASE_URL,
            pool_size=settings.EXTERNAL_DATABASE_POOL_SIZE,
            echo=settings.DATABASE_DEBUG,
        )
    else:
        gymbooking_error_logger.warning(
            "MASTER_DATABASE_URL is not configured, bookings can not be created",
        )

    if settings.CARD_DATABASE_URL:
        card_engine = create_store_engine(
            settings.CARD_DATABASE_URL,
            pool_size=settings.EXTERNAL_DATABASE_POOL_SIZE,
            echo=settings.DATABASE_DEBUG,
        )

    return master_engine, card_engine


def init_redis_client(
    settings: Settings,
    gymbooking_error_logger: logging.Logger,
) -> redis.Redis | None:
    """
    Initialize the Redis client if the settings specify a Redis connection.
    Returns None if Redis is not configured or can not be reached.
    """
    if not settings.REDIS_HOST:
        return None
    try:
        redis_client = redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD,
            socket_keepalive=True,
        )
        redis_client.ping()  # Test the connection
    except redis.exceptions.ConnectionError:
        gymbooking_error_logger.exception(
            "Redis connection error: Check the Redis configuration or the Redis server",
        )
        return None
    return redis_client


def init_admission_guard(
    settings: Settings,
    redis_client: redis.Redis | None,
) -> AdmissionGuard:
    return AdmissionGuard(
        enabled=settings.ADMISSION_LOCK_ENABLED,
        redis_client=redis_client,
        lock_timeout=settings.ADMISSION_LOCK_TIMEOUT,
    )


def disconnect_redis_client(redis_client: redis.Redis | None) -> None:
    if redis_client is not None:
        redis_client.close()


async def disconnect_engines(*engines: AsyncEngine | None) -> None:
    for engine in engines:
        if engine is not None:
            await engine.dispose()
