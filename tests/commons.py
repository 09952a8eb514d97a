import logging
from collections.abc import Sequence
from datetime import date, time
from functools import lru_cache
from pathlib import Path
from typing import Any

import sqlalchemy as sa
from fastapi import FastAPI
from redis.lock import Lock
from sqlalchemy import NullPool
from sqlalchemy.ext.asyncio import AsyncEngine

from gymbooking.core.utils.config import Settings
from gymbooking.modules.booking import models_booking
from gymbooking.modules.booking.bootstrap_booking import ensure_booking_schema
from gymbooking.modules.booking.types_booking import ApprovalStatus, BookingStatus
from gymbooking.types.admission_guard import AdmissionGuard
from gymbooking.types.sqlalchemy import SessionLocalType
from gymbooking.utils.state import (
    LifespanState,
    create_store_engine,
    init_admission_guard,
    init_redis_client,
    init_SessionLocal,
)


class FailedToAddObjectToDB(Exception):
    """Exception raised when an object cannot be added to the database."""


class FakeScript:
    """
    In memory stand-in for the Lua script `redis.lock.Lock` releases its lock with.
    Other scripts are not supported.
    """

    def __init__(self, script: str) -> None:
        self.script = script

    def __call__(
        self,
        keys: Sequence[str] = (),
        args: Sequence[Any] = (),
        client: "FakeRedis | None" = None,
    ) -> int:
        if self.script != Lock.LUA_RELEASE_SCRIPT or client is None:
            raise NotImplementedError(self.script)
        (key,) = keys
        (token,) = args
        if client.get(key) != _as_bytes(token):
            return 0
        client.delete(key)
        return 1


def _as_bytes(value: Any) -> bytes:
    return value if isinstance(value, bytes) else str(value).encode()


class FakeRedis:
    """
    In memory stand-in for the few `redis.Redis` commands used by the application:
    the rate limiter and the admission lock.

    Expirations are recorded but never applied.
    """

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.expirations: dict[str, int] = {}

    def lock(self, name: str, **kwargs: Any) -> Lock:
        return Lock(self, name, **kwargs)

    def register_script(self, script: str) -> FakeScript:
        return FakeScript(script)

    def incr(self, key: str) -> int:
        self.values[key] = int(self.values.get(key, 0)) + 1
        return self.values[key]

    def expire(self, key: str, seconds: int) -> bool:
        self.expirations[key] = seconds
        return key in self.values

    def set(
        self,
        key: str,
        value: str,
        nx: bool = False,
        px: int | None = None,
        ex: int | None = None,
    ) -> bool | None:
        if nx and key in self.values:
            return None
        self.values[key] = value
        if px is not None:
            self.expirations[key] = px // 1000
        if ex is not None:
            self.expirations[key] = ex
        return True

    def get(self, key: str) -> bytes | None:
        value = self.values.get(key)
        if value is None:
            return None
        return _as_bytes(value)

    def delete(self, key: str) -> int:
        return int(self.values.pop(key, None) is not None)

    def close(self) -> None:
        self.values.clear()


@lru_cache
def override_get_settings() -> Settings:
    """Override the get_settings function to use the testing session"""

    return Settings(
        _env_file="./tests/.env.test",
        _yaml_file="./tests/config.test.yaml",
    )


settings = override_get_settings()


def build_settings(**kwargs: Any) -> Settings:
    """Return the test settings, with `kwargs` taking precedence"""
    return Settings(
        _env_file="./tests/.env.test",
        _yaml_file="./tests/config.test.yaml",
        **kwargs,
    )


def sqlite_url(path: Path | str) -> str:
    return f"sqlite+aiosqlite:///{path}"


def create_test_engine(url: str) -> AsyncEngine:
    return create_store_engine(
        url,
        pool_size=1,
        echo=settings.DATABASE_DEBUG,
        # We need to use NullPool to run tests with several event loops
        # See https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html#using-multiple-asyncio-event-loops
        poolclass=NullPool,
    )


def attach_schema(engine: AsyncEngine, path: Path, schema: str) -> None:
    """
    Make the SQLite database at `path` available as `schema` on every connection of `engine`.

    Should be called before the engine opens its first connection.
    """

    @sa.event.listens_for(engine.sync_engine, "connect")
    def do_attach(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute(f"ATTACH DATABASE '{path}' AS {schema}")
        cursor.close()


engine = create_test_engine(settings.SQLALCHEMY_DATABASE_URL)
master_engine = create_test_engine(str(settings.MASTER_DATABASE_URL))
card_engine = create_test_engine(str(settings.CARD_DATABASE_URL))

TestingSessionLocal = init_SessionLocal(engine)


async def override_init_app_state(
    app: FastAPI,
    settings: Settings,
    gymbooking_error_logger: logging.Logger,
) -> LifespanState:
    """
    Initialize the state of the application. This dependency should be used at the start of the application lifespan.
    """
    redis_client = init_redis_client(
        settings=settings,
        gymbooking_error_logger=gymbooking_error_logger,
    )

    return LifespanState(
        engine=engine,
        SessionLocal=TestingSessionLocal,
        master_engine=master_engine,
        card_engine=card_engine,
        redis_client=redis_client,
        admission_guard=init_admission_guard(settings, redis_client),
    )


async def drop_all_tables(target_engine: AsyncEngine) -> None:
    async with target_engine.begin() as connection:
        await connection.run_sync(_drop_all_tables)


def _drop_all_tables(connection: sa.Connection) -> None:
    metadata = sa.MetaData()
    metadata.reflect(bind=connection)
    metadata.drop_all(bind=connection)


async def create_table(
    target_engine: AsyncEngine,
    table_name: str,
    columns: Sequence[sa.Column],
    rows: Sequence[dict[str, Any]] = (),
    schema: str | None = None,
) -> sa.Table:
    """
    Create a table of an external store, with its rows. Column names are physical names.
    """
    table = sa.Table(table_name, sa.MetaData(), *columns, schema=schema)
    async with target_engine.begin() as connection:
        await connection.run_sync(table.create)
        if rows:
            await connection.execute(table.insert(), list(rows))
    return table


async def create_schedule_table(target_engine: AsyncEngine) -> None:
    async with target_engine.begin() as connection:
        await connection.run_sync(models_booking.GymSchedule.__table__.create)


async def init_booking_store(target_engine: AsyncEngine) -> None:
    await create_schedule_table(target_engine)
    result = await ensure_booking_schema(target_engine)
    if not result.ok:
        raise FailedToAddObjectToDB(result.error)


async def add_object_to_db(
    db_object: Any,
    SessionLocal: SessionLocalType = TestingSessionLocal,
) -> None:
    """
    Add an object to the database
    """
    async with SessionLocal() as db:
        try:
            db.add(db_object)
            await db.commit()
        except Exception as error:
            await db.rollback()
            raise FailedToAddObjectToDB from error


async def add_schedule(
    session: str,
    start_time: time,
    quota: int | None,
    SessionLocal: SessionLocalType = TestingSessionLocal,
) -> models_booking.GymSchedule:
    schedule = models_booking.GymSchedule(
        session=session,
        start_time=start_time,
        end_time=time(start_time.hour + 1, start_time.minute),
        quota=quota,
    )
    await add_object_to_db(schedule, SessionLocal)
    return schedule


async def add_booking(
    schedule: models_booking.GymSchedule,
    employee_id: str,
    booking_date: date,
    status: BookingStatus = BookingStatus.BOOKED,
    SessionLocal: SessionLocalType = TestingSessionLocal,
) -> models_booking.GymBooking:
    booking = models_booking.GymBooking(
        employee_id=employee_id,
        card_no=None,
        employee_name=f"Employee {employee_id}",
        department="Operations",
        gender="F",
        session_name=schedule.session,
        schedule_id=schedule.schedule_id,
        booking_date=booking_date,
        status=status,
        approval_status=ApprovalStatus.PENDING,
    )
    await add_object_to_db(booking, SessionLocal)
    return booking


async def count_bookings(
    SessionLocal: SessionLocalType = TestingSessionLocal,
    **filters: Any,
) -> int:
    async with SessionLocal() as db:
        result = await db.execute(
            sa.select(sa.func.count())
            .select_from(models_booking.GymBooking)
            .filter_by(**filters),
        )
        return result.scalar() or 0


def employee_core_columns() -> list[sa.Column]:
    """The layout of the master store in most environments"""
    return [
        sa.Column("employee_id", sa.String(20), primary_key=True),
        sa.Column("name", sa.String(100)),
        sa.Column("department", sa.String(100)),
        sa.Column("id_card", sa.String(50)),
        sa.Column("staff_no", sa.String(20)),
        sa.Column("gender", sa.String(10)),
    ]


def card_columns() -> list[sa.Column]:
    return [
        sa.Column("CardID", sa.Integer, primary_key=True),
        sa.Column("StaffNo", sa.String(20)),
        sa.Column("CardNo", sa.String(50)),
        sa.Column("IsActive", sa.Integer),
        sa.Column("DelState", sa.Integer),
        sa.Column("Block", sa.String(10)),
    ]


def build_admission_guard(enabled: bool = True, redis_client: Any = None) -> AdmissionGuard:
    return AdmissionGuard(enabled=enabled, redis_client=redis_client, lock_timeout=1)
