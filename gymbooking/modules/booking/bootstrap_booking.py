"""
Bring the booking store to the schema the admission relies on.

The store predates this service and has been evolved by hand in several environments:
tables are created if needed, then every missing column, constraint and index is added.
Running it again against an up to date store does not issue any DDL.

Everything runs in one transaction: if a step fails, nothing is changed.
DDL is issued with Alembic operations, using batch mode for the changes SQLite can only
make by recreating the table.
"""

import logging
from typing import Any

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy.engine import Connection, Inspector
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from gymbooking.modules.booking import models_booking, schemas_booking
from gymbooking.modules.booking.types_booking import ACTIVE_STATUSES, ApprovalStatus
from gymbooking.types.exceptions import (
    DuplicateActiveBookingsError,
    MissingDependencyError,
)

gymbooking_booking_logger = logging.getLogger("gymbooking.booking")
gymbooking_error_logger = logging.getLogger("gymbooking.error")

SCHEDULE_TABLE = models_booking.GymSchedule.__tablename__
BOOKING_TABLE = models_booking.GymBooking.__tablename__

# Only the first violating groups are reported, the largest first
MAX_REPORTED_DUPLICATES = 20

# Columns added after the first deployments, they are nullable
LEGACY_OPTIONAL_COLUMNS: list[tuple[str, Any]] = [
    ("ApprovedBy", sa.String(50)),
    ("ApprovedAt", sa.DateTime()),
    ("RejectedReason", sa.String(255)),
]


def _normalize(name: str) -> str:
    # Some dialects reflect constraint names with their quotes
    return name.strip("\"[]`").lower()


def _lower(names: list[str]) -> list[str]:
    return [_normalize(name) for name in names]


def _columns_by_lower_name(inspector: Inspector, table_name: str) -> dict[str, Any]:
    return {
        column["name"].lower(): column for column in inspector.get_columns(table_name)
    }


def _index_names(inspector: Inspector, table_name: str) -> set[str]:
    return {
        _normalize(index["name"])
        for index in inspector.get_indexes(table_name)
        if index["name"]
    }


def _check_constraint_names(
    connection: Connection,
    inspector: Inspector,
    table_name: str,
) -> set[str]:
    try:
        return {
            _normalize(constraint["name"])
            for constraint in inspector.get_check_constraints(table_name)
            if constraint["name"]
        }
    except NotImplementedError:
        # Some dialects can not reflect check constraints, the SQL Server catalog is queried directly
        result = connection.execute(
            sa.text(
                "SELECT name FROM sys.check_constraints WHERE parent_object_id = OBJECT_ID(:table_name)",
            ),
            {"table_name": table_name},
        )
        return {_normalize(name) for name in result.scalars()}


def _is_schedule_id_unique(inspector: Inspector) -> bool:
    """The primary key, a unique constraint or a unique index should cover exactly ScheduleID"""
    expected = ["scheduleid"]

    primary_key = inspector.get_pk_constraint(SCHEDULE_TABLE)
    if _lower(primary_key.get("constrained_columns") or []) == expected:
        return True

    try:
        unique_constraints = inspector.get_unique_constraints(SCHEDULE_TABLE)
    except NotImplementedError:
        unique_constraints = []
    for constraint in unique_constraints:
        if _lower(constraint["column_names"]) == expected:
            return True

    for index in inspector.get_indexes(SCHEDULE_TABLE):
        if index["unique"] and _lower(
            [name for name in index["column_names"] if name],
        ) == expected:
            return True

    return False


def _has_schedule_foreign_key(inspector: Inspector) -> bool:
    for foreign_key in inspector.get_foreign_keys(BOOKING_TABLE):
        name = _normalize(foreign_key.get("name") or "")
        if name == models_booking.SCHEDULE_FOREIGN_KEY.lower():
            return True
        # The key may have been created by hand under another name
        if (
            _lower(foreign_key["constrained_columns"]) == ["scheduleid"]
            and foreign_key["referred_table"].lower() == SCHEDULE_TABLE
        ):
            return True
    return False


def _model_check_condition(name: str) -> Any:
    for constraint in models_booking.GymBooking.__table__.constraints:
        if isinstance(constraint, sa.CheckConstraint) and constraint.name == name:
            return constraint.sqltext
    raise KeyError(name)


def _model_index(name: str) -> sa.Index:
    for index in models_booking.GymBooking.__table__.indexes:
        if index.name == name:
            return index
    raise KeyError(name)


def _ensure_schedule_table(connection: Connection, operations: Operations) -> None:
    inspector = sa.inspect(connection)
    if SCHEDULE_TABLE not in _lower(inspector.get_table_names()):
        raise MissingDependencyError(SCHEDULE_TABLE)

    if "scheduleid" not in _columns_by_lower_name(inspector, SCHEDULE_TABLE):
        gymbooking_booking_logger.info(f"Adding column {SCHEDULE_TABLE}.ScheduleID")
        operations.add_column(
            SCHEDULE_TABLE,
            sa.Column("ScheduleID", sa.Integer(), sa.Identity(), nullable=False),
        )
        inspector = sa.inspect(connection)

    if not _is_schedule_id_unique(inspector):
        gymbooking_booking_logger.info(
            f"Adding unique constraint {models_booking.SCHEDULE_ID_UNIQUE_CONSTRAINT}",
        )
        with operations.batch_alter_table(SCHEDULE_TABLE) as batch_op:
            batch_op.create_unique_constraint(
                models_booking.SCHEDULE_ID_UNIQUE_CONSTRAINT,
                ["ScheduleID"],
            )


def _upgrade_booking_table(connection: Connection, operations: Operations) -> None:
    """Add the columns and constraints a legacy booking table lacks"""
    inspector = sa.inspect(connection)
    columns = _columns_by_lower_name(inspector, BOOKING_TABLE)

    for name, type_ in LEGACY_OPTIONAL_COLUMNS:
        if name.lower() not in columns:
            gymbooking_booking_logger.info(f"Adding column {BOOKING_TABLE}.{name}")
            operations.add_column(BOOKING_TABLE, sa.Column(name, type_, nullable=True))

    approval_column = columns.get("approvalstatus")
    if approval_column is None:
        gymbooking_booking_logger.info(f"Adding column {BOOKING_TABLE}.ApprovalStatus")
        operations.add_column(
            BOOKING_TABLE,
            sa.Column("ApprovalStatus", sa.String(20), nullable=True),
        )
    approval_needs_not_null = approval_column is None or approval_column["nullable"]
    approval_needs_default = (
        approval_column is None or approval_column.get("default") is None
    )

    if approval_needs_not_null:
        # Legacy bookings were never reviewed
        booking_table = sa.table(BOOKING_TABLE, sa.column("ApprovalStatus"))
        connection.execute(
            sa.update(booking_table)
            .where(booking_table.c.ApprovalStatus.is_(None))
            .values(ApprovalStatus=ApprovalStatus.PENDING.value),
        )

    inspector = sa.inspect(connection)
    existing_checks = _check_constraint_names(connection, inspector, BOOKING_TABLE)
    missing_checks = [
        name
        for name in (
            models_booking.STATUS_CHECK_CONSTRAINT,
            models_booking.APPROVAL_STATUS_CHECK_CONSTRAINT,
        )
        if name.lower() not in existing_checks
    ]
    missing_foreign_key = not _has_schedule_foreign_key(inspector)

    if not (
        missing_checks
        or missing_foreign_key
        or approval_needs_not_null
        or approval_needs_default
    ):
        return

    # All constraint changes are made in a single batch, SQLite recreates the table once
    with operations.batch_alter_table(BOOKING_TABLE) as batch_op:
        if approval_needs_not_null or approval_needs_default:
            alter_kwargs: dict[str, Any] = {}
            if approval_needs_not_null:
                alter_kwargs["nullable"] = False
            if approval_needs_default:
                alter_kwargs["server_default"] = ApprovalStatus.PENDING.value
            gymbooking_booking_logger.info(
                f"Altering column {BOOKING_TABLE}.ApprovalStatus: {', '.join(alter_kwargs)}",
            )
            batch_op.alter_column(
                "ApprovalStatus",
                existing_type=sa.String(20),
                existing_nullable=approval_column is None or approval_column["nullable"],
                **alter_kwargs,
            )
        for name in missing_checks:
            gymbooking_booking_logger.info(f"Adding check constraint {name}")
            batch_op.create_check_constraint(name, _model_check_condition(name))
        if missing_foreign_key:
            gymbooking_booking_logger.info(
                f"Adding foreign key {models_booking.SCHEDULE_FOREIGN_KEY}",
            )
            batch_op.create_foreign_key(
                models_booking.SCHEDULE_FOREIGN_KEY,
                SCHEDULE_TABLE,
                ["ScheduleID"],
                ["ScheduleID"],
            )


def find_duplicate_active_bookings(connection: Connection) -> list[dict[str, Any]]:
    """
    Return the (employee, day) pairs having more than one active booking.
    """
    booking = models_booking.GymBooking.__table__
    count = sa.func.count()
    result = connection.execute(
        sa.select(
            booking.c.EmployeeID.label("employee_id"),
            booking.c.BookingDate.label("booking_date"),
            count.label("count"),
        )
        .where(booking.c.Status.in_(ACTIVE_STATUSES))
        .group_by(booking.c.EmployeeID, booking.c.BookingDate)
        .having(count > 1)
        .order_by(count.desc())
        .limit(MAX_REPORTED_DUPLICATES),
    )
    return [
        {
            "employee_id": row.employee_id,
            "booking_date": row.booking_date,
            "count": row.count,
        }
        for row in result
    ]


def _ensure_booking_indexes(connection: Connection) -> None:
    index_names = _index_names(sa.inspect(connection), BOOKING_TABLE)

    if models_booking.ONE_ACTIVE_BOOKING_PER_DAY_INDEX.lower() not in index_names:
        duplicates = find_duplicate_active_bookings(connection)
        if duplicates:
            raise DuplicateActiveBookingsError(
                models_booking.ONE_ACTIVE_BOOKING_PER_DAY_INDEX,
                duplicates,
            )
        gymbooking_booking_logger.info(
            f"Creating index {models_booking.ONE_ACTIVE_BOOKING_PER_DAY_INDEX}",
        )
        _model_index(models_booking.ONE_ACTIVE_BOOKING_PER_DAY_INDEX).create(connection)

    if models_booking.TODAY_BOOKINGS_INDEX.lower() not in index_names:
        gymbooking_booking_logger.info(
            f"Creating index {models_booking.TODAY_BOOKINGS_INDEX}",
        )
        _model_index(models_booking.TODAY_BOOKINGS_INDEX).create(connection)


def upgrade_booking_store(connection: Connection) -> None:
    """
    Create or upgrade the booking tables. Should be run inside a transaction.
    """
    operations = Operations(MigrationContext.configure(connection))

    _ensure_schedule_table(connection, operations)

    if BOOKING_TABLE not in _lower(sa.inspect(connection).get_table_names()):
        gymbooking_booking_logger.info(f"Creating table {BOOKING_TABLE}")
        # Constraints and indexes are created with the table
        models_booking.GymBooking.__table__.create(connection)
        return

    _upgrade_booking_table(connection, operations)
    _ensure_booking_indexes(connection)


def describe_booking_table(connection: Connection) -> schemas_booking.BootstrapResult:
    inspector = sa.inspect(connection)
    index_names = _index_names(inspector, BOOKING_TABLE)
    return schemas_booking.BootstrapResult(
        ok=True,
        columns=[
            schemas_booking.BookingTableColumn(
                name=column["name"],
                type=str(column["type"].compile(dialect=connection.dialect)),
                nullable=column["nullable"],
            )
            for column in inspector.get_columns(BOOKING_TABLE)
        ],
        index_ok=models_booking.ONE_ACTIVE_BOOKING_PER_DAY_INDEX.lower() in index_names,
        today_index_ok=models_booking.TODAY_BOOKINGS_INDEX.lower() in index_names,
    )


async def ensure_booking_schema(engine: AsyncEngine) -> schemas_booking.BootstrapResult:
    """
    Upgrade the booking store and describe the resulting booking table.

    Failures are returned, not raised: if existing bookings would violate the
    one active booking per day index, they are listed in `duplicates` and must be
    cleaned up by hand before running it again.
    """
    try:
        async with engine.begin() as connection:
            await connection.run_sync(upgrade_booking_store)
    except DuplicateActiveBookingsError as error:
        gymbooking_booking_logger.warning(
            f"Booking store initialization aborted: {error} ({len(error.duplicates)} groups)",
        )
        return schemas_booking.BootstrapResult(
            ok=False,
            duplicates=[
                schemas_booking.DuplicateActiveBooking(**duplicate)
                for duplicate in error.duplicates
            ],
            error=str(error),
        )
    except MissingDependencyError as error:
        gymbooking_booking_logger.warning(
            f"Booking store initialization aborted: {error}",
        )
        return schemas_booking.BootstrapResult(ok=False, error=str(error))
    except (SQLAlchemyError, OSError) as error:
        gymbooking_error_logger.exception("Booking store initialization failed")
        return schemas_booking.BootstrapResult(ok=False, error=str(error))

    async with engine.connect() as connection:
        result = await connection.run_sync(describe_booking_table)
    gymbooking_booking_logger.info(
        f"Booking store initialized (index_ok={result.index_ok}, today_index_ok={result.today_index_ok})",
    )
    return result
