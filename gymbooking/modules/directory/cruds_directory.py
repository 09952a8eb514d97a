import logging
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from gymbooking.core.utils.config import Settings
from gymbooking.modules.directory import resolver_directory, schemas_directory
from gymbooking.modules.directory.types_directory import (
    EMPLOYEE_CARD,
    EMPLOYEE_CORE,
    EMPLOYEE_EMPLOYMENT,
    ColumnAdapter,
)
from gymbooking.types.exceptions import (
    ExternalStoreNotConfiguredError,
    SchemaResolutionError,
)

gymbooking_booking_logger = logging.getLogger("gymbooking.booking")

ACTIVE_CARD_VALUES = ["1", "TRUE", "ACTIVE", "AKTIF"]
UNBLOCKED_CARD_VALUES = ["0", "FALSE", "UNBLOCK"]


def _as_text(value: Any) -> str | None:
    """Return the value as a stripped string, None if it is NULL or blank"""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_upper_text(column: sa.ColumnClause) -> sa.ColumnElement:
    # Flags are stored as bits, integers or strings depending on the store
    return sa.func.upper(sa.cast(column, sa.String(50)))


async def get_employee_record(
    connection: AsyncConnection,
    employee_id: str,
    canonical_schema: str = "dbo",
    adapter: ColumnAdapter | None = None,
) -> schemas_directory.EmployeeRecord | None:
    """
    Return the master store row of the employee, or None if there is none.

    Raise `SchemaResolutionError` if the store has no `employee_core` table or
    if it lacks an employee id or name column.
    """
    resolved_table = await connection.run_sync(
        resolver_directory.resolve_table,
        EMPLOYEE_CORE,
        canonical_schema,
    )
    columns = resolver_directory.resolve_columns(resolved_table, EMPLOYEE_CORE, adapter)
    table = resolver_directory.physical_table(resolved_table, columns)

    result = await connection.execute(
        sa.select(
            *[
                resolver_directory.field_expression(table, columns, field)
                for field in EMPLOYEE_CORE.fields
            ],
        )
        .where(table.c[columns["employee_id"]] == employee_id)
        .limit(1),
    )
    row = result.mappings().first()
    if row is None:
        return None

    return schemas_directory.EmployeeRecord(
        employee_id=_as_text(row["employee_id"]) or employee_id,
        name=_as_text(row["name"]) or "",
        department=_as_text(row["department"]),
        card_no=_as_text(row["card_no"]),
        staff_no=_as_text(row["staff_no"]),
        gender=_as_text(row["gender"]),
    )


async def get_latest_employment_department(
    connection: AsyncConnection,
    employee_id: str,
    canonical_schema: str = "dbo",
    adapter: ColumnAdapter | None = None,
) -> str | None:
    """
    Return the department of the current employment of the employee.

    Current employments (without end date) come first, then the most recent ones.
    A store without employment table, or whose table can not be mapped, has no department to offer.
    """
    try:
        resolved_table = await connection.run_sync(
            resolver_directory.resolve_table,
            EMPLOYEE_EMPLOYMENT,
            canonical_schema,
        )
        columns = resolver_directory.resolve_columns(
            resolved_table,
            EMPLOYEE_EMPLOYMENT,
            adapter,
        )
    except SchemaResolutionError:
        return None

    table = resolver_directory.physical_table(resolved_table, columns)

    order_by: list[sa.ColumnElement] = []
    if columns["end_date"]:
        end_date = table.c[columns["end_date"]]
        order_by.append(sa.case((end_date.is_(None), 0), else_=1))
    if columns["start_date"]:
        order_by.append(table.c[columns["start_date"]].desc())

    result = await connection.execute(
        sa.select(table.c[columns["department"]].label("department"))
        .where(table.c[columns["employee_id"]] == employee_id)
        .order_by(*order_by)
        .limit(1),
    )
    return _as_text(result.scalar())


async def get_active_card_number(
    connection: AsyncConnection,
    employee_id: str,
    canonical_schema: str = "dbo",
    adapter: ColumnAdapter | None = None,
) -> str | None:
    """
    Return the card number of the employee in the card store.

    Deleted and blocked cards are ignored, active cards come first.

    Raise `SchemaResolutionError` if the store has no card table, or if it lacks
    an employee id or card number column.
    """
    resolved_table = await connection.run_sync(
        resolver_directory.resolve_table,
        EMPLOYEE_CARD,
        canonical_schema,
    )
    columns = resolver_directory.resolve_columns(resolved_table, EMPLOYEE_CARD, adapter)
    table = resolver_directory.physical_table(resolved_table, columns)

    query = sa.select(table.c[columns["card_no"]].label("card_no")).where(
        sa.cast(table.c[columns["employee_id"]], sa.String(100)) == employee_id,
    )
    if columns["del_state"]:
        del_state = table.c[columns["del_state"]]
        query = query.where(
            sa.or_(
                del_state.is_(None),
                sa.cast(del_state, sa.String(50)) == "0",
            ),
        )
    if columns["block"]:
        block = table.c[columns["block"]]
        query = query.where(
            sa.or_(
                block.is_(None),
                _as_upper_text(block).in_(UNBLOCKED_CARD_VALUES),
            ),
        )
    if columns["active"]:
        query = query.order_by(
            sa.case(
                (_as_upper_text(table.c[columns["active"]]).in_(ACTIVE_CARD_VALUES), 0),
                else_=1,
            ),
        )

    result = await connection.execute(query.limit(1))
    return _as_text(result.scalar())


async def try_get_active_card_number(
    card_engine: AsyncEngine | None,
    employee_id: str,
    settings: Settings,
) -> str | None:
    """
    Look the card number up in the card store, if it is configured.

    The card store is a nice to have: any failure is logged and gives None.
    """
    if card_engine is None:
        return None
    try:
        async with card_engine.connect() as connection:
            return await get_active_card_number(
                connection=connection,
                employee_id=employee_id,
                canonical_schema=settings.DIRECTORY_CANONICAL_SCHEMA,
                adapter=resolver_directory.build_column_adapter(
                    settings,
                    EMPLOYEE_CARD.name,
                ),
            )
    except (SQLAlchemyError, SchemaResolutionError, OSError) as error:
        gymbooking_booking_logger.warning(
            f"Card lookup failed for employee {employee_id}, ignoring the card store: {error}",
        )
        return None


async def resolve_employee_profile(
    master_engine: AsyncEngine | None,
    card_engine: AsyncEngine | None,
    employee_id: str,
    settings: Settings,
) -> schemas_directory.EmployeeProfile | None:
    """
    Build the profile a booking copies from the external directories.

    The department of the current employment takes precedence over the one of the master record.
    The card number comes from the card store, looked up by staff number then employee id,
    and falls back to the master record.

    Return None if the master store does not know the employee.
    """
    if master_engine is None:
        raise ExternalStoreNotConfiguredError("Master")

    async with master_engine.connect() as connection:
        record = await get_employee_record(
            connection=connection,
            employee_id=employee_id,
            canonical_schema=settings.DIRECTORY_CANONICAL_SCHEMA,
            adapter=resolver_directory.build_column_adapter(settings, EMPLOYEE_CORE.name),
        )
        if record is None:
            return None

        department = record.department or ""
        employment_department = await get_latest_employment_department(
            connection=connection,
            employee_id=employee_id,
            canonical_schema=settings.DIRECTORY_CANONICAL_SCHEMA,
            adapter=resolver_directory.build_column_adapter(
                settings,
                EMPLOYEE_EMPLOYMENT.name,
            ),
        )
        if employment_department:
            department = employment_department

    card_lookup_id = record.staff_no or employee_id
    card_no = await try_get_active_card_number(card_engine, card_lookup_id, settings)
    if card_no is None and card_lookup_id != employee_id:
        card_no = await try_get_active_card_number(card_engine, employee_id, settings)

    return schemas_directory.EmployeeProfile(
        employee_id=employee_id,
        name=record.name,
        department=department,
        gender=record.gender or "UNKNOWN",
        card_no=card_no or record.card_no,
    )
