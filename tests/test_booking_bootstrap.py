from datetime import date, time
from pathlib import Path

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from gymbooking.modules.booking import bootstrap_booking, models_booking
from tests.commons import (
    create_schedule_table,
    create_table,
    create_test_engine,
    sqlite_url,
)


@pytest.fixture
def booking_engine(tmp_path: Path) -> AsyncEngine:
    return create_test_engine(sqlite_url(tmp_path / "gym.db"))


def legacy_booking_columns() -> list[sa.Column]:
    """The booking table as it was created by the first deployments"""
    return [
        sa.Column("BookingID", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("EmployeeID", sa.String(20), nullable=False),
        sa.Column("CardNo", sa.String(50)),
        sa.Column("EmployeeName", sa.String(100)),
        sa.Column("Department", sa.String(100)),
        sa.Column("Gender", sa.String(10)),
        sa.Column("SessionName", sa.String(50)),
        sa.Column("ScheduleID", sa.Integer),
        sa.Column("BookingDate", sa.Date),
        sa.Column("Status", sa.String(20)),
        sa.Column("CreatedAt", sa.DateTime, server_default=sa.func.now()),
    ]


def legacy_booking(employee_id: str, status: str = "BOOKED") -> dict:
    return {
        "EmployeeID": employee_id,
        "EmployeeName": f"Employee {employee_id}",
        "Department": "Operations",
        "Gender": "M",
        "SessionName": "Morning",
        "ScheduleID": 1,
        "BookingDate": date(2024, 1, 10),
        "Status": status,
    }


async def create_legacy_store(engine: AsyncEngine, bookings: list[dict]) -> None:
    await create_schedule_table(engine)
    async with engine.begin() as connection:
        await connection.execute(
            sa.insert(models_booking.GymSchedule.__table__),
            [
                {
                    "Session": "Morning",
                    "StartTime": time(6, 0),
                    "EndTime": time(7, 0),
                    "Quota": 15,
                },
            ],
        )
    await create_table(engine, "gym_booking", legacy_booking_columns(), rows=bookings)


async def inspect_booking_table(engine: AsyncEngine) -> dict:
    def inspect(connection: sa.Connection) -> dict:
        inspector = sa.inspect(connection)
        return {
            "columns": {
                column["name"]: column
                for column in inspector.get_columns("gym_booking")
            },
            "indexes": {
                index["name"] for index in inspector.get_indexes("gym_booking")
            },
            "check_constraints": {
                bootstrap_booking._normalize(constraint["name"])
                for constraint in inspector.get_check_constraints("gym_booking")
                if constraint["name"]
            },
            "foreign_keys": inspector.get_foreign_keys("gym_booking"),
        }

    async with engine.connect() as connection:
        return await connection.run_sync(inspect)


def record_ddl(engine: AsyncEngine) -> list[str]:
    statements: list[str] = []

    @sa.event.listens_for(engine.sync_engine, "before_cursor_execute")
    def do_record(connection, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(("CREATE", "ALTER", "DROP", "INSERT")):
            statements.append(statement)

    return statements


async def test_bootstrap_requires_the_schedule_table(booking_engine: AsyncEngine) -> None:
    result = await bootstrap_booking.ensure_booking_schema(booking_engine)

    assert not result.ok
    assert result.error == "Missing table gym_schedule"
    async with booking_engine.connect() as connection:
        table_names = await connection.run_sync(
            lambda sync_connection: sa.inspect(sync_connection).get_table_names(),
        )
    assert table_names == []


async def test_bootstrap_creates_the_booking_table(booking_engine: AsyncEngine) -> None:
    await create_schedule_table(booking_engine)

    result = await bootstrap_booking.ensure_booking_schema(booking_engine)

    assert result.ok
    assert result.index_ok
    assert result.today_index_ok
    assert result.duplicates is None
    assert [column.name for column in result.columns] == [
        "BookingID",
        "EmployeeID",
        "CardNo",
        "EmployeeName",
        "Department",
        "Gender",
        "SessionName",
        "ScheduleID",
        "BookingDate",
        "Status",
        "ApprovalStatus",
        "ApprovedBy",
        "ApprovedAt",
        "RejectedReason",
        "CreatedAt",
    ]
    nullable = {column.name: column.nullable for column in result.columns}
    assert not nullable["ApprovalStatus"]
    assert nullable["CardNo"]

    schema = await inspect_booking_table(booking_engine)
    assert {
        "ck_gym_booking_status",
        "ck_gym_booking_approvalstatus",
    } <= schema["check_constraints"]
    assert schema["foreign_keys"][0]["referred_table"] == "gym_schedule"
    assert schema["foreign_keys"][0]["constrained_columns"] == ["ScheduleID"]


async def test_bootstrap_is_idempotent(booking_engine: AsyncEngine) -> None:
    await create_schedule_table(booking_engine)
    first_result = await bootstrap_booking.ensure_booking_schema(booking_engine)

    statements = record_ddl(booking_engine)
    second_result = await bootstrap_booking.ensure_booking_schema(booking_engine)
    third_result = await bootstrap_booking.ensure_booking_schema(booking_engine)

    assert statements == []
    assert first_result == second_result == third_result


async def test_bootstrap_upgrades_a_legacy_table(booking_engine: AsyncEngine) -> None:
    await create_legacy_store(
        booking_engine,
        [
            legacy_booking("E100"),
            legacy_booking("E200", status="CANCELLED"),
            # A cancelled booking does not prevent an active one the same day
            legacy_booking("E200"),
        ],
    )

    result = await bootstrap_booking.ensure_booking_schema(booking_engine)

    assert result.ok, result.error
    assert result.index_ok
    assert result.today_index_ok
    schema = await inspect_booking_table(booking_engine)
    for column_name in ("ApprovalStatus", "ApprovedBy", "ApprovedAt", "RejectedReason"):
        assert column_name in schema["columns"]
    assert not schema["columns"]["ApprovalStatus"]["nullable"]
    assert schema["columns"]["ApprovalStatus"]["default"] is not None
    assert {
        models_booking.ONE_ACTIVE_BOOKING_PER_DAY_INDEX,
        models_booking.TODAY_BOOKINGS_INDEX,
    } <= schema["indexes"]
    assert {
        "ck_gym_booking_status",
        "ck_gym_booking_approvalstatus",
    } <= schema["check_constraints"]
    assert any(
        foreign_key["referred_table"] == "gym_schedule"
        for foreign_key in schema["foreign_keys"]
    )

    # Existing bookings were never reviewed
    async with booking_engine.connect() as connection:
        approval_statuses = (
            await connection.execute(
                sa.text('SELECT DISTINCT "ApprovalStatus" FROM gym_booking'),
            )
        ).scalars().all()
    assert approval_statuses == ["PENDING"]

    # The upgraded table is then stable
    statements = record_ddl(booking_engine)
    assert await bootstrap_booking.ensure_booking_schema(booking_engine) == result
    assert statements == []


async def test_bootstrap_reports_duplicate_active_bookings(
    booking_engine: AsyncEngine,
) -> None:
    await create_legacy_store(
        booking_engine,
        [
            legacy_booking("E100"),
            legacy_booking("E100", status="CHECKIN"),
            legacy_booking("E200"),
            legacy_booking("E300"),
            legacy_booking("E300"),
            legacy_booking("E300"),
        ],
    )

    result = await bootstrap_booking.ensure_booking_schema(booking_engine)

    assert not result.ok
    assert not result.index_ok
    assert result.error == (
        "Duplicate active bookings exist; cannot create unique index UX_gym_booking_one_per_day"
    )
    assert result.duplicates is not None
    assert [
        (duplicate.employee_id, duplicate.booking_date, duplicate.count)
        for duplicate in result.duplicates
    ] == [
        ("E300", date(2024, 1, 10), 3),
        ("E100", date(2024, 1, 10), 2),
    ]

    # Nothing was changed
    schema = await inspect_booking_table(booking_engine)
    assert "ApprovalStatus" not in schema["columns"]
    assert "ApprovedBy" not in schema["columns"]
    assert schema["check_constraints"] == set()
    assert schema["indexes"] == set()


async def test_bootstrap_after_duplicates_cleanup(booking_engine: AsyncEngine) -> None:
    await create_legacy_store(
        booking_engine,
        [legacy_booking("E100"), legacy_booking("E100")],
    )
    assert not (await bootstrap_booking.ensure_booking_schema(booking_engine)).ok

    async with booking_engine.begin() as connection:
        await connection.execute(
            sa.text(
                'UPDATE gym_booking SET "Status" = \'CANCELLED\' WHERE "BookingID" = 1',
            ),
        )

    result = await bootstrap_booking.ensure_booking_schema(booking_engine)
    assert result.ok
    assert result.index_ok


async def test_bootstrap_completes_a_nullable_approval_status(
    booking_engine: AsyncEngine,
) -> None:
    await create_schedule_table(booking_engine)
    await create_table(
        booking_engine,
        "gym_booking",
        [*legacy_booking_columns(), sa.Column("ApprovalStatus", sa.String(20))],
        rows=[
            {**legacy_booking("E100"), "ApprovalStatus": None},
            {**legacy_booking("E200"), "ApprovalStatus": "APPROVED"},
        ],
    )

    result = await bootstrap_booking.ensure_booking_schema(booking_engine)

    assert result.ok, result.error
    schema = await inspect_booking_table(booking_engine)
    assert not schema["columns"]["ApprovalStatus"]["nullable"]
    assert "PENDING" in str(schema["columns"]["ApprovalStatus"]["default"])
    async with booking_engine.connect() as connection:
        approval_statuses = (
            await connection.execute(
                sa.text(
                    'SELECT "EmployeeID", "ApprovalStatus" FROM gym_booking ORDER BY "EmployeeID"',
                ),
            )
        ).all()
    assert [tuple(row) for row in approval_statuses] == [
        ("E100", "PENDING"),
        ("E200", "APPROVED"),
    ]

    # New rows get the default
    async with booking_engine.begin() as connection:
        await connection.execute(
            sa.text(
                'INSERT INTO gym_booking ("EmployeeID", "ScheduleID", "BookingDate", "Status") '
                "VALUES ('E300', 1, '2024-01-11', 'BOOKED')",
            ),
        )
        approval_status = (
            await connection.execute(
                sa.text(
                    'SELECT "ApprovalStatus" FROM gym_booking WHERE "EmployeeID" = \'E300\'',
                ),
            )
        ).scalar()
    assert approval_status == "PENDING"


async def test_bootstrap_makes_the_schedule_id_unique(booking_engine: AsyncEngine) -> None:
    # ScheduleID was added by hand, without any key over it
    await create_table(
        booking_engine,
        "gym_schedule",
        [
            sa.Column("ScheduleID", sa.Integer, nullable=False),
            sa.Column("Session", sa.String(50)),
            sa.Column("StartTime", sa.Time),
            sa.Column("EndTime", sa.Time),
            sa.Column("Quota", sa.Integer),
        ],
        rows=[
            {
                "ScheduleID": 1,
                "Session": "Morning",
                "StartTime": time(6, 0),
                "EndTime": time(7, 0),
                "Quota": 15,
            },
        ],
    )

    async def schedule_unique_constraints() -> list[dict]:
        async with booking_engine.connect() as connection:
            return await connection.run_sync(
                lambda sync_connection: sa.inspect(sync_connection).get_unique_constraints(
                    "gym_schedule",
                ),
            )

    assert await schedule_unique_constraints() == []

    first_result = await bootstrap_booking.ensure_booking_schema(booking_engine)

    assert first_result.ok, first_result.error
    assert [
        (constraint["name"], constraint["column_names"])
        for constraint in await schedule_unique_constraints()
    ] == [(models_booking.SCHEDULE_ID_UNIQUE_CONSTRAINT, ["ScheduleID"])]
    # The schedule rows are kept
    async with booking_engine.connect() as connection:
        sessions = (
            await connection.execute(sa.text('SELECT "Session" FROM gym_schedule'))
        ).scalars().all()
    assert sessions == ["Morning"]

    statements = record_ddl(booking_engine)
    second_result = await bootstrap_booking.ensure_booking_schema(booking_engine)

    assert statements == []
    assert second_result == first_result
