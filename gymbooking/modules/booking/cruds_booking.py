from datetime import date, time

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gymbooking.modules.booking import models_booking, schemas_booking
from gymbooking.modules.booking.types_booking import ACTIVE_STATUSES


async def get_schedule_slot(
    db: AsyncSession,
    session_name: str,
    start_time: time,
    default_quota: int,
) -> schemas_booking.ScheduleSlot | None:
    """
    Return the session starting at `start_time`, with `default_quota` if its quota is not set
    """
    result = await db.execute(
        select(
            models_booking.GymSchedule.schedule_id,
            models_booking.GymSchedule.quota,
        )
        .where(
            models_booking.GymSchedule.session == session_name,
            models_booking.GymSchedule.start_time == start_time,
        )
        .limit(1),
    )
    row = result.first()
    if row is None:
        return None
    return schemas_booking.ScheduleSlot(
        schedule_id=row.schedule_id,
        quota=row.quota if row.quota is not None else default_quota,
    )


async def count_active_bookings_of_employee(
    db: AsyncSession,
    employee_id: str,
    booking_date: date,
) -> int:
    result = await db.execute(
        select(func.count()).where(
            models_booking.GymBooking.employee_id == employee_id,
            models_booking.GymBooking.booking_date == booking_date,
            models_booking.GymBooking.status.in_(ACTIVE_STATUSES),
        ),
    )
    return result.scalar() or 0


async def count_active_bookings_of_schedule(
    db: AsyncSession,
    schedule_id: int,
    booking_date: date,
) -> int:
    result = await db.execute(
        select(func.count()).where(
            models_booking.GymBooking.schedule_id == schedule_id,
            models_booking.GymBooking.booking_date == booking_date,
            models_booking.GymBooking.status.in_(ACTIVE_STATUSES),
        ),
    )
    return result.scalar() or 0


async def create_booking(
    db: AsyncSession,
    booking: models_booking.GymBooking,
) -> models_booking.GymBooking:
    db.add(booking)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise
    else:
        return booking


async def start_isolation_mode(db: AsyncSession) -> None:
    """
    Run the transaction of `db` at the SERIALIZABLE isolation level.

    It must be called before the first statement of the session. The level is set on the
    connection of the session and restored when the connection is returned to the pool.
    SQLite transactions are always serializable, its connections are left as they are.
    """
    if db.bind.dialect.name == "sqlite":
        return
    await db.connection(execution_options={"isolation_level": "SERIALIZABLE"})


def is_one_active_booking_per_day_violation(error: IntegrityError) -> bool:
    """
    Tell whether `error` was raised by the one active booking per day unique index.

    Drivers do not expose the violated constraint in a common way, its name or the
    columns of the index are looked for in the message.
    """
    message = str(error.orig).lower()
    # PostgreSQL and SQL Server name the index
    if models_booking.ONE_ACTIVE_BOOKING_PER_DAY_INDEX.lower() in message:
        return True
    # SQLite names the columns of the index
    if "unique constraint failed" in message:
        return "employeeid" in message and "bookingdate" in message
    return False
