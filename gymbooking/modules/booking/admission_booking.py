"""
Booking admission: decide whether an employee may book a gym session on a given day.

A request is admitted if the session exists, the employee has no other active booking
that day, the session is not full and the employee is known by the master employee store.
The booking copies the employee's name, department, gender and card number, so that
the attendance views do not depend on the external stores.

Business declines are results, not exceptions. Schema resolution and infrastructure
failures are turned into declines too, so that callers always receive a `BookingResult`.
"""

import logging
import re
from datetime import date, time

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from gymbooking.core.utils.config import Settings
from gymbooking.modules.booking import cruds_booking, models_booking, schemas_booking
from gymbooking.modules.booking.types_booking import (
    ApprovalStatus,
    BookingDeclineCode,
    BookingStatus,
)
from gymbooking.modules.directory import cruds_directory
from gymbooking.types.admission_guard import AdmissionGuard
from gymbooking.types.exceptions import (
    AdmissionLockTimeoutError,
    BookingValidationError,
    ExternalStoreNotConfiguredError,
    SchemaResolutionError,
)
from gymbooking.types.sqlalchemy import SessionLocalType

gymbooking_booking_logger = logging.getLogger("gymbooking.booking")
gymbooking_error_logger = logging.getLogger("gymbooking.error")

SESSION_ID_SEPARATOR = "__"
EMPLOYEE_ID_MAX_LENGTH = 20

REDACTED_INFRASTRUCTURE_ERROR = "The booking service is temporarily unavailable"

_BOOKING_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_START_TIME_PATTERN = re.compile(r"^\d{2}:\d{2}$")


def decline(code: BookingDeclineCode, error: str) -> schemas_booking.BookingResult:
    return schemas_booking.BookingResult(ok=False, error=error, code=code)


def validate_booking_request(
    booking_request: schemas_booking.BookingRequest,
    header_employee_id: str | None = None,
) -> schemas_booking.ValidBookingRequest:
    """
    Check the shape of a booking request. The employee id may come from the body or from the `x-employee-id` header.

    `session_id` identifies a session by its name and start time: `"<Session>__<HH:MM>"`.

    Raise `BookingValidationError`. Nothing is read from any store.
    """
    employee_id = (booking_request.employee_id or header_employee_id or "").strip()
    session_id = (booking_request.session_id or "").strip()
    booking_date_str = (booking_request.booking_date or "").strip()

    if not employee_id or not session_id or not booking_date_str:
        raise BookingValidationError(
            "employee_id (body or x-employee-id header), session_id, booking_date are required",
        )
    if len(employee_id) > EMPLOYEE_ID_MAX_LENGTH:
        raise BookingValidationError(
            f"employee_id must be at most {EMPLOYEE_ID_MAX_LENGTH} characters",
        )
    if not _BOOKING_DATE_PATTERN.match(booking_date_str):
        raise BookingValidationError("booking_date must be yyyy-MM-dd")
    try:
        booking_date = date.fromisoformat(booking_date_str)
    except ValueError:
        raise BookingValidationError("booking_date is not a valid date")

    parts = session_id.split(SESSION_ID_SEPARATOR)
    session_name = parts[0].strip()
    start_time_str = parts[1].strip() if len(parts) > 1 else ""
    if not session_name or not _START_TIME_PATTERN.match(start_time_str):
        raise BookingValidationError('session_id must be "Session__HH:MM"')
    hours, minutes = (int(value) for value in start_time_str.split(":"))
    try:
        start_time = time(hours, minutes)
    except ValueError:
        raise BookingValidationError('session_id must be "Session__HH:MM"')

    return schemas_booking.ValidBookingRequest(
        employee_id=employee_id,
        session_name=session_name,
        start_time=start_time,
        booking_date=booking_date,
    )


async def _admit(
    booking_request: schemas_booking.ValidBookingRequest,
    SessionLocal: SessionLocalType,
    master_engine: AsyncEngine | None,
    card_engine: AsyncEngine | None,
    admission_guard: AdmissionGuard,
    settings: Settings,
) -> schemas_booking.BookingResult:
    employee_id = booking_request.employee_id
    booking_date = booking_request.booking_date

    async with SessionLocal() as db:
        slot = await cruds_booking.get_schedule_slot(
            db=db,
            session_name=booking_request.session_name,
            start_time=booking_request.start_time,
            default_quota=settings.GYM_DEFAULT_QUOTA,
        )
        if slot is None:
            return decline(
                BookingDeclineCode.session_not_found,
                "Session not found in GymDB",
            )

        if (
            await cruds_booking.count_active_bookings_of_employee(
                db=db,
                employee_id=employee_id,
                booking_date=booking_date,
            )
            > 0
        ):
            return decline(
                BookingDeclineCode.duplicate_booking,
                "You are already registered for this day",
            )

        if (
            await cruds_booking.count_active_bookings_of_schedule(
                db=db,
                schedule_id=slot.schedule_id,
                booking_date=booking_date,
            )
            >= slot.quota
        ):
            return decline(
                BookingDeclineCode.capacity_exceeded,
                "This session is full",
            )
        # The connection is released while the external stores are queried
        await db.commit()

    profile = await cruds_directory.resolve_employee_profile(
        master_engine=master_engine,
        card_engine=card_engine,
        employee_id=employee_id,
        settings=settings,
    )
    if profile is None:
        return decline(BookingDeclineCode.employee_not_found, "Employee not found")

    async with admission_guard.hold(slot.schedule_id, booking_date) as exclusive:
        async with SessionLocal() as db:
            if settings.ADMISSION_SERIALIZABLE:
                await cruds_booking.start_isolation_mode(db)

            # Without the guard, the count made before querying the external stores is trusted
            if (
                exclusive
                and await cruds_booking.count_active_bookings_of_schedule(
                    db=db,
                    schedule_id=slot.schedule_id,
                    booking_date=booking_date,
                )
                >= slot.quota
            ):
                return decline(
                    BookingDeclineCode.capacity_exceeded,
                    "This session is full",
                )

            booking = models_booking.GymBooking(
                employee_id=employee_id,
                card_no=profile.card_no,
                employee_name=profile.name,
                department=profile.department,
                gender=profile.gender,
                session_name=booking_request.session_name,
                schedule_id=slot.schedule_id,
                booking_date=booking_date,
                status=BookingStatus.BOOKED,
                approval_status=ApprovalStatus.PENDING,
            )
            try:
                await cruds_booking.create_booking(db=db, booking=booking)
            except IntegrityError as error:
                if cruds_booking.is_one_active_booking_per_day_violation(error):
                    return decline(
                        BookingDeclineCode.duplicate_booking,
                        "You are already registered for this day",
                    )
                raise

    return schemas_booking.BookingResult(
        ok=True,
        booking_id=booking.booking_id,
        schedule_id=slot.schedule_id,
    )


async def create_booking(
    booking_request: schemas_booking.BookingRequest,
    SessionLocal: SessionLocalType,
    master_engine: AsyncEngine | None,
    card_engine: AsyncEngine | None,
    admission_guard: AdmissionGuard,
    settings: Settings,
    header_employee_id: str | None = None,
) -> schemas_booking.BookingResult:
    """
    Admit a booking request, or decline it.

    Checks are made in order, the first failing one gives the decline:
    1. the request shape (`ValidationError`)
    2. the session exists (`SessionNotFound`)
    3. the employee has no active booking that day (`DuplicateBookingError`)
    4. the session is not full that day (`CapacityExceededError`)
    5. the master employee store knows the employee (`EmployeeNotFound`)

    The session is counted again under the admission guard before the insertion.
    The one active booking per day unique index has the final say on duplicates.
    """
    try:
        valid_request = validate_booking_request(booking_request, header_employee_id)
    except BookingValidationError as error:
        return decline(BookingDeclineCode.validation_error, str(error))

    try:
        result = await _admit(
            booking_request=valid_request,
            SessionLocal=SessionLocal,
            master_engine=master_engine,
            card_engine=card_engine,
            admission_guard=admission_guard,
            settings=settings,
        )
    except SchemaResolutionError as error:
        gymbooking_error_logger.error(
            f"Booking of {valid_request.employee_id}: could not map an external store ({error})",
        )
        return decline(BookingDeclineCode.schema_resolution, str(error))
    except (
        SQLAlchemyError,
        OSError,
        AdmissionLockTimeoutError,
        ExternalStoreNotConfiguredError,
    ) as error:
        gymbooking_error_logger.exception(
            f"Booking of {valid_request.employee_id} failed",
        )
        return decline(
            BookingDeclineCode.infrastructure,
            REDACTED_INFRASTRUCTURE_ERROR
            if settings.REDACT_INFRASTRUCTURE_ERRORS
            else str(error),
        )

    if result.ok:
        gymbooking_booking_logger.info(
            f"Booking {result.booking_id} created for {valid_request.employee_id} in session {result.schedule_id} on {valid_request.booking_date}",
        )
    else:
        gymbooking_booking_logger.info(
            f"Booking of {valid_request.employee_id} for {valid_request.session_name} on {valid_request.booking_date} declined: {result.error}",
        )
    return result
