from typing import Annotated

from fastapi import Depends, Header, Response
from sqlalchemy.ext.asyncio import AsyncEngine

from gymbooking.core.utils.config import Settings
from gymbooking.dependencies import (
    get_admission_guard,
    get_card_engine,
    get_engine,
    get_master_engine,
    get_session_local,
    get_settings,
    is_admin_token_valid,
)
from gymbooking.modules.booking import (
    admission_booking,
    bootstrap_booking,
    schemas_booking,
)
from gymbooking.modules.booking.types_booking import BookingDeclineCode
from gymbooking.types.admission_guard import AdmissionGuard
from gymbooking.types.module import Module
from gymbooking.types.sqlalchemy import SessionLocalType

module = Module(
    root="booking",
    tag="Booking",
)


@module.router.post(
    "/gym-booking-create",
    response_model=schemas_booking.BookingResult,
    status_code=200,
)
async def create_gym_booking(
    booking: schemas_booking.BookingRequest,
    response: Response,
    x_employee_id: Annotated[str | None, Header()] = None,
    SessionLocal: SessionLocalType = Depends(get_session_local),
    master_engine: AsyncEngine | None = Depends(get_master_engine),
    card_engine: AsyncEngine | None = Depends(get_card_engine),
    admission_guard: AdmissionGuard = Depends(get_admission_guard),
    settings: Settings = Depends(get_settings),
):
    """
    Book a gym session for an employee.

    `session_id` should be `"<Session>__<HH:MM>"` and `booking_date` `yyyy-MM-dd`.
    The employee id may be given in the body or in the `x-employee-id` header.

    Declined bookings are answered with `ok=false`, an `error` message and a `code`.
    Invalid requests are answered with a 400 status code, other declines with a 200.
    """
    result = await admission_booking.create_booking(
        booking_request=booking,
        SessionLocal=SessionLocal,
        master_engine=master_engine,
        card_engine=card_engine,
        admission_guard=admission_guard,
        settings=settings,
        header_employee_id=x_employee_id,
    )
    if result.code == BookingDeclineCode.validation_error:
        response.status_code = 400
    return result


@module.router.post(
    "/gym-booking-init",
    response_model=schemas_booking.BootstrapResult,
    status_code=200,
    dependencies=[Depends(is_admin_token_valid)],
)
async def init_gym_booking(
    engine: AsyncEngine = Depends(get_engine),
):
    """
    Create or upgrade the booking tables, their constraints and indexes.

    Running it again is harmless. If existing bookings prevent the creation of the
    one active booking per day index, nothing is changed and they are listed in `duplicates`.

    **If `GYM_ADMIN_TOKEN` is configured, this endpoint requires it in the `x-admin-token` header**
    """
    return await bootstrap_booking.ensure_booking_schema(engine)
