"""Schemas file for endpoints /gym-booking-*"""

from datetime import date, time

from pydantic import BaseModel, ConfigDict

from gymbooking.modules.booking.types_booking import BookingDeclineCode


class BookingRequest(BaseModel):
    # Fields are validated by the admission, which answers with its own messages
    employee_id: str | None = None
    session_id: str | None = None
    booking_date: str | None = None


class ValidBookingRequest(BaseModel):
    employee_id: str
    session_name: str
    start_time: time
    booking_date: date


class ScheduleSlot(BaseModel):
    schedule_id: int
    quota: int
    model_config = ConfigDict(from_attributes=True)


class BookingResult(BaseModel):
    ok: bool
    booking_id: int | None = None
    schedule_id: int | None = None
    error: str | None = None
    code: BookingDeclineCode | None = None


class BookingTableColumn(BaseModel):
    name: str
    type: str
    nullable: bool


class DuplicateActiveBooking(BaseModel):
    employee_id: str
    booking_date: date
    count: int


class BootstrapResult(BaseModel):
    ok: bool
    columns: list[BookingTableColumn] = []
    index_ok: bool = False
    today_index_ok: bool = False
    duplicates: list[DuplicateActiveBooking] | None = None
    error: str | None = None
