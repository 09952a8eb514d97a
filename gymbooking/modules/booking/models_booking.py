"""model file for booking"""

from datetime import date, datetime, time

from sqlalchemy import (
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    String,
    column,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from gymbooking.modules.booking.types_booking import (
    ACTIVE_STATUSES,
    ApprovalStatus,
    BookingStatus,
)
from gymbooking.types.sqlalchemy import Base

# The booking store is shared with other tools (dashboards, the check-in kiosk) which
# use the physical PascalCase names: attributes are snake_case, columns keep their names.

ONE_ACTIVE_BOOKING_PER_DAY_INDEX = "UX_gym_booking_one_per_day"
TODAY_BOOKINGS_INDEX = "IX_gym_booking_today"
STATUS_CHECK_CONSTRAINT = "CK_gym_booking_Status"
APPROVAL_STATUS_CHECK_CONSTRAINT = "CK_gym_booking_ApprovalStatus"
SCHEDULE_FOREIGN_KEY = "FK_gym_booking_schedule"
SCHEDULE_ID_UNIQUE_CONSTRAINT = "UQ_gym_schedule_ScheduleID"


class GymSchedule(Base):
    __tablename__ = "gym_schedule"

    schedule_id: Mapped[int] = mapped_column(
        "ScheduleID",
        primary_key=True,
        autoincrement=True,
        init=False,
    )
    session: Mapped[str] = mapped_column("Session", String(50))
    start_time: Mapped[time] = mapped_column("StartTime")
    end_time: Mapped[time] = mapped_column("EndTime")
    # NULL means the default quota
    quota: Mapped[int | None] = mapped_column("Quota", default=None)


class GymBooking(Base):
    __tablename__ = "gym_booking"
    __table_args__ = (
        CheckConstraint(
            column("Status").in_([status.value for status in BookingStatus]),
            name=STATUS_CHECK_CONSTRAINT,
        ),
        CheckConstraint(
            column("ApprovalStatus").in_([status.value for status in ApprovalStatus]),
            name=APPROVAL_STATUS_CHECK_CONSTRAINT,
        ),
    )

    booking_id: Mapped[int] = mapped_column(
        "BookingID",
        primary_key=True,
        autoincrement=True,
        init=False,
    )
    employee_id: Mapped[str] = mapped_column("EmployeeID", String(20))
    card_no: Mapped[str | None] = mapped_column("CardNo", String(50))
    employee_name: Mapped[str] = mapped_column("EmployeeName", String(100))
    department: Mapped[str] = mapped_column("Department", String(100))
    gender: Mapped[str] = mapped_column("Gender", String(10))
    session_name: Mapped[str] = mapped_column("SessionName", String(50))
    schedule_id: Mapped[int] = mapped_column(
        "ScheduleID",
        ForeignKey("gym_schedule.ScheduleID", name=SCHEDULE_FOREIGN_KEY),
    )
    booking_date: Mapped[date] = mapped_column("BookingDate")
    status: Mapped[BookingStatus] = mapped_column(
        "Status",
        Enum(BookingStatus, native_enum=False, length=20),
        default=BookingStatus.BOOKED,
    )
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        "ApprovalStatus",
        Enum(ApprovalStatus, native_enum=False, length=20),
        server_default=ApprovalStatus.PENDING.value,
        default=ApprovalStatus.PENDING,
    )
    approved_by: Mapped[str | None] = mapped_column(
        "ApprovedBy",
        String(50),
        default=None,
    )
    approved_at: Mapped[datetime | None] = mapped_column("ApprovedAt", default=None)
    rejected_reason: Mapped[str | None] = mapped_column(
        "RejectedReason",
        String(255),
        default=None,
    )
    created_at: Mapped[datetime] = mapped_column(
        "CreatedAt",
        server_default=func.now(),
        init=False,
    )


# Authoritative guard against two active bookings of the same employee on the same day.
# Cancelled, completed and expired bookings are not part of the index.
Index(
    ONE_ACTIVE_BOOKING_PER_DAY_INDEX,
    GymBooking.employee_id,
    GymBooking.booking_date,
    unique=True,
    mssql_where=GymBooking.status.in_(ACTIVE_STATUSES),
    postgresql_where=GymBooking.status.in_(ACTIVE_STATUSES),
    sqlite_where=GymBooking.status.in_(ACTIVE_STATUSES),
)

# Used by the daily attendance view, which lists the bookings of a day by approval and status
Index(
    TODAY_BOOKINGS_INDEX,
    GymBooking.booking_date,
    GymBooking.approval_status,
    GymBooking.status,
    mssql_include=["EmployeeName", "Department", "SessionName"],
    postgresql_include=["EmployeeName", "Department", "SessionName"],
)
