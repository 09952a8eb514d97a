from enum import Enum


class BookingStatus(str, Enum):
    BOOKED = "BOOKED"
    CHECKIN = "CHECKIN"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    def __str__(self) -> str:
        return f"{self.name}<{self.value}>"


# A booking is active until the employee leaves the gym or the booking is closed.
# At most one active booking per employee and day, and no more active bookings than the session quota
ACTIVE_STATUSES = (BookingStatus.BOOKED, BookingStatus.CHECKIN)


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    def __str__(self) -> str:
        return f"{self.name}<{self.value}>"


class BookingDeclineCode(str, Enum):
    """
    Machine readable reason of a declined booking request.
    """

    validation_error = "ValidationError"
    session_not_found = "SessionNotFound"
    duplicate_booking = "DuplicateBookingError"
    capacity_exceeded = "CapacityExceededError"
    employee_not_found = "EmployeeNotFound"
    schema_resolution = "SchemaResolutionError"
    infrastructure = "InfrastructureError"
