"""Schemas file for the employee directories"""

from pydantic import BaseModel


class EmployeeRecord(BaseModel):
    """A row of the master employee store, with blank values as None"""

    employee_id: str
    name: str
    department: str | None = None
    card_no: str | None = None
    staff_no: str | None = None
    gender: str | None = None


class EmployeeProfile(BaseModel):
    """Everything a booking copies about the employee"""

    employee_id: str
    name: str
    department: str
    gender: str
    card_no: str | None = None
