"""Common schemas file"""

from pydantic import BaseModel


class CoreInformation(BaseModel):
    """Information about GymBooking"""

    ready: bool
    version: str
