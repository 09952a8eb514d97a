import asyncio
import logging
import sys

from gymbooking.core.utils.config import construct_prod_settings
from gymbooking.core.utils.log import LogConfig
from gymbooking.modules.booking.bootstrap_booking import ensure_booking_schema
from gymbooking.utils.state import init_engine

# This script should be run before starting the server, by a single process.
# We call `construct_prod_settings()` and not the dependency `get_settings()` because
# we know we want to use the production settings
settings = construct_prod_settings()

# Initialize loggers
LogConfig().initialize_loggers(settings=settings)

gymbooking_error_logger = logging.getLogger("gymbooking.error")

gymbooking_error_logger.warning("Initializing the booking store.")


async def main() -> bool:
    engine = init_engine(settings=settings)
    try:
        result = await ensure_booking_schema(engine)
    finally:
        await engine.dispose()

    if not result.ok:
        gymbooking_error_logger.error(
            f"The booking store could not be initialized: {result.error}",
        )
        for duplicate in result.duplicates or []:
            gymbooking_error_logger.error(
                f"Duplicate active bookings: {duplicate.employee_id} on {duplicate.booking_date} ({duplicate.count})",
            )
    return result.ok


if not asyncio.run(main()):
    sys.exit(1)

if not settings.REDIS_HOST:
    gymbooking_error_logger.warning(
        "Redis configuration is missing. When using multiple workers without Redis, admissions are only serialized inside each worker.",
    )
