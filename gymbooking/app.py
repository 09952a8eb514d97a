"""File defining the application factory, its lifespan and its middlewares"""

import logging
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute

from gymbooking import api
from gymbooking.core.utils.config import Settings
from gymbooking.core.utils.log import LogConfig
from gymbooking.dependencies import (
    disconnect_state,
    get_app_state,
    init_app_state,
)
from gymbooking.modules.booking import bootstrap_booking
from gymbooking.types.exceptions import MultipleWorkersWithoutRedisInitializationError
from gymbooking.utils import initialization
from gymbooking.utils.redis import limiter
from gymbooking.utils.state import LifespanState

# NOTE: We can not get loggers at the top of this file like we do in other files
# as the loggers are not yet initialized


def use_route_path_as_operation_ids(app: FastAPI) -> None:
    """
    Simplify operation IDs so that generated API clients have simpler function names.

    The operation_id will have the format "method_path", like "post_gym-booking-create".

    See https://fastapi.tiangolo.com/advanced/path-operation-advanced-configuration/
    """
    for route in app.routes:
        if isinstance(route, APIRoute):
            method = "_".join(route.methods)
            route.operation_id = method.lower() + route.path.replace("/", "_")


async def init_booking_store(
    state: LifespanState,
    gymbooking_error_logger: logging.Logger,
) -> None:
    result = await bootstrap_booking.ensure_booking_schema(state["engine"])
    if not result.ok:
        gymbooking_error_logger.error(
            f"Startup: the booking store could not be initialized: {result.error}",
        )


async def init_lifespan(
    app: FastAPI,
    settings: Settings,
    gymbooking_error_logger: logging.Logger,
) -> LifespanState:
    gymbooking_error_logger.info("Startup: Initializing application")

    state = await app.dependency_overrides.get(
        init_app_state,
        init_app_state,
    )(
        app=app,
        settings=settings,
        gymbooking_error_logger=gymbooking_error_logger,
    )

    if settings.BOOTSTRAP_ON_STARTUP:
        # The booking store initialization should only be run once across all workers
        if (
            state["redis_client"] is None
            and initialization.get_number_of_workers() > 1
        ):
            raise MultipleWorkersWithoutRedisInitializationError

        await initialization.use_lock_for_workers(
            init_booking_store,
            "init_booking_store",
            state["redis_client"],
            gymbooking_error_logger,
            unlock_key="booking_store_initialized",
            state=state,
            gymbooking_error_logger=gymbooking_error_logger,
        )

    if not settings.ADMISSION_LOCK_ENABLED:
        gymbooking_error_logger.warning(
            "ADMISSION_LOCK_ENABLED is disabled: concurrent bookings may exceed session quotas",
        )
    elif state["redis_client"] is None:
        gymbooking_error_logger.info(
            "Redis is not configured: admissions are only serialized inside each worker",
        )

    return state


# We wrap the application in a function to be able to pass the settings
def get_application(settings: Settings) -> FastAPI:
    # Initialize loggers
    LogConfig().initialize_loggers(settings=settings)

    gymbooking_access_logger = logging.getLogger("gymbooking.access")
    gymbooking_security_logger = logging.getLogger("gymbooking.security")
    gymbooking_error_logger = logging.getLogger("gymbooking.error")

    # Creating a lifespan which will be called when the application starts then shuts down
    # https://fastapi.tiangolo.com/advanced/events/
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[LifespanState, None]:
        state = await init_lifespan(
            app=app,
            settings=settings,
            gymbooking_error_logger=gymbooking_error_logger,
        )

        # The state is copied in each request scope
        # See https://www.starlette.io/lifespan/#lifespan-state
        yield state

        gymbooking_error_logger.info("Shutting down")
        await app.dependency_overrides.get(
            disconnect_state,
            disconnect_state,
        )(
            state=state,
            gymbooking_error_logger=gymbooking_error_logger,
        )

    # Initialize app
    app = FastAPI(
        title="GymBooking",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )
    app.include_router(api.api_router)
    use_route_path_as_operation_ids(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def logging_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """
        This middleware is called around each request.
        It logs the request and inject a unique identifier in the request that should be used to associate logs saved during the request.
        """
        # We use a middleware to log every request
        # See https://fastapi.tiangolo.com/tutorial/middleware/

        # We generate a unique identifier for the request and save it as a state.
        # This identifier will allow combining logs associated with the same request
        # https://www.starlette.io/requests/#other-state
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        # This should never happen, but we log it just in case
        if request.client is None:
            gymbooking_security_logger.warning(
                f"Client information not available for {request.url.path}",
            )
            raise HTTPException(status_code=400, detail="No client information")

        ip_address = request.client.host
        port = request.client.port
        client_address = f"{ip_address}:{port}"

        redis_client = get_app_state(request)["redis_client"]

        # We test the ip address with the redis limiter
        process = True
        if redis_client is not None and settings.ENABLE_RATE_LIMITER:
            process, log = limiter(
                redis_client,
                ip_address,
                settings.REDIS_LIMIT,
                settings.REDIS_WINDOW,
            )
            if log:
                gymbooking_security_logger.warning(
                    f"Rate limit reached for {ip_address} (limit: {settings.REDIS_LIMIT}, window: {settings.REDIS_WINDOW})",
                )
        if process:
            response = await call_next(request)

            gymbooking_access_logger.info(
                f'{client_address} - "{request.method} {request.url.path}" {response.status_code} ({request_id})',
            )
        else:
            response = Response(status_code=429, content="Too Many Requests")
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ):
        # We use a Debug logger to log the error as personal data may be present in the request
        gymbooking_error_logger.debug(
            f"Validation error: {exc.errors()} ({request.state.request_id})",
        )

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=jsonable_encoder({"detail": exc.errors(), "body": exc.body}),
        )

    return app
