"""
Various FastAPI [dependencies](https://fastapi.tiangolo.com/tutorial/dependencies/)

They are used in endpoints function signatures. For example:
```python
async def init_gym_booking(engine: AsyncEngine = Depends(get_engine)):
```
"""

import logging
import secrets
from functools import lru_cache
from typing import Annotated, cast

import starlette
import starlette.datastructures
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine

from gymbooking.core.utils.config import Settings, construct_prod_settings
from gymbooking.types.admission_guard import AdmissionGuard
from gymbooking.types.exceptions import InvalidAppStateTypeError
from gymbooking.types.sqlalchemy import SessionLocalType
from gymbooking.utils.state import (
    LifespanState,
    RuntimeLifespanState,
    disconnect_engines,
    disconnect_redis_client,
    init_admission_guard,
    init_engine,
    init_external_engines,
    init_redis_client,
    init_SessionLocal,
)

gymbooking_security_logger = logging.getLogger("gymbooking.security")


async def init_app_state(
    app: FastAPI,
    settings: Settings,
    gymbooking_error_logger: logging.Logger,
) -> LifespanState:
    """
    Initialize the state of the application. This dependency should be used at the start of the application lifespan.

    This methode should be called as a dependency, and test may override it to provide their own state.
    ```python
    state = app.dependency_overrides.get(
        init_app_state,
        init_app_state,
    )(
        app=app,
        settings=settings,
        gymbooking_error_logger=gymbooking_error_logger,
    )
    ```
    """
    engine = init_engine(settings=settings)

    SessionLocal = init_SessionLocal(engine)

    master_engine, card_engine = init_external_engines(
        settings=settings,
        gymbooking_error_logger=gymbooking_error_logger,
    )

    redis_client = init_redis_client(
        settings=settings,
        gymbooking_error_logger=gymbooking_error_logger,
    )

    admission_guard = init_admission_guard(
        settings=settings,
        redis_client=redis_client,
    )

    return LifespanState(
        engine=engine,
        SessionLocal=SessionLocal,
        master_engine=master_engine,
        card_engine=card_engine,
        redis_client=redis_client,
        admission_guard=admission_guard,
    )


async def disconnect_state(
    state: LifespanState,
    gymbooking_error_logger: logging.Logger,
) -> None:
    """
    Disconnect items requiring it. This dependency should be used at the end of the application lifespan.
    """
    disconnect_redis_client(state["redis_client"])
    await disconnect_engines(
        state["engine"],
        state["master_engine"],
        state["card_engine"],
    )

    gymbooking_error_logger.info("Application state disconnected successfully.")


def get_app_state(request: Request) -> RuntimeLifespanState:
    """
    Get the application state from the request. The state is injected by our middleware.
    """
    # `request.state` may be a TypedDict or a starlette State object
    # depending if it is accessed in an endpoint or the lifespan
    if isinstance(request.state, dict):
        return cast("RuntimeLifespanState", request.state)
    if isinstance(request.state, starlette.datastructures.State):
        return cast("RuntimeLifespanState", request.state.__dict__["_state"])
    raise InvalidAppStateTypeError


AppState = Annotated[RuntimeLifespanState, Depends(get_app_state)]


@lru_cache
def get_settings() -> Settings:
    """
    Return a settings object, based on `.env` dotenv
    """
    # `lru_cache()` decorator is here to prevent the class to be instantiated multiple times.
    # See https://fastapi.tiangolo.com/advanced/settings/#lru_cache-technical-details
    return construct_prod_settings()


def get_engine(state: AppState) -> AsyncEngine:
    return state["engine"]


def get_master_engine(state: AppState) -> AsyncEngine | None:
    """
    Return the master employee store engine, None if it is not configured
    """
    return state["master_engine"]


def get_card_engine(state: AppState) -> AsyncEngine | None:
    """
    Return the card store engine, None if it is not configured
    """
    return state["card_engine"]


def get_admission_guard(state: AppState) -> AdmissionGuard:
    return state["admission_guard"]


def is_admin_token_valid(
    request: Request,
    x_admin_token: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """
    If `GYM_ADMIN_TOKEN` is configured, the request should carry it in the `x-admin-token` header.
    """
    if settings.GYM_ADMIN_TOKEN is None:
        return
    if not secrets.compare_digest(x_admin_token or "", settings.GYM_ADMIN_TOKEN):
        client = request.client.host if request.client else "unknown"
        gymbooking_security_logger.warning(
            f"Invalid admin token for {request.url.path} from {client}",
        )
        raise HTTPException(
            status_code=403,
            detail="Invalid admin token",
        )


def get_session_local(state: AppState) -> SessionLocalType:
    """
    Return the booking store session creator, for code managing its own transactions
    """
    return state["SessionLocal"]
