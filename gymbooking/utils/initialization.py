import asyncio
import logging
import os
from collections.abc import Callable
from inspect import iscoroutinefunction
from typing import Any

import psutil
import redis

# These utils are used at startup to run the booking store initialization


async def execute_async_or_sync_method(
    job_function: Callable[..., Any],
    **kwargs,
):
    """
    Execute the job_function with the provided kwargs, either as a coroutine or a regular function.
    """
    if iscoroutinefunction(job_function):
        return await job_function(**kwargs)
    return job_function(**kwargs)


async def use_lock_for_workers(
    job_function: Callable[..., Any],
    key: str,
    redis_client: redis.Redis | None,
    logger: logging.Logger,
    unlock_key: str | None = None,
    **kwargs,
) -> None:
    """
    Aquires a Redis lock to ensure that `job_function` is only executed by one worker.

    Using `unlock_key` allows to wait for a worker to have finished executing `job_function` before continuing execution.
    If provided, the function will wait until this unlock key is set before continuing

    The job may be a sync or async function. This util will pass `kwargs` as arguments to the `job_function`.
    We assume that the function execution won't take more than 60 seconds.

    If the Redis client is not provided, the function will execute `job_function` directly without acquiring a lock.
    """

    if not isinstance(redis_client, redis.Redis):
        # If a Redis is not provided, we execute the function directly
        await execute_async_or_sync_method(job_function, **kwargs)

    elif redis_client.set(key, "1", nx=True, ex=120):
        # We acquired the lock, we execute the function
        logger.info(f"Running {job_function.__name__}")

        await execute_async_or_sync_method(job_function, **kwargs)

        if unlock_key is not None:
            # We set the unlock_key for other workers to resume operation
            redis_client.set(unlock_key, "1")
            redis_client.expire(unlock_key, 60)

        # After 60 seconds we remove the key for both performance and reloading issues
        redis_client.expire(key, 60)

    elif unlock_key:
        # As an `unlock_key` is provided, we will wait until an other worker has finished executing `job_function`
        while redis_client.get(unlock_key) is None:
            logger.debug(f"Waiting for {job_function.__name__} to finish")
            await asyncio.sleep(1)


def get_number_of_workers() -> int:
    """
    Get the number of active GymBooking workers
    """
    # We use the parent process to get the workers
    parent_process = psutil.Process(os.getppid())
    workers = [
        p for p in parent_process.children() if p.status() != psutil.STATUS_ZOMBIE
    ]
    return len(workers)
