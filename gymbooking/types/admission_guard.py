import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import date

import redis
from redis.exceptions import LockNotOwnedError
from redis.lock import Lock

from gymbooking.types.exceptions import AdmissionLockTimeoutError

booking_logger = logging.getLogger("gymbooking.booking")

AdmissionKey = tuple[int, date]


class AdmissionGuard:
    """
    Mutual exclusion for booking admissions, keyed by `(ScheduleID, booking date)`.

    No database constraint can cap the number of active bookings of a session, so the
    count-then-insert sequence of an admission must run alone for a given session and day.

    Inside a worker, an `asyncio.Lock` is created per key and dropped once nobody holds or waits for it.
    If a Redis client is provided, a Redis lock (`redis.lock.Lock`) is also taken so that the
    exclusion holds across several workers. The Redis lock expires after `lock_timeout`
    seconds, and waiting for it is bounded by the same delay.

    A disabled guard does nothing: it is used to reproduce the historical check-then-insert behaviour.
    ```python
    async with admission_guard.hold(schedule_id, booking_date):
        # count active bookings, then insert
    ```
    """

    def __init__(
        self,
        enabled: bool = True,
        redis_client: redis.Redis | None = None,
        lock_timeout: float = 10,
        poll_interval: float = 0.05,
    ) -> None:
        self.enabled = enabled
        self.redis_client = redis_client
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self._locks: dict[AdmissionKey, asyncio.Lock] = {}
        self._users: dict[AdmissionKey, int] = {}

    @staticmethod
    def redis_key(key: AdmissionKey) -> str:
        schedule_id, booking_date = key
        return f"gymbooking:admission:{schedule_id}:{booking_date.isoformat()}"

    def pending_keys(self) -> list[AdmissionKey]:
        return list(self._locks)

    @asynccontextmanager
    async def hold(
        self,
        schedule_id: int,
        booking_date: date,
    ) -> AsyncGenerator[bool, None]:
        """
        Hold the lock of `(schedule_id, booking_date)` for the duration of the context.

        Yield True if the exclusion is effective, False if the guard is disabled.
        """
        if not self.enabled:
            yield False
            return

        key: AdmissionKey = (schedule_id, booking_date)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                if self.redis_client is None:
                    yield True
                else:
                    redis_lock = await self._acquire_redis_lock(key)
                    try:
                        yield True
                    finally:
                        self._release_redis_lock(redis_lock)
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    async def _acquire_redis_lock(self, key: AdmissionKey) -> Lock:
        # The redis client is synchronous, the lock is polled instead of blocking
        # so that the event loop is never blocked
        lock = self.redis_client.lock(  # type: ignore[union-attr]
            self.redis_key(key),
            timeout=self.lock_timeout,
            sleep=self.poll_interval,
            thread_local=False,
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lock_timeout
        while not lock.acquire(blocking=False):
            if loop.time() >= deadline:
                booking_logger.warning(f"Admission lock {lock.name} is still held")
                raise AdmissionLockTimeoutError(lock.name)
            await asyncio.sleep(self.poll_interval)
        return lock

    def _release_redis_lock(self, lock: Lock) -> None:
        try:
            lock.release()
        except LockNotOwnedError:
            # The lock expired and may have been taken by another worker, which keeps it
            booking_logger.warning(f"Admission lock {lock.name} expired before its release")
