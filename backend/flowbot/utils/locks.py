# /flowbot/utils/locks.py

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

from redis.exceptions import LockError

from flowbot.utils.errors import FlowbotError

# Per-address single-writer discipline around read-session / execute /
# write-session. The in-process manager is enough for one worker; the Redis
# manager is used when REDIS_URL is set so gunicorn workers share locks.

logger = logging.getLogger(__name__)


class AddressBusy(FlowbotError):
    status_code = 409
    kind = "address_busy"


class AddressLockManager:
    def __init__(self, acquire_timeout: float = 30.0):
        self.acquire_timeout = acquire_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, address: str):
        lock = self._locks.setdefault(address, asyncio.Lock())
        self._refs[address] = self._refs.get(address, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.acquire_timeout)
            except asyncio.TimeoutError:
                raise AddressBusy(f"Timed out waiting for execution lock on {address}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._refs[address] -= 1
            if self._refs[address] == 0:
                del self._refs[address]
                self._locks.pop(address, None)

    def is_locked(self, address: str) -> bool:
        lock = self._locks.get(address)
        return bool(lock and lock.locked())


class RedisAddressLockManager:
    """Same contract as AddressLockManager, backed by redis-py's Lock."""

    def __init__(self, redis_client, acquire_timeout: float = 30.0, lock_ttl: float = 120.0, prefix: str = "flowbot:lock"):
        self.redis = redis_client
        self.acquire_timeout = acquire_timeout
        self.lock_ttl = lock_ttl
        self.prefix = prefix

    @asynccontextmanager
    async def hold(self, address: str):
        lock = self.redis.lock(f"{self.prefix}:{address}", timeout=self.lock_ttl, blocking_timeout=self.acquire_timeout)
        if not await lock.acquire():
            raise AddressBusy(f"Timed out waiting for execution lock on {address}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # TTL elapsed while the step was still running
                logger.warning(f"Execution lock for {address} expired before release: {e}")
