# /flowbot/utils/circuit_breaker.py

import asyncio
import time
import logging
from enum import Enum
from typing import Any, Callable

from flowbot.utils.errors import ProviderError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(ProviderError):
    kind = "circuit_open"


class CircuitBreaker:
    """
    Per-collaborator breaker. After `failure_threshold` consecutive failures
    calls fail fast with CircuitOpenError for `timeout` seconds, then a
    half-open probe period decides whether to close again.
    """

    def __init__(self, name: str, failure_threshold: int = 5, timeout: int = 60, success_threshold: int = 2):
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: float | None = None
        self.state = CircuitState.CLOSED
        self._lock = asyncio.Lock()

    async def call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self.opened_at is not None and time.monotonic() - self.opened_at > self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info(f"Circuit breaker '{self.name}' is now HALF_OPEN")
                else:
                    raise CircuitOpenError(f"Circuit breaker is OPEN for {self.name}")
        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._record_failure()
            raise
        await self._record_success()
        return result

    async def _record_success(self):
        async with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self.state = CircuitState.CLOSED
                    self.failure_count = 0
                    logger.info(f"Circuit breaker '{self.name}' reset to CLOSED")
            else:
                self.failure_count = 0

    async def _record_failure(self):
        async with self._lock:
            self.failure_count += 1
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                self.state = CircuitState.OPEN
                self.opened_at = time.monotonic()
                logger.error(f"Circuit breaker '{self.name}' OPENED after {self.failure_count} failures")
