"""Timing for repository operations.

``TimedOperation`` is an async context manager that records the elapsed
time to the operation latency histogram, bumps the outcome counter and emits
a structured log line. Instrumentation failures never break the wrapped
operation and exceptions are never suppressed.

Usage:
    async with TimedOperation(entity="vm", operation="create", log_extras={"id": 100}):
        await session.commit()
"""
from __future__ import annotations

import logging
import time

from clusterstate.metrics import repository_operation_duration, repository_operations

logger = logging.getLogger(__name__)


class TimedOperation:
    def __init__(
        self,
        *,
        entity: str,
        operation: str,
        log_extras: dict | None = None,
        log_level: int = logging.DEBUG,
    ):
        self.entity = entity
        self.operation = operation
        self.log_extras = log_extras or {}
        self.log_level = log_level
        self.duration_ms: int = 0
        self.success: bool = True
        self._start: float = 0.0

    async def __aenter__(self) -> TimedOperation:
        self._start = time.monotonic()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        elapsed = time.monotonic() - self._start
        self.duration_ms = int(elapsed * 1000)
        self.success = exc_type is None

        try:
            repository_operation_duration.labels(
                entity=self.entity, operation=self.operation
            ).observe(elapsed)
            repository_operations.labels(
                entity=self.entity,
                operation=self.operation,
                status="success" if self.success else "error",
            ).inc()
        except Exception as e:
            logger.warning("Failed to record metric: %s", e)

        try:
            extra = {
                "event": "repository_operation",
                "entity": self.entity,
                "operation": self.operation,
                "duration_ms": self.duration_ms,
                "success": self.success,
                **self.log_extras,
            }
            if exc_type is not None:
                extra["error"] = str(exc_val)
            logger.log(self.log_level, "%s.%s completed", self.entity, self.operation, extra=extra)
        except Exception:
            pass

        return False
