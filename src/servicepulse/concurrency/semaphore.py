"""
Fetch limiter for remote sources

One permit pool shared by every telemetry and deployment fetch of a
scheduler. Usage is accounted per source so a slow backend shows up in the
stats as the one holding permits or timing out.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class SourceUsage:
    """Permit usage attributed to one source"""

    acquisitions: int = 0
    timeouts: int = 0
    hold_time_total: float = 0.0
    max_hold_time: float = 0.0

    @property
    def average_hold_time(self) -> float:
        return self.hold_time_total / self.acquisitions if self.acquisitions else 0.0

    def record_hold(self, seconds: float) -> None:
        self.hold_time_total += seconds
        self.max_hold_time = max(self.max_hold_time, seconds)


@dataclass
class SemaphoreStats:
    """Point-in-time view of a limiter"""

    name: str
    capacity: int
    in_use: int
    waiting: int
    sources: dict[str, SourceUsage] = field(default_factory=dict)

    @property
    def utilization(self) -> float:
        """Permits in use as a percentage of capacity"""
        return (self.in_use / self.capacity) * 100

    @property
    def total_acquisitions(self) -> int:
        return sum(usage.acquisitions for usage in self.sources.values())

    @property
    def total_timeouts(self) -> int:
        return sum(usage.timeouts for usage in self.sources.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "capacity": self.capacity,
            "in_use": self.in_use,
            "waiting": self.waiting,
            "utilization_percent": self.utilization,
            "sources": {
                source: {
                    "acquisitions": usage.acquisitions,
                    "timeouts": usage.timeouts,
                    "average_hold_time": usage.average_hold_time,
                    "max_hold_time": usage.max_hold_time,
                }
                for source, usage in sorted(self.sources.items())
            },
        }


class AsyncSemaphore:
    """
    Bounded permit pool with acquisition timeouts

    Waiters are served FIFO (asyncio.Semaphore semantics). A permit is
    always returned when the ``acquire`` block exits, even on error or
    cancellation.
    """

    def __init__(self, value: int, name: str = "unnamed"):
        if value < 1:
            raise ValueError("Semaphore capacity must be positive")

        self.name = name
        self.capacity = value
        self._semaphore = asyncio.Semaphore(value)
        self._in_use = 0
        self._waiting = 0
        self._usage: dict[str, SourceUsage] = {}

    def _usage_for(self, source: str) -> SourceUsage:
        return self._usage.setdefault(source, SourceUsage())

    @asynccontextmanager
    async def acquire(self, source: str = "default", timeout: Optional[float] = None):
        """
        Hold one permit for the duration of the block

        Raises:
            asyncio.TimeoutError: If no permit frees up within ``timeout``
        """
        usage = self._usage_for(source)
        self._waiting += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            usage.timeouts += 1
            logger.warning(
                f"No '{self.name}' permit for {source} within {timeout}s "
                f"({self._in_use}/{self.capacity} in use)"
            )
            raise
        finally:
            self._waiting -= 1

        usage.acquisitions += 1
        self._in_use += 1
        started = time.perf_counter()
        try:
            yield
        finally:
            usage.record_hold(time.perf_counter() - started)
            self._in_use -= 1
            self._semaphore.release()

    def locked(self) -> bool:
        """True when every permit is held"""
        return self._in_use >= self.capacity

    def get_stats(self) -> SemaphoreStats:
        return SemaphoreStats(
            name=self.name,
            capacity=self.capacity,
            in_use=self._in_use,
            waiting=self._waiting,
            sources={
                source: SourceUsage(
                    acquisitions=usage.acquisitions,
                    timeouts=usage.timeouts,
                    hold_time_total=usage.hold_time_total,
                    max_hold_time=usage.max_hold_time,
                )
                for source, usage in self._usage.items()
            },
        )
