"""
Bounded per-service telemetry window

Keeps the most recent samples of every service in time order. Each service
has a single writer (its evaluation task); any number of readers may query
concurrently and always receive copies.
"""

import logging
import threading
from collections import deque
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Optional, Union

from .errors import OutOfOrderSampleError
from .models import TelemetrySample, TimeRange

logger = logging.getLogger(__name__)


class TelemetryStore:
    """
    Sliding window of telemetry samples keyed by service id

    Features:
    - FIFO eviction once a window reaches its capacity
    - Optional age limit relative to the newest sample
    - Monotonic (non-decreasing) timestamps per service
    """

    def __init__(self, capacity: int = 720, max_age: Optional[timedelta] = None):
        if capacity < 1:
            raise ValueError("Telemetry store capacity must be positive")
        if max_age is not None and max_age <= timedelta(0):
            raise ValueError("Telemetry store max_age must be positive")

        self.capacity = capacity
        self.max_age = max_age
        self._windows: dict[str, deque[TelemetrySample]] = {}
        self._lock = threading.RLock()

    def append(self, service_id: str, sample: TelemetrySample) -> None:
        """
        Add a sample to a service's window

        Raises:
            OutOfOrderSampleError: If the sample is older than the newest one
            ValueError: If the sample belongs to a different service
        """
        if sample.service_id != service_id:
            raise ValueError(
                f"Sample for '{sample.service_id}' appended under '{service_id}'"
            )

        with self._lock:
            window = self._windows.get(service_id)
            if window is None:
                window = deque(maxlen=self.capacity)
                self._windows[service_id] = window

            if window and sample.timestamp < window[-1].timestamp:
                raise OutOfOrderSampleError(
                    service_id, sample.timestamp, window[-1].timestamp
                )

            window.append(sample)
            self._evict_expired(window)

    def ingest(self, service_id: str, samples: Iterable[TelemetrySample]) -> int:
        """
        Append a fetched batch, skipping samples already covered by the window

        Remote sources return overlapping ranges on every poll, so anything at
        or before the current head is treated as already seen.

        Returns:
            Number of samples appended
        """
        ordered = sorted(samples, key=lambda s: s.timestamp)
        appended = 0

        with self._lock:
            head = self.latest(service_id)
            for sample in ordered:
                if head is not None and sample.timestamp <= head.timestamp:
                    continue
                self.append(service_id, sample)
                head = sample
                appended += 1

        skipped = len(ordered) - appended
        if skipped:
            logger.debug(
                f"Skipped {skipped} already-seen samples for service {service_id}"
            )
        return appended

    def window(
        self,
        service_id: str,
        time_range: Union[TimeRange, timedelta, None] = None,
        now: Optional[datetime] = None,
    ) -> tuple[TelemetrySample, ...]:
        """
        Samples within ``time_range`` of ``now`` (or of the newest sample)

        An unknown service yields an empty tuple.
        """
        with self._lock:
            window = self._windows.get(service_id)
            if not window:
                return ()
            samples = tuple(window)

        if time_range is None:
            return samples

        delta = time_range.delta if isinstance(time_range, TimeRange) else time_range
        anchor = now or samples[-1].timestamp
        start = anchor - delta
        return tuple(s for s in samples if start <= s.timestamp <= anchor)

    def latest(self, service_id: str) -> Optional[TelemetrySample]:
        with self._lock:
            window = self._windows.get(service_id)
            return window[-1] if window else None

    def size(self, service_id: str) -> int:
        with self._lock:
            window = self._windows.get(service_id)
            return len(window) if window else 0

    def services(self) -> list[str]:
        with self._lock:
            return sorted(self._windows)

    def clear(self, service_id: Optional[str] = None) -> None:
        with self._lock:
            if service_id is None:
                self._windows.clear()
            else:
                self._windows.pop(service_id, None)

    def _evict_expired(self, window: deque[TelemetrySample]) -> None:
        if self.max_age is None:
            return
        cutoff = window[-1].timestamp - self.max_age
        while window and window[0].timestamp < cutoff:
            window.popleft()
