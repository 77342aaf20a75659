"""
Concurrency control for servicepulse

Bounds concurrent remote fetches made by the polling scheduler.
"""

from .semaphore import AsyncSemaphore, SemaphoreStats, SourceUsage

__all__ = [
    "AsyncSemaphore",
    "SemaphoreStats",
    "SourceUsage",
]
