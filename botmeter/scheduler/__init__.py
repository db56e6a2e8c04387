"""
Deferred task scheduling with cooperative cancellation.
"""

from botmeter.scheduler.base import SchedulerService, parse_delay, resolve_scheduled_at
from botmeter.scheduler.registry import SchedulerRegistry, build_default_registry

__all__ = [
    "SchedulerService",
    "SchedulerRegistry",
    "build_default_registry",
    "parse_delay",
    "resolve_scheduled_at",
]
