"""
Scheduler Base - Abstract scheduling capability and delay parsing.

A schedule is PENDING until cancelled. Cancellation only sets a flag: the
durable-task provider cannot drop an enqueued delayed job, so task bodies
must call is_schedule_cancelled() before doing anything.
"""

import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from botmeter.exceptions import InvalidDelayError
from botmeter.models.domain import (
    CancelScheduleParams,
    ScheduledTaskResult,
    ScheduleTask,
)

DELAY_PATTERN = re.compile(r"([0-9]+)([smhd])", re.ASCII)

_UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
}

# Keys injected into every task payload so the task can identify its schedule
SCHEDULE_ID_KEY = "_schedule_id"
SCHEDULE_METADATA_KEY = "_schedule_metadata"


def parse_delay(delay: str) -> timedelta:
    """
    Parse a duration like "30s", "30m", "1h" or "2d".

    Raises:
        InvalidDelayError: Malformed delay string
    """
    match = DELAY_PATTERN.fullmatch(delay)
    if match is None:
        raise InvalidDelayError(delay)
    value, unit = match.groups()
    return timedelta(seconds=int(value) * _UNIT_SECONDS[unit])


def resolve_scheduled_at(delay: str | datetime, now: datetime | None = None) -> datetime:
    """Absolute run time for a duration string or an absolute datetime."""
    if isinstance(delay, datetime):
        if delay.tzinfo is None:
            raise ValueError("Absolute delays must be timezone-aware")
        return delay
    return (now or datetime.now(UTC)) + parse_delay(delay)


class TaskTrigger(Protocol):
    """Durable delayed-task provider: enqueue and return an opaque handle."""

    async def trigger(self, task_id: str, payload: Mapping[str, Any], delay: timedelta) -> str:
        ...


class SchedulerService(ABC):
    """
    Abstract scheduler.

    Failure contract:
    - schedule_task raises (SchedulingError; InvalidDelayError before any I/O)
    - cancel_schedule returns False
    - list_schedules returns []
    - is_schedule_cancelled returns True
    """

    @abstractmethod
    async def schedule_task(self, task: ScheduleTask) -> ScheduledTaskResult:
        """Schedule task.task_id to run after task.delay."""

    @abstractmethod
    async def cancel_schedule(self, params: CancelScheduleParams) -> bool:
        """Mark a schedule cancelled, by id or by (contact, provider, trigger type)."""

    @abstractmethod
    async def list_schedules(
        self, contact_id: str | None = None, provider: str | None = None
    ) -> list[ScheduledTaskResult]:
        """Pending (non-cancelled) schedules."""

    @abstractmethod
    async def is_schedule_cancelled(self, schedule_id: str) -> bool:
        """Whether a task body must skip its effect."""
