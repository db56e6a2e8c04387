"""
Dramatiq Scheduler - Delayed dramatiq messages plus Redis bookkeeping.

Key layout (all under the configured prefix, default "botmeter_schedule:"):
    <prefix>sched_<ms>_<rand>                       ScheduleInfo JSON
    <prefix>contact:<contact>:<provider>:<trigger>  schedule id (last write wins)

Both keys expire after the schedule TTL (7 days by default).
"""

import asyncio
import re
import time
from collections.abc import Mapping
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import dramatiq
from dramatiq.errors import DramatiqError
from redis.exceptions import RedisError
from structlog import get_logger

from botmeter.config import settings
from botmeter.exceptions import SchedulingError
from botmeter.models.domain import (
    CancelScheduleParams,
    ScheduledTaskResult,
    ScheduleInfo,
    ScheduleTask,
)
from botmeter.observability.metrics import metrics
from botmeter.scheduler.base import (
    SCHEDULE_ID_KEY,
    SCHEDULE_METADATA_KEY,
    SchedulerService,
    TaskTrigger,
    resolve_scheduled_at,
)
from botmeter.scheduler.kv import KeyValueStore

logger = get_logger(__name__)

SCHEDULE_ID_PREFIX = "sched_"
# Handle stored until the provider has accepted the message
PENDING_HANDLE = "pending"

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def escape_glob(value: str) -> str:
    """Escape redis KEYS glob metacharacters so the value matches literally."""
    return _GLOB_SPECIAL.sub(r"\\\1", value)


def generate_schedule_id() -> str:
    """Timestamp plus random suffix - practically unique, not cryptographic."""
    return f"{SCHEDULE_ID_PREFIX}{int(time.time() * 1000)}_{uuid4().hex[:9]}"


class DramatiqTaskTrigger:
    """Enqueue a registered dramatiq actor with a delay; the message id is the handle."""

    def __init__(self, broker: dramatiq.Broker | None = None) -> None:
        self._broker = broker

    @property
    def broker(self) -> dramatiq.Broker:
        return self._broker if self._broker is not None else dramatiq.get_broker()

    async def trigger(self, task_id: str, payload: Mapping[str, Any], delay: timedelta) -> str:
        actor = self.broker.get_actor(task_id)
        delay_ms = int(delay.total_seconds() * 1000)
        message = await asyncio.to_thread(
            actor.send_with_options,
            args=(dict(payload),),
            delay=delay_ms or None,
        )
        return message.message_id


class DramatiqSchedulerService(SchedulerService):
    """
    Scheduler backed by dramatiq delayed messages.

    The provider is never asked to remove a job; cancel_schedule flips the
    stored flag and the task body checks it at run time.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        trigger: TaskTrigger | None = None,
        ttl_seconds: int | None = None,
        key_prefix: str | None = None,
    ) -> None:
        self.kv = kv
        self.trigger = trigger or DramatiqTaskTrigger()
        self.ttl_seconds = ttl_seconds or settings.schedule_ttl_seconds
        self.key_prefix = key_prefix or settings.schedule_key_prefix

    async def schedule_task(self, task: ScheduleTask) -> ScheduledTaskResult:
        """
        Record the task, enqueue it, then attach the provider handle.

        The record is written before the message is enqueued, so a task that
        runs immediately always finds its schedule. If the enqueue or the
        follow-up write fails, the record is flagged cancelled before the
        error is raised.

        Raises:
            InvalidDelayError: Malformed delay string (before any I/O)
            SchedulingError: Provider or key-value store failure
        """
        now = datetime.now(UTC)
        scheduled_at = resolve_scheduled_at(task.delay, now)
        schedule_id = generate_schedule_id()

        payload = {
            **task.payload,
            SCHEDULE_ID_KEY: schedule_id,
            SCHEDULE_METADATA_KEY: task.metadata.to_json() if task.metadata else None,
        }
        info = ScheduleInfo(
            schedule_id=schedule_id,
            task_id=task.task_id,
            trigger_handle=PENDING_HANDLE,
            scheduled_at=scheduled_at,
            metadata=task.metadata,
        )

        try:
            await self._save(info)
        except (RedisError, OSError) as e:
            raise self._scheduling_failed(task.task_id, schedule_id, e) from e

        try:
            handle = await self.trigger.trigger(
                task.task_id, payload, max(timedelta(0), scheduled_at - now)
            )
            info = replace(info, trigger_handle=handle)
            await self._save(info)

            index_parts = task.metadata.index_key_parts() if task.metadata else None
            if index_parts is not None:
                await self.kv.set(self._index_key(*index_parts), schedule_id, ex=self.ttl_seconds)
        except (DramatiqError, RedisError, OSError) as e:
            await self._abandon(info)
            raise self._scheduling_failed(task.task_id, schedule_id, e) from e

        metrics.record_schedule_created(task.task_id)
        logger.info(
            "task_scheduled",
            task_id=task.task_id,
            schedule_id=schedule_id,
            trigger_handle=handle,
            scheduled_at=scheduled_at.isoformat(),
        )

        return info.to_result()

    async def _save(self, info: ScheduleInfo) -> None:
        await self.kv.set(self._schedule_key(info.schedule_id), info.to_json(), ex=self.ttl_seconds)

    async def _abandon(self, info: ScheduleInfo) -> None:
        """Flag a half-created schedule cancelled so an enqueued message is a no-op."""
        try:
            await self._save(replace(info, cancelled=True))
        except (RedisError, OSError) as e:
            logger.error(
                "schedule_abandon_failed", schedule_id=info.schedule_id, error=str(e)
            )

    def _scheduling_failed(
        self, task_id: str, schedule_id: str, error: Exception
    ) -> SchedulingError:
        logger.error(
            "schedule_task_failed",
            task_id=task_id,
            schedule_id=schedule_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        metrics.record_error(type(error).__name__, "schedule_task")
        return SchedulingError(task_id, str(error))

    async def cancel_schedule(self, params: CancelScheduleParams) -> bool:
        """
        Flag a schedule cancelled.

        Resolving through the contact index consumes the index entry. The
        record is re-written with a fresh TTL, never deleted.
        """
        try:
            schedule_id = params.schedule_id
            if not schedule_id:
                index_parts = params.index_key_parts()
                if index_parts is not None:
                    index_key = self._index_key(*index_parts)
                    schedule_id = await self.kv.get(index_key)
                    if schedule_id:
                        await self.kv.delete(index_key)

            if not schedule_id:
                metrics.record_schedule_cancelled(False)
                return False

            raw = await self.kv.get(self._schedule_key(schedule_id))
            if raw is None:
                metrics.record_schedule_cancelled(False)
                return False

            info = replace(ScheduleInfo.from_json(raw), cancelled=True)
            await self.kv.set(self._schedule_key(schedule_id), info.to_json(), ex=self.ttl_seconds)
        except (RedisError, OSError, ValueError, KeyError) as e:
            logger.error(
                "cancel_schedule_failed",
                schedule_id=params.schedule_id,
                contact_id=params.contact_id,
                error=str(e),
            )
            metrics.record_error(type(e).__name__, "cancel_schedule")
            return False

        metrics.record_schedule_cancelled(True)
        logger.info("schedule_cancelled", schedule_id=schedule_id, task_id=info.task_id)
        return True

    async def list_schedules(
        self, contact_id: str | None = None, provider: str | None = None
    ) -> list[ScheduledTaskResult]:
        """
        Pending schedules for a contact, or all of them.

        Without a contact id this is a key scan over every schedule record,
        unsuitable for large keyspaces.
        """
        try:
            if contact_id:
                prefix = escape_glob(f"{self.key_prefix}contact:{contact_id}:")
                pattern = f"{prefix}{escape_glob(provider)}:*" if provider else f"{prefix}*"
                schedule_keys = []
                for index_key in await self.kv.keys(pattern):
                    schedule_id = await self.kv.get(index_key)
                    if schedule_id:
                        schedule_keys.append(self._schedule_key(schedule_id))
            else:
                schedule_keys = await self.kv.keys(
                    f"{escape_glob(self.key_prefix + SCHEDULE_ID_PREFIX)}*"
                )

            schedules = []
            for key in schedule_keys:
                raw = await self.kv.get(key)
                if raw is None:
                    continue
                info = ScheduleInfo.from_json(raw)
                if not info.cancelled:
                    schedules.append(info.to_result())
        except (RedisError, OSError, ValueError, KeyError) as e:
            logger.error("list_schedules_failed", contact_id=contact_id, error=str(e))
            metrics.record_error(type(e).__name__, "list_schedules")
            return []

        return sorted(schedules, key=lambda s: s.scheduled_at)

    async def is_schedule_cancelled(self, schedule_id: str) -> bool:
        """Missing records and unreadable state both count as cancelled."""
        try:
            raw = await self.kv.get(self._schedule_key(schedule_id))
            if raw is None:
                return True
            return ScheduleInfo.from_json(raw).cancelled
        except (RedisError, OSError, ValueError, KeyError) as e:
            logger.error("schedule_status_check_failed", schedule_id=schedule_id, error=str(e))
            metrics.record_error(type(e).__name__, "is_schedule_cancelled")
            return True

    def _schedule_key(self, schedule_id: str) -> str:
        return f"{self.key_prefix}{schedule_id}"

    def _index_key(self, contact_id: str, provider: str, trigger_type: str) -> str:
        return f"{self.key_prefix}contact:{contact_id}:{provider}:{trigger_type}"
