"""
Re-engagement Tasks - Delayed messages to contacts who went quiet.

Every run checks the schedule's cancellation flag before anything else,
since a cancelled schedule's message is still delivered by the broker.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import dramatiq

from botmeter.exceptions import MessagingError
from botmeter.models.domain import TaskOutcome
from botmeter.observability.logging import get_logger, log_context
from botmeter.observability.metrics import metrics
from botmeter.observability.tracing import get_tracer
from botmeter.scheduler.base import SCHEDULE_ID_KEY, SchedulerService
from botmeter.tasks.broker import ensure_broker
from botmeter.tasks.messenger import ContactMessenger, MessageChannel

logger = get_logger(__name__)
tracer = get_tracer(__name__)

NO_SHOW_TASK_ID = "re-engage-no-show"
FOLLOW_UP_TASK_ID = "re-engage-follow-up"

NO_SHOW_TAG_KEY = "no_show_tag"
SITUATION_TAG_KEY = "situation_tag"


@dataclass(frozen=True)
class ReEngagementPayload:
    """Task payload fields a re-engagement run needs."""

    contact_id: str
    location_id: str
    message: str
    tag: str
    situation_id: str | None = None

    @classmethod
    def from_task_payload(
        cls, payload: Mapping[str, Any], tag_key: str
    ) -> "ReEngagementPayload":
        """
        Raises:
            ValueError: A required field is missing or empty
        """
        missing = [
            key for key in ("contact_id", "location_id", "message", tag_key) if not payload.get(key)
        ]
        if missing:
            raise ValueError(f"Missing payload fields: {', '.join(missing)}")
        return cls(
            contact_id=str(payload["contact_id"]),
            location_id=str(payload["location_id"]),
            message=str(payload["message"]),
            tag=str(payload[tag_key]),
            situation_id=payload.get("situation_id"),
        )


def _outcome_label(outcome: TaskOutcome) -> str:
    if outcome.skipped:
        return "skipped"
    return "success" if outcome.success else "failed"


class ReEngagementWorker:
    """
    Executes re-engagement tasks.

    Outcomes, in order:
    1. schedule cancelled (or unreadable) -> skipped
    2. contact missing -> failure
    3. trigger tag no longer on the contact -> skipped
    4. message sent on the contact's last channel (SMS by default)
    Never raises.
    """

    def __init__(self, scheduler: SchedulerService, messenger: ContactMessenger) -> None:
        self.scheduler = scheduler
        self.messenger = messenger

    async def run(
        self,
        payload: Mapping[str, Any],
        task_id: str = NO_SHOW_TASK_ID,
        tag_key: str = NO_SHOW_TAG_KEY,
    ) -> TaskOutcome:
        """Run one re-engagement task."""
        schedule_id = payload.get(SCHEDULE_ID_KEY)
        with tracer.start_as_current_span("re_engagement_run") as span, log_context(
            task_id=task_id, schedule_id=schedule_id
        ):
            span.set_attribute("task_id", task_id)
            outcome = await self._run(payload, schedule_id, tag_key)
            span.set_attribute("outcome", _outcome_label(outcome))

        metrics.record_task_run(task_id, _outcome_label(outcome))
        return outcome

    async def _run(
        self, payload: Mapping[str, Any], schedule_id: str | None, tag_key: str
    ) -> TaskOutcome:
        if not schedule_id or await self.scheduler.is_schedule_cancelled(schedule_id):
            logger.info("re_engagement_skipped_cancelled")
            return TaskOutcome.skip("Schedule cancelled")

        try:
            task = ReEngagementPayload.from_task_payload(payload, tag_key)
        except ValueError as e:
            logger.error("re_engagement_invalid_payload", error=str(e))
            return TaskOutcome.fail(str(e))

        logger.info(
            "re_engagement_started",
            contact_id=task.contact_id,
            location_id=task.location_id,
            situation_id=task.situation_id,
        )

        try:
            contact = await self.messenger.get_contact(task.contact_id, task.location_id)
        except MessagingError as e:
            logger.error(
                "re_engagement_contact_lookup_failed", contact_id=task.contact_id, error=str(e)
            )
            return TaskOutcome.fail(str(e))

        if contact is None:
            logger.error("re_engagement_contact_not_found", contact_id=task.contact_id)
            return TaskOutcome.fail("Contact not found")

        if not contact.has_tag(task.tag):
            logger.info(
                "re_engagement_skipped_tag_removed",
                contact_id=task.contact_id,
                tag=task.tag,
                current_tags=list(contact.tags),
            )
            return TaskOutcome.skip("Tag removed")

        channel = await self._detect_channel(task)

        try:
            sent = await self.messenger.send_message(
                channel, task.contact_id, task.location_id, task.message
            )
        except MessagingError as e:
            logger.error("re_engagement_send_failed", contact_id=task.contact_id, error=str(e))
            return TaskOutcome.fail("Failed to send message")

        logger.info(
            "re_engagement_message_sent",
            contact_id=task.contact_id,
            message_id=sent.message_id,
            channel=channel.value,
        )
        return TaskOutcome(success=True, message_id=sent.message_id, channel=channel.value)

    async def _detect_channel(self, task: ReEngagementPayload) -> MessageChannel:
        """Reply on the channel of the last conversation; SMS when unknown."""
        try:
            channel = await self.messenger.get_last_message_channel(
                task.contact_id, task.location_id
            )
        except MessagingError as e:
            logger.warning(
                "conversation_history_unavailable", contact_id=task.contact_id, error=str(e)
            )
            return MessageChannel.SMS
        return channel or MessageChannel.SMS


# ============================================================================
# Worker wiring
# ============================================================================

_worker: ReEngagementWorker | None = None


def configure_worker(worker: ReEngagementWorker | None) -> None:
    """Install the worker the actors delegate to (see botmeter.worker)."""
    global _worker
    _worker = worker


def get_worker() -> ReEngagementWorker:
    if _worker is None:
        raise RuntimeError("Re-engagement worker is not configured")
    return _worker


ensure_broker()


@dramatiq.actor(actor_name=NO_SHOW_TASK_ID, queue_name="reengagement", max_retries=0)
async def re_engage_no_show(payload: dict[str, Any]) -> None:
    """Re-engage a contact tagged as a no-show."""
    outcome = await get_worker().run(payload, task_id=NO_SHOW_TASK_ID, tag_key=NO_SHOW_TAG_KEY)
    logger.info(
        "task_completed",
        task_id=NO_SHOW_TASK_ID,
        success=outcome.success,
        skipped=outcome.skipped,
        reason=outcome.reason,
    )


@dramatiq.actor(actor_name=FOLLOW_UP_TASK_ID, queue_name="reengagement", max_retries=0)
async def re_engage_follow_up(payload: dict[str, Any]) -> None:
    """Follow up on a configured situation while its tag is still present."""
    outcome = await get_worker().run(payload, task_id=FOLLOW_UP_TASK_ID, tag_key=SITUATION_TAG_KEY)
    logger.info(
        "task_completed",
        task_id=FOLLOW_UP_TASK_ID,
        success=outcome.success,
        skipped=outcome.skipped,
        reason=outcome.reason,
    )
