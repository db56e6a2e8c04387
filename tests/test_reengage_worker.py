"""
Tests for the re-engagement worker and its dramatiq actors.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import dramatiq
import pytest
from conftest import FakeMessenger, InMemoryKV, RecordingTrigger

from botmeter.exceptions import MessagingError
from botmeter.models.api import TriggerType
from botmeter.models.domain import (
    CancelScheduleParams,
    ContactInfo,
    ScheduleMetadata,
    ScheduleTask,
)
from botmeter.scheduler.base import SCHEDULE_ID_KEY
from botmeter.scheduler.dramatiq_provider import DramatiqSchedulerService
from botmeter.tasks import reengage
from botmeter.tasks.messenger import MessageChannel
from botmeter.tasks.reengage import (
    FOLLOW_UP_TASK_ID,
    NO_SHOW_TASK_ID,
    SITUATION_TAG_KEY,
    ReEngagementPayload,
    ReEngagementWorker,
)


@pytest.fixture
def scheduler(kv: InMemoryKV, trigger: RecordingTrigger) -> DramatiqSchedulerService:
    return DramatiqSchedulerService(kv, trigger=trigger)


async def schedule_no_show(
    scheduler: DramatiqSchedulerService, trigger: RecordingTrigger, **payload: str
) -> dict:
    """Schedule a no-show task and return the payload the actor would receive."""
    await scheduler.schedule_task(
        ScheduleTask(
            task_id=NO_SHOW_TASK_ID,
            delay="30m",
            payload={
                "contact_id": "contact-1",
                "location_id": "loc-1",
                "message": "We missed you! Want to rebook?",
                "no_show_tag": "no-show",
                **payload,
            },
            metadata=ScheduleMetadata(
                contact_id="contact-1",
                location_id="loc-1",
                provider="gohighlevel",
                trigger_type=TriggerType.NO_SHOW,
            ),
        )
    )
    return trigger.calls[-1][1]


class TestReEngagementWorker:
    """Outcome ordering: cancelled, contact missing, tag removed, sent."""

    async def test_sends_on_last_channel(
        self,
        scheduler: DramatiqSchedulerService,
        trigger: RecordingTrigger,
        tagged_contact: ContactInfo,
    ) -> None:
        messenger = FakeMessenger(contact=tagged_contact, last_channel=MessageChannel.WHATSAPP)
        payload = await schedule_no_show(scheduler, trigger)

        outcome = await ReEngagementWorker(scheduler, messenger).run(payload)

        assert outcome.success is True
        assert outcome.skipped is False
        assert outcome.message_id == "ghl-msg-1"
        assert outcome.channel == "WhatsApp"
        messenger.send_message.assert_awaited_once_with(
            MessageChannel.WHATSAPP, "contact-1", "loc-1", "We missed you! Want to rebook?"
        )

    async def test_defaults_to_sms_without_history(
        self,
        scheduler: DramatiqSchedulerService,
        trigger: RecordingTrigger,
        messenger: FakeMessenger,
    ) -> None:
        payload = await schedule_no_show(scheduler, trigger)

        outcome = await ReEngagementWorker(scheduler, messenger).run(payload)

        assert outcome.channel == "SMS"

    async def test_defaults_to_sms_when_history_unavailable(
        self,
        scheduler: DramatiqSchedulerService,
        trigger: RecordingTrigger,
        messenger: FakeMessenger,
    ) -> None:
        messenger.get_last_message_channel = AsyncMock(
            side_effect=MessagingError("search_conversations", 500, "boom")
        )
        payload = await schedule_no_show(scheduler, trigger)

        outcome = await ReEngagementWorker(scheduler, messenger).run(payload)

        assert outcome.success is True
        assert outcome.channel == "SMS"

    async def test_cancelled_schedule_skips_without_lookup(
        self,
        scheduler: DramatiqSchedulerService,
        trigger: RecordingTrigger,
        messenger: FakeMessenger,
    ) -> None:
        payload = await schedule_no_show(scheduler, trigger)
        await scheduler.cancel_schedule(
            CancelScheduleParams(
                contact_id="contact-1", provider="gohighlevel", trigger_type=TriggerType.NO_SHOW
            )
        )

        outcome = await ReEngagementWorker(scheduler, messenger).run(payload)

        assert outcome.skipped is True
        assert outcome.reason == "Schedule cancelled"
        messenger.get_contact.assert_not_awaited()
        messenger.send_message.assert_not_awaited()

    async def test_payload_without_schedule_id_skips(
        self, scheduler: DramatiqSchedulerService, messenger: FakeMessenger
    ) -> None:
        outcome = await ReEngagementWorker(scheduler, messenger).run({"contact_id": "contact-1"})

        assert outcome.skipped is True
        messenger.get_contact.assert_not_awaited()

    async def test_missing_contact_fails(
        self, scheduler: DramatiqSchedulerService, trigger: RecordingTrigger
    ) -> None:
        messenger = FakeMessenger(contact=None)
        payload = await schedule_no_show(scheduler, trigger)

        outcome = await ReEngagementWorker(scheduler, messenger).run(payload)

        assert outcome.success is False
        assert outcome.error == "Contact not found"
        messenger.send_message.assert_not_awaited()

    async def test_removed_tag_skips(
        self, scheduler: DramatiqSchedulerService, trigger: RecordingTrigger
    ) -> None:
        messenger = FakeMessenger(contact=ContactInfo(contact_id="contact-1", tags=("booked",)))
        payload = await schedule_no_show(scheduler, trigger)

        outcome = await ReEngagementWorker(scheduler, messenger).run(payload)

        assert outcome.skipped is True
        assert outcome.reason == "Tag removed"
        messenger.send_message.assert_not_awaited()

    async def test_send_failure_reported(
        self,
        scheduler: DramatiqSchedulerService,
        trigger: RecordingTrigger,
        messenger: FakeMessenger,
    ) -> None:
        messenger.send_message = AsyncMock(side_effect=MessagingError("send_message", 422, "bad"))
        payload = await schedule_no_show(scheduler, trigger)

        outcome = await ReEngagementWorker(scheduler, messenger).run(payload)

        assert outcome.success is False
        assert outcome.error == "Failed to send message"

    async def test_invalid_payload_fails(
        self,
        scheduler: DramatiqSchedulerService,
        trigger: RecordingTrigger,
        messenger: FakeMessenger,
    ) -> None:
        payload = await schedule_no_show(scheduler, trigger, message="")

        outcome = await ReEngagementWorker(scheduler, messenger).run(payload)

        assert outcome.success is False
        assert "message" in (outcome.error or "")

    async def test_follow_up_checks_situation_tag(
        self, scheduler: DramatiqSchedulerService, trigger: RecordingTrigger
    ) -> None:
        messenger = FakeMessenger(
            contact=ContactInfo(contact_id="contact-1", tags=("pricing-question",))
        )
        await scheduler.schedule_task(
            ScheduleTask(
                task_id=FOLLOW_UP_TASK_ID,
                delay=datetime.now(UTC) + timedelta(hours=4),
                payload={
                    "contact_id": "contact-1",
                    "location_id": "loc-1",
                    "message": "Any other questions about pricing?",
                    "situation_tag": "pricing-question",
                    "situation_id": "sit-1",
                },
            )
        )

        outcome = await ReEngagementWorker(scheduler, messenger).run(
            trigger.calls[-1][1], task_id=FOLLOW_UP_TASK_ID, tag_key=SITUATION_TAG_KEY
        )

        assert outcome.success is True
        assert outcome.skipped is False


class TestReEngagementPayload:
    def test_parses_required_fields(self) -> None:
        task = ReEngagementPayload.from_task_payload(
            {
                "contact_id": "c1",
                "location_id": "l1",
                "message": "hi",
                "no_show_tag": "no-show",
                SCHEDULE_ID_KEY: "sched_1_a",
            },
            "no_show_tag",
        )

        assert task.tag == "no-show"
        assert task.situation_id is None

    def test_lists_missing_fields(self) -> None:
        with pytest.raises(ValueError) as exc_info:
            ReEngagementPayload.from_task_payload({"contact_id": "c1"}, "no_show_tag")

        assert "location_id" in str(exc_info.value)
        assert "no_show_tag" in str(exc_info.value)


class TestActors:
    """The actors are declared on the installed broker and delegate to the worker."""

    def test_actors_declared(self) -> None:
        broker = dramatiq.get_broker()

        assert broker.get_actor(NO_SHOW_TASK_ID).queue_name == "reengagement"
        assert broker.get_actor(FOLLOW_UP_TASK_ID).queue_name == "reengagement"

    def test_unconfigured_worker_raises(self) -> None:
        reengage.configure_worker(None)

        with pytest.raises(RuntimeError):
            reengage.get_worker()

    def test_configured_worker_returned(
        self, scheduler: DramatiqSchedulerService, messenger: FakeMessenger
    ) -> None:
        worker = ReEngagementWorker(scheduler, messenger)
        reengage.configure_worker(worker)
        try:
            assert reengage.get_worker() is worker
        finally:
            reengage.configure_worker(None)
