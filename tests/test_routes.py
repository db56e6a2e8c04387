"""
Tests for API Routes.

Route handler functions are called directly with mocked dependencies.
"""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import InMemoryKV, RecordingTrigger
from fastapi import HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from botmeter.api import routes
from botmeter.exceptions import FeatureNotFoundError, SchedulingError
from botmeter.models.api import (
    CancelScheduleRequest,
    CreditGrantRequest,
    CreditUsageRequest,
    ErrorCode,
    ScheduleMetadataModel,
    ScheduleTaskRequest,
    SubscriptionStatus,
    TransactionType,
    TriggerType,
    WebsiteLinkUsageRequest,
)
from botmeter.models.domain import (
    BillingPeriod,
    BotUsageInfo,
    CreditUsageResult,
    LedgerEntry,
    PlanCreditUsage,
)
from botmeter.scheduler.base import SchedulerService
from botmeter.scheduler.dramatiq_provider import DramatiqSchedulerService
from botmeter.services.credits import CreditService
from botmeter.services.gates import SubscriptionGate
from botmeter.services.limits import UsageLimitService


def build_gate(
    db_session: AsyncMock,
    status: SubscriptionStatus | None = SubscriptionStatus.ACTIVE,
    links_ok: bool = True,
) -> SubscriptionGate:
    limits = MagicMock(spec=UsageLimitService)
    limits.has_remaining_website_links = AsyncMock(return_value=links_ok)
    gate = SubscriptionGate(
        db_session,
        limits=limits,
        credits=MagicMock(spec=CreditService),
        billing_url_template="/dashboard/{organization_id}/billing",
    )
    gate._find_subscription_status = AsyncMock(return_value=status)  # type: ignore[method-assign]
    return gate


def body_of(response: JSONResponse) -> dict:
    return json.loads(response.body)


@pytest.fixture
def scheduler(kv: InMemoryKV, trigger: RecordingTrigger) -> DramatiqSchedulerService:
    return DramatiqSchedulerService(kv, trigger=trigger)


# ============================================================================
# Credits
# ============================================================================


class TestRecordCreditUsage:
    async def test_successful_debit(self, db_session: AsyncMock) -> None:
        credits = MagicMock(spec=CreditService)
        credits.process_feature_credit_usage = AsyncMock(
            return_value=CreditUsageResult(
                success=True, cost=5, from_plan=3, from_purchased=2, balance_after=95
            )
        )

        response = await routes.record_credit_usage(
            "org_1",
            CreditUsageRequest(model_id="gpt-4o", conversation_id="conv-1"),
            gate=build_gate(db_session),
            credits=credits,
        )

        assert response.balance_after == 95
        assert (response.from_plan, response.from_purchased) == (3, 2)
        credits.process_feature_credit_usage.assert_awaited_once_with(
            "org_1", "gpt-4o", conversation_id="conv-1", bot_id=None, extra={}
        )

    async def test_inactive_subscription_is_403_with_redirect(
        self, db_session: AsyncMock
    ) -> None:
        credits = MagicMock(spec=CreditService)
        credits.process_feature_credit_usage = AsyncMock()

        response = await routes.record_credit_usage(
            "org_1",
            CreditUsageRequest(model_id="gpt-4o"),
            gate=build_gate(db_session, status=SubscriptionStatus.CANCELED),
            credits=credits,
        )

        assert response.status_code == 403
        body = body_of(response)
        assert body["success"] is False
        assert body["code"] == "SUBSCRIPTION_REQUIRED"
        assert body["redirect_url"] == "/dashboard/org_1/billing"
        credits.process_feature_credit_usage.assert_not_awaited()

    async def test_insufficient_credits_is_402(self, db_session: AsyncMock) -> None:
        credits = MagicMock(spec=CreditService)
        credits.process_feature_credit_usage = AsyncMock(
            return_value=CreditUsageResult.failed(
                ErrorCode.INSUFFICIENT_CREDITS, "Insufficient credits", cost=5
            )
        )

        response = await routes.record_credit_usage(
            "org_1",
            CreditUsageRequest(model_id="gpt-4o"),
            gate=build_gate(db_session),
            credits=credits,
        )

        assert response.status_code == 402
        assert body_of(response)["redirect_url"] == "/dashboard/org_1/billing"

    async def test_store_failure_is_503(self, db_session: AsyncMock) -> None:
        credits = MagicMock(spec=CreditService)
        credits.process_feature_credit_usage = AsyncMock(
            return_value=CreditUsageResult.failed(
                ErrorCode.SERVICE_UNAVAILABLE, "Failed to process credit usage"
            )
        )

        response = await routes.record_credit_usage(
            "org_1",
            CreditUsageRequest(model_id="gpt-4o"),
            gate=build_gate(db_session),
            credits=credits,
        )

        assert response.status_code == 503
        assert body_of(response)["redirect_url"] is None


class TestCreditSummary:
    async def test_summary(self) -> None:
        now = datetime.now(UTC)
        credits = MagicMock(spec=CreditService)
        credits.get_plan_credit_usage = AsyncMock(
            return_value=PlanCreditUsage(
                organization_id="org_1",
                balance=120,
                plan_allocation=100,
                plan_credits_used=30,
                period=BillingPeriod(start=now - timedelta(days=5), end=now + timedelta(days=25)),
            )
        )

        response = await routes.get_credit_summary("org_1", credits=credits)

        assert response.remaining_plan_credits == 70
        assert response.purchased_credits == 50

    async def test_missing_feature_is_500(self) -> None:
        credits = MagicMock(spec=CreditService)
        credits.get_plan_credit_usage = AsyncMock(
            side_effect=FeatureNotFoundError("message_credits")
        )

        with pytest.raises(HTTPException) as exc_info:
            await routes.get_credit_summary("org_1", credits=credits)

        assert exc_info.value.status_code == 500

    async def test_store_error_is_503(self) -> None:
        credits = MagicMock(spec=CreditService)
        credits.get_plan_credit_usage = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("down"))
        )

        with pytest.raises(HTTPException) as exc_info:
            await routes.get_credit_summary("org_1", credits=credits)

        assert exc_info.value.status_code == 503


class TestGrantCredits:
    async def test_grant(self) -> None:
        credits = MagicMock(spec=CreditService)
        credits.grant_credits = AsyncMock(
            return_value=LedgerEntry(
                transaction_id="tx-1",
                balance_id="bal-1",
                amount=500,
                transaction_type=TransactionType.PURCHASE,
                description="Credit pack",
                balance_after=520,
                created_at=datetime.now(UTC),
            )
        )

        response = await routes.grant_credits(
            "org_1",
            CreditGrantRequest(amount=500, description="Credit pack"),
            credits=credits,
        )

        assert response.transaction_id == "tx-1"
        assert response.balance_after == 520

    def test_usage_type_not_grantable(self) -> None:
        with pytest.raises(ValueError):
            CreditGrantRequest(
                amount=5, description="nope", transaction_type=TransactionType.USAGE
            )


# ============================================================================
# Counter Features
# ============================================================================


class TestWebsiteLinkUsage:
    async def test_admitted_links_recorded(self, db_session: AsyncMock) -> None:
        limits = MagicMock(spec=UsageLimitService)
        limits.track_website_link_usage = AsyncMock(return_value=True)

        response = await routes.record_website_link_usage(
            "org_1",
            WebsiteLinkUsageRequest(links=4, source_url="https://example.com"),
            gate=build_gate(db_session),
            limits=limits,
        )

        assert response.links == 4
        organization_id, links, metadata = limits.track_website_link_usage.await_args.args
        assert (organization_id, links) == ("org_1", 4)
        assert metadata.source_url == "https://example.com"

    async def test_limit_exceeded_is_403(self, db_session: AsyncMock) -> None:
        limits = MagicMock(spec=UsageLimitService)
        limits.track_website_link_usage = AsyncMock()

        response = await routes.record_website_link_usage(
            "org_1",
            WebsiteLinkUsageRequest(links=4),
            gate=build_gate(db_session, links_ok=False),
            limits=limits,
        )

        assert response.status_code == 403
        assert body_of(response)["code"] == "WEBSITE_LINK_LIMIT_EXCEEDED"
        limits.track_website_link_usage.assert_not_awaited()

    async def test_tracking_failure_is_503(self, db_session: AsyncMock) -> None:
        limits = MagicMock(spec=UsageLimitService)
        limits.track_website_link_usage = AsyncMock(return_value=False)

        response = await routes.record_website_link_usage(
            "org_1",
            WebsiteLinkUsageRequest(links=1),
            gate=build_gate(db_session),
            limits=limits,
        )

        assert response.status_code == 503


class TestBotSlots:
    async def test_bot_slots(self) -> None:
        limits = MagicMock(spec=UsageLimitService)
        limits.get_bot_usage_info = AsyncMock(
            return_value=BotUsageInfo(limit=5, usage=2, available=3, has_available=True)
        )

        response = await routes.get_bot_slots("org_1", limits=limits)

        assert response.available == 3
        assert response.has_available is True


# ============================================================================
# Scheduler
# ============================================================================


class TestScheduleRoutes:
    async def test_schedule_list_cancel_roundtrip(
        self, scheduler: DramatiqSchedulerService
    ) -> None:
        created = await routes.schedule_task(
            ScheduleTaskRequest(
                task_id="re-engage-no-show",
                delay="30m",
                payload={"contact_id": "contact-1"},
                metadata=ScheduleMetadataModel(
                    contact_id="contact-1",
                    provider="gohighlevel",
                    trigger_type=TriggerType.NO_SHOW,
                ),
            ),
            scheduler=scheduler,
        )

        listed = await routes.list_schedules(contact_id="contact-1", scheduler=scheduler)
        assert listed.total == 1
        assert listed.schedules[0].schedule_id == created.schedule_id
        assert listed.schedules[0].metadata.trigger_type == TriggerType.NO_SHOW

        cancelled = await routes.cancel_schedule(
            CancelScheduleRequest(
                contact_id="contact-1", provider="gohighlevel", trigger_type=TriggerType.NO_SHOW
            ),
            scheduler=scheduler,
        )
        assert cancelled.cancelled is True

        status = await routes.get_schedule_status(created.schedule_id, scheduler=scheduler)
        assert status.cancelled is True
        assert (await routes.list_schedules(scheduler=scheduler)).total == 0

    async def test_run_at_accepted(self, scheduler: DramatiqSchedulerService) -> None:
        run_at = datetime.now(UTC) + timedelta(hours=2)

        created = await routes.schedule_task(
            ScheduleTaskRequest(task_id="re-engage-no-show", run_at=run_at),
            scheduler=scheduler,
        )

        assert created.scheduled_at == run_at

    @pytest.mark.parametrize("with_both", [True, False])
    async def test_exactly_one_of_delay_or_run_at(
        self, scheduler: DramatiqSchedulerService, with_both: bool
    ) -> None:
        request = ScheduleTaskRequest(
            task_id="re-engage-no-show",
            delay="5m" if with_both else None,
            run_at=datetime.now(UTC) if with_both else None,
        )

        with pytest.raises(HTTPException) as exc_info:
            await routes.schedule_task(request, scheduler=scheduler)

        assert exc_info.value.status_code == 422

    def test_malformed_delay_rejected_by_model(self) -> None:
        with pytest.raises(ValueError):
            ScheduleTaskRequest(task_id="re-engage-no-show", delay="soon")

    def test_naive_run_at_rejected_by_model(self) -> None:
        with pytest.raises(ValueError):
            ScheduleTaskRequest(task_id="re-engage-no-show", run_at=datetime(2026, 1, 1, 9, 0))

    async def test_provider_failure_is_503(self) -> None:
        scheduler = MagicMock(spec=SchedulerService)
        scheduler.schedule_task = AsyncMock(
            side_effect=SchedulingError("re-engage-no-show", "broker down")
        )

        with pytest.raises(HTTPException) as exc_info:
            await routes.schedule_task(
                ScheduleTaskRequest(task_id="re-engage-no-show", delay="5m"), scheduler=scheduler
            )

        assert exc_info.value.status_code == 503


# ============================================================================
# Health
# ============================================================================


class TestHealthCheck:
    async def test_healthy(self, db_session: AsyncMock) -> None:
        request = MagicMock()
        request.app.state.redis.ping = AsyncMock(return_value=True)

        response = await routes.health_check(request, db=db_session)

        assert response.status == "healthy"
        assert response.redis == "connected"

    async def test_unreachable_store_is_503(self, db_session: AsyncMock) -> None:
        request = MagicMock()
        request.app.state.redis.ping = AsyncMock(side_effect=ConnectionError("refused"))

        with pytest.raises(HTTPException) as exc_info:
            await routes.health_check(request, db=db_session)

        assert exc_info.value.status_code == 503


def test_every_error_code_has_a_status() -> None:
    assert set(routes.ERROR_STATUS_CODES) == set(ErrorCode)
