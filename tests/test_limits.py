"""
Tests for UsageLimitService.

Counter features (website links) and agent slots. Every check fails closed.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import create_mock_feature, create_mock_plan_limit, create_mock_subscription
from sqlalchemy.exc import OperationalError

from botmeter.db.models import UsageRecord
from botmeter.models.api import PlanType, SubscriptionStatus
from botmeter.models.domain import BotUsageInfo, UsageMetadata
from botmeter.services.limits import UsageLimitService


def build_service(
    db_session: AsyncMock,
    limit: MagicMock | None = None,
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
    usage: int = 0,
    active_bots: int = 0,
    add_on_slots: int = 0,
) -> UsageLimitService:
    service = UsageLimitService(db_session)
    service._find_feature = AsyncMock(return_value=create_mock_feature("links"))  # type: ignore[method-assign]
    service._find_subscription = AsyncMock(  # type: ignore[method-assign]
        return_value=create_mock_subscription(status=status)
    )
    service._find_plan_limit = AsyncMock(  # type: ignore[method-assign]
        return_value=limit if limit is not None else create_mock_plan_limit(value=10)
    )
    service._sum_usage = AsyncMock(return_value=usage)  # type: ignore[method-assign]
    service._count_active_bots = AsyncMock(return_value=active_bots)  # type: ignore[method-assign]
    service._sum_add_on_quantity = AsyncMock(return_value=add_on_slots)  # type: ignore[method-assign]
    return service


class TestHasRemainingWebsiteLinks:
    """Tests for the website link limit check."""

    @pytest.mark.parametrize(
        ("usage", "requested", "expected"),
        [
            (0, 10, True),
            (9, 1, True),
            (10, 1, False),
            (5, 6, False),
            (0, 11, False),
        ],
    )
    async def test_limit_boundaries(
        self, db_session: AsyncMock, usage: int, requested: int, expected: bool
    ) -> None:
        """Usage plus the request may reach the limit but not pass it."""
        service = build_service(db_session, create_mock_plan_limit(value=10), usage=usage)

        assert await service.has_remaining_website_links("org_1", requested) is expected

    async def test_unlimited_plan_always_allows(self, db_session: AsyncMock) -> None:
        service = build_service(
            db_session, create_mock_plan_limit(value=0, is_unlimited=True), usage=1_000_000
        )

        assert await service.has_remaining_website_links("org_1", 500) is True
        service._sum_usage.assert_not_awaited()

    @pytest.mark.parametrize(
        "status",
        [SubscriptionStatus.CANCELED, SubscriptionStatus.PAST_DUE, SubscriptionStatus.PAUSED],
    )
    async def test_inactive_subscription_denied(
        self, db_session: AsyncMock, status: SubscriptionStatus
    ) -> None:
        service = build_service(db_session, status=status)

        assert await service.has_remaining_website_links("org_1") is False

    async def test_trialing_subscription_allowed(self, db_session: AsyncMock) -> None:
        service = build_service(db_session, status=SubscriptionStatus.TRIALING)

        assert await service.has_remaining_website_links("org_1") is True

    async def test_missing_plan_limit_denied(self, db_session: AsyncMock) -> None:
        service = build_service(db_session)
        service._find_plan_limit = AsyncMock(return_value=None)  # type: ignore[method-assign]

        assert await service.has_remaining_website_links("org_1") is False

    async def test_missing_subscription_denied(self, db_session: AsyncMock) -> None:
        service = build_service(db_session)
        service._find_subscription = AsyncMock(return_value=None)  # type: ignore[method-assign]

        assert await service.has_remaining_website_links("org_1") is False

    async def test_missing_feature_denied(self, db_session: AsyncMock) -> None:
        service = UsageLimitService(db_session)

        assert await service.has_remaining_website_links("org_1") is False

    @pytest.mark.parametrize(
        "error",
        [
            OperationalError("SELECT", {}, Exception("down")),
            ConnectionRefusedError(111, "Connect call failed"),
        ],
    )
    async def test_store_error_denied(self, db_session: AsyncMock, error: Exception) -> None:
        db_session.execute.side_effect = error
        service = UsageLimitService(db_session)

        assert await service.has_remaining_website_links("org_1") is False

    async def test_zero_request_is_evaluated_not_raised(self, db_session: AsyncMock) -> None:
        """A zero request is just the limit predicate: usage + 0 <= limit."""
        within = build_service(db_session, create_mock_plan_limit(value=10), usage=10)
        over = build_service(db_session, create_mock_plan_limit(value=10), usage=11)

        assert await within.has_remaining_website_links("org_1", 0) is True
        assert await over.has_remaining_website_links("org_1", 0) is False


class TestTrackWebsiteLinkUsage:
    """Tests for appending counter usage."""

    async def test_records_usage(self, db_session: AsyncMock) -> None:
        db_session.get = AsyncMock(return_value=MagicMock(spec=UsageRecord))
        service = UsageLimitService(db_session)
        service._find_feature = AsyncMock(return_value=create_mock_feature("links"))  # type: ignore[method-assign]

        recorded = await service.track_website_link_usage(
            "org_1", 3, UsageMetadata(source_url="https://example.com/pricing")
        )

        assert recorded is True
        record = db_session.add.call_args.args[0]
        assert isinstance(record, UsageRecord)
        assert record.quantity == 3
        assert record.feature_id == "feat_links"
        assert record.metadata_json["sourceUrl"] == "https://example.com/pricing"
        db_session.commit.assert_awaited_once()

    async def test_unverified_write_rolls_back(self, db_session: AsyncMock) -> None:
        service = UsageLimitService(db_session)
        service._find_feature = AsyncMock(return_value=create_mock_feature("links"))  # type: ignore[method-assign]

        assert await service.track_website_link_usage("org_1", 3) is False
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_dropped_connection_returns_false(self, db_session: AsyncMock) -> None:
        db_session.flush.side_effect = ConnectionResetError(104, "Connection reset by peer")
        db_session.rollback.side_effect = ConnectionResetError(104, "Connection reset by peer")
        service = UsageLimitService(db_session)
        service._find_feature = AsyncMock(return_value=create_mock_feature("links"))  # type: ignore[method-assign]

        assert await service.track_website_link_usage("org_1", 3) is False
        db_session.commit.assert_not_awaited()

    async def test_missing_feature_records_nothing(self, db_session: AsyncMock) -> None:
        service = UsageLimitService(db_session)

        assert await service.track_website_link_usage("org_1", 3) is False
        db_session.add.assert_not_called()


class TestBotSlots:
    """Tests for agent slot accounting."""

    @pytest.mark.parametrize(
        ("active_bots", "limit", "add_on_slots", "expected"),
        [
            (2, 3, 0, True),
            (3, 3, 0, False),
            (3, 3, 2, True),
            (5, 3, 2, False),
        ],
    )
    async def test_slots_include_add_ons(
        self,
        db_session: AsyncMock,
        active_bots: int,
        limit: int,
        add_on_slots: int,
        expected: bool,
    ) -> None:
        service = build_service(
            db_session,
            create_mock_plan_limit(value=limit),
            active_bots=active_bots,
            add_on_slots=add_on_slots,
        )

        assert await service.has_available_bot_slots("org_1") is expected

    async def test_unlimited_plan_has_slots(self, db_session: AsyncMock) -> None:
        service = build_service(
            db_session, create_mock_plan_limit(value=0, is_unlimited=True), active_bots=50
        )

        assert await service.has_available_bot_slots("org_1") is True

    async def test_unreachable_database_has_no_slots(self, db_session: AsyncMock) -> None:
        db_session.execute.side_effect = ConnectionRefusedError(111, "Connect call failed")

        service = UsageLimitService(db_session)

        assert await service.has_available_bot_slots("org_1") is False
        assert await service.get_bot_usage_info("org_1") == BotUsageInfo.empty()

    async def test_inactive_subscription_has_no_slots(self, db_session: AsyncMock) -> None:
        service = build_service(db_session, status=SubscriptionStatus.UNPAID)

        assert await service.has_available_bot_slots("org_1") is False

    async def test_usage_info(self, db_session: AsyncMock) -> None:
        service = build_service(
            db_session, create_mock_plan_limit(value=3), active_bots=2, add_on_slots=1
        )

        info = await service.get_bot_usage_info("org_1")

        assert info == BotUsageInfo(limit=4, usage=2, available=2, has_available=True)

    async def test_usage_info_over_limit_clamps_available(self, db_session: AsyncMock) -> None:
        service = build_service(db_session, create_mock_plan_limit(value=1), active_bots=3)

        info = await service.get_bot_usage_info("org_1")

        assert info.available == 0
        assert info.has_available is False

    async def test_usage_info_missing_subscription_is_empty(self, db_session: AsyncMock) -> None:
        service = build_service(db_session)
        service._find_subscription = AsyncMock(return_value=None)  # type: ignore[method-assign]

        assert await service.get_bot_usage_info("org_1") == BotUsageInfo.empty()


class TestPlanLimitsAndUsage:
    """Tests for reporting queries."""

    async def test_get_plan_limits(self, db_session: AsyncMock) -> None:
        limit = create_mock_plan_limit(value=25)
        feature = create_mock_feature("links")
        db_session.execute.return_value.all.return_value = [(limit, feature)]
        service = UsageLimitService(db_session)

        limits = await service.get_plan_limits(PlanType.STARTER)

        assert len(limits) == 1
        assert limits[0].feature_name == "links"
        assert limits[0].value == 25
        assert limits[0].is_unlimited is False

    async def test_organization_usage_includes_unused_features(
        self, db_session: AsyncMock
    ) -> None:
        links = create_mock_feature("links")
        agents = create_mock_feature("agents")
        usage_result = MagicMock()
        usage_result.all.return_value = [(links.id, 7)]
        features_result = MagicMock()
        features_result.scalars.return_value.all.return_value = [agents, links]
        db_session.execute = AsyncMock(side_effect=[usage_result, features_result])
        service = UsageLimitService(db_session)

        usage = await service.get_organization_usage("org_1", days=30)

        assert {u.feature_name: u.usage for u in usage} == {"agents": 0, "links": 7}
