"""
Usage Limit Service - Counter-based features and agent slots.

NO DICTIONARIES - All operations use strongly typed domain models.

Checks fail closed: a missing feature, a missing plan limit, an inactive
subscription or a store error all answer "no".

The check (has_remaining_website_links) and the append
(track_website_link_usage) are separate calls and are not made atomic;
concurrent callers can both pass the check before either appends.
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from botmeter.config import settings
from botmeter.db.models import (
    AddOn,
    AddOnSubscription,
    Bot,
    PlanFeature,
    PlanLimit,
    Subscription,
    UsageRecord,
)
from botmeter.exceptions import WriteVerificationError
from botmeter.models.api import ACTIVE_STATUSES, PlanType, SubscriptionStatus
from botmeter.models.domain import BotUsageInfo, FeatureUsage, PlanLimitData, UsageMetadata
from botmeter.observability.metrics import metrics

logger = get_logger(__name__)


class UsageLimitService:
    """Plan limit enforcement for cumulative-count features."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize usage limit service with database session."""
        self.session = session

    async def has_remaining_website_links(
        self, organization_id: str, requested_links: int = 1
    ) -> bool:
        """
        Whether requested_links more links fit within the plan limit.

        True iff current usage + requested <= limit, or the limit is unlimited.
        """
        feature_name = settings.links_feature
        try:
            feature = await self._find_feature(feature_name)
            if feature is None:
                logger.error("plan_feature_missing", feature_name=feature_name)
                return False

            subscription = await self._find_subscription(organization_id)
            if subscription is None:
                logger.warning("subscription_missing", organization_id=organization_id)
                return False

            if subscription.status not in ACTIVE_STATUSES:
                return False

            plan_limit = await self._find_plan_limit(subscription.plan_type, feature.id)
            if plan_limit is None:
                logger.error(
                    "plan_limit_missing",
                    organization_id=organization_id,
                    plan_type=subscription.plan_type.value,
                    feature_name=feature_name,
                )
                return False

            if plan_limit.is_unlimited:
                return True

            current_usage = await self._sum_usage(organization_id, feature.id)
        except Exception as e:
            logger.error(
                "website_link_check_failed", organization_id=organization_id, error=str(e)
            )
            return False

        return current_usage + requested_links <= plan_limit.value

    async def track_website_link_usage(
        self,
        organization_id: str,
        links_count: int,
        metadata: UsageMetadata | None = None,
    ) -> bool:
        """Append a usage record. Does not re-check the limit."""
        feature_name = settings.links_feature
        try:
            feature = await self._find_feature(feature_name)
            if feature is None:
                logger.error("plan_feature_missing", feature_name=feature_name)
                return False

            record = UsageRecord(
                organization_id=organization_id,
                feature_id=feature.id,
                quantity=links_count,
                metadata_json=(metadata or UsageMetadata()).to_json(),
            )
            self.session.add(record)
            await self.session.flush()

            # Verify usage record was written
            verified_record = await self.session.get(UsageRecord, record.id)
            if verified_record is None:
                raise WriteVerificationError(f"Usage record {record.id} not found after insert")

            await self.session.commit()
        except Exception as e:
            await self._rollback_quietly()
            logger.error(
                "website_link_usage_tracking_failed",
                organization_id=organization_id,
                links_count=links_count,
                error=str(e),
            )
            metrics.record_error(type(e).__name__, "track_website_link_usage")
            return False

        metrics.record_usage(feature_name, links_count)
        logger.info(
            "website_link_usage_recorded",
            organization_id=organization_id,
            links_count=links_count,
        )
        return True

    async def has_available_bot_slots(self, organization_id: str) -> bool:
        """Whether another active bot fits (plan limit plus active add-ons)."""
        feature_name = settings.agents_feature
        try:
            feature = await self._find_feature(feature_name)
            if feature is None:
                logger.error("plan_feature_missing", feature_name=feature_name)
                return False

            subscription = await self._find_subscription(organization_id)
            if subscription is None:
                logger.warning("subscription_missing", organization_id=organization_id)
                return False

            if subscription.status not in ACTIVE_STATUSES:
                return False

            plan_limit = await self._find_plan_limit(subscription.plan_type, feature.id)
            if plan_limit is None:
                logger.error(
                    "plan_limit_missing",
                    organization_id=organization_id,
                    plan_type=subscription.plan_type.value,
                    feature_name=feature_name,
                )
                return False

            if plan_limit.is_unlimited:
                return True

            active_bots = await self._count_active_bots(organization_id)
            additional_slots = await self._sum_add_on_quantity(organization_id, feature.id)
        except Exception as e:
            logger.error("bot_slot_check_failed", organization_id=organization_id, error=str(e))
            return False

        return active_bots < plan_limit.value + additional_slots

    async def get_bot_usage_info(self, organization_id: str) -> BotUsageInfo:
        """Agent slot accounting; all zeros when anything is missing."""
        try:
            feature = await self._find_feature(settings.agents_feature)
            if feature is None:
                return BotUsageInfo.empty()

            subscription = await self._find_subscription(organization_id)
            if subscription is None:
                return BotUsageInfo.empty()

            plan_limit = await self._find_plan_limit(subscription.plan_type, feature.id)
            if plan_limit is None:
                return BotUsageInfo.empty()

            active_bots = await self._count_active_bots(organization_id)
            additional_slots = await self._sum_add_on_quantity(organization_id, feature.id)
        except Exception as e:
            logger.error(
                "bot_usage_info_failed", organization_id=organization_id, error=str(e)
            )
            return BotUsageInfo.empty()

        total_limit = plan_limit.value + additional_slots
        available = max(0, total_limit - active_bots)
        return BotUsageInfo(
            limit=total_limit,
            usage=active_bots,
            available=available,
            has_available=available > 0 or plan_limit.is_unlimited,
        )

    async def get_plan_limits(self, plan_type: PlanType) -> list[PlanLimitData]:
        """All feature limits of a plan tier."""
        stmt = (
            select(PlanLimit, PlanFeature)
            .join(PlanFeature, PlanLimit.feature_id == PlanFeature.id)
            .where(PlanLimit.plan_type == plan_type)
            .order_by(PlanFeature.name)
        )
        result = await self.session.execute(stmt)
        return [
            PlanLimitData(
                feature_id=feature.id,
                feature_name=feature.name,
                display_name=feature.display_name,
                value=limit.value,
                is_unlimited=limit.is_unlimited,
            )
            for limit, feature in result.all()
        ]

    async def get_organization_usage(
        self, organization_id: str, days: int = 30
    ) -> list[FeatureUsage]:
        """Usage per feature over the trailing window, including unused features."""
        since = datetime.now(UTC) - timedelta(days=days)

        usage_stmt = (
            select(UsageRecord.feature_id, func.sum(UsageRecord.quantity))
            .where(
                UsageRecord.organization_id == organization_id,
                UsageRecord.timestamp >= since,
            )
            .group_by(UsageRecord.feature_id)
        )
        usage_result = await self.session.execute(usage_stmt)
        usage_by_feature = {feature_id: int(total or 0) for feature_id, total in usage_result.all()}

        features_result = await self.session.execute(
            select(PlanFeature).order_by(PlanFeature.name)
        )
        return [
            FeatureUsage(
                feature_id=feature.id,
                feature_name=feature.name,
                display_name=feature.display_name,
                usage=usage_by_feature.get(feature.id, 0),
            )
            for feature in features_result.scalars().all()
        ]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _find_feature(self, name: str) -> PlanFeature | None:
        """Find plan feature by unique name."""
        stmt = select(PlanFeature).where(PlanFeature.name == name)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_subscription(self, organization_id: str) -> Subscription | None:
        """Find the organization's subscription."""
        stmt = select(Subscription).where(Subscription.organization_id == organization_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_plan_limit(self, plan_type: PlanType, feature_id: str) -> PlanLimit | None:
        """Find the limit row for a plan/feature pair."""
        stmt = select(PlanLimit).where(
            PlanLimit.plan_type == plan_type,
            PlanLimit.feature_id == feature_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _sum_usage(self, organization_id: str, feature_id: str) -> int:
        """Total recorded quantity for an (organization, feature)."""
        stmt = select(func.coalesce(func.sum(UsageRecord.quantity), 0)).where(
            UsageRecord.organization_id == organization_id,
            UsageRecord.feature_id == feature_id,
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def _rollback_quietly(self) -> None:
        try:
            await self.session.rollback()
        except Exception as e:
            logger.warning("session_rollback_failed", error=str(e))

    async def _count_active_bots(self, organization_id: str) -> int:
        stmt = select(func.count(Bot.id)).where(
            Bot.organization_id == organization_id,
            Bot.is_active.is_(True),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def _sum_add_on_quantity(self, organization_id: str, feature_id: str) -> int:
        """Extra capacity from active add-ons bound to the feature."""
        stmt = (
            select(func.coalesce(func.sum(AddOnSubscription.quantity), 0))
            .join(AddOn, AddOnSubscription.add_on_id == AddOn.id)
            .where(
                AddOnSubscription.organization_id == organization_id,
                AddOnSubscription.status == SubscriptionStatus.ACTIVE,
                AddOn.feature_id == feature_id,
            )
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())
