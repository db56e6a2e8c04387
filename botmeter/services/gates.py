"""
Subscription Gate - Guarded execution of metered work.

Denials are returned as AccessDenied values and never raised. When every
check passes the operation's own result is returned unchanged, whatever
its shape.
"""

from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from botmeter.config import settings
from botmeter.db.models import Subscription
from botmeter.models.api import ACTIVE_STATUSES, ErrorCode, SubscriptionStatus
from botmeter.models.domain import AccessDenied
from botmeter.observability.metrics import metrics
from botmeter.services.credits import CreditService
from botmeter.services.limits import UsageLimitService

logger = get_logger(__name__)

T = TypeVar("T")

SUBSCRIPTION_DENIED_MESSAGE = "Your subscription requires attention"
WEBSITE_LINK_LIMIT_MESSAGE = "Website link limit exceeded"
INSUFFICIENT_CREDITS_MESSAGE = "Insufficient credits"
AGENT_LIMIT_MESSAGE = "Agent limit reached"


class SubscriptionGate:
    """
    Subscription status gate and its feature-specific compositions.

    Composite checks run the subscription gate first (ACTIVE/TRIALING), then
    the feature predicate, then the operation. The subscription denial and
    each feature denial carry distinct codes.
    """

    def __init__(
        self,
        session: AsyncSession,
        limits: UsageLimitService | None = None,
        credits: CreditService | None = None,
        billing_url_template: str | None = None,
    ) -> None:
        """Initialize gate with database session and accounting services."""
        self.session = session
        self.limits = limits or UsageLimitService(session)
        self.credits = credits or CreditService(session)
        self.billing_url_template = billing_url_template or settings.billing_url_template

    def billing_url(self, organization_id: str) -> str:
        return self.billing_url_template.format(organization_id=organization_id)

    async def with_subscription_check(
        self,
        organization_id: str,
        operation: Callable[[], Awaitable[T]],
        allow_statuses: Iterable[SubscriptionStatus] | None = None,
    ) -> T | AccessDenied:
        """
        Run operation only if the subscription status is allowed.

        A missing subscription or an unreadable one is denied like a
        disallowed status.
        """
        allowed = frozenset(allow_statuses) if allow_statuses is not None else ACTIVE_STATUSES

        try:
            status = await self._find_subscription_status(organization_id)
        except Exception as e:
            logger.error(
                "subscription_lookup_failed", organization_id=organization_id, error=str(e)
            )
            metrics.record_error(type(e).__name__, "with_subscription_check")
            status = None

        if status is None or status not in allowed:
            logger.info(
                "subscription_gate_denied",
                organization_id=organization_id,
                status=status.value if status else None,
            )
            metrics.record_gate_decision("subscription", ErrorCode.SUBSCRIPTION_REQUIRED.value)
            return AccessDenied(
                error=SUBSCRIPTION_DENIED_MESSAGE,
                code=ErrorCode.SUBSCRIPTION_REQUIRED,
                redirect_url=self.billing_url(organization_id),
            )

        metrics.record_gate_decision("subscription", "allowed")
        return await operation()

    async def with_website_link_check(
        self,
        organization_id: str,
        requested_links: int,
        operation: Callable[[], Awaitable[T]],
    ) -> T | AccessDenied:
        """Subscription gate plus the website link limit."""

        async def guarded() -> T | AccessDenied:
            if not await self.limits.has_remaining_website_links(organization_id, requested_links):
                metrics.record_gate_decision(
                    "website_links", ErrorCode.WEBSITE_LINK_LIMIT_EXCEEDED.value
                )
                return AccessDenied(
                    error=WEBSITE_LINK_LIMIT_MESSAGE,
                    code=ErrorCode.WEBSITE_LINK_LIMIT_EXCEEDED,
                    redirect_url=self.billing_url(organization_id),
                )
            metrics.record_gate_decision("website_links", "allowed")
            return await operation()

        return await self.with_subscription_check(organization_id, guarded, ACTIVE_STATUSES)

    async def with_credit_check(
        self,
        organization_id: str,
        model_id: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T | AccessDenied:
        """Subscription gate plus a balance check for one unit of the model's cost."""

        async def guarded() -> T | AccessDenied:
            if not await self.credits.has_enough_credits(organization_id, model_id):
                metrics.record_gate_decision("credits", ErrorCode.INSUFFICIENT_CREDITS.value)
                return AccessDenied(
                    error=INSUFFICIENT_CREDITS_MESSAGE,
                    code=ErrorCode.INSUFFICIENT_CREDITS,
                    redirect_url=self.billing_url(organization_id),
                )
            metrics.record_gate_decision("credits", "allowed")
            return await operation()

        return await self.with_subscription_check(organization_id, guarded, ACTIVE_STATUSES)

    async def with_bot_slot_check(
        self,
        organization_id: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T | AccessDenied:
        """Subscription gate plus a free agent slot."""

        async def guarded() -> T | AccessDenied:
            if not await self.limits.has_available_bot_slots(organization_id):
                metrics.record_gate_decision("agents", ErrorCode.AGENT_LIMIT_EXCEEDED.value)
                return AccessDenied(
                    error=AGENT_LIMIT_MESSAGE,
                    code=ErrorCode.AGENT_LIMIT_EXCEEDED,
                    redirect_url=self.billing_url(organization_id),
                )
            metrics.record_gate_decision("agents", "allowed")
            return await operation()

        return await self.with_subscription_check(organization_id, guarded, ACTIVE_STATUSES)

    async def _find_subscription_status(self, organization_id: str) -> SubscriptionStatus | None:
        """Load only the subscription status."""
        stmt = select(Subscription.status).where(Subscription.organization_id == organization_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
