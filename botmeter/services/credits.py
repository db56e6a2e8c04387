"""
Credit Service - Ledger-based feature accounting with write verification.

NO DICTIONARIES - All operations use strongly typed domain models.

Credit balances change only by appending a CreditTransaction and applying its
amount in the same database transaction. Plan-allocated credits are always
consumed before purchased credits; how much of the plan allocation was used
in the current period is derived from the ledger, never stored.
"""

import time
from collections.abc import Mapping
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from botmeter.config import settings
from botmeter.db.models import (
    CreditBalance,
    CreditTransaction,
    ModelCreditCost,
    PlanFeature,
    PlanLimit,
    Subscription,
)
from botmeter.exceptions import (
    DataIntegrityError,
    FeatureNotFoundError,
    InsufficientCreditsError,
    WriteVerificationError,
)
from botmeter.models.api import ErrorCode, TransactionType
from botmeter.models.domain import (
    FROM_PLAN_ALLOCATION_KEY,
    BalanceReconciliation,
    BillingPeriod,
    CreditSplit,
    CreditUsageMetadata,
    CreditUsageResult,
    GrantMetadata,
    LedgerEntry,
    LedgerMetadata,
    PlanCreditUsage,
)
from botmeter.observability.metrics import metrics

logger = get_logger(__name__)

GRANTABLE_TRANSACTION_TYPES = frozenset(
    {TransactionType.PURCHASE, TransactionType.PLAN_GRANT, TransactionType.ADJUSTMENT}
)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def split_credit_cost(cost: int, remaining_plan_credits: int) -> CreditSplit:
    """
    Divide a debit between the plan allocation and purchased credits.

    Plan credits are exhausted first; the remainder comes from purchased credits.
    """
    if cost <= 0:
        raise ValueError(f"Credit cost must be positive, got {cost}")
    from_plan = min(cost, max(0, remaining_plan_credits))
    return CreditSplit(from_plan=from_plan, from_purchased=cost - from_plan)


def current_billing_period(subscription: Subscription | None, now: datetime) -> BillingPeriod:
    """
    Billing period used to derive plan usage.

    Without a subscription the window collapses to "now", which leaves no
    plan usage to count (and no allocation to draw from).
    """
    if subscription is None:
        return BillingPeriod(start=now, end=now)
    return BillingPeriod(
        start=subscription.current_period_start, end=subscription.current_period_end
    )


class CreditService:
    """
    Credit accounting for ledger-based features (message credits).

    Write operations follow the pattern:
    1. Lock the balance row (SELECT FOR UPDATE)
    2. Append the ledger entry and apply it to the balance
    3. Flush, read back and verify
    4. Commit
    """

    def __init__(self, session: AsyncSession, feature_name: str | None = None) -> None:
        """Initialize credit service with database session."""
        self.session = session
        self.feature_name = feature_name or settings.message_credits_feature

    async def get_feature_credit_cost(self, model_id: str) -> int:
        """Credits charged per query for a model (default when unknown)."""
        try:
            stmt = (
                select(ModelCreditCost.credits_per_query)
                .where(
                    ModelCreditCost.model_name == model_id,
                    ModelCreditCost.is_active.is_(True),
                )
                .limit(1)
            )
            result = await self.session.execute(stmt)
            cost = result.scalar_one_or_none()
        except Exception as e:
            logger.warning("model_credit_cost_lookup_failed", model_id=model_id, error=str(e))
            return settings.default_credit_cost

        if cost is None:
            return settings.default_credit_cost
        return int(cost)

    async def has_enough_credits(self, organization_id: str, model_id: str) -> bool:
        """Whether the stored balance covers one unit of the model's cost."""
        cost = await self.get_feature_credit_cost(model_id)
        try:
            feature = await self._find_feature(self.feature_name)
            if feature is None:
                logger.error("plan_feature_missing", feature_name=self.feature_name)
                return False

            balance = await self._find_balance(organization_id, feature.id)
        except Exception as e:
            logger.error(
                "credit_check_failed",
                organization_id=organization_id,
                model_id=model_id,
                error=str(e),
            )
            return False

        if balance is None:
            return False
        return balance.balance >= cost

    async def process_feature_credit_usage(
        self,
        organization_id: str,
        model_id: str,
        conversation_id: str | None = None,
        bot_id: str | None = None,
        extra: Mapping[str, str] | None = None,
    ) -> CreditUsageResult:
        """
        Debit the model's cost, drawing from the plan allocation first.

        Runs under a row lock on the balance, so concurrent debits against the
        same balance serialize and can never take it below zero. Never raises:
        denials and store errors are returned as failed results.
        """
        started = time.perf_counter()
        cost = await self.get_feature_credit_cost(model_id)

        try:
            result = await self._debit(
                organization_id, model_id, cost, conversation_id, bot_id, extra or {}
            )
        except Exception as e:
            await self._rollback_quietly()
            logger.error(
                "credit_usage_failed",
                organization_id=organization_id,
                model_id=model_id,
                cost=cost,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_error(type(e).__name__, "process_feature_credit_usage")
            result = CreditUsageResult.failed(
                ErrorCode.SERVICE_UNAVAILABLE, "Failed to process credit usage", cost=cost
            )

        metrics.record_credit_usage(
            result.success, result.from_plan, result.from_purchased, time.perf_counter() - started
        )
        return result

    async def create_credit_transaction(
        self,
        organization_id: str,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        metadata: LedgerMetadata | None = None,
    ) -> LedgerEntry:
        """
        Append a ledger entry and apply it to the organization's balance.

        The balance is created on first use. This is the only writer of
        balances outside the usage debit.

        Raises:
            FeatureNotFoundError: Credit feature is not configured
            InsufficientCreditsError: A negative amount exceeds the balance
            WriteVerificationError: Write could not be read back
        """
        if amount == 0:
            raise ValueError("Ledger entries must have a non-zero amount")

        feature = await self._find_feature(self.feature_name)
        if feature is None:
            raise FeatureNotFoundError(self.feature_name)

        balance = await self._get_or_create_balance_for_update(organization_id, feature.id)

        if balance.balance + amount < 0:
            await self._rollback_quietly()
            raise InsufficientCreditsError(balance.balance, -amount)

        transaction = await self._append_transaction(
            balance, amount, transaction_type, description, metadata
        )
        await self.session.commit()

        logger.info(
            "credit_transaction_created",
            organization_id=organization_id,
            transaction_id=transaction.id,
            amount=amount,
            transaction_type=transaction_type.value,
            balance_after=transaction.balance_after,
        )

        return self._transaction_to_domain(transaction)

    async def grant_credits(
        self,
        organization_id: str,
        amount: int,
        description: str,
        transaction_type: TransactionType = TransactionType.PURCHASE,
        metadata: GrantMetadata | None = None,
    ) -> LedgerEntry:
        """Add credits (purchase, plan grant or positive adjustment)."""
        if amount <= 0:
            raise ValueError(f"Granted amount must be positive, got {amount}")
        if transaction_type not in GRANTABLE_TRANSACTION_TYPES:
            raise ValueError(f"{transaction_type.value} entries cannot be granted")

        entry = await self.create_credit_transaction(
            organization_id, amount, transaction_type, description, metadata or GrantMetadata()
        )
        metrics.record_credit_grant(transaction_type.value, amount)
        return entry

    async def get_credit_balance(self, organization_id: str) -> int:
        """Total credits available (plan + purchased); zero when none."""
        try:
            feature = await self._find_feature(self.feature_name)
            if feature is None:
                logger.error("plan_feature_missing", feature_name=self.feature_name)
                return 0
            balance = await self._find_balance(organization_id, feature.id)
        except Exception as e:
            logger.error(
                "credit_balance_lookup_failed", organization_id=organization_id, error=str(e)
            )
            return 0

        return balance.balance if balance else 0

    async def get_plan_credit_usage(self, organization_id: str) -> PlanCreditUsage:
        """
        Reconstruct the plan vs purchased split for the current period.

        Raises:
            FeatureNotFoundError: Credit feature is not configured
        """
        feature = await self._find_feature(self.feature_name)
        if feature is None:
            raise FeatureNotFoundError(self.feature_name)

        subscription = await self._find_subscription(organization_id)
        period = current_billing_period(subscription, _utc_now())
        allocation = (
            await self._get_plan_allocation(subscription, feature.id) if subscription else 0
        )

        balance = await self._find_balance(organization_id, feature.id)
        used = await self._sum_plan_usage(balance.id, period) if balance else 0

        return PlanCreditUsage(
            organization_id=organization_id,
            balance=balance.balance if balance else 0,
            plan_allocation=allocation,
            plan_credits_used=used,
            period=period,
        )

    async def reconcile_balance(self, organization_id: str) -> BalanceReconciliation:
        """
        Compare the stored balance with the sum of its ledger.

        Raises:
            FeatureNotFoundError: Credit feature is not configured
        """
        feature = await self._find_feature(self.feature_name)
        if feature is None:
            raise FeatureNotFoundError(self.feature_name)

        balance = await self._find_balance(organization_id, feature.id)
        if balance is None:
            return BalanceReconciliation(
                organization_id=organization_id,
                feature_name=self.feature_name,
                stored_balance=0,
                ledger_sum=0,
            )

        stmt = select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.balance_id == balance.id
        )
        result = await self.session.execute(stmt)
        ledger_sum = int(result.scalar_one())

        reconciliation = BalanceReconciliation(
            organization_id=organization_id,
            feature_name=self.feature_name,
            stored_balance=balance.balance,
            ledger_sum=ledger_sum,
        )
        if not reconciliation.consistent:
            logger.warning(
                "credit_balance_drift",
                organization_id=organization_id,
                balance_id=balance.id,
                stored_balance=balance.balance,
                ledger_sum=ledger_sum,
                drift=reconciliation.drift,
            )
        return reconciliation

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _debit(
        self,
        organization_id: str,
        model_id: str,
        cost: int,
        conversation_id: str | None,
        bot_id: str | None,
        extra: Mapping[str, str],
    ) -> CreditUsageResult:
        """Lock, split and append the USAGE entries for one debit."""
        feature = await self._find_feature(self.feature_name)
        if feature is None:
            logger.error("plan_feature_missing", feature_name=self.feature_name)
            return CreditUsageResult.failed(
                ErrorCode.FEATURE_NOT_CONFIGURED, "Credit feature is not configured", cost=cost
            )

        balance = await self._lock_balance_for_update(organization_id, feature.id)
        if balance is None or balance.balance < cost:
            await self._rollback_quietly()
            logger.info(
                "credit_usage_denied",
                organization_id=organization_id,
                model_id=model_id,
                cost=cost,
                balance=balance.balance if balance else 0,
            )
            return CreditUsageResult.failed(
                ErrorCode.INSUFFICIENT_CREDITS, "Insufficient credits", cost=cost
            )

        subscription = await self._find_subscription(organization_id)
        period = current_billing_period(subscription, _utc_now())
        allocation = (
            await self._get_plan_allocation(subscription, feature.id) if subscription else 0
        )
        plan_used = await self._sum_plan_usage(balance.id, period)
        split = split_credit_cost(cost, allocation - plan_used)

        description = f"Model usage: {model_id}"
        if split.from_plan > 0:
            await self._append_transaction(
                balance,
                -split.from_plan,
                TransactionType.USAGE,
                description,
                CreditUsageMetadata(
                    model_id=model_id,
                    from_plan_allocation=True,
                    conversation_id=conversation_id,
                    bot_id=bot_id,
                    extra=extra,
                ),
            )
        if split.from_purchased > 0:
            await self._append_transaction(
                balance,
                -split.from_purchased,
                TransactionType.USAGE,
                description,
                CreditUsageMetadata(
                    model_id=model_id,
                    from_plan_allocation=False,
                    conversation_id=conversation_id,
                    bot_id=bot_id,
                    extra=extra,
                ),
            )

        await self.session.commit()

        logger.info(
            "credit_usage_recorded",
            organization_id=organization_id,
            model_id=model_id,
            cost=cost,
            from_plan=split.from_plan,
            from_purchased=split.from_purchased,
            balance_after=balance.balance,
        )

        return CreditUsageResult(
            success=True,
            cost=cost,
            from_plan=split.from_plan,
            from_purchased=split.from_purchased,
            balance_after=balance.balance,
        )

    async def _append_transaction(
        self,
        balance: CreditBalance,
        amount: int,
        transaction_type: TransactionType,
        description: str,
        metadata: LedgerMetadata | None,
    ) -> CreditTransaction:
        """Append one ledger row and apply it to the (locked) balance. Does not commit."""
        balance_after = balance.balance + amount

        transaction = CreditTransaction(
            balance_id=balance.id,
            amount=amount,
            type=transaction_type,
            description=description,
            metadata_json=metadata.to_json() if metadata else None,
            balance_after=balance_after,
        )
        self.session.add(transaction)
        balance.balance = balance_after
        await self.session.flush()

        # Verify transaction was written
        verified_transaction = await self.session.get(CreditTransaction, transaction.id)
        if verified_transaction is None:
            raise WriteVerificationError(
                f"Credit transaction {transaction.id} not found after insert"
            )

        # Verify balance was updated
        verified_balance = await self.session.get(CreditBalance, balance.id)
        if verified_balance is None:
            raise WriteVerificationError(f"Credit balance {balance.id} disappeared after update")

        if verified_balance.balance != balance_after:
            raise DataIntegrityError(
                f"Balance mismatch: expected {balance_after}, got {verified_balance.balance}"
            )

        return verified_transaction

    async def _get_or_create_balance_for_update(
        self, organization_id: str, feature_id: str
    ) -> CreditBalance:
        """Lock the balance row, creating it at zero on first use."""
        balance = await self._lock_balance_for_update(organization_id, feature_id)
        if balance is not None:
            return balance

        new_balance = CreditBalance(
            organization_id=organization_id, feature_id=feature_id, balance=0
        )
        self.session.add(new_balance)
        try:
            await self.session.flush()
        except IntegrityError as e:
            # Race condition - balance created by another request
            logger.warning(
                "credit_balance_creation_conflict", organization_id=organization_id, error=str(e)
            )
            await self.session.rollback()
            balance = await self._lock_balance_for_update(organization_id, feature_id)
            if balance is None:
                raise WriteVerificationError(f"Credit balance creation failed: {str(e)}")
            return balance

        return new_balance

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

    async def _find_balance(self, organization_id: str, feature_id: str) -> CreditBalance | None:
        """Find balance without locking."""
        stmt = select(CreditBalance).where(
            CreditBalance.organization_id == organization_id,
            CreditBalance.feature_id == feature_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_balance_for_update(
        self, organization_id: str, feature_id: str
    ) -> CreditBalance | None:
        """Lock balance row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(CreditBalance)
            .where(
                CreditBalance.organization_id == organization_id,
                CreditBalance.feature_id == feature_id,
            )
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_plan_allocation(self, subscription: Subscription, feature_id: str) -> int:
        """Plan allocation for the subscription's tier (0 when no limit row)."""
        stmt = select(PlanLimit.value).where(
            PlanLimit.plan_type == subscription.plan_type,
            PlanLimit.feature_id == feature_id,
        )
        result = await self.session.execute(stmt)
        value = result.scalar_one_or_none()
        return int(value) if value is not None else 0

    async def _sum_plan_usage(self, balance_id: str, period: BillingPeriod) -> int:
        """Credits drawn from the plan allocation within the period."""
        stmt = select(func.coalesce(func.sum(func.abs(CreditTransaction.amount)), 0)).where(
            CreditTransaction.balance_id == balance_id,
            CreditTransaction.type == TransactionType.USAGE,
            CreditTransaction.created_at >= period.start,
            CreditTransaction.created_at <= period.end,
            CreditTransaction.metadata_json[FROM_PLAN_ALLOCATION_KEY].as_boolean().is_(True),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def _rollback_quietly(self) -> None:
        try:
            await self.session.rollback()
        except Exception as e:
            logger.warning("session_rollback_failed", error=str(e))

    def _transaction_to_domain(self, transaction: CreditTransaction) -> LedgerEntry:
        """Convert ORM transaction to domain model."""
        return LedgerEntry(
            transaction_id=transaction.id,
            balance_id=transaction.balance_id,
            amount=transaction.amount,
            transaction_type=TransactionType(transaction.type),
            description=transaction.description,
            balance_after=transaction.balance_after,
            created_at=transaction.created_at,
        )
