"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations. The only JSONB
columns hold ledger/usage metadata written through the typed metadata
models in botmeter.models.domain.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from botmeter.models.api import BillingCycle, PlanType, SubscriptionStatus, TransactionType


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def new_id() -> str:
    """Generate a primary key."""
    return uuid4().hex


def _enum_column(enum_cls: type[Enum], name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda x: [e.value for e in x],
    )


class Organization(Base):
    """
    ORM model for organizations table.

    Tenant root. Lifecycle is owned outside this service.
    """

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    subscription: Mapped["Subscription | None"] = relationship(
        back_populates="organization", uselist=False
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Organization(id={self.id}, slug={self.slug})>"


class Subscription(Base):
    """
    ORM model for subscriptions table.

    One per organization. Written by billing webhooks, read here.
    """

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )

    plan_type: Mapped[PlanType] = mapped_column(_enum_column(PlanType, "plan_type"), nullable=False)
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus, "subscription_status"),
        nullable=False,
        default=SubscriptionStatus.TRIALING,
    )
    billing_cycle: Mapped[BillingCycle] = mapped_column(
        _enum_column(BillingCycle, "billing_cycle"),
        nullable=False,
        default=BillingCycle.MONTHLY,
    )

    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Payment provider reference
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    organization: Mapped[Organization] = relationship(back_populates="subscription")

    __table_args__ = (
        UniqueConstraint("organization_id", name="uq_subscription_organization"),
        CheckConstraint(
            "current_period_end >= current_period_start", name="ck_subscription_period_order"
        ),
        Index("idx_subscriptions_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(id={self.id}, organization_id={self.organization_id}, "
            f"plan={self.plan_type}, status={self.status})>"
        )


class PlanFeature(Base):
    """
    ORM model for plan_features table.

    Static reference data: one row per consumable resource type.
    """

    __tablename__ = "plan_features"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    unit_label: Mapped[str | None] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    plan_limits: Mapped[list["PlanLimit"]] = relationship(back_populates="feature")

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<PlanFeature(id={self.id}, name={self.name})>"


class PlanLimit(Base):
    """
    ORM model for plan_limits table.

    Exactly one row per (plan_type, feature_id).
    """

    __tablename__ = "plan_limits"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    plan_type: Mapped[PlanType] = mapped_column(_enum_column(PlanType, "plan_type"), nullable=False)
    feature_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("plan_features.id"), nullable=False
    )
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_unlimited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    feature: Mapped[PlanFeature] = relationship(back_populates="plan_limits")

    __table_args__ = (
        UniqueConstraint("plan_type", "feature_id", name="uq_plan_limit_plan_feature"),
        CheckConstraint("value >= 0", name="ck_plan_limit_value_non_negative"),
        Index("idx_plan_limits_feature_id", "feature_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PlanLimit(plan={self.plan_type}, feature_id={self.feature_id}, "
            f"value={self.value}, unlimited={self.is_unlimited})>"
        )


class CreditBalance(Base):
    """
    ORM model for credit_balances table.

    Running total per (organization, feature). Only changed together with
    a CreditTransaction append.
    """

    __tablename__ = "credit_balances"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    feature_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("plan_features.id"), nullable=False
    )
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "feature_id", name="uq_credit_balance_org_feature"),
        CheckConstraint("balance >= 0", name="ck_credit_balance_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditBalance(id={self.id}, organization_id={self.organization_id}, "
            f"balance={self.balance})>"
        )


class CreditTransaction(Base):
    """
    ORM model for credit_transactions table.

    Append-only ledger. Negative amounts are consumption, positive are grants.
    """

    __tablename__ = "credit_transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    balance_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("credit_balances.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        _enum_column(TransactionType, "transaction_type"), nullable=False
    )
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB, nullable=True)

    # Balance snapshot after this entry (denormalized for auditing)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount <> 0", name="ck_credit_transaction_amount_non_zero"),
        Index("idx_credit_transactions_balance_created", "balance_id", "created_at"),
        Index("idx_credit_transactions_type", "type"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditTransaction(id={self.id}, balance_id={self.balance_id}, "
            f"amount={self.amount}, type={self.type})>"
        )


class UsageRecord(Base):
    """
    ORM model for usage_records table.

    Cumulative-count features (website links). Never mutated.
    """

    __tablename__ = "usage_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    feature_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("plan_features.id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_usage_record_quantity_positive"),
        Index("idx_usage_records_org_feature", "organization_id", "feature_id"),
        Index("idx_usage_records_timestamp", "timestamp"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UsageRecord(id={self.id}, organization_id={self.organization_id}, "
            f"quantity={self.quantity})>"
        )


class ModelCreditCost(Base):
    """ORM model for model_credit_costs table."""

    __tablename__ = "model_credit_costs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    model_name: Mapped[str] = mapped_column(String(255), nullable=False)
    credits_per_query: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("credits_per_query > 0", name="ck_model_credit_cost_positive"),
        Index("idx_model_credit_costs_model_name", "model_name"),
    )


class AddOn(Base):
    """ORM model for add_ons table - purchasable extra capacity for a feature."""

    __tablename__ = "add_ons"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    feature_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("plan_features.id"), nullable=False
    )
    min_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)


class AddOnSubscription(Base):
    """ORM model for add_on_subscriptions table."""

    __tablename__ = "add_on_subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    add_on_id: Mapped[str] = mapped_column(String(64), ForeignKey("add_ons.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus, "subscription_status"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
    )

    add_on: Mapped[AddOn] = relationship()

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_add_on_subscription_quantity_positive"),
        Index("idx_add_on_subscriptions_org_status", "organization_id", "status"),
    )


class Bot(Base):
    """ORM model for bots table - only the columns agent slot counting needs."""

    __tablename__ = "bots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (Index("idx_bots_org_active", "organization_id", "is_active"),)
