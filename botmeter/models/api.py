"""
API Models - Enumerations and Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration (owned by billing webhooks)."""

    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    UNPAID = "UNPAID"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    PENDING = "PENDING"
    PAUSED = "PAUSED"


class PlanType(str, Enum):
    """Plan tier enumeration."""

    FREE = "FREE"
    HOBBY = "HOBBY"
    STARTER = "STARTER"
    STANDARD = "STANDARD"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"
    CUSTOM = "CUSTOM"


class BillingCycle(str, Enum):
    """Billing cycle enumeration."""

    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class TransactionType(str, Enum):
    """Credit ledger entry type."""

    PURCHASE = "PURCHASE"
    USAGE = "USAGE"
    ADJUSTMENT = "ADJUSTMENT"
    EXPIRATION = "EXPIRATION"
    PLAN_GRANT = "PLAN_GRANT"


class TriggerType(str, Enum):
    """Business trigger that caused a deferred task."""

    NO_SHOW = "no_show"
    UNRESPONSIVE_MESSAGE = "unresponsive_message"
    FOLLOW_UP = "follow_up"


class SchedulerProvider(str, Enum):
    """Durable task backings a scheduler can be built on."""

    DRAMATIQ = "dramatiq"
    APSCHEDULER = "apscheduler"
    CELERY = "celery"


class ErrorCode(str, Enum):
    """Machine-readable failure codes shared by gates and the accounting engine."""

    SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"
    WEBSITE_LINK_LIMIT_EXCEEDED = "WEBSITE_LINK_LIMIT_EXCEEDED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    AGENT_LIMIT_EXCEEDED = "AGENT_LIMIT_EXCEEDED"
    FEATURE_NOT_CONFIGURED = "FEATURE_NOT_CONFIGURED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


ACTIVE_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
)


# ============================================================================
# Failure Model
# ============================================================================


class ErrorResponse(BaseModel):
    """Uniform failure body - callers branch on success and code."""

    success: bool = False
    code: ErrorCode
    error: str
    redirect_url: str | None = None


# ============================================================================
# Credit Models
# ============================================================================


class CreditUsageRequest(BaseModel):
    """POST /v1/organizations/{organization_id}/credits/usage request body."""

    model_id: str = Field(..., min_length=1, max_length=255)
    conversation_id: str | None = Field(None, max_length=255)
    bot_id: str | None = Field(None, max_length=255)
    extra: dict[str, str] = Field(default_factory=dict)


class CreditUsageResponse(BaseModel):
    """Successful credit debit."""

    success: bool = True
    cost: int
    from_plan: int
    from_purchased: int
    balance_after: int


class CreditGrantRequest(BaseModel):
    """POST /v1/organizations/{organization_id}/credits/grants request body."""

    amount: int = Field(..., gt=0)
    transaction_type: TransactionType = TransactionType.PURCHASE
    description: str = Field(..., min_length=1, max_length=500)

    @field_validator("transaction_type")
    @classmethod
    def validate_grant_type(cls, v: TransactionType) -> TransactionType:
        """Usage and expiration entries are written by the engine, never granted."""
        if v in (TransactionType.USAGE, TransactionType.EXPIRATION):
            raise ValueError(f"{v.value} cannot be granted")
        return v


class CreditGrantResponse(BaseModel):
    """Ledger entry created by a grant."""

    transaction_id: str
    amount: int
    transaction_type: TransactionType
    balance_after: int
    created_at: datetime


class CreditSummaryResponse(BaseModel):
    """GET /v1/organizations/{organization_id}/credits response."""

    organization_id: str
    balance: int
    plan_allocation: int
    plan_credits_used: int
    remaining_plan_credits: int
    purchased_credits: int
    period_start: datetime
    period_end: datetime


# ============================================================================
# Counter Feature Models
# ============================================================================


class WebsiteLinkUsageRequest(BaseModel):
    """POST /v1/organizations/{organization_id}/website-links/usage request body."""

    links: int = Field(..., gt=0)
    source_url: str | None = Field(None, max_length=2048)
    resource_id: str | None = Field(None, max_length=255)
    extra: dict[str, str] = Field(default_factory=dict)


class WebsiteLinkUsageResponse(BaseModel):
    """Website links were admitted and recorded."""

    success: bool = True
    links: int


class BotSlotsResponse(BaseModel):
    """GET /v1/organizations/{organization_id}/bots/slots response."""

    limit: int
    usage: int
    available: int
    has_available: bool


# ============================================================================
# Scheduler Models
# ============================================================================


class ScheduleMetadataModel(BaseModel):
    """Metadata attached to a scheduled task."""

    contact_id: str | None = Field(None, max_length=255)
    location_id: str | None = Field(None, max_length=255)
    provider: str | None = Field(None, max_length=100)
    trigger_type: TriggerType | None = None
    situation_id: str | None = Field(None, max_length=255)


class ScheduleTaskRequest(BaseModel):
    """POST /v1/schedules request body."""

    task_id: str = Field(..., min_length=1, max_length=255)
    delay: str | None = Field(None, pattern=r"^[0-9]+[smhd]$")
    run_at: datetime | None = None
    payload: dict[str, str | int | float | bool | None] = Field(default_factory=dict)
    metadata: ScheduleMetadataModel | None = None

    @field_validator("run_at")
    @classmethod
    def validate_run_at(cls, v: datetime | None) -> datetime | None:
        """Absolute times must carry a timezone."""
        if v is not None and v.tzinfo is None:
            raise ValueError("run_at must be timezone-aware")
        return v


class ScheduledTaskResponse(BaseModel):
    """A pending schedule."""

    schedule_id: str
    scheduled_at: datetime
    task_id: str
    metadata: ScheduleMetadataModel | None = None


class ScheduleListResponse(BaseModel):
    """GET /v1/schedules response."""

    schedules: list[ScheduledTaskResponse]
    total: int


class CancelScheduleRequest(BaseModel):
    """POST /v1/schedules/cancel request body."""

    schedule_id: str | None = Field(None, max_length=255)
    contact_id: str | None = Field(None, max_length=255)
    provider: str | None = Field(None, max_length=100)
    trigger_type: TriggerType | None = None


class CancelScheduleResponse(BaseModel):
    """Result of a cancellation request."""

    cancelled: bool


class ScheduleStatusResponse(BaseModel):
    """GET /v1/schedules/{schedule_id}/cancelled response."""

    schedule_id: str
    cancelled: bool


# ============================================================================
# Health
# ============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    redis: str
    timestamp: str
