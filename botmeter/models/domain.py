"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Metadata that has to land in a JSONB column or a key-value entry is converted
at the boundary through to_json()/from_json().
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from botmeter.models.api import ErrorCode, TransactionType, TriggerType

# JSON key that marks a USAGE entry as drawn from the plan allocation.
FROM_PLAN_ALLOCATION_KEY = "fromPlanAllocation"


@dataclass(frozen=True)
class BillingPeriod:
    """Inclusive window used to derive per-period plan usage."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        """Validate period bounds."""
        if self.end < self.start:
            raise ValueError(f"Billing period ends before it starts: {self.start} > {self.end}")


# ============================================================================
# Ledger / Usage Metadata
# ============================================================================


@dataclass(frozen=True)
class CreditUsageMetadata:
    """Metadata of a USAGE ledger entry."""

    model_id: str
    from_plan_allocation: bool
    conversation_id: str | None = None
    bot_id: str | None = None
    extra: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate usage metadata."""
        if not self.model_id:
            raise ValueError("model_id cannot be empty")

    def to_json(self) -> dict[str, Any]:
        """Serialize for the credit_transactions.metadata column."""
        data: dict[str, Any] = {
            "kind": "credit_usage",
            "modelId": self.model_id,
            FROM_PLAN_ALLOCATION_KEY: self.from_plan_allocation,
        }
        if self.conversation_id is not None:
            data["conversationId"] = self.conversation_id
        if self.bot_id is not None:
            data["botId"] = self.bot_id
        if self.extra:
            data["extra"] = dict(self.extra)
        return data


@dataclass(frozen=True)
class GrantMetadata:
    """Metadata of a PURCHASE / PLAN_GRANT / ADJUSTMENT ledger entry."""

    external_transaction_id: str | None = None
    granted_by: str | None = None

    def to_json(self) -> dict[str, Any]:
        """Serialize for the credit_transactions.metadata column."""
        data: dict[str, Any] = {"kind": "grant"}
        if self.external_transaction_id is not None:
            data["externalTransactionId"] = self.external_transaction_id
        if self.granted_by is not None:
            data["grantedBy"] = self.granted_by
        return data


LedgerMetadata = CreditUsageMetadata | GrantMetadata


@dataclass(frozen=True)
class UsageMetadata:
    """Metadata of a counter-feature usage record."""

    source_url: str | None = None
    resource_id: str | None = None
    extra: Mapping[str, str] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        """Serialize for the usage_records.metadata column."""
        data: dict[str, Any] = {"kind": "usage"}
        if self.source_url is not None:
            data["sourceUrl"] = self.source_url
        if self.resource_id is not None:
            data["resourceId"] = self.resource_id
        if self.extra:
            data["extra"] = dict(self.extra)
        return data


# ============================================================================
# Accounting Results
# ============================================================================


@dataclass(frozen=True)
class CreditSplit:
    """How a debit is divided between plan allocation and purchased credits."""

    from_plan: int
    from_purchased: int

    @property
    def total(self) -> int:
        return self.from_plan + self.from_purchased


@dataclass(frozen=True)
class CreditUsageResult:
    """Outcome of a credit debit attempt."""

    success: bool
    cost: int = 0
    from_plan: int = 0
    from_purchased: int = 0
    balance_after: int | None = None
    code: ErrorCode | None = None
    message: str | None = None

    @classmethod
    def failed(cls, code: ErrorCode, message: str, cost: int = 0) -> "CreditUsageResult":
        return cls(success=False, cost=cost, code=code, message=message)


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable credit transaction after persistence."""

    transaction_id: str
    balance_id: str
    amount: int
    transaction_type: TransactionType
    description: str | None
    balance_after: int
    created_at: datetime


@dataclass(frozen=True)
class PlanCreditUsage:
    """Plan vs purchased split reconstructed from the ledger."""

    organization_id: str
    balance: int
    plan_allocation: int
    plan_credits_used: int
    period: BillingPeriod

    @property
    def remaining_plan_credits(self) -> int:
        return max(0, self.plan_allocation - self.plan_credits_used)

    @property
    def purchased_credits(self) -> int:
        return max(0, self.balance - self.remaining_plan_credits)


@dataclass(frozen=True)
class BalanceReconciliation:
    """Stored balance compared with the sum of its ledger."""

    organization_id: str
    feature_name: str
    stored_balance: int
    ledger_sum: int

    @property
    def consistent(self) -> bool:
        return self.stored_balance == self.ledger_sum

    @property
    def drift(self) -> int:
        return self.stored_balance - self.ledger_sum


@dataclass(frozen=True)
class PlanLimitData:
    """Plan limit joined with its feature."""

    feature_id: str
    feature_name: str
    display_name: str
    value: int
    is_unlimited: bool


@dataclass(frozen=True)
class FeatureUsage:
    """Usage of one feature over a trailing window."""

    feature_id: str
    feature_name: str
    display_name: str
    usage: int


@dataclass(frozen=True)
class BotUsageInfo:
    """Agent slot accounting."""

    limit: int
    usage: int
    available: int
    has_available: bool

    @classmethod
    def empty(cls) -> "BotUsageInfo":
        return cls(limit=0, usage=0, available=0, has_available=False)


@dataclass(frozen=True)
class AccessDenied:
    """Gate denial - a value, not an exception."""

    error: str
    code: ErrorCode
    redirect_url: str | None = None
    success: bool = field(default=False, init=False)


# ============================================================================
# Scheduler Models
# ============================================================================


@dataclass(frozen=True)
class ScheduleMetadata:
    """Caller metadata attached to a scheduled task."""

    contact_id: str | None = None
    location_id: str | None = None
    provider: str | None = None
    trigger_type: TriggerType | None = None
    situation_id: str | None = None

    def index_key_parts(self) -> tuple[str, str, str] | None:
        """Composite lookup key, only when all three parts are present."""
        if self.contact_id and self.provider and self.trigger_type:
            return (self.contact_id, self.provider, self.trigger_type.value)
        return None

    def to_json(self) -> dict[str, Any]:
        return {
            "contactId": self.contact_id,
            "locationId": self.location_id,
            "provider": self.provider,
            "triggerType": self.trigger_type.value if self.trigger_type else None,
            "situationId": self.situation_id,
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "ScheduleMetadata":
        trigger_type = data.get("triggerType")
        return cls(
            contact_id=data.get("contactId"),
            location_id=data.get("locationId"),
            provider=data.get("provider"),
            trigger_type=TriggerType(trigger_type) if trigger_type else None,
            situation_id=data.get("situationId"),
        )


@dataclass(frozen=True)
class ScheduleTask:
    """Request to run a named task later."""

    task_id: str
    delay: str | datetime
    payload: Mapping[str, Any] = field(default_factory=dict)
    metadata: ScheduleMetadata | None = None

    def __post_init__(self) -> None:
        """Validate task identity."""
        if not self.task_id:
            raise ValueError("task_id cannot be empty")


@dataclass(frozen=True)
class ScheduledTaskResult:
    """Public view of a schedule."""

    schedule_id: str
    scheduled_at: datetime
    task_id: str
    metadata: ScheduleMetadata | None = None


@dataclass(frozen=True)
class CancelScheduleParams:
    """Cancel by schedule id, or by (contact, provider, trigger type)."""

    schedule_id: str | None = None
    contact_id: str | None = None
    provider: str | None = None
    trigger_type: TriggerType | None = None
    situation_id: str | None = None

    def index_key_parts(self) -> tuple[str, str, str] | None:
        if self.contact_id and self.provider and self.trigger_type:
            return (self.contact_id, self.provider, self.trigger_type.value)
        return None


@dataclass(frozen=True)
class ScheduleInfo:
    """Key-value bookkeeping record of one schedule."""

    schedule_id: str
    task_id: str
    trigger_handle: str
    scheduled_at: datetime
    metadata: ScheduleMetadata | None = None
    cancelled: bool = False

    def to_json(self) -> str:
        """Serialize for the key-value store."""
        return json.dumps(
            {
                "scheduleId": self.schedule_id,
                "taskId": self.task_id,
                "triggerHandle": self.trigger_handle,
                "scheduledAt": self.scheduled_at.isoformat(),
                "metadata": self.metadata.to_json() if self.metadata else None,
                "cancelled": self.cancelled,
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ScheduleInfo":
        """Parse a stored record; any malformed shape raises ValueError or KeyError."""
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"Schedule record must be a JSON object, got {type(data).__name__}")
        metadata = data.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValueError("Schedule metadata must be a JSON object")
        try:
            return cls(
                schedule_id=data["scheduleId"],
                task_id=data["taskId"],
                trigger_handle=data["triggerHandle"],
                scheduled_at=datetime.fromisoformat(data["scheduledAt"]),
                metadata=ScheduleMetadata.from_json(metadata) if metadata else None,
                cancelled=data.get("cancelled") is True,
            )
        except TypeError as e:
            raise ValueError(f"Malformed schedule record: {e}") from e

    def to_result(self) -> ScheduledTaskResult:
        return ScheduledTaskResult(
            schedule_id=self.schedule_id,
            scheduled_at=self.scheduled_at,
            task_id=self.task_id,
            metadata=self.metadata,
        )


# ============================================================================
# Re-engagement Models
# ============================================================================


@dataclass(frozen=True)
class ContactInfo:
    """Messaging-provider contact, reduced to what re-engagement needs."""

    contact_id: str
    tags: tuple[str, ...] = ()

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags


@dataclass(frozen=True)
class SentMessage:
    """Provider acknowledgement of a sent message."""

    message_id: str | None
    conversation_id: str | None = None


@dataclass(frozen=True)
class TaskOutcome:
    """Result of one scheduled task execution."""

    success: bool
    skipped: bool = False
    reason: str | None = None
    message_id: str | None = None
    channel: str | None = None
    error: str | None = None

    @classmethod
    def skip(cls, reason: str) -> "TaskOutcome":
        return cls(success=True, skipped=True, reason=reason)

    @classmethod
    def fail(cls, error: str) -> "TaskOutcome":
        return cls(success=False, error=error)
