"""
API Routes - FastAPI endpoints for metering and scheduling.

NO DICTIONARIES - All requests/responses use Pydantic models.

Business denials are answered with an ErrorResponse body carrying
success=False, a machine-readable code and, for gate denials, a redirect URL.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from botmeter.api.dependencies import (
    get_credit_service,
    get_gate,
    get_limit_service,
    get_scheduler,
    verify_api_key,
)
from botmeter.db.session import get_read_db
from botmeter.exceptions import (
    DataIntegrityError,
    FeatureNotFoundError,
    InvalidDelayError,
    SchedulingError,
    WriteVerificationError,
)
from botmeter.models.api import (
    BotSlotsResponse,
    CancelScheduleRequest,
    CancelScheduleResponse,
    CreditGrantRequest,
    CreditGrantResponse,
    CreditSummaryResponse,
    CreditUsageRequest,
    CreditUsageResponse,
    ErrorCode,
    ErrorResponse,
    HealthResponse,
    ScheduledTaskResponse,
    ScheduleListResponse,
    ScheduleMetadataModel,
    ScheduleStatusResponse,
    ScheduleTaskRequest,
    WebsiteLinkUsageRequest,
    WebsiteLinkUsageResponse,
)
from botmeter.models.domain import (
    AccessDenied,
    CancelScheduleParams,
    CreditUsageResult,
    ScheduledTaskResult,
    ScheduleMetadata,
    ScheduleTask,
    UsageMetadata,
)
from botmeter.scheduler.base import SchedulerService
from botmeter.services.credits import CreditService
from botmeter.services.gates import SubscriptionGate
from botmeter.services.limits import UsageLimitService

router = APIRouter()

ERROR_STATUS_CODES: dict[ErrorCode, int] = {
    ErrorCode.SUBSCRIPTION_REQUIRED: status.HTTP_403_FORBIDDEN,
    ErrorCode.WEBSITE_LINK_LIMIT_EXCEEDED: status.HTTP_403_FORBIDDEN,
    ErrorCode.AGENT_LIMIT_EXCEEDED: status.HTTP_403_FORBIDDEN,
    ErrorCode.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.FEATURE_NOT_CONFIGURED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.SERVICE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}

DENIAL_RESPONSES = {
    status.HTTP_402_PAYMENT_REQUIRED: {"model": ErrorResponse},
    status.HTTP_403_FORBIDDEN: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def error_response(code: ErrorCode, error: str, redirect_url: str | None = None) -> JSONResponse:
    """Uniform failure body with the status code matching the error code."""
    body = ErrorResponse(code=code, error=error, redirect_url=redirect_url)
    return JSONResponse(status_code=ERROR_STATUS_CODES[code], content=body.model_dump(mode="json"))


def denial_response(denied: AccessDenied) -> JSONResponse:
    return error_response(denied.code, denied.error, denied.redirect_url)


def _metadata_to_domain(model: ScheduleMetadataModel | None) -> ScheduleMetadata | None:
    if model is None:
        return None
    return ScheduleMetadata(
        contact_id=model.contact_id,
        location_id=model.location_id,
        provider=model.provider,
        trigger_type=model.trigger_type,
        situation_id=model.situation_id,
    )


def _schedule_to_response(result: ScheduledTaskResult) -> ScheduledTaskResponse:
    metadata = result.metadata
    return ScheduledTaskResponse(
        schedule_id=result.schedule_id,
        scheduled_at=result.scheduled_at,
        task_id=result.task_id,
        metadata=(
            ScheduleMetadataModel(
                contact_id=metadata.contact_id,
                location_id=metadata.location_id,
                provider=metadata.provider,
                trigger_type=metadata.trigger_type,
                situation_id=metadata.situation_id,
            )
            if metadata
            else None
        ),
    )


# =============================================================================
# Credits
# =============================================================================


@router.post(
    "/v1/organizations/{organization_id}/credits/usage",
    response_model=CreditUsageResponse,
    responses=DENIAL_RESPONSES,
    dependencies=[Depends(verify_api_key)],
)
async def record_credit_usage(
    organization_id: str,
    request: CreditUsageRequest,
    gate: SubscriptionGate = Depends(get_gate),
    credits: CreditService = Depends(get_credit_service),
) -> CreditUsageResponse | JSONResponse:
    """
    Debit credits for one model query.

    Subscription gate first, then the plan-first debit under a balance lock.
    """

    async def debit() -> CreditUsageResult:
        return await credits.process_feature_credit_usage(
            organization_id,
            request.model_id,
            conversation_id=request.conversation_id,
            bot_id=request.bot_id,
            extra=request.extra,
        )

    result = await gate.with_subscription_check(organization_id, debit)

    if isinstance(result, AccessDenied):
        return denial_response(result)

    if not result.success or result.balance_after is None:
        return error_response(
            result.code or ErrorCode.SERVICE_UNAVAILABLE,
            result.message or "Failed to process credit usage",
            gate.billing_url(organization_id)
            if result.code == ErrorCode.INSUFFICIENT_CREDITS
            else None,
        )

    return CreditUsageResponse(
        cost=result.cost,
        from_plan=result.from_plan,
        from_purchased=result.from_purchased,
        balance_after=result.balance_after,
    )


@router.get(
    "/v1/organizations/{organization_id}/credits",
    response_model=CreditSummaryResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_credit_summary(
    organization_id: str,
    credits: CreditService = Depends(get_credit_service),
) -> CreditSummaryResponse:
    """Balance with its plan / purchased split for the current period."""
    try:
        usage = await credits.get_plan_credit_usage(organization_id)
    except FeatureNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Credit feature is not configured",
        ) from exc
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Credit store unavailable",
        ) from exc

    return CreditSummaryResponse(
        organization_id=organization_id,
        balance=usage.balance,
        plan_allocation=usage.plan_allocation,
        plan_credits_used=usage.plan_credits_used,
        remaining_plan_credits=usage.remaining_plan_credits,
        purchased_credits=usage.purchased_credits,
        period_start=usage.period.start,
        period_end=usage.period.end,
    )


@router.post(
    "/v1/organizations/{organization_id}/credits/grants",
    response_model=CreditGrantResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def grant_credits(
    organization_id: str,
    request: CreditGrantRequest,
    credits: CreditService = Depends(get_credit_service),
) -> CreditGrantResponse:
    """
    Add credits to an organization's balance.

    Written by billing collaborators (purchases, plan renewals, adjustments).
    """
    try:
        entry = await credits.grant_credits(
            organization_id,
            request.amount,
            request.description,
            transaction_type=request.transaction_type,
        )
    except FeatureNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Credit feature is not configured",
        ) from exc
    except (WriteVerificationError, DataIntegrityError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return CreditGrantResponse(
        transaction_id=entry.transaction_id,
        amount=entry.amount,
        transaction_type=entry.transaction_type,
        balance_after=entry.balance_after,
        created_at=entry.created_at,
    )


# =============================================================================
# Counter Features
# =============================================================================


@router.post(
    "/v1/organizations/{organization_id}/website-links/usage",
    response_model=WebsiteLinkUsageResponse,
    responses=DENIAL_RESPONSES,
    dependencies=[Depends(verify_api_key)],
)
async def record_website_link_usage(
    organization_id: str,
    request: WebsiteLinkUsageRequest,
    gate: SubscriptionGate = Depends(get_gate),
    limits: UsageLimitService = Depends(get_limit_service),
) -> WebsiteLinkUsageResponse | JSONResponse:
    """Admit and record crawled website links against the plan limit."""

    async def track() -> bool:
        return await limits.track_website_link_usage(
            organization_id,
            request.links,
            UsageMetadata(
                source_url=request.source_url,
                resource_id=request.resource_id,
                extra=request.extra,
            ),
        )

    result = await gate.with_website_link_check(organization_id, request.links, track)

    if isinstance(result, AccessDenied):
        return denial_response(result)

    if not result:
        return error_response(ErrorCode.SERVICE_UNAVAILABLE, "Failed to record website link usage")

    return WebsiteLinkUsageResponse(links=request.links)


@router.get(
    "/v1/organizations/{organization_id}/bots/slots",
    response_model=BotSlotsResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_bot_slots(
    organization_id: str,
    limits: UsageLimitService = Depends(get_limit_service),
) -> BotSlotsResponse:
    """Agent slot usage (plan limit plus add-ons)."""
    info = await limits.get_bot_usage_info(organization_id)
    return BotSlotsResponse(
        limit=info.limit,
        usage=info.usage,
        available=info.available,
        has_available=info.has_available,
    )


# =============================================================================
# Scheduler
# =============================================================================


@router.post(
    "/v1/schedules",
    response_model=ScheduledTaskResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def schedule_task(
    request: ScheduleTaskRequest,
    scheduler: SchedulerService = Depends(get_scheduler),
) -> ScheduledTaskResponse:
    """Schedule a task after a delay ("30m") or at an absolute time."""
    delay: str | datetime
    if request.delay is not None and request.run_at is None:
        delay = request.delay
    elif request.run_at is not None and request.delay is None:
        delay = request.run_at
    else:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Provide exactly one of delay or run_at",
        )

    try:
        result = await scheduler.schedule_task(
            ScheduleTask(
                task_id=request.task_id,
                delay=delay,
                payload=request.payload,
                metadata=_metadata_to_domain(request.metadata),
            )
        )
    except InvalidDelayError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    except SchedulingError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to schedule task",
        ) from exc

    return _schedule_to_response(result)


@router.post(
    "/v1/schedules/cancel",
    response_model=CancelScheduleResponse,
    dependencies=[Depends(verify_api_key)],
)
async def cancel_schedule(
    request: CancelScheduleRequest,
    scheduler: SchedulerService = Depends(get_scheduler),
) -> CancelScheduleResponse:
    """Cancel by schedule id, or by (contact_id, provider, trigger_type)."""
    cancelled = await scheduler.cancel_schedule(
        CancelScheduleParams(
            schedule_id=request.schedule_id,
            contact_id=request.contact_id,
            provider=request.provider,
            trigger_type=request.trigger_type,
        )
    )
    return CancelScheduleResponse(cancelled=cancelled)


@router.get(
    "/v1/schedules",
    response_model=ScheduleListResponse,
    dependencies=[Depends(verify_api_key)],
)
async def list_schedules(
    contact_id: str | None = None,
    provider: str | None = None,
    scheduler: SchedulerService = Depends(get_scheduler),
) -> ScheduleListResponse:
    """Pending schedules, optionally for one contact (and provider)."""
    schedules = await scheduler.list_schedules(contact_id, provider)
    return ScheduleListResponse(
        schedules=[_schedule_to_response(s) for s in schedules],
        total=len(schedules),
    )


@router.get(
    "/v1/schedules/{schedule_id}/cancelled",
    response_model=ScheduleStatusResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_schedule_status(
    schedule_id: str,
    scheduler: SchedulerService = Depends(get_scheduler),
) -> ScheduleStatusResponse:
    """Whether a task body for this schedule must skip its effect."""
    cancelled = await scheduler.is_schedule_cancelled(schedule_id)
    return ScheduleStatusResponse(schedule_id=schedule_id, cancelled=cancelled)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(
    request: Request, db: AsyncSession = Depends(get_read_db)
) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database and key-value store connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
        await request.app.state.redis.ping()

        return HealthResponse(
            status="healthy",
            database="connected",
            redis="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
