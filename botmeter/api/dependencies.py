"""
FastAPI Dependencies - API key check and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from botmeter.config import settings
from botmeter.db.session import get_write_db
from botmeter.exceptions import AuthenticationError
from botmeter.scheduler.base import SchedulerService
from botmeter.services.credits import CreditService
from botmeter.services.gates import SubscriptionGate
from botmeter.services.limits import UsageLimitService

logger = get_logger(__name__)


def validate_api_key(provided: str | None, expected: str | None) -> None:
    """
    Constant-time comparison against the configured key.

    Raises:
        AuthenticationError: Key missing or wrong (only when a key is configured)
    """
    if not expected:
        return
    if not provided:
        raise AuthenticationError("Missing X-API-Key header")
    if not secrets.compare_digest(provided.encode(), expected.encode()):
        raise AuthenticationError("Invalid API key")


async def verify_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    FastAPI dependency enforcing X-API-Key when API_KEY is configured.

    Usage:
        @router.post("/v1/schedules", dependencies=[Depends(verify_api_key)])
    """
    try:
        validate_api_key(x_api_key, settings.api_key)
    except AuthenticationError as exc:
        logger.warning("api_key_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc


async def get_credit_service(db: AsyncSession = Depends(get_write_db)) -> CreditService:
    return CreditService(db)


async def get_limit_service(db: AsyncSession = Depends(get_write_db)) -> UsageLimitService:
    return UsageLimitService(db)


async def get_gate(
    db: AsyncSession = Depends(get_write_db),
    credits: CreditService = Depends(get_credit_service),
    limits: UsageLimitService = Depends(get_limit_service),
) -> SubscriptionGate:
    """Gate sharing the request's session and services."""
    return SubscriptionGate(db, limits=limits, credits=credits)


def get_scheduler(request: Request) -> SchedulerService:
    """Scheduler built once in the application lifespan."""
    scheduler: SchedulerService | None = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler is not available",
        )
    return scheduler
