"""
ScaleCheck API Dependencies

Dependency injection for DB sessions, auth, company context and the
external collaborators (pricing, ledger, notifications, carrier desk).
Tests override the collaborator providers with in-memory fakes.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.notifications import CeleryNotificationSender, NotificationSender
from core.config import get_settings
from core.security import decode_access_token, is_admin
from db.session import AsyncSessionLocal, set_company_context
from disputes.lifecycle import DisputeLifecycleManager, _enqueue_carrier_submission
from disputes.settlement import HttpSettlementExecutor, SettlementExecutor
from pricing.quoter import HttpPricingQuoter, PricingQuoter, PricingService
from pricing.zones import get_zone_resolver
from weights.detector import WeightDiscrepancyDetector

settings = get_settings()
security = HTTPBearer(auto_error=not settings.debug)

# Tenant used for unauthenticated requests when DEBUG is on
DEV_COMPANY_ID = "00000000-0000-0000-0000-000000000001"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Decode JWT and return user payload. Bypassed in debug mode."""
    if settings.debug:
        return {
            "sub": "dev-user",
            "email": "dev@scalecheck.in",
            "company_id": DEV_COMPANY_ID,
            "roles": ["admin"],
        }

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


async def get_company_id(user: dict = Depends(get_current_user)) -> str:
    company_id = user.get("company_id")
    if not company_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No company context",
        )
    return str(company_id)


async def get_tenant_db(
    db: AsyncSession = Depends(get_db),
    company_id: str = Depends(get_company_id),
) -> AsyncSession:
    """Get a DB session with company context set."""
    await set_company_context(db, company_id)
    return db


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return user


# ─── Collaborators ──────────────────────────────────────────────────────────


def get_quoter() -> PricingQuoter:
    return HttpPricingQuoter()


def get_pricing_service(quoter: PricingQuoter = Depends(get_quoter)) -> PricingService:
    return PricingService(quoter, get_zone_resolver())


def get_notifier() -> NotificationSender:
    return CeleryNotificationSender()


def get_settlement_executor() -> SettlementExecutor:
    return HttpSettlementExecutor()


def get_enqueue_submission():
    return _enqueue_carrier_submission


def get_lifecycle(
    db: AsyncSession = Depends(get_tenant_db),
    notifier: NotificationSender = Depends(get_notifier),
    executor: SettlementExecutor = Depends(get_settlement_executor),
    pricing: PricingService = Depends(get_pricing_service),
    enqueue=Depends(get_enqueue_submission),
) -> DisputeLifecycleManager:
    return DisputeLifecycleManager(
        db,
        notifier=notifier,
        settlement_executor=executor,
        pricing=pricing,
        enqueue_submission=enqueue,
    )


def get_webhook_lifecycle(
    db: AsyncSession = Depends(get_db),
    notifier: NotificationSender = Depends(get_notifier),
    executor: SettlementExecutor = Depends(get_settlement_executor),
    pricing: PricingService = Depends(get_pricing_service),
    enqueue=Depends(get_enqueue_submission),
) -> DisputeLifecycleManager:
    """Carrier callbacks carry no user token; they are verified by signature instead."""
    return DisputeLifecycleManager(
        db,
        notifier=notifier,
        settlement_executor=executor,
        pricing=pricing,
        enqueue_submission=enqueue,
    )


def get_webhook_detector(
    db: AsyncSession = Depends(get_db),
    pricing: PricingService = Depends(get_pricing_service),
    lifecycle: DisputeLifecycleManager = Depends(get_webhook_lifecycle),
    notifier: NotificationSender = Depends(get_notifier),
) -> WeightDiscrepancyDetector:
    return WeightDiscrepancyDetector(db, pricing=pricing, lifecycle=lifecycle, notifier=notifier)
