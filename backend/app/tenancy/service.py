"""Tenant and plan lookups consumed by the meeting quota gate."""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.core.exceptions import NotFoundError
from app.tenancy.models import SubscriptionPlan, Tenant
from app.tenancy.plans import PLAN_LIMITS, PlanQuota, unrestricted_quota

logger = logging.getLogger(__name__)


async def get_tenant(db: AsyncSession, tenant_id: uuid.UUID) -> Tenant:
    result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
    tenant = result.scalar_one_or_none()
    if tenant is None:
        raise NotFoundError("Tenant", str(tenant_id))
    return tenant


def is_unrestricted(tenant: Tenant, settings: Settings) -> bool:
    if tenant.is_default:
        return True
    return bool(settings.unrestricted_tenant_id) and str(tenant.id) == settings.unrestricted_tenant_id


async def get_plan_quota(
    db: AsyncSession,
    tenant_id: uuid.UUID | None,
    settings: Settings,
) -> PlanQuota:
    """Resolve the video limits that apply to a tenant.

    Users outside any tenant fall back to the free plan. The unrestricted
    tenant keeps its nominal plan name but has both limits lifted.
    """
    if tenant_id is None:
        return PLAN_LIMITS[SubscriptionPlan.FREE]

    tenant = await get_tenant(db, tenant_id)
    if is_unrestricted(tenant, settings):
        logger.debug("Tenant %s is unrestricted, bypassing plan limits", tenant.id)
        return unrestricted_quota(tenant.plan.value)
    return PLAN_LIMITS[tenant.plan]
