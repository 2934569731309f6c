"""Plan limits for video meetings.

The check runs before anything is created at the provider, so a host who is
over quota leaves no room and no rows behind.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings
from app.core.exceptions import UpgradeRequiredError, ValidationError
from app.database import utcnow
from app.meetings import store
from app.tenancy.plans import PlanQuota
from app.tenancy.service import get_plan_quota

logger = logging.getLogger(__name__)


@dataclass
class QuotaDecision:
    duration_minutes: int
    quota: PlanQuota
    meetings_this_month: int


@dataclass
class QuotaUsage:
    plan: str
    unrestricted: bool
    meetings_this_month: int
    max_meetings_per_month: int
    max_minutes_per_meeting: int

    @property
    def meetings_remaining(self) -> int | None:
        if self.max_meetings_per_month < 0:
            return None
        return max(self.max_meetings_per_month - self.meetings_this_month, 0)


def month_start(now: datetime | None = None) -> datetime:
    now = now or utcnow()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class QuotaEnforcer:
    def __init__(self, settings: Settings):
        self._settings = settings

    async def check(
        self,
        db: AsyncSession,
        host_id: uuid.UUID,
        tenant_id: uuid.UUID | None,
        requested_minutes: int | None = None,
    ) -> QuotaDecision:
        """Gate a new meeting against the host's plan.

        Raises UpgradeRequiredError when the monthly allowance is used up.
        Otherwise returns the duration to use, clamped to the plan's
        per-meeting limit.
        """
        if requested_minutes is not None and requested_minutes <= 0:
            raise ValidationError("Meeting duration must be a positive number of minutes.")

        quota = await get_plan_quota(db, tenant_id, self._settings)

        meetings_this_month = 0
        if quota.has_meeting_limit:
            meetings_this_month = await store.count_hosted_since(db, host_id, month_start())
            if meetings_this_month >= quota.max_meetings_per_month:
                logger.info(
                    "Host %s reached the %s plan limit of %d meetings",
                    host_id,
                    quota.plan,
                    quota.max_meetings_per_month,
                )
                raise UpgradeRequiredError(
                    limit=quota.max_meetings_per_month,
                    plan=quota.plan,
                    current=meetings_this_month,
                )

        duration = requested_minutes or self._settings.all_day_minutes
        if quota.has_duration_limit:
            duration = min(duration, quota.max_minutes_per_meeting)

        return QuotaDecision(
            duration_minutes=duration,
            quota=quota,
            meetings_this_month=meetings_this_month,
        )

    async def usage(
        self,
        db: AsyncSession,
        host_id: uuid.UUID,
        tenant_id: uuid.UUID | None,
    ) -> QuotaUsage:
        quota = await get_plan_quota(db, tenant_id, self._settings)
        count = await store.count_hosted_since(db, host_id, month_start())
        return QuotaUsage(
            plan=quota.plan,
            unrestricted=quota.unrestricted,
            meetings_this_month=count,
            max_meetings_per_month=quota.max_meetings_per_month,
            max_minutes_per_meeting=quota.max_minutes_per_meeting,
        )
