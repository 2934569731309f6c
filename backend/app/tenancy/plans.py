"""Video feature limits per subscription plan. ``-1`` means unlimited."""

from dataclasses import dataclass

from app.tenancy.models import SubscriptionPlan

UNLIMITED = -1


@dataclass(frozen=True)
class PlanQuota:
    plan: str
    max_meetings_per_month: int
    max_minutes_per_meeting: int
    unrestricted: bool = False

    @property
    def has_meeting_limit(self) -> bool:
        return self.max_meetings_per_month != UNLIMITED

    @property
    def has_duration_limit(self) -> bool:
        return self.max_minutes_per_meeting != UNLIMITED


PLAN_LIMITS: dict[SubscriptionPlan, PlanQuota] = {
    SubscriptionPlan.FREE: PlanQuota("free", 2, 30),
    SubscriptionPlan.STARTER: PlanQuota("starter", 10, 60),
    SubscriptionPlan.PRO: PlanQuota("pro", 50, 90),
    SubscriptionPlan.ENTERPRISE: PlanQuota("enterprise", 200, 180),
    SubscriptionPlan.CUSTOM: PlanQuota("custom", UNLIMITED, UNLIMITED),
}


def unrestricted_quota(plan: str) -> PlanQuota:
    return PlanQuota(plan, UNLIMITED, UNLIMITED, unrestricted=True)
