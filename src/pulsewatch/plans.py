from dataclasses import dataclass
from typing import Optional

# Monitor types that inspect certificates or registrations
SSL_MONITOR_TYPES = ("ssl", "domain")


@dataclass(frozen=True)
class PlanLimits:
    max_monitors: Optional[int]  # None = unlimited
    min_check_interval: int  # seconds
    ssl_monitoring: bool

    def allows_monitor_count(self, current: int) -> bool:
        return self.max_monitors is None or current < self.max_monitors

    def allows_type(self, monitor_type: str) -> bool:
        return self.ssl_monitoring or monitor_type not in SSL_MONITOR_TYPES


PLANS = {
    "free": PlanLimits(max_monitors=5, min_check_interval=300, ssl_monitoring=False),
    "pro": PlanLimits(max_monitors=50, min_check_interval=60, ssl_monitoring=True),
    "business": PlanLimits(max_monitors=None, min_check_interval=30, ssl_monitoring=True),
}


def get_plan_limits(plan: str) -> PlanLimits:
    return PLANS.get(plan, PLANS["free"])
