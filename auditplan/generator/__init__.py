from .api import PlanOutcome, build_request, commit_plan, generate_audit_plan, preview_audit_plan
from .calendar import default_plan_selection, estimate_plan, get_business_days, ideal_minutes_per_day
from .engine import InterviewPlanner, advance, generate_preview, plan_schedule
from .models import (
    CalendarItem,
    InvalidScheduleRequest,
    PlanEstimate,
    PlanResult,
    ScheduleError,
    ScheduleRequest,
    SchedulerCursor,
)

__all__ = [
    "CalendarItem",
    "InterviewPlanner",
    "InvalidScheduleRequest",
    "PlanEstimate",
    "PlanOutcome",
    "PlanResult",
    "ScheduleError",
    "ScheduleRequest",
    "SchedulerCursor",
    "advance",
    "build_request",
    "commit_plan",
    "default_plan_selection",
    "estimate_plan",
    "generate_audit_plan",
    "generate_preview",
    "get_business_days",
    "ideal_minutes_per_day",
    "plan_schedule",
    "preview_audit_plan",
]
