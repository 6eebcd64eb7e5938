from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..database import (
    bulk_delete_interviews,
    bulk_insert_interviews,
    fetch_themes,
    is_valid_uuid,
    record_audit_log,
)
from ..policy import CalendarRules, load_calendar_rules
from ..themes import ThemeId, UnknownThemeError
from .calendar import estimate_plan, get_business_days, parse_iso_date
from .engine import InterviewPlanner
from .models import InvalidScheduleRequest, PlanEstimate, PlanResult, ScheduleError, ScheduleRequest

logger = logging.getLogger(__name__)


def _option(options: Dict[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in options and options[name] is not None:
            return options[name]
    return default


def build_request(
    audit_id: str,
    start_date_iso: Any,
    end_date_iso: Any,
    options: Optional[Dict[str, Any]] = None,
    rules: Optional[CalendarRules] = None,
) -> ScheduleRequest:
    """Turn caller options (camelCase or snake_case keys) into a ScheduleRequest.

    Selected days must be business days inside ``[start, end]`` when both
    bounds are given. ``max_hours_per_day`` falls back to the calendar rules.
    """
    options = dict(options or {})
    rules = rules or CalendarRules()
    start_date = parse_iso_date(start_date_iso)
    end_date = parse_iso_date(end_date_iso)
    raw_days = _option(options, "selected_days", "selectedDays", default=[]) or []
    days = []
    for raw in raw_days:
        day = parse_iso_date(raw)
        if day is not None:
            days.append(day)
    if start_date and end_date:
        allowed = set(get_business_days(start_date, end_date))
        outside = sorted(day.isoformat() for day in days if day.isoformat() not in allowed)
        if outside:
            raise InvalidScheduleRequest(
                f"Selected days must be business days within the audit range: {', '.join(outside)}."
            )
    theme_ids = [ThemeId(str(value)) for value in _option(options, "topic_ids", "topicIds", default=[]) or []]
    durations = {
        str(key): value
        for key, value in (_option(options, "theme_durations", "themeDurations", default={}) or {}).items()
    }
    try:
        max_hours = int(_option(options, "max_hours_per_day", "maxHoursPerDay", default=rules.max_hours_per_day))
    except (TypeError, ValueError) as exc:
        raise InvalidScheduleRequest("max_hours_per_day must be a whole number of hours.") from exc
    if max_hours <= 0:
        raise InvalidScheduleRequest("max_hours_per_day must be positive.")
    include_meetings = bool(_option(options, "include_opening_closing", "includeOpeningClosing", default=True))
    return ScheduleRequest(
        audit_id=audit_id,
        selected_days=tuple(days),
        selected_theme_ids=tuple(theme_ids),
        theme_durations=durations,
        start_date=start_date,
        end_date=end_date,
        max_hours_per_day=max_hours,
        include_opening_closing=include_meetings,
    )


def commit_plan(
    session,
    request: ScheduleRequest,
    themes: Iterable[Any],
    rules: Optional[CalendarRules] = None,
    *,
    actor: str = "system",
    plan: Optional[PlanResult] = None,
) -> bool:
    """Replace the audit's generated interviews with the plan for ``request``.

    The persisted rows are exactly the preview items. Clearing the previous
    plan is best effort; only a failed insert makes the commit fail.
    """
    if not is_valid_uuid(request.audit_id):
        logger.warning("Refusing to commit a plan for malformed audit id %r", request.audit_id)
        return False
    if not request.selected_days:
        logger.warning("Refusing to commit a plan without selected days for audit %s", request.audit_id)
        return False
    result = plan if plan is not None else InterviewPlanner(request, themes, rules).build()
    rows = [item.to_row() for item in result.items]
    if not rows:
        # Nothing to store: keep the current plan untouched.
        logger.warning("Refusing to commit an empty plan for audit %s", request.audit_id)
        return False

    removed = 0
    try:
        removed = bulk_delete_interviews(session, request.audit_id, auto_generated_only=True)
    except SQLAlchemyError:
        logger.warning("Could not clear previous interviews for audit %s", request.audit_id, exc_info=True)
        session.rollback()

    try:
        created = bulk_insert_interviews(session, request.audit_id, rows)
    except (SQLAlchemyError, ValueError):
        logger.exception("Could not store the interview plan for audit %s", request.audit_id)
        session.rollback()
        return False

    try:
        record_audit_log(
            session,
            actor or "system",
            "generate_plan",
            target_type="Audit",
            target_id=request.audit_id,
            payload={
                "created": len(created),
                "removed": removed,
                "days": [day.isoformat() for day in request.sorted_days],
                "unscheduled": list(result.unscheduled_theme_ids),
            },
        )
    except SQLAlchemyError:
        logger.warning("Could not record audit log for plan of audit %s", request.audit_id, exc_info=True)
        session.rollback()
    logger.info("Stored %s interview(s) for audit %s (removed %s)", len(created), request.audit_id, removed)
    return True


@dataclass
class PlanOutcome:
    ok: bool
    message: str = ""
    created: int = 0
    warnings: List[str] = field(default_factory=list)
    estimate: Optional[PlanEstimate] = None

    def __bool__(self) -> bool:
        return self.ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "message": self.message,
            "created": self.created,
            "warnings": list(self.warnings),
            "estimate": self.estimate.to_dict() if self.estimate else None,
        }


def preview_audit_plan(
    session,
    audit_id: str,
    start_date_iso: Any,
    end_date_iso: Any,
    options: Optional[Dict[str, Any]] = None,
    *,
    rules: Optional[CalendarRules] = None,
) -> PlanResult:
    rules = rules or load_calendar_rules(session)
    request = build_request(audit_id, start_date_iso, end_date_iso, options, rules)
    return InterviewPlanner(request, fetch_themes(session), rules).build()


def generate_audit_plan(
    session_factory: Callable,
    audit_id: str,
    start_date_iso: Any,
    end_date_iso: Any,
    options: Optional[Dict[str, Any]] = None,
    *,
    actor: str = "system",
    rules: Optional[CalendarRules] = None,
) -> PlanOutcome:
    """Plan and store the interviews of one audit; failures come back as a falsy outcome."""
    if not is_valid_uuid(audit_id):
        return PlanOutcome(False, "A valid audit id is required.")
    with session_factory() as session:
        active_rules = rules or load_calendar_rules(session)
        themes = fetch_themes(session)
        try:
            request = build_request(audit_id, start_date_iso, end_date_iso, options, active_rules)
        except ScheduleError as exc:
            return PlanOutcome(False, str(exc))
        if not request.selected_days:
            return PlanOutcome(False, "Select at least one audit day.")
        if not request.selected_theme_ids:
            return PlanOutcome(False, "Select at least one theme.")
        try:
            estimate = estimate_plan(
                request.selected_theme_ids,
                request.theme_durations,
                themes,
                active_rules,
                include_opening_closing=request.include_opening_closing,
                max_hours_per_day=request.max_hours_per_day,
            )
            plan = InterviewPlanner(request, themes, active_rules).build()
        except (ScheduleError, UnknownThemeError) as exc:
            return PlanOutcome(False, str(exc))
        day_count = len(request.sorted_days)
        if day_count < estimate.required_days:
            return PlanOutcome(
                False,
                f"The selection needs {estimate.required_days} day(s) but only {day_count} are selected.",
                estimate=estimate,
            )
        if plan.overflowed:
            missing = ", ".join(plan.unscheduled_theme_ids)
            return PlanOutcome(
                False,
                f"{len(plan.unscheduled_theme_ids)} theme(s) do not fit in the {day_count} selected day(s): "
                f"{missing}. Select more days or shorten the interviews.",
                warnings=list(plan.warnings),
                estimate=estimate,
            )
        if not commit_plan(session, request, themes, active_rules, actor=actor, plan=plan):
            return PlanOutcome(False, "The interview plan could not be saved.", estimate=estimate)
    created = len(plan.items)
    logger.info("Generated %s calendar item(s) for audit %s", created, audit_id)
    return PlanOutcome(
        True,
        f"Generated {created} calendar item(s) over {day_count} day(s).",
        created=created,
        warnings=list(plan.warnings),
        estimate=estimate,
    )
