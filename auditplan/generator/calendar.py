from __future__ import annotations

import datetime
import math
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..policy import CalendarRules
from ..themes import ThemeId, ThemeRef, is_system_theme, lookup_theme, theme_catalog
from .models import InvalidScheduleRequest, PlanEstimate

WEEKEND = {5, 6}


def parse_iso_date(value: Any) -> Optional[datetime.date]:
    """Return the calendar day of an ISO date or instant; None for empty input."""
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    label = str(value).strip()
    if not label:
        return None
    if label.endswith("Z"):
        label = label[:-1] + "+00:00"
    try:
        if "T" in label or " " in label:
            return datetime.datetime.fromisoformat(label).date()
        return datetime.date.fromisoformat(label)
    except ValueError as exc:
        raise InvalidScheduleRequest(f"Invalid ISO date '{value}'.") from exc


def is_business_day(day: datetime.date) -> bool:
    return day.weekday() not in WEEKEND


def next_business_day(day: datetime.date) -> datetime.date:
    candidate = day + datetime.timedelta(days=1)
    while not is_business_day(candidate):
        candidate += datetime.timedelta(days=1)
    return candidate


def get_business_days(start: Any, end: Any) -> List[str]:
    """Every weekday in [start, end], as ISO day labels."""
    start_day = parse_iso_date(start)
    end_day = parse_iso_date(end)
    if start_day is None or end_day is None or end_day < start_day:
        return []
    days: List[str] = []
    current = start_day
    while current <= end_day:
        if is_business_day(current):
            days.append(current.isoformat())
        current += datetime.timedelta(days=1)
    return days


def effective_minutes_per_day(rules: CalendarRules, max_hours_per_day: Optional[int] = None) -> int:
    effective = rules.effective_minutes_per_day
    if max_hours_per_day:
        effective = min(effective, int(max_hours_per_day) * 60)
    return max(0, effective)


def ideal_minutes_per_day(total_thematic_minutes: int, available_day_count: int, effective_minutes: int) -> int:
    if available_day_count <= 0:
        return effective_minutes
    return min(math.ceil(total_thematic_minutes / available_day_count), effective_minutes)


def theme_duration(theme_id: str, theme_durations: Dict[str, Any], rules: CalendarRules) -> int:
    raw = (theme_durations or {}).get(str(theme_id))
    if raw in (None, "", 0):
        return rules.default_theme_minutes
    try:
        minutes = int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidScheduleRequest(f"Duration for theme '{theme_id}' must be a whole number of minutes.") from exc
    if minutes <= 0:
        raise InvalidScheduleRequest(f"Duration for theme '{theme_id}' must be positive.")
    return minutes


def schedulable_themes(
    selected_theme_ids: Sequence[str],
    themes: Iterable[Any],
    rules: CalendarRules,
) -> List[ThemeRef]:
    """Resolve the selection in order, dropping system themes and duplicates."""
    catalog = theme_catalog(themes)
    seen = set()
    resolved: List[ThemeRef] = []
    for theme_id in selected_theme_ids or []:
        ref = lookup_theme(catalog, theme_id)
        if ref.id in seen or is_system_theme(ref.name, rules.system_themes):
            continue
        seen.add(ref.id)
        resolved.append(ref)
    return resolved


def estimate_plan(
    selected_theme_ids: Sequence[str],
    theme_durations: Dict[str, Any],
    themes: Iterable[Any],
    rules: CalendarRules,
    *,
    include_opening_closing: bool = True,
    max_hours_per_day: Optional[float] = None,
) -> PlanEstimate:
    total_minutes = 0
    interview_count = 0
    if include_opening_closing:
        total_minutes += rules.opening_minutes + rules.closing_minutes
        interview_count += 2
    for ref in schedulable_themes(selected_theme_ids, themes, rules):
        total_minutes += theme_duration(ref.id, theme_durations, rules)
        interview_count += 1
    hours = math.ceil(total_minutes / 60)
    workday_hours = rules.working_minutes / 60
    pause_hours = (rules.lunch_minutes + rules.break_minutes) / 60
    max_hours = float(max_hours_per_day or rules.max_hours_per_day)
    available = min(max_hours, workday_hours - pause_hours)
    required_days = math.ceil(hours / available) if available > 0 and hours else 0
    return PlanEstimate(
        total_minutes=total_minutes,
        total_hours=hours,
        total_interviews=interview_count,
        available_hours_per_day=round(available, 2),
        required_days=required_days,
    )


def default_plan_selection(themes: Iterable[Any], start: Any, end: Any, rules: CalendarRules) -> Dict[str, Any]:
    """All non-system themes at the default duration over every business day."""
    catalog = theme_catalog(themes)
    selected: List[ThemeId] = [
        ref.id for ref in catalog.values() if not is_system_theme(ref.name, rules.system_themes)
    ]
    return {
        "topic_ids": selected,
        "theme_durations": {theme_id: rules.default_theme_minutes for theme_id in catalog},
        "selected_days": get_business_days(start, end),
        "max_hours_per_day": rules.max_hours_per_day,
        "include_opening_closing": True,
    }
