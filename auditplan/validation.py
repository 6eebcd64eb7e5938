from __future__ import annotations

import datetime
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .database import fetch_interviews_by_audit_id, get_audit
from .policy import CalendarRules, format_time_label, load_calendar_rules
from .generator.calendar import is_business_day
from .generator.models import CalendarItem

BREAK_KINDS = {"morning_break", "lunch", "afternoon_break"}

Slot = Tuple[Optional[str], str, str, datetime.datetime, datetime.datetime]


def _slot(item: Any) -> Slot:
    if isinstance(item, CalendarItem):
        return item.id, item.kind, item.title, item.start, item.end
    start = item["start_time"]
    end = start + datetime.timedelta(minutes=int(item["duration_minutes"]))
    return item.get("id"), item.get("kind") or "manual", item.get("title") or "", start, end


def _minute_of(value: datetime.datetime) -> int:
    return value.hour * 60 + value.minute


def _label(title: str, start: datetime.datetime) -> str:
    return f"{title} ({start.strftime('%a %Y-%m-%d')} {format_time_label(_minute_of(start))})"


def validate_plan_items(items: Iterable[Any], rules: Optional[CalendarRules] = None) -> Dict[str, Any]:
    """Check a calendar (generated or stored) for overlaps and working-hour violations."""
    rules = rules or CalendarRules()
    slots = sorted((_slot(item) for item in items or []), key=lambda slot: slot[3])
    issues: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    issues.extend(_overlap_issues(slots))
    issues.extend(_office_hours_issues(slots, rules))
    issues.extend(_lunch_issues(slots, rules))
    warnings.extend(_weekend_warnings(slots))
    warnings.extend(_adjusted_warnings(items or []))
    checks = [
        _check("Calendar has items?", bool(slots), "No interviews are planned." if not slots else ""),
        _check("No double booking?", not any(issue["type"] == "overlap" for issue in issues)),
        _check("Within office hours?", not any(issue["type"] == "office_hours" for issue in issues)),
        _check("Lunch kept free?", not any(issue["type"] == "lunch" for issue in issues)),
    ]
    return {"checks": checks, "issues": issues, "warnings": warnings}


def validate_audit_plan(session, audit_id: str, rules: Optional[CalendarRules] = None) -> Dict[str, Any]:
    if not get_audit(session, audit_id):
        return {
            "audit_id": audit_id,
            "checks": [_check("Audit exists?", False, "No audit exists with this id.")],
            "issues": [{"type": "missing_audit", "severity": "error", "message": "No audit exists with this id."}],
            "warnings": [],
        }
    report = validate_plan_items(
        fetch_interviews_by_audit_id(session, audit_id),
        rules or load_calendar_rules(session),
    )
    report["audit_id"] = audit_id
    return report


def _check(label: str, passed: bool, details: str = "") -> Dict[str, Any]:
    return {"label": label, "status": "pass" if passed else "fail", "details": details}


def _overlap_issues(slots: List[Slot]) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    by_day: Dict[datetime.date, List[Slot]] = defaultdict(list)
    for slot in slots:
        by_day[slot[3].date()].append(slot)
    for day_slots in by_day.values():
        latest: Optional[Slot] = None
        for slot in day_slots:
            if latest is not None and slot[3] < latest[4]:
                issues.append(
                    {
                        "type": "overlap",
                        "severity": "error",
                        "interview_id": slot[0],
                        "message": f"{_label(slot[2], slot[3])} overlaps {_label(latest[2], latest[3])}.",
                    }
                )
            if latest is None or slot[4] > latest[4]:
                latest = slot
    return issues


def _office_hours_issues(slots: List[Slot], rules: CalendarRules) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    for interview_id, _, title, start, end in slots:
        end_minute = (end - datetime.datetime.combine(start.date(), datetime.time.min, tzinfo=start.tzinfo))
        end_minutes = int(end_minute.total_seconds() // 60)
        if _minute_of(start) < rules.day_start or end_minutes > rules.day_end:
            issues.append(
                {
                    "type": "office_hours",
                    "severity": "error",
                    "interview_id": interview_id,
                    "message": (
                        f"{_label(title, start)} runs outside "
                        f"{format_time_label(rules.day_start)}-{format_time_label(rules.day_end)}."
                    ),
                }
            )
    return issues


def _lunch_issues(slots: List[Slot], rules: CalendarRules) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    for interview_id, kind, title, start, end in slots:
        if kind in BREAK_KINDS or start.date() != end.date():
            continue
        if _minute_of(start) < rules.lunch_end and _minute_of(end) > rules.lunch_start:
            issues.append(
                {
                    "type": "lunch",
                    "severity": "error",
                    "interview_id": interview_id,
                    "message": f"{_label(title, start)} overlaps the lunch break.",
                }
            )
    return issues


def _weekend_warnings(slots: List[Slot]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "weekend",
            "severity": "warning",
            "interview_id": interview_id,
            "message": f"{_label(title, start)} falls on a weekend.",
        }
        for interview_id, _, title, start, _ in slots
        if not is_business_day(start.date())
    ]


def _adjusted_warnings(items: Iterable[Any]) -> List[Dict[str, Any]]:
    warnings: List[Dict[str, Any]] = []
    for item in items:
        if not isinstance(item, CalendarItem) or not item.adjustment:
            continue
        verb = "shortened" if item.adjustment == "adjusted" else "moved to the next business day"
        warnings.append(
            {
                "type": "adjusted",
                "severity": "warning",
                "interview_id": item.id,
                "message": f"{_label(item.title, item.start)} was {verb} to respect office hours.",
            }
        )
    return warnings
