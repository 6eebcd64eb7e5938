from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..themes import ThemeId


class ScheduleError(Exception):
    """Base error for the interview planner."""


class InvalidScheduleRequest(ScheduleError, ValueError):
    """The request cannot be scheduled as given."""


@dataclass(frozen=True)
class ScheduleRequest:
    audit_id: str
    selected_days: Tuple[datetime.date, ...]
    selected_theme_ids: Tuple[ThemeId, ...]
    theme_durations: Dict[str, int] = field(default_factory=dict, compare=False, hash=False)
    start_date: Optional[datetime.date] = None
    end_date: Optional[datetime.date] = None
    max_hours_per_day: int = 8
    include_opening_closing: bool = True

    @property
    def sorted_days(self) -> List[datetime.date]:
        return sorted(set(self.selected_days))


@dataclass
class CalendarItem:
    kind: str
    title: str
    start: datetime.datetime
    duration_minutes: int
    audit_id: Optional[str] = None
    theme_id: Optional[ThemeId] = None
    description: str = ""
    location: str = ""
    meeting_link: str = ""
    # "adjusted" or "moved" once the office-hours pass touched the slot.
    adjustment: Optional[str] = None
    id: Optional[str] = None

    @property
    def end(self) -> datetime.datetime:
        return self.start + datetime.timedelta(minutes=self.duration_minutes)

    @property
    def is_interview(self) -> bool:
        return self.kind == "interview"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "audit_id": self.audit_id,
            "theme_id": self.theme_id,
            "kind": self.kind,
            "title": self.title,
            "description": self.description,
            "start_time": self.start.isoformat(),
            "end_time": self.end.isoformat(),
            "duration_minutes": self.duration_minutes,
            "location": self.location,
            "meeting_link": self.meeting_link,
            "adjustment": self.adjustment,
        }

    def to_row(self) -> Dict[str, Any]:
        """Shape the item for bulk_insert_interviews."""
        return {
            "theme_id": self.theme_id,
            "title": self.title,
            "description": self.description,
            "start_time": self.start,
            "duration_minutes": self.duration_minutes,
            "location": self.location,
            "meeting_link": self.meeting_link,
            "kind": self.kind,
            "auto_generated": True,
        }


@dataclass(frozen=True)
class SchedulerCursor:
    day_index: int
    minute: int
    minutes_today: int = 0
    overflowed: bool = False


@dataclass
class PlanResult:
    items: List[CalendarItem] = field(default_factory=list)
    ideal_minutes_per_day: int = 0
    unscheduled_theme_ids: List[ThemeId] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def overflowed(self) -> bool:
        return bool(self.unscheduled_theme_ids)

    def interviews(self) -> List[CalendarItem]:
        return [item for item in self.items if item.is_interview]


@dataclass(frozen=True)
class PlanEstimate:
    total_minutes: int
    total_hours: int
    total_interviews: int
    available_hours_per_day: float
    required_days: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_minutes": self.total_minutes,
            "total_hours": self.total_hours,
            "total_interviews": self.total_interviews,
            "available_hours_per_day": self.available_hours_per_day,
            "required_days": self.required_days,
        }
