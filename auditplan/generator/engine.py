from __future__ import annotations

import datetime
import logging
from collections import defaultdict
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..policy import CalendarRules, minutes_to_datetime
from ..themes import ThemeRef
from .calendar import (
    effective_minutes_per_day,
    ideal_minutes_per_day,
    next_business_day,
    schedulable_themes,
    theme_duration,
)
from .models import CalendarItem, InvalidScheduleRequest, PlanResult, ScheduleRequest, SchedulerCursor

logger = logging.getLogger(__name__)

ADJUSTED_NOTE = "(durée ajustée pour respecter les horaires)"
MOVED_NOTE = "(déplacé au jour suivant)"
MEETING_KINDS = {"opening", "closing"}


def advance(
    cursor: SchedulerCursor,
    duration_minutes: int,
    day_count: int,
    ideal_minutes: int,
    rules: CalendarRules,
) -> SchedulerCursor:
    """Return the cursor that follows a slot of ``duration_minutes`` placed at ``cursor``.

    The checks run in calendar order: morning break, lunch, afternoon break,
    then the end-of-day / daily-load rollover. Running out of days never
    wraps; the returned cursor is flagged ``overflowed`` instead.
    """
    if duration_minutes <= 0:
        raise InvalidScheduleRequest("Slot durations must be positive.")
    start = max(cursor.minute, rules.day_start)
    end = start + duration_minutes
    minutes_today = cursor.minutes_today + duration_minutes

    if rules.morning_break_start <= end < rules.morning_break_end:
        end = rules.morning_break_end

    if start < rules.lunch_start < end:
        # Truncated at lunch: only the morning part counts for today.
        minutes_today = cursor.minutes_today + (rules.lunch_start - start)
        end = rules.lunch_end
    elif rules.lunch_start <= end < rules.lunch_end:
        end = rules.lunch_end

    if rules.afternoon_break_start <= end < rules.afternoon_break_end:
        end = rules.afternoon_break_end

    has_next_day = cursor.day_index + 1 < day_count
    if (minutes_today > ideal_minutes and has_next_day) or end >= rules.day_end:
        if has_next_day:
            return SchedulerCursor(day_index=cursor.day_index + 1, minute=rules.day_start, minutes_today=0)
        return SchedulerCursor(
            day_index=cursor.day_index,
            minute=end,
            minutes_today=minutes_today,
            overflowed=True,
        )
    return SchedulerCursor(day_index=cursor.day_index, minute=end, minutes_today=minutes_today)


class InterviewPlanner:
    """Lay out one interview per selected theme across the selected audit days."""

    def __init__(self, request: ScheduleRequest, themes: Iterable[Any], rules: Optional[CalendarRules] = None) -> None:
        self.request = request
        self.rules = rules or CalendarRules()
        self.themes = list(themes or [])
        self.days: List[datetime.date] = request.sorted_days
        self.items: List[CalendarItem] = []
        self.warnings: List[str] = []
        self.unscheduled: List[str] = []
        self._emitted: Set[Tuple[int, str]] = set()
        self._opened: Set[int] = set()
        self._occupied: Dict[int, List[Tuple[int, int]]] = defaultdict(list)
        self._reserved: Dict[int, List[Tuple[int, int]]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Public API

    def build(self) -> PlanResult:
        if not self.days or not self.request.selected_theme_ids:
            return PlanResult()
        rules = self.rules
        selected = [
            (ref, theme_duration(ref.id, self.request.theme_durations, rules))
            for ref in schedulable_themes(self.request.selected_theme_ids, self.themes, rules)
        ]
        total_minutes = sum(minutes for _, minutes in selected)
        effective = effective_minutes_per_day(rules, self.request.max_hours_per_day)
        ideal = ideal_minutes_per_day(total_minutes, len(self.days), effective)

        cursor = SchedulerCursor(day_index=0, minute=rules.day_start)
        last_day = len(self.days) - 1
        if self.request.include_opening_closing:
            self._reserved[last_day].append((rules.closing_start, rules.closing_start + rules.closing_minutes))
            self._emit_meeting("opening", 0, rules.day_start, rules.opening_minutes)
            cursor = replace(cursor, minute=rules.day_start + rules.opening_minutes)

        for ref, minutes in selected:
            if cursor.overflowed:
                self.unscheduled.append(ref.id)
                continue
            cursor = self._place(cursor, ref, minutes, ideal)

        if self.request.include_opening_closing:
            self._emit_meeting("closing", last_day, rules.closing_start, rules.closing_minutes)

        self._correct_office_hours()
        if self.unscheduled:
            message = (
                f"{len(self.unscheduled)} theme(s) did not fit in the {len(self.days)} selected day(s); "
                "extend the date range or reduce the scope."
            )
            self.warnings.append(message)
            logger.warning("Audit %s plan overflow: %s", self.request.audit_id, message)
        return PlanResult(
            items=sorted(self.items, key=lambda item: item.start),
            ideal_minutes_per_day=ideal,
            unscheduled_theme_ids=list(self.unscheduled),
            warnings=list(self.warnings),
        )

    # ------------------------------------------------------------------
    # Placement

    def _has_next_day(self, cursor: SchedulerCursor) -> bool:
        return cursor.day_index + 1 < len(self.days)

    def _roll(self, cursor: SchedulerCursor) -> SchedulerCursor:
        return self._open_day(SchedulerCursor(day_index=cursor.day_index + 1, minute=self.rules.day_start))

    def _open_day(self, cursor: SchedulerCursor) -> SchedulerCursor:
        """Emit the morning break once per day and start after it."""
        rules = self.rules
        if cursor.day_index in self._opened:
            return cursor
        self._opened.add(cursor.day_index)
        if cursor.minute <= rules.morning_break_start:
            self._emit_pause(cursor.day_index, "morning_break", rules.morning_break_start, rules.morning_break_end)
            return replace(cursor, minute=rules.morning_break_end)
        return cursor

    def _place(self, cursor: SchedulerCursor, ref: ThemeRef, minutes: int, ideal: int) -> SchedulerCursor:
        cursor = self._open_day(cursor)
        if cursor.minutes_today > 0 and cursor.minutes_today + minutes > ideal and self._has_next_day(cursor):
            cursor = self._roll(cursor)
        start = self._fit(cursor, minutes)
        if start is None and cursor.minutes_today > 0 and self._has_next_day(cursor):
            cursor = self._roll(cursor)
            start = self._fit(cursor, minutes)
        if start is None:
            start = self._fallback_start(cursor, minutes)

        self._emit_passed_pauses(cursor.day_index, start)
        self._emit_interview(cursor.day_index, start, minutes, ref)
        placed = replace(cursor, minute=start)
        following = advance(placed, minutes, len(self.days), ideal, self.rules)
        if following.day_index == placed.day_index:
            self._emit_passed_pauses(following.day_index, following.minute)
        return following

    def _blocked(self, day_index: int) -> List[Tuple[int, int]]:
        windows = [(start, end) for _, start, end in self.rules.pause_windows()]
        windows.extend(self._reserved.get(day_index, []))
        return sorted(windows)

    def _free_segments(self, day_index: int, from_minute: int) -> List[Tuple[int, int]]:
        segments: List[Tuple[int, int]] = []
        position = max(from_minute, self.rules.day_start)
        for start, end in self._blocked(day_index):
            if end <= position:
                continue
            if start > position:
                segments.append((position, start))
            position = max(position, end)
        if position < self.rules.day_end:
            segments.append((position, self.rules.day_end))
        return segments

    def _fit(self, cursor: SchedulerCursor, minutes: int) -> Optional[int]:
        for start, end in self._free_segments(cursor.day_index, cursor.minute):
            if start + minutes <= end:
                return start
        return None

    def _fallback_start(self, cursor: SchedulerCursor, minutes: int) -> int:
        """Start for a slot that fits nowhere today; lunch is never crossed."""
        rules = self.rules
        position = max(cursor.minute, rules.day_start)
        if position < rules.lunch_start < position + minutes:
            position = rules.lunch_end
        moved = True
        while moved:
            moved = False
            for start, end in self._blocked(cursor.day_index):
                if start <= position < end:
                    position = end
                    moved = True
        return position

    # ------------------------------------------------------------------
    # Emission

    def _at(self, day_index: int, minute: int) -> datetime.datetime:
        return minutes_to_datetime(self.days[day_index], minute)

    def _window_free(self, day_index: int, start: int, end: int) -> bool:
        return all(end <= busy_start or start >= busy_end for busy_start, busy_end in self._occupied[day_index])

    def _emit_pause(self, day_index: int, kind: str, start: int, end: int) -> None:
        if (day_index, kind) in self._emitted or not self._window_free(day_index, start, end):
            return
        self._emitted.add((day_index, kind))
        self._occupied[day_index].append((start, end))
        label = self.rules.meeting(kind)
        self.items.append(
            CalendarItem(
                kind=kind,
                title=label.get("title", kind),
                description=label.get("description", ""),
                location=label.get("location", ""),
                start=self._at(day_index, start),
                duration_minutes=end - start,
                audit_id=self.request.audit_id,
            )
        )

    def _emit_passed_pauses(self, day_index: int, upto: int) -> None:
        for kind, start, end in self.rules.pause_windows():
            if end <= upto:
                self._emit_pause(day_index, kind, start, end)

    def _emit_meeting(self, kind: str, day_index: int, start: int, minutes: int) -> None:
        label = self.rules.meeting(kind)
        self._occupied[day_index].append((start, start + minutes))
        self.items.append(
            CalendarItem(
                kind=kind,
                title=label.get("title", kind),
                description=label.get("description", ""),
                location=label.get("location", ""),
                start=self._at(day_index, start),
                duration_minutes=minutes,
                audit_id=self.request.audit_id,
            )
        )

    def _emit_interview(self, day_index: int, start: int, minutes: int, ref: ThemeRef) -> None:
        label = self.rules.meeting("interview")
        self._occupied[day_index].append((start, start + minutes))
        self.items.append(
            CalendarItem(
                kind="interview",
                title=str(label.get("title", "Interview: {theme}")).replace("{theme}", ref.name),
                description=str(label.get("description", "")).replace("{theme}", ref.name),
                location=label.get("location", ""),
                start=self._at(day_index, start),
                duration_minutes=minutes,
                audit_id=self.request.audit_id,
                theme_id=ref.id,
            )
        )

    # ------------------------------------------------------------------
    # Office-hours pass

    def _correct_office_hours(self) -> None:
        rules = self.rules
        meetings = [item for item in self.items if item.kind in MEETING_KINDS]
        for item in self.items:
            if not item.is_interview:
                continue
            day = item.start.date()
            start_minute = item.start.hour * 60 + item.start.minute
            if start_minute < rules.day_start:
                item.start = minutes_to_datetime(day, rules.day_start)
                start_minute = rules.day_start
            limit = rules.day_end
            for meeting in meetings:
                if meeting.start.date() == day and meeting.start > item.start:
                    limit = min(limit, meeting.start.hour * 60 + meeting.start.minute)
            if start_minute + item.duration_minutes <= limit:
                continue
            allowed = limit - start_minute
            if allowed >= rules.min_adjusted_minutes:
                item.duration_minutes = allowed
                item.adjustment = "adjusted"
                item.description = f"{item.description} {ADJUSTED_NOTE}".strip()
            else:
                item.start = minutes_to_datetime(next_business_day(day), rules.day_start)
                item.adjustment = "moved"
                item.description = f"{item.description} {MOVED_NOTE}".strip()


def plan_schedule(request: ScheduleRequest, themes: Iterable[Any], rules: Optional[CalendarRules] = None) -> PlanResult:
    return InterviewPlanner(request, themes, rules).build()


def generate_preview(
    request: ScheduleRequest,
    themes: Iterable[Any],
    rules: Optional[CalendarRules] = None,
) -> List[CalendarItem]:
    """Side-effect free calendar preview for the request."""
    return plan_schedule(request, themes, rules).items
