from __future__ import annotations

import copy
import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .database import get_active_policy, upsert_policy
from .policy_defaults import BASELINE_POLICY, CALENDAR_DEFAULTS, MEETINGS, SYSTEM_THEME_NAMES, build_default_policy
from .themes import is_system_theme


UTC = datetime.timezone.utc
MINUTES_PER_DAY = 24 * 60


def load_active_policy(conn) -> Dict:
    """Return the active policy payload as a dict."""
    if conn is None:
        return _normalize_policy({})
    if callable(conn):
        with conn() as session:
            policy = get_active_policy(session)
            return _normalize_policy(policy.params_dict() if policy else {})
    policy = get_active_policy(conn)
    return _normalize_policy(policy.params_dict() if policy else {})


def _deep_update(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_update(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _normalize_policy(policy: Dict) -> Dict:
    """Fill missing sections from the baseline so runtime matches code expectations."""
    if not isinstance(policy, dict):
        policy = {}
    normalized = _deep_update({key: value for key, value in BASELINE_POLICY.items() if key != "name"}, policy)
    system_themes = normalized.get("system_themes")
    if not isinstance(system_themes, list):
        normalized["system_themes"] = list(SYSTEM_THEME_NAMES)
    else:
        normalized["system_themes"] = [name for name in system_themes if isinstance(name, str) and name.strip()]
    return normalized


def ensure_default_policy(session_factory) -> None:
    """Seed the baseline calendar exactly once so the planner can run end-to-end."""
    with session_factory() as session:
        if get_active_policy(session):
            return
        baseline = build_default_policy()
        name = baseline.get("name", "Standard Audit Calendar")
        params = {key: value for key, value in baseline.items() if key != "name"}
        upsert_policy(session, name, params, edited_by="system")


def parse_time_label(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    label = str(value).strip()
    if not label or ":" not in label:
        return None
    hour_str, minute_str = label.split(":", 1)
    try:
        hours = int(hour_str)
        minutes = int(minute_str)
    except ValueError:
        return None
    if not 0 <= minutes < 60:
        return None
    return max(0, hours) * 60 + minutes


def format_time_label(minutes: int) -> str:
    minutes = max(0, int(minutes))
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def minutes_to_datetime(date_: datetime.date, minutes: int) -> datetime.datetime:
    day_offset = minutes // MINUTES_PER_DAY
    minute_offset = minutes % MINUTES_PER_DAY
    base = datetime.datetime.combine(date_, datetime.time.min, tzinfo=UTC)
    return base + datetime.timedelta(days=day_offset, minutes=minute_offset)


@dataclass(frozen=True)
class CalendarRules:
    """Working-day policy shared by every scheduler function.

    All times are minutes after midnight on the interview day.
    """

    day_start: int = 9 * 60
    day_end: int = 18 * 60
    morning_break_start: int = 10 * 60
    morning_break_minutes: int = 15
    lunch_start: int = 12 * 60
    lunch_minutes: int = 60
    afternoon_break_start: int = 16 * 60
    afternoon_break_minutes: int = 15
    opening_minutes: int = 60
    closing_minutes: int = 60
    closing_start: int = 16 * 60 + 15
    default_theme_minutes: int = 60
    min_adjusted_minutes: int = 30
    max_hours_per_day: int = 8
    system_themes: Tuple[str, ...] = tuple(SYSTEM_THEME_NAMES)
    meetings: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: copy.deepcopy(MEETINGS), compare=False, hash=False
    )

    def __post_init__(self) -> None:
        ordered = [
            self.day_start,
            self.morning_break_start,
            self.morning_break_end,
            self.lunch_start,
            self.lunch_end,
            self.afternoon_break_start,
            self.afternoon_break_end,
            self.day_end,
        ]
        if any(later < earlier for earlier, later in zip(ordered, ordered[1:])):
            raise ValueError("Calendar windows must be ordered: start, morning break, lunch, afternoon break, end.")
        if self.day_end > MINUTES_PER_DAY:
            raise ValueError("Working day must end before midnight.")
        if min(self.opening_minutes, self.closing_minutes, self.default_theme_minutes) <= 0:
            raise ValueError("Meeting and theme durations must be positive.")

    @property
    def morning_break_end(self) -> int:
        return self.morning_break_start + self.morning_break_minutes

    @property
    def lunch_end(self) -> int:
        return self.lunch_start + self.lunch_minutes

    @property
    def afternoon_break_end(self) -> int:
        return self.afternoon_break_start + self.afternoon_break_minutes

    @property
    def break_minutes(self) -> int:
        return self.morning_break_minutes + self.afternoon_break_minutes

    @property
    def working_minutes(self) -> int:
        return self.day_end - self.day_start

    @property
    def effective_minutes_per_day(self) -> int:
        return self.working_minutes - self.lunch_minutes - self.break_minutes

    def pause_windows(self) -> List[Tuple[str, int, int]]:
        return [
            ("morning_break", self.morning_break_start, self.morning_break_end),
            ("lunch", self.lunch_start, self.lunch_end),
            ("afternoon_break", self.afternoon_break_start, self.afternoon_break_end),
        ]

    def is_system_theme(self, name: Optional[str]) -> bool:
        return is_system_theme(name, self.system_themes)

    def meeting(self, kind: str) -> Dict[str, Any]:
        entry = self.meetings.get(kind) or MEETINGS.get(kind) or {}
        return entry if isinstance(entry, dict) else {}


def _label_minutes(value: Any, fallback: str) -> int:
    parsed = parse_time_label(value) if isinstance(value, str) else None
    if parsed is None:
        parsed = parse_time_label(fallback)
    return int(parsed or 0)


def _positive_int(value: Any, fallback: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return fallback
    return number if number > 0 else fallback


def calendar_rules(policy: Optional[Dict] = None) -> CalendarRules:
    """Build the immutable calendar rules from a (possibly partial) policy payload."""
    normalized = _normalize_policy(policy or {})
    cfg = normalized.get("calendar") or {}
    hours = cfg.get("working_hours") or {}
    breaks = cfg.get("breaks") or {}
    default_breaks = CALENDAR_DEFAULTS["breaks"]
    default_hours = CALENDAR_DEFAULTS["working_hours"]
    meetings = normalized.get("meetings") or {}

    def _window(name: str) -> Tuple[int, int]:
        entry = breaks.get(name) if isinstance(breaks.get(name), dict) else {}
        default = default_breaks[name]
        start = _label_minutes(entry.get("start"), default["start"])
        minutes = _positive_int(entry.get("minutes"), default["minutes"])
        return start, minutes

    morning_start, morning_minutes = _window("morning_break")
    lunch_start, lunch_minutes = _window("lunch")
    afternoon_start, afternoon_minutes = _window("afternoon_break")
    opening = meetings.get("opening") if isinstance(meetings.get("opening"), dict) else {}
    closing = meetings.get("closing") if isinstance(meetings.get("closing"), dict) else {}
    return CalendarRules(
        day_start=_label_minutes(hours.get("start"), default_hours["start"]),
        day_end=_label_minutes(hours.get("end"), default_hours["end"]),
        morning_break_start=morning_start,
        morning_break_minutes=morning_minutes,
        lunch_start=lunch_start,
        lunch_minutes=lunch_minutes,
        afternoon_break_start=afternoon_start,
        afternoon_break_minutes=afternoon_minutes,
        opening_minutes=_positive_int(opening.get("minutes"), MEETINGS["opening"]["minutes"]),
        closing_minutes=_positive_int(closing.get("minutes"), MEETINGS["closing"]["minutes"]),
        closing_start=_label_minutes(cfg.get("closing_start"), CALENDAR_DEFAULTS["closing_start"]),
        default_theme_minutes=_positive_int(cfg.get("default_theme_minutes"), CALENDAR_DEFAULTS["default_theme_minutes"]),
        min_adjusted_minutes=_positive_int(cfg.get("min_adjusted_minutes"), CALENDAR_DEFAULTS["min_adjusted_minutes"]),
        max_hours_per_day=_positive_int(cfg.get("max_hours_per_day"), CALENDAR_DEFAULTS["max_hours_per_day"]),
        system_themes=tuple(normalized.get("system_themes") or SYSTEM_THEME_NAMES),
        meetings=copy.deepcopy(meetings),
    )


def load_calendar_rules(conn) -> CalendarRules:
    return calendar_rules(load_active_policy(conn))
