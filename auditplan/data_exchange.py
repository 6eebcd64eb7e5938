from __future__ import annotations

import datetime
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .database import (
    DATA_DIR,
    _ensure_aware,
    bulk_insert_interviews,
    fetch_interviews_by_audit_id,
    fetch_themes,
    get_audit,
    get_or_create_theme,
    record_audit_log,
)
from .policy import parse_time_label

logger = logging.getLogger(__name__)

EXPORT_DIR = DATA_DIR / "exports"
EXPORT_DIR.mkdir(parents=True, exist_ok=True)
DEFAULT_IMPORTED_MINUTES = 30
UNTHEMED_LABEL = "Sans thème"
RANGE_SEPARATOR = "→"


def _timestamp() -> str:
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def _parse_instant(label: str) -> Optional[datetime.datetime]:
    label = (label or "").strip()
    if not label:
        return None
    if label.endswith("Z"):
        label = label[:-1] + "+00:00"
    try:
        return _ensure_aware(datetime.datetime.fromisoformat(label))
    except ValueError:
        return None


def parse_date_range(value: Any) -> Tuple[Optional[datetime.datetime], int]:
    """Split a ``start → end`` label into a start instant and a duration in minutes.

    The end may be a full timestamp or an ``HH:MM`` label on the start day.
    Missing or unusable ends give the default imported duration.
    """
    parts = [part.strip() for part in str(value or "").split(RANGE_SEPARATOR)]
    start = _parse_instant(parts[0]) if parts else None
    if start is None:
        return None, 0
    duration = DEFAULT_IMPORTED_MINUTES
    if len(parts) > 1 and parts[1]:
        end = _parse_instant(parts[1])
        if end is None:
            minutes = parse_time_label(parts[1])
            if minutes is not None:
                end = datetime.datetime.combine(start.date(), datetime.time.min, tzinfo=start.tzinfo)
                end += datetime.timedelta(minutes=minutes)
        if end is not None and end > start:
            duration = int(round((end - start).total_seconds() / 60))
    return start, duration


def _rows_from_payload(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("interviews") or payload.get("plan") or []
    return [row for row in payload or [] if isinstance(row, dict)]


# ---------------------------------------------------------------------------
# Standard audit plan import/export


def import_standard_audit_plan(session, audit_id: str, plan_rows: Iterable[Dict[str, Any]], *, actor: str = "import") -> int:
    """Create interviews from standard plan rows (Thème, Titre, Date-Heure, Clause/Contrôle).

    Unknown theme names are created on the fly; rows without a parsable start
    are skipped. Returns the number of interviews created.
    """
    if not get_audit(session, audit_id):
        raise LookupError(f"Audit {audit_id} was not found.")
    themes_by_name = {theme.name: theme for theme in fetch_themes(session)}
    rows: List[Dict[str, Any]] = []
    skipped = 0
    for entry in _rows_from_payload(plan_rows):
        theme_name = (entry.get("Thème") or "").strip() or UNTHEMED_LABEL
        start, duration = parse_date_range(entry.get("Date-Heure"))
        if start is None:
            skipped += 1
            continue
        theme = themes_by_name.get(theme_name)
        if theme is None:
            theme = get_or_create_theme(session, theme_name)
            themes_by_name[theme_name] = theme
        rows.append(
            {
                "theme_id": theme.id,
                "title": (entry.get("Titre") or "").strip() or f"Interview: {theme_name}",
                "description": f"Thématique: {theme_name}",
                "start_time": start,
                "duration_minutes": duration,
                "control_refs": (entry.get("Clause/Contrôle") or "").strip(),
                "kind": "interview",
                "auto_generated": False,
            }
        )
    if skipped:
        logger.warning("Skipped %s plan row(s) without a usable Date-Heure for audit %s", skipped, audit_id)
    if not rows:
        return 0
    created = bulk_insert_interviews(session, audit_id, rows)
    record_audit_log(
        session,
        actor,
        "import_plan",
        target_type="Audit",
        target_id=audit_id,
        payload={"created": len(created), "skipped": skipped},
    )
    return len(created)


def import_standard_audit_plan_file(session, audit_id: str, file_path: Path, *, actor: str = "import") -> int:
    data = json.loads(Path(file_path).read_text(encoding="utf-8"))
    return import_standard_audit_plan(session, audit_id, _rows_from_payload(data), actor=actor)


def audit_plan_payload(session, audit_id: str) -> Dict[str, Any]:
    audit = get_audit(session, audit_id)
    if not audit:
        raise LookupError(f"Audit {audit_id} was not found.")
    interviews = []
    for row in fetch_interviews_by_audit_id(session, audit_id):
        start = row["start_time"]
        interviews.append(
            {
                "id": row["id"],
                "theme_id": row["theme_id"],
                "kind": row["kind"],
                "title": row["title"],
                "description": row["description"],
                "start_time": start.isoformat(),
                "end_time": (start + datetime.timedelta(minutes=row["duration_minutes"])).isoformat(),
                "duration_minutes": row["duration_minutes"],
                "location": row["location"],
                "meeting_link": row["meeting_link"],
                "control_refs": row["control_refs"],
                "auto_generated": row["auto_generated"],
            }
        )
    return {
        "generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "audit": {
            "id": audit.id,
            "company_name": audit.company_name,
            "framework": audit.framework,
            "start_date": audit.start_date.isoformat() if audit.start_date else None,
            "end_date": audit.end_date.isoformat() if audit.end_date else None,
        },
        "interviews": interviews,
    }


def export_audit_plan(session, audit_id: str, *, directory: Optional[Path] = None) -> Path:
    payload = audit_plan_payload(session, audit_id)
    target_dir = Path(directory) if directory else EXPORT_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    filename = target_dir / f"audit_{audit_id[:8]}_plan_{_timestamp()}.json"
    filename.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return filename
