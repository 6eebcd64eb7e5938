from __future__ import annotations

import argparse
import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from auditplan.data_exchange import export_audit_plan
from auditplan.database import (
    SessionLocal,
    create_audit,
    fetch_interviews_by_audit_id,
    fetch_themes,
    init_database,
    set_audit_status,
)
from auditplan.generator.api import generate_audit_plan
from auditplan.generator.calendar import default_plan_selection
from auditplan.policy import load_calendar_rules
from auditplan.scripts.seed_themes import seed_themes
from auditplan.validation import validate_audit_plan


def _default_start(today: datetime.date | None = None) -> datetime.date:
    base = today or datetime.date.today()
    delta = (7 - base.weekday()) % 7
    return base + datetime.timedelta(days=delta or 7)


def _format_slot(row: Dict) -> str:
    start = row["start_time"]
    end = start + datetime.timedelta(minutes=row["duration_minutes"])
    return f"{start:%a %d/%m %H:%M}-{end:%H:%M} {row['title']}"


def run_workflow(
    start: datetime.date,
    end: datetime.date,
    actor: str,
    company: str,
    *,
    session_factory: Callable = SessionLocal,
    export_dir: Optional[Path] = None,
) -> Path:
    seed_themes(session_factory)
    with session_factory() as session:
        audit = create_audit(session, company_name=company, framework="ISO 27001", start_date=start, end_date=end)
        options = default_plan_selection(fetch_themes(session), start, end, load_calendar_rules(session))
    print(f"[workflow] Created audit {audit.id} for {company} ({start} -> {end}).")
    outcome = generate_audit_plan(session_factory, audit.id, start, end, options, actor=actor)
    if not outcome:
        raise SystemExit(f"[workflow] Generation failed: {outcome.message}")
    print(f"[workflow] {outcome.message}")
    for warning in outcome.warnings:
        print(f"[workflow][warning] {warning}")
    with session_factory() as session:
        rows = fetch_interviews_by_audit_id(session, audit.id)
        report = validate_audit_plan(session, audit.id)
        errors: List[Dict] = report["issues"]
        if errors:
            for issue in errors:
                print(f"[workflow][validation-error] {issue['message']}")
            raise SystemExit(1)
        set_audit_status(session, audit.id, "planned")
        path = export_audit_plan(session, audit.id, directory=export_dir)
    for row in rows:
        print(f"[workflow]   {_format_slot(row)}")
    print("[workflow] Validation passed, audit marked as planned.")
    print(f"[workflow] Exported plan -> {path}")
    return path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Seed the theme catalogue, plan a sample audit, validate it and export the calendar."
    )
    parser.add_argument("--start", help="ISO date (YYYY-MM-DD) of the first audit day. Defaults to next Monday.")
    parser.add_argument("--days", type=int, default=5, help="Calendar length of the audit in days.")
    parser.add_argument("--company", default="Démo SAS", help="Audited company name.")
    parser.add_argument("--actor", default="plan_smoke", help="Audit trail actor name.")
    return parser.parse_args()


def main() -> None:
    init_database()
    args = parse_args()
    if args.start:
        try:
            start = datetime.date.fromisoformat(args.start)
        except ValueError as exc:
            raise SystemExit(f"Invalid --start value: {exc}") from exc
    else:
        start = _default_start()
    end = start + datetime.timedelta(days=max(1, args.days) - 1)
    print(f"[workflow] Audit window: {start} -> {end}")
    run_workflow(start, end, actor=args.actor, company=args.company)


if __name__ == "__main__":
    main()
