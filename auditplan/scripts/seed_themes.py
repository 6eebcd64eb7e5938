from __future__ import annotations

from typing import Dict, List, Tuple

from sqlalchemy import select

from auditplan.database import SessionLocal, Theme, Topic, init_database
from auditplan.policy import ensure_default_policy
from auditplan.policy_defaults import DEFAULT_THEMES


SAMPLE_TOPICS: List[Dict[str, str]] = [
    {"name": "Revue documentaire", "description": "Lecture des politiques et procédures"},
    {"name": "Entretiens métiers", "description": "Échanges avec les responsables opérationnels"},
    {"name": "Tests techniques", "description": "Vérification des configurations et journaux"},
]


def seed_catalogue(session, themes: List[Dict[str, str]], topics: List[Dict[str, str]]) -> Tuple[int, int]:
    """Insert missing themes and topics by name; existing rows keep their ids."""
    created = 0
    refreshed = 0
    for entry in themes:
        name = (entry.get("name") or "").strip()
        if not name:
            print("[seed] Skipping a theme without a name.")
            continue
        theme = session.scalars(select(Theme).where(Theme.name == name)).first()
        if theme is None:
            session.add(Theme(name=name, description=entry.get("description", "")))
            created += 1
        else:
            theme.description = entry.get("description", theme.description) or ""
            refreshed += 1
    for entry in topics:
        name = entry["name"]
        if session.scalars(select(Topic).where(Topic.name == name)).first() is None:
            session.add(Topic(name=name, description=entry.get("description", "")))
            created += 1
    session.commit()
    return created, refreshed


def seed_themes(session_factory=SessionLocal) -> Tuple[int, int]:
    ensure_default_policy(session_factory)
    with session_factory() as session:
        created, refreshed = seed_catalogue(session, DEFAULT_THEMES, SAMPLE_TOPICS)
    print(f"[seed] Created {created} catalogue rows, refreshed {refreshed} themes.")
    return created, refreshed


if __name__ == "__main__":
    init_database()
    seed_themes()
