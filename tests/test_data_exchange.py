from __future__ import annotations

import datetime
import json

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auditplan.data_exchange import (
    export_audit_plan,
    import_standard_audit_plan,
    import_standard_audit_plan_file,
    parse_date_range,
)
from auditplan.database import Base, Theme, create_audit, fetch_interviews_by_audit_id, get_or_create_theme

UTC = datetime.timezone.utc

PLAN_ROWS = [
    {
        "Thème": "Gouvernance",
        "Titre": "Revue de la PSSI",
        "Date-Heure": "2024-03-04T09:00:00 → 2024-03-04T10:30:00",
        "Clause/Contrôle": "A.5.1",
    },
    {
        "Thème": "Fournisseurs",
        "Titre": "Contrats d'infogérance",
        "Date-Heure": "2024-03-05T14:00:00",
        "Clause/Contrôle": "A.5.19",
    },
    {"Thème": "Gouvernance", "Titre": "Ligne cassée", "Date-Heure": "pas une date"},
]


@pytest.fixture()
def memory_db():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    with factory() as session:
        yield session
    engine.dispose()


@pytest.fixture()
def audit(memory_db):
    return create_audit(memory_db, company_name="Démo SAS", start_date=datetime.date(2024, 3, 4))


def test_parse_date_range_variants():
    start, minutes = parse_date_range("2024-03-04T09:00:00Z → 2024-03-04T10:15:00Z")
    assert start == datetime.datetime(2024, 3, 4, 9, 0, tzinfo=UTC)
    assert minutes == 75
    assert parse_date_range("2024-03-04T09:00:00 → 11:00")[1] == 120
    assert parse_date_range("2024-03-04T09:00:00")[1] == 30
    assert parse_date_range("2024-03-04T09:00:00 → n/a")[1] == 30
    assert parse_date_range("") == (None, 0)


def test_import_creates_interviews_and_missing_themes(memory_db, audit):
    get_or_create_theme(memory_db, "Gouvernance")

    created = import_standard_audit_plan(memory_db, audit.id, PLAN_ROWS, actor="tester")

    assert created == 2
    rows = fetch_interviews_by_audit_id(memory_db, audit.id)
    assert [(row["title"], row["duration_minutes"], row["control_refs"]) for row in rows] == [
        ("Revue de la PSSI", 90, "A.5.1"),
        ("Contrats d'infogérance", 30, "A.5.19"),
    ]
    assert rows[0]["description"] == "Thématique: Gouvernance"
    assert all(row["auto_generated"] is False for row in rows)
    names = set(memory_db.scalars(select(Theme.name)))
    assert names == {"Gouvernance", "Fournisseurs"}


def test_import_unknown_audit_raises(memory_db):
    with pytest.raises(LookupError):
        import_standard_audit_plan(memory_db, "3f1c2a9e-5b7d-4c21-9a8e-0d6f4b2c1e77", PLAN_ROWS)


def test_import_without_usable_rows_creates_nothing(memory_db, audit):
    assert import_standard_audit_plan(memory_db, audit.id, [PLAN_ROWS[2]]) == 0
    assert fetch_interviews_by_audit_id(memory_db, audit.id) == []


def test_export_then_import_file(memory_db, audit, tmp_path):
    import_standard_audit_plan(memory_db, audit.id, PLAN_ROWS)

    path = export_audit_plan(memory_db, audit.id, directory=tmp_path)

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert path.parent == tmp_path
    assert payload["audit"]["company_name"] == "Démo SAS"
    assert [item["title"] for item in payload["interviews"]] == ["Revue de la PSSI", "Contrats d'infogérance"]
    assert payload["interviews"][0]["end_time"].startswith("2024-03-04T10:30")

    standard = tmp_path / "plan.json"
    standard.write_text(json.dumps({"interviews": PLAN_ROWS[:1]}, ensure_ascii=False), encoding="utf-8")
    assert import_standard_audit_plan_file(memory_db, audit.id, standard) == 1
    assert len(fetch_interviews_by_audit_id(memory_db, audit.id)) == 3
