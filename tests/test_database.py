from __future__ import annotations

import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from auditplan.database import (
    Base,
    Interview,
    add_interview,
    add_participant,
    audit_has_plan,
    bulk_delete_interviews,
    bulk_insert_interviews,
    create_audit,
    delete_interview,
    fetch_interviews_by_audit_id,
    get_audit,
    get_or_create_theme,
    init_database,
    is_valid_uuid,
    list_participants,
    remove_participant,
    set_audit_status,
    update_interview,
)

UTC = datetime.timezone.utc


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:", future=True)
    init_database(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    with factory() as db_session:
        yield db_session
    engine.dispose()


@pytest.fixture()
def audit(session):
    return create_audit(
        session,
        company_name="  Démo SAS ",
        framework="ISO 27001",
        start_date=datetime.date(2024, 3, 4),
        end_date=datetime.date(2024, 3, 8),
    )


def _slot(hour: int, minute: int = 0, **extra):
    payload = {
        "title": f"Slot {hour:02d}:{minute:02d}",
        "start_time": datetime.datetime(2024, 3, 4, hour, minute, tzinfo=UTC),
        "duration_minutes": 60,
    }
    payload.update(extra)
    return payload


def test_create_audit_normalizes_and_validates(session, audit):
    assert is_valid_uuid(audit.id)
    assert audit.company_name == "Démo SAS"
    assert audit.status == "draft"
    assert get_audit(session, audit.id) is audit
    assert get_audit(session, "nope") is None

    with pytest.raises(ValueError):
        create_audit(session, company_name="X", start_date=datetime.date(2024, 3, 8), end_date=datetime.date(2024, 3, 4))
    with pytest.raises(ValueError):
        create_audit(session, company_name="X", status="archived")
    with pytest.raises(ValueError):
        create_audit(session, company_name="X", audit_id="123")


def test_set_audit_status(session, audit):
    assert set_audit_status(session, audit.id, "Planned").status == "planned"
    with pytest.raises(ValueError):
        set_audit_status(session, audit.id, "closed")


def test_get_or_create_theme_is_idempotent(session):
    first = get_or_create_theme(session, "Gouvernance", "Politiques")
    again = get_or_create_theme(session, " Gouvernance ")
    assert first.id == again.id
    with pytest.raises(ValueError):
        get_or_create_theme(session, "   ")


def test_fetch_orders_by_start_and_skips_malformed_rows(session, audit):
    bulk_insert_interviews(session, audit.id, [_slot(14), _slot(9), _slot(11)])
    session.add(Interview(audit_id=audit.id, title="Sans horaire", start_time=None, duration_minutes=30))
    session.add(
        Interview(
            audit_id=audit.id,
            title="Durée nulle",
            start_time=datetime.datetime(2024, 3, 4, 8, 0, tzinfo=UTC),
            duration_minutes=0,
        )
    )
    session.commit()

    rows = fetch_interviews_by_audit_id(session, audit.id)

    assert [row["title"] for row in rows] == ["Slot 09:00", "Slot 11:00", "Slot 14:00"]
    assert all(row["start_time"].tzinfo is not None for row in rows)
    assert audit_has_plan(session, audit.id)


def test_fetch_with_malformed_audit_id_returns_nothing(session):
    assert fetch_interviews_by_audit_id(session, "not-a-uuid") == []
    assert fetch_interviews_by_audit_id(session, None) == []


def test_bulk_insert_drops_invalid_rows_and_rejects_empty_batches(session, audit):
    created = bulk_insert_interviews(
        session,
        audit.id,
        [_slot(9), {"title": "Sans date", "duration_minutes": 30}, _slot(10, duration_minutes=0)],
    )
    assert [row["title"] for row in created] == ["Slot 09:00"]
    with pytest.raises(ValueError):
        bulk_insert_interviews(session, audit.id, [{"title": "Sans date"}])


def test_bulk_delete_only_generated_rows_by_default(session, audit):
    bulk_insert_interviews(session, audit.id, [_slot(9, auto_generated=True), _slot(11, auto_generated=True)])
    add_interview(session, dict(_slot(15), audit_id=audit.id))

    assert bulk_delete_interviews(session, audit.id) == 2
    assert [row["title"] for row in fetch_interviews_by_audit_id(session, audit.id)] == ["Slot 15:00"]
    assert bulk_delete_interviews(session, audit.id, auto_generated_only=False) == 1
    assert not audit_has_plan(session, audit.id)


def test_add_interview_validates_payload(session, audit):
    with pytest.raises(ValueError):
        add_interview(session, _slot(9))
    with pytest.raises(ValueError):
        add_interview(session, {"audit_id": audit.id, "title": "Sans date", "duration_minutes": 30})
    row = add_interview(session, dict(_slot(9), audit_id=audit.id, kind="unknown"))
    assert row["kind"] == "manual"
    assert row["auto_generated"] is False


def test_update_interview_marks_row_as_manual(session, audit):
    created = bulk_insert_interviews(session, audit.id, [_slot(9, auto_generated=True, kind="interview")])[0]

    updated = update_interview(
        session,
        created["id"],
        {"title": "Revue PSSI", "duration_minutes": 45, "start_time": datetime.datetime(2024, 3, 4, 10, 30)},
    )

    assert updated["title"] == "Revue PSSI"
    assert updated["duration_minutes"] == 45
    assert updated["start_time"] == datetime.datetime(2024, 3, 4, 10, 30, tzinfo=UTC)
    assert updated["auto_generated"] is False
    assert updated["kind"] == "interview"


def test_update_interview_errors(session, audit):
    created = bulk_insert_interviews(session, audit.id, [_slot(9)])[0]
    with pytest.raises(LookupError):
        update_interview(session, "missing", {"title": "X"})
    with pytest.raises(TypeError):
        update_interview(session, created["id"], {"start_time": "2024-03-04T10:00:00"})
    with pytest.raises(ValueError):
        update_interview(session, created["id"], {"duration_minutes": 0})
    with pytest.raises(ValueError):
        update_interview(session, created["id"], {"title": ""})


def test_delete_interview(session, audit):
    created = bulk_insert_interviews(session, audit.id, [_slot(9)])[0]
    assert delete_interview(session, created["id"]) is True
    assert delete_interview(session, created["id"]) is False


def test_participants_lifecycle(session, audit):
    created = bulk_insert_interviews(session, audit.id, [_slot(9)])[0]

    add_participant(session, created["id"], "rssi@example.com", "interviewee")
    add_participant(session, created["id"], "auditor@example.com", "auditor")
    add_participant(session, created["id"], "rssi@example.com", "lead")

    participants = list_participants(session, created["id"])
    assert [(row["user_id"], row["role"]) for row in participants] == [
        ("rssi@example.com", "lead"),
        ("auditor@example.com", "auditor"),
    ]
    assert remove_participant(session, created["id"], "auditor@example.com") is True
    assert remove_participant(session, created["id"], "auditor@example.com") is False
    with pytest.raises(LookupError):
        add_participant(session, "missing", "someone")
