from __future__ import annotations

import datetime
import json
import unittest
from unittest import mock

from sqlalchemy import create_engine, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from auditplan.database import (
    AuditLog,
    Base,
    Interview,
    InterviewParticipant,
    add_interview,
    add_participant,
    create_audit,
    fetch_interviews_by_audit_id,
    fetch_themes,
    get_or_create_theme,
)
from auditplan.generator.api import build_request, commit_plan, generate_audit_plan
from auditplan.generator.engine import generate_preview
from auditplan.generator.models import InvalidScheduleRequest
from auditplan.policy import CalendarRules

UTC = datetime.timezone.utc
MONDAY = datetime.date(2024, 3, 4)
FRIDAY = datetime.date(2024, 3, 8)


class PlanCommitTests(unittest.TestCase):
    """Persisting generated plans through the store."""

    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.session = self.session_factory()
        self.audit = create_audit(
            self.session,
            company_name="Démo SAS",
            framework="ISO 27001",
            start_date=MONDAY,
            end_date=FRIDAY,
        )
        self.governance = get_or_create_theme(self.session, "Gouvernance")
        self.network = get_or_create_theme(self.session, "Sécurité réseau")
        self.admin = get_or_create_theme(self.session, "ADMIN")
        self.rules = CalendarRules()

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def _options(self, **overrides):
        options = {
            "topic_ids": [self.governance.id, self.network.id, self.admin.id],
            "selected_days": ["2024-03-04", "2024-03-05"],
            "theme_durations": {self.governance.id: 90},
            "include_opening_closing": True,
        }
        options.update(overrides)
        return options

    def _request(self, **overrides):
        return build_request(self.audit.id, MONDAY, FRIDAY, self._options(**overrides))

    def _stored(self):
        return fetch_interviews_by_audit_id(self.session, self.audit.id)

    def test_build_request_accepts_camel_case_options(self) -> None:
        request = build_request(
            self.audit.id,
            "2024-03-04",
            "2024-03-08",
            {
                "topicIds": [self.governance.id],
                "selectedDays": ["2024-03-05T00:00:00Z"],
                "themeDurations": {self.governance.id: 45},
                "maxHoursPerDay": 6,
                "includeOpeningClosing": False,
            },
        )
        self.assertEqual(request.selected_days, (datetime.date(2024, 3, 5),))
        self.assertEqual(request.theme_durations, {self.governance.id: 45})
        self.assertEqual(request.max_hours_per_day, 6)
        self.assertFalse(request.include_opening_closing)

    def test_build_request_rejects_days_outside_range(self) -> None:
        with self.assertRaises(InvalidScheduleRequest):
            build_request(self.audit.id, MONDAY, FRIDAY, self._options(selected_days=["2024-03-09"]))
        with self.assertRaises(InvalidScheduleRequest):
            build_request(self.audit.id, MONDAY, FRIDAY, self._options(selected_days=["2024-03-11"]))

    def test_commit_stores_exactly_the_preview(self) -> None:
        request = self._request()
        preview = generate_preview(request, fetch_themes(self.session), self.rules)

        self.assertTrue(commit_plan(self.session, request, fetch_themes(self.session), self.rules, actor="tester"))

        stored = self._stored()
        self.assertEqual(
            [(row["kind"], row["title"], row["start_time"], row["duration_minutes"]) for row in stored],
            [(item.kind, item.title, item.start, item.duration_minutes) for item in preview],
        )
        self.assertTrue(all(row["auto_generated"] for row in stored))
        interview_themes = {row["theme_id"] for row in stored if row["kind"] == "interview"}
        self.assertEqual(interview_themes, {self.governance.id, self.network.id})

    def test_recommit_replaces_generated_rows_but_keeps_manual_ones(self) -> None:
        request = self._request()
        themes = fetch_themes(self.session)
        add_interview(
            self.session,
            {
                "audit_id": self.audit.id,
                "title": "Visite du datacenter",
                "start_time": datetime.datetime(2024, 3, 7, 14, 0, tzinfo=UTC),
                "duration_minutes": 60,
            },
        )
        self.assertTrue(commit_plan(self.session, request, themes, self.rules))
        first_count = len(self._stored())
        self.assertTrue(commit_plan(self.session, request, themes, self.rules))

        stored = self._stored()
        self.assertEqual(len(stored), first_count)
        manual = [row for row in stored if not row["auto_generated"]]
        self.assertEqual([row["title"] for row in manual], ["Visite du datacenter"])

    def test_failed_cleanup_still_inserts_the_plan(self) -> None:
        request = self._request()
        themes = fetch_themes(self.session)
        expected = len(generate_preview(request, themes, self.rules))
        with mock.patch(
            "auditplan.generator.api.bulk_delete_interviews",
            side_effect=SQLAlchemyError("database is locked"),
        ):
            with self.assertLogs("auditplan.generator.api", level="WARNING"):
                self.assertTrue(commit_plan(self.session, request, themes, self.rules))
        self.assertEqual(len(self._stored()), expected)

    def test_failed_insert_reports_failure(self) -> None:
        request = self._request()
        with mock.patch(
            "auditplan.generator.api.bulk_insert_interviews",
            side_effect=SQLAlchemyError("disk full"),
        ):
            self.assertFalse(commit_plan(self.session, request, fetch_themes(self.session), self.rules))
        self.assertEqual(self._stored(), [])

    def test_invalid_audit_id_or_missing_days_are_refused(self) -> None:
        themes = fetch_themes(self.session)
        bad_id = build_request("not-a-uuid", MONDAY, FRIDAY, self._options())
        self.assertFalse(commit_plan(self.session, bad_id, themes, self.rules))
        no_days = self._request(selected_days=[])
        self.assertFalse(commit_plan(self.session, no_days, themes, self.rules))
        self.assertEqual(self._stored(), [])

    def test_empty_plan_keeps_the_previous_one(self) -> None:
        themes = fetch_themes(self.session)
        self.assertTrue(commit_plan(self.session, self._request(), themes, self.rules))
        before = self._stored()
        with self.assertLogs("auditplan.generator.api", level="WARNING"):
            self.assertFalse(commit_plan(self.session, self._request(topic_ids=[]), themes, self.rules))
        self.assertEqual(self._stored(), before)

    def test_recommit_drops_participants_of_replaced_interviews(self) -> None:
        themes = fetch_themes(self.session)
        self.assertTrue(commit_plan(self.session, self._request(), themes, self.rules))
        first = [row for row in self._stored() if row["kind"] == "interview"][0]
        add_participant(self.session, first["id"], "alice", role="auditee")

        self.assertTrue(commit_plan(self.session, self._request(), themes, self.rules))

        self.assertEqual(self.session.scalars(select(InterviewParticipant)).all(), [])
        self.assertNotIn(first["id"], [row["id"] for row in self._stored()])

    def test_max_hours_default_comes_from_the_rules(self) -> None:
        request = build_request(self.audit.id, MONDAY, FRIDAY, {}, CalendarRules(max_hours_per_day=6))
        self.assertEqual(request.max_hours_per_day, 6)
        explicit = build_request(self.audit.id, MONDAY, FRIDAY, {"maxHoursPerDay": 4}, CalendarRules(max_hours_per_day=6))
        self.assertEqual(explicit.max_hours_per_day, 4)

    def test_commit_is_recorded_in_audit_log(self) -> None:
        self.assertTrue(commit_plan(self.session, self._request(), fetch_themes(self.session), self.rules, actor="lead"))
        log = self.session.scalars(select(AuditLog).where(AuditLog.action == "generate_plan")).one()
        self.assertEqual(log.user_id, "lead")
        self.assertEqual(log.target_id, self.audit.id)
        payload = json.loads(log.payloadJSON)
        self.assertEqual(payload["days"], ["2024-03-04", "2024-03-05"])
        self.assertEqual(payload["unscheduled"], [])


class GenerateAuditPlanTests(unittest.TestCase):
    """The caller-facing entry point never raises."""

    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        with self.session_factory() as session:
            self.audit_id = create_audit(session, company_name="Démo SAS", start_date=MONDAY, end_date=FRIDAY).id
            self.theme_ids = [
                get_or_create_theme(session, "Gouvernance").id,
                get_or_create_theme(session, "Contrôle d'accès").id,
            ]

    def tearDown(self) -> None:
        self.engine.dispose()

    def _generate(self, **options):
        payload = {"topic_ids": self.theme_ids, "selected_days": ["2024-03-04", "2024-03-05"]}
        payload.update(options)
        return generate_audit_plan(self.session_factory, self.audit_id, "2024-03-04", "2024-03-08", payload)

    def test_successful_generation(self) -> None:
        outcome = self._generate()
        self.assertTrue(outcome)
        with self.session_factory() as session:
            rows = session.scalars(select(Interview).where(Interview.audit_id == self.audit_id)).all()
        self.assertEqual(outcome.created, len(rows))
        self.assertEqual(outcome.estimate.required_days, 1)
        self.assertEqual(outcome.warnings, [])

    def test_no_selected_days(self) -> None:
        outcome = self._generate(selected_days=[])
        self.assertFalse(outcome)
        self.assertIn("day", outcome.message)

    def test_insufficient_capacity(self) -> None:
        durations = {theme_id: 480 for theme_id in self.theme_ids}
        outcome = self._generate(selected_days=["2024-03-04"], theme_durations=durations)
        self.assertFalse(outcome)
        self.assertEqual(outcome.estimate.required_days, 3)
        with self.session_factory() as session:
            self.assertEqual(fetch_interviews_by_audit_id(session, self.audit_id), [])

    def test_plan_that_does_not_fit_is_not_stored(self) -> None:
        with self.session_factory() as session:
            extra = [get_or_create_theme(session, f"Thème {index}").id for index in range(1, 12)]
        theme_ids = self.theme_ids + extra
        outcome = self._generate(topic_ids=theme_ids)

        self.assertFalse(outcome)
        self.assertEqual(outcome.estimate.required_days, 2)
        self.assertIn(theme_ids[-1], outcome.message)
        self.assertEqual(len(outcome.warnings), 1)
        with self.session_factory() as session:
            self.assertEqual(fetch_interviews_by_audit_id(session, self.audit_id), [])

    def test_empty_theme_selection_keeps_the_stored_plan(self) -> None:
        self.assertTrue(self._generate())
        with self.session_factory() as session:
            before = fetch_interviews_by_audit_id(session, self.audit_id)

        outcome = self._generate(topic_ids=[])

        self.assertFalse(outcome)
        self.assertIn("theme", outcome.message)
        with self.session_factory() as session:
            self.assertEqual(fetch_interviews_by_audit_id(session, self.audit_id), before)

    def test_policy_max_hours_reaches_the_estimate(self) -> None:
        outcome = generate_audit_plan(
            self.session_factory,
            self.audit_id,
            "2024-03-04",
            "2024-03-08",
            {"topic_ids": self.theme_ids, "selected_days": ["2024-03-04"]},
            rules=CalendarRules(max_hours_per_day=6),
        )
        self.assertTrue(outcome)
        self.assertEqual(outcome.estimate.available_hours_per_day, 6.0)

    def test_unknown_theme_and_bad_duration(self) -> None:
        self.assertFalse(self._generate(topic_ids=["missing-theme"]))
        self.assertFalse(self._generate(theme_durations={self.theme_ids[0]: -30}))

    def test_invalid_audit_id(self) -> None:
        outcome = generate_audit_plan(self.session_factory, "audit-1", "2024-03-04", "2024-03-08", {})
        self.assertFalse(outcome)
        self.assertEqual(outcome.created, 0)

    def test_days_outside_range(self) -> None:
        outcome = self._generate(selected_days=["2024-03-12"])
        self.assertFalse(outcome)


if __name__ == "__main__":
    unittest.main()
