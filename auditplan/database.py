from __future__ import annotations

import datetime
import json
import logging
import re
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker


logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
DATABASE_URL = f"sqlite:///{(DATA_DIR / 'auditplan.db').as_posix()}"
AUDIT_STATUS_CHOICES = {"draft", "planned", "in_progress", "completed"}
INTERVIEW_KINDS = {"opening", "closing", "morning_break", "lunch", "afternoon_break", "interview", "manual"}
UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
UTC = datetime.timezone.utc


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


def is_valid_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    return bool(UUID_PATTERN.match(value.strip()))


class Base(DeclarativeBase):
    """Metadata for every table living in auditplan.db."""

    pass


class Audit(Base):
    __tablename__ = "audits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    company_name: Mapped[str] = mapped_column(String(160), nullable=False, default="")
    framework: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    start_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    interviews: Mapped[List["Interview"]] = relationship(back_populates="audit", cascade="all, delete-orphan")


class Theme(Base):
    __tablename__ = "themes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    __table_args__ = (UniqueConstraint("name", name="uq_themes_name"),)


class Topic(Base):
    __tablename__ = "topics"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")


class Interview(Base):
    __tablename__ = "interviews"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    audit_id: Mapped[str] = mapped_column(ForeignKey("audits.id", ondelete="CASCADE"), nullable=False, index=True)
    theme_id: Mapped[str | None] = mapped_column(ForeignKey("themes.id", ondelete="SET NULL"), nullable=True)
    topic_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    # Nullable only because imported legacy rows may lack a start.
    start_time: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    location: Mapped[str] = mapped_column(String(160), nullable=False, default="")
    meeting_link: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    control_refs: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    kind: Mapped[str] = mapped_column(String(24), nullable=False, default="manual")
    auto_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    audit: Mapped[Audit] = relationship(back_populates="interviews")
    participants: Mapped[List["InterviewParticipant"]] = relationship(
        back_populates="interview", cascade="all, delete-orphan"
    )


class InterviewParticipant(Base):
    __tablename__ = "interview_participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    interview_id: Mapped[str] = mapped_column(ForeignKey("interviews.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    role: Mapped[str] = mapped_column(String(40), nullable=False, default="participant")
    notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    interview: Mapped[Interview] = relationship(back_populates="participants")

    __table_args__ = (UniqueConstraint("interview_id", "user_id", name="uq_participant_interview_user"),)


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (UniqueConstraint("name", name="uq_policies_name"),)

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Interview")
    target_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


engine = create_engine(DATABASE_URL, echo=False, future=True)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database(bind=None) -> None:
    target = bind or engine
    Base.metadata.create_all(target)
    with target.begin() as conn:
        columns = {row[1]: True for row in conn.execute(text("PRAGMA table_info(interviews)"))}
        if "kind" not in columns:
            conn.execute(text("ALTER TABLE interviews ADD COLUMN kind VARCHAR(24) NOT NULL DEFAULT 'manual'"))
        if "auto_generated" not in columns:
            conn.execute(text("ALTER TABLE interviews ADD COLUMN auto_generated BOOLEAN NOT NULL DEFAULT 0"))
        if "control_refs" not in columns:
            conn.execute(text("ALTER TABLE interviews ADD COLUMN control_refs VARCHAR(255) NOT NULL DEFAULT ''"))


def _ensure_aware(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Audits


def create_audit(
    session,
    *,
    company_name: str,
    framework: str = "",
    start_date: Optional[datetime.date] = None,
    end_date: Optional[datetime.date] = None,
    audit_id: Optional[str] = None,
    status: str = "draft",
) -> Audit:
    if audit_id is not None and not is_valid_uuid(audit_id):
        raise ValueError(f"Invalid audit id '{audit_id}'.")
    if start_date and end_date and end_date < start_date:
        raise ValueError("Audit end date must not precede its start date.")
    normalized_status = (status or "draft").strip().lower()
    if normalized_status not in AUDIT_STATUS_CHOICES:
        raise ValueError(f"Unsupported audit status '{status}'.")
    audit = Audit(
        id=audit_id or _new_id(),
        company_name=(company_name or "").strip(),
        framework=(framework or "").strip(),
        start_date=start_date,
        end_date=end_date,
        status=normalized_status,
    )
    session.add(audit)
    session.commit()
    session.refresh(audit)
    return audit


def get_audit(session, audit_id: str) -> Optional[Audit]:
    if not is_valid_uuid(audit_id):
        return None
    return session.get(Audit, audit_id)


def set_audit_status(session, audit_id: str, status: str) -> Audit:
    audit = get_audit(session, audit_id)
    if not audit:
        raise ValueError(f"Audit {audit_id} was not found.")
    normalized = (status or "").strip().lower()
    if normalized not in AUDIT_STATUS_CHOICES:
        raise ValueError(f"Unsupported audit status '{status}'.")
    audit.status = normalized
    session.commit()
    session.refresh(audit)
    return audit


def audit_to_dict(audit: Audit) -> Dict[str, Any]:
    return {
        "id": audit.id,
        "company_name": audit.company_name,
        "framework": audit.framework,
        "start_date": audit.start_date.isoformat() if audit.start_date else None,
        "end_date": audit.end_date.isoformat() if audit.end_date else None,
        "status": audit.status,
    }


# ---------------------------------------------------------------------------
# Reference data


def fetch_themes(session) -> List[Theme]:
    stmt = select(Theme).order_by(Theme.name.asc(), Theme.id.asc())
    return list(session.scalars(stmt))


def fetch_topics(session) -> List[Topic]:
    stmt = select(Topic).order_by(Topic.name.asc(), Topic.id.asc())
    return list(session.scalars(stmt))


def get_or_create_theme(session, name: str, description: str = "") -> Theme:
    label = (name or "").strip()
    if not label:
        raise ValueError("Theme name is required.")
    existing = session.scalars(select(Theme).where(Theme.name == label)).first()
    if existing:
        return existing
    theme = Theme(name=label, description=(description or "").strip())
    session.add(theme)
    session.commit()
    session.refresh(theme)
    return theme


# ---------------------------------------------------------------------------
# Interviews


def _interview_to_dict(interview: Interview) -> Dict[str, Any]:
    if interview.start_time is None:
        raise ValueError(f"Interview {interview.id} has no start time.")
    if not interview.duration_minutes or interview.duration_minutes <= 0:
        raise ValueError(f"Interview {interview.id} has no positive duration.")
    return {
        "id": interview.id,
        "audit_id": interview.audit_id,
        "theme_id": interview.theme_id,
        "topic_id": interview.topic_id,
        "title": interview.title,
        "description": interview.description,
        "start_time": _ensure_aware(interview.start_time),
        "duration_minutes": int(interview.duration_minutes),
        "location": interview.location,
        "meeting_link": interview.meeting_link,
        "control_refs": interview.control_refs,
        "kind": interview.kind,
        "auto_generated": bool(interview.auto_generated),
    }


def fetch_interviews_by_audit_id(session, audit_id: str) -> List[Dict[str, Any]]:
    """Return the audit's interviews ordered by start, skipping malformed rows."""
    if not is_valid_uuid(audit_id):
        logger.info("Ignoring interview fetch for malformed audit id %r", audit_id)
        return []
    stmt = (
        select(Interview)
        .where(Interview.audit_id == audit_id)
        .order_by(Interview.start_time, Interview.created_at, Interview.id)
    )
    payload = []
    for interview in session.scalars(stmt):
        try:
            payload.append(_interview_to_dict(interview))
        except ValueError as exc:
            logger.warning("Skipping malformed interview record: %s", exc)
    return payload


def audit_has_plan(session, audit_id: str) -> bool:
    return len(fetch_interviews_by_audit_id(session, audit_id)) > 0


def bulk_delete_interviews(session, audit_id: str, *, auto_generated_only: bool = True) -> int:
    doomed = select(Interview.id).where(Interview.audit_id == audit_id)
    if auto_generated_only:
        doomed = doomed.where(Interview.auto_generated.is_(True))
    # Bulk deletes bypass the ORM cascade, so participants go first.
    session.execute(delete(InterviewParticipant).where(InterviewParticipant.interview_id.in_(doomed)))
    result = session.execute(delete(Interview).where(Interview.id.in_(doomed)))
    session.commit()
    return int(result.rowcount or 0)


def _is_insertable(row: Dict[str, Any]) -> bool:
    if not isinstance(row, dict):
        return False
    if not row.get("title") or not isinstance(row.get("start_time"), datetime.datetime):
        return False
    try:
        return int(row.get("duration_minutes") or 0) > 0
    except (TypeError, ValueError):
        return False


def _apply_interview_fields(interview: Interview, payload: Dict[str, Any]) -> None:
    interview.theme_id = payload.get("theme_id")
    interview.topic_id = payload.get("topic_id")
    interview.title = str(payload["title"])
    interview.description = payload.get("description") or ""
    interview.start_time = _ensure_aware(payload["start_time"])
    interview.duration_minutes = int(payload["duration_minutes"])
    interview.location = payload.get("location") or ""
    interview.meeting_link = payload.get("meeting_link") or ""
    interview.control_refs = payload.get("control_refs") or ""
    kind = payload.get("kind") or "manual"
    interview.kind = kind if kind in INTERVIEW_KINDS else "manual"
    interview.auto_generated = bool(payload.get("auto_generated", False))


def bulk_insert_interviews(session, audit_id: str, rows: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    valid_rows = [row for row in rows or [] if _is_insertable(row)]
    if not valid_rows:
        raise ValueError("No valid interviews to insert.")
    created: List[Interview] = []
    for row in valid_rows:
        interview = Interview(audit_id=audit_id)
        _apply_interview_fields(interview, row)
        session.add(interview)
        created.append(interview)
    session.commit()
    return [_interview_to_dict(item) for item in created]


def add_interview(session, payload: Dict[str, Any]) -> Dict[str, Any]:
    audit_id = payload.get("audit_id")
    if not is_valid_uuid(audit_id):
        raise ValueError("A valid audit_id is required.")
    if not _is_insertable(payload):
        raise ValueError("Interview title, start_time and a positive duration_minutes are required.")
    interview = Interview(audit_id=audit_id)
    _apply_interview_fields(interview, payload)
    session.add(interview)
    session.commit()
    session.refresh(interview)
    return _interview_to_dict(interview)


UPDATABLE_INTERVIEW_FIELDS = (
    "theme_id",
    "topic_id",
    "title",
    "description",
    "start_time",
    "duration_minutes",
    "location",
    "meeting_link",
    "control_refs",
)


def update_interview(session, interview_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    interview = session.get(Interview, interview_id)
    if not interview:
        raise LookupError(f"Interview {interview_id} was not found.")
    for key in UPDATABLE_INTERVIEW_FIELDS:
        if key not in (updates or {}):
            continue
        value = updates[key]
        if key == "title" and not value:
            raise ValueError("Interview title cannot be empty.")
        if key == "start_time":
            if not isinstance(value, datetime.datetime):
                raise TypeError("Interview start_time must be a datetime instance.")
            value = _ensure_aware(value)
        if key == "duration_minutes":
            value = int(value)
            if value <= 0:
                raise ValueError("Interview duration must be positive.")
        if key in {"description", "location", "meeting_link", "control_refs"}:
            value = value or ""
        setattr(interview, key, value)
    # A hand-edited slot is no longer owned by the generator.
    interview.auto_generated = False
    session.commit()
    session.refresh(interview)
    return _interview_to_dict(interview)


def delete_interview(session, interview_id: str) -> bool:
    interview = session.get(Interview, interview_id)
    if not interview:
        return False
    session.delete(interview)
    session.commit()
    return True


def add_participant(session, interview_id: str, user_id: str, role: str = "participant") -> InterviewParticipant:
    if not session.get(Interview, interview_id):
        raise LookupError(f"Interview {interview_id} was not found.")
    existing = session.scalars(
        select(InterviewParticipant).where(
            InterviewParticipant.interview_id == interview_id,
            InterviewParticipant.user_id == user_id,
        )
    ).first()
    if existing:
        existing.role = role or existing.role
        session.commit()
        return existing
    participant = InterviewParticipant(
        interview_id=interview_id,
        user_id=user_id,
        role=role or "participant",
        notification_sent=False,
    )
    session.add(participant)
    session.commit()
    session.refresh(participant)
    return participant


def remove_participant(session, interview_id: str, user_id: str) -> bool:
    result = session.execute(
        delete(InterviewParticipant).where(
            InterviewParticipant.interview_id == interview_id,
            InterviewParticipant.user_id == user_id,
        )
    )
    session.commit()
    return bool(result.rowcount)


def list_participants(session, interview_id: str) -> List[Dict[str, Any]]:
    stmt = (
        select(InterviewParticipant)
        .where(InterviewParticipant.interview_id == interview_id)
        .order_by(InterviewParticipant.id)
    )
    return [
        {
            "interview_id": row.interview_id,
            "user_id": row.user_id,
            "role": row.role,
            "notification_sent": bool(row.notification_sent),
        }
        for row in session.scalars(stmt)
    ]


# ---------------------------------------------------------------------------
# Policies and audit trail


def upsert_policy(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> Policy:
    existing: Optional[Policy] = session.execute(select(Policy).where(Policy.name == name)).scalars().first()
    payload = params_dict if isinstance(params_dict, dict) else {}
    if existing:
        existing.paramsJSON = json.dumps(payload)
        existing.lastEditedBy = edited_by
        existing.lastEditedAt = _utcnow()
        session.commit()
        session.refresh(existing)
        return existing
    policy = Policy(
        name=name,
        paramsJSON=json.dumps(payload),
        lastEditedBy=edited_by,
        lastEditedAt=_utcnow(),
    )
    session.add(policy)
    session.commit()
    session.refresh(policy)
    return policy


def get_active_policy(session) -> Optional[Policy]:
    stmt = select(Policy).order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
    return session.scalars(stmt).first()


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "Interview",
    target_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    session.commit()
    return log
