"""Typed create/read/update/delete access to the store.

One ``Storage`` wraps one SQLAlchemy session (one request). Methods that
mutate commit unless stated otherwise.
"""
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, or_, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import ConsoleError, PartialImportFailure, ValidationError
from logging_config import get_logger
from models import (
    User, UserSession, Form, FormSnapshot, FormResponse, Respondent,
    Event, EventAttendee, Student,
)
from schemas import ContentSnapshot, FormContent

logger = get_logger(__name__)

STUDENT_FIELDS = (
    "student_bc", "full_name", "date_of_birth", "gender", "level", "class_name", "centre",
    "guardian_name", "guardian_email", "guardian_phone", "address",
    "emergency_contact", "emergency_phone", "medical_info", "status",
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _failure_reason(exc: Exception) -> str:
    """Short caller-facing reason; the driver message without SQL or parameters."""
    if isinstance(exc, ConsoleError):
        return exc.message
    orig = getattr(exc, "orig", None)
    return str(orig) if orig is not None else exc.__class__.__name__


class Storage:
    def __init__(self, db: Session):
        self.db = db

    # ------------------------
    # Users
    # ------------------------
    def get_user(self, user_id: str) -> Optional[User]:
        return self.db.get(User, user_id)

    def list_users(self) -> List[User]:
        return self.db.execute(select(User).order_by(User.email)).scalars().all()

    def set_user_active(self, user: User, is_active: bool) -> User:
        user.is_active = is_active
        self.db.commit()
        return user

    def get_recent_apps(self, user_id: str) -> List[str]:
        row = self.db.execute(select(UserSession).where(UserSession.user_id == user_id)).scalar_one_or_none()
        if row is None or not isinstance(row.recent_apps, list):
            return []
        return list(row.recent_apps)

    def set_recent_apps(self, user_id: str, recent_apps: List[str]) -> None:
        row = self.db.execute(select(UserSession).where(UserSession.user_id == user_id)).scalar_one_or_none()
        if row is None:
            self.db.add(UserSession(user_id=user_id, recent_apps=list(recent_apps)))
        else:
            row.recent_apps = list(recent_apps)
            row.last_accessed = _now_utc()
        self.db.commit()

    # ------------------------
    # Forms and snapshots
    # ------------------------
    def create_form(self, working: Optional[ContentSnapshot] = None, **fields) -> Form:
        """Insert a form together with its initial working snapshot."""
        form = Form(**fields)
        self.db.add(form)
        self.db.flush()
        if working is not None:
            self.put_snapshot(form.id, working)
        self._commit_or_conflict("This URL is already taken. Please choose a different one.")
        return form

    def get_form(self, form_id: str) -> Optional[Form]:
        return self.db.get(Form, form_id)

    def get_form_by_url(self, url: str) -> Optional[Form]:
        return self.db.execute(select(Form).where(Form.form_url == url)).scalar_one_or_none()

    def list_forms_by_user(self, user_id: str) -> List[Form]:
        return self.db.execute(
            select(Form).where(Form.created_by == user_id).order_by(Form.updated_at.desc(), Form.created_at.desc())
        ).scalars().all()

    def delete_form(self, form: Form) -> None:
        self.db.delete(form)
        self.db.commit()

    def get_snapshot(self, form_id: str, stage: str) -> Optional[ContentSnapshot]:
        row = self.db.execute(
            select(FormSnapshot).where(FormSnapshot.form_id == form_id, FormSnapshot.stage == stage)
        ).scalar_one_or_none()
        if row is None:
            return None
        return ContentSnapshot(stage=row.stage, content=FormContent.model_validate(row.content or {}))

    def put_snapshot(self, form_id: str, snapshot: ContentSnapshot) -> None:
        """Stage a snapshot write; the caller commits."""
        payload = snapshot.content.model_dump(mode="json")
        row = self.db.execute(
            select(FormSnapshot).where(FormSnapshot.form_id == form_id, FormSnapshot.stage == snapshot.stage)
        ).scalar_one_or_none()
        if row is None:
            self.db.add(FormSnapshot(form_id=form_id, stage=snapshot.stage, content=payload))
        else:
            row.content = payload

    def commit(self) -> None:
        self.db.commit()

    def _commit_or_conflict(self, message: str) -> None:
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError(message)

    # ------------------------
    # Responses and respondents
    # ------------------------
    def create_response(self, form_id: str, responses: Dict, respondent_id: Optional[str] = None) -> FormResponse:
        row = FormResponse(form_id=form_id, respondent_id=respondent_id, responses=responses)
        self.db.add(row)
        self.db.commit()
        return row

    def list_responses(self, form_id: str) -> List[FormResponse]:
        return self.db.execute(
            select(FormResponse).where(FormResponse.form_id == form_id).order_by(FormResponse.submitted_at.desc())
        ).scalars().all()

    def create_respondent(self, **fields) -> Respondent:
        """Stage a respondent insert; the caller commits."""
        row = Respondent(**fields)
        self.db.add(row)
        self.db.flush()
        return row

    # ------------------------
    # Students
    # ------------------------
    def create_student(self, **fields) -> Student:
        student = Student(**fields)
        self.db.add(student)
        self._commit_or_conflict("A student with this BC No already exists")
        return student

    def get_student(self, student_id: str) -> Optional[Student]:
        return self.db.get(Student, student_id)

    def get_student_by_bc(self, student_bc: str) -> Optional[Student]:
        return self.db.execute(select(Student).where(Student.student_bc == student_bc)).scalar_one_or_none()

    def get_students_by_bc(self, student_bcs: Iterable[str]) -> Dict[str, Student]:
        keys = list(student_bcs)
        if not keys:
            return {}
        rows = self.db.execute(select(Student).where(Student.student_bc.in_(keys))).scalars().all()
        return {s.student_bc: s for s in rows}

    def list_students(self) -> List[Student]:
        return self.db.execute(select(Student).order_by(Student.created_at.desc())).scalars().all()

    def search_students(self, term: str) -> List[Student]:
        pattern = f"%{term}%"
        return self.db.execute(
            select(Student)
            .where(and_(
                Student.status == "active",
                or_(
                    Student.full_name.like(pattern),
                    Student.student_bc.like(pattern),
                    Student.level.like(pattern),
                    Student.class_name.like(pattern),
                ),
            ))
            .order_by(Student.created_at.desc())
        ).scalars().all()

    def update_student(self, student: Student, **fields) -> Student:
        for key, value in fields.items():
            setattr(student, key, value)
        self._commit_or_conflict("A student with this BC No already exists")
        return student

    def delete_student(self, student: Student) -> None:
        self.db.delete(student)
        self.db.commit()

    def upsert_student(self, data: Dict, created_by: Optional[str] = None) -> Tuple[Student, bool]:
        """Update-or-insert keyed on ``student_bc``; flushes, does not commit.

        Only fields present in ``data`` overwrite stored values. The
        additional-data bag is merged key by key, incoming values winning.

        Returns:
            tuple[Student, bool]: (row, created_flag)
        """
        fields = {k: v for k, v in data.items() if k in STUDENT_FIELDS}
        bag = data.get("additional_data") or {}
        student = self.get_student_by_bc(fields["student_bc"])
        if student is None:
            student = Student(created_by=created_by, additional_data=dict(bag) or None, **fields)
            self.db.add(student)
            self.db.flush()
            return student, True
        for key, value in fields.items():
            setattr(student, key, value)
        if bag:
            merged = dict(student.additional_data or {})
            merged.update(bag)
            student.additional_data = merged
        self.db.flush()
        return student, False

    def _commit_rows(self, rows: Iterable[Tuple[int, str, Dict]], apply: Callable[[Dict], object],
                     label: str) -> Tuple[List, List[PartialImportFailure]]:
        """Apply each (row_number, key, data) entry in its own savepoint.

        A failing row is rolled back, recorded and skipped; the rest of the
        batch still commits.
        """
        committed: List = []
        failures: List[PartialImportFailure] = []
        for row_number, key, data in rows:
            try:
                with self.db.begin_nested():
                    committed.append(apply(data))
            except (SQLAlchemyError, ConsoleError) as exc:
                logger.warning(f"{label} row {row_number} ({key}) not committed: {exc}")
                failures.append(PartialImportFailure(row=row_number, key=key, message=_failure_reason(exc)))
        self.db.commit()
        return committed, failures

    def bulk_upsert_students(self, rows: Iterable[Tuple[int, Dict]],
                             created_by: Optional[str] = None) -> Tuple[List[Student], List[PartialImportFailure]]:
        """Upsert (row_number, data) pairs keyed on ``student_bc``."""
        return self._commit_rows(
            ((n, str(data.get("student_bc") or ""), data) for n, data in rows),
            lambda data: self.upsert_student(data, created_by=created_by)[0],
            "Student",
        )

    def bulk_create_respondents(self, rows: Iterable[Tuple[int, Dict]],
                                created_by: Optional[str] = None) -> Tuple[List[Respondent], List[PartialImportFailure]]:
        return self._commit_rows(
            ((n, str(data.get("email") or ""), data) for n, data in rows),
            lambda data: self.create_respondent(created_by=created_by, **data),
            "Respondent",
        )

    # ------------------------
    # Events
    # ------------------------
    def create_event(self, **fields) -> Event:
        event = Event(**fields)
        self.db.add(event)
        self.db.commit()
        return event

    def get_event(self, event_id: str) -> Optional[Event]:
        return self.db.get(Event, event_id)

    def list_events_by_user(self, user_id: str) -> List[Event]:
        return self.db.execute(
            select(Event).where(Event.created_by == user_id).order_by(Event.start_date_time.desc())
        ).scalars().all()

    def update_event(self, event: Event, **fields) -> Event:
        for key, value in fields.items():
            setattr(event, key, value)
        self.db.commit()
        return event

    def delete_event(self, event: Event) -> None:
        # attendees go with the event (delete-orphan cascade)
        self.db.delete(event)
        self.db.commit()

    def add_attendee(self, event_id: str, attendee_id: str, registration_status: str = "registered") -> EventAttendee:
        row = EventAttendee(
            event_id=event_id,
            attendee_id=attendee_id,
            registration_status=registration_status,
            attended_at=_now_utc() if registration_status == "attended" else None,
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError("Attendee is already registered for this event")
        return row

    def get_attendee(self, event_id: str, attendee_id: str) -> Optional[EventAttendee]:
        return self.db.execute(
            select(EventAttendee).where(EventAttendee.event_id == event_id, EventAttendee.attendee_id == attendee_id)
        ).scalar_one_or_none()

    def list_attendees(self, event_id: str) -> List[EventAttendee]:
        return self.db.execute(
            select(EventAttendee).where(EventAttendee.event_id == event_id).order_by(EventAttendee.registered_at.desc())
        ).scalars().all()

    def update_attendee_status(self, attendee: EventAttendee, status: str) -> EventAttendee:
        if status != "attended":
            attendee.attended_at = None
        elif attendee.registration_status != "attended":
            attendee.attended_at = _now_utc()
        attendee.registration_status = status
        self.db.commit()
        return attendee

    def remove_attendee(self, attendee: EventAttendee) -> None:
        self.db.delete(attendee)
        self.db.commit()
