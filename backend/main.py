import os
from datetime import datetime, timezone
from typing import List, Optional
from fastapi import FastAPI, Depends, UploadFile, File, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from db import Base, engine, get_db
from errors import ConsoleError, NotFoundError, OwnershipError, ValidationError
from logging_config import configure_from_env, get_logger
from models import User, Event
from schemas import *
from security import get_requester, require_master_admin
from storage import Storage
import bulk_import
import form_content
import form_lifecycle
import public_forms

configure_from_env()
logger = get_logger(__name__)

app = FastAPI(title="School Console API")

origins = os.getenv("ORIGINS", "http://localhost:5173").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Base.metadata.create_all(bind=engine)


@app.exception_handler(ConsoleError)
def console_error_handler(request: Request, exc: ConsoleError):
    """Map domain errors to ``{"detail": message}`` with their status code."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def get_storage(db: Session = Depends(get_db)) -> Storage:
    return Storage(db)


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@app.get("/health")
def health():
    """Basic readiness probe.

    Returns:
        dict: {"ok": True}
    """
    return {"ok": True}

# ------------------------
# Session user
# ------------------------
@app.get("/api/auth/user", response_model=UserOut)
def current_user(requester: User = Depends(get_requester)):
    return requester

@app.get("/api/user/session")
def get_session(requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    """Recently opened apps of the requester, newest first.

    Returns:
        dict: {"recent_apps": list[str]}
    """
    return {"recent_apps": storage.get_recent_apps(requester.id)}

@app.put("/api/user/session")
def put_session(body: SessionUpdate, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    storage.set_recent_apps(requester.id, body.recent_apps)
    return {"recent_apps": body.recent_apps}

# ------------------------
# Forms: lifecycle
# ------------------------
@app.get("/api/forms", response_model=List[FormOut])
def list_forms(requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    """List the requester's forms, most recently updated first.

    Returns:
        list[FormOut]: Forms with their working content.
    """
    return [form_lifecycle.form_out(storage, f) for f in form_lifecycle.list_forms(storage, requester.id)]

@app.post("/api/forms", response_model=FormOut, status_code=201)
def create_form(payload: FormCreate, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    """Create a draft form owned by the requester.

    Args:
        payload (FormCreate): name and form_type (required), description, form_url, settings.

    Returns:
        FormOut: The new form; parents surveys start with the identity section.

    Raises:
        ValidationError: 400 if name/kind missing or the URL is invalid, reserved or taken.
    """
    form = form_lifecycle.create_form(storage, requester.id, payload)
    return form_lifecycle.form_out(storage, form)

@app.get("/api/forms/check-url/{slug}")
def check_url(slug: str, form_id: Optional[str] = None, requester: User = Depends(get_requester),
              storage: Storage = Depends(get_storage)):
    """Check whether a public URL slug can be used.

    Args:
        slug (str): Candidate slug.
        form_id (str|None): Form being edited; its own slug counts as available.

    Returns:
        dict: {"available": bool, "message": str}
    """
    available, message = form_lifecycle.check_slug(storage, slug, form_id)
    return {"available": available, "message": message}

@app.get("/api/forms/preview/{slug}", response_model=PublicForm)
def preview_form(slug: str, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    """Owner-only preview of a form by slug.

    Serves the prepared preview snapshot, or the working content when no
    preview was prepared.

    Raises:
        NotFoundError: 404 for reserved or unknown slugs.
        OwnershipError: 403 if the requester does not own the form.
    """
    return public_forms.get_preview_form(storage, slug, requester.id)

@app.get("/api/forms/{form_id}", response_model=FormOut)
def get_form(form_id: str, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    form = form_lifecycle.get_owned_form(storage, form_id, requester.id, "view")
    return form_lifecycle.form_out(storage, form)

@app.put("/api/forms/{form_id}", response_model=FormOut)
def update_form(form_id: str, payload: FormBasicsUpdate, requester: User = Depends(get_requester),
                storage: Storage = Depends(get_storage)):
    """Update name, description, kind, slug or settings of a form.

    Settings are merged key by key. Switching the kind to parents_survey adds
    the identity section to the working content.
    """
    form = form_lifecycle.update_basics(storage, form_id, requester.id, payload)
    return form_lifecycle.form_out(storage, form)

@app.put("/api/forms/{form_id}/content", response_model=FormOut)
def save_content(form_id: str, payload: WorkingContentUpdate, requester: User = Depends(get_requester),
                 storage: Storage = Depends(get_storage)):
    """Overwrite the working snapshot with the editor's content.

    The editor sends already-numbered questions; numbers are stored as given.

    Raises:
        ValidationError: 400 on unknown types, bad rating scales or choice questions without options.
        OwnershipError: 403 if the requester does not own the form.
    """
    content = FormContent(questions=payload.questions, sections=payload.sections)
    form = form_lifecycle.update_working_content(storage, form_id, requester.id, content)
    return form_lifecycle.form_out(storage, form)

@app.post("/api/forms/{form_id}/prepare-preview")
def prepare_preview(form_id: str, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    """Copy the working snapshot into the preview snapshot.

    Returns:
        dict: {"ok": True, "preview_url": str|None}
    """
    form = form_lifecycle.prepare_preview(storage, form_id, requester.id)
    return {"ok": True, "preview_url": f"/preview/{form.form_url}" if form.form_url else None}

@app.post("/api/forms/{form_id}/publish", response_model=FormOut)
def publish_form(form_id: str, payload: Optional[FormBasicsUpdate] = None, requester: User = Depends(get_requester),
                 storage: Storage = Depends(get_storage)):
    """Publish the preview snapshot (or working, if no preview was prepared).

    Args:
        payload (FormBasicsUpdate|None): Basics to apply in the same step.

    Returns:
        FormOut: The form, now active.
    """
    form = form_lifecycle.publish(storage, form_id, requester.id, payload)
    return form_lifecycle.form_out(storage, form)

@app.put("/api/forms/{form_id}/icon")
def set_icon(form_id: str, body: IconUpdate, requester: User = Depends(get_requester),
             storage: Storage = Depends(get_storage)):
    """Store the uploaded icon's object reference in the form settings.

    Returns:
        dict: {"icon_url": str}
    """
    return {"icon_url": form_lifecycle.set_icon(storage, form_id, requester.id, body.icon_url)}

@app.delete("/api/forms/{form_id}")
def delete_form(form_id: str, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    """Hard-delete a form and its snapshots. Responses are kept.

    Returns:
        dict: {"ok": True}
    """
    form_lifecycle.delete_form(storage, form_id, requester.id)
    return {"ok": True}

# ------------------------
# Forms: editor operations (each renumbers)
# ------------------------
@app.post("/api/forms/{form_id}/questions", response_model=FormOut)
def add_question(form_id: str, body: QuestionAdd, requester: User = Depends(get_requester),
                 storage: Storage = Depends(get_storage)):
    form = form_lifecycle.apply_edit(
        storage, form_id, requester.id, lambda c: form_content.add_question(c, **body.model_dump()),
    )
    return form_lifecycle.form_out(storage, form)

@app.patch("/api/forms/{form_id}/questions/{question_id}", response_model=FormOut)
def update_question(form_id: str, question_id: str, body: QuestionUpdate, requester: User = Depends(get_requester),
                    storage: Storage = Depends(get_storage)):
    changes = body.model_dump(exclude_unset=True)
    form = form_lifecycle.apply_edit(
        storage, form_id, requester.id, lambda c: form_content.update_question(c, question_id, changes),
    )
    return form_lifecycle.form_out(storage, form)

@app.delete("/api/forms/{form_id}/questions/{question_id}", response_model=FormOut)
def delete_question(form_id: str, question_id: str, requester: User = Depends(get_requester),
                    storage: Storage = Depends(get_storage)):
    form = form_lifecycle.apply_edit(
        storage, form_id, requester.id, lambda c: form_content.delete_question(c, question_id),
    )
    return form_lifecycle.form_out(storage, form)

@app.post("/api/forms/{form_id}/questions/{question_id}/copy", response_model=FormOut)
def copy_question(form_id: str, question_id: str, requester: User = Depends(get_requester),
                  storage: Storage = Depends(get_storage)):
    form = form_lifecycle.apply_edit(
        storage, form_id, requester.id, lambda c: form_content.copy_question(c, question_id),
    )
    return form_lifecycle.form_out(storage, form)

@app.post("/api/forms/{form_id}/questions/{question_id}/reorder", response_model=FormOut)
def reorder_question(form_id: str, question_id: str, body: QuestionReorder, requester: User = Depends(get_requester),
                     storage: Storage = Depends(get_storage)):
    form = form_lifecycle.apply_edit(
        storage, form_id, requester.id, lambda c: form_content.reorder_question(c, question_id, body.index),
    )
    return form_lifecycle.form_out(storage, form)

@app.post("/api/forms/{form_id}/questions/{question_id}/move", response_model=FormOut)
def move_question(form_id: str, question_id: str, body: QuestionMove, requester: User = Depends(get_requester),
                  storage: Storage = Depends(get_storage)):
    form = form_lifecycle.apply_edit(
        storage, form_id, requester.id,
        lambda c: form_content.move_question(c, question_id, body.section_id, body.index),
    )
    return form_lifecycle.form_out(storage, form)

@app.post("/api/forms/{form_id}/sections", response_model=FormOut)
def add_section(form_id: str, body: SectionCreate, requester: User = Depends(get_requester),
                storage: Storage = Depends(get_storage)):
    form = form_lifecycle.apply_edit(
        storage, form_id, requester.id, lambda c: form_content.add_section(c, body.title, body.name),
    )
    return form_lifecycle.form_out(storage, form)

@app.put("/api/forms/{form_id}/sections/order", response_model=FormOut)
def reorder_sections(form_id: str, body: SectionOrder, requester: User = Depends(get_requester),
                     storage: Storage = Depends(get_storage)):
    form = form_lifecycle.apply_edit(
        storage, form_id, requester.id, lambda c: form_content.reorder_sections(c, body.section_ids),
    )
    return form_lifecycle.form_out(storage, form)

@app.delete("/api/forms/{form_id}/sections/{section_id}", response_model=FormOut)
def delete_section(form_id: str, section_id: str, requester: User = Depends(get_requester),
                   storage: Storage = Depends(get_storage)):
    """Delete a section; its questions move to the first remaining section.

    Raises:
        ValidationError: 400 when it is the last section.
    """
    form = form_lifecycle.apply_edit(
        storage, form_id, requester.id, lambda c: form_content.delete_section(c, section_id),
    )
    return form_lifecycle.form_out(storage, form)

# ------------------------
# Forms: responses
# ------------------------
@app.post("/api/forms/{form_id}/responses", response_model=ResponseOut, status_code=201)
def submit_response(form_id: str, payload: ResponseCreate, storage: Storage = Depends(get_storage)):
    """Public submission against the published form.

    Args:
        payload (ResponseCreate): {respondent_id?, responses{question_id: answer}}

    Raises:
        NotFoundError: 404 if the form is missing or not published.
        ValidationError: 400 if closed, past deadline, or required answers are missing.
    """
    return public_forms.submit_response(storage, form_id, payload)

@app.get("/api/forms/{form_id}/responses", response_model=List[ResponseOut])
def list_responses(form_id: str, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    return public_forms.list_responses(storage, form_id, requester.id)

@app.get("/api/forms/{form_id}/responses/export.csv")
def export_responses(form_id: str, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    """Export responses as CSV, one column per question of the published form.

    Returns:
        Response: text/csv attachment.
    """
    filename, csv_bytes = public_forms.export_responses_csv(storage, form_id, requester.id)
    return Response(content=csv_bytes, media_type="text/csv",
                    headers={"Content-Disposition": f"attachment; filename={filename}"})

# ------------------------
# Public: form by slug, student lookup
# ------------------------
@app.get("/api/public/forms/{slug}", response_model=PublicForm)
def public_form(slug: str, storage: Storage = Depends(get_storage)):
    """Resolve a public slug to the published form.

    Raises:
        NotFoundError: 404 for reserved slugs, unknown slugs and never-published forms.
    """
    return public_forms.get_public_form(storage, slug)

@app.post("/api/public/students/lookup", response_model=LookupResult)
def lookup_students(payload: StudentLookup, storage: Storage = Depends(get_storage)):
    """Check typed BC numbers against the roster and the form's allow-list.

    Args:
        payload (StudentLookup): {identifiers (comma separated or list), form_id?, already_added[]}

    Returns:
        LookupResult: {found, added, not_found, not_selected, duplicates}
    """
    return public_forms.lookup_students(storage, payload)

# ------------------------
# Bulk import
# ------------------------
@app.post("/api/import/{kind}/preview")
async def import_preview(kind: str, file: UploadFile = File(...), requester: User = Depends(get_requester)):
    """Parse an upload and classify its rows without persisting anything.

    Returns:
        dict: {kind, headers, total, valid, invalid, preview (first rows), errors}

    Raises:
        ValidationError: 400 if the file is unreadable, empty, or lacks required headers.
    """
    batch = bulk_import.read_import(kind, await file.read(), file.filename)
    return batch.summary()

@app.post("/api/import/{kind}/commit")
async def import_commit(kind: str, file: UploadFile = File(...), form_id: Optional[str] = None,
                        requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    """Parse an upload and persist its valid rows, each row isolated.

    Args:
        kind (str): questions | respondents | students.
        form_id (str|None): Target form for question imports.

    Returns:
        dict: {total, valid, invalid, committed, failed, messages, more_messages}
    """
    batch = bulk_import.read_import(kind, await file.read(), file.filename)
    return bulk_import.commit_import(storage, batch, requester.id, form_id=form_id)

# ------------------------
# Students
# ------------------------
def _require_student(storage: Storage, student_id: str):
    student = storage.get_student(student_id)
    if not student:
        raise NotFoundError("Student not found")
    return student

@app.get("/api/students", response_model=List[StudentOut])
def list_students(search: Optional[str] = None, requester: User = Depends(get_requester),
                  storage: Storage = Depends(get_storage)):
    """List students, or search active students by name, BC No, level or class."""
    term = (search or "").strip()
    return storage.search_students(term) if term else storage.list_students()

@app.get("/api/students/bc/{student_bc}", response_model=StudentOut)
def get_student_by_bc(student_bc: str, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    student = storage.get_student_by_bc(student_bc.strip())
    if not student:
        raise NotFoundError("Student not found")
    return student

@app.get("/api/students/{student_id}", response_model=StudentOut)
def get_student(student_id: str, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    return _require_student(storage, student_id)

@app.post("/api/students", response_model=StudentOut, status_code=201)
def create_student(payload: StudentCreate, requester: User = Depends(get_requester),
                   storage: Storage = Depends(get_storage)):
    """Create one student record.

    Raises:
        ValidationError: 400 if the BC No is empty or already used.
    """
    fields = payload.model_dump(exclude_unset=True)
    fields["student_bc"] = payload.student_bc.strip()
    if not fields["student_bc"]:
        raise ValidationError("BC No is required")
    return storage.create_student(created_by=requester.id, **fields)

@app.put("/api/students/{student_id}", response_model=StudentOut)
def update_student(student_id: str, payload: StudentUpdate, requester: User = Depends(get_requester),
                   storage: Storage = Depends(get_storage)):
    student = _require_student(storage, student_id)
    fields = payload.model_dump(exclude_unset=True)
    if "student_bc" in fields:
        fields["student_bc"] = (fields["student_bc"] or "").strip()
        if not fields["student_bc"]:
            raise ValidationError("BC No is required")
    return storage.update_student(student, **fields)

@app.delete("/api/students/{student_id}")
def delete_student(student_id: str, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    storage.delete_student(_require_student(storage, student_id))
    return {"ok": True}

# ------------------------
# Events and attendees
# ------------------------
def _owned_event(storage: Storage, event_id: str, requester: User) -> Event:
    """Load an event and check that the requester created it.

    Raises:
        NotFoundError: 404 if the event does not exist.
        OwnershipError: 403 if it belongs to someone else.
    """
    event = storage.get_event(event_id)
    if not event:
        raise NotFoundError("Event not found")
    if event.created_by != requester.id:
        raise OwnershipError("Access denied: You can only modify your own events")
    return event

def _check_time_range(start: datetime, end: datetime) -> None:
    if _as_utc(end) <= _as_utc(start):
        raise ValidationError("End date must be after start date")

@app.get("/api/events", response_model=List[EventOut])
def list_events(requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    return storage.list_events_by_user(requester.id)

@app.post("/api/events", response_model=EventOut, status_code=201)
def create_event(payload: EventCreate, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    """Create an event owned by the requester.

    Raises:
        ValidationError: 400 if the title is blank or the end is not after the start.
    """
    if not payload.title.strip():
        raise ValidationError("Title is required")
    _check_time_range(payload.start_date_time, payload.end_date_time)
    event = storage.create_event(created_by=requester.id, **payload.model_dump())
    logger.info(f"Event {event.id} created by {requester.id}")
    return event

@app.get("/api/events/{event_id}", response_model=EventOut)
def get_event(event_id: str, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    return _owned_event(storage, event_id, requester)

@app.put("/api/events/{event_id}", response_model=EventOut)
def update_event(event_id: str, payload: EventUpdate, requester: User = Depends(get_requester),
                 storage: Storage = Depends(get_storage)):
    event = _owned_event(storage, event_id, requester)
    fields = payload.model_dump(exclude_unset=True)
    if "title" in fields and not (fields["title"] or "").strip():
        raise ValidationError("Title is required")
    _check_time_range(fields.get("start_date_time") or event.start_date_time,
                      fields.get("end_date_time") or event.end_date_time)
    return storage.update_event(event, **fields)

@app.delete("/api/events/{event_id}")
def delete_event(event_id: str, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    """Delete an event together with its attendee registrations.

    Returns:
        dict: {"ok": True}
    """
    storage.delete_event(_owned_event(storage, event_id, requester))
    logger.info(f"Event {event_id} deleted by {requester.id}")
    return {"ok": True}

@app.get("/api/events/{event_id}/attendees", response_model=List[AttendeeOut])
def list_attendees(event_id: str, requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    event = _owned_event(storage, event_id, requester)
    return storage.list_attendees(event.id)

@app.post("/api/events/{event_id}/attendees", response_model=AttendeeOut, status_code=201)
def add_attendee(event_id: str, body: AttendeeCreate, requester: User = Depends(get_requester),
                 storage: Storage = Depends(get_storage)):
    """Register a user for an event.

    Raises:
        NotFoundError: 404 if the event or user does not exist.
        ValidationError: 400 if the user is already registered.
    """
    event = _owned_event(storage, event_id, requester)
    if not storage.get_user(body.attendee_id):
        raise NotFoundError("User not found")
    return storage.add_attendee(event.id, body.attendee_id, body.registration_status)

@app.put("/api/events/{event_id}/attendees/{attendee_id}", response_model=AttendeeOut)
def update_attendee(event_id: str, attendee_id: str, body: AttendeeStatusUpdate,
                    requester: User = Depends(get_requester), storage: Storage = Depends(get_storage)):
    """Change a registration status; attended_at is stamped on the move to "attended"."""
    event = _owned_event(storage, event_id, requester)
    attendee = storage.get_attendee(event.id, attendee_id)
    if not attendee:
        raise NotFoundError("Attendee not found")
    return storage.update_attendee_status(attendee, body.registration_status)

@app.delete("/api/events/{event_id}/attendees/{attendee_id}")
def remove_attendee(event_id: str, attendee_id: str, requester: User = Depends(get_requester),
                    storage: Storage = Depends(get_storage)):
    event = _owned_event(storage, event_id, requester)
    attendee = storage.get_attendee(event.id, attendee_id)
    if not attendee:
        raise NotFoundError("Attendee not found")
    storage.remove_attendee(attendee)
    return {"ok": True}

# ------------------------
# Admin console (Master Admin only)
# ------------------------
@app.get("/api/admin/users", response_model=List[UserOut])
def admin_list_users(admin: User = Depends(require_master_admin), storage: Storage = Depends(get_storage)):
    return storage.list_users()

@app.patch("/api/admin/users/{user_id}/status", response_model=UserOut)
def admin_set_user_status(user_id: str, body: UserStatusUpdate, admin: User = Depends(require_master_admin),
                          storage: Storage = Depends(get_storage)):
    """Activate or deactivate a user account.

    Raises:
        NotFoundError: 404 if the user does not exist.
        ValidationError: 400 when an admin tries to deactivate their own account.
    """
    user = storage.get_user(user_id)
    if not user:
        raise NotFoundError("User not found")
    if user.id == admin.id and not body.is_active:
        raise ValidationError("You cannot deactivate your own account")
    user = storage.set_user_active(user, body.is_active)
    logger.info(f"User {user.id} set active={body.is_active} by {admin.id}")
    return user
