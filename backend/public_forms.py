"""Respondent-facing side of forms: resolve a slug, project content, take answers.

Public URLs serve the published snapshot only. Owners can look at a form's
preview snapshot (working when no preview was prepared) through the preview
URL. Identifier-lookup questions check typed BC numbers against the student
roster and, for parents surveys, against the form's allow-list.
"""
import json
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from errors import NotFoundError, ValidationError
from form_content import LOOKUP_TYPE, normalize_loaded, ordered_questions, section_display_numbers
from form_lifecycle import (
    PARENTS_SURVEY, form_settings, get_owned_form, is_reserved_slug, require_form, working_snapshot,
)
from logging_config import get_logger
from models import Form, FormResponse
from schemas import (
    FormContent, LookupResult, PublicForm, PublicSection, ResponseCreate, StudentCard, StudentLookup,
)
from storage import Storage

logger = get_logger(__name__)

# settings a respondent may see; the allow-list stays server side
PUBLIC_SETTINGS = (
    "welcome_message", "icon_url", "submission_type", "allow_edit_response",
    "submission_deadline", "live_status",
)


# ------------------------
# Resolution and projection
# ------------------------
def _form_by_slug(storage: Storage, slug: str) -> Form:
    if not slug or is_reserved_slug(slug):
        raise NotFoundError("Form not found")
    form = storage.get_form_by_url(slug)
    if not form:
        raise NotFoundError("Form not found")
    return form


def resolve_public(storage: Storage, slug: str) -> Tuple[Form, FormContent]:
    form = _form_by_slug(storage, slug)
    published = storage.get_snapshot(form.id, "published")
    if form.status != "active" or published is None:
        raise NotFoundError("Form not found")
    return form, published.content


def resolve_preview(storage: Storage, slug: str, requester_id: str) -> Tuple[Form, FormContent]:
    form = _form_by_slug(storage, slug)
    form = get_owned_form(storage, form.id, requester_id, "preview")
    snapshot = storage.get_snapshot(form.id, "preview") or working_snapshot(storage, form)
    return form, snapshot.content


def project(form: Form, content: FormContent, is_preview: bool = False) -> PublicForm:
    """Read-only view: sections in display order, each with its questions."""
    content = normalize_loaded(content)
    questions = ordered_questions(content)
    numbers = section_display_numbers(content.sections)
    sections = [
        PublicSection(
            id=s.id,
            title=s.title,
            name=s.name,
            order=s.order,
            number=numbers[s.id],
            questions=[q for q in questions if q.section_id == s.id],
        )
        for s in sorted(content.sections, key=lambda s: s.order)
    ]
    settings = form_settings(form)
    public_settings = {k: v for k, v in settings.model_dump(mode="json").items() if k in PUBLIC_SETTINGS}
    return PublicForm(
        id=form.id,
        title=form.name,
        description=form.description,
        welcome_message=settings.welcome_message,
        form_type=form.form_type,
        form_url=form.form_url,
        sections=sections,
        questions=questions,
        settings=public_settings,
        is_preview=is_preview,
    )


def get_public_form(storage: Storage, slug: str) -> PublicForm:
    form, content = resolve_public(storage, slug)
    return project(form, content)


def get_preview_form(storage: Storage, slug: str, requester_id: str) -> PublicForm:
    form, content = resolve_preview(storage, slug, requester_id)
    return project(form, content, is_preview=True)


# ------------------------
# Identifier lookup
# ------------------------
def split_identifiers(raw: Union[str, Iterable[str], None]) -> List[str]:
    if raw is None:
        return []
    parts = raw.split(",") if isinstance(raw, str) else list(raw)
    return [p.strip() for p in parts if p and p.strip()]


def _card(student) -> StudentCard:
    return StudentCard(
        student_bc=student.student_bc,
        full_name=student.full_name,
        level=student.level,
        class_name=student.class_name,
    )


def classify_identifiers(requested: List[str], already_added: List[str], students: Dict,
                         allow_list: Optional[List[str]] = None) -> LookupResult:
    """Partition typed identifiers against the roster.

    Each requested identifier lands in exactly one of ``added``,
    ``not_selected``, ``not_found`` or ``duplicates`` (already added earlier
    or repeated in the same request). ``found`` is the accumulated list the
    respondent now holds: previously added students first, then the new ones.
    Previously added identifiers are checked against the allow-list again;
    ineligible ones move to ``not_selected`` and never reach ``found``.

    Args:
        requested (list[str]): Identifiers typed this time.
        already_added (list[str]): Identifiers the respondent already holds.
        students (dict): student_bc -> student row for every known identifier.
        allow_list (list[str]|None): Eligible identifiers; empty or None means no restriction.
    """
    allowed = set(allow_list or [])
    added, not_found, not_selected, duplicates = [], [], [], []
    held: List[str] = []
    rejected = set()
    for bc in already_added:
        if bc in held or bc in rejected or bc not in students:
            continue
        # held entries come from the client; re-check eligibility
        if allowed and bc not in allowed:
            rejected.add(bc)
            not_selected.append(_card(students[bc]))
            continue
        held.append(bc)
    seen = set(held)

    for bc in requested:
        if bc in rejected:
            continue
        if bc in seen:
            if bc not in duplicates:
                duplicates.append(bc)
            continue
        seen.add(bc)
        student = students.get(bc)
        if student is None:
            not_found.append(bc)
        elif allowed and bc not in allowed:
            not_selected.append(_card(student))
        else:
            added.append(_card(student))

    found = [_card(students[bc]) for bc in held] + added
    return LookupResult(
        found=found, added=added, not_found=not_found, not_selected=not_selected, duplicates=duplicates,
    )


def lookup_students(storage: Storage, payload: StudentLookup) -> LookupResult:
    requested = split_identifiers(payload.identifiers)
    already_added = split_identifiers(payload.already_added)
    if not requested:
        raise ValidationError("At least one BC No is required")

    allow_list: List[str] = []
    if payload.form_id:
        form = require_form(storage, payload.form_id)
        if form.form_type == PARENTS_SURVEY:
            allow_list = split_identifiers(form_settings(form).selected_respondents)

    students = storage.get_students_by_bc(set(requested) | set(already_added))
    result = classify_identifiers(requested, already_added, students, allow_list)
    logger.info(
        f"Lookup {len(requested)} identifiers: {len(result.added)} added, "
        f"{len(result.not_selected)} not selected, {len(result.not_found)} not found, "
        f"{len(result.duplicates)} duplicate"
    )
    return result


# ------------------------
# Responses
# ------------------------
def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def submit_response(storage: Storage, form_id: str, payload: ResponseCreate) -> FormResponse:
    """Store one submission against the published form.

    Raises:
        NotFoundError: form missing or never published.
        ValidationError: form closed, deadline passed, or required answers missing.
    """
    form = require_form(storage, form_id)
    published = storage.get_snapshot(form.id, "published")
    if form.status != "active" or published is None:
        raise NotFoundError("Form not found")

    settings = form_settings(form)
    if settings.live_status == "closed":
        raise ValidationError("This form is closed and is no longer accepting responses")
    if settings.submission_deadline and _as_aware(settings.submission_deadline) < datetime.now(timezone.utc):
        raise ValidationError("The submission deadline for this form has passed")

    answers = payload.responses or {}
    missing = [
        q.question_no
        for q in ordered_questions(normalize_loaded(published.content))
        if q.required and _is_blank(answers.get(q.question_id))
    ]
    if missing:
        raise ValidationError(f"Please answer the required questions: {', '.join(str(n) for n in missing)}")

    row = storage.create_response(form.id, answers, respondent_id=payload.respondent_id)
    logger.info(f"Response {row.id} submitted for form {form.id}")
    return row


def list_responses(storage: Storage, form_id: str, requester_id: str) -> List[FormResponse]:
    form = get_owned_form(storage, form_id, requester_id, "view responses of")
    return storage.list_responses(form.id)


def _cell(value, qtype: Optional[str]) -> str:
    if _is_blank(value):
        return ""
    if qtype == LOOKUP_TYPE and isinstance(value, list):
        return "; ".join(
            str(v.get("student_bc", "")) if isinstance(v, dict) else str(v) for v in value
        )
    if isinstance(value, list):
        return "; ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return str(value)


def export_responses_csv(storage: Storage, form_id: str, requester_id: str) -> Tuple[str, bytes]:
    """Flatten every response into one CSV row with one column per question.

    Returns:
        tuple[str, bytes]: (filename, csv_bytes)
    """
    form = get_owned_form(storage, form_id, requester_id, "export responses of")
    snapshot = storage.get_snapshot(form.id, "published") or working_snapshot(storage, form)
    questions = ordered_questions(normalize_loaded(snapshot.content))
    columns = ["response_id", "respondent_id", "submitted_at"] + [
        f"Q{q.question_no}. {q.question}" for q in questions
    ]
    records = []
    for r in storage.list_responses(form.id):
        answers = r.responses or {}
        record = [r.id, r.respondent_id or "", r.submitted_at.isoformat() if r.submitted_at else ""]
        record += [_cell(answers.get(q.question_id), q.type) for q in questions]
        records.append(record)
    df = pd.DataFrame(records, columns=columns)
    filename = f"form_{form.form_url or form.id}_responses.csv"
    return filename, df.to_csv(index=False).encode("utf-8")
