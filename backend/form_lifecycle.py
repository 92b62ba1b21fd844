"""Draft -> preview -> publish lifecycle of a form.

Content lives in three tagged snapshots (working, preview, published).
Saving overwrites *working*; ``prepare_preview`` copies working into
*preview*; ``publish`` copies preview (or working when no preview was ever
prepared) into *published* and is the only way to make a form active.
"""
import re
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from errors import NotFoundError, OwnershipError, ValidationError
from form_content import (
    copy_snapshot, enforce_invariants, ensure_identity_section, first_regular_section, normalize_loaded,
    renumber, validate_content, enforce_question_invariants,
)
from logging_config import get_logger
from models import Form
from schemas import ContentSnapshot, FormBasicsUpdate, FormContent, FormCreate, FormSettings, Question
from storage import Storage

logger = get_logger(__name__)

FORM_TYPES = ("general", "parents_survey")
PARENTS_SURVEY = "parents_survey"

# never resolvable as public form URLs, they collide with app routes
RESERVED_SLUGS = (
    "apps", "settings", "dashboards", "preview", "api", "assets",
    "vite", "favicon.ico", "login", "logout", "auth",
)
SLUG_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def is_reserved_slug(slug: str) -> bool:
    return slug.lower() in RESERVED_SLUGS


def require_form(storage: Storage, form_id: str) -> Form:
    form = storage.get_form(form_id)
    if not form:
        raise NotFoundError("Form not found")
    return form


def require_owner(form: Form, requester_id: str, action: str = "modify") -> None:
    if form.created_by != requester_id:
        raise OwnershipError(f"Access denied: You can only {action} your own forms")


def get_owned_form(storage: Storage, form_id: str, requester_id: str, action: str = "modify") -> Form:
    form = require_form(storage, form_id)
    require_owner(form, requester_id, action)
    return form


def form_settings(form: Form) -> FormSettings:
    return FormSettings.model_validate(form.settings or {})


def check_slug(storage: Storage, slug: str, form_id: Optional[str] = None) -> Tuple[bool, str]:
    """Return (available, message) for a public URL slug."""
    if not slug:
        return False, "URL is required"
    if not SLUG_PATTERN.match(slug):
        return False, "URL can only contain letters, numbers, underscores, and hyphens"
    if is_reserved_slug(slug):
        return False, "This URL is reserved. Please choose a different one."
    existing = storage.get_form_by_url(slug)
    if existing and existing.id != form_id:
        return False, "This URL is already taken. Please choose a different one."
    return True, f"URL will be: /{slug}"


def _validate_slug(storage: Storage, slug: str, form_id: Optional[str] = None) -> None:
    available, message = check_slug(storage, slug, form_id)
    if not available:
        raise ValidationError(message)


def _validate_kind(kind: Optional[str]) -> str:
    if not kind:
        raise ValidationError("Form type is required")
    if kind not in FORM_TYPES:
        raise ValidationError(f"Invalid form type: {kind}")
    return kind


def working_snapshot(storage: Storage, form: Form) -> ContentSnapshot:
    snapshot = storage.get_snapshot(form.id, "working")
    if snapshot is None:
        return ContentSnapshot(stage="working", content=FormContent())
    return snapshot


def load_working_content(storage: Storage, form: Form) -> FormContent:
    """Working content as the editor sees it, healed and renumbered."""
    return normalize_loaded(working_snapshot(storage, form).content)


def form_out(storage: Storage, form: Form) -> dict:
    return {
        "id": form.id,
        "name": form.name,
        "description": form.description,
        "form_type": form.form_type,
        "form_url": form.form_url,
        "status": form.status,
        "created_by": form.created_by,
        "settings": form_settings(form).model_dump(mode="json"),
        "content": load_working_content(storage, form),
        "has_preview": storage.get_snapshot(form.id, "preview") is not None,
        "has_published": storage.get_snapshot(form.id, "published") is not None,
        "last_saved_at": form.last_saved_at,
        "last_published_at": form.last_published_at,
        "created_at": form.created_at,
        "updated_at": form.updated_at,
    }


def list_forms(storage: Storage, owner_id: str) -> List[Form]:
    return storage.list_forms_by_user(owner_id)


def create_form(storage: Storage, owner_id: str, basics: FormCreate) -> Form:
    name = (basics.name or "").strip()
    if not name:
        raise ValidationError("Form name is required")
    kind = _validate_kind(basics.form_type)
    slug = (basics.form_url or "").strip() or None
    if slug:
        _validate_slug(storage, slug)

    content = FormContent()
    if kind == PARENTS_SURVEY:
        content = ensure_identity_section(content)
    settings = basics.settings or FormSettings()

    form = storage.create_form(
        working=ContentSnapshot(stage="working", content=content),
        name=name,
        description=(basics.description or "").strip() or None,
        form_type=kind,
        form_url=slug,
        status="draft",
        created_by=owner_id,
        settings=settings.model_dump(mode="json"),
    )
    logger.info(f"Form {form.id} created by {owner_id} ({kind})")
    return form


def _apply_basics(storage: Storage, form: Form, basics: FormBasicsUpdate) -> None:
    changes = basics.model_dump(exclude_unset=True)
    if "name" in changes:
        name = (basics.name or "").strip()
        if not name:
            raise ValidationError("Form name is required")
        form.name = name
    if "description" in changes:
        form.description = (basics.description or "").strip() or None
    if "form_url" in changes:
        slug = (basics.form_url or "").strip() or None
        if slug and slug != form.form_url:
            _validate_slug(storage, slug, form.id)
        form.form_url = slug
    if "settings" in changes and basics.settings is not None:
        merged = dict(form.settings or {})
        merged.update(basics.settings.model_dump(mode="json", exclude_unset=True))
        form.settings = FormSettings.model_validate(merged).model_dump(mode="json")
    if "form_type" in changes:
        kind = _validate_kind(basics.form_type)
        if kind == PARENTS_SURVEY and form.form_type != PARENTS_SURVEY:
            working = working_snapshot(storage, form)
            storage.put_snapshot(form.id, ContentSnapshot(
                stage="working", content=ensure_identity_section(working.content),
            ))
        form.form_type = kind


def update_basics(storage: Storage, form_id: str, requester_id: str, basics: FormBasicsUpdate) -> Form:
    form = get_owned_form(storage, form_id, requester_id, "update")
    _apply_basics(storage, form, basics)
    storage.commit()
    return form


def update_working_content(storage: Storage, form_id: str, requester_id: str, content: FormContent) -> Form:
    """Overwrite the working snapshot. Numbering is the caller's job."""
    form = get_owned_form(storage, form_id, requester_id, "update")
    content = enforce_invariants(content)
    validate_content(content)
    storage.put_snapshot(form.id, ContentSnapshot(stage="working", content=content))
    form.last_saved_at = _now_utc()
    storage.commit()
    logger.info(f"Form {form.id} working content saved ({len(content.questions)} questions)")
    return form


def apply_edit(storage: Storage, form_id: str, requester_id: str,
               edit: Callable[[FormContent], FormContent]) -> Form:
    """Run one editor operation against the working snapshot and save it."""
    form = get_owned_form(storage, form_id, requester_id, "update")
    content = edit(load_working_content(storage, form))
    validate_content(content)
    storage.put_snapshot(form.id, ContentSnapshot(stage="working", content=content))
    form.last_saved_at = _now_utc()
    storage.commit()
    return form


def append_questions(storage: Storage, form: Form, questions: List[Question]) -> Form:
    """Append imported questions to the working content, into the first section."""
    content = load_working_content(storage, form)
    section_id = first_regular_section(content)
    for q in questions:
        q.section_id = q.section_id or section_id
        content.questions.append(enforce_question_invariants(q))
    content = renumber(content)
    validate_content(content)
    storage.put_snapshot(form.id, ContentSnapshot(stage="working", content=content))
    form.last_saved_at = _now_utc()
    storage.commit()
    return form


def prepare_preview(storage: Storage, form_id: str, requester_id: str) -> Form:
    form = get_owned_form(storage, form_id, requester_id, "preview")
    storage.put_snapshot(form.id, copy_snapshot(working_snapshot(storage, form), "preview"))
    form.last_saved_at = _now_utc()
    storage.commit()
    logger.info(f"Form {form.id} preview prepared")
    return form


def publish(storage: Storage, form_id: str, requester_id: str,
            basics: Optional[FormBasicsUpdate] = None) -> Form:
    form = get_owned_form(storage, form_id, requester_id, "publish")
    if basics is not None:
        _apply_basics(storage, form, basics)
    source = storage.get_snapshot(form.id, "preview") or working_snapshot(storage, form)
    storage.put_snapshot(form.id, copy_snapshot(source, "published"))
    form.status = "active"
    form.last_published_at = _now_utc()
    storage.commit()
    logger.info(f"Form {form.id} published from {source.stage} snapshot")
    return form


def set_icon(storage: Storage, form_id: str, requester_id: str, icon_ref: str) -> str:
    """Store the object-storage reference of the form icon in its settings."""
    form = get_owned_form(storage, form_id, requester_id)
    ref = (icon_ref or "").strip().split("?", 1)[0]
    if not ref:
        raise ValidationError("icon_url is required")
    settings = dict(form.settings or {})
    settings["icon_url"] = ref
    form.settings = settings
    storage.commit()
    return ref


def delete_form(storage: Storage, form_id: str, requester_id: str) -> None:
    form = get_owned_form(storage, form_id, requester_id, "delete")
    storage.delete_form(form)
    logger.info(f"Form {form_id} deleted by {requester_id}")
