"""Question/section editing over a form's content.

Every function is pure: it takes a ``FormContent`` and returns a new one.
Editor operations renumber their result so sequence numbers stay dense,
1-based and contiguous in section display order.
"""
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from errors import NotFoundError, ValidationError
from schemas import ContentSnapshot, FormContent, Question, Section, new_id

QUESTION_TYPES = (
    "text", "email", "phone", "number", "textarea", "select", "multipleChoice",
    "checkbox", "radio", "rating", "date", "datetime", "trueFalse", "sls", "bcInput",
)
CHOICE_TYPES = ("select", "multipleChoice", "checkbox", "radio")
RATING_SCALES = (3, 5, 7, 10)
NON_NULLABLE_FIELDS = ("type", "question", "required")

AGREEMENT_TYPE = "sls"
AGREEMENT_OPTIONS = ["Strongly Agree", "Agree", "Disagree", "Strongly Disagree"]

LOOKUP_TYPE = "bcInput"
IDENTITY_MARKER = "identity"
IDENTITY_PROMPT = (
    "To start, enter your child's Birth Cert number (BC No.) and press enter. "
    "If you have more than 1 child enrolled this year, enter their BC No. separated by a comma."
)

DEFAULT_SECTION_ID = "default"


def parse_rating_scale(value) -> Optional[int]:
    """Return the scale as an int when it is one of RATING_SCALES, else None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        scale = int(str(value).strip())
    except ValueError:
        return None
    return scale if scale in RATING_SCALES else None


def copy_snapshot(snapshot: ContentSnapshot, stage: str) -> ContentSnapshot:
    return ContentSnapshot(stage=stage, content=snapshot.content.model_copy(deep=True))


def _clone(content: FormContent) -> FormContent:
    return content.model_copy(deep=True)


def renumber(content: FormContent) -> FormContent:
    """Assign question numbers section by section in display order.

    Sections are visited by ascending ``order``; inside a section questions keep
    their relative list order. Questions pointing at no known section are
    numbered last. List order itself is left untouched.
    """
    result = _clone(content)
    numbers: Dict[int, int] = {}
    counter = 1
    for section in sorted(result.sections, key=lambda s: s.order):
        for idx, q in enumerate(result.questions):
            if q.section_id == section.id and idx not in numbers:
                numbers[idx] = counter
                counter += 1
    for idx in range(len(result.questions)):
        if idx not in numbers:
            numbers[idx] = counter
            counter += 1
    for idx, q in enumerate(result.questions):
        q.question_no = numbers[idx]
    return result


def enforce_question_invariants(question: Question) -> Question:
    if question.type == AGREEMENT_TYPE:
        question.required = True
        question.options = list(AGREEMENT_OPTIONS)
    return question


def enforce_invariants(content: FormContent) -> FormContent:
    result = _clone(content)
    for q in result.questions:
        enforce_question_invariants(q)
    return result


def validate_content(content: FormContent) -> None:
    """Raise ValidationError listing every problem in the content."""
    problems: List[str] = []
    seen_sections = set()
    for s in content.sections:
        if s.id in seen_sections:
            problems.append(f"Duplicate section id: {s.id}")
        seen_sections.add(s.id)
    seen_questions = set()
    for q in content.questions:
        label = f"Question {q.question_no or q.question_id}"
        if q.question_id in seen_questions:
            problems.append(f"Duplicate question id: {q.question_id}")
        seen_questions.add(q.question_id)
        if q.type not in QUESTION_TYPES:
            problems.append(f"{label}: invalid question type '{q.type}'")
            continue
        if q.type in CHOICE_TYPES and not [o for o in (q.options or []) if o.strip()]:
            problems.append(f"{label}: {q.type} questions require options")
        if q.type == "rating" and parse_rating_scale(q.scale) is None:
            problems.append(f"{label}: rating scale must be 3, 5, 7, or 10")
    if problems:
        raise ValidationError("; ".join(problems))


def _find_question(content: FormContent, question_id: str) -> int:
    for idx, q in enumerate(content.questions):
        if q.question_id == question_id:
            return idx
    raise NotFoundError("Question not found")


def _require_section(content: FormContent, section_id: str) -> Section:
    for s in content.sections:
        if s.id == section_id:
            return s
    raise NotFoundError("Section not found")


def first_regular_section(content: FormContent) -> str:
    """Id of the first non-identity section by order, adding "Section 1" when there is none.

    Mutates ``content``; callers pass their own copy.
    """
    regular = sorted((s for s in content.sections if s.marker != IDENTITY_MARKER), key=lambda s: s.order)
    if regular:
        return regular[0].id
    order = max((s.order for s in content.sections), default=-1) + 1
    section = Section(title="Section 1", order=max(order, 0))
    content.sections.append(section)
    return section.id


def add_question(content: FormContent, type: str = "text", section_id: Optional[str] = None,
                 question: str = "", required: Optional[bool] = None,
                 options: Optional[List[str]] = None, scale: Optional[int] = None) -> FormContent:
    if type not in QUESTION_TYPES:
        raise ValidationError(f"Invalid question type: {type}")
    result = _clone(content)
    if section_id:
        _require_section(result, section_id)
    else:
        section_id = first_regular_section(result)
    if options is None and type in CHOICE_TYPES:
        options = ["Option 1", "Option 2"]
    if scale is None and type == "rating":
        scale = 5
    new_q = Question(
        question_no=len(result.questions) + 1,
        type=type,
        question=question,
        required=bool(required),
        options=options,
        scale=scale,
        section_id=section_id,
    )
    result.questions.append(enforce_question_invariants(new_q))
    return renumber(result)


def update_question(content: FormContent, question_id: str, changes: dict) -> FormContent:
    result = _clone(content)
    idx = _find_question(result, question_id)
    protected = {"question_id", "question_no", "section_id"}
    data = result.questions[idx].model_dump()
    # null on a non-nullable field means "leave as is"
    data.update({
        k: v for k, v in changes.items()
        if k not in protected and not (v is None and k in NON_NULLABLE_FIELDS)
    })
    if data["type"] not in QUESTION_TYPES:
        raise ValidationError(f"Invalid question type: {data['type']}")
    if data["type"] in CHOICE_TYPES and not data.get("options"):
        data["options"] = ["Option 1", "Option 2"]
    if data["type"] == "rating" and data.get("scale") is None:
        data["scale"] = 5
    try:
        updated = Question(**data)
    except PydanticValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in e["loc"]) for e in exc.errors())
        raise ValidationError(f"Invalid question fields: {fields}")
    result.questions[idx] = enforce_question_invariants(updated)
    return renumber(result)


def delete_question(content: FormContent, question_id: str) -> FormContent:
    result = _clone(content)
    idx = _find_question(result, question_id)
    del result.questions[idx]
    return renumber(result)


def copy_question(content: FormContent, question_id: str) -> FormContent:
    result = _clone(content)
    idx = _find_question(result, question_id)
    source = result.questions[idx]
    duplicate = source.model_copy(deep=True, update={"question_id": new_id(), "question": f"{source.question} (Copy)"})
    result.questions.insert(idx + 1, duplicate)
    return renumber(result)


def reorder_question(content: FormContent, question_id: str, new_index: int) -> FormContent:
    """Move a question to ``new_index`` among the questions of its own section."""
    result = _clone(content)
    idx = _find_question(result, question_id)
    section_id = result.questions[idx].section_id
    slots = [i for i, q in enumerate(result.questions) if q.section_id == section_id]
    members = [result.questions[i] for i in slots]
    moving = members.pop(slots.index(idx))
    new_index = max(0, min(new_index, len(members)))
    members.insert(new_index, moving)
    for slot, q in zip(slots, members):
        result.questions[slot] = q
    return renumber(result)


def move_question(content: FormContent, question_id: str, target_section_id: str,
                  index: Optional[int] = None) -> FormContent:
    """Reassign a question to another section, optionally at a position inside it."""
    result = _clone(content)
    _require_section(result, target_section_id)
    idx = _find_question(result, question_id)
    moving = result.questions.pop(idx)
    moving.section_id = target_section_id
    targets = [i for i, q in enumerate(result.questions) if q.section_id == target_section_id]
    if not targets:
        insert_at = len(result.questions)
    elif index is None or index >= len(targets):
        insert_at = targets[-1] + 1
    else:
        insert_at = targets[max(0, index)]
    result.questions.insert(insert_at, moving)
    return renumber(result)


def add_section(content: FormContent, title: Optional[str] = None, name: str = "") -> FormContent:
    result = _clone(content)
    order = max((s.order for s in result.sections), default=-1) + 1
    order = max(order, 0)
    regular = [s for s in result.sections if s.marker != IDENTITY_MARKER]
    result.sections.append(Section(title=title or f"Section {len(regular) + 1}", name=name, order=order))
    return renumber(result)


def delete_section(content: FormContent, section_id: str) -> FormContent:
    """Remove a section; its questions join the first remaining section."""
    result = _clone(content)
    _require_section(result, section_id)
    if len(result.sections) <= 1:
        raise ValidationError("Cannot delete the last section")
    remaining = sorted((s for s in result.sections if s.id != section_id), key=lambda s: s.order)
    regular = [s for s in remaining if s.marker != IDENTITY_MARKER]
    heir = (regular or remaining)[0]
    for q in result.questions:
        if q.section_id == section_id:
            q.section_id = heir.id
    result.sections = [s for s in result.sections if s.id != section_id]
    return renumber(result)


def reorder_sections(content: FormContent, section_ids: List[str]) -> FormContent:
    """Apply a new display order. The identity section stays pinned first."""
    result = _clone(content)
    by_id = {s.id: s for s in result.sections}
    regular_ids = [sid for sid in section_ids if sid in by_id and by_id[sid].marker != IDENTITY_MARKER]
    expected = {s.id for s in result.sections if s.marker != IDENTITY_MARKER}
    if set(regular_ids) != expected or len(regular_ids) != len(expected):
        raise ValidationError("Section order must list every section exactly once")
    for position, sid in enumerate(regular_ids):
        by_id[sid].order = position
    return renumber(result)


def has_identity_section(content: FormContent) -> bool:
    return any(s.marker == IDENTITY_MARKER for s in content.sections)


def ensure_identity_section(content: FormContent) -> FormContent:
    """Prepend the child identity section used by parents surveys (idempotent)."""
    if has_identity_section(content):
        return content
    result = _clone(content)
    section = Section(
        id=f"identity-{new_id()}",
        title="Section 0: Child's Identity",
        name="Child's Identity",
        order=-1,
        marker=IDENTITY_MARKER,
    )
    lookup = Question(type=LOOKUP_TYPE, question=IDENTITY_PROMPT, required=True, section_id=section.id)
    result.sections.insert(0, section)
    result.questions.insert(0, lookup)
    return renumber(result)


def normalize_loaded(content: FormContent) -> FormContent:
    """Heal persisted content: default section for orphans, invariants, numbering."""
    result = _clone(content)
    if not result.sections and result.questions:
        result.sections = [Section(id=DEFAULT_SECTION_ID, title="Section 1", order=0)]
        for q in result.questions:
            if not q.section_id:
                q.section_id = DEFAULT_SECTION_ID
    return renumber(enforce_invariants(result))


def section_display_numbers(sections: List[Section]) -> Dict[str, str]:
    """Identity section shows as "0"; the others count from 1 in display order."""
    numbers = {}
    counter = 0
    for s in sorted(sections, key=lambda s: s.order):
        if s.marker == IDENTITY_MARKER:
            numbers[s.id] = "0"
        else:
            counter += 1
            numbers[s.id] = str(counter)
    return numbers


def ordered_questions(content: FormContent) -> List[Question]:
    return sorted(content.questions, key=lambda q: q.question_no)
