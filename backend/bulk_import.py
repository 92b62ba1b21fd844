"""CSV / Excel bulk import: parse, map headers, classify rows, commit.

An upload goes through two steps. ``build_import`` turns the raw table into
an ``ImportBatch`` whose rows each carry their own error list; callers show
``batch.preview`` and ``batch.errors`` as a confirmation step. ``commit_import``
then persists only the valid rows, each one isolated from the others.
"""
import io
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import pandas as pd
from dotenv import load_dotenv
from email_validator import EmailNotValidError, validate_email

from errors import ValidationError
from form_content import CHOICE_TYPES, QUESTION_TYPES, parse_rating_scale
from form_lifecycle import append_questions, get_owned_form
from logging_config import get_logger
from schemas import Question
from storage import Storage

load_dotenv()
logger = get_logger(__name__)

IMPORT_KINDS = ("questions", "respondents", "students")
ERROR_DISPLAY_LIMIT = int(os.getenv("IMPORT_ERROR_DISPLAY_LIMIT", "10"))
PREVIEW_ROWS = int(os.getenv("IMPORT_PREVIEW_ROWS", "5"))

REQUIRED_HEADERS = {
    "questions": ("question_type", "question_text", "required"),
    "respondents": ("name", "email"),
}
RESPONDENT_FIELDS = ("name", "email", "department", "phone")
TRUTHY = ("true", "1")
FALSY = ("false", "0")

STUDENT_STATUSES = ("active", "inactive", "transferred", "graduated")

# lower-cased header spellings per student column; "name" is deliberately absent
STUDENT_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "student_bc": ("bc no", "bc no.", "bc_no", "bc_no.", "bcno", "bcno.", "studentid", "student_id", "id"),
    "full_name": ("fullname", "full_name", "full name"),
    "centre": (
        "center", "centre", "learning_center", "learning center", "branch", "campus",
        "location", "center name", "centre name",
    ),
    "level": (
        "level", "std", "standard", "year", "year_level", "student_level", "class level",
        "grade level", "grade", "class_level",
    ),
    "class_name": ("class", "classroom"),
    "date_of_birth": ("birthdate", "birth_date", "date_of_birth", "dateofbirth", "dob"),
    "gender": ("gender",),
    "status": ("enrolment status", "enrolment_status", "enrollment_status", "enrollment", "status"),
    "guardian_name": ("guardianname", "guardian_name", "parent_name"),
    "guardian_email": ("guardianemail", "guardian_email", "parent_email"),
    "guardian_phone": ("guardianphone", "guardian_phone", "parent_phone"),
    "address": ("address",),
    "emergency_contact": ("emergencycontact", "emergency_contact"),
    "emergency_phone": ("emergencyphone", "emergency_phone"),
    "medical_info": ("medicalinfo", "medical_info", "medical_information"),
}

# recognised columns kept in the additional-data bag under a canonical key
STUDENT_BAG_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "session": ("session", "timing", "time_slot", "time slot", "session time", "schedule", "batch"),
    "admissionDate": ("admission date", "admission_date", "admissiondate"),
    "startDate": ("start date", "start_date", "startdate"),
    "endDate": ("end date", "end_date", "enddate"),
}

_STUDENT_FIELD_BY_HEADER = {syn: f for f, syns in STUDENT_SYNONYMS.items() for syn in syns}
_STUDENT_BAG_BY_HEADER = {syn: k for k, syns in STUDENT_BAG_SYNONYMS.items() for syn in syns}

_EXCEL_MIDNIGHT = re.compile(r"^(\d{4}-\d{2}-\d{2})[ T]00:00:00$")
_EXCEL_WHOLE_FLOAT = re.compile(r"^(-?\d+)\.0$")


@dataclass
class ImportRow:
    index: int  # 1-based sheet row, the header being row 1
    data: Dict
    errors: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass
class ImportBatch:
    kind: str
    headers: List[str]
    rows: List[ImportRow]
    preview: List[Dict]

    @property
    def valid_rows(self) -> List[ImportRow]:
        return [r for r in self.rows if r.valid]

    @property
    def invalid_rows(self) -> List[ImportRow]:
        return [r for r in self.rows if not r.valid]

    @property
    def errors(self) -> List[str]:
        return [f"Row {r.index}: {', '.join(r.errors)}" for r in self.invalid_rows]

    def summary(self) -> dict:
        return {
            "kind": self.kind,
            "headers": self.headers,
            "total": len(self.rows),
            "valid": len(self.valid_rows),
            "invalid": len(self.invalid_rows),
            "preview": self.preview,
            "errors": self.errors,
        }


# ------------------------
# Parsing
# ------------------------
def _clean_cell(value, from_excel: bool) -> str:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    text = str(value).strip()
    if from_excel:
        m = _EXCEL_MIDNIGHT.match(text)
        if m:
            return m.group(1)
        m = _EXCEL_WHOLE_FLOAT.match(text)
        if m:
            return m.group(1)
    return text


def parse_table(data: bytes, filename: str) -> Tuple[List[str], List[Tuple[int, List[str]]]]:
    """Read a CSV or the first sheet of an .xlsx workbook as text.

    Args:
        data (bytes): Uploaded file content.
        filename (str): Original name, its extension selects the reader.

    Returns:
        tuple[list[str], list[tuple[int, list[str]]]]: (headers, [(sheet_row, cells)])
        with fully blank rows dropped.

    Raises:
        ValidationError: Unreadable file, unsupported type, or no data rows.
    """
    ext = os.path.splitext(filename or "")[1].lower()
    from_excel = ext in (".xlsx", ".xlsm")
    if ext == ".xls":
        raise ValidationError("Legacy .xls workbooks are not supported, please save the file as .xlsx")
    if not from_excel and ext not in (".csv", ".txt", ""):
        raise ValidationError(f"Unsupported file type: {ext}")

    try:
        if from_excel:
            df = pd.read_excel(io.BytesIO(data), sheet_name=0, header=None, dtype=str, engine="openpyxl")
        else:
            df = pd.read_csv(io.BytesIO(data), header=None, dtype=str, keep_default_na=False,
                             skip_blank_lines=False, encoding="utf-8-sig")
    except pd.errors.EmptyDataError:
        raise ValidationError("File must contain a header row and at least one data row")
    except (ValueError, pd.errors.ParserError, OSError) as exc:
        logger.warning(f"Could not parse upload {filename}: {exc}")
        raise ValidationError(f"Failed to parse {filename or 'file'}. Please check the file format.")

    table = [[_clean_cell(v, from_excel) for v in row] for row in df.itertuples(index=False, name=None)]
    if not table:
        raise ValidationError("File must contain a header row and at least one data row")
    headers = table[0]
    while headers and not headers[-1]:
        headers = headers[:-1]
    rows = [
        (idx, cells[:len(headers)])
        for idx, cells in enumerate(table[1:], start=2)
        if any(cells[:len(headers)])
    ]
    if not headers or not rows:
        raise ValidationError("File must contain a header row and at least one data row")
    return headers, rows


# ------------------------
# Per-kind mapping and validation
# ------------------------
def _is_email(value: str) -> bool:
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def map_student_row(headers: List[str], cells: List[str]) -> Dict:
    """Map one row onto student columns; first non-empty value wins per column.

    Later synonym columns for an already-filled column, and headers matching
    no known spelling, go into ``additional_data`` under the header text.
    """
    data: Dict = {}
    bag: Dict = {}
    canonical_bag_seen = set()
    for header, value in zip(headers, cells):
        if not value:
            continue
        key = header.strip().lower()
        column = _STUDENT_FIELD_BY_HEADER.get(key)
        bag_key = _STUDENT_BAG_BY_HEADER.get(key)
        if column and column not in data:
            data[column] = value
        elif bag_key and bag_key not in canonical_bag_seen:
            canonical_bag_seen.add(bag_key)
            bag[bag_key] = value
        else:
            bag[header] = value
    if "status" in data:
        status = data["status"].strip().lower()
        data["status"] = status if status in STUDENT_STATUSES else "active"
    if bag:
        data["additional_data"] = bag
    return data


def validate_student_row(data: Dict) -> List[str]:
    errors = []
    if not (data.get("student_bc") or "").strip():
        errors.append("BC No is required")
    return errors


def _keyed_row(headers: List[str], cells: List[str]) -> Dict:
    row = {}
    for header, value in zip(headers, cells):
        key = header.strip().lower()
        if key not in row or not row[key]:
            row[key] = value
    return row


def validate_question_row(data: Dict) -> List[str]:
    errors = []
    qtype = data.get("question_type", "")
    if not qtype:
        errors.append("Question type is required")
    elif qtype not in QUESTION_TYPES:
        errors.append(f"Invalid question type: {qtype}")
    if not data.get("question_text"):
        errors.append("Question text is required")
    required = (data.get("required") or "").lower()
    if not required:
        errors.append("Required flag is required")
    elif required not in TRUTHY + FALSY:
        errors.append("Required must be true/false or 1/0")
    if qtype in CHOICE_TYPES and not _split_options(data.get("options")):
        errors.append(f"{qtype} questions require options")
    if qtype == "rating":
        if not data.get("scale"):
            errors.append("Rating questions require a scale value")
        elif parse_rating_scale(data["scale"]) is None:
            errors.append("Rating scale must be 3, 5, 7, or 10")
    return errors


def validate_respondent_row(data: Dict) -> List[str]:
    errors = []
    if not data.get("name"):
        errors.append("Name is required")
    if not data.get("email"):
        errors.append("Email is required")
    elif not _is_email(data["email"]):
        errors.append("Invalid email format")
    return errors


def _split_options(raw: Optional[str]) -> List[str]:
    return [o.strip() for o in (raw or "").split(",") if o.strip()]


def _check_headers(kind: str, headers: List[str]) -> None:
    present = {h.strip().lower() for h in headers}
    if kind == "students":
        if not present.intersection(STUDENT_SYNONYMS["student_bc"]):
            raise ValidationError("Missing required headers: BC No")
        return
    missing = [h for h in REQUIRED_HEADERS[kind] if h not in present]
    if missing:
        raise ValidationError(f"Missing required headers: {', '.join(missing)}")


def build_import(kind: str, headers: List[str], rows: List[Tuple[int, List[str]]]) -> ImportBatch:
    """Classify every row of a parsed table for the given import kind."""
    if kind not in IMPORT_KINDS:
        raise ValidationError(f"Unknown import type: {kind}")
    _check_headers(kind, headers)
    if not rows:
        raise ValidationError("File must contain a header row and at least one data row")

    parsed: List[ImportRow] = []
    for index, cells in rows:
        if kind == "students":
            data = map_student_row(headers, cells)
            errors = validate_student_row(data)
        elif kind == "questions":
            data = {k: v for k, v in _keyed_row(headers, cells).items()
                    if k in ("question_type", "question_text", "required", "options", "scale")}
            errors = validate_question_row(data)
        else:
            data = {k: v for k, v in _keyed_row(headers, cells).items() if k in RESPONDENT_FIELDS}
            errors = validate_respondent_row(data)
        parsed.append(ImportRow(index=index, data=data, errors=errors))

    preview = [dict(zip(headers, cells)) for _, cells in rows[:PREVIEW_ROWS]]
    return ImportBatch(kind=kind, headers=headers, rows=parsed, preview=preview)


def read_import(kind: str, data: bytes, filename: str) -> ImportBatch:
    headers, rows = parse_table(data, filename)
    return build_import(kind, headers, rows)


# ------------------------
# Commit
# ------------------------
def question_from_row(data: Dict) -> Question:
    qtype = data["question_type"]
    options = _split_options(data.get("options")) or None
    return Question(
        type=qtype,
        question=data["question_text"],
        required=data["required"].lower() in TRUTHY,
        options=options if qtype in CHOICE_TYPES or options else None,
        scale=parse_rating_scale(data.get("scale")) if qtype == "rating" else None,
    )


def _cap_messages(messages: List[str]) -> Tuple[List[str], int]:
    shown = messages[:ERROR_DISPLAY_LIMIT]
    return shown, max(0, len(messages) - len(shown))


def commit_import(storage: Storage, batch: ImportBatch, requester_id: str,
                  form_id: Optional[str] = None) -> dict:
    """Persist the valid rows of a batch and report the tally.

    Args:
        storage (Storage): Store access for this request.
        batch (ImportBatch): Output of ``build_import``.
        requester_id (str): Importing user; owner of the target form for questions.
        form_id (str|None): Target form, required for ``questions``.

    Returns:
        dict: {total, valid, invalid, committed, failed, messages, more_messages}

    Raises:
        ValidationError: questions import without a form.
        NotFoundError / OwnershipError: target form missing or not owned.
    """
    valid = batch.valid_rows
    failures = []
    if batch.kind == "questions":
        if not form_id:
            raise ValidationError("form_id is required for question imports")
        form = get_owned_form(storage, form_id, requester_id, "update")
        if valid:
            append_questions(storage, form, [question_from_row(r.data) for r in valid])
        committed = len(valid)
    elif batch.kind == "respondents":
        rows, failures = storage.bulk_create_respondents(
            ((r.index, r.data) for r in valid), created_by=requester_id,
        )
        committed = len(rows)
    else:
        rows, failures = storage.bulk_upsert_students(
            ((r.index, r.data) for r in valid), created_by=requester_id,
        )
        committed = len(rows)

    messages, more = _cap_messages(batch.errors + [str(f) for f in failures])
    logger.info(
        f"Import {batch.kind} by {requester_id}: {len(batch.rows)} rows, "
        f"{len(valid)} valid, {committed} committed, {len(failures)} failed"
    )
    return {
        "total": len(batch.rows),
        "valid": len(valid),
        "invalid": len(batch.invalid_rows),
        "committed": committed,
        "failed": len(failures),
        "messages": messages,
        "more_messages": more,
    }
