# schemas.py
import uuid
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Literal, Union

def new_id() -> str:
    return uuid.uuid4().hex

# ------------------------
# Form content (stored as JSON in form snapshots)
# ------------------------
class Question(BaseModel):
    question_id: str = Field(default_factory=new_id)
    question_no: int = 0
    type: str = "text"
    question: str = ""
    required: bool = False
    options: Optional[List[str]] = None
    scale: Optional[int] = None
    section_id: Optional[str] = None
    class Config:
        extra = "allow"  # editor-only fields (placeholder, help text) pass through

class Section(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str = ""
    name: str = ""
    order: int = 0
    marker: Optional[Literal["identity"]] = None

class FormContent(BaseModel):
    questions: List[Question] = []
    sections: List[Section] = []

class ContentSnapshot(BaseModel):
    stage: Literal["working", "preview", "published"]
    content: FormContent

# ------------------------
# Forms
# ------------------------
class FormSettings(BaseModel):
    welcome_message: str = ""
    icon_url: Optional[str] = None
    submission_type: Literal["one_per_child", "multiple"] = "one_per_child"
    allow_edit_response: bool = False
    submission_deadline: Optional[datetime] = None
    live_status: Literal["open", "closed"] = "open"
    selected_respondents: List[str] = []
    class Config:
        extra = "allow"

class FormCreate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    form_type: Optional[str] = None
    form_url: Optional[str] = None
    settings: Optional[FormSettings] = None

class FormBasicsUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    form_type: Optional[str] = None
    form_url: Optional[str] = None
    settings: Optional[FormSettings] = None

class WorkingContentUpdate(BaseModel):
    questions: List[Question] = []
    sections: List[Section] = []

class QuestionAdd(BaseModel):
    type: str = "text"
    section_id: Optional[str] = None
    question: str = ""
    required: Optional[bool] = None
    options: Optional[List[str]] = None
    scale: Optional[int] = None

class QuestionUpdate(BaseModel):
    type: Optional[str] = None
    question: Optional[str] = None
    required: Optional[bool] = None
    options: Optional[List[str]] = None
    scale: Optional[int] = None

class QuestionReorder(BaseModel):
    index: int

class QuestionMove(BaseModel):
    section_id: str
    index: Optional[int] = None

class SectionCreate(BaseModel):
    title: Optional[str] = None
    name: str = ""

class SectionOrder(BaseModel):
    section_ids: List[str]

class IconUpdate(BaseModel):
    icon_url: str

class FormOut(BaseModel):
    id: str
    name: str
    description: Optional[str]
    form_type: str
    form_url: Optional[str]
    status: str
    created_by: str
    settings: Dict[str, Any]
    content: FormContent
    has_preview: bool
    has_published: bool
    last_saved_at: Optional[datetime]
    last_published_at: Optional[datetime]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

class PublicSection(BaseModel):
    id: str
    title: str
    name: str
    order: int
    number: str
    questions: List[Question]

class PublicForm(BaseModel):
    id: str
    title: str
    description: Optional[str]
    welcome_message: str
    form_type: str
    form_url: Optional[str]
    sections: List[PublicSection]
    questions: List[Question]
    settings: Dict[str, Any]
    is_preview: bool = False

# ------------------------
# Responses
# ------------------------
class ResponseCreate(BaseModel):
    respondent_id: Optional[str] = None
    responses: Dict[str, Any]

class ResponseOut(BaseModel):
    id: str
    form_id: Optional[str]
    respondent_id: Optional[str]
    responses: Dict[str, Any]
    submitted_at: Optional[datetime]
    class Config:
        from_attributes = True

# ------------------------
# Students
# ------------------------
class StudentBase(BaseModel):
    full_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    level: Optional[str] = None
    class_name: Optional[str] = None
    centre: Optional[str] = None
    guardian_name: Optional[str] = None
    guardian_email: Optional[str] = None
    guardian_phone: Optional[str] = None
    address: Optional[str] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    medical_info: Optional[str] = None
    status: Optional[Literal["active", "inactive", "transferred", "graduated"]] = None
    additional_data: Optional[Dict[str, Any]] = None

class StudentCreate(StudentBase):
    student_bc: str

class StudentUpdate(StudentBase):
    student_bc: Optional[str] = None

class StudentOut(StudentBase):
    id: str
    student_bc: str
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    class Config:
        from_attributes = True

class StudentLookup(BaseModel):
    identifiers: Union[str, List[str]]
    form_id: Optional[str] = None
    already_added: List[str] = []

class StudentCard(BaseModel):
    student_bc: str
    full_name: Optional[str] = None
    level: Optional[str] = None
    class_name: Optional[str] = None

class LookupResult(BaseModel):
    found: List[StudentCard]
    added: List[StudentCard]
    not_found: List[str]
    not_selected: List[StudentCard]
    duplicates: List[str]

# ------------------------
# Events
# ------------------------
EventStatus = Literal["upcoming", "ongoing", "completed", "cancelled"]
RegistrationStatus = Literal["registered", "confirmed", "attended", "absent"]

class EventCreate(BaseModel):
    title: str
    description: Optional[str] = None
    event_type: str
    location: Optional[str] = None
    capacity: Optional[int] = Field(default=None, ge=0)
    status: EventStatus = "upcoming"
    start_date_time: datetime
    end_date_time: datetime
    settings: Optional[Dict[str, Any]] = None

class EventUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    event_type: Optional[str] = None
    location: Optional[str] = None
    capacity: Optional[int] = Field(default=None, ge=0)
    status: Optional[EventStatus] = None
    start_date_time: Optional[datetime] = None
    end_date_time: Optional[datetime] = None
    settings: Optional[Dict[str, Any]] = None

class EventOut(BaseModel):
    id: str
    title: str
    description: Optional[str]
    event_type: str
    location: Optional[str]
    capacity: Optional[int]
    status: str
    start_date_time: datetime
    end_date_time: datetime
    created_by: str
    settings: Optional[Dict[str, Any]]
    class Config:
        from_attributes = True

class AttendeeCreate(BaseModel):
    attendee_id: str
    registration_status: RegistrationStatus = "registered"

class AttendeeStatusUpdate(BaseModel):
    registration_status: RegistrationStatus

class AttendeeOut(BaseModel):
    id: str
    event_id: str
    attendee_id: str
    registration_status: str
    attended_at: Optional[datetime]
    registered_at: Optional[datetime]
    class Config:
        from_attributes = True

# ------------------------
# Users / admin
# ------------------------
class UserOut(BaseModel):
    id: str
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    department: Optional[str]
    user_type: str
    is_active: bool
    class Config:
        from_attributes = True

class UserStatusUpdate(BaseModel):
    is_active: bool

class SessionUpdate(BaseModel):
    recent_apps: List[str] = Field(default_factory=list, max_length=5)
