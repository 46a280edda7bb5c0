# Domain enums, stored records and transition commands

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import now_utc

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class IssueStatus(str, Enum):
    SUBMITTED = "Submitted"
    IN_PROGRESS = "In Progress"
    PENDING_APPROVAL = "Pending Approval"
    RESOLVED = "Resolved"

class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

class IssueCategory(str, Enum):
    POTHOLE = "Pothole"
    GRAFFITI = "Graffiti"
    WASTE_MANAGEMENT = "Waste Management"
    BROKEN_STREETLIGHT = "Broken Streetlight"
    SAFETY_HAZARD = "Safety Hazard"
    TREE_MAINTENANCE = "Tree Maintenance"
    ANIMAL_CONTROL = "Animal Control"
    TRAFFIC_AND_SIGNALS = "Traffic & Signals"
    OTHER = "Other"

class Department(str, Enum):
    PUBLIC_WORKS = "Public Works"
    SANITATION = "Sanitation"
    PARKS_AND_RECREATION = "Parks and Recreation"
    CODE_ENFORCEMENT = "Code Enforcement"
    WATER_DEPARTMENT = "Water Department"
    ANIMAL_CONTROL = "Animal Control"
    TRAFFIC_AND_SIGNALS = "Traffic & Signals"
    ROADS_AND_HIGHWAYS = "Roads & Highways"
    OTHER = "Other"

class ActorRole(str, Enum):
    CITIZEN = "citizen"
    STAFF = "staff"
    OFFICIAL = "official"

PENDING_STATUSES = (IssueStatus.SUBMITTED.value, IssueStatus.IN_PROGRESS.value)


def new_id() -> str:
    return str(uuid.uuid4())


def coerce_category(value: Optional[str]) -> IssueCategory:
    if value in [c.value for c in IssueCategory]:
        return IssueCategory(value)
    return IssueCategory.OTHER


def coerce_priority(value: Optional[str]) -> Priority:
    if isinstance(value, str):
        for p in Priority:
            if p.value.lower() == value.strip().lower():
                return p
    return Priority.MEDIUM


def clamp_severity(value) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return 5
    return max(1, min(10, score))

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------
class Geolocation(BaseModel):
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    type: Optional[str] = None
    coordinates: Optional[List[float]] = None

    @model_validator(mode='before')
    @classmethod
    def check_location_format(cls, values):
        if isinstance(values, dict):
            values = dict(values)
            if values.get('coordinates') is not None:
                if len(values['coordinates']) != 2:
                    raise ValueError("Coordinates must be [longitude, latitude]")
                values['longitude'] = values['coordinates'][0]
                values['latitude'] = values['coordinates'][1]
                values['type'] = 'Point'
            elif values.get('latitude') is not None and values.get('longitude') is not None:
                values['coordinates'] = [values['longitude'], values['latitude']]
                values['type'] = 'Point'
        return values

    @property
    def is_resolvable(self) -> bool:
        return self.latitude is not None and self.longitude is not None

class Comment(BaseModel):
    actor_id: str
    actor_name: Optional[str] = None
    text: str = Field(..., min_length=1, max_length=2000)
    created_at: datetime = Field(default_factory=now_utc)

class FeedbackEntry(BaseModel):
    rating: int = Field(..., ge=1, le=10)
    comment: Optional[str] = Field(None, max_length=2000)

class CompletionAnalysis(BaseModel):
    """Before/after comparison verdict, always in structured form."""
    narrative: str
    is_satisfactory: bool
    summary: str

class SeverityAssessment(BaseModel):
    is_relevant: bool
    rejection_reason: Optional[str] = None
    severity_score: int = Field(5, ge=1, le=10)
    reasoning: str = ""

    @field_validator('severity_score', mode='before')
    @classmethod
    def _severity(cls, v):
        return clamp_severity(v)

class VoiceAnalysis(BaseModel):
    """Structured extraction from a phoned-in report."""
    title: str
    category: IssueCategory = IssueCategory.OTHER
    transcript: str = ""
    address: str = ""
    postal_code: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    severity_score: int = Field(5, ge=1, le=10)
    reasoning: str = ""

    @field_validator('category', mode='before')
    @classmethod
    def _category(cls, v):
        return coerce_category(v)

    @field_validator('priority', mode='before')
    @classmethod
    def _priority(cls, v):
        return coerce_priority(v)

    @field_validator('severity_score', mode='before')
    @classmethod
    def _severity(cls, v):
        return clamp_severity(v)

# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------
class Record(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    id: str = Field(default_factory=new_id)
    version: int = 0

    def to_doc(self) -> dict:
        doc = self.model_dump()
        doc["_id"] = doc.pop("id")
        return doc

    @classmethod
    def from_doc(cls, doc: dict):
        return cls(**{k: v for k, v in doc.items() if k != "_id"}, id=doc["_id"])

class Issue(Record):
    creator_id: str
    assigned_staff_id: Optional[str] = None
    assigned_staff_name: Optional[str] = None

    title: str
    category: IssueCategory = IssueCategory.OTHER
    notes: str = ""
    transcript: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)
    audio_url: Optional[str] = None

    location: Optional[Geolocation] = None
    address: str = ""
    postal_code: Optional[str] = None

    status: IssueStatus = IssueStatus.SUBMITTED
    priority: Priority = Priority.MEDIUM
    severity_score: int = Field(5, ge=1, le=10)
    severity_reasoning: str = ""
    submitted_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)
    estimated_resolution_date: Optional[datetime] = None
    deadline: Optional[datetime] = None

    supporters: List[str] = Field(default_factory=list)
    supporter_count: int = 1
    likes: List[str] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)

    completion_notes: Optional[str] = None
    completion_image_urls: List[str] = Field(default_factory=list)
    completion_analysis: Optional[CompletionAnalysis] = None
    rejection_reason: Optional[str] = None

    feedback: Dict[str, FeedbackEntry] = Field(default_factory=dict)

    is_voice_report: bool = False
    caller_number: Optional[str] = None
    is_public_feed: bool = True

class ActorProfile(Record):
    role: ActorRole
    display_name: Optional[str] = None
    username: Optional[str] = None
    hashed_password: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    created_at: datetime = Field(default_factory=now_utc)

    # citizen counters
    utility_points: int = 0
    trust_points: int = 100
    report_count: int = 0
    joined_others_count: int = 0
    badges: List[str] = Field(default_factory=list)

    # staff counters
    department: Optional[Department] = None
    efficiency_points: int = 0
    ai_image_warning_count: int = 0

# ---------------------------------------------------------------------------
# Transition commands
# ---------------------------------------------------------------------------
class CreateIssueCommand(BaseModel):
    actor_id: str
    images: List[str] = Field(default_factory=list)
    notes: Optional[str] = Field(None, max_length=5000)
    audio_transcript: Optional[str] = Field(None, max_length=10000)
    audio_url: Optional[str] = None
    location: Optional[Geolocation] = None
    address: str = Field("", max_length=500)
    postal_code: Optional[str] = Field(None, max_length=12)
    category: IssueCategory = IssueCategory.OTHER

class VoiceCreateIssueCommand(BaseModel):
    caller_phone_number: str = Field(..., max_length=32)
    audio_data_ref: str
    dtmf_postal_code: Optional[str] = Field(None, max_length=12)
