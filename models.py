"""
Pydantic models for Apollo Enrichment Studio
"""
import math
from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, validator
from pydantic.alias_generators import to_camel


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives"""
    return int(math.floor(value + 0.5))


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys on the wire"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class EnrichmentStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class Contact(CamelModel):
    """Contact row supplied by the upload collaborator"""
    first_name: str
    last_name: str
    domain: Optional[str] = None
    email: Optional[str] = None

    @validator("first_name", "last_name")
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("Contact must have firstName and lastName")
        return v.strip()

    @validator("domain", "email", pre=True)
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    def dedupe_key(self) -> str:
        return f"{self.first_name.lower()}-{self.last_name.lower()}-{(self.domain or '').lower()}"


class EmploymentRecord(CamelModel):
    title: Optional[str] = None
    company: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    current: Optional[bool] = None


class EducationRecord(CamelModel):
    school: Optional[str] = None
    degree: Optional[str] = None
    field: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class EnrichedContact(Contact):
    """Contact plus whatever Apollo returned for it"""
    id: Optional[str] = None
    title: Optional[str] = None
    company: Optional[str] = None
    industry: Optional[str] = None
    company_size: Optional[int] = None
    location: Optional[str] = None
    linkedin_url: Optional[str] = None
    twitter_url: Optional[str] = None
    facebook_url: Optional[str] = None

    # Contact information
    work_email: Optional[str] = None
    personal_email: Optional[str] = None
    direct_phone: Optional[str] = None
    mobile_phone: Optional[str] = None

    employment_history: List[EmploymentRecord] = Field(default_factory=list)
    education: List[EducationRecord] = Field(default_factory=list)

    # Enrichment metadata
    enrichment_status: EnrichmentStatus
    enrichment_timestamp: Optional[datetime] = None
    confidence: Optional[str] = None
    data_completeness: int = Field(0, ge=0, le=100)
    error: Optional[str] = None

    @classmethod
    def failed(cls, contact: Contact, error: str) -> "EnrichedContact":
        """Failed entry for a contact whose batch could not be enriched"""
        return cls(
            first_name=contact.first_name,
            last_name=contact.last_name,
            domain=contact.domain,
            email=contact.email,
            enrichment_status=EnrichmentStatus.FAILED,
            error=error,
        )

    @property
    def best_email(self) -> Optional[str]:
        return self.work_email or self.personal_email or self.email

    @property
    def best_phone(self) -> Optional[str]:
        return self.direct_phone or self.mobile_phone

    @property
    def quality_score(self) -> int:
        """0-100 score of how many key profile fields are populated"""
        score = 0
        if self.best_email:
            score += 30
        if self.linkedin_url:
            score += 25
        if self.title:
            score += 20
        if self.company:
            score += 15
        if self.location:
            score += 10
        return score


class EnrichmentOptions(CamelModel):
    """Flags forwarded verbatim to the enrichment call"""
    reveal_personal_emails: bool = True
    reveal_phone_numbers: bool = False
    include_social_profiles: bool = True
    include_employment_history: bool = True


class BatchStats(CamelModel):
    """Summary the enrichment function reports for one call"""
    total_contacts: int = 0
    successful_enrichments: int = 0
    failed_enrichments: int = 0
    average_data_completeness: int = 0
    api_calls_used: int = 1
    credits_used: int = 0


class BatchResult(CamelModel):
    """Response of one enrichment call"""
    success: bool
    data: List[EnrichedContact] = Field(default_factory=list)
    stats: Optional[BatchStats] = None
    error: Optional[str] = None
    timestamp: Optional[datetime] = None


class RunStatistics(CamelModel):
    """Counters accumulated over a run"""
    processed: int = 0
    successful: int = 0
    failed: int = 0
    api_calls: int = 0
    credits_used: int = 0
    quality_score: int = Field(0, ge=0, le=100)


class RunContext(BaseModel):
    """Everything one run owns, replaced as a whole after each batch"""
    run_id: str
    contacts: List[Contact]
    results: List[EnrichedContact] = Field(default_factory=list)
    stats: RunStatistics = Field(default_factory=RunStatistics)
    state: RunState = RunState.IDLE
    batch_size: int
    total_batches: int = 0
    completed_batches: int = 0
    errors: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def remaining_contacts(self) -> List[Contact]:
        return self.contacts[len(self.results):]

    @property
    def progress_percent(self) -> float:
        if not self.contacts:
            return 0.0
        return round(len(self.results) / len(self.contacts) * 100, 2)


# Run events


class RunEvent(CamelModel):
    kind: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class BatchStarted(RunEvent):
    kind: Literal["batch_started"] = "batch_started"
    index: int
    total: int
    size: int


class BatchCompleted(RunEvent):
    kind: Literal["batch_completed"] = "batch_completed"
    index: int
    success_count: int
    fail_count: int
    error: Optional[str] = None


class Progress(RunEvent):
    kind: Literal["progress"] = "progress"
    completed_batches: int
    total_batches: int
    percent: float


class RunCompleted(RunEvent):
    kind: Literal["run_completed"] = "run_completed"
    stats: RunStatistics


class RunPaused(RunEvent):
    kind: Literal["run_paused"] = "run_paused"
    stats: RunStatistics


class RunFailed(RunEvent):
    kind: Literal["run_failed"] = "run_failed"
    error: str
    stats: RunStatistics


class LogEntry(CamelModel):
    """Human-readable line shown in the studio log"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    message: str
    level: str = "info"  # info, success, error

    @validator("level")
    def validate_level(cls, v):
        valid_levels = ["info", "success", "error"]
        if v not in valid_levels:
            raise ValueError(f"Level must be one of {valid_levels}")
        return v
