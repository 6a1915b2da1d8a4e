"""
Pydantic models for tracked releases and their embedded history.
Implements the TrackedRelease document stored in MongoDB.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class Cadence(str, Enum):
    """How often an account's releases are checked."""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MANUAL = "manual"

    def interval(self) -> Optional[timedelta]:
        """Wall-clock interval for the cadence, None for manual."""
        return CADENCE_INTERVALS.get(self)


CADENCE_INTERVALS = {
    Cadence.HOURLY: timedelta(hours=1),
    Cadence.DAILY: timedelta(days=1),
    Cadence.WEEKLY: timedelta(weeks=1),
}

# Most frequent first
CADENCE_PRIORITY = [Cadence.HOURLY, Cadence.DAILY, Cadence.WEEKLY]


class SignificanceTier(str, Enum):
    """Significance of a detected version delta."""
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"


class DetectionMethod(str, Enum):
    """How a detection was produced."""
    PATTERN = "pattern"
    ASSISTED = "assisted"


class PendingStatus(str, Enum):
    """Lifecycle of a pending update."""
    OPEN = "open"
    APPROVED = "approved"
    REJECTED = "rejected"


class ChangeSource(str, Enum):
    """Who applied an update record."""
    AUTOMATIC = "automatic"
    USER_APPROVED = "user_approved"
    RELATION_MERGE = "relation_merge"


class RelationType(str, Enum):
    """Relationship between an unlinked listing and a tracked release."""
    POTENTIAL_SEQUEL = "potential_sequel"
    POTENTIAL_EDITION = "potential_edition"
    POTENTIAL_DLC = "potential_dlc"


class RelationAction(str, Enum):
    """User decision on a relation candidate."""
    TRACK_SAME = "track_same"
    TRACK_SEPARATE = "track_separate"
    DISMISS = "dismiss"


def _new_id() -> str:
    return uuid.uuid4().hex


class Listing(BaseModel):
    """A listing as returned by the listing collaborator."""
    title: str = Field(..., description="Free-form listing title")
    link: str = Field(..., description="Listing link, used as its identity")
    image: Optional[str] = Field(default=None, description="Cover image URL")
    raw_version_text: Optional[str] = Field(default=None, description="Version text published next to the title")
    source: Optional[str] = Field(default=None, description="Source tag of the listing")
    published_at: Optional[datetime] = Field(default=None, description="When the listing was published")

    @field_validator('title', 'link')
    @classmethod
    def validate_not_blank(cls, v):
        """Titles and links must carry some text."""
        if not v or not v.strip():
            raise ValueError('value cannot be empty')
        return v.strip()


class UpdateRecord(BaseModel):
    """An applied update. Append-only."""
    record_id: str = Field(default_factory=_new_id)
    version: Optional[str] = Field(default=None, description="Normalized version")
    build: Optional[str] = Field(default=None, description="Normalized build")
    display_version: str = Field(..., description="Human-readable version label")
    previous_version: Optional[str] = Field(default=None, description="lastKnownVersion before this update")
    significance: SignificanceTier = Field(default=SignificanceTier.PATCH)
    change_source: ChangeSource = Field(default=ChangeSource.AUTOMATIC)
    detection_method: DetectionMethod = Field(default=DetectionMethod.PATTERN)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    source_link: Optional[str] = Field(default=None)
    download_links: List[str] = Field(default_factory=list)
    listing_title: Optional[str] = Field(default=None)
    date_found: datetime = Field(default_factory=datetime.utcnow)

    model_config = {"frozen": True}


class PendingUpdate(BaseModel):
    """A detection not confident enough to apply automatically."""
    pending_id: str = Field(default_factory=_new_id)
    detected_version: Optional[str] = Field(default=None)
    detected_build: Optional[str] = Field(default=None)
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: str = Field(..., description="Why the detection was queued")
    detection_method: DetectionMethod = Field(default=DetectionMethod.PATTERN)
    secondary_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    secondary_reason: Optional[str] = Field(default=None)
    listing_title: str = Field(...)
    source_link: Optional[str] = Field(default=None)
    image: Optional[str] = Field(default=None)
    dedup_key: str = Field(..., description="release|version|build|method")
    status: PendingStatus = Field(default=PendingStatus.OPEN)
    date_found: datetime = Field(default_factory=datetime.utcnow)
    resolved_at: Optional[datetime] = Field(default=None)


class RelationCandidate(BaseModel):
    """An unlinked listing suspected to be related to a tracked release."""
    candidate_id: str = Field(default_factory=_new_id)
    candidate_key: str = Field(..., description="Identity of the candidate listing")
    listing: Listing = Field(...)
    similarity: float = Field(..., ge=0.0, le=1.0)
    relation_type: RelationType = Field(...)
    reason: str = Field(default="")
    dismissed: bool = Field(default=False)
    date_found: datetime = Field(default_factory=datetime.utcnow)


class TrackedRelease(BaseModel):
    """A release an account monitors for updates."""
    release_id: str = Field(default_factory=_new_id)
    account_id: str = Field(..., description="Owning account")
    game_id: str = Field(..., description="Identity of the tracked title at its source")
    title: str = Field(..., description="Display (cleaned) title")
    original_title: Optional[str] = Field(default=None, description="Title as first seen")
    cleaned_title: Optional[str] = Field(default=None)
    source: str = Field(default="unknown")
    source_link: Optional[str] = Field(default=None)
    image: Optional[str] = Field(default=None)

    last_known_version: Optional[str] = Field(default=None, description="Free-text version label")
    current_version_number: Optional[str] = Field(default=None)
    current_build_number: Optional[str] = Field(default=None)
    version_number_verified: bool = Field(default=False)
    build_number_verified: bool = Field(default=False)
    version_number_source: Optional[str] = Field(default=None)
    version_number_last_updated: Optional[datetime] = Field(default=None)

    check_frequency: Cadence = Field(default=Cadence.DAILY)
    last_checked: Optional[datetime] = Field(default=None)
    last_version_date: Optional[datetime] = Field(default=None)
    has_new_update: bool = Field(default=False)
    new_update_seen: bool = Field(default=True)

    update_history: List[UpdateRecord] = Field(default_factory=list)
    pending_updates: List[PendingUpdate] = Field(default_factory=list)
    relation_candidates: List[RelationCandidate] = Field(default_factory=list)

    is_active: bool = Field(default=True)
    added_at: datetime = Field(default_factory=datetime.utcnow)

    def open_pending(self) -> List[PendingUpdate]:
        """Pending entries still awaiting a decision."""
        return [p for p in self.pending_updates if p.status == PendingStatus.OPEN]

    def find_pending(self, pending_id: str) -> Optional[PendingUpdate]:
        for pending in self.pending_updates:
            if pending.pending_id == pending_id:
                return pending
        return None

    def find_candidate(self, candidate_id: str) -> Optional[RelationCandidate]:
        for candidate in self.relation_candidates:
            if candidate.candidate_id == candidate_id:
                return candidate
        return None
