"""
Models for scheduling and update detection.

This module defines Pydantic models for:
- Version/build detection results
- Outdated verdicts
- Arbiter outcomes and cycle summaries
- Schedule bookkeeping
- Scheduler, threshold and alert configuration
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from tracker.models import (
    Cadence, DetectionMethod, PendingUpdate, RelationAction, SignificanceTier, UpdateRecord
)


class DetectionSuggestions(BaseModel):
    """Hints for a user confirming a detection by hand."""
    should_ask_for_build: bool = Field(default=False)
    should_ask_for_version: bool = Field(default=False)
    manual_entry_needed: bool = Field(default=False)
    message: Optional[str] = Field(default=None)


class VersionDetection(BaseModel):
    """Structured version/build tokens extracted from a free-form title."""
    detected_version: Optional[str] = Field(default=None, description="Normalized version")
    detected_build: Optional[str] = Field(default=None, description="Normalized build")
    version_rule: Optional[str] = Field(default=None, description="Rule that produced the version")
    build_rule: Optional[str] = Field(default=None, description="Rule that produced the build")
    rule_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    suggestions: DetectionSuggestions = Field(default_factory=DetectionSuggestions)

    @property
    def has_version(self) -> bool:
        return self.detected_version is not None

    @property
    def has_build(self) -> bool:
        return self.detected_build is not None

    @property
    def is_empty(self) -> bool:
        return self.detected_version is None and self.detected_build is None


class LocalState(BaseModel):
    """Tracked state used for outdated checks."""
    version: Optional[str] = Field(default=None)
    build: Optional[str] = Field(default=None)
    version_verified: bool = Field(default=False)
    build_verified: bool = Field(default=False)


class RemoteSignal(BaseModel):
    """What a listing says about the remote release."""
    version: Optional[str] = Field(default=None)
    build: Optional[str] = Field(default=None)
    published_at: Optional[datetime] = Field(default=None)


class OutdatedVerdict(BaseModel):
    """Result of comparing local tracked state against a remote signal."""
    outdated: bool = Field(default=False)
    authoritative: bool = Field(default=False, description="False when only the freshness window applied")
    reason: str = Field(default="")


class ArbiterOutcome(str, Enum):
    """What the arbiter did with one detection."""
    APPLIED = "applied"
    QUEUED = "queued"
    DUPLICATE = "duplicate"
    SUPPRESSED = "suppressed"
    DROPPED = "dropped"
    UNCHANGED = "unchanged"
    DISCARDED = "discarded"


class ArbiterDecision(BaseModel):
    """Outcome of processing one listing against one tracked release."""
    outcome: ArbiterOutcome = Field(...)
    reason: str = Field(default="")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    detection_method: DetectionMethod = Field(default=DetectionMethod.PATTERN)
    record: Optional[UpdateRecord] = Field(default=None)
    pending: Optional[PendingUpdate] = Field(default=None)


class RelationResolution(BaseModel):
    """Result of a user decision on a relation candidate."""
    candidate_id: str = Field(...)
    action: RelationAction = Field(...)
    release_id: str = Field(..., description="Release the candidate belonged to")
    new_release_id: Optional[str] = Field(default=None, description="Set for track_separate")
    record: Optional[UpdateRecord] = Field(default=None, description="Set for track_same")


class ScheduleEntry(BaseModel):
    """Process-local cadence bookkeeping for one account."""
    account_id: str = Field(...)
    cadence: Cadence = Field(...)
    last_check: Optional[datetime] = Field(default=None)
    next_check: datetime = Field(...)


class CycleSummary(BaseModel):
    """Aggregate result of one account check cycle."""
    cycle_id: str = Field(..., description="Unique cycle identifier")
    account_id: str = Field(...)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    duration_seconds: float = Field(default=0.0)
    checked: int = Field(default=0)
    updates_found: int = Field(default=0, description="Applied plus queued")
    applied: int = Field(default=0)
    queued: int = Field(default=0)
    sequels_found: int = Field(default=0)
    failed: int = Field(default=0)
    discarded: bool = Field(default=False, description="Stop was requested mid-cycle")
    outcomes: Dict[str, int] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)


class ThresholdConfig(BaseModel):
    """Named, overridable detection thresholds."""
    auto_apply_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    queue_min_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    relation_similarity_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    listing_match_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    freshness_window_hours: int = Field(default=24, ge=0)
    classifier_weight: float = Field(default=0.3, ge=0.0, le=1.0)

    @model_validator(mode='after')
    def check_order(self):
        if self.queue_min_confidence > self.auto_apply_confidence:
            raise ValueError('queue_min_confidence must not exceed auto_apply_confidence')
        return self


class AlertKind(str, Enum):
    """Kinds of events reported after a check cycle."""
    UPDATE_APPLIED = "update_applied"
    UPDATE_QUEUED = "update_queued"
    RELATION_FOUND = "relation_found"


class AlertEvent(BaseModel):
    """Something a user should hear about."""
    kind: AlertKind = Field(...)
    account_id: str = Field(...)
    release_id: str = Field(...)
    title: str = Field(...)
    detail: str = Field(default="")
    significance: Optional[SignificanceTier] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class AlertConfig(BaseModel):
    """Configuration for alerting system (logging only)."""
    enabled: bool = Field(default=True)
    log_enabled: bool = Field(default=True)

    # Applied updates below this tier are not reported
    min_significance_for_log: SignificanceTier = Field(default=SignificanceTier.PATCH)

    # Rate limiting
    max_alerts_per_hour: int = Field(default=10)
    alert_cooldown_minutes: int = Field(default=0)


class SchedulerConfig(BaseModel):
    """Configuration for the scheduler system."""
    timezone: str = Field(default="UTC", description="Timezone for scheduling")
    tick_interval_seconds: int = Field(default=300, ge=10, description="Driver tick period")
    cache_refresh_minutes: int = Field(default=30, ge=1)
    cache_refresh_initial_delay_seconds: int = Field(default=30, ge=0)
    title_normalization_hours: int = Field(default=24, ge=1)
    status_preview_size: int = Field(default=10, ge=1)

    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)
    alert_config: AlertConfig = Field(default_factory=AlertConfig)

    @classmethod
    def from_settings(cls, settings) -> "SchedulerConfig":
        """Build the engine configuration from environment settings."""
        return cls(
            timezone=settings.timezone,
            tick_interval_seconds=settings.tick_interval_seconds,
            cache_refresh_minutes=settings.cache_refresh_minutes,
            cache_refresh_initial_delay_seconds=settings.cache_refresh_initial_delay_seconds,
            title_normalization_hours=settings.title_normalization_hours,
            status_preview_size=settings.status_preview_size,
            thresholds=ThresholdConfig(
                auto_apply_confidence=settings.auto_apply_confidence,
                queue_min_confidence=settings.queue_min_confidence,
                relation_similarity_threshold=settings.relation_similarity_threshold,
                listing_match_threshold=settings.listing_match_threshold,
                freshness_window_hours=settings.freshness_window_hours,
                classifier_weight=settings.classifier_weight,
            ),
        )
