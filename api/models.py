"""
API models and schemas for the FastAPI application.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from scheduler.models import ScheduleEntry
from tracker.models import RelationAction


class VerifyRequest(BaseModel):
    """Request body for recording a user-verified version/build."""
    version: Optional[str] = Field(None, description="Verified version, e.g. 1.2.3")
    build: Optional[str] = Field(None, description="Verified build number")

    @model_validator(mode='after')
    def require_one(self):
        if not self.version and not self.build:
            raise ValueError('version or build is required')
        return self


class ResolveRequest(BaseModel):
    """Request body for resolving a relation candidate."""
    action: RelationAction = Field(..., description="track_same, track_separate or dismiss")


class CycleSummaryResponse(BaseModel):
    """Aggregate result of a check cycle."""
    cycle_id: str = Field(..., description="Cycle identifier")
    account_id: str = Field(..., description="Checked account")
    checked: int = Field(..., description="Releases checked")
    updates_found: int = Field(..., description="Applied plus queued updates")
    applied: int = Field(..., description="Updates applied automatically")
    queued: int = Field(..., description="Updates queued for confirmation")
    sequels_found: int = Field(..., description="Relation candidates emitted")
    failed: int = Field(..., description="Releases that failed to check")
    duration_seconds: float = Field(..., description="Cycle duration")
    errors: List[str] = Field(default_factory=list, description="Per-release error messages")


class SchedulerStatusResponse(BaseModel):
    """Scheduler status response model."""
    running: bool = Field(..., description="Whether periodic jobs are running")
    scheduled_accounts: int = Field(..., description="Accounts in the schedule")
    next_checks: List[ScheduleEntry] = Field(..., description="Soonest checks, ascending")


class ScheduleRefreshResponse(BaseModel):
    """Result of recomputing one account's schedule entry."""
    account_id: str = Field(..., description="Account identifier")
    scheduled: bool = Field(..., description="False when the account was removed from the schedule")
    entry: Optional[ScheduleEntry] = Field(None, description="New schedule entry")


class ErrorResponse(BaseModel):
    """Error response model."""
    error: str = Field(..., description="Error message")
    detail: Optional[Dict] = Field(None, description="Additional error details")
    status_code: int = Field(..., description="HTTP status code")


class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service status")
    timestamp: datetime = Field(..., description="Current timestamp")
    version: str = Field(..., description="API version")
    database_status: str = Field(..., description="Database connection status")
    scheduler_running: bool = Field(..., description="Whether periodic jobs are running")
