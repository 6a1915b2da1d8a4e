"""
Exceptions raised by the update-detection engine.

Direct user actions (approve, reject, verify, resolve) surface these to the
caller. Background cycles catch them per release and count them as failures.
"""

from typing import Optional


class TrackerError(Exception):
    """Base class for tracker errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(TrackerError):
    """A release, pending entry or relation candidate does not exist or is already resolved."""


class VersionValidationError(TrackerError):
    """A user-supplied version or build string was rejected."""

    def __init__(self, message: str, field: str, value: Optional[str] = None):
        super().__init__(message, {"field": field, "value": value})
        self.field = field
        self.value = value


class DuplicateReleaseError(TrackerError):
    """The release is already tracked for this account."""


class CycleInProgressError(TrackerError):
    """A check cycle for the account is already running."""

    def __init__(self, account_id: str):
        super().__init__(f"Check cycle already running for account {account_id}",
                         {"account_id": account_id})
        self.account_id = account_id


class ListingFetchError(TrackerError):
    """The listing collaborator could not be reached or returned garbage."""


class ClassifierError(TrackerError):
    """The optional external classifier failed."""
