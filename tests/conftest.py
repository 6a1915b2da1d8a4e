"""
Pytest configuration and shared fixtures.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from scheduler.errors import DuplicateReleaseError
from scheduler.models import AlertConfig, SchedulerConfig, ThresholdConfig
from scheduler.update_arbiter import UpdateArbiter
from tracker.listing_client import ListingClient
from tracker.models import (
    Listing, PendingStatus, PendingUpdate, RelationCandidate, TrackedRelease, UpdateRecord
)


class InMemoryReleaseStore:
    """
    Dict-backed stand-in for MongoDBManager.

    Reads return deep copies, and each write is applied as a whole, with the
    same guards the Mongo queries use.
    """

    def __init__(self, releases: Optional[List[TrackedRelease]] = None):
        self.releases: Dict[str, TrackedRelease] = {}
        self.cycle_summaries: List[Dict[str, Any]] = []
        self.fail_on: Dict[str, Exception] = {}
        for release in releases or []:
            self.releases[release.release_id] = release.model_copy(deep=True)

    def _check_failure(self, operation: str) -> None:
        if operation in self.fail_on:
            raise self.fail_on[operation]

    def _copy(self, release: Optional[TrackedRelease]) -> Optional[TrackedRelease]:
        return release.model_copy(deep=True) if release is not None else None

    def _update(self, release_id: str, **changes) -> None:
        self.releases[release_id] = self.releases[release_id].model_copy(update=changes)

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def get_release(self, release_id: str) -> Optional[TrackedRelease]:
        self._check_failure("get_release")
        return self._copy(self.releases.get(release_id))

    async def get_release_by_candidate(self, candidate_id: str) -> Optional[TrackedRelease]:
        for release in self.releases.values():
            if release.find_candidate(candidate_id):
                return self._copy(release)
        return None

    async def get_active_releases(self, account_id: str) -> List[TrackedRelease]:
        self._check_failure("get_active_releases")
        return [self._copy(r) for r in self.releases.values() if r.account_id == account_id and r.is_active]

    async def get_all_active_releases(self) -> List[TrackedRelease]:
        return [self._copy(r) for r in self.releases.values() if r.is_active]

    async def get_account_cadences(self, account_id: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        accounts: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"cadences": [], "last_checked": None})
        for release in self.releases.values():
            if not release.is_active or (account_id is not None and release.account_id != account_id):
                continue
            entry = accounts[release.account_id]
            entry["cadences"].append(release.check_frequency)
            checked = release.last_checked
            if checked and (entry["last_checked"] is None or checked > entry["last_checked"]):
                entry["last_checked"] = checked
        return dict(accounts)

    async def insert_release(self, release: TrackedRelease) -> TrackedRelease:
        for existing in self.releases.values():
            if existing.account_id == release.account_id and existing.game_id == release.game_id:
                raise DuplicateReleaseError(f"'{release.title}' is already tracked",
                                            {"account_id": release.account_id, "game_id": release.game_id})
        self.releases[release.release_id] = release.model_copy(deep=True)
        return release

    async def apply_update(
        self,
        release_id: str,
        record: UpdateRecord,
        fields: Dict[str, Any],
        stale_pending_ids: Optional[List[str]] = None,
        require_pending_id: Optional[str] = None
    ) -> bool:
        self._check_failure("apply_update")
        release = self.releases.get(release_id)
        if release is None:
            return False
        if require_pending_id is not None:
            pending = release.find_pending(require_pending_id)
            if pending is None or pending.status != PendingStatus.OPEN:
                return False

        pulled = set(stale_pending_ids or [])
        if require_pending_id is not None:
            pulled.add(require_pending_id)
        self._update(
            release_id,
            update_history=release.update_history + [record],
            pending_updates=[p for p in release.pending_updates if p.pending_id not in pulled],
            **fields
        )
        return True

    async def add_pending_update(self, release_id: str, pending: PendingUpdate) -> bool:
        release = self.releases.get(release_id)
        if release is None or any(p.dedup_key == pending.dedup_key for p in release.pending_updates):
            return False
        self._update(release_id, pending_updates=release.pending_updates + [pending])
        return True

    async def reject_pending_update(self, release_id: str, pending_id: str) -> bool:
        release = self.releases.get(release_id)
        if release is None:
            return False
        pending = release.find_pending(pending_id)
        if pending is None or pending.status != PendingStatus.OPEN:
            return False
        rejected = pending.model_copy(update={"status": PendingStatus.REJECTED, "resolved_at": datetime.utcnow()})
        self._update(release_id, pending_updates=[
            rejected if p.pending_id == pending_id else p for p in release.pending_updates
        ])
        return True

    async def update_release_fields(self, release_id: str, fields: Dict[str, Any]) -> bool:
        self._check_failure("update_release_fields")
        if release_id not in self.releases:
            return False
        self._update(release_id, **fields)
        return True

    async def touch_last_checked(self, release_id: str, checked_at: datetime) -> None:
        await self.update_release_fields(release_id, {"last_checked": checked_at})

    async def add_relation_candidate(self, release_id: str, candidate: RelationCandidate) -> bool:
        release = self.releases.get(release_id)
        if release is None or any(c.candidate_key == candidate.candidate_key for c in release.relation_candidates):
            return False
        self._update(release_id, relation_candidates=release.relation_candidates + [candidate])
        return True

    def _open_candidate_owner(self, candidate_id: str) -> Optional[TrackedRelease]:
        for release in self.releases.values():
            candidate = release.find_candidate(candidate_id)
            if candidate is not None and not candidate.dismissed:
                return release
        return None

    async def dismiss_relation_candidate(self, candidate_id: str) -> bool:
        release = self._open_candidate_owner(candidate_id)
        if release is None:
            return False
        self._update(release.release_id, relation_candidates=[
            c.model_copy(update={"dismissed": True}) if c.candidate_id == candidate_id else c
            for c in release.relation_candidates
        ])
        return True

    async def remove_relation_candidate(self, candidate_id: str) -> bool:
        release = self._open_candidate_owner(candidate_id)
        if release is None:
            return False
        self._update(release.release_id, relation_candidates=[
            c for c in release.relation_candidates if c.candidate_id != candidate_id
        ])
        return True

    async def record_cycle_summary(self, summary: Dict[str, Any]) -> None:
        self._check_failure("record_cycle_summary")
        self.cycle_summaries.append(dict(summary))

    async def get_database_stats(self) -> Dict[str, Any]:
        active = [r for r in self.releases.values() if r.is_active]
        return {
            "total_releases": len(self.releases),
            "active_releases": len(active),
            "releases_with_pending": sum(1 for r in active if r.open_pending()),
            "active_accounts": len({r.account_id for r in active}),
        }


def make_release(title: str = "Hollow Knight", account_id: str = "acct-1", **overrides) -> TrackedRelease:
    """Build a tracked release with sensible defaults."""
    data = {
        "account_id": account_id,
        "game_id": f"game-{title.lower().replace(' ', '-')}",
        "title": title,
        "original_title": title,
        "source": "steamrip",
        "source_link": f"https://example.com/{title.lower().replace(' ', '-')}",
    }
    data.update(overrides)
    return TrackedRelease(**data)


def make_listing(title: str, link: Optional[str] = None, **overrides) -> Listing:
    """Build a listing with a link derived from its title."""
    data = {
        "title": title,
        "link": link or "https://listings.example.com/" + "-".join(title.lower().split()),
        "source": "steamrip",
    }
    data.update(overrides)
    return Listing(**data)


@pytest.fixture
def thresholds():
    """Default detection thresholds."""
    return ThresholdConfig()


@pytest.fixture
def store():
    """Empty in-memory release store."""
    return InMemoryReleaseStore()


@pytest.fixture
def arbiter(store, thresholds):
    """Update arbiter over the in-memory store."""
    return UpdateArbiter(store, thresholds)


@pytest.fixture
def verified_release():
    """A release whose version and build the user verified."""
    return make_release(
        "Hollow Knight",
        current_version_number="1.5.78",
        current_build_number="11000000",
        version_number_verified=True,
        build_number_verified=True,
        last_known_version="v1.5.78 Build 11000000",
    )


@pytest.fixture
def mock_listing_client():
    """Listing client double returning no listings."""
    client = AsyncMock(spec=ListingClient)
    client.fetch_listings.return_value = []
    client.refresh_cache.return_value = {}
    return client


@pytest.fixture
def scheduler_config():
    """Scheduler configuration for testing."""
    return SchedulerConfig(
        timezone="UTC",
        tick_interval_seconds=60,
        status_preview_size=2,
        alert_config=AlertConfig(enabled=True, log_enabled=True, max_alerts_per_hour=10),
    )


@pytest.fixture
def now():
    """Fixed clock for deterministic tests."""
    return datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture
def release_factory():
    """Factory for tracked releases."""
    return make_release


@pytest.fixture
def listing_factory():
    """Factory for listings."""
    return make_listing
