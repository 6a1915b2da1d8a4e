"""
Check cycle orchestration for one account.

This module provides:
- Listing fetch per source with failure isolation
- Listing-to-release resolution by title similarity
- Arbitration of every matched listing
- Relation scanning over unlinked listings
- Cycle summaries and alert events
"""

import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import structlog
from pymongo.errors import PyMongoError

from scheduler.alerting import AlertManager
from scheduler.errors import ListingFetchError
from scheduler.models import AlertEvent, AlertKind, ArbiterOutcome, CycleSummary, ThresholdConfig
from scheduler.relation_matcher import RelationMatcher
from scheduler.title_matching import title_similarity
from scheduler.update_arbiter import UpdateArbiter
from tracker.listing_client import ListingClient
from tracker.models import Listing, TrackedRelease
from utilities.logger import CycleLogger

logger = structlog.get_logger(__name__)


class UpdateChecker:
    """Runs check cycles: fetch, resolve, arbitrate, scan for relations."""

    def __init__(
        self,
        store,
        listing_client: ListingClient,
        arbiter: UpdateArbiter,
        matcher: RelationMatcher,
        thresholds: Optional[ThresholdConfig] = None,
        alert_manager: Optional[AlertManager] = None
    ):
        """
        Initialize update checker.

        Args:
            store: Release store
            listing_client: Listing collaborator client
            arbiter: Update arbiter
            matcher: Relation matcher
            thresholds: Detection thresholds
            alert_manager: Optional alert manager for cycle events
        """
        self.store = store
        self.listing_client = listing_client
        self.arbiter = arbiter
        self.matcher = matcher
        self.thresholds = thresholds or ThresholdConfig()
        self.alert_manager = alert_manager
        self.logger = logger.bind(component="update_checker")

    def match_listings(self, release: TrackedRelease, listings: List[Listing]) -> List[Tuple[Listing, float]]:
        """
        Listings that resolve to a release, best match first.

        Returns:
            [(listing, similarity)] at or above the listing match threshold
        """
        reference = release.original_title or release.title
        matches = []
        for listing in listings:
            similarity = title_similarity(reference, listing.title)
            if release.title != reference:
                similarity = max(similarity, title_similarity(release.title, listing.title))
            if similarity >= self.thresholds.listing_match_threshold:
                matches.append((listing, similarity))
        matches.sort(key=lambda item: item[1], reverse=True)
        return matches

    async def check_account(
        self,
        account_id: str,
        is_cancelled: Optional[Callable[[], bool]] = None,
        now: Optional[datetime] = None
    ) -> CycleSummary:
        """
        Run one check cycle over an account's active releases.

        Args:
            account_id: Account to check
            is_cancelled: Polled between steps; once True nothing more is written
            now: Clock override

        Returns:
            CycleSummary with checked/updates/sequels/failed counts
        """
        cancelled = is_cancelled or (lambda: False)
        start_time = datetime.utcnow()
        now = now or start_time
        summary = CycleSummary(
            cycle_id=f"check_{account_id}_{start_time.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}",
            account_id=account_id,
            started_at=start_time,
        )
        cycle_logger = CycleLogger("update_checker").bind_context(cycle_id=summary.cycle_id)

        releases = await self.store.get_active_releases(account_id)
        cycle_logger.log_cycle_start(account_id, len(releases))

        listings_by_source = await self._fetch_sources(releases, summary, cycle_logger, cancelled)

        events: List[AlertEvent] = []
        linked_links = set()

        for release in releases:
            if cancelled():
                summary.discarded = True
                break
            summary.checked += 1

            try:
                listings = listings_by_source.get(release.source)
                if listings is None:
                    raise ListingFetchError(f"No listings available for source {release.source}",
                                            {"source": release.source})

                known_links = {r.source_link for r in release.update_history if r.source_link}
                known_links.update(p.source_link for p in release.pending_updates if p.source_link)

                current = release
                for listing, similarity in self.match_listings(release, listings):
                    linked_links.add(listing.link)
                    if listing.link in known_links:
                        continue

                    decision = await self.arbiter.process_listing(
                        current, listing, similarity=similarity, now=now, is_cancelled=cancelled
                    )
                    outcome = decision.outcome.value
                    summary.outcomes[outcome] = summary.outcomes.get(outcome, 0) + 1
                    cycle_logger.log_release_outcome(release.release_id, listing.title, outcome)

                    if decision.outcome == ArbiterOutcome.APPLIED:
                        summary.applied += 1
                        events.append(AlertEvent(
                            kind=AlertKind.UPDATE_APPLIED, account_id=account_id,
                            release_id=release.release_id, title=release.title,
                            detail=decision.record.display_version, significance=decision.record.significance,
                        ))
                        current = await self.store.get_release(release.release_id) or current
                    elif decision.outcome == ArbiterOutcome.QUEUED:
                        summary.queued += 1
                        events.append(AlertEvent(
                            kind=AlertKind.UPDATE_QUEUED, account_id=account_id,
                            release_id=release.release_id, title=release.title,
                            detail=f"{listing.title} (confidence {decision.confidence:.2f})",
                        ))
                        current.pending_updates.append(decision.pending)
                    elif decision.outcome == ArbiterOutcome.DISCARDED:
                        summary.discarded = True
                        break

                if summary.discarded:
                    break
                await self.store.touch_last_checked(release.release_id, now)

            except Exception as e:
                summary.failed += 1
                summary.errors.append(f"{release.title}: {e}")
                cycle_logger.log_error(str(e), release_id=release.release_id, source=release.source)
                if not cancelled():
                    await self._touch_after_failure(release, now)

        if not summary.discarded and not cancelled():
            candidates = await self._scan_relations(releases, listings_by_source, linked_links, summary)
            summary.sequels_found = len(candidates)
            for release, candidate in candidates:
                events.append(AlertEvent(
                    kind=AlertKind.RELATION_FOUND, account_id=account_id,
                    release_id=release.release_id, title=release.title,
                    detail=f"{candidate.relation_type.value}: {candidate.listing.title}",
                ))
        else:
            summary.discarded = True

        summary.updates_found = summary.applied + summary.queued
        summary.duration_seconds = (datetime.utcnow() - start_time).total_seconds()
        cycle_logger.log_cycle_complete(summary.checked, summary.updates_found, summary.sequels_found,
                                        summary.failed, summary.duration_seconds)

        if not summary.discarded:
            await self._store_cycle_summary(summary)
            if self.alert_manager is not None:
                self.alert_manager.process_events(events)
                self.alert_manager.log_cycle_summary(summary)

        return summary

    async def _fetch_sources(
        self,
        releases: List[TrackedRelease],
        summary: CycleSummary,
        cycle_logger: CycleLogger,
        cancelled: Callable[[], bool]
    ) -> Dict[str, Optional[List[Listing]]]:
        """Fetch each distinct source once; failed sources map to None."""
        listings_by_source: Dict[str, Optional[List[Listing]]] = {}
        for release in releases:
            source = release.source
            if source in listings_by_source or cancelled():
                continue
            try:
                listings_by_source[source] = await self.listing_client.fetch_listings(source, fresh=True)
            except ListingFetchError as e:
                cycle_logger.log_error(str(e), source=source)
                summary.errors.append(f"source {source}: {e}")
                listings_by_source[source] = None
        return listings_by_source

    async def _scan_relations(self, releases, listings_by_source, linked_links, summary):
        unlinked: Dict[str, Listing] = {}
        for listings in listings_by_source.values():
            for listing in listings or []:
                if listing.link not in linked_links:
                    unlinked.setdefault(listing.link, listing)
        if not unlinked or not releases:
            return []

        try:
            emitted = await self.matcher.scan(releases, list(unlinked.values()))
        except PyMongoError as e:
            self.logger.error("Relation scan failed", account_id=summary.account_id, error=str(e))
            summary.errors.append(f"relation scan: {e}")
            return []

        by_id = {r.release_id: r for r in releases}
        results = []
        for candidate in emitted:
            owner = next((r for r in by_id.values()
                          if any(c.candidate_id == candidate.candidate_id for c in r.relation_candidates)), None)
            if owner is not None:
                results.append((owner, candidate))
        return results

    async def _touch_after_failure(self, release: TrackedRelease, now: datetime) -> None:
        try:
            await self.store.touch_last_checked(release.release_id, now)
        except PyMongoError as e:
            self.logger.error("Failed to record last check", release_id=release.release_id, error=str(e))

    async def _store_cycle_summary(self, summary: CycleSummary) -> None:
        try:
            await self.store.record_cycle_summary(summary.model_dump())
        except PyMongoError as e:
            self.logger.error("Failed to store cycle summary", cycle_id=summary.cycle_id, error=str(e))
