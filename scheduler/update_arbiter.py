"""
Update arbiter: decides whether a detection is applied, queued or dropped.

This module provides:
- Per-listing arbitration against a tracked release
- Approve/reject transitions for pending updates
- User verification of the current version/build
- Merging a confirmed listing into a release's history
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

import structlog

from scheduler.change_classifier import classify_significance, compare_states, is_outdated
from scheduler.classifier_client import ClassifierClient, ClassifierOpinion
from scheduler.errors import ClassifierError, NotFoundError, VersionValidationError
from scheduler.models import (
    ArbiterDecision, ArbiterOutcome, LocalState, RemoteSignal, ThresholdConfig, VersionDetection
)
from scheduler.version_detection import (
    VersionDetector, extract_release_group, validate_build_number, validate_version_number
)
from tracker.models import (
    ChangeSource, DetectionMethod, Listing, PendingStatus, PendingUpdate, SignificanceTier,
    TrackedRelease, UpdateRecord
)

logger = structlog.get_logger(__name__)


def dedup_key(release_id: str, version: Optional[str], build: Optional[str], method: DetectionMethod) -> str:
    """Key identifying one (release, detected version, method) pending entry."""
    return f"{release_id}|{version or '-'}|{build or '-'}|{method.value}"


def display_version(version: Optional[str], build: Optional[str]) -> str:
    """Human-readable label stored as lastKnownVersion."""
    if version and build:
        return f"v{version} Build {build}"
    if version:
        return f"v{version}"
    if build:
        return f"Build {build}"
    return "New Version"


class UpdateArbiter:
    """Applies or queues detected updates for tracked releases."""

    def __init__(
        self,
        store,
        thresholds: Optional[ThresholdConfig] = None,
        detector: Optional[VersionDetector] = None,
        classifier: Optional[ClassifierClient] = None
    ):
        """
        Initialize the arbiter.

        Args:
            store: Release store (MongoDBManager or compatible)
            thresholds: Detection thresholds
            detector: Version detector, defaults to the standard rule list
            classifier: Optional external classifier
        """
        self.store = store
        self.thresholds = thresholds or ThresholdConfig()
        self.detector = detector or VersionDetector()
        self.classifier = classifier
        self.logger = logger.bind(component="update_arbiter")

    async def process_listing(
        self,
        release: TrackedRelease,
        listing: Listing,
        similarity: float = 1.0,
        now: Optional[datetime] = None,
        is_cancelled: Optional[Callable[[], bool]] = None
    ) -> ArbiterDecision:
        """
        Arbitrate one listing matched to a tracked release.

        Args:
            release: Current state of the tracked release
            listing: Listing resolved to the release
            similarity: Title similarity between listing and release
            now: Clock override
            is_cancelled: Checked before every write; results are discarded when it returns True

        Returns:
            ArbiterDecision describing what happened
        """
        now = now or datetime.utcnow()
        detection = self.detector.detect_listing(listing.title, listing.raw_version_text)

        if detection.is_empty:
            self.logger.debug("No version detected", release_id=release.release_id, title=listing.title)
            return ArbiterDecision(outcome=ArbiterOutcome.DROPPED, reason="No version or build detected")

        newer, advisory, reason = self._assess(release, detection, listing, now)
        if not newer:
            return ArbiterDecision(outcome=ArbiterOutcome.UNCHANGED, reason=reason)

        confidence = round(detection.rule_confidence * similarity, 4)
        method = DetectionMethod.PATTERN
        opinion: Optional[ClassifierOpinion] = None

        if self.classifier is not None and self._in_uncertain_band(confidence):
            opinion = await self._consult_classifier(release, listing, detection)
            if opinion is not None:
                confidence = self._merge_confidence(confidence, opinion)
                method = DetectionMethod.ASSISTED

        if confidence >= self.thresholds.auto_apply_confidence and not advisory:
            if is_cancelled and is_cancelled():
                return ArbiterDecision(outcome=ArbiterOutcome.DISCARDED, reason="Stop requested")
            record = await self._apply(
                release, detection.detected_version, detection.detected_build, listing,
                ChangeSource.AUTOMATIC, method, confidence, now
            )
            self.logger.info(
                "Update applied automatically",
                release_id=release.release_id,
                version=record.display_version,
                confidence=confidence
            )
            return ArbiterDecision(
                outcome=ArbiterOutcome.APPLIED, reason=reason, confidence=confidence,
                detection_method=method, record=record
            )

        if confidence < self.thresholds.queue_min_confidence:
            self.logger.debug("Detection dropped", release_id=release.release_id,
                              title=listing.title, confidence=confidence)
            return ArbiterDecision(
                outcome=ArbiterOutcome.DROPPED, reason="Confidence below queueing threshold",
                confidence=confidence, detection_method=method
            )

        key = dedup_key(release.release_id, detection.detected_version, detection.detected_build, method)
        for existing in release.pending_updates:
            if existing.dedup_key == key:
                outcome = (ArbiterOutcome.SUPPRESSED if existing.status == PendingStatus.REJECTED
                           else ArbiterOutcome.DUPLICATE)
                return ArbiterDecision(outcome=outcome, reason=f"Pending entry {existing.pending_id} exists",
                                       confidence=confidence, detection_method=method)

        if is_cancelled and is_cancelled():
            return ArbiterDecision(outcome=ArbiterOutcome.DISCARDED, reason="Stop requested")

        pending = PendingUpdate(
            detected_version=detection.detected_version,
            detected_build=detection.detected_build,
            confidence=confidence,
            reason=reason if not advisory else f"{reason}; awaiting confirmation",
            detection_method=method,
            secondary_confidence=opinion.confidence if opinion else None,
            secondary_reason=opinion.reason if opinion else None,
            listing_title=listing.title,
            source_link=listing.link,
            image=listing.image,
            dedup_key=key,
            date_found=now,
        )
        if not await self.store.add_pending_update(release.release_id, pending):
            return ArbiterDecision(outcome=ArbiterOutcome.DUPLICATE, reason="Pending entry already queued",
                                   confidence=confidence, detection_method=method)

        self.logger.info(
            "Update queued for confirmation",
            release_id=release.release_id,
            pending_id=pending.pending_id,
            confidence=confidence,
            method=method.value
        )
        return ArbiterDecision(
            outcome=ArbiterOutcome.QUEUED, reason=pending.reason, confidence=confidence,
            detection_method=method, pending=pending
        )

    async def approve(self, release_id: str, pending_id: str) -> UpdateRecord:
        """
        Promote an open pending entry into an update record.

        Raises:
            NotFoundError: when the release or open pending entry does not exist
        """
        release = await self._get_release(release_id)
        pending = release.find_pending(pending_id)
        if pending is None or pending.status != PendingStatus.OPEN:
            raise NotFoundError(f"Pending update {pending_id} not found or already resolved",
                                {"release_id": release_id, "pending_id": pending_id})

        listing = Listing(
            title=pending.listing_title,
            link=pending.source_link or release.source_link or f"pending:{pending_id}",
            image=pending.image,
        )
        record = await self._apply(
            release, pending.detected_version, pending.detected_build, listing,
            ChangeSource.USER_APPROVED, pending.detection_method, pending.confidence,
            datetime.utcnow(), require_pending_id=pending_id
        )
        self.logger.info("Pending update approved", release_id=release_id,
                         pending_id=pending_id, version=record.display_version)
        return record

    async def reject(self, release_id: str, pending_id: str) -> PendingUpdate:
        """
        Dismiss an open pending entry; its key keeps suppressing re-detection.

        Raises:
            NotFoundError: when the release or open pending entry does not exist
        """
        release = await self._get_release(release_id)
        pending = release.find_pending(pending_id)
        if pending is None or pending.status != PendingStatus.OPEN:
            raise NotFoundError(f"Pending update {pending_id} not found or already resolved",
                                {"release_id": release_id, "pending_id": pending_id})

        if not await self.store.reject_pending_update(release_id, pending_id):
            raise NotFoundError(f"Pending update {pending_id} not found or already resolved",
                                {"release_id": release_id, "pending_id": pending_id})

        self.logger.info("Pending update rejected", release_id=release_id, pending_id=pending_id)
        return pending.model_copy(update={"status": PendingStatus.REJECTED, "resolved_at": datetime.utcnow()})

    async def verify(self, release_id: str, version: Optional[str] = None,
                     build: Optional[str] = None) -> TrackedRelease:
        """
        Record the user-verified current version and/or build.

        Raises:
            VersionValidationError: when neither value is given or a value is malformed
            NotFoundError: when the release does not exist
        """
        if not version and not build:
            raise VersionValidationError("Version or build number is required", field="version")

        fields = {}
        now = datetime.utcnow()
        if version:
            fields["current_version_number"] = validate_version_number(version)
            fields["version_number_verified"] = True
        if build:
            fields["current_build_number"] = validate_build_number(build)
            fields["build_number_verified"] = True
        fields["version_number_source"] = "user"
        fields["version_number_last_updated"] = now

        await self._get_release(release_id)
        if not await self.store.update_release_fields(release_id, fields):
            raise NotFoundError(f"Release {release_id} not found", {"release_id": release_id})

        self.logger.info("Release version verified", release_id=release_id,
                         version=fields.get("current_version_number"), build=fields.get("current_build_number"))
        return await self._get_release(release_id)

    async def merge_listing(self, release: TrackedRelease, listing: Listing,
                            similarity: float = 1.0) -> UpdateRecord:
        """Append a user-confirmed listing to a release's history."""
        detection = self.detector.detect_listing(listing.title, listing.raw_version_text)
        return await self._apply(
            release, detection.detected_version, detection.detected_build, listing,
            ChangeSource.RELATION_MERGE, DetectionMethod.PATTERN, round(similarity, 4),
            datetime.utcnow()
        )

    def baseline(self, release: TrackedRelease) -> Tuple[Optional[str], Optional[str]]:
        """
        Best known (version, build) of a release.

        Prefers the normalized current fields and fills gaps from the last known
        version label and then the original title. Loose last-resort numbers are ignored.
        """
        version = release.current_version_number
        build = release.current_build_number
        for text in (release.last_known_version, release.original_title or release.title):
            if version and build:
                break
            if not text:
                continue
            detection = self.detector.detect(text)
            if version is None and detection.version_rule not in (None, "last_numeric"):
                version = detection.detected_version
            if build is None and detection.detected_build:
                build = detection.detected_build
        return version, build

    def _assess(self, release: TrackedRelease, detection: VersionDetection, listing: Listing,
                now: datetime) -> Tuple[bool, bool, str]:
        """
        Decide if a detection is newer than the tracked state.

        Returns:
            (newer, advisory_only, reason)
        """
        local = LocalState(
            version=release.current_version_number,
            build=release.current_build_number,
            version_verified=release.version_number_verified,
            build_verified=release.build_number_verified,
        )
        remote = RemoteSignal(
            version=detection.detected_version,
            build=detection.detected_build,
            published_at=listing.published_at,
        )
        window = timedelta(hours=self.thresholds.freshness_window_hours)
        verdict = is_outdated(local, remote, now=now, freshness_window=window)
        if verdict.authoritative:
            return verdict.outdated, False, verdict.reason

        base_version, base_build = self.baseline(release)
        delta = compare_states(base_version, base_build, remote.version, remote.build)
        if delta is not None:
            label = display_version(remote.version, remote.build)
            known = display_version(base_version, base_build)
            if delta > 0:
                return True, False, f"Detected {label} is newer than last known {known}"
            return False, False, f"Detected {label} is not newer than last known {known}"

        return verdict.outdated, True, verdict.reason

    async def _apply(
        self,
        release: TrackedRelease,
        version: Optional[str],
        build: Optional[str],
        listing: Listing,
        change_source: ChangeSource,
        method: DetectionMethod,
        confidence: float,
        now: datetime,
        require_pending_id: Optional[str] = None
    ) -> UpdateRecord:
        base_version, base_build = self.baseline(release)
        significance = classify_significance(base_version, version, base_build, build) or SignificanceTier.PATCH

        record = UpdateRecord(
            version=version,
            build=build,
            display_version=display_version(version, build),
            previous_version=release.last_known_version,
            significance=significance,
            change_source=change_source,
            detection_method=method,
            confidence=confidence,
            source_link=listing.link,
            download_links=[listing.link],
            listing_title=listing.title,
            date_found=now,
        )

        fields = {
            "last_known_version": record.display_version,
            "last_checked": now,
            "last_version_date": now,
            "has_new_update": True,
            "new_update_seen": False,
            "version_number_source": change_source.value,
            "version_number_last_updated": now,
        }
        if version:
            fields["current_version_number"] = version
            fields["version_number_verified"] = True
        if build:
            fields["current_build_number"] = build
            fields["build_number_verified"] = True

        stale = self._stale_pending_ids(release, version, build, exclude=require_pending_id)
        applied = await self.store.apply_update(
            release.release_id, record, fields,
            stale_pending_ids=stale, require_pending_id=require_pending_id
        )
        if not applied:
            raise NotFoundError(
                f"Release {release.release_id} not found"
                if require_pending_id is None else
                f"Pending update {require_pending_id} not found or already resolved",
                {"release_id": release.release_id, "pending_id": require_pending_id},
            )
        return record

    def _stale_pending_ids(self, release: TrackedRelease, version: Optional[str], build: Optional[str],
                           exclude: Optional[str] = None) -> List[str]:
        """Open pending entries at or below a newly applied version."""
        stale = []
        for pending in release.open_pending():
            if pending.pending_id == exclude:
                continue
            delta = compare_states(version, build, pending.detected_version, pending.detected_build)
            if delta is not None and delta <= 0:
                stale.append(pending.pending_id)
        return stale

    def _in_uncertain_band(self, confidence: float) -> bool:
        return self.thresholds.queue_min_confidence <= confidence < self.thresholds.auto_apply_confidence

    def _merge_confidence(self, confidence: float, opinion: ClassifierOpinion) -> float:
        weight = self.thresholds.classifier_weight
        score = opinion.confidence if opinion.is_update else 1.0 - opinion.confidence
        return round(confidence * (1.0 - weight) + score * weight, 4)

    async def _consult_classifier(self, release: TrackedRelease, listing: Listing,
                                  detection: VersionDetection) -> Optional[ClassifierOpinion]:
        group, _ = extract_release_group(listing.title)
        try:
            opinion = await self.classifier.classify(release.title, {
                "candidate_title": listing.title,
                "current_version": release.current_version_number,
                "current_build": release.current_build_number,
                "detected_version": detection.detected_version,
                "detected_build": detection.detected_build,
                "release_group": group,
            })
        except ClassifierError as e:
            self.logger.warning("Classifier unavailable, using pattern confidence",
                                release_id=release.release_id, error=str(e))
            return None

        if opinion.confidence < self.classifier.min_confidence:
            self.logger.debug("Classifier opinion below minimum confidence",
                              release_id=release.release_id, confidence=opinion.confidence)
            return None
        return opinion

    async def _get_release(self, release_id: str) -> TrackedRelease:
        release = await self.store.get_release(release_id)
        if release is None:
            raise NotFoundError(f"Release {release_id} not found", {"release_id": release_id})
        return release
