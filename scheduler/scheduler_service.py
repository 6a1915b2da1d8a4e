"""
Scheduler service for release update detection.

This module provides:
- Per-account check cadence bookkeeping
- A fixed-interval driver tick with APScheduler
- Single-flight check cycles per account
- Cache refresh and title normalization sweeps
- The consumer surface used by the API and CLI
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

import structlog
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from scheduler.alerting import AlertManager
from scheduler.classifier_client import ClassifierClient
from scheduler.errors import CycleInProgressError
from scheduler.models import CycleSummary, RelationResolution, ScheduleEntry, SchedulerConfig
from scheduler.relation_matcher import RelationMatcher
from scheduler.title_matching import clean_title
from scheduler.update_arbiter import UpdateArbiter
from scheduler.update_checker import UpdateChecker
from scheduler.version_detection import VersionDetector
from tracker.database import MongoDBManager
from tracker.listing_client import ListingClient
from tracker.models import CADENCE_PRIORITY, Cadence, PendingUpdate, RelationAction, TrackedRelease, UpdateRecord

logger = structlog.get_logger(__name__)


class SchedulerService:
    """Owns the check schedule and drives update detection cycles."""

    def __init__(
        self,
        config: SchedulerConfig,
        db_manager: MongoDBManager,
        listing_client: ListingClient,
        classifier: Optional[ClassifierClient] = None,
        detector: Optional[VersionDetector] = None
    ):
        """
        Initialize scheduler service.

        Nothing runs until start() is called by the entry point.

        Args:
            config: Scheduler configuration
            db_manager: Release store
            listing_client: Listing collaborator client
            classifier: Optional external classifier
            detector: Version detector, defaults to the standard rule list
        """
        self.config = config
        self.db_manager = db_manager
        self.listing_client = listing_client
        self.scheduler = AsyncIOScheduler(timezone=config.timezone)
        self.logger = logger.bind(component="scheduler_service")

        self.detector = detector or VersionDetector()
        self.arbiter = UpdateArbiter(db_manager, config.thresholds, self.detector, classifier)
        self.matcher = RelationMatcher(db_manager, self.arbiter, config.thresholds, self.detector)
        self.alert_manager = AlertManager(config.alert_config)
        self.checker = UpdateChecker(
            db_manager, listing_client, self.arbiter, self.matcher, config.thresholds, self.alert_manager
        )

        self.schedule: Dict[str, ScheduleEntry] = {}
        self._in_flight: Set[str] = set()
        self._running = False
        self._stopping = False

        self._setup_scheduler_listeners()

    def _setup_scheduler_listeners(self) -> None:
        """Setup scheduler event listeners."""
        def job_executed_listener(event):
            self.logger.debug(
                "Job executed successfully",
                job_id=event.job_id,
                duration=event.retval.get('duration', 0) if isinstance(event.retval, dict) else 0
            )

        def job_error_listener(event):
            self.logger.error(
                "Job execution failed",
                job_id=event.job_id,
                error=str(event.exception)
            )

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)

    @property
    def running(self) -> bool:
        return self._running

    def is_cancelled(self) -> bool:
        """True once stop() has been requested."""
        return self._stopping

    # Lifecycle

    async def start(self) -> None:
        """Load the schedule and start the periodic jobs. Safe to call repeatedly."""
        if self._running:
            self.logger.debug("Scheduler service already running")
            return

        try:
            self._stopping = False
            await self.load_schedule()
            self._add_scheduled_jobs()
            self.scheduler.start()
            self._running = True

            self.logger.info(
                "Scheduler service started",
                timezone=self.config.timezone,
                tick_interval_seconds=self.config.tick_interval_seconds,
                scheduled_accounts=len(self.schedule)
            )
        except Exception as e:
            self.logger.error("Failed to start scheduler service", error=str(e))
            raise

    def stop(self) -> None:
        """Cancel the periodic jobs; in-flight cycles discard their results. Safe to call repeatedly."""
        if not self._running:
            return

        self.logger.info("Stopping scheduler service")
        self._stopping = True
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self._running = False
        self.logger.info("Scheduler service stopped", in_flight=len(self._in_flight))

    def _add_scheduled_jobs(self) -> None:
        """Add the driver tick and the auxiliary sweeps."""
        self.scheduler.add_job(
            func=self._tick_job,
            trigger='interval',
            seconds=self.config.tick_interval_seconds,
            id='schedule_tick',
            name='Schedule Tick',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.add_job(
            func=self._cache_refresh_job,
            trigger='interval',
            minutes=self.config.cache_refresh_minutes,
            next_run_time=datetime.now(tz=self.scheduler.timezone) + timedelta(
                seconds=self.config.cache_refresh_initial_delay_seconds
            ),
            id='cache_refresh',
            name='Listing Cache Refresh',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.add_job(
            func=self._title_normalization_job,
            trigger='interval',
            hours=self.config.title_normalization_hours,
            id='title_normalization',
            name='Title Normalization',
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.logger.info(
            "Scheduled jobs added",
            tick_interval_seconds=self.config.tick_interval_seconds,
            cache_refresh_minutes=self.config.cache_refresh_minutes,
            title_normalization_hours=self.config.title_normalization_hours
        )

    # Schedule bookkeeping

    @staticmethod
    def _account_cadence(cadences: List[Cadence]) -> Optional[Cadence]:
        """Most frequent non-manual cadence, None when every release is manual."""
        for cadence in CADENCE_PRIORITY:
            if cadence in cadences:
                return cadence
        return None

    async def load_schedule(self, now: Optional[datetime] = None) -> Dict[str, ScheduleEntry]:
        """Rebuild the schedule map from tracked-release state."""
        now = now or datetime.utcnow()
        accounts = await self.db_manager.get_account_cadences()

        schedule = {}
        for account_id, info in accounts.items():
            cadence = self._account_cadence(info["cadences"])
            if cadence is None:
                continue
            last_checked = info.get("last_checked")
            schedule[account_id] = ScheduleEntry(
                account_id=account_id,
                cadence=cadence,
                last_check=last_checked,
                next_check=(last_checked or now) + cadence.interval(),
            )

        self.schedule = schedule
        self.logger.info("Schedule loaded", scheduled_accounts=len(schedule))
        return schedule

    async def refresh_schedule(self, account_id: str, now: Optional[datetime] = None) -> Optional[ScheduleEntry]:
        """
        Recompute one account's entry from its current releases.

        Returns:
            The new entry, or None when the account was removed from the schedule
        """
        now = now or datetime.utcnow()
        info = (await self.db_manager.get_account_cadences(account_id)).get(account_id)
        cadence = self._account_cadence(info["cadences"]) if info else None

        if cadence is None:
            self.schedule.pop(account_id, None)
            self.logger.info("Account removed from schedule", account_id=account_id)
            return None

        existing = self.schedule.get(account_id)
        last_check = existing.last_check if existing and existing.last_check else info.get("last_checked")
        entry = ScheduleEntry(
            account_id=account_id,
            cadence=cadence,
            last_check=last_check,
            next_check=(last_check or now) + cadence.interval(),
        )
        self.schedule[account_id] = entry
        self.logger.info("Schedule refreshed", account_id=account_id, cadence=cadence.value,
                         next_check=entry.next_check.isoformat())
        return entry

    def _reschedule(self, account_id: str, checked_at: datetime) -> None:
        entry = self.schedule.get(account_id)
        if entry is None:
            return
        self.schedule[account_id] = entry.model_copy(update={
            "last_check": checked_at,
            "next_check": checked_at + entry.cadence.interval(),
        })

    def status(self) -> Dict[str, Any]:
        """Running flag, scheduled account count and the soonest checks."""
        upcoming = sorted(self.schedule.values(), key=lambda e: e.next_check)
        return {
            'running': self._running,
            'scheduled_accounts': len(self.schedule),
            'next_checks': [e.model_dump() for e in upcoming[:self.config.status_preview_size]],
        }

    # Check cycles

    async def _run_cycle(self, account_id: str) -> CycleSummary:
        if account_id in self._in_flight:
            raise CycleInProgressError(account_id)

        self._in_flight.add(account_id)
        try:
            return await self.checker.check_account(account_id, is_cancelled=self.is_cancelled)
        finally:
            self._in_flight.discard(account_id)

    async def check_now(self, account_id: str) -> CycleSummary:
        """
        Run a check cycle for one account immediately.

        Raises:
            CycleInProgressError: when a cycle for the account is already running
        """
        summary = await self._run_cycle(account_id)
        if not summary.discarded:
            self._reschedule(account_id, datetime.utcnow())
        return summary

    async def tick(self, now: Optional[datetime] = None) -> List[CycleSummary]:
        """Run every entry whose next check has elapsed, one account at a time."""
        now = now or datetime.utcnow()
        due = sorted((e for e in self.schedule.values() if now >= e.next_check), key=lambda e: e.next_check)
        return await self._run_entries(due, now)

    async def force_check_all(self, now: Optional[datetime] = None) -> List[CycleSummary]:
        """Run every scheduled account regardless of its next check."""
        now = now or datetime.utcnow()
        return await self._run_entries(sorted(self.schedule.values(), key=lambda e: e.next_check), now)

    async def _run_entries(self, entries: List[ScheduleEntry], now: datetime) -> List[CycleSummary]:
        summaries = []
        for entry in entries:
            if self._stopping:
                break
            if entry.account_id in self._in_flight:
                self.logger.info("Cycle already running, skipping", account_id=entry.account_id)
                continue

            try:
                summaries.append(await self._run_cycle(entry.account_id))
            except Exception as e:
                self.logger.error("Check cycle failed", account_id=entry.account_id, error=str(e))
            finally:
                if not self._stopping:
                    self._reschedule(entry.account_id, now)

        return summaries

    # Jobs

    async def _tick_job(self) -> Dict:
        """Driver tick job."""
        start_time = datetime.utcnow()
        job_id = f"schedule_tick_{start_time.strftime('%Y%m%d_%H%M%S')}"

        summaries = await self.tick(start_time)
        duration = (datetime.utcnow() - start_time).total_seconds()

        result = {
            'job_id': job_id,
            'cycles': len(summaries),
            'updates_found': sum(s.updates_found for s in summaries),
            'sequels_found': sum(s.sequels_found for s in summaries),
            'failed': sum(s.failed for s in summaries),
            'duration': duration
        }
        if summaries:
            self.logger.info("Schedule tick completed", **result)
        return result

    async def _cache_refresh_job(self) -> Dict:
        """Re-prime the listing cache."""
        start_time = datetime.utcnow()
        job_id = f"cache_refresh_{start_time.strftime('%Y%m%d_%H%M%S')}"

        self.logger.info("Starting cache refresh job", job_id=job_id)
        refreshed = await self.listing_client.refresh_cache()
        result = {
            'job_id': job_id,
            'sources': len(refreshed),
            'failed_sources': sum(1 for count in refreshed.values() if count < 0),
            'duration': (datetime.utcnow() - start_time).total_seconds()
        }
        self.logger.info("Cache refresh job completed", **result)
        return result

    async def _title_normalization_job(self) -> Dict:
        """Title normalization sweep job."""
        start_time = datetime.utcnow()
        job_id = f"title_normalization_{start_time.strftime('%Y%m%d_%H%M%S')}"

        self.logger.info("Starting title normalization job", job_id=job_id)
        counts = await self.normalize_titles()
        result = {'job_id': job_id, **counts, 'duration': (datetime.utcnow() - start_time).total_seconds()}
        self.logger.info("Title normalization job completed", **result)
        return result

    async def normalize_titles(self) -> Dict[str, int]:
        """
        Re-run title cleaning over every active release.

        Only original_title and cleaned_title are written, and only when the
        cleaned form differs; an existing original_title is never replaced.

        Returns:
            {"processed": n, "updated": n, "skipped": n}
        """
        counts = {'processed': 0, 'updated': 0, 'skipped': 0}
        for release in await self.db_manager.get_all_active_releases():
            if self._stopping:
                break
            counts['processed'] += 1

            fields = self._title_fields(release)
            if not fields:
                counts['skipped'] += 1
                continue

            await self.db_manager.update_release_fields(release.release_id, fields)
            counts['updated'] += 1
            self.logger.debug("Release title normalized", release_id=release.release_id, **fields)

        return counts

    @staticmethod
    def _title_fields(release: TrackedRelease) -> Dict[str, str]:
        fields = {}
        original = release.original_title or release.title
        if not release.original_title:
            fields['original_title'] = original
        cleaned = clean_title(original)
        if cleaned and cleaned != release.cleaned_title:
            fields['cleaned_title'] = cleaned
        return fields

    # Consumer surface

    async def approve(self, release_id: str, pending_id: str) -> UpdateRecord:
        return await self.arbiter.approve(release_id, pending_id)

    async def reject(self, release_id: str, pending_id: str) -> PendingUpdate:
        return await self.arbiter.reject(release_id, pending_id)

    async def verify(self, release_id: str, version: Optional[str] = None,
                     build: Optional[str] = None) -> TrackedRelease:
        return await self.arbiter.verify(release_id, version, build)

    async def resolve_relation(self, candidate_id: str, action: RelationAction) -> RelationResolution:
        """Apply a relation decision; a new release may change its account's cadence."""
        resolution = await self.matcher.resolve(candidate_id, action)
        if resolution.new_release_id:
            release = await self.db_manager.get_release(resolution.new_release_id)
            if release is not None:
                await self.refresh_schedule(release.account_id)
        return resolution


def build_scheduler_service(settings) -> SchedulerService:
    """Wire a SchedulerService and its collaborators from environment settings."""
    db_manager = MongoDBManager(
        connection_url=settings.mongodb_url,
        database_name=settings.mongodb_database,
        collection_name=settings.mongodb_collection
    )
    classifier = None
    if settings.classifier_url:
        classifier = ClassifierClient(
            url=settings.classifier_url,
            timeout=settings.classifier_timeout,
            min_confidence=settings.classifier_min_confidence
        )
    return SchedulerService(
        SchedulerConfig.from_settings(settings),
        db_manager,
        ListingClient(settings),
        classifier=classifier
    )
