"""
Alerting for update detection results.

This module provides:
- Log-based alerts for applied updates, queued updates and relation candidates
- Rate limiting and cooldown mechanisms
- Significance filtering for applied updates
"""

from datetime import datetime, timedelta
from typing import Dict, List

import structlog

from scheduler.models import AlertConfig, AlertEvent, AlertKind, CycleSummary
from tracker.models import SignificanceTier

logger = structlog.get_logger(__name__)

SIGNIFICANCE_ORDER = {
    SignificanceTier.PATCH: 1,
    SignificanceTier.MINOR: 2,
    SignificanceTier.MAJOR: 3,
}


class AlertManager:
    """Manager for handling alerts and notifications."""

    def __init__(self, alert_config: AlertConfig):
        """
        Initialize alert manager.

        Args:
            alert_config: Alert configuration
        """
        self.config = alert_config
        self.logger = logger.bind(component="alert_manager")
        self.alert_history: Dict[str, List[datetime]] = {}
        self.last_alert_times: Dict[str, datetime] = {}

    def process_events(self, events: List[AlertEvent]) -> int:
        """
        Log alerts for a cycle's events, grouped per account.

        Args:
            events: Events produced during a check cycle

        Returns:
            Number of events that were reported
        """
        if not self.config.enabled or not self.config.log_enabled:
            self.logger.debug("Alerting is disabled")
            return 0

        reportable = self._filter_events(events)
        if not reportable:
            return 0

        by_account: Dict[str, List[AlertEvent]] = {}
        for event in reportable:
            by_account.setdefault(event.account_id, []).append(event)

        reported = 0
        for account_id, account_events in by_account.items():
            alert_key = f"account:{account_id}"
            if not self._check_rate_limit(alert_key) or not self._check_cooldown(alert_key):
                self.logger.warning("Alert rate limited", account_id=account_id, events=len(account_events))
                continue

            self.logger.warning(
                "Release update alert",
                account_id=account_id,
                message=self._create_log_content(account_events),
                events_count=len(account_events)
            )
            self._update_alert_history(alert_key)
            reported += len(account_events)

        return reported

    def log_cycle_summary(self, summary: CycleSummary) -> None:
        """Log the aggregate counts of a finished cycle."""
        self.logger.info(
            "Check cycle summary",
            account_id=summary.account_id,
            checked=summary.checked,
            updates_found=summary.updates_found,
            applied=summary.applied,
            queued=summary.queued,
            sequels_found=summary.sequels_found,
            failed=summary.failed
        )

    def _filter_events(self, events: List[AlertEvent]) -> List[AlertEvent]:
        """Drop applied updates below the configured significance."""
        min_level = SIGNIFICANCE_ORDER.get(self.config.min_significance_for_log, 1)
        filtered = []
        for event in events:
            if event.kind == AlertKind.UPDATE_APPLIED and event.significance is not None:
                if SIGNIFICANCE_ORDER.get(event.significance, 1) < min_level:
                    continue
            filtered.append(event)
        return filtered

    def _create_log_content(self, events: List[AlertEvent]) -> str:
        """Create log message content."""
        lines = []
        for event in events:
            tier = f" ({event.significance.value})" if event.significance else ""
            lines.append(f"{event.kind.value}: {event.title} {event.detail}{tier}".strip())
        return f"{len(events)} release events: " + "; ".join(lines)

    def _check_rate_limit(self, alert_key: str) -> bool:
        """Check if alert is within rate limit."""
        hour_ago = datetime.utcnow() - timedelta(hours=1)
        recent = [t for t in self.alert_history.get(alert_key, []) if t > hour_ago]
        return len(recent) < self.config.max_alerts_per_hour

    def _check_cooldown(self, alert_key: str) -> bool:
        """Check if alert is not in cooldown period."""
        last_alert_time = self.last_alert_times.get(alert_key)
        if last_alert_time is None:
            return True
        cooldown_period = timedelta(minutes=self.config.alert_cooldown_minutes)
        return datetime.utcnow() - last_alert_time >= cooldown_period

    def _update_alert_history(self, alert_key: str) -> None:
        """Update alert history for rate limiting."""
        current_time = datetime.utcnow()
        hour_ago = current_time - timedelta(hours=1)
        history = [t for t in self.alert_history.get(alert_key, []) if t > hour_ago]
        history.append(current_time)
        self.alert_history[alert_key] = history
        self.last_alert_times[alert_key] = current_time
