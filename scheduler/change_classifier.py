"""
Change classification between tracked and detected release states.

This module provides:
- Numeric segment-wise version comparison
- Build comparison
- Significance tiers for detected deltas
- Outdated verdicts, authoritative or advisory
"""

from datetime import datetime, timedelta
from typing import List, Optional

import structlog

from scheduler.models import LocalState, OutdatedVerdict, RemoteSignal
from scheduler.version_detection import normalize_build, normalize_version, parse_build, parse_version
from tracker.models import SignificanceTier

logger = structlog.get_logger(__name__)

DEFAULT_FRESHNESS_WINDOW = timedelta(hours=24)


def _pad(a: List[int], b: List[int]):
    width = max(len(a), len(b))
    return a + [0] * (width - len(a)), b + [0] * (width - len(b))


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


def compare_versions(a: Optional[str], b: Optional[str]) -> Optional[int]:
    """
    Compare two versions segment by segment as integers.

    Returns:
        -1, 0 or 1; None when either side cannot be parsed
    """
    left = parse_version(a)
    right = parse_version(b)
    if left is None or right is None:
        return None
    left, right = _pad(left, right)
    for x, y in zip(left, right):
        if x != y:
            return _sign(x - y)
    return 0


def compare_builds(a: Optional[str], b: Optional[str]) -> Optional[int]:
    """Compare two builds as integers; None when either is not numeric."""
    left = parse_build(a)
    right = parse_build(b)
    if left is None or right is None:
        return None
    return _sign(left - right)


def compare_states(
    base_version: Optional[str],
    base_build: Optional[str],
    remote_version: Optional[str],
    remote_build: Optional[str]
) -> Optional[int]:
    """
    Order a remote state against a baseline, preferring builds over versions.

    Returns:
        1 when the remote is newer, 0 when equal, -1 when older, None when incomparable
    """
    by_build = compare_builds(remote_build, base_build)
    if by_build is not None:
        return by_build
    return compare_versions(remote_version, base_version)


def classify_significance(
    previous_version: Optional[str],
    new_version: Optional[str],
    previous_build: Optional[str] = None,
    new_build: Optional[str] = None
) -> Optional[SignificanceTier]:
    """
    Map a detected delta to a significance tier.

    A change in the first segment is major, in the second segment minor, and
    anything later (or a build-only change) is a patch.

    Returns:
        The tier, or None when nothing changed
    """
    old = parse_version(previous_version)
    new = parse_version(new_version)

    if old is not None and new is not None:
        old, new = _pad(old, new)
        for index, (x, y) in enumerate(zip(old, new)):
            if x != y:
                if index == 0:
                    return SignificanceTier.MAJOR
                if index == 1:
                    return SignificanceTier.MINOR
                return SignificanceTier.PATCH

    elif new is not None and normalize_version(new_version) != normalize_version(previous_version):
        return SignificanceTier.PATCH

    if new_build and normalize_build(new_build) != normalize_build(previous_build):
        return SignificanceTier.PATCH

    return None


def is_outdated(
    local: LocalState,
    remote: RemoteSignal,
    now: Optional[datetime] = None,
    freshness_window: timedelta = DEFAULT_FRESHNESS_WINDOW
) -> OutdatedVerdict:
    """
    Decide whether the tracked state is behind the remote signal.

    Verified builds and versions give authoritative verdicts. Without any
    usable verified comparison, a recently published remote signal produces an
    advisory verdict only.
    """
    reasons = []
    compared = False

    if local.build_verified and local.build:
        result = compare_builds(local.build, remote.build)
        if result is not None:
            compared = True
            if result < 0:
                return OutdatedVerdict(
                    outdated=True,
                    authoritative=True,
                    reason=f"Remote build {normalize_build(remote.build)} is newer than verified build {normalize_build(local.build)}",
                )
            reasons.append(f"build {normalize_build(local.build)} is current")

    if local.version_verified and local.version:
        result = compare_versions(local.version, remote.version)
        if result is not None:
            compared = True
            if result < 0:
                return OutdatedVerdict(
                    outdated=True,
                    authoritative=True,
                    reason=f"Remote version {normalize_version(remote.version)} is newer than verified version {normalize_version(local.version)}",
                )
            reasons.append(f"version {normalize_version(local.version)} is current")

    if compared:
        return OutdatedVerdict(outdated=False, authoritative=True, reason="Verified " + " and ".join(reasons))

    now = now or datetime.utcnow()
    if remote.published_at is not None and abs(now - remote.published_at) <= freshness_window:
        hours = int(freshness_window.total_seconds() // 3600)
        return OutdatedVerdict(
            outdated=True,
            authoritative=False,
            reason=f"Possible update, unverified: listing published within the last {hours}h",
        )

    return OutdatedVerdict(outdated=False, authoritative=False, reason="No verified version or build to compare")
