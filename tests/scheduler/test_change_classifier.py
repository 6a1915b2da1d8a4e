"""
Test cases for version comparison, significance tiers and outdated verdicts.
"""

from datetime import datetime, timedelta

import pytest

from scheduler.change_classifier import (
    classify_significance, compare_builds, compare_states, compare_versions, is_outdated
)
from scheduler.models import LocalState, RemoteSignal
from tracker.models import SignificanceTier


class TestCompare:
    """Test cases for version and build ordering."""

    @pytest.mark.parametrize("a,b,expected", [
        ("1.2.3", "1.2.10", -1),
        ("1.10", "1.9", 1),
        ("v1.2", "1.2.0", 0),
        ("2.0", "1.99.99", 1),
        ("20250922", "20250101", 1),
    ])
    def test_compare_versions(self, a, b, expected):
        """Segments compare as integers, not strings."""
        assert compare_versions(a, b) == expected

    def test_compare_versions_unparseable(self):
        """Unparseable values are incomparable rather than an error."""
        assert compare_versions("beta", "1.0") is None
        assert compare_versions("1.0", None) is None

    def test_compare_builds(self):
        assert compare_builds("Build 9", "10") == -1
        assert compare_builds("0012345", "12345") == 0
        assert compare_builds("abc", "123") is None

    def test_compare_states_prefers_builds(self):
        """Builds decide the order when both sides have one."""
        assert compare_states("2.0", "100", "1.0", "200") == 1
        assert compare_states("1.0", None, "1.1", None) == 1
        assert compare_states(None, None, None, None) is None


class TestSignificance:
    """Test cases for significance tiers."""

    @pytest.mark.parametrize("old,new,tier", [
        ("1.2.3", "2.0.0", SignificanceTier.MAJOR),
        ("1.2.3", "1.3.0", SignificanceTier.MINOR),
        ("1.2.3", "1.2.4", SignificanceTier.PATCH),
        ("1.2.3.4", "1.2.3.5", SignificanceTier.PATCH),
        ("1.2", "1.2.1", SignificanceTier.PATCH),
    ])
    def test_version_deltas(self, old, new, tier):
        assert classify_significance(old, new) == tier

    def test_build_only_change_is_patch(self):
        assert classify_significance("1.2", "1.2", "100", "200") == SignificanceTier.PATCH

    def test_missing_baseline_is_patch(self):
        assert classify_significance(None, "1.0") == SignificanceTier.PATCH

    def test_no_change(self):
        assert classify_significance("1.2.3", "1.2.3", "100", "100") is None
        assert classify_significance("1.2.3", "v1.2.3") is None


class TestIsOutdated:
    """Test cases for outdated verdicts."""

    def test_newer_remote_build(self):
        """A newer build than the verified one is authoritative."""
        verdict = is_outdated(
            LocalState(build="15800000", build_verified=True),
            RemoteSignal(build="15832751")
        )

        assert verdict.outdated is True
        assert verdict.authoritative is True
        assert "15832751" in verdict.reason
        assert "15800000" in verdict.reason

    def test_newer_remote_version(self):
        verdict = is_outdated(
            LocalState(version="1.2.3", version_verified=True),
            RemoteSignal(version="1.2.10")
        )

        assert verdict.outdated is True
        assert verdict.authoritative is True

    def test_verified_current(self):
        """Equal or older remote values leave the release current."""
        verdict = is_outdated(
            LocalState(version="1.2.3", build="500", version_verified=True, build_verified=True),
            RemoteSignal(version="1.2.3", build="400")
        )

        assert verdict.outdated is False
        assert verdict.authoritative is True
        assert verdict.reason == "Verified build 500 is current and version 1.2.3 is current"

    def test_unverified_values_are_ignored(self):
        """Unverified local values never produce an authoritative verdict."""
        now = datetime(2026, 3, 1, 12, 0, 0)
        verdict = is_outdated(
            LocalState(version="1.0", build="100"),
            RemoteSignal(version="2.0", build="200", published_at=now - timedelta(days=3)),
            now=now
        )

        assert verdict.outdated is False
        assert verdict.authoritative is False

    def test_fresh_listing_is_advisory(self):
        """Without a verified baseline a fresh listing is a possible update."""
        now = datetime(2026, 3, 1, 12, 0, 0)
        verdict = is_outdated(
            LocalState(),
            RemoteSignal(version="2.0", published_at=now - timedelta(hours=2)),
            now=now
        )

        assert verdict.outdated is True
        assert verdict.authoritative is False
        assert verdict.reason.startswith("Possible update, unverified")

    def test_freshness_window_is_configurable(self):
        now = datetime(2026, 3, 1, 12, 0, 0)
        verdict = is_outdated(
            LocalState(),
            RemoteSignal(published_at=now - timedelta(hours=2)),
            now=now,
            freshness_window=timedelta(hours=1)
        )

        assert verdict.outdated is False

    def test_unparseable_remote_falls_back(self):
        """An unparseable remote build is not compared."""
        verdict = is_outdated(
            LocalState(build="100", build_verified=True),
            RemoteSignal(build="unknown")
        )

        assert verdict.outdated is False
        assert verdict.authoritative is False
