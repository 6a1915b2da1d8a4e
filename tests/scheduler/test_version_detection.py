"""
Test cases for version/build detection and normalization.
"""

import pytest

from scheduler.errors import VersionValidationError
from scheduler.version_detection import (
    DETECTION_RULES, VersionDetector, detect_version_info, extract_release_group,
    normalize_build, normalize_version, parse_build, parse_version,
    validate_build_number, validate_version_number
)


class TestDetectionRules:
    """Every rule is checked against its own fixtures."""

    @pytest.mark.parametrize(
        "rule,title,expected",
        [(rule, title, expected) for rule in DETECTION_RULES for title, expected in rule.fixtures],
        ids=lambda value: getattr(value, "name", None) or str(value)
    )
    def test_rule_fixtures(self, rule, title, expected):
        """Each fixture title yields the expected raw value (or nothing)."""
        found = VersionDetector().match_rule(rule, title)
        if expected is None:
            assert found is None
        else:
            assert found is not None
            assert found[1] == expected

    def test_rule_order(self):
        """Rules run in a fixed, named order."""
        assert [rule.name for rule in DETECTION_RULES] == [
            "explicit_build", "dotted_version", "long_numeric", "last_numeric"
        ]

    def test_long_numeric_with_v_prefix_is_a_version(self):
        """A v-prefixed long number fills the version slot."""
        rule = DETECTION_RULES[2]
        assert VersionDetector().match_rule(rule, "Game v20250922") == ("version", "20250922")
        assert VersionDetector().match_rule(rule, "Game 20106408") == ("build", "20106408")


class TestVersionDetector:
    """Test cases for title analysis."""

    def test_version_and_build_from_title(self):
        """Version and build are both extracted from a release title."""
        detection = detect_version_info("Cyberpunk 2077 v2.1 Build 15832751-GROUP")

        assert detection.detected_version == "2.1"
        assert detection.detected_build == "15832751"
        assert detection.version_rule == "dotted_version"
        assert detection.build_rule == "explicit_build"
        assert detection.rule_confidence == 0.9
        assert detection.suggestions.message is None

    def test_version_with_group_tag(self):
        """Trailing group tags do not disturb detection."""
        detection = detect_version_info("Game Title v1.2.3 Build 20106408-GROUPTAG")

        assert detection.detected_version == "1.2.3"
        assert detection.detected_build == "20106408"

    def test_version_only_suggests_build(self):
        """A title with only a version asks for the build."""
        detection = detect_version_info("Hollow Knight v1.5.78")

        assert detection.detected_version == "1.5.78"
        assert detection.detected_build is None
        assert detection.suggestions.should_ask_for_build is True
        assert detection.suggestions.should_ask_for_version is False

    def test_build_only_suggests_version(self):
        """A title with only a build asks for the version."""
        detection = detect_version_info("Hollow Knight Build 20106408")

        assert detection.detected_version is None
        assert detection.detected_build == "20106408"
        assert detection.suggestions.should_ask_for_version is True

    def test_loose_number_fallback(self):
        """The last-resort rule fills the version slot with low confidence."""
        detection = detect_version_info("Game Part 3")

        assert detection.detected_version == "3"
        assert detection.version_rule == "last_numeric"
        assert detection.rule_confidence == 0.4
        assert detection.suggestions.should_ask_for_build is True
        assert detection.suggestions.should_ask_for_version is True

    def test_no_numbers_needs_manual_entry(self):
        """Titles without numbers produce no detection."""
        detection = detect_version_info("No Numbers Here")

        assert detection.is_empty
        assert detection.suggestions.manual_entry_needed is True

    def test_empty_title(self):
        """Empty titles never raise."""
        assert detect_version_info("").is_empty
        assert detect_version_info(None).is_empty

    def test_year_is_not_a_build(self):
        """A four-digit year after 'Build' is ignored."""
        detection = detect_version_info("Game Build 2024")
        assert detection.build_rule != "explicit_build"

    def test_malformed_titles_degrade_gracefully(self):
        """Odd input yields a best-effort parse, never an exception."""
        for title in ["v", "Build", "1..2..3", "....", "#", "v.1", "éè v٣.٤"]:
            detect_version_info(title)

    def test_listing_raw_version_text_fills_missing_slots(self):
        """Raw version text from the listing fills an empty version slot."""
        detection = VersionDetector().detect_listing("Hollow Knight", "v1.5.79")

        assert detection.detected_version == "1.5.79"
        assert detection.version_rule == "dotted_version"

    def test_listing_title_wins_when_complete(self):
        """A title with both slots ignores the raw version text."""
        detection = VersionDetector().detect_listing("Game v1.2 Build 123456", "v9.9")
        assert detection.detected_version == "1.2"

    def test_custom_rule_confidence(self):
        """Rule lists can be swapped, e.g. to change confidence."""
        detector = VersionDetector(rules=[DETECTION_RULES[1]._replace(confidence=0.55)])
        detection = detector.detect("Game v1.2.3")

        assert detection.detected_version == "1.2.3"
        assert detection.rule_confidence == 0.55

    def test_strip_detected_keeps_sequel_numbers(self):
        """Stripping removes version/build tokens but keeps trailing numbers."""
        detector = VersionDetector()
        assert detector.strip_detected("Risk of Rain 2 v1.2.4 Build 123456") == "Risk of Rain 2"
        assert detector.strip_detected("Cyberpunk 2077") == "Cyberpunk 2077"


class TestNormalization:
    """Test cases for version/build normalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("v1.2.3", "1.2.3"),
        ("  V01.002.3 ", "1.2.3"),
        ("2025-09-22", "20250922"),
        ("1.2-beta", "1.2-beta"),
        ("20250922", "20250922"),
    ])
    def test_normalize_version(self, raw, expected):
        assert normalize_version(raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("Build 0012345", "12345"),
        ("b20106408", "20106408"),
        ("#4567", "4567"),
        (" 15832751 ", "15832751"),
    ])
    def test_normalize_build(self, raw, expected):
        assert normalize_build(raw) == expected

    @pytest.mark.parametrize("raw", [
        "v1.2.3", "V01.002.3", "2025-09-22", "1.2-beta", "version", "", "v", "1.0a"
    ])
    def test_version_normalization_is_idempotent(self, raw):
        once = normalize_version(raw)
        assert normalize_version(once) == once

    @pytest.mark.parametrize("raw", ["Build 0012345", "b20106408", "#4567", "abc", "", "build"])
    def test_build_normalization_is_idempotent(self, raw):
        once = normalize_build(raw)
        assert normalize_build(once) == once

    def test_parse_version_segments(self):
        assert parse_version("v1.2.10") == [1, 2, 10]
        assert parse_version("1.2-beta") == [1, 2]
        assert parse_version("beta") is None
        assert parse_version(None) is None

    def test_parse_build(self):
        assert parse_build("Build 15832751") == 15832751
        assert parse_build("abc") is None
        assert parse_build("²²²") is None


class TestValidation:
    """Test cases for user-supplied version/build validation."""

    def test_valid_versions_are_normalized(self):
        assert validate_version_number("v1.2.3") == "1.2.3"
        assert validate_version_number("2025-09-22") == "20250922"
        assert validate_version_number("1.2-beta") == "1.2-beta"

    def test_invalid_version_format(self):
        with pytest.raises(VersionValidationError) as exc_info:
            validate_version_number("not a version")
        assert "Invalid version format" in exc_info.value.message
        assert exc_info.value.field == "version"

    def test_missing_version(self):
        with pytest.raises(VersionValidationError, match="required"):
            validate_version_number("  ")

    def test_valid_build(self):
        assert validate_build_number(" 0012345 ") == "12345"

    @pytest.mark.parametrize("raw,message", [
        ("12a45", "only digits"),
        ("²²²", "only digits"),
        ("12", "too short"),
        ("1234567890123", "too long"),
        ("", "required"),
    ])
    def test_invalid_builds(self, raw, message):
        with pytest.raises(VersionValidationError, match=message):
            validate_build_number(raw)


class TestReleaseGroup:
    """Test cases for release group extraction."""

    def test_known_group(self):
        assert extract_release_group("Game v1.0-CODEX") == ("CODEX", "Game v1.0")

    def test_unknown_group(self):
        assert extract_release_group("Plain Game") == ("UNKNOWN", "Plain Game")
