"""
Version and build detection for free-form release titles.

This module provides:
- An ordered list of named detection rules, each with fixtures
- Title analysis into normalized version/build tokens plus suggestions
- Idempotent normalization and parsing of versions and builds
- Validation of user-supplied version/build strings
- Release group extraction
"""

import re
from typing import Iterable, List, NamedTuple, Optional, Pattern, Tuple

import structlog

from scheduler.errors import VersionValidationError
from scheduler.models import DetectionSuggestions, VersionDetection

logger = structlog.get_logger(__name__)

SLOT_BUILD = "build"
SLOT_VERSION = "version"
SLOT_ANY = "any"

# Four-digit numbers in this range read as years, not builds
YEAR_RANGE = (1990, 2030)


class DetectionRule(NamedTuple):
    """A named matcher rule. Rules run in list order."""
    name: str
    slot: str
    pattern: Pattern
    confidence: float
    fixtures: Tuple[Tuple[str, Optional[str]], ...]


DETECTION_RULES: List[DetectionRule] = [
    DetectionRule(
        name="explicit_build",
        slot=SLOT_BUILD,
        pattern=re.compile(r"\bbuild[\s._#-]*(\d+)|\bb(\d{4,})\b|#(\d{4,})\b", re.IGNORECASE),
        confidence=0.9,
        fixtures=(
            ("Cyberpunk 2077 v2.1 Build 15832751-GROUP", "15832751"),
            ("Some Game b20106408", "20106408"),
            ("Another Game #12345", "12345"),
            ("Game Build 2024", None),
            ("Plain Title", None),
        ),
    ),
    DetectionRule(
        name="dotted_version",
        slot=SLOT_VERSION,
        pattern=re.compile(r"(?<![\w.])[vV]?(\d+(?:\.\d+)+)(?!\d)"),
        confidence=0.9,
        fixtures=(
            ("Game Title v1.2.3 Build 20106408-GROUPTAG", "1.2.3"),
            ("Cyberpunk 2077 v2.1 Build 15832751-GROUP", "2.1"),
            ("Game 1.0.12", "1.0.12"),
            ("Game 2077", None),
        ),
    ),
    DetectionRule(
        name="long_numeric",
        slot=SLOT_BUILD,
        pattern=re.compile(r"(?<![\w.])([vV])?(\d{6,})(?![\w.])"),
        confidence=0.6,
        fixtures=(
            ("Game 20106408", "20106408"),
            ("Game v20250922", "20250922"),
            ("Game 12345", None),
            ("Game 1.123456", None),
        ),
    ),
    DetectionRule(
        name="last_numeric",
        slot=SLOT_ANY,
        pattern=re.compile(r"(\d+)(?!.*\d)"),
        confidence=0.4,
        fixtures=(
            ("Game Part 3", "3"),
            ("Cyberpunk 2077", "2077"),
            ("No Numbers Here", None),
        ),
    ),
]

RELEASE_GROUPS = [
    "GOG", "P2P", "CODEX", "SKIDROW", "REPACK", "FITGIRL", "DODI", "EMPRESS",
    "RUNE", "PLAZA", "HOODLUM", "RAZOR1911", "STEAMPUNKS", "DARKSIDERS",
    "GOLDBERG", "ALI213", "3DM", "PROPHET", "CPY", "TENOKE", "ELAMIGOS",
    "SCENE", "CRACKED", "FULL", "UNLOCKED",
]

_RELEASE_GROUP_PATTERN = re.compile(
    r"[-\s]+(" + "|".join(RELEASE_GROUPS) + r")[-\s]*$", re.IGNORECASE
)

_LEADING_V = re.compile(r"^[vV]\s*(?=\d)")
_LEADING_BUILD = re.compile(r"^(?:build|b|#)[\s._#-]*(?=\d)", re.IGNORECASE)
_ASCII_DIGITS = re.compile(r"[0-9]+")
_DOTTED = re.compile(r"^\d+(?:\.\d+)*$")
_DOTTED_PREFIX = re.compile(r"^(\d+(?:\.\d+)*)")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")

_VERSION_FORMATS = [
    re.compile(r"^\d+$"),
    re.compile(r"^\d+(?:\.\d+){1,3}$"),
    re.compile(r"^v\d+(?:\.\d+){0,3}$", re.IGNORECASE),
    re.compile(r"^v?\d+(?:\.\d+){0,3}[a-z]$", re.IGNORECASE),
    re.compile(r"^v?\d+(?:\.\d+){0,3}-(?:alpha|beta|rc|hotfix|patch)\d*$", re.IGNORECASE),
    re.compile(r"^v?\d{4}-\d{2}-\d{2}$", re.IGNORECASE),
]


def _is_year(digits: str) -> bool:
    return len(digits) == 4 and YEAR_RANGE[0] <= int(digits) <= YEAR_RANGE[1]


def normalize_version(value: Optional[str]) -> Optional[str]:
    """
    Normalize a version string.

    Strips whitespace and a leading ``v``, collapses ISO dates to YYYYMMDD and
    rewrites dotted numeric versions with canonical integer segments.
    Normalizing an already normalized value returns it unchanged.
    """
    if value is None:
        return None
    text = _LEADING_V.sub("", value.strip()).strip().lower()
    date_match = _ISO_DATE.match(text)
    if date_match:
        return "".join(date_match.groups())
    if _DOTTED.match(text):
        return ".".join(str(int(part)) for part in text.split("."))
    return text


def parse_version(value: Optional[str]) -> Optional[List[int]]:
    """Parse a version into integer segments, or None when it has no numeric prefix."""
    normalized = normalize_version(value)
    if not normalized:
        return None
    match = _DOTTED_PREFIX.match(normalized)
    if not match:
        return None
    return [int(part) for part in match.group(1).split(".")]


def normalize_build(value: Optional[str]) -> Optional[str]:
    """
    Normalize a build string.

    Strips whitespace and a leading ``build``/``b``/``#`` marker. Pure digit
    builds lose leading zeros. Idempotent like normalize_version.
    """
    if value is None:
        return None
    text = _LEADING_BUILD.sub("", value.strip()).strip().lower()
    if _ASCII_DIGITS.fullmatch(text):
        return str(int(text))
    return text


def parse_build(value: Optional[str]) -> Optional[int]:
    """Parse a build into an integer, or None when it is not purely numeric."""
    normalized = normalize_build(value)
    if normalized and _ASCII_DIGITS.fullmatch(normalized):
        return int(normalized)
    return None


class VersionDetector:
    """Applies the ordered detection rules to titles."""

    def __init__(self, rules: Optional[Iterable[DetectionRule]] = None):
        self.rules = list(rules) if rules is not None else list(DETECTION_RULES)

    def match_rule(self, rule: DetectionRule, title: str) -> Optional[Tuple[str, str]]:
        """
        Run one rule against a title.

        Returns:
            (slot, raw value) for the first acceptable match, or None
        """
        for match in rule.pattern.finditer(title):
            if rule.name == "explicit_build":
                digits = next(group for group in match.groups() if group)
                if _is_year(digits):
                    continue
                return SLOT_BUILD, digits
            if rule.name == "long_numeric":
                prefix, digits = match.groups()
                return (SLOT_VERSION if prefix else SLOT_BUILD), digits
            return rule.slot, match.group(1)
        return None

    def detect(self, title: Optional[str]) -> VersionDetection:
        """
        Extract version/build tokens from a free-form title.

        Each slot keeps the first rule that fills it. The ``any`` rule only
        fires when neither slot has been filled.
        """
        if not title:
            return VersionDetection(suggestions=self._suggest(None, None, False))

        version: Optional[str] = None
        build: Optional[str] = None
        version_rule: Optional[str] = None
        build_rule: Optional[str] = None
        confidence = 0.0

        for rule in self.rules:
            if rule.slot == SLOT_ANY and (version or build):
                continue
            if rule.slot == SLOT_BUILD and build and version:
                continue
            if rule.slot == SLOT_VERSION and version:
                continue

            found = self.match_rule(rule, title)
            if not found:
                continue
            slot, raw = found

            if slot in (SLOT_VERSION, SLOT_ANY) and version is None:
                version = normalize_version(raw)
                version_rule = rule.name
                confidence = max(confidence, rule.confidence)
            elif slot == SLOT_BUILD and build is None:
                build = normalize_build(raw)
                build_rule = rule.name
                confidence = max(confidence, rule.confidence)

        loose_only = version_rule == "last_numeric" and build is None
        return VersionDetection(
            detected_version=version,
            detected_build=build,
            version_rule=version_rule,
            build_rule=build_rule,
            rule_confidence=confidence,
            suggestions=self._suggest(version, build, loose_only),
        )

    def strip_detected(self, title: str) -> str:
        """
        Remove the version/build tokens the slot rules would detect.

        The last-resort rule is left alone so trailing sequel numbers survive.
        """
        spans = []
        for rule in self.rules:
            if rule.slot == SLOT_ANY:
                continue
            for match in rule.pattern.finditer(title):
                if rule.name == "explicit_build":
                    digits = next(group for group in match.groups() if group)
                    if _is_year(digits):
                        continue
                spans.append(match.span())

        stripped = []
        position = 0
        for start, end in sorted(spans):
            if start < position:
                start = position
            if start >= end:
                continue
            stripped.append(title[position:start])
            position = end
        stripped.append(title[position:])
        return " ".join("".join(stripped).split())

    def detect_listing(self, title: str, raw_version_text: Optional[str] = None) -> VersionDetection:
        """Detect from a listing title, filling empty slots from its raw version text."""
        detection = self.detect(title)
        if not raw_version_text or (detection.has_version and detection.has_build):
            return detection

        extra = self.detect(raw_version_text)
        version = detection.detected_version
        build = detection.detected_build
        version_rule = detection.version_rule
        build_rule = detection.build_rule
        confidence = detection.rule_confidence

        if extra.has_version and (version is None or version_rule == "last_numeric"):
            version, version_rule = extra.detected_version, extra.version_rule
            confidence = max(confidence, extra.rule_confidence)
        if extra.has_build and build is None:
            build, build_rule = extra.detected_build, extra.build_rule
            confidence = max(confidence, extra.rule_confidence)

        return VersionDetection(
            detected_version=version,
            detected_build=build,
            version_rule=version_rule,
            build_rule=build_rule,
            rule_confidence=confidence,
            suggestions=self._suggest(version, build, version_rule == "last_numeric" and build is None),
        )

    def _suggest(self, version: Optional[str], build: Optional[str], loose_only: bool) -> DetectionSuggestions:
        if version and build:
            return DetectionSuggestions()
        if loose_only:
            return DetectionSuggestions(
                should_ask_for_build=True,
                should_ask_for_version=True,
                message=f"Only a loose number ({version}) was found. Please confirm the version or build number.",
            )
        if version:
            return DetectionSuggestions(
                should_ask_for_build=True,
                message=f"Version {version} detected. Consider adding the build number for more accurate update tracking.",
            )
        if build:
            return DetectionSuggestions(
                should_ask_for_version=True,
                message=f"Build {build} detected. Consider adding the version number for better readability.",
            )
        return DetectionSuggestions(
            should_ask_for_build=True,
            should_ask_for_version=True,
            manual_entry_needed=True,
            message="No version information detected. Enter the version or build number manually.",
        )


_default_detector = VersionDetector()


def detect_version_info(title: Optional[str]) -> VersionDetection:
    """Analyze a title with the default rule list."""
    return _default_detector.detect(title)


def validate_version_number(value: Optional[str]) -> str:
    """
    Validate a user-supplied version.

    Returns:
        The normalized version

    Raises:
        VersionValidationError: when the value is empty or malformed
    """
    if value is None or not value.strip():
        raise VersionValidationError("Version number is required", field="version", value=value)

    text = value.strip()
    if not any(fmt.match(text) for fmt in _VERSION_FORMATS):
        raise VersionValidationError(
            "Invalid version format. Examples: 1.2, v1.2.3, 1.2a, 1.2-beta, 20250922, 2025-09-22",
            field="version",
            value=value,
        )
    return normalize_version(text)


def validate_build_number(value: Optional[str]) -> str:
    """
    Validate a user-supplied build number.

    Returns:
        The normalized build

    Raises:
        VersionValidationError: when the value is empty, non-numeric or implausibly sized
    """
    if value is None or not value.strip():
        raise VersionValidationError("Build number is required", field="build", value=value)

    text = value.strip()
    if not _ASCII_DIGITS.fullmatch(text):
        raise VersionValidationError("Build number should contain only digits", field="build", value=value)
    if len(text) < 3:
        raise VersionValidationError("Build number seems too short (minimum 3 digits)", field="build", value=value)
    if len(text) > 12:
        raise VersionValidationError("Build number seems too long (maximum 12 digits)", field="build", value=value)
    return normalize_build(text)


def extract_release_group(title: str) -> Tuple[str, str]:
    """
    Split a trailing release group tag off a title.

    Returns:
        (release group, title without the tag); the group is ``UNKNOWN`` when absent
    """
    match = _RELEASE_GROUP_PATTERN.search(title)
    if match:
        return match.group(1).upper(), title[:match.start()].strip()
    return "UNKNOWN", title
