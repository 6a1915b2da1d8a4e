"""
Sequel, edition and DLC detection for listings with no tracked linkage.

This module provides:
- Core-title extraction with version/build tokens stripped
- Token-overlap similarity between core titles
- Relationship typing (sequel, edition, DLC)
- Candidate emission with per-pair deduplication
- Resolution of user decisions on candidates
"""

import re
from typing import List, NamedTuple, Optional, Sequence, Set, Tuple

import structlog

from scheduler.errors import NotFoundError
from scheduler.models import RelationResolution, ThresholdConfig
from scheduler.title_matching import NUMBER_WORDS, ROMAN_NUMERALS, clean_title
from scheduler.update_arbiter import UpdateArbiter, display_version
from scheduler.version_detection import VersionDetector, extract_release_group
from tracker.models import Listing, RelationAction, RelationCandidate, RelationType, TrackedRelease

logger = structlog.get_logger(__name__)

EDITION_KEYWORDS = [
    "game of the year", "directors cut", "definitive", "remastered", "remaster",
    "remake", "goty", "complete", "deluxe", "ultimate", "enhanced", "special",
    "anniversary", "gold", "premium", "edition",
]

DLC_KEYWORDS = [
    "season pass", "add on", "addon", "dlc", "expansion", "episode", "chapter",
    "soundtrack", "pack",
]

STOPWORDS = {"the", "of", "a", "an", "and", "&", "to", "in", "on", "for"}


class CoreTitle(NamedTuple):
    """A title reduced for relation comparison."""
    text: str
    base: Set[str]
    number: Optional[int]
    editions: Set[str]
    dlc: Set[str]


def _find_keywords(text: str, keywords: Sequence[str]) -> Tuple[Set[str], str]:
    found = set()
    for keyword in keywords:
        pattern = r"\b" + re.escape(keyword) + r"\b"
        if re.search(pattern, text):
            found.add(keyword)
            text = re.sub(pattern, " ", text)
    return found, text


def token_similarity(a: Set[str], b: Set[str]) -> float:
    """
    Mean of containment and Jaccard-style overlap between two token sets.

    Returns a value in [0, 1]; identical sets score 1.0, disjoint sets 0.0.
    """
    if not a or not b:
        return 0.0
    shared = len(a & b)
    return (shared / min(len(a), len(b)) + shared / max(len(a), len(b))) / 2


class RelationMatcher:
    """Finds and resolves relation candidates for an account's catalog."""

    def __init__(
        self,
        store,
        arbiter: UpdateArbiter,
        thresholds: Optional[ThresholdConfig] = None,
        detector: Optional[VersionDetector] = None
    ):
        self.store = store
        self.arbiter = arbiter
        self.thresholds = thresholds or ThresholdConfig()
        self.detector = detector or VersionDetector()
        self.logger = logger.bind(component="relation_matcher")

    def core_title(self, title: str) -> CoreTitle:
        """Strip version/build tokens and release group, then split keywords from the base."""
        _, without_group = extract_release_group(title)
        text = self.detector.strip_detected(without_group).lower()
        text = re.sub(r"\[[^\]]*\]|\([^)]*\)", " ", text)
        text = re.sub(r"['’`]", "", text)
        text = re.sub(r"[^\w&]+", " ", text)

        words = []
        for word in text.split():
            if word in NUMBER_WORDS:
                word = NUMBER_WORDS[word]
            elif word in ROMAN_NUMERALS and word != "i":
                word = str(ROMAN_NUMERALS[word])
            words.append(word)
        normalized = " ".join(words)

        dlc, remainder = _find_keywords(normalized, DLC_KEYWORDS)
        editions, remainder = _find_keywords(remainder, EDITION_KEYWORDS)

        base_words = [w for w in remainder.split() if w not in STOPWORDS]
        number = None
        if len(base_words) > 1 and re.fullmatch(r"\d{1,2}", base_words[-1]) and int(base_words[-1]) > 0:
            number = int(base_words.pop())

        return CoreTitle(text=normalized, base=set(base_words), number=number, editions=editions, dlc=dlc)

    def compare(self, tracked_title: str, candidate_title: str) -> Optional[Tuple[float, RelationType, str]]:
        """
        Score a candidate title against a tracked title.

        Returns:
            (similarity, relation type, reason), or None when they are the same
            release or the similarity is below threshold
        """
        tracked = self.core_title(tracked_title)
        candidate = self.core_title(candidate_title)
        if tracked.text == candidate.text:
            return None

        similarity = round(token_similarity(tracked.base, candidate.base), 4)
        if similarity < self.thresholds.relation_similarity_threshold:
            return None

        if candidate.number is not None and candidate.number != tracked.number:
            previous = tracked.number if tracked.number is not None else 1
            return similarity, RelationType.POTENTIAL_SEQUEL, f"Sequel number {previous} -> {candidate.number}"
        if candidate.dlc - tracked.dlc:
            keywords = ", ".join(sorted(candidate.dlc - tracked.dlc))
            return similarity, RelationType.POTENTIAL_DLC, f"DLC keywords: {keywords}"
        if candidate.editions != tracked.editions:
            keywords = ", ".join(sorted(candidate.editions ^ tracked.editions))
            return similarity, RelationType.POTENTIAL_EDITION, f"Edition keywords differ: {keywords}"
        return similarity, RelationType.POTENTIAL_SEQUEL, "Similar title with different name"

    async def scan(self, releases: List[TrackedRelease], listings: List[Listing]) -> List[RelationCandidate]:
        """
        Emit relation candidates for listings that resolve to no tracked release.

        Each listing is attached to its highest-scoring tracked release only.

        Returns:
            Candidates newly stored during this scan
        """
        tracked_links = {r.source_link for r in releases if r.source_link}
        tracked_cleaned = {clean_title(r.original_title or r.title) for r in releases}
        emitted = []

        for listing in listings:
            if listing.link in tracked_links or clean_title(listing.title) in tracked_cleaned:
                continue

            best: Optional[Tuple[TrackedRelease, float, RelationType, str]] = None
            for release in releases:
                scored = self.compare(release.original_title or release.title, listing.title)
                if scored and (best is None or scored[0] > best[1]):
                    best = (release, scored[0], scored[1], scored[2])
            if best is None:
                continue

            release, similarity, relation_type, reason = best
            if any(c.candidate_key == listing.link for c in release.relation_candidates):
                continue

            candidate = RelationCandidate(
                candidate_key=listing.link,
                listing=listing,
                similarity=similarity,
                relation_type=relation_type,
                reason=reason,
            )
            if await self.store.add_relation_candidate(release.release_id, candidate):
                release.relation_candidates.append(candidate)
                emitted.append(candidate)
                self.logger.info(
                    "Relation candidate found",
                    release_id=release.release_id,
                    candidate_title=listing.title,
                    relation_type=relation_type.value,
                    similarity=similarity
                )

        return emitted

    async def resolve(self, candidate_id: str, action: RelationAction) -> RelationResolution:
        """
        Apply a user decision to a relation candidate.

        Raises:
            NotFoundError: when the candidate does not exist or was already resolved
            DuplicateReleaseError: when track_separate targets an already-tracked listing
        """
        action = RelationAction(action)
        release = await self.store.get_release_by_candidate(candidate_id)
        candidate = release.find_candidate(candidate_id) if release else None
        if candidate is None or candidate.dismissed:
            raise NotFoundError(f"Relation candidate {candidate_id} not found or already resolved",
                                {"candidate_id": candidate_id})

        if action == RelationAction.DISMISS:
            if not await self.store.dismiss_relation_candidate(candidate_id):
                raise NotFoundError(f"Relation candidate {candidate_id} not found or already resolved",
                                    {"candidate_id": candidate_id})
            self.logger.info("Relation candidate dismissed", candidate_id=candidate_id,
                             release_id=release.release_id)
            return RelationResolution(candidate_id=candidate_id, action=action, release_id=release.release_id)

        if not await self.store.remove_relation_candidate(candidate_id):
            raise NotFoundError(f"Relation candidate {candidate_id} not found or already resolved",
                                {"candidate_id": candidate_id})

        if action == RelationAction.TRACK_SAME:
            record = await self.arbiter.merge_listing(release, candidate.listing, candidate.similarity)
            self.logger.info("Relation candidate merged", candidate_id=candidate_id,
                             release_id=release.release_id, version=record.display_version)
            return RelationResolution(candidate_id=candidate_id, action=action,
                                      release_id=release.release_id, record=record)

        new_release = self._seed_release(release, candidate)
        await self.store.insert_release(new_release)
        self.logger.info("Relation candidate tracked separately", candidate_id=candidate_id,
                         release_id=release.release_id, new_release_id=new_release.release_id)
        return RelationResolution(candidate_id=candidate_id, action=action, release_id=release.release_id,
                                  new_release_id=new_release.release_id)

    def _seed_release(self, release: TrackedRelease, candidate: RelationCandidate) -> TrackedRelease:
        listing = candidate.listing
        detection = self.detector.detect_listing(listing.title, listing.raw_version_text)
        _, without_group = extract_release_group(listing.title)
        title = self.detector.strip_detected(without_group).strip(" -") or listing.title

        return TrackedRelease(
            account_id=release.account_id,
            game_id=listing.link,
            title=title,
            original_title=listing.title,
            cleaned_title=clean_title(listing.title),
            source=listing.source or release.source,
            source_link=listing.link,
            image=listing.image,
            last_known_version=None if detection.is_empty else display_version(
                detection.detected_version, detection.detected_build),
            current_version_number=detection.detected_version,
            current_build_number=detection.detected_build,
            check_frequency=release.check_frequency,
        )
