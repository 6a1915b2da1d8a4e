"""
Title cleaning and sequel-aware title similarity.

Used to resolve listings to tracked releases and by the title
normalization sweep.
"""

import re
from typing import Optional, Tuple

ROMAN_NUMERALS = {
    "i": 1, "ii": 2, "iii": 3, "iv": 4, "v": 5,
    "vi": 6, "vii": 7, "viii": 8, "ix": 9, "x": 10,
    "xi": 11, "xii": 12, "xiii": 13, "xiv": 14, "xv": 15,
}

NUMBER_WORDS = {
    "one": "1", "two": "2", "three": "3", "four": "4", "five": "5",
    "six": "6", "seven": "7", "eight": "8", "nine": "9",
}

EDITION_NOISE = {
    "goty", "game", "of", "the", "year", "definitive", "ultimate", "enhanced",
    "complete", "deluxe", "premium", "edition", "version", "remaster",
    "remastered", "remake",
}

# Applied in order to a lowercased title
_CLEANING_STEPS = [
    (re.compile(r"\b(denuvoless|cracked|repack|fitgirl|dodi|empress|codex|skidrow|plaza|rune|tenoke|p2p|gog)\b"), ""),
    (re.compile(r"\b(free download|full version|complete edition)\b"), ""),
    (re.compile(r"(\+\s*all dlc|\+\s*dlc|with all dlc|all dlc|with dlc|dlc included)"), ""),
    (re.compile(r"\b(pre-installed|preinstalled)\b"), ""),
    (re.compile(r"\b(character pack \d*|dlc pack \d*|expansion pack \d*)"), ""),
    (re.compile(r"\b(pre-purchase bonus|pre-order bonus|bonus content)\b"), ""),
    (re.compile(r"\b(season pass|dlc bundle)\b"), ""),
    (re.compile(r"\bv\d+(\.\d+)+(-[a-z0-9]+)?"), ""),
    (re.compile(r"\bv\d{6,}\b"), ""),
    (re.compile(r"(?<![\w.])\d+(\.\d+)+(?![\w.])"), ""),
    (re.compile(r"\bversion\s*\d+(\.\d+)*"), ""),
    (re.compile(r"\bver\.?\s*\d+(\.\d+)*"), ""),
    (re.compile(r"\bbuild[\s._#-]*\d+"), ""),
    (re.compile(r"\bb\d{4,}\b"), ""),
    (re.compile(r"\bupdate\s*\d+(\.\d+)*"), ""),
    (re.compile(r"\b(hotfix|patch)\b"), ""),
    (re.compile(r"[(\[](19|20)\d{2}[)\]]"), ""),
    (re.compile(r"-[a-z0-9]{3,}$"), ""),
    (re.compile(r"-[a-z0-9]{3,}\s"), " "),
    (re.compile(r"\[[^\]]*\]"), ""),
    (re.compile(r"\([^)]*\)"), ""),
    (re.compile(r"[®™©]"), ""),
]


def clean_title(title: Optional[str]) -> str:
    """
    Reduce a listing title to a comparable base form.

    Strips distribution tags, version/build tokens, year tags, release groups
    and bracketed content; maps number words and roman numerals to digits.
    """
    if not title:
        return ""

    text = title.lower()
    for pattern, replacement in _CLEANING_STEPS:
        text = pattern.sub(replacement, text)

    text = re.sub(r"['’`]", "", text)
    text = re.sub(r"[-:_]", " ", text)
    text = re.sub(r"[^\w\s&.]", " ", text)

    words = []
    for word in text.split():
        word = word.strip(".")
        if not word:
            continue
        if word in NUMBER_WORDS:
            word = NUMBER_WORDS[word]
        elif word in ROMAN_NUMERALS and word not in ("i",):
            word = str(ROMAN_NUMERALS[word])
        elif word == "and":
            word = "&"
        words.append(word)

    return " ".join(words)


def looks_uncleaned(title: Optional[str]) -> bool:
    """True when a stored title still carries version, build or group noise."""
    if not title:
        return False
    return clean_title(title) != " ".join(title.lower().split())


def extract_sequel_number(cleaned: str) -> Optional[Tuple[str, int]]:
    """
    Split a trailing sequel number off a cleaned title.

    Returns:
        (base, number) or None, e.g. "risk of rain 2" -> ("risk of rain", 2)
    """
    words = cleaned.split()
    if len(words) < 2:
        return None
    last = words[-1]
    if re.fullmatch(r"\d{1,2}", last) and 1 <= int(last) <= 99:
        return " ".join(words[:-1]), int(last)
    if last in ROMAN_NUMERALS:
        return " ".join(words[:-1]), ROMAN_NUMERALS[last]
    return None


def is_sequel_difference(remaining: str) -> bool:
    """True when the extra text one title carries marks a different game."""
    words = remaining.split()
    if not words:
        return False
    if re.fullmatch(r"\d{1,2}", words[0]) or words[0] in ROMAN_NUMERALS:
        return True
    meaningful = [w for w in words if len(w) > 1 and w not in EDITION_NOISE]
    return bool(meaningful)


def title_similarity(title1: str, title2: str) -> float:
    """
    Sequel-aware similarity between two raw titles in [0, 1].

    Same base with a different sequel number scores 0.3 so that numbered
    sequels never resolve to each other.
    """
    clean1 = clean_title(title1)
    clean2 = clean_title(title2)
    if not clean1 or not clean2:
        return 0.0
    if clean1 == clean2:
        return 1.0

    seq1 = extract_sequel_number(clean1)
    seq2 = extract_sequel_number(clean2)
    if seq1 and seq2 and seq1[0] == seq2[0]:
        return 1.0 if seq1[1] == seq2[1] else 0.3
    if seq1 and not seq2 and seq1[0] == clean2:
        return 0.3
    if seq2 and not seq1 and seq2[0] == clean1:
        return 0.3

    if clean2 in clean1 or clean1 in clean2:
        longer, shorter = (clean1, clean2) if clean2 in clean1 else (clean2, clean1)
        remaining = longer.replace(shorter, "", 1).strip()
        return 0.3 if is_sequel_difference(remaining) else 0.85

    words1 = {w for w in clean1.split() if len(w) > 1}
    words2 = {w for w in clean2.split() if len(w) > 1}
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)
