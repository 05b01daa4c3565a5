"""String similarity for merchant names.

Jaro-Winkler favours strings that agree from the beginning, which suits
merchant names ("STARBUCKS" vs "STARBUCKS COFFEE"). ``combined_similarity``
takes the best of Jaro-Winkler, containment and per-word overlap.
"""

from __future__ import annotations

import re

from rapidfuzz.distance import JaroWinkler

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")

WINKLER_PREFIX_WEIGHT = 0.1
WORD_MATCH_THRESHOLD = 0.85


def jaro_winkler(s1: str, s2: str) -> float:
    """Case-insensitive Jaro-Winkler similarity in [0, 1]."""
    str1 = s1.lower().strip()
    str2 = s2.lower().strip()
    if str1 == str2:
        return 1.0
    if not str1 or not str2:
        return 0.0
    return JaroWinkler.normalized_similarity(
        str1, str2, prefix_weight=WINKLER_PREFIX_WEIGHT
    )


def _containment_score(str1: str, str2: str) -> float:
    norm1 = _NON_ALNUM_RE.sub("", str1)
    norm2 = _NON_ALNUM_RE.sub("", str2)
    if len(norm1) < 4 or len(norm2) < 4:
        return 0.0
    if norm1 not in norm2 and norm2 not in norm1:
        return 0.0
    shorter = min(len(norm1), len(norm2))
    if shorter >= 5:
        return 0.92
    return 0.7 + (shorter / max(len(norm1), len(norm2))) * 0.3


def _word_overlap_score(str1: str, str2: str) -> float:
    words1 = [w for w in str1.split() if len(w) >= 3]
    words2 = [w for w in str2.split() if len(w) >= 3]
    if not words1 or not words2:
        return 0.0
    matching = sum(
        1
        for w1 in words1
        if any(jaro_winkler(w1, w2) >= WORD_MATCH_THRESHOLD for w2 in words2)
    )
    return matching / max(len(words1), len(words2))


def combined_similarity(s1: str, s2: str) -> float:
    """Best of Jaro-Winkler, containment and word overlap, in [0, 1]."""
    str1 = s1.lower().strip()
    str2 = s2.lower().strip()
    if str1 == str2:
        return 1.0
    if not str1 or not str2:
        return 0.0

    return max(
        jaro_winkler(str1, str2),
        _containment_score(str1, str2),
        _word_overlap_score(str1, str2),
    )
