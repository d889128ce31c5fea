"""Fuzzy person-name comparison.

Names are compared as token sets (Jaccard overlap). Two tokens count as the
same when they are equal, or when both are at least ``MIN_TYPO_TOKEN_LEN``
characters and within ``typo_distance`` edits of each other, so "Jon Smith"
and "Jonn Smith" match while "Jane Smith" and "Emma Smith" do not.
"""

import re

DEFAULT_THRESHOLD = 0.5
DEFAULT_TYPO_DISTANCE = 2
MIN_TYPO_TOKEN_LEN = 4


def normalize_name(name: str | None) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    if not name:
        return ""
    cleaned = re.sub(r"[^\w\s]", " ", name.lower())
    return re.sub(r"\s+", " ", cleaned).strip()


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        cur = [i]
        for j, cb in enumerate(b, 1):
            cur.append(min(
                prev[j] + 1,
                cur[j - 1] + 1,
                prev[j - 1] + (ca != cb),
            ))
        prev = cur
    return prev[-1]


def _tokens_match(a: str, b: str, typo_distance: int) -> bool:
    if a == b:
        return True
    if typo_distance <= 0 or min(len(a), len(b)) < MIN_TYPO_TOKEN_LEN:
        return False
    return levenshtein(a, b) <= typo_distance


def name_similarity(a: str | None, b: str | None, typo_distance: int = DEFAULT_TYPO_DISTANCE) -> float:
    """Return a 0..1 similarity score between two names.

    Empty names score 0. Each token of ``a`` is paired with at most one
    unused token of ``b``; the score is matched / (|a| + |b| - matched).
    """
    ta = normalize_name(a).split()
    tb = normalize_name(b).split()
    if not ta or not tb:
        return 0.0
    # Dedupe while keeping order so "Anne Anne" does not double count
    ta = list(dict.fromkeys(ta))
    tb = list(dict.fromkeys(tb))
    unused = list(tb)
    matched = 0
    for token in ta:
        for candidate in unused:
            if _tokens_match(token, candidate, typo_distance):
                unused.remove(candidate)
                matched += 1
                break
    union = len(ta) + len(tb) - matched
    return matched / union if union else 0.0


def is_same_person(
    a: str | None,
    b: str | None,
    threshold: float = DEFAULT_THRESHOLD,
    typo_distance: int = DEFAULT_TYPO_DISTANCE,
) -> bool:
    return name_similarity(a, b, typo_distance) >= threshold
