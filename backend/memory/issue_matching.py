from __future__ import annotations

from typing import Iterable

from .models import ActiveIssue

MIN_SHARED_KEYWORDS = 2


def _normalize(label: str) -> str:
    return (label or "").strip().lower()


def is_similar_label(first: str, second: str) -> bool:
    """Heuristic label match: equal, one contains the other, or two shared words.

    Unrelated labels that share two common words will merge, and paraphrases
    with no shared token will not.
    """
    left = _normalize(first)
    right = _normalize(second)
    if not left or not right:
        return False
    if left == right:
        return True
    if left in right or right in left:
        return True
    right_tokens = set(right.split())
    shared = [token for token in left.split() if token in right_tokens]
    return len(shared) >= MIN_SHARED_KEYWORDS


def find_similar_issue(label: str, issues: Iterable[ActiveIssue]) -> ActiveIssue | None:
    for issue in issues:
        if is_similar_label(issue.label, label):
            return issue
    return None
