"""Heuristics deciding whether an upstream error means the free tier is used up.

Each backend names exactly one policy; policies are never combined.
"""

from __future__ import annotations

from typing import Callable

QuotaClassifier = Callable[[str], bool]

QUOTA_EXHAUSTED_PHRASES: tuple[str, ...] = (
    "quota exhausted",
    "insufficient quota",
    "free quota",
    "rate limit",
    "daily limit",
)

QUOTA_TERMS: tuple[str, ...] = ("quota", "limit")
EXHAUSTION_TERMS: tuple[str, ...] = ("exhausted", "exceeded", "insufficient", "reached")


def matches_quota_phrase(error_text: str) -> bool:
    normalized = error_text.lower()
    return any(phrase in normalized for phrase in QUOTA_EXHAUSTED_PHRASES)


def matches_quota_co_occurrence(error_text: str) -> bool:
    normalized = error_text.lower()
    return any(term in normalized for term in QUOTA_TERMS) and any(
        term in normalized for term in EXHAUSTION_TERMS
    )


QUOTA_POLICIES: dict[str, QuotaClassifier] = {
    "phrases": matches_quota_phrase,
    "co_occurrence": matches_quota_co_occurrence,
}


def get_quota_classifier(policy: str) -> QuotaClassifier:
    try:
        return QUOTA_POLICIES[policy]
    except KeyError:
        raise ValueError(
            f"Unknown quota policy '{policy}'. "
            f"Expected one of: {', '.join(sorted(QUOTA_POLICIES))}."
        ) from None
