"""Subject-line helpers: topic marker, correlation key and RFQ id extraction.

Patterns run through the ``regex`` module with a timeout, because the
correlation pattern comes from config.yaml and subjects come from arbitrary
senders.
"""

from __future__ import annotations

import functools

import regex

from rfq_tracker.core.logging import get_logger

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

DEFAULT_CORRELATION_PATTERN = r"MAT-\d+"

RFQ_NUMBER_PATTERN = regex.compile(r"RFQ[- ]?(\d+)", regex.IGNORECASE)

REPLY_PREFIX_PATTERN = regex.compile(r"^\s*(re|fw|fwd|aw|sv)\s*:\s*", regex.IGNORECASE)


@functools.lru_cache(maxsize=32)
def _compile(pattern: str) -> regex.Pattern:
    return regex.compile(pattern, regex.IGNORECASE)


def contains_topic_marker(subject: str, marker: str) -> bool:
    """Whether the subject contains the batch topic marker (case-insensitive)."""
    return marker.lower() in (subject or "").lower()


def extract_correlation_key(
    subject: str,
    pattern: str = DEFAULT_CORRELATION_PATTERN,
) -> str | None:
    """Extract the material/correlation key from a subject.

    Args:
        subject: Subject line, e.g. "RE: RFQ for MAT-1001 - 500 pcs"
        pattern: Correlation key pattern

    Returns:
        The key uppercased ("MAT-1001"), or None if absent
    """
    if not subject:
        return None
    try:
        match = _compile(pattern).search(subject, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("correlation_key_regex_timeout", subject=subject[:80])
        return None
    return match.group(0).upper() if match else None


def extract_rfq_id(subject: str, pattern: str = DEFAULT_CORRELATION_PATTERN) -> str | None:
    """Extract an RFQ identifier: the correlation key, else an "RFQ-123" style number."""
    key = extract_correlation_key(subject, pattern)
    if key:
        return key
    try:
        match = RFQ_NUMBER_PATTERN.search(subject or "", timeout=REGEX_TIMEOUT)
    except TimeoutError:
        return None
    return f"RFQ-{match.group(1)}" if match else None


def normalize_subject(subject: str) -> str:
    """Strip repeated reply/forward prefixes and lowercase.

    "RE: FW: RFQ for MAT-1001" -> "rfq for mat-1001"
    """
    normalized = (subject or "").strip()
    try:
        while True:
            stripped = REPLY_PREFIX_PATTERN.sub("", normalized, count=1, timeout=REGEX_TIMEOUT)
            if stripped == normalized:
                break
            normalized = stripped
    except TimeoutError:
        pass
    return normalized.strip().lower()
