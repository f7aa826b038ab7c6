"""Reply/bounce classification and subject helpers.

Usage:
    from rfq_tracker.classifier import ReplyClassifier

    verdict = ReplyClassifier(config.classifier).classify(message, baseline)
"""

from rfq_tracker.classifier.rules import (
    ACCEPTED,
    BEFORE_CUTOFF,
    ClassifierRule,
    ReplyClassifier,
    Verdict,
    build_rules,
)
from rfq_tracker.classifier.subject import (
    contains_topic_marker,
    extract_correlation_key,
    extract_rfq_id,
    normalize_subject,
)

__all__ = [
    "ACCEPTED",
    "BEFORE_CUTOFF",
    "ClassifierRule",
    "ReplyClassifier",
    "Verdict",
    "build_rules",
    "contains_topic_marker",
    "extract_correlation_key",
    "extract_rfq_id",
    "normalize_subject",
]
