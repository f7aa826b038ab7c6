"""Reply/bounce classifier: an ordered, declarative rule table.

Each rule is a named predicate that, when it fires, rejects the candidate.
Rules are evaluated in order and the first one that fires decides the
verdict:

1. topic_marker     subject lacks the batch topic marker ("rfq")
2. failure_sender   sender is postmaster / mailer-daemon, or noreply + "failed" subject
   failure_subject  subject contains a delivery-failure phrase
3. bounce_body      body matches a delivery-failure signature
4. min_body_length  stripped body shorter than the substantive-reply threshold
5. (accept)

Rules 2 and 3 are bounce rules: if any of them fires, the verdict carries
``is_bounce=True`` even when rule 1 rejected first, so a failure notice is
always recognised as one. Matching is case-insensitive substring search;
there is no regex in this module.

``classify`` is pure: same candidate and baseline in, same verdict out.

Usage:
    from rfq_tracker.classifier.rules import ReplyClassifier

    classifier = ReplyClassifier(config.classifier)
    verdict = classifier.classify(message, baseline)
    if verdict.is_reply:
        ...
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from rfq_tracker.classifier.subject import contains_topic_marker
from rfq_tracker.config_schema import ClassifierConfig

if TYPE_CHECKING:
    from rfq_tracker.engine.records import Baseline
    from rfq_tracker.graph.models import Message

ACCEPTED = "accepted"
BEFORE_CUTOFF = "before_cutoff"


@dataclass(frozen=True, slots=True)
class Verdict:
    """Classifier outcome for one candidate.

    Attributes:
        is_reply: Genuine supplier reply to count
        is_bounce: Delivery-failure notice
        rule: Name of the rule that decided (ACCEPTED when none fired)
    """

    is_reply: bool
    is_bounce: bool
    rule: str


@dataclass(frozen=True, slots=True)
class ClassifierRule:
    """One entry of the rule table.

    Attributes:
        name: Stable rule name, reported on the verdict
        fires: Predicate; True means the candidate is rejected by this rule
        bounce: Whether firing identifies a delivery-failure notice
    """

    name: str
    fires: Callable[[Message], bool]
    bounce: bool = False


def _contains_any(text: str, phrases: list[str]) -> bool:
    lowered = text.lower()
    return any(phrase.lower() in lowered for phrase in phrases if phrase)


def build_rules(config: ClassifierConfig) -> tuple[ClassifierRule, ...]:
    """Build the ordered rule table from classifier configuration."""

    def lacks_topic_marker(m: Message) -> bool:
        return not contains_topic_marker(m.subject, config.topic_marker)

    def from_failure_sender(m: Message) -> bool:
        sender = f"{m.sender_address} {m.sender_name}"
        if _contains_any(sender, config.failure_senders):
            return True
        return config.noreply_sender.lower() in sender.lower() and "failed" in m.subject.lower()

    def has_failure_subject(m: Message) -> bool:
        return _contains_any(m.subject, config.failure_subject_phrases)

    def has_bounce_body(m: Message) -> bool:
        return _contains_any(m.body_excerpt, config.bounce_body_signatures)

    def too_short(m: Message) -> bool:
        return len(m.body_excerpt.strip()) < config.min_body_length

    return (
        ClassifierRule("topic_marker", lacks_topic_marker),
        ClassifierRule("failure_sender", from_failure_sender, bounce=True),
        ClassifierRule("failure_subject", has_failure_subject, bounce=True),
        ClassifierRule("bounce_body", has_bounce_body, bounce=True),
        ClassifierRule("min_body_length", too_short),
    )


class ReplyClassifier:
    """Applies a rule table to reply candidates.

    Args:
        config: Classifier configuration (defaults used when None)
        rules: Explicit rule table, overriding the one built from config
    """

    def __init__(
        self,
        config: ClassifierConfig | None = None,
        rules: tuple[ClassifierRule, ...] | None = None,
    ):
        self.config = config or ClassifierConfig()
        self.rules = rules if rules is not None else build_rules(self.config)

    def classify(self, candidate: Message, baseline: Baseline | None = None) -> Verdict:
        """Classify one candidate.

        When a baseline is given, a candidate that passes every rule is still
        rejected (rule BEFORE_CUTOFF) if it was received at or before the
        cutoff. Candidates without a received time are not gated.
        """
        is_bounce = any(rule.bounce and rule.fires(candidate) for rule in self.rules)

        for rule in self.rules:
            if rule.fires(candidate):
                return Verdict(is_reply=False, is_bounce=is_bounce, rule=rule.name)

        if (
            baseline is not None
            and candidate.received_at is not None
            and candidate.received_at <= baseline.cutoff
        ):
            return Verdict(is_reply=False, is_bounce=False, rule=BEFORE_CUTOFF)

        return Verdict(is_reply=True, is_bounce=False, rule=ACCEPTED)

