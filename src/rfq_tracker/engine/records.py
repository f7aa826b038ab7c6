"""Batch records: what was sent, the baseline, counted replies and progress.

Records that are persisted carry ``to_dict()`` / ``from_dict()`` so the
repository can store them as JSON. Timestamps are stored as ISO 8601 strings
and are always timezone-aware UTC in memory.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal

MarkerPhase = Literal["sending", "idle"]
SendResult = Literal["success", "partial", "error"]


def utc_now() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _unique(values: Iterable[str | None]) -> tuple[str, ...]:
    """Drop Nones and duplicates, keeping first-seen order."""
    seen: dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return tuple(seen)


@dataclass(frozen=True, slots=True)
class DispatchRecord:
    """One confirmed send. Immutable once created.

    Attributes:
        local_id: Caller-side id (the draft id the send started from)
        provider_message_id: Id of the sent message in the mailbox
        conversation_id: Conversation to watch for replies
        correlation_key: Material code the RFQ is about, e.g. "MAT-1001"
        sent_at: Send time, when the mailbox reported one
        subject: Subject as sent
        recipient: Supplier address
    """

    local_id: str
    provider_message_id: str
    conversation_id: str | None
    correlation_key: str | None
    sent_at: datetime | None
    subject: str
    recipient: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_id": self.local_id,
            "provider_message_id": self.provider_message_id,
            "conversation_id": self.conversation_id,
            "correlation_key": self.correlation_key,
            "sent_at": _iso(self.sent_at),
            "subject": self.subject,
            "recipient": self.recipient,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DispatchRecord:
        return cls(
            local_id=data["local_id"],
            provider_message_id=data["provider_message_id"],
            conversation_id=data.get("conversation_id"),
            correlation_key=data.get("correlation_key"),
            sent_at=_parse_iso(data.get("sent_at")),
            subject=data.get("subject", ""),
            recipient=data.get("recipient"),
        )


@dataclass(frozen=True, slots=True)
class DispatchBatch:
    """The ordered records of one batch. ``sent_count == len(records)`` always.

    Attributes:
        batch_id: Unique batch id
        started_at: When the batch was started
        correlation_keys: Material codes the caller started the batch with
        records: Confirmed sends, in send order
        expected_total: Number of drafts the batch intends to send, if known
        failed_count: Sends that failed (not recorded as records)
        updated_at: Last mutation time
    """

    batch_id: str
    started_at: datetime
    correlation_keys: tuple[str, ...] = ()
    records: tuple[DispatchRecord, ...] = ()
    expected_total: int | None = None
    failed_count: int = 0
    updated_at: datetime | None = None

    @property
    def sent_count(self) -> int:
        return len(self.records)

    @property
    def conversation_ids(self) -> tuple[str, ...]:
        return _unique(r.conversation_id for r in self.records)

    @property
    def provider_message_ids(self) -> frozenset[str]:
        return frozenset(r.provider_message_id for r in self.records)

    @property
    def material_codes(self) -> tuple[str, ...]:
        """Correlation keys from the batch start plus any seen on records."""
        return _unique([*self.correlation_keys, *(r.correlation_key for r in self.records)])

    def with_record(self, record: DispatchRecord, now: datetime | None = None) -> DispatchBatch:
        return replace(self, records=(*self.records, record), updated_at=now or utc_now())

    def with_failure(self, now: datetime | None = None) -> DispatchBatch:
        return replace(self, failed_count=self.failed_count + 1, updated_at=now or utc_now())

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "started_at": _iso(self.started_at),
            "correlation_keys": list(self.correlation_keys),
            "records": [r.to_dict() for r in self.records],
            "expected_total": self.expected_total,
            "failed_count": self.failed_count,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DispatchBatch:
        return cls(
            batch_id=data["batch_id"],
            started_at=_parse_iso(data["started_at"]) or utc_now(),
            correlation_keys=tuple(data.get("correlation_keys") or ()),
            records=tuple(DispatchRecord.from_dict(r) for r in data.get("records") or ()),
            expected_total=data.get("expected_total"),
            failed_count=int(data.get("failed_count") or 0),
            updated_at=_parse_iso(data.get("updated_at")),
        )


@dataclass(frozen=True, slots=True)
class Baseline:
    """The "before" state of a batch's mailbox. Read-only once established.

    Attributes:
        batch_id: Batch the baseline belongs to
        cutoff: Mail received at or before this instant is ignored
        per_folder_count: Best-effort item counts per watched folder id
        degraded: True when no send time was known and "now" was used
        established_at: When the baseline was computed
    """

    batch_id: str
    cutoff: datetime
    per_folder_count: Mapping[str, int] = field(default_factory=dict)
    degraded: bool = False
    established_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "cutoff": _iso(self.cutoff),
            "per_folder_count": dict(self.per_folder_count),
            "degraded": self.degraded,
            "established_at": _iso(self.established_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Baseline:
        return cls(
            batch_id=data["batch_id"],
            cutoff=_parse_iso(data["cutoff"]) or utc_now(),
            per_folder_count={k: int(v) for k, v in (data.get("per_folder_count") or {}).items()},
            degraded=bool(data.get("degraded", False)),
            established_at=_parse_iso(data.get("established_at")),
        )


class CountedReplySet:
    """Grow-only set of provider message ids attributed to a batch.

    There is deliberately no way to remove an id.
    """

    __slots__ = ("_ids",)

    def __init__(self, ids: Iterable[str] = ()):
        self._ids: set[str] = set(ids)

    def add(self, message_id: str) -> bool:
        """Add an id. Returns True if it was new."""
        if message_id in self._ids:
            return False
        self._ids.add(message_id)
        return True

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def to_list(self) -> list[str]:
        return sorted(self._ids)


# Snapshot counters that may never decrease
_MONOTONIC_COUNTS = (
    "sent_count",
    "scheduled_count",
    "received_count",
    "filed_count",
    "failed_count",
    "bounce_count",
    "quote_count",
    "clarification_count",
)


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """Aggregate batch progress, as shown to observers.

    Observers receive frozen instances; every update produces a new one via
    ``advance()``, which never lets a counter go down and keeps
    ``filed_count <= received_count <= sent_count``.
    """

    batch_id: str | None = None
    sent_count: int = 0
    scheduled_count: int = 0
    received_count: int = 0
    filed_count: int = 0
    failed_count: int = 0
    bounce_count: int = 0
    quote_count: int = 0
    clarification_count: int = 0
    expected_total: int | None = None
    material_codes: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=utc_now)

    def advance(self, now: datetime | None = None, **changes: Any) -> ProgressSnapshot:
        """Return a new snapshot with the given fields updated.

        Counters take the max of old and new; received/filed/scheduled are
        then clamped so no stage can exceed the one it depends on.
        """
        for name in _MONOTONIC_COUNTS:
            if name in changes:
                changes[name] = max(getattr(self, name), int(changes[name]))
        updated = replace(self, timestamp=now or utc_now(), **changes)

        sent = updated.sent_count
        received = min(updated.received_count, sent)
        return replace(
            updated,
            scheduled_count=min(updated.scheduled_count, sent),
            received_count=received,
            filed_count=min(updated.filed_count, received),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "sent_count": self.sent_count,
            "scheduled_count": self.scheduled_count,
            "received_count": self.received_count,
            "filed_count": self.filed_count,
            "failed_count": self.failed_count,
            "bounce_count": self.bounce_count,
            "quote_count": self.quote_count,
            "clarification_count": self.clarification_count,
            "expected_total": self.expected_total,
            "material_codes": list(self.material_codes),
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProgressSnapshot:
        return cls(
            batch_id=data.get("batch_id"),
            expected_total=data.get("expected_total"),
            material_codes=tuple(data.get("material_codes") or ()),
            timestamp=_parse_iso(data.get("timestamp")) or utc_now(),
            **{name: int(data.get(name) or 0) for name in _MONOTONIC_COUNTS},
        )


@dataclass(frozen=True, slots=True)
class InFlightMarker:
    """Crash-recovery marker written around risky operations.

    ``phase == "sending"`` means the process may have died mid-batch;
    ``phase == "idle"`` with ``show_banner`` means the batch finished and the
    completion banner has not been shown yet.
    """

    phase: MarkerPhase
    batch_id: str
    sent_count: int = 0
    total: int = 0
    scheduled_count: int = 0
    failed_count: int = 0
    material_codes: tuple[str, ...] = ()
    last_result: SendResult | None = None
    show_banner: bool = False
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "batch_id": self.batch_id,
            "sent_count": self.sent_count,
            "total": self.total,
            "scheduled_count": self.scheduled_count,
            "failed_count": self.failed_count,
            "material_codes": list(self.material_codes),
            "last_result": self.last_result,
            "show_banner": self.show_banner,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> InFlightMarker:
        return cls(
            phase=data["phase"],
            batch_id=data["batch_id"],
            sent_count=int(data.get("sent_count") or 0),
            total=int(data.get("total") or 0),
            scheduled_count=int(data.get("scheduled_count") or 0),
            failed_count=int(data.get("failed_count") or 0),
            material_codes=tuple(data.get("material_codes") or ()),
            last_result=data.get("last_result"),
            show_banner=bool(data.get("show_banner", False)),
            updated_at=_parse_iso(data.get("updated_at")) or utc_now(),
        )
