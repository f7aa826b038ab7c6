"""Display-facing progress stages derived from a ProgressSnapshot.

Four stages, each derivable from the snapshot alone:

    Stage      Active when                                  Completed when
    sent       sent == 0                                    sent > 0
    scheduled  sent > 0 and scheduled < sent                scheduled == sent > 0
    received   scheduled == sent and received < sent        received == sent > 0
    filed      received > 0 and filed < received            filed == received > 0

Stages are monotonic: a later stage never shows completed while an earlier
one is not. Such a stage is shown as active if it has a count, otherwise as
not started.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rfq_tracker.engine.records import ProgressSnapshot


class Stage(StrEnum):
    SENT = "sent"
    SCHEDULED = "scheduled"
    RECEIVED = "received"
    FILED = "filed"


class StageStatus(StrEnum):
    NOT_STARTED = "not-started"
    ACTIVE = "active"
    COMPLETED = "completed"


STAGE_LABELS = {
    Stage.SENT: "RFQs sent",
    Stage.SCHEDULED: "Auto-replies scheduled",
    Stage.RECEIVED: "Replies received",
    Stage.FILED: "Replies filed",
}

STATUS_MESSAGES = {
    Stage.SENT: "Sending RFQs...",
    Stage.SCHEDULED: "Scheduling auto-replies for sent RFQs...",
    Stage.RECEIVED: "Waiting for supplier replies...",
    Stage.FILED: "Sorting received replies into your project folders...",
}

ALL_DONE_MESSAGE = "All RFQs sent and replies processed."


@dataclass(frozen=True, slots=True)
class StageView:
    """One stage as shown to the user."""

    stage: Stage
    status: StageStatus
    count: int
    total: int
    percent: int
    label: str

    def to_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage.value,
            "status": self.status.value,
            "count": self.count,
            "total": self.total,
            "percent": self.percent,
            "label": self.label,
        }


def percent(count: int, total: int) -> int:
    """count/total as a whole percentage clamped to [0, 100]; 0 when total is 0."""
    if total <= 0:
        return 0
    return max(0, min(100, round(count * 100 / total)))


def _raw_status(stage: Stage, s: ProgressSnapshot) -> StageStatus:
    sent, scheduled, received, filed = s.sent_count, s.scheduled_count, s.received_count, s.filed_count

    match stage:
        case Stage.SENT:
            return StageStatus.COMPLETED if sent > 0 else StageStatus.ACTIVE
        case Stage.SCHEDULED:
            if sent > 0 and scheduled == sent:
                return StageStatus.COMPLETED
            if sent > 0 and scheduled < sent:
                return StageStatus.ACTIVE
        case Stage.RECEIVED:
            if sent > 0 and received == sent:
                return StageStatus.COMPLETED
            if sent > 0 and scheduled == sent and received < sent:
                return StageStatus.ACTIVE
        case Stage.FILED:
            if received > 0 and filed == received:
                return StageStatus.COMPLETED
            if received > 0 and filed < received:
                return StageStatus.ACTIVE
    return StageStatus.NOT_STARTED


def _count_and_total(stage: Stage, s: ProgressSnapshot) -> tuple[int, int]:
    match stage:
        case Stage.SENT:
            return s.sent_count, max(s.expected_total or 0, s.sent_count)
        case Stage.SCHEDULED:
            return s.scheduled_count, s.sent_count
        case Stage.RECEIVED:
            return s.received_count, s.sent_count
        case Stage.FILED:
            return s.filed_count, s.received_count
    raise ValueError(f"Unknown stage: {stage}")


def derive_stages(snapshot: ProgressSnapshot) -> list[StageView]:
    """Derive the four stage views, enforcing stage monotonicity."""
    views: list[StageView] = []
    previous_completed = True

    for stage in Stage:
        status = _raw_status(stage, snapshot)
        count, total = _count_and_total(stage, snapshot)

        if status == StageStatus.COMPLETED and not previous_completed:
            status = StageStatus.ACTIVE if count > 0 else StageStatus.NOT_STARTED

        views.append(
            StageView(
                stage=stage,
                status=status,
                count=count,
                total=total,
                percent=percent(count, total),
                label=f"{STAGE_LABELS[stage]}: {count}/{total}",
            )
        )
        previous_completed = status == StageStatus.COMPLETED

    return views


def status_message(snapshot: ProgressSnapshot, stages: list[StageView] | None = None) -> str:
    """Human-readable status line for the first stage not yet completed."""
    for view in stages or derive_stages(snapshot):
        if view.status != StageStatus.COMPLETED:
            return STATUS_MESSAGES[view.stage]
    return ALL_DONE_MESSAGE
