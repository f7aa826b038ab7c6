"""Batch engine: ledger, baseline, reconciliation poller, progress and recovery.

Usage:
    from rfq_tracker.engine import BatchController

    controller = BatchController(gateway, BatchRepository(store), config)
    await controller.recover()
"""

from rfq_tracker.engine.controller import BatchController, BatchHandle
from rfq_tracker.engine.dispatch import AutoReplyClient, BatchSender, SendBatchResult
from rfq_tracker.engine.poller import PollerHandle, PollerState, ReconciliationPoller
from rfq_tracker.engine.progress import Stage, StageStatus, StageView, derive_stages, status_message
from rfq_tracker.engine.records import (
    Baseline,
    CountedReplySet,
    DispatchBatch,
    DispatchRecord,
    InFlightMarker,
    ProgressSnapshot,
)
from rfq_tracker.engine.recovery import RecoveryKind, RecoveryOutcome, RecoveryRoutine
from rfq_tracker.engine.repository import BatchRepository

__all__ = [
    "AutoReplyClient",
    "Baseline",
    "BatchController",
    "BatchHandle",
    "BatchRepository",
    "BatchSender",
    "CountedReplySet",
    "DispatchBatch",
    "DispatchRecord",
    "InFlightMarker",
    "PollerHandle",
    "PollerState",
    "ProgressSnapshot",
    "ReconciliationPoller",
    "RecoveryKind",
    "RecoveryOutcome",
    "RecoveryRoutine",
    "SendBatchResult",
    "Stage",
    "StageStatus",
    "StageView",
    "derive_stages",
    "status_message",
]
