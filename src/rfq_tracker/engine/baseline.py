"""Baseline establisher: the "before" state pre-existing mail is measured against.

The cutoff is the earliest send time of the batch minus a safety margin, so a
supplier who answers within seconds of the first send is still counted.
When no record carries a send time (Sent Items copy never located), the
cutoff degrades to ``now - margin`` and a warning is logged.

Per-folder item counts are a best-effort side channel. Any failure while
collecting them leaves the map partial or empty; it never fails the call.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from rfq_tracker.core.errors import RfqTrackerError
from rfq_tracker.core.logging import get_logger
from rfq_tracker.engine.destinations import resolve_watched_folders
from rfq_tracker.engine.records import Baseline, DispatchRecord, utc_now

if TYPE_CHECKING:
    from rfq_tracker.config_schema import AppConfig
    from rfq_tracker.engine.repository import BatchRepository
    from rfq_tracker.graph.gateway import MailGateway

logger = get_logger(__name__)


class BaselineEstablisher:
    """Computes and persists the baseline for a batch.

    Attributes:
        _gateway: Mail gateway used for the folder counts
        _repository: Repository the baseline is persisted through
        _config: Application configuration
        _now: Wall clock, injectable for tests
    """

    def __init__(
        self,
        gateway: MailGateway,
        repository: BatchRepository,
        config: AppConfig,
        now: Callable[[], datetime] = utc_now,
    ):
        self._gateway = gateway
        self._repository = repository
        self._config = config
        self._now = now

    @property
    def margin(self) -> timedelta:
        return timedelta(seconds=self._config.monitor.baseline_margin_seconds)

    async def establish(
        self,
        correlation_keys: Iterable[str],
        records: Iterable[DispatchRecord],
        *,
        batch_id: str = "",
    ) -> Baseline:
        """Compute, persist and return the baseline.

        Calling it again for the same batch overwrites the stored baseline.

        Args:
            correlation_keys: Material codes, used to pick destination folders
            records: Dispatch records of the batch
            batch_id: Batch the baseline belongs to

        Returns:
            The new Baseline
        """
        keys = list(correlation_keys)
        sent_times = [r.sent_at for r in records if r.sent_at is not None]
        now = self._now()

        if sent_times:
            cutoff = min(sent_times) - self.margin
            degraded = False
        else:
            cutoff = now - self.margin
            degraded = True
            logger.warning(
                "baseline_degraded",
                batch_id=batch_id,
                reason="no_sent_timestamps",
                cutoff=cutoff.isoformat(),
            )

        baseline = Baseline(
            batch_id=batch_id,
            cutoff=cutoff,
            per_folder_count=await self._folder_counts(keys),
            degraded=degraded,
            established_at=now,
        )

        await self._repository.save_baseline(baseline)
        logger.info(
            "baseline_established",
            batch_id=batch_id,
            cutoff=cutoff.isoformat(),
            degraded=degraded,
            folders_counted=len(baseline.per_folder_count),
        )
        return baseline

    async def _folder_counts(self, correlation_keys: list[str]) -> dict[str, int]:
        """Item counts for the inbox and destination folders. Best-effort."""
        try:
            folders = await self._gateway.list_folders()
        except RfqTrackerError as e:
            logger.warning("baseline_folder_counts_failed", error=str(e))
            return {}

        watched = resolve_watched_folders(folders, self._config.folders, correlation_keys)
        by_id = {f.id: f for f in folders}
        return {fid: by_id[fid].total_item_count for fid in watched.sweep_ids if fid in by_id}
