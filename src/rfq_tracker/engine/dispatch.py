"""Batch send workflow: send every RFQ draft and record it on the batch.

Per draft:
1. Write the in-flight marker (the last draft gets the completion banner
   marker instead, written before the send)
2. Send the draft and locate its Sent Items copy
3. Record the send, or the failure, through the BatchController
4. Create the material folder tree, move the sent copy into
   ``<MAT-code>/Sent RFQs`` and apply the "SENT RFQ" category
5. Optionally schedule a simulated supplier reply on the demo backend

A failing draft never aborts the batch. Filing and auto-reply problems are
logged and skipped; only a batch where nothing could be sent raises.

Usage:
    sender = BatchSender(gateway, controller, config, auto_reply=AutoReplyClient(config.auto_reply))
    result = await sender.send_batch(current_draft_id=draft_id)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import regex
import requests

from rfq_tracker.classifier.subject import REGEX_TIMEOUT, extract_correlation_key
from rfq_tracker.core.errors import AutoReplyError, BatchSendError, RateLimitExceeded, RfqTrackerError
from rfq_tracker.core.logging import get_logger
from rfq_tracker.core.rate_limiter import rate_limit
from rfq_tracker.engine.filing import ensure_material_folders

if TYPE_CHECKING:
    from rfq_tracker.config_schema import AppConfig, AutoReplyConfig
    from rfq_tracker.engine.controller import BatchController, BatchHandle
    from rfq_tracker.engine.records import SendResult
    from rfq_tracker.graph.gateway import MailGateway
    from rfq_tracker.graph.models import Message, SentMessage

logger = get_logger(__name__)

QUANTITY_PATTERN = regex.compile(r"(\d+)\s*pcs", regex.IGNORECASE)
DEFAULT_QUANTITY = 100


def extract_quantity(subject: str) -> int:
    """Quantity from an "RFQ for MAT-1001 - 500 pcs" style subject (DEFAULT_QUANTITY if absent)."""
    try:
        match = QUANTITY_PATTERN.search(subject or "", timeout=REGEX_TIMEOUT)
    except TimeoutError:
        return DEFAULT_QUANTITY
    return int(match.group(1)) if match else DEFAULT_QUANTITY


class AutoReplyClient:
    """HTTP client for the demo auto-reply backend.

    The backend sends a simulated supplier reply into the user's mailbox a
    few seconds after it is asked to.
    """

    def __init__(self, config: AutoReplyConfig, session: requests.Session | None = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    @rate_limit(bucket_name="auto_reply", rate=2.0, capacity=2)
    def schedule(
        self,
        to_email: str,
        subject: str,
        internet_message_id: str,
        material: str | None,
    ) -> dict[str, Any]:
        """Ask the backend to schedule a simulated reply to one sent RFQ.

        Raises:
            AutoReplyError: On a non-2xx response, a timeout or a network error
        """
        url = f"{self.config.api_base_url.rstrip('/')}/auto-replies/schedule"
        payload = {
            "to_email": to_email,
            "subject": subject,
            "internet_message_id": internet_message_id,
            "material": material or "Unknown Material",
            "reply_type": self.config.reply_type,
            "delay_seconds": self.config.delay_seconds,
            "quantity": extract_quantity(subject),
        }

        try:
            response = self.session.post(url, json=payload, timeout=self.config.timeout_seconds)
        except requests.exceptions.Timeout as e:
            raise AutoReplyError("Auto-reply request timed out") from e
        except requests.exceptions.RequestException as e:
            raise AutoReplyError(
                f"Network error: {e}. Is the backend server running at {self.config.api_base_url}?"
            ) from e

        if not response.ok:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = None
            raise AutoReplyError(
                detail or f"HTTP {response.status_code}: {response.reason}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        return response.json()


@dataclass
class SendBatchResult:
    """Result of sending one batch of RFQ drafts."""

    batch_id: str
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    scheduled: int = 0
    filed: int = 0
    material_codes: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    result: SendResult = "success"


class BatchSender:
    """Sends the RFQ drafts of a batch and records each outcome.

    Attributes:
        _gateway: Mail gateway
        _controller: Batch controller receiving sends and failures
        _config: Application configuration
        _auto_reply: Demo auto-reply client (None disables scheduling)
        _user_email: Mailbox address simulated replies are sent to
    """

    def __init__(
        self,
        gateway: MailGateway,
        controller: BatchController,
        config: AppConfig,
        auto_reply: AutoReplyClient | None = None,
        user_email: str | None = None,
    ):
        self._gateway = gateway
        self._controller = controller
        self._config = config
        self._auto_reply = auto_reply if config.auto_reply.enabled else None
        self._user_email = user_email or config.user_email

    async def send_batch(self, current_draft_id: str | None = None) -> SendBatchResult:
        """Send every draft whose subject starts with the configured prefix.

        Args:
            current_draft_id: Draft the user is looking at; it is sent last

        Returns:
            SendBatchResult with per-batch counts

        Raises:
            BatchSendError: If there are no drafts or every send failed
        """
        prefix = self._config.dispatch.draft_subject_prefix
        try:
            drafts = await self._gateway.list_drafts(prefix)
        except RfqTrackerError as e:
            raise BatchSendError(f"Could not list RFQ drafts: {e}") from e

        if not drafts:
            raise BatchSendError(f"No drafts found with a subject starting with '{prefix}'")

        drafts = _current_last(drafts, current_draft_id)
        pattern = self._config.classifier.correlation_pattern
        keys = list(dict.fromkeys(k for d in drafts if (k := extract_correlation_key(d.subject, pattern))))

        handle = await self._controller.start_batch(keys, expected_total=len(drafts))
        result = SendBatchResult(batch_id=handle.batch_id, attempted=len(drafts), material_codes=keys)
        initialized: set[str] = set()

        logger.info("batch_send_started", batch_id=handle.batch_id, drafts=len(drafts), materials=keys)

        for index, draft in enumerate(drafts):
            if index == len(drafts) - 1:
                # The final send is the one most likely to be cut off; leave the banner first
                await self._controller.finish_sending(
                    handle,
                    "success" if result.failed == 0 else "partial",
                    projected_sent=result.sent + 1,
                )
            else:
                await self._controller.mark_sending(handle)

            await self._send_one(handle, draft, result, initialized)

        if result.sent == 0:
            await self._controller.finish_sending(handle, "error")
            raise BatchSendError(
                f"All {result.attempted} RFQ sends failed",
                attempted=result.attempted,
                failed=result.failed,
            )

        result.result = "success" if result.failed == 0 else "partial"
        await self._controller.finish_sending(handle, result.result)

        logger.info(
            "batch_send_complete",
            batch_id=handle.batch_id,
            sent=result.sent,
            failed=result.failed,
            scheduled=result.scheduled,
            filed=result.filed,
        )
        return result

    async def _send_one(
        self,
        handle: BatchHandle,
        draft: Message,
        result: SendBatchResult,
        initialized: set[str],
    ) -> None:
        try:
            sent = await self._gateway.send_draft(draft.id)
        except RfqTrackerError as e:
            result.failed += 1
            result.errors.append(f"{draft.subject}: {e}")
            await self._controller.record_send_failure(handle, str(e))
            return

        await self._controller.record_send(
            handle,
            sent,
            local_id=draft.id,
            scheduled=self._auto_reply is None,
        )
        result.sent += 1

        key = extract_correlation_key(sent.subject or draft.subject, self._config.classifier.correlation_pattern)

        if self._config.dispatch.file_sent_messages and key and sent.located:
            if await self._file_sent(sent, key, initialized):
                result.filed += 1

        if self._auto_reply is None:
            result.scheduled += 1
        elif await self._schedule_auto_reply(sent, key):
            result.scheduled += 1
            await self._controller.record_scheduled(handle)

    async def _file_sent(self, sent: SentMessage, material: str, initialized: set[str]) -> bool:
        """Move a sent RFQ into its material's Sent RFQs folder and label it."""
        folders = self._config.folders
        try:
            await ensure_material_folders(self._gateway, folders, material, initialized)
            folder_id = await self._gateway.ensure_folder(f"{material}/{folders.sent_rfqs}")
            moved_id = await self._gateway.move_message(sent.id, folder_id)
            await self._gateway.apply_label(moved_id, folders.sent_label)
        except RfqTrackerError as e:
            logger.warning(
                "sent_rfq_filing_failed",
                message_id=sent.id[:20] + "...",
                material=material,
                error=str(e),
            )
            return False

        logger.info("sent_rfq_filed", material=material, folder=f"{material}/{folders.sent_rfqs}")
        return True

    async def _schedule_auto_reply(self, sent: SentMessage, material: str | None) -> bool:
        if not sent.internet_message_id:
            logger.warning("auto_reply_skipped", reason="no_internet_message_id", subject=sent.subject)
            return False
        if not self._user_email:
            logger.warning("auto_reply_skipped", reason="no_user_email", subject=sent.subject)
            return False

        try:
            await asyncio.to_thread(
                self._auto_reply.schedule,
                self._user_email,
                sent.subject,
                sent.internet_message_id,
                material,
            )
        except (AutoReplyError, RateLimitExceeded) as e:
            logger.warning("auto_reply_failed", subject=sent.subject, error=str(e))
            return False

        logger.info("auto_reply_scheduled", material=material, delay_seconds=self._config.auto_reply.delay_seconds)
        return True


def _current_last(drafts: list[Message], current_draft_id: str | None) -> list[Message]:
    if not current_draft_id:
        return list(drafts)
    others = [d for d in drafts if d.id != current_draft_id]
    current = [d for d in drafts if d.id == current_draft_id]
    return others + current
