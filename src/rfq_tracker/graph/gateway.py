"""Mail Query Gateway: the async mailbox interface the engine depends on.

The engine only ever talks to ``MailGateway``. ``GraphMailGateway`` is the
Microsoft Graph implementation; it runs the synchronous, requests-based
managers on worker threads via ``asyncio.to_thread`` so that a slow Graph
call suspends one coroutine instead of blocking the event loop.

Every call is fallible. Retries for transient HTTP failures happen inside
GraphClient; whatever still fails propagates as GraphAPIError and the
caller decides whether to skip it (the poller always does).
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol

from rfq_tracker.core.logging import get_logger
from rfq_tracker.graph.messages import escape_odata
from rfq_tracker.graph.models import Folder, Message, SentMessage, parse_graph_datetime

if TYPE_CHECKING:
    from rfq_tracker.graph.folders import FolderManager
    from rfq_tracker.graph.messages import MessageManager

logger = get_logger(__name__)

# Well-known folders flagged on Folder.well_known_name
SPECIAL_FOLDERS = ("inbox", "sentitems", "drafts")


class MailGateway(Protocol):
    """Async read/write access to a remote mailbox."""

    async def list_by_conversation(self, conversation_id: str) -> list[Message]: ...

    async def list_by_folder(
        self, folder_id: str, subject_contains: str | None = None
    ) -> list[Message]: ...

    async def list_folders(self) -> list[Folder]: ...

    async def move_message(self, message_id: str, folder_id: str) -> str: ...

    async def apply_label(self, message_id: str, label: str) -> None: ...

    async def send_draft(self, draft_id: str) -> SentMessage: ...

    async def list_drafts(self, subject_prefix: str) -> list[Message]: ...

    async def ensure_folder(self, path: str) -> str: ...


class GraphMailGateway:
    """MailGateway backed by Microsoft Graph.

    Attributes:
        messages: MessageManager for message operations
        folders: FolderManager for the folder tree
    """

    def __init__(
        self,
        messages: MessageManager,
        folders: FolderManager,
        conversation_limit: int = 50,
        folder_limit: int = 100,
        sent_lookup_attempts: int = 5,
        sent_lookup_delay: float = 2.0,
    ):
        self.messages = messages
        self.folders = folders
        self.conversation_limit = conversation_limit
        self.folder_limit = folder_limit
        self.sent_lookup_attempts = sent_lookup_attempts
        self.sent_lookup_delay = sent_lookup_delay

    async def list_by_conversation(self, conversation_id: str) -> list[Message]:
        raw = await asyncio.to_thread(
            self.messages.list_conversation, conversation_id, self.conversation_limit
        )
        return [Message.from_graph(m) for m in raw]

    async def list_by_folder(
        self, folder_id: str, subject_contains: str | None = None
    ) -> list[Message]:
        """List recent messages in a folder, optionally filtered on a subject substring."""
        filter_query = None
        order_by: str | None = "receivedDateTime desc"
        if subject_contains:
            filter_query = f"contains(subject,'{escape_odata(subject_contains)}')"
            # Graph rejects $orderby on a property other than the one filtered
            order_by = None
        raw = await asyncio.to_thread(
            self.messages.list_messages,
            folder_id,
            filter_query,
            order_by,
            self.folder_limit,
        )
        return [Message.from_graph(m) for m in raw]

    async def list_folders(self) -> list[Folder]:
        raw = await asyncio.to_thread(self.folders.list_folders)
        special: dict[str, str] = {}
        for name in SPECIAL_FOLDERS:
            folder_id = await asyncio.to_thread(self.folders.get_special_folder_id, name)
            if folder_id:
                special[folder_id] = name
        return [Folder.from_graph(f, well_known_name=special.get(f["id"])) for f in raw]

    async def move_message(self, message_id: str, folder_id: str) -> str:
        """Move a message and return its id after the move."""
        moved = await asyncio.to_thread(self.messages.move_message, message_id, folder_id)
        return moved.get("id") or message_id

    async def apply_label(self, message_id: str, label: str) -> None:
        await asyncio.to_thread(self.messages.add_categories, message_id, [label])

    async def list_drafts(self, subject_prefix: str) -> list[Message]:
        raw = await asyncio.to_thread(self.messages.list_drafts, subject_prefix)
        return [Message.from_graph(m) for m in raw]

    async def ensure_folder(self, path: str) -> str:
        return await asyncio.to_thread(self.folders.create_folder, path)

    async def send_draft(self, draft_id: str) -> SentMessage:
        """Send a draft and locate its Sent Items copy.

        When the copy cannot be found the result falls back to the draft's
        own id and conversation, with ``sent_at=None`` and ``located=False``;
        the baseline then degrades to the current time.
        """
        draft = Message.from_graph(await asyncio.to_thread(self.messages.get_message, draft_id))
        recipient = draft.recipients[0] if draft.recipients else None

        await asyncio.to_thread(self.messages.send_draft, draft_id)

        sent = await asyncio.to_thread(
            self.messages.find_sent_message,
            draft.subject,
            recipient,
            self.sent_lookup_attempts,
            self.sent_lookup_delay,
        )
        if sent is None:
            logger.warning("sent_copy_not_located", draft_id=draft_id[:20] + "...", subject=draft.subject)
            return SentMessage(
                id=draft_id,
                conversation_id=draft.conversation_id,
                sent_at=None,
                subject=draft.subject,
                recipient=recipient,
                located=False,
            )

        return SentMessage(
            id=sent["id"],
            conversation_id=sent.get("conversationId") or draft.conversation_id,
            sent_at=parse_graph_datetime(sent.get("sentDateTime")),
            subject=sent.get("subject") or draft.subject,
            recipient=recipient,
            internet_message_id=sent.get("internetMessageId"),
        )
