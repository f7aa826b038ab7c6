"""Message operations for Microsoft Graph.

Raw-dict layer underneath the mail gateway: listing folders and
conversation threads, sending drafts, finding the sent copy of a draft, and
filing sent RFQs (move + category).

Usage:
    from rfq_tracker.graph.client import GraphClient
    from rfq_tracker.graph.messages import MessageManager

    messages = MessageManager(client)
    thread = messages.list_conversation(conversation_id)
    messages.send_draft(draft_id)
"""

import time
from typing import TYPE_CHECKING, Any

from rfq_tracker.core.errors import ConflictError
from rfq_tracker.core.logging import get_logger

if TYPE_CHECKING:
    from rfq_tracker.graph.client import GraphClient

logger = get_logger(__name__)

MAX_CONFLICT_RETRIES = 3

DEFAULT_MESSAGE_FIELDS = (
    "id,conversationId,subject,from,sender,toRecipients,receivedDateTime,"
    "sentDateTime,bodyPreview,parentFolderId,categories,isDraft,internetMessageId"
)

WELL_KNOWN_FOLDERS = {
    "inbox": "inbox",
    "sentitems": "sentitems",
    "sent items": "sentitems",
    "drafts": "drafts",
    "deleteditems": "deleteditems",
    "deleted items": "deleteditems",
    "junkemail": "junkemail",
    "junk email": "junkemail",
}


def escape_odata(value: str) -> str:
    """Escape a string literal for an OData $filter expression."""
    return value.replace("'", "''")


class MessageManager:
    """Message operations on the signed-in user's mailbox.

    Attributes:
        client: GraphClient instance for API calls
    """

    def __init__(self, client: "GraphClient"):
        self.client = client

    def _folder_endpoint(self, folder: str) -> str:
        """Map a well-known folder name to its Graph alias; anything else is an id."""
        return WELL_KNOWN_FOLDERS.get(folder.lower(), folder)

    def list_messages(
        self,
        folder: str = "Inbox",
        filter_query: str | None = None,
        order_by: str | None = "receivedDateTime desc",
        max_items: int | None = 100,
        select: str | None = None,
    ) -> list[dict[str, Any]]:
        """List messages in a mail folder.

        Args:
            folder: Well-known folder name ("Inbox", "Drafts", ...) or folder id
            filter_query: OData $filter expression
            order_by: OData $orderby (None to let Graph choose; combining
                $filter and $orderby on different properties can be rejected)
            max_items: Maximum items to return (None for all)
            select: Fields to select (defaults to DEFAULT_MESSAGE_FIELDS)

        Returns:
            Message dicts as returned by Graph
        """
        params: dict[str, Any] = {"$select": select or DEFAULT_MESSAGE_FIELDS}
        if order_by:
            params["$orderby"] = order_by
        if filter_query:
            params["$filter"] = filter_query

        messages = self.client.paginate(
            f"/me/mailFolders/{self._folder_endpoint(folder)}/messages",
            params=params,
            max_items=max_items,
        )
        logger.debug("messages_listed", folder=folder, count=len(messages))
        return messages

    def list_conversation(
        self,
        conversation_id: str,
        max_items: int | None = 50,
    ) -> list[dict[str, Any]]:
        """List every message in a conversation, across all folders.

        Args:
            conversation_id: Outlook conversation id
            max_items: Maximum messages to return

        Returns:
            Message dicts in the thread
        """
        params = {
            "$filter": f"conversationId eq '{escape_odata(conversation_id)}'",
            "$select": DEFAULT_MESSAGE_FIELDS,
        }
        messages = self.client.paginate("/me/messages", params=params, max_items=max_items)
        logger.debug(
            "conversation_listed",
            conversation_id=conversation_id[:20] + "...",
            count=len(messages),
        )
        return messages

    def list_drafts(self, subject_prefix: str, max_items: int | None = 200) -> list[dict[str, Any]]:
        """List drafts whose subject starts with a prefix (case-insensitive).

        The prefix is applied client-side; Graph's startswith() on subject is
        not supported in every mailbox.
        """
        drafts = self.list_messages("Drafts", order_by=None, max_items=max_items)
        prefix = subject_prefix.lower()
        return [d for d in drafts if (d.get("subject") or "").lower().startswith(prefix)]

    def get_message(self, message_id: str, select: str | None = None) -> dict[str, Any]:
        """Get a single message by id.

        Raises:
            GraphAPIError: If the message does not exist or the request fails
        """
        return self.client.get(
            f"/me/messages/{message_id}",
            params={"$select": select or DEFAULT_MESSAGE_FIELDS},
        )

    def send_draft(self, draft_id: str) -> None:
        """Send an existing draft. Graph answers 202 with no body.

        Raises:
            GraphAPIError: If the send fails
        """
        self.client.post(f"/me/messages/{draft_id}/send")
        logger.info("draft_sent", draft_id=draft_id[:20] + "...")

    def find_sent_message(
        self,
        subject: str,
        recipient: str | None = None,
        attempts: int = 5,
        initial_delay: float = 2.0,
    ) -> dict[str, Any] | None:
        """Locate the Sent Items copy of a just-sent draft.

        Sent copies appear a few seconds after the send call returns, so the
        lookup is retried with a doubling delay.

        Args:
            subject: Exact subject of the sent message
            recipient: Expected recipient address (matched case-insensitively)
            attempts: Maximum lookups
            initial_delay: Delay before the first lookup, doubled each attempt

        Returns:
            The newest matching message dict, or None if none appeared
        """
        filter_query = f"subject eq '{escape_odata(subject)}'"
        delay = initial_delay

        for attempt in range(attempts):
            if delay > 0:
                time.sleep(delay)
            candidates = self.list_messages(
                "SentItems", filter_query=filter_query, order_by=None, max_items=10
            )
            if recipient:
                wanted = recipient.lower()
                candidates = [
                    c
                    for c in candidates
                    if any(
                        (r.get("emailAddress", {}).get("address") or "").lower() == wanted
                        for r in c.get("toRecipients") or []
                    )
                ]
            if candidates:
                candidates.sort(key=lambda c: c.get("sentDateTime") or "", reverse=True)
                return candidates[0]

            logger.debug("sent_message_not_found_yet", subject=subject, attempt=attempt + 1)
            delay = delay * 2 if delay > 0 else 0

        logger.warning("sent_message_not_found", subject=subject, attempts=attempts)
        return None

    def move_message(self, message_id: str, destination_folder_id: str) -> dict[str, Any]:
        """Move a message to a folder.

        Idempotent: a message already in the destination is returned as-is.

        Raises:
            GraphAPIError: If the move fails
        """
        message = self.get_message(message_id, select="id,parentFolderId")
        if message.get("parentFolderId") == destination_folder_id:
            logger.debug("message_already_in_folder", message_id=message_id[:20] + "...")
            return message

        response = self.client.post(
            f"/me/messages/{message_id}/move",
            json={"destinationId": destination_folder_id},
        )
        logger.info(
            "message_moved",
            message_id=message_id[:20] + "...",
            destination_folder_id=destination_folder_id[:20] + "...",
        )
        return response

    def add_categories(self, message_id: str, new_categories: list[str]) -> dict[str, Any]:
        """Add categories to a message, keeping existing ones.

        Uses If-Match with the message ETag and retries on conflict up to
        MAX_CONFLICT_RETRIES times.

        Raises:
            ConflictError: If every attempt hit a concurrent modification
            GraphAPIError: If the update fails for other reasons
        """
        for attempt in range(MAX_CONFLICT_RETRIES):
            message = self.client.get(
                f"/me/messages/{message_id}",
                params={"$select": "categories"},
            )
            existing = message.get("categories") or []
            merged = existing + [c for c in new_categories if c not in existing]
            if merged == existing:
                return message

            try:
                return self.client.patch(
                    f"/me/messages/{message_id}",
                    json={"categories": merged},
                    if_match=message.get("@odata.etag"),
                )
            except ConflictError:
                logger.warning(
                    "category_update_conflict",
                    message_id=message_id[:20] + "...",
                    attempt=attempt + 1,
                    max_retries=MAX_CONFLICT_RETRIES,
                )

        raise ConflictError(
            f"Failed to update categories after {MAX_CONFLICT_RETRIES} attempts "
            "because another client kept modifying the message.",
            resource_id=message_id,
        )
