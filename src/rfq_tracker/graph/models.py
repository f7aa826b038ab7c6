"""Typed records at the mail gateway boundary.

Graph returns deeply nested JSON in which almost every field is optional.
These dataclasses pin down the few fields the tracker uses, with explicit
defaults for anything Graph leaves out, so engine code never digs through
raw dicts.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any


def parse_graph_datetime(value: str | None) -> datetime | None:
    """Parse a Graph ISO 8601 timestamp ("2025-01-15T09:30:00Z") into an aware datetime.

    Returns None for missing or malformed values.
    """
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _email_address(data: dict[str, Any] | None) -> tuple[str, str]:
    """Extract (address, name) from a Graph recipient object."""
    email = (data or {}).get("emailAddress") or {}
    return (email.get("address") or "", email.get("name") or "")


@dataclass(frozen=True, slots=True)
class Message:
    """A mailbox message as seen by the reconciliation engine.

    Also serves as the reply candidate handed to the classifier. Candidates
    are transient: they are re-fetched on every poll and never persisted.

    Attributes:
        id: Graph message id (immutable id, stable across folder moves)
        conversation_id: Outlook conversation id, if Graph reported one
        subject: Subject line ("" when absent)
        sender_address: Sender email address ("" when absent)
        sender_name: Sender display name ("" when absent)
        body_excerpt: Plain-text body preview ("" when absent)
        received_at: When the message arrived, if known
        sent_at: When the message was sent, if known
        folder_id: Id of the folder currently holding the message
        recipients: To-recipient addresses
        categories: Outlook categories on the message
        is_draft: Whether the message is an unsent draft
        internet_message_id: RFC 5322 Message-ID header, if known
    """

    id: str
    conversation_id: str | None = None
    subject: str = ""
    sender_address: str = ""
    sender_name: str = ""
    body_excerpt: str = ""
    received_at: datetime | None = None
    sent_at: datetime | None = None
    folder_id: str | None = None
    recipients: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    is_draft: bool = False
    internet_message_id: str | None = None

    @classmethod
    def from_graph(cls, data: dict[str, Any]) -> "Message":
        """Build a Message from a Graph message resource."""
        address, name = _email_address(data.get("from") or data.get("sender"))
        recipients = tuple(
            addr for addr, _ in (_email_address(r) for r in data.get("toRecipients") or []) if addr
        )
        return cls(
            id=data["id"],
            conversation_id=data.get("conversationId"),
            subject=data.get("subject") or "",
            sender_address=address,
            sender_name=name,
            body_excerpt=data.get("bodyPreview") or "",
            received_at=parse_graph_datetime(data.get("receivedDateTime")),
            sent_at=parse_graph_datetime(data.get("sentDateTime")),
            folder_id=data.get("parentFolderId"),
            recipients=recipients,
            categories=tuple(data.get("categories") or ()),
            is_draft=bool(data.get("isDraft", False)),
            internet_message_id=data.get("internetMessageId"),
        )


@dataclass(frozen=True, slots=True)
class Folder:
    """A mail folder in the flattened folder tree.

    Attributes:
        id: Graph folder id
        display_name: Folder name
        parent_folder_id: Parent id, or None for top-level folders
        path: Slash-joined path from the mailbox root, e.g. "MAT-1001/Quotes"
        total_item_count: Messages in the folder when it was listed
        well_known_name: "inbox", "sentitems" or "drafts" for those folders
    """

    id: str
    display_name: str
    parent_folder_id: str | None = None
    path: str = ""
    total_item_count: int = 0
    well_known_name: str | None = None

    @classmethod
    def from_graph(cls, data: dict[str, Any], well_known_name: str | None = None) -> "Folder":
        return cls(
            id=data["id"],
            display_name=data.get("displayName") or "",
            parent_folder_id=data.get("parentFolderId"),
            path=data.get("path") or data.get("displayName") or "",
            total_item_count=int(data.get("totalItemCount") or 0),
            well_known_name=well_known_name,
        )


@dataclass(frozen=True, slots=True)
class SentMessage:
    """The confirmed result of sending a draft.

    Attributes:
        id: Id of the Sent Items copy (the draft id when the copy was not found)
        conversation_id: Conversation the sent message belongs to
        sent_at: Send time reported by Graph, or None when unknown
        subject: Subject as sent
        recipient: Primary recipient address
        internet_message_id: RFC 5322 Message-ID, needed to thread auto-replies
        located: Whether the Sent Items copy was found
    """

    id: str
    conversation_id: str | None = None
    sent_at: datetime | None = None
    subject: str = ""
    recipient: str | None = None
    internet_message_id: str | None = None
    located: bool = True
