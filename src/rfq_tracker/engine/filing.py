"""Material folder filing shared by the batch sender and the poller.

Sent RFQs go to ``<material>/Sent RFQs``. When ``folders.file_replies`` is
on, counted supplier replies still sitting outside a destination folder
are moved to ``<material>/Quotes`` or ``<material>/Clarification Requests``
by their reply kind and categorised. Each message is filed on its own; a
failure is logged and leaves the message where it is for the next tick.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rfq_tracker.classifier.subject import extract_correlation_key
from rfq_tracker.core.errors import RfqTrackerError
from rfq_tracker.core.logging import get_logger

if TYPE_CHECKING:
    from rfq_tracker.config_schema import AppConfig, FoldersConfig, ReplyKind
    from rfq_tracker.graph.gateway import MailGateway
    from rfq_tracker.graph.models import Message

logger = get_logger(__name__)


async def ensure_material_folders(
    gateway: MailGateway, folders: FoldersConfig, material: str, initialized: set[str]
) -> None:
    """Create the standard subfolders of a material folder once per material."""
    if material in initialized:
        return
    for subfolder in folders.material_subfolders:
        await gateway.ensure_folder(f"{material}/{subfolder}")
    initialized.add(material)


class ReplyFiler:
    """Moves counted replies into their material's destination folder.

    Attributes:
        _gateway: Mail gateway
        _config: Application configuration
        _initialized: Materials whose subfolders already exist
    """

    def __init__(self, gateway: MailGateway, config: AppConfig):
        self._gateway = gateway
        self._config = config
        self._initialized: set[str] = set()

    def destination(self, message: Message, kind: ReplyKind) -> tuple[str, str] | None:
        """Return (folder path, category) for a reply, or None when it cannot be routed."""
        if kind == "unknown":
            return None
        material = extract_correlation_key(message.subject, self._config.classifier.correlation_pattern)
        if material is None:
            return None
        folders = self._config.folders
        if kind == "quote":
            return f"{material}/{folders.quote_folder}", folders.quote_label
        return f"{material}/{folders.clarification_folder}", folders.clarification_label

    async def file(self, message: Message, kind: ReplyKind) -> bool:
        """File one reply. Returns True once it has been moved."""
        route = self.destination(message, kind)
        if route is None:
            logger.debug("reply_filing_skipped", message_id=message.id[:20] + "...", kind=kind)
            return False

        path, label = route
        material = path.split("/", 1)[0]
        try:
            await ensure_material_folders(self._gateway, self._config.folders, material, self._initialized)
            folder_id = await self._gateway.ensure_folder(path)
            moved_id = await self._gateway.move_message(message.id, folder_id)
            await self._gateway.apply_label(moved_id, label)
        except RfqTrackerError as e:
            logger.warning(
                "reply_filing_failed",
                message_id=message.id[:20] + "...",
                material=material,
                error=str(e),
            )
            return False

        logger.info("reply_filed", material=material, folder=path, label=label)
        return True
