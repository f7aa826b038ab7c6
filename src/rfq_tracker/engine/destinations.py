"""Resolve which mailbox folders the reconciliation sweeps watch.

Replies are "filed" once they sit in a destination folder: a subfolder of a
material folder (``MAT-1001/Quotes``, ``MAT-1001/Clarifications``) whose name
matches a destination rule. When no material subfolder matches, top-level
folders matching a rule are used instead.

Folders holding our own outgoing mail (Sent Items, Drafts and anything with
"sent" in its name such as ``MAT-1001/Sent RFQs``) are never swept for
replies.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import regex

from rfq_tracker.classifier.subject import REGEX_TIMEOUT

if TYPE_CHECKING:
    from collections.abc import Iterable

    from rfq_tracker.config_schema import DestinationRule, FoldersConfig, ReplyKind
    from rfq_tracker.graph.models import Folder

OUTGOING_WELL_KNOWN = ("sentitems", "drafts")


@dataclass(frozen=True, slots=True)
class WatchedFolders:
    """The folder sets one reconciliation tick works with.

    Attributes:
        inbox_id: Inbox folder id, if it was found
        destinations: Destination folder id -> reply kind filed there
        excluded: Folder ids whose messages are never reply candidates
    """

    inbox_id: str | None = None
    destinations: dict[str, ReplyKind] = field(default_factory=dict)
    excluded: frozenset[str] = frozenset()

    @property
    def sweep_ids(self) -> list[str]:
        """Folders covered by the supplementary sweep: inbox first, then destinations."""
        ids = [self.inbox_id] if self.inbox_id else []
        return ids + [fid for fid in self.destinations if fid != self.inbox_id]


def match_rule(name: str, rules: Iterable[DestinationRule]) -> DestinationRule | None:
    """First destination rule whose keyword the folder name contains and none of its excludes."""
    lowered = name.lower()
    for rule in rules:
        if rule.contains.lower() not in lowered:
            continue
        if any(word.lower() in lowered for word in rule.excludes if word):
            continue
        return rule
    return None


def is_outgoing_folder(folder: Folder) -> bool:
    if folder.well_known_name in OUTGOING_WELL_KNOWN:
        return True
    return "sent" in folder.display_name.lower()


def resolve_watched_folders(
    folders: list[Folder],
    config: FoldersConfig,
    correlation_keys: Iterable[str] = (),
) -> WatchedFolders:
    """Work out the inbox, destination and excluded folders for a batch.

    Args:
        folders: Flattened folder tree from the gateway
        config: Folder layout configuration
        correlation_keys: Material codes of the batch; when empty, every
            material folder is considered

    Returns:
        WatchedFolders for the poller and baseline
    """
    keys = {k.upper() for k in correlation_keys}
    material_pattern = regex.compile(config.material_folder_pattern, regex.IGNORECASE)

    def is_material(folder: Folder) -> bool:
        try:
            if not material_pattern.search(folder.display_name, timeout=REGEX_TIMEOUT):
                return False
        except TimeoutError:
            return False
        return not keys or folder.display_name.upper() in keys

    material_ids = {f.id for f in folders if is_material(f)}

    destinations: dict[str, ReplyKind] = {}
    for folder in folders:
        if folder.parent_folder_id in material_ids and not is_outgoing_folder(folder):
            rule = match_rule(folder.display_name, config.destination_rules)
            if rule is not None:
                destinations[folder.id] = rule.kind

    if not destinations:
        for folder in folders:
            if folder.parent_folder_id is None and not is_outgoing_folder(folder):
                rule = match_rule(folder.display_name, config.destination_rules)
                if rule is not None:
                    destinations[folder.id] = rule.kind

    inbox_id = next((f.id for f in folders if f.well_known_name == "inbox"), None)
    excluded = frozenset(f.id for f in folders if is_outgoing_folder(f))

    return WatchedFolders(inbox_id=inbox_id, destinations=destinations, excluded=excluded)
