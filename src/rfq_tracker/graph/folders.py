"""Mail folder operations for Microsoft Graph.

RFQ batches live in a per-material folder tree, e.g.::

    MAT-1001/
        Sent RFQs
        Quotes
        Clarification Requests

The reconciliation engine needs the whole tree (flattened, with paths) on
every tick to find destination folders, and the send workflow needs to
create "MAT-1001/Sent RFQs" on demand.

Usage:
    folders = FolderManager(client)
    all_folders = folders.list_folders()
    sent_rfqs = folders.create_folder("MAT-1001/Sent RFQs")
"""

import threading
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from rfq_tracker.core.errors import GraphAPIError
from rfq_tracker.core.logging import get_logger

if TYPE_CHECKING:
    from rfq_tracker.graph.client import GraphClient

logger = get_logger(__name__)

# Short TTL: users create "Quotes" folders while a batch is being monitored
DEFAULT_CACHE_TTL_SECONDS = 60


class FolderManager:
    """Lists and creates mail folders, caching the flattened tree.

    The cache is guarded by a lock because the gateway calls into this
    class from worker threads. Entries carry the folder's ``path`` (e.g.
    "MAT-1001/Quotes") in addition to the Graph fields.

    Attributes:
        client: GraphClient instance for API calls
    """

    def __init__(
        self,
        client: "GraphClient",
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
    ):
        self.client = client
        self._folder_cache: list[dict[str, Any]] | None = None
        self._path_to_id: dict[str, str] = {}
        self._special_ids: dict[str, str] = {}
        self._cache_lock = threading.Lock()
        self._cache_timestamp: datetime | None = None
        self._cache_ttl_seconds = cache_ttl_seconds

    def _is_cache_expired(self) -> bool:
        if self._cache_timestamp is None:
            return True
        age = datetime.now(UTC) - self._cache_timestamp
        return age > timedelta(seconds=self._cache_ttl_seconds)

    def list_folders(self, force_refresh: bool = False) -> list[dict[str, Any]]:
        """List every mail folder, flattened, with paths.

        Args:
            force_refresh: Bypass the cache (used when item counts must be current)

        Returns:
            Folder dicts with id, displayName, parentFolderId (None at top
            level), path, childFolderCount and totalItemCount
        """
        with self._cache_lock:
            if not force_refresh and self._folder_cache is not None and not self._is_cache_expired():
                return list(self._folder_cache)

            response = self.client.get(
                "/me/mailFolders",
                params={"$expand": "childFolders", "$top": 100},
            )
            all_folders = self._flatten_folders(response.get("value", []))
            self._assign_paths(all_folders)

            self._folder_cache = all_folders
            self._cache_timestamp = datetime.now(UTC)
            logger.debug("mail_folders_loaded", folder_count=len(all_folders))
            return list(all_folders)

    def _flatten_folders(
        self,
        folders: list[dict[str, Any]],
        parent_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Flatten the folder hierarchy, fetching levels $expand did not include."""
        result: list[dict[str, Any]] = []

        for folder in folders:
            result.append(
                {
                    "id": folder["id"],
                    "displayName": folder["displayName"],
                    "parentFolderId": parent_id,
                    "childFolderCount": folder.get("childFolderCount", 0),
                    "totalItemCount": folder.get("totalItemCount", 0),
                }
            )

            children = folder.get("childFolders") or []
            if children:
                result.extend(self._flatten_folders(children, parent_id=folder["id"]))
            elif folder.get("childFolderCount", 0) > 0:
                result.extend(self._fetch_child_folders(folder["id"]))

        return result

    def _fetch_child_folders(self, parent_id: str) -> list[dict[str, Any]]:
        try:
            response = self.client.get(
                f"/me/mailFolders/{parent_id}/childFolders",
                params={"$expand": "childFolders"},
            )
        except GraphAPIError as e:
            logger.warning("child_folders_fetch_failed", parent_id=parent_id, error=str(e))
            return []
        return self._flatten_folders(response.get("value", []), parent_id=parent_id)

    def _assign_paths(self, folders: list[dict[str, Any]]) -> None:
        """Set each folder's "path" by walking parents, and rebuild the path index."""
        by_id = {f["id"]: f for f in folders}
        self._path_to_id = {}

        for folder in folders:
            parts = [folder["displayName"]]
            parent_id = folder.get("parentFolderId")
            while parent_id and parent_id in by_id:
                parent = by_id[parent_id]
                parts.insert(0, parent["displayName"])
                parent_id = parent.get("parentFolderId")
            folder["path"] = "/".join(parts)
            self._path_to_id[folder["path"]] = folder["id"]

    def get_folder_id(self, path: str) -> str | None:
        """Get the folder id for a path like "MAT-1001/Quotes"."""
        self.list_folders()
        return self._path_to_id.get(path)

    def create_folder(self, path: str) -> str:
        """Create a folder path, creating missing parents. Returns the leaf folder id.

        Idempotent: existing levels are reused.

        Raises:
            GraphAPIError: If a level cannot be created
        """
        self.list_folders()

        parts = [p for p in path.split("/") if p]
        parent_id: str | None = None

        for i, part in enumerate(parts):
            current_path = "/".join(parts[: i + 1])
            existing_id = self._path_to_id.get(current_path)
            if existing_id:
                parent_id = existing_id
                continue

            endpoint = f"/me/mailFolders/{parent_id}/childFolders" if parent_id else "/me/mailFolders"
            created = self.client.post(endpoint, json={"displayName": part})
            logger.info("folder_created", path=current_path, id=created["id"])

            with self._cache_lock:
                if self._folder_cache is not None:
                    self._folder_cache.append(
                        {
                            "id": created["id"],
                            "displayName": created.get("displayName", part),
                            "parentFolderId": parent_id,
                            "childFolderCount": 0,
                            "totalItemCount": 0,
                            "path": current_path,
                        }
                    )
                self._path_to_id[current_path] = created["id"]
            parent_id = created["id"]

        if parent_id is None:
            raise GraphAPIError(f"Cannot create folder from empty path '{path}'")
        return parent_id

    def get_special_folder_id(self, well_known_name: str) -> str | None:
        """Resolve a well-known folder alias ("inbox", "sentitems", "drafts") to its id.

        Resolved through /me/mailFolders/{alias} rather than display names,
        which are localized. Cached for the lifetime of the manager.
        """
        alias = well_known_name.lower()
        with self._cache_lock:
            if alias in self._special_ids:
                return self._special_ids[alias]

        try:
            folder = self.client.get(f"/me/mailFolders/{alias}", params={"$select": "id"})
        except GraphAPIError as e:
            logger.warning("special_folder_lookup_failed", folder=alias, error=str(e))
            return None

        folder_id = folder.get("id")
        if folder_id:
            with self._cache_lock:
                self._special_ids[alias] = folder_id
        return folder_id
