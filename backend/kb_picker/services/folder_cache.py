"""Per-connection cache of folder listings.

Listings are fetched lazily, at most one request per folder id is outstanding
at any time, and directory children of a freshly fetched folder are warmed
in the background one level deep.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from kb_picker.core.errors import FetchFailed
from kb_picker.schemas.resources import FolderEntry, Resource
from kb_picker.services.resource_source import ResourceSource

logger = logging.getLogger(__name__)


class FolderCache:
    """Folder id -> last fetched children. ``None`` is the root folder."""

    def __init__(
        self,
        source: ResourceSource,
        connection_id: str,
        prefetch_children: bool = True,
    ):
        self.source = source
        self.connection_id = connection_id
        self.prefetch_children = prefetch_children
        self._entries: Dict[Optional[str], FolderEntry] = {}
        self._in_flight: Dict[Optional[str], asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    def __contains__(self, folder_id: Optional[str]) -> bool:
        return folder_id in self._entries

    def get(self, folder_id: Optional[str]) -> Optional[List[Resource]]:
        """Cached children, or None if the folder was never fetched."""
        entry = self._entries.get(folder_id)
        if entry is None:
            return None
        return list(entry.children)

    def entry(self, folder_id: Optional[str]) -> Optional[FolderEntry]:
        return self._entries.get(folder_id)

    def is_loading(self, folder_id: Optional[str]) -> bool:
        return folder_id in self._in_flight

    def find(self, resource_id: str) -> Optional[Resource]:
        """Look up a resource snapshot in any cached listing."""
        for entry in self._entries.values():
            for child in entry.children:
                if child.id == resource_id:
                    return child
        return None

    async def ensure_loaded(self, folder_id: Optional[str] = None) -> List[Resource]:
        """Return children, fetching them if needed.

        Concurrent callers for the same folder share one request and observe
        the same children or the same ``FetchFailed``.
        """
        return await self._load(folder_id, warm_children=self.prefetch_children)

    async def refresh(self, folder_id: Optional[str] = None) -> List[Resource]:
        """Re-fetch a listing. The old snapshot stays visible until the new one lands."""
        return await self._load(folder_id, warm_children=False, force=True)

    def prefetch(self, folder_id: Optional[str]) -> None:
        """Warm the cache in the background. Never blocks, never raises."""
        if folder_id in self._entries or folder_id in self._in_flight:
            return
        task = asyncio.ensure_future(self._quiet_load(folder_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def clear(self) -> None:
        """Drop all listings and cancel outstanding work."""
        for task in list(self._in_flight.values()) + list(self._background):
            task.cancel()
        self._in_flight.clear()
        self._background.clear()
        self._entries.clear()

    async def aclose(self) -> None:
        tasks = list(self._in_flight.values()) + list(self._background)
        self.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _load(
        self, folder_id: Optional[str], warm_children: bool, force: bool = False
    ) -> List[Resource]:
        if not force:
            entry = self._entries.get(folder_id)
            if entry is not None:
                return list(entry.children)

        task = self._in_flight.get(folder_id)
        if task is None:
            task = asyncio.ensure_future(self._fetch(folder_id))
            self._in_flight[folder_id] = task
            task.add_done_callback(lambda t, fid=folder_id: self._fetch_done(fid, t))

        # A cancelled caller must not cancel the fetch other callers share.
        children = await asyncio.shield(task)
        if warm_children:
            self._warm(children)
        return list(children)

    async def _fetch(self, folder_id: Optional[str]):
        try:
            children = await self.source.list_children(self.connection_id, folder_id)
        except Exception as e:
            logger.warning("Listing %s failed: %s", folder_id or "<root>", e)
            raise FetchFailed(folder_id, str(e)) from e

        entry = FolderEntry(
            folder_id=folder_id,
            children=tuple(children),
            fetched_at=datetime.now(timezone.utc),
        )
        self._entries[folder_id] = entry
        return entry.children

    def _fetch_done(self, folder_id: Optional[str], task: asyncio.Task) -> None:
        if self._in_flight.get(folder_id) is task:
            del self._in_flight[folder_id]
        # Mark the failure as retrieved; callers that awaited it already saw it.
        if not task.cancelled():
            task.exception()

    async def _quiet_load(self, folder_id: Optional[str]) -> None:
        try:
            await self._load(folder_id, warm_children=False)
        except FetchFailed as e:
            logger.debug("Prefetch of %s failed: %s", folder_id, e)

    def _warm(self, children) -> None:
        for child in children:
            if child.is_directory:
                self.prefetch(child.id)
