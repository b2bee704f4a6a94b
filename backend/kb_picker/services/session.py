"""Session scope: one connection plus one knowledge base.

All browsing, selection and status state hangs off a PickerSession and is
discarded with it when the user switches connection or knowledge base.
"""
import asyncio
import logging
from typing import Callable, List, Optional, Set, Union

import kb_picker.core.config as config_module
from kb_picker.core.config import Settings
from kb_picker.core.errors import KnowledgeBaseCreateFailed
from kb_picker.schemas.resources import KnowledgeBase, Resource, TreeRow
from kb_picker.services.folder_cache import FolderCache
from kb_picker.services.reconciler import EventEmitter, IndexBatch, IndexingReconciler
from kb_picker.services.resource_source import ResourceSource, get_resource_source
from kb_picker.services.selection import FolderSelection, SelectionEngine
from kb_picker.services.tree_projector import SortSpec, filter_rows, project

logger = logging.getLogger(__name__)


class PickerSession:
    def __init__(
        self,
        source: ResourceSource,
        connection_id: str,
        job_id: str,
        settings: Optional[Settings] = None,
        emit: Optional[EventEmitter] = None,
    ):
        settings = settings or config_module.settings
        self.connection_id = connection_id
        self.job_id = job_id
        self.cache = FolderCache(
            source, connection_id, prefetch_children=settings.prefetch_children
        )
        self.expanded: Set[str] = set()
        self.selection = SelectionEngine(self.cache, max_nodes=settings.selection_max_nodes)
        self.reconciler = IndexingReconciler(
            source,
            job_id,
            poll_interval=settings.poll_interval_seconds,
            max_attempts=settings.poll_max_attempts,
            resync_interval=settings.resync_interval_seconds,
            emit=emit,
        )

    async def load_root(self) -> List[Resource]:
        return await self.cache.ensure_loaded(None)

    async def refresh(self, folder_id: Optional[str] = None) -> List[Resource]:
        return await self.cache.refresh(folder_id)

    def find(self, resource_id: str) -> Optional[Resource]:
        return self.cache.find(resource_id)

    async def toggle_expanded(self, folder_id: str) -> bool:
        """Expand or collapse a folder row. Returns True if now expanded.

        Collapsing never evicts the cached listing.
        """
        if folder_id in self.expanded:
            self.expanded.discard(folder_id)
            return False

        self.expanded.add(folder_id)
        try:
            await self.cache.ensure_loaded(folder_id)
        except Exception:
            self.expanded.discard(folder_id)
            raise
        return True

    def rows(self, sort: Optional[SortSpec] = None, query: str = "") -> List[TreeRow]:
        root = self.cache.get(None) or []
        rows = project(root, self.cache, self.expanded, sort, self.reconciler.statuses)
        return filter_rows(rows, query)

    async def select(self, resource: Resource) -> Union[FolderSelection, bool]:
        """Toggle a row: files flip, folders expand to their descendant files."""
        if resource.is_directory:
            return await self.selection.toggle_folder(resource)
        return self.selection.toggle(resource.id)

    async def index_selected(self) -> Optional[IndexBatch]:
        """Index every selected file in one batch, then clear the selection."""
        file_ids = []
        for rid in self.selection.selected_ids():
            resource = self.find(rid)
            if resource is None or not resource.is_directory:
                file_ids.append(rid)
        if not file_ids:
            return None

        batch = await self.reconciler.request_index(file_ids)
        self.selection.clear()
        return batch

    async def de_index_selected(self) -> List[str]:
        """De-index the selected ids that are currently indexed."""
        ids = self.selection.indexed_selected(self.reconciler.status_of)
        if not ids:
            return []
        await self.reconciler.request_de_index(ids)
        self.selection.clear()
        return ids

    def start(self) -> None:
        self.reconciler.start()

    async def aclose(self) -> None:
        await self.reconciler.stop()
        await self.cache.aclose()


class SessionManager:
    """Holds the single active session and replaces it wholesale on switch.

    One source is shared by every session the manager opens, so a mock
    source keeps its job membership across switches. ``reset`` drops it
    after a settings change.
    """

    def __init__(
        self,
        source_factory: Callable[[], ResourceSource] = get_resource_source,
        emit: Optional[EventEmitter] = None,
        settings: Optional[Settings] = None,
    ):
        self.source_factory = source_factory
        self.emit = emit
        self.settings = settings
        self.active: Optional[PickerSession] = None
        self._source: Optional[ResourceSource] = None
        self._lock = asyncio.Lock()

    @property
    def source(self) -> ResourceSource:
        if self._source is None:
            self._source = self.source_factory()
        return self._source

    async def open(self, connection_id: str, job_id: str) -> PickerSession:
        async with self._lock:
            current = self.active
            if current and current.connection_id == connection_id and current.job_id == job_id:
                return current

            await self._close_active()
            session = PickerSession(
                self.source, connection_id, job_id, settings=self.settings, emit=self.emit
            )
            session.start()
            self.active = session
        logger.info("Opened session for connection %s, knowledge base %s", connection_id, job_id)
        return session

    async def create_knowledge_base(
        self, connection_id: str, name: str, description: str = "",
        member_ids: Optional[List[str]] = None,
    ) -> KnowledgeBase:
        """Create a knowledge base over a connection and trigger its first sync."""
        source = self.source
        try:
            kb = await source.create_knowledge_base(
                connection_id, list(member_ids or []), name, description
            )
            await source.trigger_sync(kb.knowledge_base_id)
        except Exception as e:
            logger.error("Creating a knowledge base over %s failed: %s", connection_id, e)
            raise KnowledgeBaseCreateFailed(connection_id, str(e)) from e
        return kb

    async def close(self) -> None:
        async with self._lock:
            await self._close_active()

    async def reset(self) -> None:
        """Close the active session and rebuild the source on next use."""
        async with self._lock:
            await self._close_active()
            self._source = None

    async def _close_active(self) -> None:
        if self.active is not None:
            session, self.active = self.active, None
            await session.aclose()
