"""Selection of files, with folder selection expanding to descendant files."""
import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel

from kb_picker.core.errors import SelectionTooLarge
from kb_picker.schemas.resources import IndexStatus, Resource
from kb_picker.services.folder_cache import FolderCache

logger = logging.getLogger(__name__)


class FolderSelection(BaseModel):
    """Outcome of toggling a folder."""
    folder_id: str
    file_ids: List[str]
    selected: bool


class SelectionEngine:
    """Insertion-ordered set of selected file ids.

    Folder ids are never members: selecting a folder selects every file
    below it, loading uncached subfolders on the way.
    """

    def __init__(self, cache: FolderCache, max_nodes: Optional[int] = None):
        self.cache = cache
        self.max_nodes = max_nodes
        self._selected: Dict[str, bool] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._selected)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._selected

    def is_selected(self, resource_id: str) -> bool:
        return resource_id in self._selected

    def selected_ids(self) -> List[str]:
        return list(self._selected)

    def toggle(self, resource_id: str) -> bool:
        """Flip one id. Returns the new membership."""
        if resource_id in self._selected:
            del self._selected[resource_id]
            return False
        self._selected[resource_id] = True
        return True

    def select_all(self, resource_ids: Iterable[str]) -> None:
        """Replace the selection with exactly these ids."""
        self._selected = {resource_id: True for resource_id in resource_ids}

    def clear(self) -> None:
        self._selected.clear()

    def indexed_selected(self, status_of: Callable[[str], IndexStatus]) -> List[str]:
        """Selected ids whose current status is indexed (eligible for de-indexing)."""
        return [rid for rid in self._selected if status_of(rid) == IndexStatus.INDEXED]

    async def toggle_folder(self, folder: Resource) -> FolderSelection:
        """Select every descendant file, or deselect them all if all are selected.

        The selection is untouched when the walk fails (FetchFailed or
        SelectionTooLarge propagate to the caller).
        """
        async with self._lock:
            file_ids = await self.collect_files(folder.id)

            if file_ids and all(fid in self._selected for fid in file_ids):
                for fid in file_ids:
                    del self._selected[fid]
                selected = False
            else:
                for fid in file_ids:
                    if fid not in self._selected:
                        self._selected[fid] = True
                selected = bool(file_ids)

        logger.info(
            "%s %d file(s) under %s",
            "Selected" if selected else "Deselected", len(file_ids), folder.path,
        )
        return FolderSelection(folder_id=folder.id, file_ids=file_ids, selected=selected)

    async def collect_files(self, folder_id: str) -> List[str]:
        """Every file id below folder_id, depth first, via an explicit worklist."""
        files: List[str] = []
        seen = set()
        visited = 0
        stack = [folder_id]

        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)

            children = await self.cache.ensure_loaded(current)
            visited += len(children)
            if self.max_nodes is not None and visited > self.max_nodes:
                raise SelectionTooLarge(folder_id, self.max_nodes)

            subfolders = []
            for child in children:
                if child.is_directory:
                    subfolders.append(child.id)
                else:
                    files.append(child.id)
            stack.extend(reversed(subfolders))

        return list(dict.fromkeys(files))
