from pathlib import Path
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set
import mimetypes
import hashlib
import uuid

from kb_picker.schemas.resources import Connection, KnowledgeBase, Resource, ResourceKind
from kb_picker.services.resource_source import ResourceSource


class LocalResourceSource(ResourceSource):
    """Resource source that reads from local file system (mock mode).

    Job membership lives in memory. Members report ``pending`` until the next
    ``trigger_sync`` and ``indexed`` afterwards.
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path).resolve()
        if not self.base_path.exists():
            self.base_path.mkdir(parents=True, exist_ok=True)
        self._members: Dict[str, List[str]] = {}
        self._synced: Dict[str, Set[str]] = {}

    def _path_to_id(self, path: Path) -> str:
        """Convert a path to a stable ID."""
        relative = path.relative_to(self.base_path)
        return hashlib.md5(str(relative).encode()).hexdigest()

    def _id_to_path(self, resource_id: str) -> Path:
        """Find path by searching for matching ID."""
        base_resolved = self.base_path.resolve()
        for path in self.base_path.rglob("*"):
            if self._path_to_id(path) == resource_id:
                resolved = path.resolve()
                # Ensure path is within base_path (prevent traversal)
                if not str(resolved).startswith(str(base_resolved)):
                    raise ValueError("Path traversal detected")
                return resolved
        raise ValueError(f"No path found for ID: {resource_id}")

    def _to_resource(self, item: Path) -> Resource:
        stat = item.stat()
        is_dir = item.is_dir()
        mime_type = None
        if not is_dir:
            mime_type, _ = mimetypes.guess_type(str(item))
        return Resource(
            id=self._path_to_id(item),
            path="/" + item.relative_to(self.base_path).as_posix(),
            kind=ResourceKind.DIRECTORY if is_dir else ResourceKind.FILE,
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            size_bytes=None if is_dir else stat.st_size,
            mime_type=mime_type or (None if is_dir else "application/octet-stream"),
        )

    async def list_children(
        self, connection_id: str, folder_id: Optional[str] = None
    ) -> List[Resource]:
        """List folders and files. folder_id=None returns root children."""
        if folder_id is None:
            search_path = self.base_path
        else:
            search_path = self._id_to_path(folder_id)
        if not search_path.is_dir():
            raise ValueError(f"Not a folder: {folder_id}")

        children = [self._to_resource(item) for item in search_path.iterdir()]
        return sorted(children, key=lambda r: (not r.is_directory, r.name))

    async def get_job_membership(self, job_id: str) -> List[str]:
        return list(self._members.get(job_id, []))

    async def set_job_membership(self, job_id: str, member_ids: List[str]) -> None:
        self._members[job_id] = list(dict.fromkeys(member_ids))
        synced = self._synced.setdefault(job_id, set())
        synced.intersection_update(self._members[job_id])

    async def trigger_sync(self, job_id: str) -> None:
        self._synced[job_id] = set(self._members.get(job_id, []))

    async def get_resource_statuses(self, job_id: str, ids: List[str]) -> Dict[str, str]:
        members = set(self._members.get(job_id, []))
        synced = self._synced.get(job_id, set())
        statuses = {}
        for resource_id in ids:
            if resource_id in synced:
                statuses[resource_id] = "indexed"
            elif resource_id in members:
                statuses[resource_id] = "pending"
        return statuses

    async def list_connections(self) -> List[Connection]:
        """The local root is the only connection."""
        return [Connection(connection_id="local", name=self.base_path.name, provider="local")]

    async def get_current_org_id(self) -> str:
        return "local"

    async def create_knowledge_base(
        self, connection_id: str, member_ids: List[str], name: str, description: str
    ) -> KnowledgeBase:
        job_id = uuid.uuid4().hex
        self._members[job_id] = list(dict.fromkeys(member_ids))
        self._synced[job_id] = set()
        return KnowledgeBase(
            knowledge_base_id=job_id,
            connection_id=connection_id,
            name=name,
            description=description,
            connection_source_ids=self._members[job_id],
        )
