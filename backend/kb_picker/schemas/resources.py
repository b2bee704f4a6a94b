"""Data models for remote resources, cache entries and indexing status."""
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class ResourceKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


class IndexStatus(str, Enum):
    UNINDEXED = "unindexed"
    PENDING = "pending"
    PROCESSING = "processing"
    INDEXED = "indexed"
    DE_INDEXING = "de-indexing"
    ERROR = "error"
    TIMEOUT = "timeout"


# Polling for an id stops once it reaches one of these.
TERMINAL_STATUSES = frozenset({IndexStatus.INDEXED, IndexStatus.ERROR, IndexStatus.TIMEOUT})

# A polling loop only writes ids that are still in one of these.
AWAITING_STATUSES = frozenset({IndexStatus.PENDING, IndexStatus.PROCESSING})

# Resync never overwrites these; they reflect a recent local removal.
PROTECTED_STATUSES = frozenset({IndexStatus.DE_INDEXING, IndexStatus.UNINDEXED})


def is_protected(status: IndexStatus) -> bool:
    """True if a resync must leave this local status alone."""
    return status in PROTECTED_STATUSES


# Remote store vocabulary -> local status. Unknown values are ignored.
REMOTE_STATUS_MAP = {
    "indexed": IndexStatus.INDEXED,
    "completed": IndexStatus.INDEXED,
    "pending": IndexStatus.PENDING,
    "processing": IndexStatus.PROCESSING,
    "parsing": IndexStatus.PROCESSING,
    "embedding": IndexStatus.PROCESSING,
    "failed": IndexStatus.ERROR,
    "error": IndexStatus.ERROR,
    "resource": IndexStatus.UNINDEXED,
}


def map_remote_status(value: Optional[str]) -> Optional[IndexStatus]:
    if not value:
        return None
    return REMOTE_STATUS_MAP.get(value.strip().lower())


class Resource(BaseModel):
    """Immutable snapshot of one file or directory in the remote store."""

    model_config = ConfigDict(frozen=True)

    id: str
    path: str
    kind: ResourceKind
    modified_at: datetime
    size_bytes: Optional[int] = None
    mime_type: Optional[str] = None
    remote_status: Optional[str] = None

    @property
    def name(self) -> str:
        """Display name: last non-empty path segment."""
        parts = [p for p in self.path.split("/") if p]
        return parts[-1] if parts else self.path

    @property
    def is_directory(self) -> bool:
        return self.kind == ResourceKind.DIRECTORY

    @classmethod
    def from_api(cls, item: dict) -> "Resource":
        """Build a snapshot from a knowledge-base API resource payload."""
        kind = ResourceKind(item.get("inode_type", "file"))
        size = item.get("size")
        return cls(
            id=item["resource_id"],
            path=(item.get("inode_path") or {}).get("path", ""),
            kind=kind,
            modified_at=item.get("modified_at") or item.get("created_at"),
            size_bytes=size if kind == ResourceKind.FILE else None,
            mime_type=item.get("content_mime"),
            remote_status=item.get("status"),
        )


class FolderEntry(BaseModel):
    """Fully fetched child listing of one folder."""

    model_config = ConfigDict(frozen=True)

    folder_id: Optional[str]
    children: Tuple[Resource, ...]
    fetched_at: datetime


class TreeRow(BaseModel):
    """One visible row of the flattened tree. Derived, never stored."""

    model_config = ConfigDict(frozen=True)

    resource: Resource
    depth: int
    parent_id: Optional[str] = None
    is_expanded: bool = False
    children_loaded: bool = False

    @property
    def is_loading(self) -> bool:
        """Expanded directory whose listing has not arrived yet."""
        return self.is_expanded and not self.children_loaded


class Connection(BaseModel):
    """A connected drive the user can browse."""

    connection_id: str
    name: str
    provider: Optional[str] = None

    @classmethod
    def from_api(cls, item: dict) -> "Connection":
        return cls(
            connection_id=item["connection_id"],
            name=item.get("name") or item["connection_id"],
            provider=item.get("connection_provider"),
        )


class KnowledgeBase(BaseModel):
    """The indexing job a session adds resources to."""

    knowledge_base_id: str
    connection_id: Optional[str] = None
    name: str = ""
    description: str = ""
    connection_source_ids: List[str] = []

    @classmethod
    def from_api(cls, item: dict) -> "KnowledgeBase":
        return cls(
            knowledge_base_id=item["knowledge_base_id"],
            connection_id=item.get("connection_id"),
            name=item.get("name") or "",
            description=item.get("description") or "",
            connection_source_ids=list(item.get("connection_source_ids") or []),
        )
