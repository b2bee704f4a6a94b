from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from pathlib import Path

import kb_picker.core.config as config_module
from kb_picker.schemas.resources import Connection, KnowledgeBase, Resource


class ResourceSource(ABC):
    """Remote resource store plus the indexing job it feeds."""

    @abstractmethod
    async def list_children(
        self, connection_id: str, folder_id: Optional[str] = None
    ) -> List[Resource]:
        """List direct children. folder_id=None returns the root listing."""
        ...

    @abstractmethod
    async def get_job_membership(self, job_id: str) -> List[str]:
        """Resource ids the job currently includes."""
        ...

    @abstractmethod
    async def set_job_membership(self, job_id: str, member_ids: List[str]) -> None:
        """Replace the job's membership with exactly member_ids."""
        ...

    @abstractmethod
    async def trigger_sync(self, job_id: str) -> None:
        """Ask the remote side to (re)index the job. Returns before indexing ends."""
        ...

    @abstractmethod
    async def get_resource_statuses(self, job_id: str, ids: List[str]) -> Dict[str, str]:
        """Best-effort status per id. Absent ids are not found in the job."""
        ...

    @abstractmethod
    async def list_connections(self) -> List[Connection]:
        """Drives available to browse."""
        ...

    @abstractmethod
    async def get_current_org_id(self) -> str:
        ...

    @abstractmethod
    async def create_knowledge_base(
        self, connection_id: str, member_ids: List[str], name: str, description: str
    ) -> KnowledgeBase:
        """Create a job over a connection. Callers trigger the first sync."""
        ...


def get_resource_source() -> ResourceSource:
    """Factory function based on the configured resource_source_mode."""
    from kb_picker.services.local_files import LocalResourceSource
    from kb_picker.services.stack_client import StackResourceSource

    settings = config_module.settings
    if settings.resource_source_mode == "live":
        return StackResourceSource(
            base_url=settings.api_base_url,
            org_id=settings.org_id,
            timeout=settings.http_timeout_seconds,
        )
    return LocalResourceSource(Path(settings.local_root))
