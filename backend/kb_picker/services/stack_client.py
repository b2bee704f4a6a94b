"""Knowledge-base API client.

Lists connection resources and manages knowledge-base membership
(``connection_source_ids``) over HTTP. Authentication is delegated to an
opaque token provider.
"""
import logging
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

import kb_picker.core.config as config_module
from kb_picker.schemas.resources import Connection, KnowledgeBase, Resource
from kb_picker.services.resource_source import ResourceSource

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]

DEFAULT_INDEXING_PARAMS = {
    "ocr": False,
    "unstructured": True,
    "embedding_params": {"embedding_model": "text-embedding-ada-002"},
    "chunker_params": {"chunk_size": 1500, "chunk_overlap": 500, "chunker_type": "sentence"},
}


async def settings_token_provider() -> str:
    """Default provider: a static token from settings."""
    return config_module.settings.api_token


class StackResourceSource(ResourceSource):
    """Resource source backed by the knowledge-base HTTP API."""

    def __init__(
        self,
        base_url: str,
        org_id: str,
        token_provider: Optional[TokenProvider] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.org_id = org_id
        self.token_provider = token_provider or settings_token_provider
        self.timeout = timeout
        self._transport = transport

    async def _headers(self) -> dict:
        token = await self.token_provider()
        return {"Authorization": f"Bearer {token}"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        )

    async def _request(self, method: str, path: str, **kwargs):
        headers = await self._headers()
        async with self._client() as client:
            response = await client.request(method, path, headers=headers, **kwargs)
            response.raise_for_status()
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

    async def list_children(
        self, connection_id: str, folder_id: Optional[str] = None
    ) -> List[Resource]:
        """List resources under a folder of a connection."""
        params = {"resource_id": folder_id} if folder_id else None
        data = await self._request(
            "GET", f"/connections/{connection_id}/resources/children", params=params
        )
        items = (data or {}).get("data", [])
        logger.debug("Listed %d children of %s", len(items), folder_id or "<root>")
        return [Resource.from_api(item) for item in items]

    async def get_knowledge_base(self, job_id: str) -> dict:
        return await self._request("GET", f"/knowledge_bases/{job_id}") or {}

    async def get_job_membership(self, job_id: str) -> List[str]:
        kb = await self.get_knowledge_base(job_id)
        return list(kb.get("connection_source_ids") or [])

    async def set_job_membership(self, job_id: str, member_ids: List[str]) -> None:
        """Replace connection_source_ids; the API expects the full knowledge base body."""
        kb = await self.get_knowledge_base(job_id)
        kb["connection_source_ids"] = list(member_ids)
        await self._request("PUT", f"/knowledge_bases/{job_id}", json=kb)
        logger.info("Set membership of %s to %d resource(s)", job_id, len(member_ids))

    async def trigger_sync(self, job_id: str) -> None:
        org_id = await self._org()
        await self._request("GET", f"/knowledge_bases/sync/trigger/{job_id}/{org_id}")

    async def list_knowledge_base_resources(
        self, job_id: str, resource_path: str = "/"
    ) -> List[Resource]:
        """Resources the knowledge base holds under a path, with their indexing status."""
        data = await self._request(
            "GET", f"/knowledge_bases/{job_id}/resources/children",
            params={"resource_path": resource_path},
        )
        return [Resource.from_api(item) for item in (data or {}).get("data", [])]

    async def get_resource_statuses(self, job_id: str, ids: List[str]) -> Dict[str, str]:
        """Members report as indexed; per-resource status from the knowledge base wins."""
        wanted = set(ids)
        members = set(await self.get_job_membership(job_id))
        statuses = {resource_id: "indexed" for resource_id in ids if resource_id in members}

        try:
            held = await self.list_knowledge_base_resources(job_id)
        except httpx.HTTPError as e:
            # Annotations are optional; membership alone is still a valid answer
            logger.warning("Listing resources of %s failed: %s", job_id, e)
            return statuses

        for resource in held:
            if resource.id in wanted and resource.remote_status:
                statuses[resource.id] = resource.remote_status
        return statuses

    async def list_connections(self) -> List[Connection]:
        data = await self._request(
            "GET", "/connections", params={"connection_provider": "gdrive", "limit": 5}
        )
        return [Connection.from_api(item) for item in data or []]

    async def get_current_org_id(self) -> str:
        data = await self._request("GET", "/organizations/me/current")
        return (data or {})["org_id"]

    async def _org(self) -> str:
        if not self.org_id:
            self.org_id = await self.get_current_org_id()
            logger.info("Resolved organization %s", self.org_id)
        return self.org_id

    async def create_knowledge_base(
        self, connection_id: str, member_ids: List[str], name: str, description: str
    ) -> KnowledgeBase:
        body = {
            "connection_id": connection_id,
            "connection_source_ids": list(member_ids),
            "name": name,
            "description": description,
            "indexing_params": DEFAULT_INDEXING_PARAMS,
        }
        data = await self._request("POST", "/knowledge_bases", json=body)
        kb = KnowledgeBase.from_api(data or {})
        logger.info("Created knowledge base %s over %s", kb.knowledge_base_id, connection_id)
        return kb
