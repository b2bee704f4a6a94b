"""Shared fixtures: an in-memory resource source and resource builders."""

import asyncio
from typing import Callable, Dict, List, Optional

import pytest

from kb_picker.core.config import Settings
from kb_picker.schemas.resources import Connection, KnowledgeBase, Resource, ResourceKind
from kb_picker.services.resource_source import ResourceSource


def make_file(rid: str, path: str, size: int = 100,
              modified: str = "2024-01-01T00:00:00+00:00", status: Optional[str] = None) -> Resource:
    return Resource(
        id=rid, path=path, kind=ResourceKind.FILE, modified_at=modified,
        size_bytes=size, mime_type="text/plain", remote_status=status,
    )


def make_dir(rid: str, path: str, modified: str = "2024-01-01T00:00:00+00:00") -> Resource:
    return Resource(id=rid, path=path, kind=ResourceKind.DIRECTORY, modified_at=modified)


async def settle(rounds: int = 20):
    """Let background tasks (prefetches, polls with zero delay) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeSource(ResourceSource):
    """In-memory source with call recording and failure/latency switches."""

    def __init__(self, tree: Optional[Dict[Optional[str], List[Resource]]] = None):
        self.tree = tree or {}
        self.list_calls: List[Optional[str]] = []
        self.fail_folders = set()
        self.list_gate: Optional[asyncio.Event] = None

        self.members: Dict[str, List[str]] = {}
        self.set_calls: List[List[str]] = []
        self.sync_calls: List[str] = []
        self.fail_membership = False
        self.set_gate: Optional[asyncio.Event] = None
        # Yield to the loop between reading and returning membership
        self.slow_reads = False
        self.created: List[KnowledgeBase] = []

        # (attempt, ids) -> statuses; default reports members as indexed
        self.status_script: Optional[Callable[[int, List[str]], Dict[str, str]]] = None
        self.status_calls = 0
        self.status_failures = 0

    async def list_children(self, connection_id, folder_id=None):
        self.list_calls.append(folder_id)
        if self.list_gate is not None:
            await self.list_gate.wait()
        if folder_id in self.fail_folders:
            raise RuntimeError(f"listing {folder_id} failed")
        return list(self.tree.get(folder_id, []))

    async def get_job_membership(self, job_id):
        if self.fail_membership:
            raise RuntimeError("knowledge base unavailable")
        snapshot = list(self.members.get(job_id, []))
        if self.slow_reads:
            await asyncio.sleep(0)
        return snapshot

    async def set_job_membership(self, job_id, member_ids):
        if self.set_gate is not None:
            await self.set_gate.wait()
        if self.fail_membership:
            raise RuntimeError("knowledge base unavailable")
        self.set_calls.append(list(member_ids))
        self.members[job_id] = list(member_ids)

    async def trigger_sync(self, job_id):
        self.sync_calls.append(job_id)

    async def get_resource_statuses(self, job_id, ids):
        self.status_calls += 1
        if self.status_failures:
            self.status_failures -= 1
            raise RuntimeError("status endpoint unavailable")
        if self.status_script is not None:
            return self.status_script(self.status_calls, list(ids))
        members = set(self.members.get(job_id, []))
        return {rid: "indexed" for rid in ids if rid in members}

    async def list_connections(self):
        return [Connection(connection_id="conn", name="Drive", provider="gdrive")]

    async def get_current_org_id(self):
        return "org-1"

    async def create_knowledge_base(self, connection_id, member_ids, name, description):
        job_id = f"kb-new-{len(self.created) + 1}"
        self.members[job_id] = list(member_ids)
        kb = KnowledgeBase(
            knowledge_base_id=job_id, connection_id=connection_id, name=name,
            description=description, connection_source_ids=list(member_ids),
        )
        self.created.append(kb)
        return kb


@pytest.fixture
def sample_tree():
    """
    /docs            (d1)
      a.txt          (f1)
      /nested        (d2)
        b.txt        (f2)
    /empty           (d3)
    readme.md        (f3)
    """
    return {
        None: [make_dir("d1", "/docs"), make_dir("d3", "/empty"), make_file("f3", "/readme.md", size=10)],
        "d1": [make_file("f1", "/docs/a.txt", size=50), make_dir("d2", "/docs/nested")],
        "d2": [make_file("f2", "/docs/nested/b.txt", size=70)],
        "d3": [],
    }


@pytest.fixture
def source(sample_tree):
    return FakeSource(sample_tree)


@pytest.fixture
def fast_settings():
    return Settings(
        poll_interval_seconds=0,
        poll_max_attempts=5,
        resync_interval_seconds=0,
        selection_max_nodes=1000,
        prefetch_children=True,
    )
