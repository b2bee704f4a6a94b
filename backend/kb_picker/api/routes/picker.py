import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from pydantic import BaseModel
from typing import List, Optional

from kb_picker.api.deps import get_sessions, require_session
from kb_picker.core.errors import (
    FetchFailed,
    KnowledgeBaseCreateFailed,
    MembershipUpdateFailed,
    SelectionTooLarge,
)
from kb_picker.schemas.resources import IndexStatus, TreeRow
from kb_picker.services.selection import FolderSelection
from kb_picker.services.session import PickerSession, SessionManager
from kb_picker.services.tree_projector import SortKey, SortSpec

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/picker", tags=["picker"])
limiter = Limiter(key_func=get_remote_address)

DEFAULT_KB_NAME = "Knowledge Base Picker"


class OpenSessionRequest(BaseModel):
    connection_id: str
    # A new knowledge base is created when omitted
    knowledge_base_id: Optional[str] = None


class CreateKnowledgeBaseRequest(BaseModel):
    connection_id: str
    name: str = DEFAULT_KB_NAME
    description: str = ""
    resource_ids: List[str] = []


class IndexRequest(BaseModel):
    # Defaults to the current selection when omitted
    resource_ids: Optional[List[str]] = None


def _row_view(session: PickerSession, row: TreeRow) -> dict:
    resource = row.resource
    return {
        "id": resource.id,
        "name": resource.name,
        "path": resource.path,
        "kind": resource.kind.value,
        "modified_at": resource.modified_at.isoformat(),
        "size_bytes": resource.size_bytes,
        "mime_type": resource.mime_type,
        "depth": row.depth,
        "parent_id": row.parent_id,
        "is_expanded": row.is_expanded,
        "is_loading": row.is_loading,
        "is_selected": session.selection.is_selected(resource.id),
        "status": session.reconciler.status_of(resource.id).value,
    }


def _rows(session: PickerSession, sort: Optional[SortKey] = None,
          descending: bool = False, query: str = "") -> List[dict]:
    spec = SortSpec(key=sort, descending=descending) if sort else None
    return [_row_view(session, row) for row in session.rows(spec, query)]


def _remote_error(e: Exception) -> HTTPException:
    logger.warning("Remote call failed: %s", e)
    return HTTPException(status_code=502, detail=str(e))


@router.post("/session")
async def open_session(
    request: OpenSessionRequest, sessions: SessionManager = Depends(get_sessions)
):
    """Open (or switch to) a connection + knowledge base and list its root."""
    job_id = request.knowledge_base_id
    if job_id is None:
        try:
            kb = await sessions.create_knowledge_base(request.connection_id, DEFAULT_KB_NAME)
        except KnowledgeBaseCreateFailed as e:
            raise _remote_error(e)
        job_id = kb.knowledge_base_id

    session = await sessions.open(request.connection_id, job_id)
    try:
        await session.load_root()
    except FetchFailed as e:
        raise _remote_error(e)
    return {
        "connection_id": session.connection_id,
        "knowledge_base_id": session.job_id,
        "rows": _rows(session),
    }


@router.get("/connections")
async def list_connections(sessions: SessionManager = Depends(get_sessions)):
    """Drives the configured account can browse."""
    try:
        connections = await sessions.source.list_connections()
    except Exception as e:
        raise _remote_error(e)
    return {"connections": [c.model_dump() for c in connections]}


@router.get("/org")
async def current_org(sessions: SessionManager = Depends(get_sessions)):
    try:
        org_id = await sessions.source.get_current_org_id()
    except Exception as e:
        raise _remote_error(e)
    return {"org_id": org_id}


@router.post("/knowledge-bases", status_code=201)
@limiter.limit("5/minute")
async def create_knowledge_base(
    request: Request, req: CreateKnowledgeBaseRequest,
    sessions: SessionManager = Depends(get_sessions),
):
    """Create a knowledge base over a connection and start its first sync."""
    try:
        kb = await sessions.create_knowledge_base(
            req.connection_id, req.name, req.description, req.resource_ids
        )
    except KnowledgeBaseCreateFailed as e:
        raise _remote_error(e)
    return kb.model_dump()


@router.get("/rows")
async def list_rows(
    sort: Optional[SortKey] = None,
    descending: bool = False,
    query: str = "",
    session: PickerSession = Depends(require_session),
):
    """Visible rows of the tree, sorted per level and optionally filtered."""
    return {"rows": _rows(session, sort, descending, query)}


@router.post("/refresh")
async def refresh(
    folder_id: Optional[str] = None, session: PickerSession = Depends(require_session)
):
    try:
        await session.refresh(folder_id)
    except FetchFailed as e:
        raise _remote_error(e)
    return {"rows": _rows(session)}


@router.post("/folders/{folder_id}/toggle")
async def toggle_folder_expansion(
    folder_id: str, session: PickerSession = Depends(require_session)
):
    """Expand or collapse a folder row, loading its children on first expand."""
    try:
        expanded = await session.toggle_expanded(folder_id)
    except FetchFailed as e:
        raise _remote_error(e)
    return {"folder_id": folder_id, "expanded": expanded, "rows": _rows(session)}


@router.post("/folders/{folder_id}/prefetch", status_code=202)
async def prefetch_folder(folder_id: str, session: PickerSession = Depends(require_session)):
    """Warm the cache for a folder the user is about to open."""
    session.cache.prefetch(folder_id)
    return {"folder_id": folder_id}


@router.get("/selection")
async def get_selection(session: PickerSession = Depends(require_session)):
    return {
        "selected_ids": session.selection.selected_ids(),
        "indexed_selected_ids": session.selection.indexed_selected(session.reconciler.status_of),
    }


@router.post("/selection/{resource_id}/toggle")
async def toggle_selection(resource_id: str, session: PickerSession = Depends(require_session)):
    """Toggle a file, or every file under a folder."""
    resource = session.find(resource_id)
    if resource is None:
        raise HTTPException(status_code=404, detail=f"Unknown resource: {resource_id}")

    try:
        result = await session.select(resource)
    except SelectionTooLarge as e:
        raise HTTPException(status_code=413, detail=str(e))
    except FetchFailed as e:
        raise _remote_error(e)

    if isinstance(result, FolderSelection):
        return {"selected": result.selected, "file_ids": result.file_ids,
                "selected_ids": session.selection.selected_ids()}
    return {"selected": result, "file_ids": [resource_id],
            "selected_ids": session.selection.selected_ids()}


@router.delete("/selection")
async def clear_selection(session: PickerSession = Depends(require_session)):
    session.selection.clear()
    return {"selected_ids": []}


@router.post("/index")
@limiter.limit("20/minute")
async def index_resources(
    request: Request, req: IndexRequest, session: PickerSession = Depends(require_session)
):
    """Add files to the knowledge base in one batch and start polling."""
    try:
        if req.resource_ids is None:
            batch = await session.index_selected()
        else:
            batch = await session.reconciler.request_index(req.resource_ids)
    except MembershipUpdateFailed as e:
        raise _remote_error(e)

    if batch is None:
        raise HTTPException(status_code=400, detail="No files selected for indexing")
    return batch.model_dump()


@router.post("/de-index")
@limiter.limit("20/minute")
async def de_index_resources(
    request: Request, req: IndexRequest, session: PickerSession = Depends(require_session)
):
    """Remove indexed files from the knowledge base."""
    try:
        if req.resource_ids is None:
            ids = await session.de_index_selected()
        else:
            reconciler = session.reconciler
            ids = [rid for rid in req.resource_ids
                   if reconciler.status_of(rid) == IndexStatus.INDEXED]
            await reconciler.request_de_index(ids)
    except MembershipUpdateFailed as e:
        raise _remote_error(e)
    return {"resource_ids": ids}


@router.get("/status")
async def get_status(session: PickerSession = Depends(require_session)):
    """Current indexing status of every known resource."""
    return {"statuses": {rid: status.value for rid, status in session.reconciler.statuses.items()}}
