"""Session log routes: read projections and structural mutations."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import PlainTextResponse, Response

from sessiondash import config
from sessiondash.db.log_store import encode
from sessiondash.errors import SessionDashError
from sessiondash.models import (
    BranchDetail,
    BranchSessionRequest,
    BranchSessionResponse,
    BranchSummary,
    MaterializeRequest,
    MaterializeResponse,
    RestoreRequest,
    RestoreResponse,
    SessionIdentity,
    SessionStatusInfo,
    SessionView,
)
from sessiondash.parsers.status import derive_status, derive_status_from_tail
from sessiondash.services.branching import get_branch_manager

logger = logging.getLogger("sessiondash.routers")

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])
branch_session_router = APIRouter(prefix="/api", tags=["sessions"])


def _http_error(e: SessionDashError) -> HTTPException:
    if e.status_code >= 500:
        logger.error(f"{type(e).__name__}: {e}")
    return HTTPException(status_code=e.status_code, detail=str(e))


@sessions_router.post("/restore", response_model=RestoreResponse)
async def restore_session(req: RestoreRequest):
    """Truncate a session after `turnIndex`, archiving the rest as a branch."""
    manager = await get_branch_manager()
    identity = SessionIdentity(dirName=req.dirName, fileName=req.fileName)
    try:
        return await manager.restore_to_turn(identity, req.turnIndex, req.fingerprint)
    except SessionDashError as e:
        raise _http_error(e)


@sessions_router.post("/materialize", response_model=MaterializeResponse)
async def materialize_branch(req: MaterializeRequest):
    """Re-attach an archived branch after its divergence point."""
    manager = await get_branch_manager()
    identity = SessionIdentity(dirName=req.dirName, fileName=req.fileName)
    try:
        return await manager.materialize_branch(identity, req.branchId, req.turnIndex, req.fingerprint)
    except SessionDashError as e:
        raise _http_error(e)


@branch_session_router.post("/branch-session", response_model=BranchSessionResponse)
async def branch_session(req: BranchSessionRequest):
    """Copy a session (optionally only through `turnIndex`) into a new log."""
    manager = await get_branch_manager()
    identity = SessionIdentity(dirName=req.dirName, fileName=req.fileName)
    try:
        return await manager.duplicate_session(identity, req.turnIndex)
    except SessionDashError as e:
        raise _http_error(e)


@sessions_router.get("/{dir_name}/{file_name}", response_class=PlainTextResponse)
async def read_session(dir_name: str, file_name: str):
    manager = await get_branch_manager()
    try:
        text = manager.store.read_log(SessionIdentity(dirName=dir_name, fileName=file_name))
    except SessionDashError as e:
        raise _http_error(e)
    # Raw bytes, so content that is not valid UTF-8 survives unchanged.
    return Response(content=encode(text), media_type="text/plain; charset=utf-8")


@sessions_router.get("/{dir_name}/{file_name}/turns", response_model=SessionView)
async def get_session_turns(dir_name: str, file_name: str):
    manager = await get_branch_manager()
    try:
        snapshot = manager.read(SessionIdentity(dirName=dir_name, fileName=file_name))
    except SessionDashError as e:
        raise _http_error(e)
    events = snapshot.events
    return SessionView(
        dirName=dir_name,
        fileName=file_name,
        fingerprint=snapshot.fingerprint,
        turns=snapshot.turns,
        status=derive_status(events),
    )


@sessions_router.get("/{dir_name}/{file_name}/status", response_model=SessionStatusInfo)
async def get_session_status(
    dir_name: str,
    file_name: str,
    tail_bytes: int = Query(config.STATUS_TAIL_BYTES, ge=1),
):
    """Live status from the end of the log only."""
    manager = await get_branch_manager()
    try:
        tail = manager.store.read_tail(SessionIdentity(dirName=dir_name, fileName=file_name), tail_bytes)
    except SessionDashError as e:
        raise _http_error(e)
    return derive_status_from_tail(tail)


@sessions_router.get("/{dir_name}/{file_name}/branches", response_model=list[BranchSummary])
async def list_session_branches(
    dir_name: str,
    file_name: str,
    turn_index: Optional[int] = Query(None, ge=0),
):
    manager = await get_branch_manager()
    try:
        return await manager.list_branches(SessionIdentity(dirName=dir_name, fileName=file_name), turn_index)
    except SessionDashError as e:
        raise _http_error(e)


@sessions_router.get("/{dir_name}/{file_name}/branches/{branch_id}", response_model=BranchDetail)
async def get_session_branch(dir_name: str, file_name: str, branch_id: str):
    manager = await get_branch_manager()
    try:
        return await manager.get_branch(SessionIdentity(dirName=dir_name, fileName=file_name), branch_id)
    except SessionDashError as e:
        raise _http_error(e)


@sessions_router.get("/{dir_name}/{file_name}/redo", response_model=Optional[BranchSummary])
async def get_redo_candidate(dir_name: str, file_name: str):
    """Newest branch continuing exactly where the live log ends, if any."""
    manager = await get_branch_manager()
    try:
        return await manager.redo_candidate(SessionIdentity(dirName=dir_name, fileName=file_name))
    except SessionDashError as e:
        raise _http_error(e)
