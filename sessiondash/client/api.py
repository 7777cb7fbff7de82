"""Async HTTP client for the session routes."""
from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from sessiondash import config
from sessiondash.db.log_store import decode
from sessiondash.errors import UnavailableError, error_for_status
from sessiondash.models import (
    BranchDetail,
    BranchSessionResponse,
    BranchSummary,
    MaterializeResponse,
    RestoreResponse,
    SessionIdentity,
    SessionStatusInfo,
    SessionView,
)

logger = logging.getLogger("sessiondash.client")


def _session_path(identity: SessionIdentity) -> str:
    return f"/api/sessions/{quote(identity.dirName, safe='')}/{quote(identity.fileName, safe='')}"


class SessionApiClient:
    """Typed wrapper over the SessionDash API.

    Non-2xx responses are raised as the matching `SessionDashError`; network
    failures surface as `UnavailableError`.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout_s: float = float(config.API_TIMEOUT_SECONDS),
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.API_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout_s, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "SessionApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            r = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise UnavailableError(f"{method} {path} failed: {e}") from e
        if r.status_code >= 400:
            try:
                data = r.json()
            except ValueError:
                data = None
            detail = data.get("detail") if isinstance(data, dict) else None
            raise error_for_status(r.status_code, str(detail or r.text or r.reason_phrase))
        return r

    async def read_log(self, identity: SessionIdentity) -> str:
        r = await self._request("GET", _session_path(identity))
        return decode(r.content)

    async def get_view(self, identity: SessionIdentity) -> SessionView:
        r = await self._request("GET", f"{_session_path(identity)}/turns")
        return SessionView.model_validate(r.json())

    async def get_status(self, identity: SessionIdentity, tail_bytes: Optional[int] = None) -> SessionStatusInfo:
        params = {"tail_bytes": int(tail_bytes)} if tail_bytes else None
        r = await self._request("GET", f"{_session_path(identity)}/status", params=params)
        return SessionStatusInfo.model_validate(r.json())

    async def list_branches(self, identity: SessionIdentity, turn_index: Optional[int] = None) -> list[BranchSummary]:
        params = {"turn_index": int(turn_index)} if turn_index is not None else None
        r = await self._request("GET", f"{_session_path(identity)}/branches", params=params)
        return [BranchSummary.model_validate(item) for item in r.json()]

    async def get_branch(self, identity: SessionIdentity, branch_id: str) -> BranchDetail:
        r = await self._request("GET", f"{_session_path(identity)}/branches/{quote(branch_id, safe='')}")
        return BranchDetail.model_validate(r.json())

    async def get_redo_candidate(self, identity: SessionIdentity) -> Optional[BranchSummary]:
        r = await self._request("GET", f"{_session_path(identity)}/redo")
        data = r.json()
        return BranchSummary.model_validate(data) if data else None

    async def restore(
        self,
        identity: SessionIdentity,
        turn_index: int,
        fingerprint: Optional[str] = None,
    ) -> RestoreResponse:
        payload: dict[str, Any] = {**identity.model_dump(), "turnIndex": int(turn_index)}
        if fingerprint:
            payload["fingerprint"] = fingerprint
        r = await self._request("POST", "/api/sessions/restore", json=payload)
        return RestoreResponse.model_validate(r.json())

    async def materialize(
        self,
        identity: SessionIdentity,
        branch_id: str,
        turn_index: Optional[int] = None,
        fingerprint: Optional[str] = None,
    ) -> MaterializeResponse:
        payload: dict[str, Any] = {**identity.model_dump(), "branchId": branch_id}
        if turn_index is not None:
            payload["turnIndex"] = int(turn_index)
        if fingerprint:
            payload["fingerprint"] = fingerprint
        r = await self._request("POST", "/api/sessions/materialize", json=payload)
        return MaterializeResponse.model_validate(r.json())

    async def branch_session(self, identity: SessionIdentity, turn_index: Optional[int] = None) -> BranchSessionResponse:
        payload: dict[str, Any] = identity.model_dump()
        if turn_index is not None:
            payload["turnIndex"] = int(turn_index)
        r = await self._request("POST", "/api/branch-session", json=payload)
        return BranchSessionResponse.model_validate(r.json())
