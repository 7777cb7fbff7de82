"""Undo/redo orchestration for one active session.

The controller never patches its loaded view in place: every structural
mutation is followed by a full reload, and any response that arrives after
the active session changed is dropped.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from sessiondash.client.api import SessionApiClient
from sessiondash.errors import SessionDashError, UnavailableError
from sessiondash.models import (
    BranchSessionResponse,
    BranchSummary,
    MaterializeResponse,
    RestoreResponse,
    SessionIdentity,
    SessionView,
    Turn,
)

logger = logging.getLogger("sessiondash.client")


class UndoRedoController:
    def __init__(self, api: SessionApiClient):
        self.api = api
        self.identity: Optional[SessionIdentity] = None
        self.view: Optional[SessionView] = None
        self.is_applying = False
        self.apply_error: Optional[str] = None
        self._branches_by_turn: dict[int, list[BranchSummary]] = {}

    @property
    def turn_count(self) -> int:
        return len(self.view.turns) if self.view else 0

    def _is_active(self, identity: SessionIdentity) -> bool:
        return self.identity is not None and self.identity == identity

    async def load(self, identity: SessionIdentity) -> Optional[SessionView]:
        """Make `identity` the active session and fetch its projection."""
        self.identity = identity
        self.view = None
        self.apply_error = None
        self._branches_by_turn.clear()
        return await self._reload(identity)

    async def _reload(self, identity: SessionIdentity) -> Optional[SessionView]:
        view = await self.api.get_view(identity)
        if not self._is_active(identity):
            logger.debug(f"Dropping stale view for {identity.key}")
            return None
        self.view = view
        return view

    async def branches_at_turn(self, turn_index: int, refresh: bool = False) -> list[BranchSummary]:
        """Branches that diverged after `turn_index`, newest first."""
        identity = self.identity
        if identity is None:
            return []
        if not refresh and turn_index in self._branches_by_turn:
            return self._branches_by_turn[turn_index]
        branches = await self.api.list_branches(identity, turn_index)
        if not self._is_active(identity):
            return []
        self._branches_by_turn[turn_index] = branches
        return branches

    async def ghost_turns(self, branch_id: str) -> list[Turn]:
        """Archived turns of a branch, for preview before switching to it."""
        identity = self.identity
        if identity is None:
            return []
        detail = await self.api.get_branch(identity, branch_id)
        if not self._is_active(identity):
            return []
        return detail.turns

    async def redo_candidate(self) -> Optional[BranchSummary]:
        identity = self.identity
        if identity is None:
            return None
        return await self._redo_candidate_for(identity)

    async def _redo_candidate_for(self, identity: SessionIdentity) -> Optional[BranchSummary]:
        candidate = await self.api.get_redo_candidate(identity)
        if not self._is_active(identity):
            logger.debug(f"Dropping stale redo candidate for {identity.key}")
            return None
        return candidate

    async def request_restore(self, turn_index: int) -> Optional[RestoreResponse]:
        """Keep turns 0..turn_index live and archive the rest."""
        return await self._mutate(
            "restore",
            lambda identity, fingerprint: self.api.restore(identity, turn_index, fingerprint),
        )

    async def request_branch_switch(self, branch_id: str, turn_index: Optional[int] = None) -> Optional[MaterializeResponse]:
        """Swap the live continuation for `branch_id` (through archived turn `turn_index`)."""
        return await self._mutate(
            "materialize",
            lambda identity, fingerprint: self.api.materialize(identity, branch_id, turn_index, fingerprint),
        )

    async def request_redo(self, up_to: Optional[int] = None) -> Optional[MaterializeResponse]:
        """Bring back the most recently undone turns, optionally only through `up_to`."""
        identity = self.identity
        if identity is None:
            return None
        candidate = await self._redo_candidate_for(identity)
        if candidate is None:
            return None
        return await self._mutate(
            "redo",
            lambda target, fingerprint: self.api.materialize(target, candidate.id, up_to, fingerprint),
            identity,
        )

    async def branch_session(self, turn_index: Optional[int] = None) -> Optional[BranchSessionResponse]:
        """Fork the active session into a new log; the active session is unchanged."""
        if self.identity is None:
            return None
        try:
            return await self.api.branch_session(self.identity, turn_index)
        except SessionDashError as e:
            self._record_failure("branch-session", e)
            return None

    async def _mutate(
        self,
        operation: str,
        call: Callable[[SessionIdentity, Optional[str]], Awaitable[Any]],
        identity: Optional[SessionIdentity] = None,
    ) -> Any:
        identity = identity or self.identity
        if identity is None or not self._is_active(identity) or self.is_applying:
            return None
        fingerprint = self.view.fingerprint if self.view else None

        self.is_applying = True
        self.apply_error = None
        try:
            result = await call(identity, fingerprint)
            if not self._is_active(identity):
                logger.debug(f"Dropping stale {operation} result for {identity.key}")
                return None
            self._branches_by_turn.clear()
            await self._reload(identity)
            return result
        except SessionDashError as e:
            if self._is_active(identity):
                self._record_failure(operation, e)
            return None
        finally:
            self.is_applying = False

    def _record_failure(self, operation: str, error: SessionDashError) -> None:
        self.apply_error = str(error) or type(error).__name__
        if isinstance(error, UnavailableError):
            logger.warning(f"{operation} unavailable: {error}")
        else:
            logger.info(f"{operation} failed ({type(error).__name__}): {error}")
