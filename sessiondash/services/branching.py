"""Restore, duplicate and re-attach session logs without losing data.

Every byte cut from a live log is archived as a branch before the cut becomes
visible. Mutations on one session are serialized, checked against the
caller's fingerprint, and applied as one unit: branch rows are written in a
transaction that commits only after the live log was swapped atomically.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

import aiosqlite

from sessiondash import config
from sessiondash.db import connection
from sessiondash.db.log_store import LogStore, encode
from sessiondash.db.repositories.branches import SqliteBranchRepository
from sessiondash.db.sqlite_migrations import run_migrations
from sessiondash.errors import (
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    SessionDashError,
    StorageError,
)
from sessiondash.models import (
    BranchDetail,
    BranchSessionResponse,
    BranchSummary,
    MaterializeResponse,
    RestoreResponse,
    SessionIdentity,
    Turn,
)
from sessiondash.observability import record_branch_operation, record_parser_failure, start_span
from sessiondash.parsers.events import LogLine, iter_lines
from sessiondash.parsers.turns import count_turns, segment, turn_cut_offset

logger = logging.getLogger("sessiondash.branching")


def fingerprint(text: str) -> str:
    """`<byte length>:<sha256>` of a log as read by a caller."""
    raw = encode(text)
    return f"{len(raw)}:{hashlib.sha256(raw).hexdigest()}"


def _events(lines: list[LogLine]) -> list[dict[str, Any]]:
    return [line.event for line in lines if line.event is not None]


def _branch_label(lines: list[LogLine]) -> str:
    turns = segment(_events(lines))
    first_prompt = turns[0].userText.strip().split("\n")[0].strip() if turns else ""
    # Labels go to SQLite as TEXT, which rejects lone surrogates.
    first_prompt = encode(first_prompt).decode("utf-8", "replace")
    if not first_prompt:
        return "Untitled branch"
    limit = config.BRANCH_LABEL_MAX_CHARS
    return first_prompt if len(first_prompt) <= limit else first_prompt[: limit - 3] + "..."


@dataclass
class LogSnapshot:
    identity: SessionIdentity
    text: str
    lines: list[LogLine] = field(default_factory=list)

    @property
    def events(self) -> list[dict[str, Any]]:
        return _events(self.lines)

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.text)

    @property
    def turns(self) -> list[Turn]:
        return segment(self.events)

    @property
    def turn_count(self) -> int:
        return count_turns(self.events)


@dataclass
class _Archive:
    turn_index: int
    lines: list[LogLine]
    text: str


class BranchManager:
    """Mutation API over live logs and the branch arena."""

    def __init__(self, db: aiosqlite.Connection, store: LogStore | None = None):
        self.repo = SqliteBranchRepository(db)
        self.store = store or LogStore()
        self._locks: dict[str, asyncio.Lock] = {}
        # One shared connection: a transaction must not interleave with
        # another session's writes or with readers of the index.
        self._db_lock = asyncio.Lock()

    def _lock_for(self, identity: SessionIdentity) -> asyncio.Lock:
        lock = self._locks.get(identity.key)
        if lock is None:
            lock = self._locks[identity.key] = asyncio.Lock()
        return lock

    # ── Reads ───────────────────────────────────────────────────────

    def read(self, identity: SessionIdentity) -> LogSnapshot:
        text = self.store.read_log(identity)
        lines = list(iter_lines(text))
        dropped = sum(1 for line in lines if line.is_malformed)
        if dropped:
            logger.debug(f"{identity.key}: skipped {dropped} malformed line(s)")
            record_parser_failure("session_log", dropped)
        return LogSnapshot(identity=identity, text=text, lines=lines)

    async def list_branches(self, identity: SessionIdentity, turn_index: int | None = None) -> list[BranchSummary]:
        """Top-level branches archived at `turn_index` (or anywhere), newest first."""
        self.store.path_for(identity)
        async with self._db_lock:
            rows = await self.repo.list_for_session(identity.dirName, identity.fileName, turn_index)
        return [self._summary(row) for row in rows]

    async def get_branch(self, identity: SessionIdentity, branch_id: str) -> BranchDetail:
        async with self._db_lock:
            row = await self.repo.get_by_id(identity.dirName, identity.fileName, branch_id)
            if row is None:
                raise NotFoundError(f"Branch not found: {branch_id}")
            content = await self.repo.get_slice(row["slice_hash"])
        if content is None:
            raise StorageError(f"Branch content missing from arena: {branch_id}")
        summary = self._summary(row)
        turns = segment(_events(list(iter_lines(content))))
        return BranchDetail(**summary.model_dump(), content=content, turns=turns)

    async def list_children(self, identity: SessionIdentity, branch_id: str) -> list[BranchSummary]:
        async with self._db_lock:
            if await self.repo.get_by_id(identity.dirName, identity.fileName, branch_id) is None:
                raise NotFoundError(f"Branch not found: {branch_id}")
            rows = await self.repo.list_children(branch_id)
        return [self._summary(row) for row in rows]

    async def redo_candidate(self, identity: SessionIdentity) -> Optional[BranchSummary]:
        """Newest branch that continues exactly where the live log ends."""
        turn_count = self.read(identity).turn_count
        if turn_count == 0:
            return None
        branches = await self.list_branches(identity, turn_count - 1)
        return branches[0] if branches else None

    # ── Mutations ───────────────────────────────────────────────────

    async def restore_to_turn(
        self,
        identity: SessionIdentity,
        turn_index: int,
        expected_fingerprint: str | None = None,
    ) -> RestoreResponse:
        """Keep turns 0..turn_index live; archive everything after them."""
        started = time.monotonic()
        outcome = "error"
        try:
            async with self._lock_for(identity):
                with start_span("branching.restore", {"session": identity.key, "turn_index": turn_index}):
                    snapshot = self.read(identity)
                    self._check_fingerprint(snapshot, expected_fingerprint)
                    turn_count = snapshot.turn_count
                    if turn_index < 0 or turn_index >= turn_count:
                        raise NotFoundError(
                            f"Turn {turn_index} out of range for {identity.key} ({turn_count} turns)"
                        )

                    cut = turn_cut_offset(snapshot.lines, turn_index + 1)
                    kept = snapshot.text[:cut]
                    removed = snapshot.text[cut:]
                    branch = None
                    if removed:
                        branch, _ = await self._apply(
                            identity,
                            original=snapshot.text,
                            new_live=kept,
                            archive=_Archive(turn_index, list(iter_lines(removed)), removed),
                        )
                        logger.info(
                            f"Restored {identity.key} to turn {turn_index}; archived "
                            f"{len(encode(removed))} bytes as branch {branch.id if branch else '-'}"
                        )
                    outcome = "ok" if branch else "noop"
                    return RestoreResponse(
                        dirName=identity.dirName,
                        fileName=identity.fileName,
                        fingerprint=fingerprint(kept),
                        turnCount=turn_index + 1,
                        branch=branch,
                    )
        finally:
            record_branch_operation("restore", outcome, (time.monotonic() - started) * 1000)

    async def materialize_branch(
        self,
        identity: SessionIdentity,
        branch_id: str,
        turn_index: int | None = None,
        expected_fingerprint: str | None = None,
    ) -> MaterializeResponse:
        """Re-attach a branch after its divergence point.

        `turn_index` selects the last archived turn to bring back (0-based
        within the branch). The rest of the branch is archived again at the new
        last live turn so it can be redone next. Whatever was live after the
        divergence point is archived first.
        """
        started = time.monotonic()
        outcome = "error"
        try:
            async with self._lock_for(identity):
                with start_span("branching.materialize", {"session": identity.key, "branch_id": branch_id}):
                    snapshot = self.read(identity)
                    self._check_fingerprint(snapshot, expected_fingerprint)

                    async with self._db_lock:
                        row = await self.repo.get_by_id(identity.dirName, identity.fileName, branch_id)
                        content = await self.repo.get_slice(row["slice_hash"]) if row else None
                    if row is None:
                        raise NotFoundError(f"Branch not found: {branch_id}")
                    if content is None:
                        raise StorageError(f"Branch content missing from arena: {branch_id}")

                    divergence = int(row["turn_index"])
                    live_turns = snapshot.turn_count
                    if live_turns < divergence + 1:
                        raise ConflictError(
                            f"Branch {branch_id} diverges after turn {divergence} but "
                            f"{identity.key} has only {live_turns} turn(s)"
                        )

                    branch_lines = list(iter_lines(content))
                    restored, leftover = content, ""
                    if turn_index is not None:
                        archived_turns = count_turns(_events(branch_lines))
                        if turn_index < 0 or turn_index >= archived_turns:
                            raise NotFoundError(
                                f"Turn {turn_index} out of range for branch {branch_id} ({archived_turns} turns)"
                            )
                        split = turn_cut_offset(branch_lines, turn_index + 1)
                        restored, leftover = content[:split], content[split:]

                    cut = turn_cut_offset(snapshot.lines, divergence + 1)
                    prefix = snapshot.text[:cut]
                    displaced = snapshot.text[cut:]
                    if prefix and not prefix.endswith("\n"):
                        prefix += "\n"
                    new_live = prefix + restored
                    last_live_turn = count_turns(_events(list(iter_lines(new_live)))) - 1

                    archived = remainder = None
                    if displaced == restored:
                        outcome = "noop"
                    else:
                        archived, remainder = await self._apply(
                            identity,
                            original=snapshot.text,
                            new_live=new_live,
                            archive=_Archive(divergence, list(iter_lines(displaced)), displaced) if displaced else None,
                            promote=(branch_id, last_live_turn),
                            remainder=(
                                _Archive(last_live_turn, list(iter_lines(leftover)), leftover) if leftover else None
                            ),
                        )
                        outcome = "ok"
                        logger.info(
                            f"Materialized branch {branch_id} on {identity.key} after turn {divergence}"
                            + (f"; previous continuation archived as {archived.id}" if archived else "")
                            + (f"; rest of branch kept as {remainder.id}" if remainder else "")
                        )
                    return MaterializeResponse(
                        dirName=identity.dirName,
                        fileName=identity.fileName,
                        fingerprint=fingerprint(new_live if outcome == "ok" else snapshot.text),
                        turnCount=last_live_turn + 1,
                        archivedBranch=archived,
                        remainderBranch=remainder,
                    )
        finally:
            record_branch_operation("materialize", outcome, (time.monotonic() - started) * 1000)

    async def duplicate_session(self, identity: SessionIdentity, turn_index: int | None = None) -> BranchSessionResponse:
        """Copy a log (or its prefix through `turn_index`) into a new session file."""
        started = time.monotonic()
        outcome = "error"
        try:
            if turn_index is not None and turn_index < 0:
                raise InvalidRequestError(f"Invalid turn index: {turn_index}")
            snapshot = self.read(identity)
            lines = snapshot.lines
            if turn_index is not None:
                # Past the last turn keeps everything.
                cut = turn_cut_offset(lines, turn_index + 1)
                lines = list(iter_lines(snapshot.text[:cut]))

            first = next((i for i, line in enumerate(lines) if line.event is not None), None)
            if first is None:
                raise InvalidRequestError("Source session is empty")

            head = dict(lines[first].event or {})
            original_id = str(head.get("sessionId") or "")
            new_session_id = str(uuid.uuid4())
            head["sessionId"] = new_session_id
            head["branchedFrom"] = {"sessionId": original_id, "turnIndex": turn_index}

            ending = "\n" if lines[first].text.endswith("\n") else ""
            texts = [line.text for line in lines]
            texts[first] = json.dumps(head, ensure_ascii=False) + ending
            body = "".join(texts)
            if body and not body.endswith("\n"):
                body += "\n"

            target = SessionIdentity(dirName=identity.dirName, fileName=f"{new_session_id}.jsonl")
            with start_span("branching.duplicate", {"session": identity.key, "target": target.key}):
                self.store.create_log(target, body)
            outcome = "ok"
            logger.info(f"Duplicated {identity.key} -> {target.key} (turn {turn_index})")
            return BranchSessionResponse(
                dirName=target.dirName,
                fileName=target.fileName,
                sessionId=new_session_id,
                branchedFrom=original_id,
            )
        finally:
            record_branch_operation("duplicate", outcome, (time.monotonic() - started) * 1000)

    # ── Internals ───────────────────────────────────────────────────

    def _check_fingerprint(self, snapshot: LogSnapshot, expected: str | None) -> None:
        """The bytes the caller saw must still be a prefix of the log.

        Appends by the runtime keep turn boundaries stable and pass; any
        rewrite of what the caller read is a conflict.
        """
        if not expected:
            return
        length_text, _, digest = expected.partition(":")
        try:
            length = int(length_text)
        except ValueError as e:
            raise InvalidRequestError(f"Malformed fingerprint: {expected!r}") from e
        raw = encode(snapshot.text)
        if len(raw) < length or hashlib.sha256(raw[:length]).hexdigest() != digest:
            raise ConflictError(f"{snapshot.identity.key} changed since it was read; reload and retry")

    async def _insert_archive(self, identity: SessionIdentity, archive: _Archive) -> dict:
        digest = await self.repo.put_slice(archive.text)
        branch_id = str(uuid.uuid4())
        return await self.repo.insert_branch(
            branch_id,
            identity.dirName,
            identity.fileName,
            archive.turn_index,
            digest,
            _branch_label(archive.lines),
            count_turns(_events(archive.lines)),
        )

    async def _apply(
        self,
        identity: SessionIdentity,
        original: str,
        new_live: str,
        archive: _Archive | None = None,
        promote: tuple[str, int] | None = None,
        remainder: _Archive | None = None,
    ) -> tuple[BranchSummary | None, BranchSummary | None]:
        """Write branch rows, swap the live log, then commit.

        `archive` holds what leaves the live log. `promote` names the branch
        being re-attached and the last live turn afterwards; its children up
        to that turn return to the top level. `remainder` is the part of that
        branch still not live, archived at the new tip, and it takes over the
        children that are still beyond the live log.
        """
        archived_row = remainder_row = None
        async with self._db_lock:
            try:
                if archive is not None:
                    archived_row = await self._insert_archive(identity, archive)
                    nested = await self.repo.nest_beyond(
                        identity.dirName, identity.fileName, archive.turn_index, archived_row["id"]
                    )
                    if nested:
                        logger.debug(f"Nested {nested} orphaned branch(es) under {archived_row['id']}")
                if promote is not None:
                    source_id, last_live_turn = promote
                    await self.repo.promote_children(source_id, last_live_turn)
                    if remainder is not None:
                        remainder_row = await self._insert_archive(identity, remainder)
                        moved = await self.repo.move_children(source_id, remainder_row["id"])
                        if moved:
                            logger.debug(f"Moved {moved} nested branch(es) under remainder {remainder_row['id']}")
                await asyncio.to_thread(self.store.replace_log, identity, new_live, original)
            except (aiosqlite.Error, SessionDashError) as e:
                await self.repo.rollback()
                if isinstance(e, SessionDashError):
                    raise
                raise StorageError(f"Failed to archive branch for {identity.key}: {e}") from e

            try:
                await self.repo.commit()
            except aiosqlite.Error as e:
                logger.error(f"Branch commit failed for {identity.key}; restoring previous log: {e}")
                await asyncio.to_thread(self.store.replace_log, identity, original)
                try:
                    await self.repo.rollback()
                except aiosqlite.Error as rollback_error:
                    logger.error(f"Rollback after failed commit also failed: {rollback_error}")
                raise StorageError(f"Failed to commit branch for {identity.key}: {e}") from e

        return (
            self._summary(archived_row) if archived_row else None,
            self._summary(remainder_row) if remainder_row else None,
        )

    @staticmethod
    def _summary(row: dict) -> BranchSummary:
        return BranchSummary(
            id=row["id"],
            dirName=row["dir_name"],
            fileName=row["file_name"],
            turnIndex=row["turn_index"],
            label=row.get("label") or "Untitled branch",
            createdAt=row.get("created_at") or "",
            turnCount=row.get("turn_count") or 0,
            byteSize=row.get("byte_size") or 0,
            sliceHash=row.get("slice_hash") or "",
            parentBranchId=row.get("parent_branch_id"),
        )


_manager: BranchManager | None = None


async def get_branch_manager() -> BranchManager:
    """Return the process-wide manager, creating the arena on first use."""
    global _manager
    if _manager is None:
        db = await connection.get_connection()
        await run_migrations(db)
        _manager = BranchManager(db)
    return _manager


def reset_branch_manager() -> None:
    global _manager
    _manager = None
