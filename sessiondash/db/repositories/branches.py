"""SQLite implementation of the branch arena repository.

Write methods do not commit: the branch manager owns the transaction so the
archive rows and the live-log swap become visible together.
"""
from __future__ import annotations

import hashlib
from datetime import datetime, timezone

import aiosqlite

from sessiondash.db.log_store import decode, encode


def slice_hash(content: str) -> str:
    return hashlib.sha256(encode(content)).hexdigest()


class SqliteBranchRepository:
    """SQLite-backed storage for archived log slices and their index."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    # ── Arena ───────────────────────────────────────────────────────

    async def put_slice(self, content: str) -> str:
        # Stored as raw bytes: logs may hold bytes that are not valid UTF-8.
        raw = encode(content)
        digest = hashlib.sha256(raw).hexdigest()
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT OR IGNORE INTO branch_slices (slice_hash, content, byte_size, line_count, created_at)
            VALUES (?, ?, ?, ?, ?)""",
            (digest, raw, len(raw), raw.count(b"\n"), now),
        )
        return digest

    async def get_slice(self, digest: str) -> str | None:
        async with self.db.execute(
            "SELECT content FROM branch_slices WHERE slice_hash = ?", (digest,)
        ) as cur:
            row = await cur.fetchone()
            return decode(bytes(row[0])) if row else None

    # ── Index ───────────────────────────────────────────────────────

    async def insert_branch(
        self,
        branch_id: str,
        dir_name: str,
        file_name: str,
        turn_index: int,
        digest: str,
        label: str,
        turn_count: int,
        parent_branch_id: str | None = None,
    ) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        async with self.db.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM branches") as cur:
            row = await cur.fetchone()
        seq = row[0] if row else 1
        await self.db.execute(
            """INSERT INTO branches (
                id, dir_name, file_name, turn_index, slice_hash, label,
                turn_count, parent_branch_id, seq, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (branch_id, dir_name, file_name, turn_index, digest, label,
             turn_count, parent_branch_id, seq, now),
        )
        return await self.get_by_id(dir_name, file_name, branch_id) or {}

    async def nest_beyond(self, dir_name: str, file_name: str, turn_index: int, parent_branch_id: str) -> int:
        """Move top-level branches past `turn_index` under `parent_branch_id`."""
        cur = await self.db.execute(
            """UPDATE branches SET parent_branch_id = ?
            WHERE dir_name = ? AND file_name = ? AND parent_branch_id IS NULL
              AND turn_index > ? AND id != ?""",
            (parent_branch_id, dir_name, file_name, turn_index, parent_branch_id),
        )
        return cur.rowcount

    async def promote_children(self, parent_branch_id: str, max_turn_index: int) -> int:
        """Return nested branches whose turn is live again to the top level."""
        cur = await self.db.execute(
            """UPDATE branches SET parent_branch_id = NULL
            WHERE parent_branch_id = ? AND turn_index <= ?""",
            (parent_branch_id, max_turn_index),
        )
        return cur.rowcount

    async def move_children(self, from_branch_id: str, to_branch_id: str) -> int:
        cur = await self.db.execute(
            "UPDATE branches SET parent_branch_id = ? WHERE parent_branch_id = ?",
            (to_branch_id, from_branch_id),
        )
        return cur.rowcount

    async def get_by_id(self, dir_name: str, file_name: str, branch_id: str) -> dict | None:
        async with self.db.execute(
            """SELECT b.*, s.byte_size FROM branches b
            JOIN branch_slices s ON s.slice_hash = b.slice_hash
            WHERE b.id = ? AND b.dir_name = ? AND b.file_name = ?""",
            (branch_id, dir_name, file_name),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_for_session(
        self,
        dir_name: str,
        file_name: str,
        turn_index: int | None = None,
        include_nested: bool = False,
    ) -> list[dict]:
        clauses = ["b.dir_name = ?", "b.file_name = ?"]
        params: list = [dir_name, file_name]
        if turn_index is not None:
            clauses.append("b.turn_index = ?")
            params.append(turn_index)
        if not include_nested:
            clauses.append("b.parent_branch_id IS NULL")
        query = f"""SELECT b.*, s.byte_size FROM branches b
            JOIN branch_slices s ON s.slice_hash = b.slice_hash
            WHERE {' AND '.join(clauses)}
            ORDER BY b.seq DESC"""
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]

    async def list_children(self, parent_branch_id: str) -> list[dict]:
        async with self.db.execute(
            """SELECT b.*, s.byte_size FROM branches b
            JOIN branch_slices s ON s.slice_hash = b.slice_hash
            WHERE b.parent_branch_id = ? ORDER BY b.seq DESC""",
            (parent_branch_id,),
        ) as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]
