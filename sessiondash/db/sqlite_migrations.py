"""Database schema creation and versioning.

The branch store is an arena of immutable log slices plus an index from
(session identity, turn index) to the slices archived there.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("sessiondash.db")

SCHEMA_VERSION = 1

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Arena: content-addressed, never updated ─────────────────────
CREATE TABLE IF NOT EXISTS branch_slices (
    slice_hash  TEXT PRIMARY KEY,
    content     BLOB NOT NULL,
    byte_size   INTEGER NOT NULL,
    line_count  INTEGER NOT NULL,
    created_at  TEXT NOT NULL
);

-- ── 2. Branch index ────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS branches (
    id                TEXT PRIMARY KEY,
    dir_name          TEXT NOT NULL,
    file_name         TEXT NOT NULL,
    turn_index        INTEGER NOT NULL,
    slice_hash        TEXT NOT NULL REFERENCES branch_slices(slice_hash),
    label             TEXT NOT NULL DEFAULT 'Untitled branch',
    turn_count        INTEGER NOT NULL DEFAULT 0,
    parent_branch_id  TEXT REFERENCES branches(id),
    seq               INTEGER NOT NULL,
    created_at        TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_branches_turn   ON branches(dir_name, file_name, turn_index);
CREATE INDEX IF NOT EXISTS idx_branches_parent ON branches(parent_branch_id);
"""


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables and record the schema version."""
    await db.executescript(_TABLES)

    async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
        row = await cur.fetchone()
    current = row[0] if row and row[0] is not None else 0
    if current < SCHEMA_VERSION:
        await db.execute(
            "INSERT INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
