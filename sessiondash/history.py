"""Most-recently-used session history with two-phase cyclic navigation.

Stepping with `go_back`/`go_forward` only moves a cursor over the current
order; the list is reordered once, by `commit_navigation`, when the user
settles on an entry. History is persisted to a JSON file under a fixed key
and storage problems never surface to the caller.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from sessiondash import config
from sessiondash.models import SessionIdentity

logger = logging.getLogger("sessiondash.history")


class SessionHistory:
    def __init__(self, storage_path: Path | None = None, limit: int | None = None):
        self.storage_path = Path(storage_path or config.HISTORY_PATH)
        self.limit = max(1, int(limit or config.HISTORY_LIMIT))
        self.entries: list[SessionIdentity] = self._load()
        self.cursor = 0
        self.navigating = False

    # ── Persistence ─────────────────────────────────────────────────

    def _load(self) -> list[SessionIdentity]:
        try:
            payload = json.loads(self.storage_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable session history at {self.storage_path}: {e}")
            return []

        raw_entries = payload.get(config.HISTORY_STORAGE_KEY) if isinstance(payload, dict) else None
        if not isinstance(raw_entries, list):
            return []
        entries: list[SessionIdentity] = []
        for raw in raw_entries:
            if not isinstance(raw, dict):
                continue
            dir_name, file_name = raw.get("dirName"), raw.get("fileName")
            if isinstance(dir_name, str) and isinstance(file_name, str):
                entries.append(SessionIdentity(dirName=dir_name, fileName=file_name))
        return entries[: self.limit]

    def _save(self) -> None:
        payload = {config.HISTORY_STORAGE_KEY: [entry.model_dump() for entry in self.entries]}
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self.storage_path.write_text(json.dumps(payload), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to persist session history to {self.storage_path}: {e}")

    # ── Transitions ─────────────────────────────────────────────────

    def push(self, identity: SessionIdentity) -> None:
        """Record a visit. The visit caused by a navigation step is not recorded."""
        if self.navigating:
            self.navigating = False
            return
        self.entries = [entry for entry in self.entries if entry.key != identity.key]
        self.entries.insert(0, identity)
        del self.entries[self.limit:]
        self.cursor = 0
        self._save()

    def go_back(self) -> Optional[SessionIdentity]:
        return self._step(1)

    def go_forward(self) -> Optional[SessionIdentity]:
        return self._step(-1)

    def _step(self, delta: int) -> Optional[SessionIdentity]:
        if len(self.entries) <= 1:
            return None
        self.cursor = (self.cursor + delta) % len(self.entries)
        self.navigating = True
        return self.entries[self.cursor]

    def commit_navigation(self) -> None:
        """Promote the entry under the cursor to the front."""
        if self.cursor != 0 and self.cursor < len(self.entries):
            entry = self.entries.pop(self.cursor)
            self.entries.insert(0, entry)
            self._save()
        self.cursor = 0
        self.navigating = False
