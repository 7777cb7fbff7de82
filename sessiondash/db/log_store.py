"""Durable access to session log files.

Logs live at `<projects_dir>/<dirName>/<fileName>`. Text is decoded with
`surrogateescape` so any byte sequence round-trips exactly, and whole-file
rewrites go through a temp file plus `os.replace` so readers only ever see
the old or the new content.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from sessiondash import config
from sessiondash.errors import ConflictError, InvalidRequestError, NotFoundError, StorageError
from sessiondash.models import SessionIdentity

logger = logging.getLogger("sessiondash.logs")

_ENCODING = "utf-8"
_ERRORS = "surrogateescape"


def encode(text: str) -> bytes:
    return text.encode(_ENCODING, _ERRORS)


def decode(raw: bytes) -> str:
    return raw.decode(_ENCODING, _ERRORS)


def _is_path_component(value: str) -> bool:
    return bool(value) and value not in {".", ".."} and "/" not in value and "\\" not in value and "\x00" not in value


class LogStore:
    """Reads and rewrites session logs under one projects directory."""

    def __init__(self, projects_dir: Path | None = None):
        self.projects_dir = Path(projects_dir or config.PROJECTS_DIR)

    def path_for(self, identity: SessionIdentity) -> Path:
        if not _is_path_component(identity.dirName) or not _is_path_component(identity.fileName):
            raise InvalidRequestError(f"Invalid session identity: {identity.key}")
        root = self.projects_dir.resolve()
        path = (root / identity.dirName / identity.fileName).resolve()
        if root not in path.parents:
            raise InvalidRequestError(f"Session path escapes projects dir: {identity.key}")
        return path

    def exists(self, identity: SessionIdentity) -> bool:
        return self.path_for(identity).is_file()

    def read_log(self, identity: SessionIdentity) -> str:
        path = self.path_for(identity)
        try:
            return decode(path.read_bytes())
        except FileNotFoundError as e:
            raise NotFoundError(f"Session not found: {identity.key}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {identity.key}: {e}") from e

    def read_tail(self, identity: SessionIdentity, max_bytes: int) -> str:
        """Return at most the last `max_bytes` of a log."""
        path = self.path_for(identity)
        try:
            with path.open("rb") as handle:
                handle.seek(0, os.SEEK_END)
                size = handle.tell()
                handle.seek(max(0, size - max_bytes))
                return decode(handle.read())
        except FileNotFoundError as e:
            raise NotFoundError(f"Session not found: {identity.key}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {identity.key}: {e}") from e

    def replace_log(self, identity: SessionIdentity, text: str, expected: str | None = None) -> None:
        """Atomically swap the whole content of an existing or new log.

        With `expected`, the swap only happens if the log still holds exactly
        those bytes; anything written since (a runtime append, say) is a
        conflict and the log is left untouched.
        """
        path = self.path_for(identity)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(encode(text))
                    handle.flush()
                    os.fsync(handle.fileno())
                if expected is not None and path.read_bytes() != encode(expected):
                    raise ConflictError(f"{identity.key} changed while it was being rewritten; reload and retry")
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageError(f"Failed to write {identity.key}: {e}") from e
        logger.debug(f"Replaced {identity.key} ({len(text)} chars)")

    def create_log(self, identity: SessionIdentity, text: str) -> None:
        if self.exists(identity):
            raise InvalidRequestError(f"Session already exists: {identity.key}")
        self.replace_log(identity, text)

    def append_event(self, identity: SessionIdentity, event: dict[str, Any]) -> None:
        """Append one event. Owned by the agent runtime; used here by tools and tests."""
        path = self.path_for(identity)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("ab") as handle:
                handle.write(encode(json.dumps(event, ensure_ascii=False) + "\n"))
        except OSError as e:
            raise StorageError(f"Failed to append to {identity.key}: {e}") from e
