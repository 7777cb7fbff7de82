import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import aiosqlite

from sessiondash.db.log_store import LogStore, encode
from sessiondash.db.sqlite_migrations import run_migrations
from sessiondash.errors import ConflictError, InvalidRequestError, NotFoundError, StorageError
from sessiondash.models import SessionIdentity
from sessiondash.parsers.events import serialize
from sessiondash.services.branching import BranchManager, fingerprint


def _user(text: str) -> dict:
    return {"type": "user", "sessionId": "sess-1", "message": {"role": "user", "content": text}}


def _assistant(text: str = "", tool: tuple[str, str] | None = None) -> dict:
    content: list[dict] = [{"type": "text", "text": text}] if text else []
    if tool:
        content.append({"type": "tool_use", "id": tool[0], "name": tool[1], "input": {}})
    return {
        "type": "assistant",
        "sessionId": "sess-1",
        "message": {"role": "assistant", "stop_reason": "tool_use" if tool else "end_turn", "content": content},
    }


def _tool_result(tool_id: str) -> dict:
    return {
        "type": "user",
        "sessionId": "sess-1",
        "message": {"role": "user", "content": [{"type": "tool_result", "tool_use_id": tool_id, "content": "ok"}]},
    }


def _session_log(turns: int = 5, prompts: list[str] | None = None) -> str:
    events: list[dict] = [{"type": "system", "subtype": "init", "sessionId": "sess-1"}]
    for i in range(turns):
        prompt = prompts[i] if prompts else f"prompt {i}"
        events += [
            _user(prompt),
            _assistant(tool=(f"toolu_{i}", "Read")),
            _tool_result(f"toolu_{i}"),
            _assistant(f"answer {i}"),
        ]
    return serialize(events)


class BranchManagerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.store = LogStore(Path(tmpdir.name))
        self.manager = BranchManager(self.db, self.store)
        self.identity = SessionIdentity(dirName="-home-dev-app", fileName="sess-1.jsonl")
        self.original = _session_log()
        self._write(self.original)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    def _write(self, text: str, identity: SessionIdentity | None = None) -> None:
        path = self.store.path_for(identity or self.identity)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(encode(text))

    def _prompts(self, identity: SessionIdentity | None = None) -> list[str]:
        return [turn.userText for turn in self.manager.read(identity or self.identity).turns]

    # ── restore ─────────────────────────────────────────────────────

    async def test_restore_keeps_prefix_and_archives_suffix(self) -> None:
        result = await self.manager.restore_to_turn(self.identity, 2)

        snapshot = self.manager.read(self.identity)
        self.assertEqual([turn.index for turn in snapshot.turns], [0, 1, 2])
        self.assertEqual(result.turnCount, 3)
        self.assertEqual(result.fingerprint, snapshot.fingerprint)

        branches = await self.manager.list_branches(self.identity, 2)
        self.assertEqual(len(branches), 1)
        self.assertEqual(branches[0].id, result.branch.id)
        self.assertEqual(branches[0].label, "prompt 3")
        self.assertEqual(branches[0].turnCount, 2)

        detail = await self.manager.get_branch(self.identity, result.branch.id)
        self.assertEqual([turn.userText for turn in detail.turns], ["prompt 3", "prompt 4"])

    async def test_live_log_plus_branch_reconstructs_original(self) -> None:
        for turn_index in range(4):
            with self.subTest(turn_index=turn_index):
                self._write(self.original)
                result = await self.manager.restore_to_turn(self.identity, turn_index)

                live = self.store.read_log(self.identity)
                detail = await self.manager.get_branch(self.identity, result.branch.id)
                self.assertEqual(encode(live + detail.content), encode(self.original))
                self.assertEqual(len(self._prompts()), turn_index + 1)
                self.assertEqual(detail.byteSize, len(encode(detail.content)))

    async def test_restore_preserves_undecodable_bytes(self) -> None:
        raw = encode(self.original)
        cut = raw.index(b'"prompt 4"')
        raw = raw[:cut] + raw[cut:].replace(b"\n", b"\n\xff\xfe garbage\n", 1)
        original = raw.decode("utf-8", "surrogateescape")
        self._write(original)

        result = await self.manager.restore_to_turn(self.identity, 1)

        detail = await self.manager.get_branch(self.identity, result.branch.id)
        live = self.store.read_log(self.identity)
        self.assertEqual(encode(live) + encode(detail.content), raw)

    async def test_restore_to_last_turn_is_noop(self) -> None:
        result = await self.manager.restore_to_turn(self.identity, 4)

        self.assertIsNone(result.branch)
        self.assertEqual(self.store.read_log(self.identity), self.original)
        self.assertEqual(await self.manager.list_branches(self.identity), [])

    async def test_restore_out_of_range_is_not_found(self) -> None:
        for turn_index in (-1, 5):
            with self.subTest(turn_index=turn_index):
                with self.assertRaises(NotFoundError):
                    await self.manager.restore_to_turn(self.identity, turn_index)
        self.assertEqual(self.store.read_log(self.identity), self.original)

    async def test_restore_unknown_session_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            await self.manager.restore_to_turn(SessionIdentity(dirName="-home-dev-app", fileName="nope.jsonl"), 0)

    async def test_restore_rejects_rewritten_log(self) -> None:
        seen = fingerprint(self.original)
        rewritten = self.original.replace("prompt 0", "prompt zero")
        self._write(rewritten)

        with self.assertRaises(ConflictError):
            await self.manager.restore_to_turn(self.identity, 1, seen)

        self.assertEqual(self.store.read_log(self.identity), rewritten)
        self.assertEqual(await self.manager.list_branches(self.identity), [])

    async def test_restore_tolerates_appended_events(self) -> None:
        seen = fingerprint(self.original)
        self.store.append_event(self.identity, _user("prompt 5"))

        result = await self.manager.restore_to_turn(self.identity, 2, seen)

        self.assertEqual(result.turnCount, 3)
        detail = await self.manager.get_branch(self.identity, result.branch.id)
        self.assertEqual([turn.userText for turn in detail.turns], ["prompt 3", "prompt 4", "prompt 5"])

    async def test_malformed_fingerprint_is_invalid(self) -> None:
        with self.assertRaises(InvalidRequestError):
            await self.manager.restore_to_turn(self.identity, 1, "not-a-fingerprint")

    async def test_concurrent_restores_with_same_fingerprint_conflict(self) -> None:
        seen = fingerprint(self.original)

        results = await asyncio.gather(
            self.manager.restore_to_turn(self.identity, 2, seen),
            self.manager.restore_to_turn(self.identity, 1, seen),
            return_exceptions=True,
        )

        self.assertEqual(sum(isinstance(r, ConflictError) for r in results), 1)
        self.assertEqual(len(await self.manager.list_branches(self.identity)), 1)

    async def test_commit_failure_restores_previous_log(self) -> None:
        with patch.object(self.manager.repo, "commit", side_effect=aiosqlite.OperationalError("disk I/O error")):
            with self.assertRaises(StorageError):
                await self.manager.restore_to_turn(self.identity, 1)

        self.assertEqual(self.store.read_log(self.identity), self.original)
        self.assertEqual(await self.manager.list_branches(self.identity), [])

    async def test_write_failure_rolls_back_branch_rows(self) -> None:
        with patch.object(self.store, "replace_log", side_effect=StorageError("read-only filesystem")):
            with self.assertRaises(StorageError):
                await self.manager.restore_to_turn(self.identity, 1)

        self.assertEqual(self.store.read_log(self.identity), self.original)
        self.assertEqual(await self.manager.list_branches(self.identity), [])

    async def test_restore_conflicts_when_log_grows_during_rewrite(self) -> None:
        real_replace = self.store.replace_log

        def append_then_replace(identity, text, expected=None):
            self.store.append_event(identity, _user("runtime append"))
            real_replace(identity, text, expected)

        with patch.object(self.store, "replace_log", side_effect=append_then_replace):
            with self.assertRaises(ConflictError):
                await self.manager.restore_to_turn(self.identity, 2)

        live = self.store.read_log(self.identity)
        self.assertTrue(live.startswith(self.original))
        self.assertEqual(self._prompts()[-1], "runtime append")
        self.assertEqual(await self.manager.list_branches(self.identity), [])

    async def test_materialize_conflicts_when_log_grows_during_rewrite(self) -> None:
        first = await self.manager.restore_to_turn(self.identity, 1)
        real_replace = self.store.replace_log

        def append_then_replace(identity, text, expected=None):
            self.store.append_event(identity, _user("runtime append"))
            real_replace(identity, text, expected)

        with patch.object(self.store, "replace_log", side_effect=append_then_replace):
            with self.assertRaises(ConflictError):
                await self.manager.materialize_branch(self.identity, first.branch.id)

        self.assertEqual(self._prompts(), ["prompt 0", "prompt 1", "runtime append"])
        self.assertEqual([b.id for b in await self.manager.list_branches(self.identity)], [first.branch.id])

    async def test_long_prompt_label_is_truncated(self) -> None:
        long_prompt = "x" * 100
        self._write(_session_log(3, ["first", long_prompt, "third"]))

        result = await self.manager.restore_to_turn(self.identity, 0)

        self.assertEqual(len(result.branch.label), 60)
        self.assertTrue(result.branch.label.endswith("..."))

    # ── materialize ─────────────────────────────────────────────────

    async def test_materialize_then_restore_is_noop_on_turns(self) -> None:
        first = await self.manager.restore_to_turn(self.identity, 2)
        after_restore = self._prompts()

        materialized = await self.manager.materialize_branch(self.identity, first.branch.id)

        self.assertIsNone(materialized.archivedBranch)
        self.assertEqual(materialized.turnCount, 5)
        self.assertEqual(self.store.read_log(self.identity), self.original)

        await self.manager.restore_to_turn(self.identity, 2)
        self.assertEqual(self._prompts(), after_restore)
        self.assertEqual(len(await self.manager.list_branches(self.identity, 2)), 2)

    async def test_materialize_archives_displaced_continuation(self) -> None:
        first = await self.manager.restore_to_turn(self.identity, 2)
        self.store.append_event(self.identity, _user("new prompt"))
        self.store.append_event(self.identity, _assistant("new answer"))

        result = await self.manager.materialize_branch(self.identity, first.branch.id)

        self.assertEqual(self._prompts(), [f"prompt {i}" for i in range(5)])
        self.assertIsNotNone(result.archivedBranch)
        self.assertEqual(result.archivedBranch.turnIndex, 2)
        self.assertEqual(result.archivedBranch.label, "new prompt")
        branches = await self.manager.list_branches(self.identity, 2)
        self.assertEqual([b.id for b in branches], [result.archivedBranch.id, first.branch.id])

    async def test_materialize_partial_branch(self) -> None:
        first = await self.manager.restore_to_turn(self.identity, 1)

        result = await self.manager.materialize_branch(self.identity, first.branch.id, turn_index=0)

        self.assertEqual(result.turnCount, 3)
        self.assertEqual(self._prompts(), ["prompt 0", "prompt 1", "prompt 2"])
        detail = await self.manager.get_branch(self.identity, first.branch.id)
        self.assertEqual(detail.turnCount, 3)

    async def test_partial_materialize_keeps_rest_of_branch_redoable(self) -> None:
        late = await self.manager.restore_to_turn(self.identity, 3)
        first = await self.manager.restore_to_turn(self.identity, 1)

        partial = await self.manager.materialize_branch(self.identity, first.branch.id, turn_index=0)

        self.assertEqual(self._prompts(), ["prompt 0", "prompt 1", "prompt 2"])
        rest = partial.remainderBranch
        self.assertIsNotNone(rest)
        self.assertEqual((rest.turnIndex, rest.turnCount, rest.label), (2, 1, "prompt 3"))
        children = await self.manager.list_children(self.identity, rest.id)
        self.assertEqual([b.id for b in children], [late.branch.id])
        self.assertEqual((await self.manager.redo_candidate(self.identity)).id, rest.id)

        await self.manager.materialize_branch(self.identity, rest.id)
        self.assertEqual((await self.manager.redo_candidate(self.identity)).id, late.branch.id)

        await self.manager.materialize_branch(self.identity, late.branch.id)
        self.assertEqual(self.store.read_log(self.identity), self.original)
        self.assertIsNone(await self.manager.redo_candidate(self.identity))

    async def test_materialize_rejects_unknown_branch_and_turn(self) -> None:
        first = await self.manager.restore_to_turn(self.identity, 1)

        with self.assertRaises(NotFoundError):
            await self.manager.materialize_branch(self.identity, "missing")
        with self.assertRaises(NotFoundError):
            await self.manager.materialize_branch(self.identity, first.branch.id, turn_index=3)

    async def test_materialize_conflicts_when_divergence_point_is_gone(self) -> None:
        late = await self.manager.restore_to_turn(self.identity, 3)
        await self.manager.restore_to_turn(self.identity, 1)

        with self.assertRaises(ConflictError):
            await self.manager.materialize_branch(self.identity, late.branch.id)

    async def test_restore_nests_orphans_and_materialize_promotes_them(self) -> None:
        late = await self.manager.restore_to_turn(self.identity, 3)
        early = await self.manager.restore_to_turn(self.identity, 1)

        top_level = await self.manager.list_branches(self.identity)
        self.assertEqual([b.id for b in top_level], [early.branch.id])
        children = await self.manager.list_children(self.identity, early.branch.id)
        self.assertEqual([b.id for b in children], [late.branch.id])
        self.assertEqual(children[0].parentBranchId, early.branch.id)

        await self.manager.materialize_branch(self.identity, early.branch.id)

        self.assertEqual(len(self._prompts()), 4)
        top_level = await self.manager.list_branches(self.identity)
        self.assertEqual({b.id for b in top_level}, {early.branch.id, late.branch.id})
        candidate = await self.manager.redo_candidate(self.identity)
        self.assertEqual(candidate.id, late.branch.id)

    async def test_redo_candidate_requires_matching_turn_count(self) -> None:
        self.assertIsNone(await self.manager.redo_candidate(self.identity))
        result = await self.manager.restore_to_turn(self.identity, 2)
        self.assertEqual((await self.manager.redo_candidate(self.identity)).id, result.branch.id)

        self.store.append_event(self.identity, _user("moved on"))
        self.assertIsNone(await self.manager.redo_candidate(self.identity))

    # ── duplicate ───────────────────────────────────────────────────

    async def test_duplicate_copies_log_with_new_session_id(self) -> None:
        result = await self.manager.duplicate_session(self.identity)

        target = SessionIdentity(dirName=result.dirName, fileName=result.fileName)
        self.assertEqual(result.dirName, self.identity.dirName)
        self.assertEqual(result.fileName, f"{result.sessionId}.jsonl")
        self.assertEqual(result.branchedFrom, "sess-1")

        copied = self.store.read_log(target).splitlines()
        source = self.original.splitlines()
        head = json.loads(copied[0])
        self.assertEqual(head["sessionId"], result.sessionId)
        self.assertEqual(head["branchedFrom"], {"sessionId": "sess-1", "turnIndex": None})
        self.assertEqual(copied[1:], source[1:])
        self.assertEqual(self.store.read_log(self.identity), self.original)

    async def test_duplicate_prefix_through_turn(self) -> None:
        result = await self.manager.duplicate_session(self.identity, 1)

        target = SessionIdentity(dirName=result.dirName, fileName=result.fileName)
        self.assertEqual(self._prompts(target), ["prompt 0", "prompt 1"])
        head = json.loads(self.store.read_log(target).splitlines()[0])
        self.assertEqual(head["branchedFrom"]["turnIndex"], 1)

    async def test_duplicate_beyond_last_turn_keeps_everything(self) -> None:
        result = await self.manager.duplicate_session(self.identity, 10)

        target = SessionIdentity(dirName=result.dirName, fileName=result.fileName)
        self.assertEqual(len(self._prompts(target)), 5)

    async def test_duplicate_rejects_empty_source_and_negative_turn(self) -> None:
        empty = SessionIdentity(dirName="-home-dev-app", fileName="empty.jsonl")
        self._write("\n\n", empty)

        with self.assertRaises(InvalidRequestError):
            await self.manager.duplicate_session(empty)
        with self.assertRaises(InvalidRequestError):
            await self.manager.duplicate_session(self.identity, -1)


if __name__ == "__main__":
    unittest.main()
