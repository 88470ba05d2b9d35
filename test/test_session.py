#!/usr/bin/env python3
"""Tests for session module: conversation state machine, storage, registry."""

import shutil
import sys
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

# Ensure bin/ is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "bin"))

from common import StateError
from session import (
    ConversationSession,
    ConversationTurn,
    SessionRegistry,
    SessionStore,
    session_key,
)


def _session(*pairs):
    """Build a session from (role, content) pairs with ts 1..n."""
    turns = [ConversationTurn(role=r, content=c, ts=i + 1) for i, (r, c) in enumerate(pairs)]
    return ConversationSession(key="k", turns=turns)


# ---------------------------------------------------------------------------
# Append / edit
# ---------------------------------------------------------------------------
class TestAppendAndEdit(unittest.TestCase):

    def test_append_keeps_order_and_increasing_ts(self):
        s = ConversationSession()
        a = s.append_user("one")
        b = s.append_assistant("two")
        c = s.append_assistant("three")
        self.assertEqual([t.content for t in s.turns], ["one", "two", "three"])
        self.assertLess(a.ts, b.ts)
        self.assertLess(b.ts, c.ts)

    def test_invalid_role_rejected(self):
        s = ConversationSession()
        with self.assertRaises(StateError):
            s.append("system", "x")
        self.assertEqual(len(s), 0)

    def test_turns_property_is_a_copy(self):
        s = _session(("user", "u"))
        s.turns[0].content = "hacked"
        s.turns.append(ConversationTurn("user", "x", 99))
        self.assertEqual([t.content for t in s.turns], ["u"])

    def test_edit_in_place_keeps_ts(self):
        s = _session(("user", "u"), ("assistant", "a"))
        edited = s.edit_turn(2, "A2")
        self.assertEqual(edited.ts, 2)
        self.assertEqual(s.turns[1].content, "A2")

    def test_edit_unknown_turn(self):
        s = _session(("user", "u"))
        with self.assertRaises(StateError):
            s.edit_turn(42, "x")

    def test_edit_pinned_turn_updates_preferred_text(self):
        s = _session(("user", "u"), ("assistant", "a"))
        s.toggle_preferred(2)
        s.edit_turn(2, "better")
        self.assertEqual(s.preferred, {"ts": 2, "text": "better"})

    def test_ts_lookup_accepts_string(self):
        s = _session(("user", "u"), ("assistant", "a"))
        idx, turn = s.find("2")
        self.assertEqual(idx, 1)
        self.assertEqual(turn.content, "a")


# ---------------------------------------------------------------------------
# Delete with cascade
# ---------------------------------------------------------------------------
class TestDeleteCascade(unittest.TestCase):

    def test_assistant_after_user_removes_two(self):
        s = _session(("user", "u1"), ("assistant", "a1"), ("user", "u2"), ("assistant", "a2"))
        removed = s.delete_turn(4)
        self.assertEqual([t.ts for t in removed], [3, 4])
        self.assertEqual([t.ts for t in s.turns], [1, 2])

    def test_assistant_after_assistant_removes_one(self):
        s = _session(("user", "u1"), ("assistant", "a1"), ("assistant", "a1b"))
        removed = s.delete_turn(3)
        self.assertEqual(len(removed), 1)
        self.assertEqual([t.ts for t in s.turns], [1, 2])

    def test_first_assistant_removes_one(self):
        s = _session(("assistant", "a0"), ("user", "u1"))
        self.assertEqual(len(s.delete_turn(1)), 1)
        self.assertEqual([t.ts for t in s.turns], [2])

    def test_user_turn_removes_only_itself(self):
        s = _session(("user", "u1"), ("assistant", "a1"), ("user", "u2"))
        self.assertEqual(len(s.delete_turn(3)), 1)
        self.assertEqual(len(s.delete_turn(1)), 1)
        self.assertEqual([t.ts for t in s.turns], [2])

    def test_deleting_pinned_clears_preferred(self):
        s = _session(("user", "u1"), ("assistant", "a1"))
        s.toggle_preferred(2)
        s.delete_turn(2)
        self.assertIsNone(s.preferred)
        self.assertEqual(len(s), 0)

    def test_deleting_other_turn_keeps_pin(self):
        s = _session(("user", "u1"), ("assistant", "a1"), ("user", "u2"), ("assistant", "a2"))
        s.toggle_preferred(2)
        s.delete_turn(4)
        self.assertEqual(s.preferred["ts"], 2)

    def test_unknown_ts(self):
        s = _session(("user", "u1"))
        with self.assertRaises(StateError):
            s.delete_turn(77)
        self.assertEqual(len(s), 1)


# ---------------------------------------------------------------------------
# Regenerate target
# ---------------------------------------------------------------------------
class TestRegenerate(unittest.TestCase):

    def test_no_assistant_turn_raises_without_mutation(self):
        saved = []
        s = ConversationSession(
            turns=[ConversationTurn("user", "u", 1)],
            persist=lambda sess: saved.append(sess.to_dict()),
        )
        with self.assertRaises(StateError) as ctx:
            s.regenerate_target()
        self.assertEqual(ctx.exception.code, "no-assistant-turn")
        self.assertEqual(saved, [])
        self.assertEqual(len(s), 1)

    def test_targets_most_recent_assistant(self):
        s = _session(("user", "u1"), ("assistant", "a1"), ("user", "u2"), ("assistant", "a2"), ("user", "u3"))
        self.assertEqual(s.regenerate_target().ts, 4)
        self.assertEqual(s.last_user_instruction(), "u3")

    def test_replace_regenerated_updates_pin(self):
        s = _session(("user", "u1"), ("assistant", "a1"))
        s.toggle_preferred(2)
        s.replace_regenerated(2, "fresh")
        self.assertEqual(s.turns[1].content, "fresh")
        self.assertEqual(s.preferred["text"], "fresh")

    def test_replace_regenerated_rejects_user_turn(self):
        s = _session(("user", "u1"), ("assistant", "a1"))
        with self.assertRaises(StateError):
            s.replace_regenerated(1, "x")

    def test_last_user_instruction_without_user_turn(self):
        s = _session(("assistant", "a"))
        with self.assertRaises(StateError):
            s.last_user_instruction()


# ---------------------------------------------------------------------------
# Preferred pinning
# ---------------------------------------------------------------------------
class TestPreferred(unittest.TestCase):

    def test_toggle_twice_returns_to_none(self):
        s = _session(("user", "u"), ("assistant", "a"))
        self.assertTrue(s.toggle_preferred(2))
        self.assertEqual(s.preferred, {"ts": 2, "text": "a"})
        self.assertFalse(s.toggle_preferred(2))
        self.assertIsNone(s.preferred)

    def test_pinning_another_replaces(self):
        s = _session(("user", "u"), ("assistant", "a"), ("user", "u2"), ("assistant", "b"))
        s.toggle_preferred(2)
        s.toggle_preferred(4)
        self.assertEqual(s.preferred, {"ts": 4, "text": "b"})

    def test_only_assistant_turns_pin(self):
        s = _session(("user", "u"))
        with self.assertRaises(StateError):
            s.toggle_preferred(1)
        self.assertIsNone(s.preferred)


# ---------------------------------------------------------------------------
# Serialization / persistence
# ---------------------------------------------------------------------------
class TestPersistence(unittest.TestCase):

    def setUp(self):
        self._tmpdir = tempfile.mkdtemp()
        self.store = SessionStore(Path(self._tmpdir) / "sessions")

    def tearDown(self):
        shutil.rmtree(self._tmpdir, ignore_errors=True)

    def test_round_trip_two_turns(self):
        registry = SessionRegistry(self.store)
        s = registry.get("greeting", "char1")
        s.append_user("X")
        s.append_assistant("Y")

        reloaded = SessionRegistry(SessionStore(Path(self._tmpdir) / "sessions")).get("greeting", "char1")
        self.assertEqual(
            [(t.role, t.content, t.ts) for t in reloaded.turns],
            [(t.role, t.content, t.ts) for t in s.turns],
        )
        self.assertIsNone(reloaded.preferred)

    def test_every_mutation_persists(self):
        saved = []
        s = ConversationSession(persist=lambda sess: saved.append(sess.to_dict()))
        u = s.append_user("u")
        a = s.append_assistant("a")
        s.edit_turn(a.ts, "a2")
        s.toggle_preferred(a.ts)
        s.delete_turn(a.ts)
        s.clear()
        self.assertEqual(len(saved), 6)
        self.assertEqual(saved[-1], {"turns": [], "preferred": None, "selected_fields": [], "context_fields": []})
        self.assertTrue(u.ts)

    def test_from_dict_tolerates_garbage(self):
        s = ConversationSession.from_dict({
            "turns": [
                {"role": "user", "content": "ok", "ts": "5"},
                {"role": "system", "content": "nope", "ts": 6},
                {"role": "assistant", "content": "no ts"},
                "junk",
                {"role": "assistant", "content": "a", "ts": 7},
            ],
            "preferred": {"ts": 5, "text": "points at a user turn"},
            "selected_fields": ["description", 3],
        })
        self.assertEqual([t.ts for t in s.turns], [5, 7])
        self.assertIsNone(s.preferred)
        self.assertEqual(s.selected_fields, ["description", "3"])
        self.assertEqual(len(ConversationSession.from_dict(None)), 0)
        self.assertEqual(len(ConversationSession.from_dict({"turns": "x"})), 0)

    def test_store_failures_are_swallowed(self):
        with patch("session.atomic_write_json", side_effect=OSError("disk full")), \
             patch("builtins.print") as mock_print:
            self.assertFalse(self.store.save("k", {"turns": []}))
        mock_print.assert_called_once()

    def test_store_rejects_oversize(self):
        store = SessionStore(Path(self._tmpdir) / "small", max_bytes=10)
        with patch("builtins.print"):
            self.assertFalse(store.save("k", {"turns": ["x" * 100]}))
        self.assertIsNone(store.load("k"))

    def test_store_load_corrupt_returns_none(self):
        root = Path(self._tmpdir) / "sessions"
        root.mkdir(parents=True, exist_ok=True)
        (root / "bad.json").write_text("{not json", encoding="utf-8")
        with patch("builtins.print"):
            self.assertIsNone(self.store.load("bad"))

    def test_store_delete(self):
        self.store.save("gone", {"turns": []})
        self.store.delete("gone")
        self.assertIsNone(self.store.load("gone"))
        self.store.delete("gone")

    def test_mutation_survives_failed_persist(self):
        registry = SessionRegistry(self.store)
        s = registry.get("greeting", "c")
        with patch("session.atomic_write_json", side_effect=OSError("ro")), patch("builtins.print"):
            s.append_user("still here")
        self.assertEqual(s.turns[0].content, "still here")


# ---------------------------------------------------------------------------
# Registry: isolation and in-flight guard
# ---------------------------------------------------------------------------
class TestRegistry(unittest.TestCase):

    def setUp(self):
        self._tmpdir = tempfile.mkdtemp()
        self.registry = SessionRegistry(SessionStore(Path(self._tmpdir)))

    def tearDown(self):
        shutil.rmtree(self._tmpdir, ignore_errors=True)

    def test_sessions_isolated_by_character_and_kind(self):
        a = self.registry.get("greeting", "alice")
        a.append_user("hi alice")
        self.assertEqual(len(self.registry.get("greeting", "bob")), 0)
        self.assertEqual(len(self.registry.get("fields", "alice")), 0)
        self.assertIs(self.registry.get("greeting", "alice"), a)

    def test_key_scheme(self):
        self.assertEqual(session_key("greeting", "alice"), "workshop_state_greeting_alice")
        self.assertEqual(self.registry.get("fields", "bob").key, "workshop_state_fields_bob")

    def test_unknown_kind(self):
        with self.assertRaises(StateError):
            self.registry.get("lorebook", "alice")

    def test_second_submission_rejected_while_pending(self):
        s = self.registry.get("greeting", "alice")
        with self.registry.in_flight(s):
            self.assertTrue(self.registry.is_in_flight(s.key))
            with self.assertRaises(StateError) as ctx:
                self.registry.begin_request(s.key)
            self.assertEqual(ctx.exception.code, "in-flight")
        self.assertFalse(self.registry.is_in_flight(s.key))

    def test_token_released_on_error(self):
        s = self.registry.get("greeting", "alice")
        with self.assertRaises(RuntimeError):
            with self.registry.in_flight(s):
                raise RuntimeError("boom")
        token = self.registry.begin_request(s.key)
        self.registry.end_request(s.key, token)

    def test_cancel_sets_event(self):
        s = self.registry.get("greeting", "alice")
        self.assertFalse(self.registry.cancel(s.key))
        with self.registry.in_flight(s) as token:
            self.assertIsInstance(token, threading.Event)
            self.assertTrue(self.registry.cancel(s.key))
            self.assertTrue(token.is_set())

    def test_require_idle(self):
        s = self.registry.get("greeting", "alice")
        self.registry.require_idle(s.key)
        with self.registry.in_flight(s):
            with self.assertRaises(StateError) as ctx:
                self.registry.require_idle(s.key)
            self.assertEqual(ctx.exception.code, "in-flight")

    def test_other_session_not_blocked(self):
        a = self.registry.get("greeting", "alice")
        b = self.registry.get("greeting", "bob")
        with self.registry.in_flight(a):
            with self.registry.in_flight(b):
                self.assertTrue(self.registry.is_in_flight(b.key))


if __name__ == "__main__":
    unittest.main()
