"""CardWorkshop session management: conversation turns, durable storage, per-character registry.

Conversation model:
  - ConversationTurn {role, content, ts}; insertion order is authoritative
  - ConversationSession: ordered turns + an optional pinned "preferred" turn
  - Mutations: append, edit, regenerate-replace, delete-with-cascade,
    preferred toggle, clear.  Each one builds the next state on copies and
    swaps it in, then persists; a failed mutation leaves prior state intact.

Storage and isolation:
  - SessionStore: one JSON document per key under data_dir/sessions/
    (failures are printed and ignored; memory stays authoritative)
  - SessionRegistry: one session per (kind, character id), plus the
    in-flight token and cancellation event for each session
"""

from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from common import StateError, atomic_write_json, next_ts, safe_key


ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
_ROLES = (ROLE_USER, ROLE_ASSISTANT)

WORKSHOP_KINDS = ("greeting", "fields")


def session_key(kind: str, character_id: str) -> str:
    """Durable storage key for one workshop session."""
    return f"workshop_state_{kind}_{character_id or 'global'}"


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------
@dataclass
class ConversationTurn:
    """One message in the workshop transcript."""
    role: str  # "user" | "assistant"
    content: str
    ts: int  # identity/display key; never used for sorting


def _same_ts(a: Any, b: Any) -> bool:
    return str(a) == str(b)


class ConversationSession:
    """Mutable transcript for one character's authoring panel.

    External callers read through `turns`/`preferred` (copies) and mutate
    only through the methods below.
    """

    def __init__(
        self,
        key: str = "",
        turns: Optional[List[ConversationTurn]] = None,
        preferred: Optional[Dict[str, Any]] = None,
        selected_fields: Optional[List[str]] = None,
        context_fields: Optional[List[str]] = None,
        persist: Optional[Callable[["ConversationSession"], None]] = None,
    ):
        self.key = key
        self._turns: List[ConversationTurn] = list(turns or [])
        self._preferred: Optional[Dict[str, Any]] = dict(preferred) if preferred else None
        self.selected_fields: List[str] = list(selected_fields or [])
        self.context_fields: List[str] = list(context_fields or [])
        self._persist = persist
        self._lock = threading.RLock()

    # -- read access ------------------------------------------------------
    @property
    def turns(self) -> List[ConversationTurn]:
        with self._lock:
            return [copy.copy(t) for t in self._turns]

    @property
    def preferred(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return dict(self._preferred) if self._preferred else None

    def __len__(self) -> int:
        return len(self._turns)

    def find(self, ts: Any) -> Tuple[int, Optional[ConversationTurn]]:
        """Return (index, turn) for *ts*, or (-1, None)."""
        with self._lock:
            for i, t in enumerate(self._turns):
                if _same_ts(t.ts, ts):
                    return i, copy.copy(t)
        return -1, None

    def last_turn(self, role: str) -> Optional[ConversationTurn]:
        """Most recent turn with *role* (reverse scan)."""
        with self._lock:
            for t in reversed(self._turns):
                if t.role == role:
                    return copy.copy(t)
        return None

    def last_user_instruction(self) -> str:
        """Content of the most recent user turn; StateError when there is none."""
        turn = self.last_turn(ROLE_USER)
        if turn is None:
            raise StateError("no-user-turn", "No prior user instruction to regenerate from.")
        return turn.content

    # -- internals --------------------------------------------------------
    def _commit(self, turns: List[ConversationTurn], preferred: Optional[Dict[str, Any]]) -> None:
        self._turns = turns
        self._preferred = preferred
        self._save()

    def _save(self) -> None:
        if self._persist is not None:
            self._persist(self)

    def _next_ts(self) -> int:
        last = max((t.ts for t in self._turns if isinstance(t.ts, int)), default=None)
        return next_ts(last)

    # -- mutations --------------------------------------------------------
    def append(self, role: str, content: str) -> ConversationTurn:
        """Append a turn at the end; never reorders."""
        if role not in _ROLES:
            raise StateError("invalid-role", f"Unknown turn role: {role!r}")
        with self._lock:
            turn = ConversationTurn(role=role, content=str(content), ts=self._next_ts())
            self._commit(self._turns + [turn], self._preferred)
            return copy.copy(turn)

    def append_user(self, content: str) -> ConversationTurn:
        return self.append(ROLE_USER, content)

    def append_assistant(self, content: str) -> ConversationTurn:
        return self.append(ROLE_ASSISTANT, content)

    def edit_turn(self, ts: Any, content: str) -> ConversationTurn:
        """Replace a turn's content in place; ts is unchanged.  Keeps a pinned copy in sync."""
        with self._lock:
            idx, turn = self.find(ts)
            if turn is None:
                raise StateError("unknown-turn", f"No turn with ts={ts}")
            turns = [copy.copy(t) for t in self._turns]
            turns[idx].content = str(content)
            preferred = dict(self._preferred) if self._preferred else None
            if preferred and _same_ts(preferred.get("ts"), turns[idx].ts):
                preferred["text"] = turns[idx].content
            self._commit(turns, preferred)
            return copy.copy(turns[idx])

    def regenerate_target(self) -> ConversationTurn:
        """Most recent assistant turn, the one a regenerate replaces."""
        turn = self.last_turn(ROLE_ASSISTANT)
        if turn is None:
            raise StateError("no-assistant-turn", "There is no assistant reply to regenerate yet.")
        return turn

    def replace_regenerated(self, ts: Any, content: str) -> ConversationTurn:
        """Write regenerated text into the target assistant turn."""
        idx, turn = self.find(ts)
        if turn is None or turn.role != ROLE_ASSISTANT:
            raise StateError("unknown-turn", f"No assistant turn with ts={ts}")
        return self.edit_turn(ts, content)

    def delete_turn(self, ts: Any) -> List[ConversationTurn]:
        """Delete a turn; an assistant turn also takes its immediately preceding user turn.

        Returns the removed turns (oldest first).  Clears `preferred` when the
        pinned turn is among them.
        """
        with self._lock:
            idx, turn = self.find(ts)
            if turn is None:
                raise StateError("unknown-turn", f"No turn with ts={ts}")
            start = idx
            if turn.role == ROLE_ASSISTANT and idx > 0 and self._turns[idx - 1].role == ROLE_USER:
                start = idx - 1
            removed = [copy.copy(t) for t in self._turns[start:idx + 1]]
            turns = self._turns[:start] + self._turns[idx + 1:]
            preferred = self._preferred
            if preferred and any(_same_ts(preferred.get("ts"), t.ts) for t in removed):
                preferred = None
            self._commit(turns, dict(preferred) if preferred else None)
            return removed

    def toggle_preferred(self, ts: Any) -> bool:
        """Pin/unpin an assistant turn.  Returns True when the turn is now pinned."""
        with self._lock:
            _, turn = self.find(ts)
            if turn is None:
                raise StateError("unknown-turn", f"No turn with ts={ts}")
            if turn.role != ROLE_ASSISTANT:
                raise StateError("not-assistant", "Only assistant replies can be marked as preferred.")
            if self._preferred and _same_ts(self._preferred.get("ts"), turn.ts):
                self._commit(self._turns, None)
                return False
            self._commit(self._turns, {"ts": turn.ts, "text": turn.content})
            return True

    def set_fields(self, selected: Optional[List[str]] = None, context: Optional[List[str]] = None) -> None:
        """Update the field-editor selections (persisted with the transcript)."""
        with self._lock:
            if selected is not None:
                self.selected_fields = [str(k) for k in selected]
            if context is not None:
                self.context_fields = [str(k) for k in context if str(k) not in self.selected_fields]
            self._save()

    def clear(self) -> None:
        """Drop every turn and the pin."""
        with self._lock:
            self._commit([], None)

    # -- serialization ----------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "turns": [asdict(t) for t in self._turns],
                "preferred": dict(self._preferred) if self._preferred else None,
                "selected_fields": list(self.selected_fields),
                "context_fields": list(self.context_fields),
            }

    @classmethod
    def from_dict(
        cls,
        raw: Any,
        key: str = "",
        persist: Optional[Callable[["ConversationSession"], None]] = None,
    ) -> "ConversationSession":
        """Rebuild a session from a stored document, tolerating malformed input."""
        data = raw if isinstance(raw, dict) else {}
        turns: List[ConversationTurn] = []
        raw_turns = data.get("turns")
        for item in raw_turns if isinstance(raw_turns, list) else []:
            if not isinstance(item, dict) or item.get("role") not in _ROLES:
                continue
            ts = item.get("ts")
            try:
                ts = int(ts)
            except (TypeError, ValueError):
                continue
            turns.append(ConversationTurn(role=item["role"], content=str(item.get("content") or ""), ts=ts))

        preferred = data.get("preferred")
        if isinstance(preferred, dict):
            pinned = next((t for t in turns if _same_ts(t.ts, preferred.get("ts"))), None)
            if pinned is None or pinned.role != ROLE_ASSISTANT:
                preferred = None
            else:
                preferred = {"ts": pinned.ts, "text": str(preferred.get("text") or pinned.content)}
        else:
            preferred = None

        def _str_list(value: Any) -> List[str]:
            return [str(v) for v in value] if isinstance(value, list) else []

        return cls(
            key=key,
            turns=turns,
            preferred=preferred,
            selected_fields=_str_list(data.get("selected_fields")),
            context_fields=_str_list(data.get("context_fields")),
            persist=persist,
        )


# ---------------------------------------------------------------------------
# Durable per-character storage
# ---------------------------------------------------------------------------
class SessionStore:
    """Key/value JSON storage under a directory.  Never raises on I/O."""

    def __init__(self, root: Path, max_bytes: int = 2_000_000):
        self.root = Path(root)
        self.max_bytes = max_bytes

    def _path(self, key: str) -> Path:
        return self.root / f"{safe_key(key)}.json"

    def save(self, key: str, payload: Any) -> bool:
        try:
            serialized = json.dumps(payload, ensure_ascii=False)
            if len(serialized.encode("utf-8")) > self.max_bytes:
                print(f"[Workshop] Session '{key}' exceeds {self.max_bytes} bytes; not saved")
                return False
            atomic_write_json(self._path(key), payload)
            return True
        except (OSError, TypeError, ValueError) as exc:
            print(f"[Workshop] Save session failed ({key}): {exc}")
            return False

    def load(self, key: str) -> Any:
        path = self._path(key)
        try:
            if not path.exists():
                return None
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            print(f"[Workshop] Load session failed ({key}): {exc}")
            return None

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            print(f"[Workshop] Delete session failed ({key}): {exc}")


# ---------------------------------------------------------------------------
# Registry: isolation, in-flight guard, cancellation
# ---------------------------------------------------------------------------
class SessionRegistry:
    """Owns every open session; one per (kind, character id)."""

    def __init__(self, store: SessionStore):
        self.store = store
        self._sessions: Dict[str, ConversationSession] = {}
        self._in_flight: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def _persist(self, session: ConversationSession) -> None:
        self.store.save(session.key, session.to_dict())

    def get(self, kind: str, character_id: str) -> ConversationSession:
        """Return the session for (kind, character), loading it lazily from storage."""
        if kind not in WORKSHOP_KINDS:
            raise StateError("unknown-kind", f"Unknown workshop kind: {kind!r}")
        key = session_key(kind, character_id)
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                session = ConversationSession.from_dict(self.store.load(key), key=key, persist=self._persist)
                self._sessions[key] = session
            return session

    def drop(self, kind: str, character_id: str) -> None:
        """Forget the cached session (next get() reloads from storage)."""
        with self._lock:
            self._sessions.pop(session_key(kind, character_id), None)

    def is_in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight

    def require_idle(self, key: str) -> None:
        """StateError("in-flight") while a request for *key* is pending."""
        if self.is_in_flight(key):
            raise StateError("in-flight", "Wait for the pending request to finish or cancel it.")

    def begin_request(self, key: str) -> threading.Event:
        """Claim the session's in-flight token; StateError when one is pending."""
        with self._lock:
            if key in self._in_flight:
                raise StateError("in-flight", "A request for this session is already running.")
            token = threading.Event()
            self._in_flight[key] = token
            return token

    def end_request(self, key: str, token: threading.Event) -> None:
        with self._lock:
            if self._in_flight.get(key) is token:
                del self._in_flight[key]

    def cancel(self, key: str) -> bool:
        """Signal the pending request for *key*.  Returns False when nothing is pending."""
        with self._lock:
            token = self._in_flight.get(key)
        if token is None:
            return False
        token.set()
        return True

    @contextmanager
    def in_flight(self, session: ConversationSession) -> Iterator[threading.Event]:
        token = self.begin_request(session.key)
        try:
            yield token
        finally:
            self.end_request(session.key, token)
