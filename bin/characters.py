"""CardWorkshop character access: closed field schema, file-backed store, change application.

Characters are TavernCard-shaped dicts ({name, description, ..., data: {...}}).
Only the keys in CHARACTER_FIELDS (plus indexed `alternate_greetings[N].mes`)
can be read or written; everything else is rejected with
ConfigurationError("unknown-field").
"""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from common import ConfigurationError, ParseError, StateError, atomic_write_json, safe_key


GREETING_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class FieldSpec:
    key: str
    label: str
    multiline: bool
    category: str  # "basics" | "advanced" | "metadata"


CHARACTER_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("name", "Name", False, "basics"),
    FieldSpec("description", "Description", True, "basics"),
    FieldSpec("personality", "Personality", True, "basics"),
    FieldSpec("scenario", "Scenario", True, "basics"),
    FieldSpec("first_mes", "First Message", True, "basics"),
    FieldSpec("mes_example", "Examples of Dialogue", True, "basics"),
    FieldSpec("alternate_greetings", "Alternate Greetings", True, "basics"),
    FieldSpec("data.system_prompt", "Main Prompt", True, "advanced"),
    FieldSpec("data.post_history_instructions", "Post-History Instructions", True, "advanced"),
    FieldSpec("data.extensions.depth_prompt.prompt", "Character Note", False, "advanced"),
    FieldSpec("data.creator", "Created by", False, "metadata"),
    FieldSpec("data.creator_notes", "Creator's Notes", True, "metadata"),
)
_FIELDS_BY_KEY = {f.key: f for f in CHARACTER_FIELDS}

# Written to both the card root and `data` so the two never disagree.
SHARED_SPEC_FIELDS = ("name", "description", "personality", "scenario", "first_mes", "mes_example")

_GREETING_INDEX_RE = re.compile(r"^alternate_greetings\[(\d+)\]\.mes$")


def _greeting_index(key: str) -> Optional[int]:
    m = _GREETING_INDEX_RE.match(key)
    return int(m.group(1)) if m else None


def is_known_field(key: str) -> bool:
    return key in _FIELDS_BY_KEY or _greeting_index(key) is not None


def field_label(key: str) -> str:
    spec = _FIELDS_BY_KEY.get(key)
    if spec is not None:
        return spec.label
    idx = _greeting_index(key)
    if idx is not None:
        return f"Alternate Greeting #{idx + 1}"
    return key


def _require_known(key: str) -> None:
    if not is_known_field(key):
        raise ConfigurationError("unknown-field", f"Unknown character field: {key!r}")


def _greetings(char: Dict[str, Any]) -> List[Any]:
    data = char.get("data") if isinstance(char.get("data"), dict) else {}
    greetings = data.get("alternate_greetings") or char.get("alternate_greetings") or []
    return greetings if isinstance(greetings, list) else []


def _greeting_text(greeting: Any) -> str:
    if isinstance(greeting, dict):
        return str(greeting.get("mes") or "")
    return "" if greeting is None else str(greeting)


def greeting_texts(char: Dict[str, Any]) -> List[str]:
    return [_greeting_text(g) for g in _greetings(char or {})]


# ---------------------------------------------------------------------------
# Typed accessors
# ---------------------------------------------------------------------------
def get_field(char: Dict[str, Any], key: str) -> str:
    """Read a schema field as a string ('' when absent)."""
    _require_known(key)
    char = char or {}
    if key == "alternate_greetings":
        return GREETING_SEPARATOR.join(_greeting_text(g) for g in _greetings(char))
    idx = _greeting_index(key)
    if idx is not None:
        greetings = _greetings(char)
        return _greeting_text(greetings[idx]) if idx < len(greetings) else ""
    if key in SHARED_SPEC_FIELDS:
        data = char.get("data") if isinstance(char.get("data"), dict) else {}
        return str(data.get(key) or char.get(key) or "")
    value: Any = char
    for part in key.split("."):
        value = value.get(part) if isinstance(value, dict) else None
    return "" if value is None else str(value)


def set_field(char: Dict[str, Any], key: str, value: Any) -> None:
    """Write a schema field in place, keeping root and `data` copies consistent."""
    _require_known(key)
    text = "" if value is None else str(value)
    data = char.setdefault("data", {})

    if key == "alternate_greetings":
        messages = [m.strip() for m in text.split(GREETING_SEPARATOR)] if text else []
        greetings = [{"mes": m} for m in messages if m]
        data["alternate_greetings"] = greetings
        char["alternate_greetings"] = [dict(g) for g in greetings]
        return

    idx = _greeting_index(key)
    if idx is not None:
        for holder in (data, char):
            lst = holder.get("alternate_greetings")
            if not isinstance(lst, list):
                lst = holder["alternate_greetings"] = []
            while len(lst) <= idx:
                lst.append({"mes": ""})
            lst[idx] = {"mes": text}
        return

    if key in SHARED_SPEC_FIELDS:
        char[key] = text
        data[key] = text
        spec = char.get("spec") or data.get("spec") or "chara_card_v2"
        spec_version = char.get("spec_version") or data.get("spec_version") or "2.0"
        char["spec"] = data["spec"] = spec
        char["spec_version"] = data["spec_version"] = spec_version
        return

    # data.* nested paths
    parts = key.split(".")[1:]
    target = data
    for part in parts[:-1]:
        nxt = target.get(part)
        if not isinstance(nxt, dict):
            nxt = target[part] = {}
        target = nxt
    target[parts[-1]] = text


def available_fields(char: Dict[str, Any]) -> List[str]:
    """Schema keys plus one indexed key per existing alternate greeting."""
    keys = [f.key for f in CHARACTER_FIELDS]
    keys.extend(f"alternate_greetings[{i}].mes" for i in range(len(_greetings(char or {}))))
    return keys


def normalize_field_value(value: Any) -> str:
    """Comparison form of a field value: trimmed, CRLF/CR folded to LF."""
    if value is None:
        return ""
    text = value if isinstance(value, str) else str(value)
    return text.strip().replace("\r\n", "\n").replace("\r", "\n")


# ---------------------------------------------------------------------------
# JSON change extraction (field editor replies)
# ---------------------------------------------------------------------------
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")
_BARE_JSON_RE = re.compile(r"\{[\s\S]*\}")


def extract_json_changes(response_text: str) -> Dict[str, Any]:
    """Pull the first JSON object out of a model reply (fenced block first, then bare braces)."""
    text = response_text or ""
    m = _FENCED_JSON_RE.search(text)
    raw = m.group(1) if m else None
    if raw is None:
        m = _BARE_JSON_RE.search(text)
        raw = m.group(0) if m else None
    if raw is None:
        raise ParseError("no-json", "No valid JSON found in the response.")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ParseError("parse-error", f"Could not parse JSON in the response: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ParseError("no-json", "Response JSON is not an object.")
    return parsed


def apply_changes(char: Dict[str, Any], changes: Dict[str, Any], selected: List[str]) -> Dict[str, str]:
    """Write changed, selected, known fields into *char*; return what was written.

    Raises StateError("no-pending-response") when no key survives filtering.
    """
    allowed = set(selected or [])
    valid = {k: v for k, v in (changes or {}).items() if k in allowed and is_known_field(k)}
    if not valid:
        raise StateError("no-pending-response", "No valid field changes found in the response.")
    written: Dict[str, str] = {}
    for key, value in valid.items():
        if normalize_field_value(get_field(char, key)) == normalize_field_value(value):
            continue
        set_field(char, key, value)
        written[key] = get_field(char, key)
    return written


# ---------------------------------------------------------------------------
# File-backed store
# ---------------------------------------------------------------------------
class CharacterStore:
    """Characters as JSON documents under data_dir/characters/<id>.json."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _path(self, char_id: str) -> Path:
        return self.root / f"{safe_key(char_id)}.json"

    def list_ids(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob("*.json"))

    def get(self, char_id: str) -> Dict[str, Any]:
        path = self._path(char_id)
        if not path.exists():
            raise StateError("unknown-character", f"No character with id {char_id!r}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as exc:
            raise ParseError("parse-error", f"Character file is not valid JSON: {path.name}") from exc
        if not isinstance(data, dict):
            raise ParseError("parse-error", f"Character file is not an object: {path.name}")
        return data

    def put(self, char_id: str, char: Dict[str, Any]) -> None:
        with self._lock:
            atomic_write_json(self._path(char_id), char)

    def update_fields(self, char_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply raw field writes (no selection filter) and persist."""
        with self._lock:
            char = self.get(char_id)
            for key, value in changes.items():
                set_field(char, key, value)
            atomic_write_json(self._path(char_id), char)
            return char

    def append_greeting(self, char_id: str, text: str) -> Optional[int]:
        """Append *text* to alternate_greetings; None when the trimmed text is already there."""
        text = (text or "").strip()
        if not text:
            raise StateError("empty-greeting", "Greeting text is empty.")
        with self._lock:
            char = self.get(char_id)
            existing = greeting_texts(char)
            if text in (g.strip() for g in existing):
                return None
            index = len(existing)
            set_field(char, f"alternate_greetings[{index}].mes", text)
            atomic_write_json(self._path(char_id), char)
            return index
