"""CardWorkshop common helpers: error taxonomy, text normalization, timestamps, atomic I/O.

Foundational module shared by every other module:
  - WorkshopError hierarchy (configuration / parse / transport / state)
  - canon(): whitespace normalization used for all equality comparisons
  - {{char}} / {{user}} placeholder helpers
  - monotonic millisecond timestamps for conversation turns
  - atomic JSON writes (temp file + os.replace)

Dependency: stdlib only (no imports from config, session, or response).
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------
class WorkshopError(Exception):
    """Base class for every error surfaced to the authoring panel."""

    code = "error"

    def __init__(self, code: str | None = None, message: str = ""):
        self.code = code or self.code
        self.message = message or self.code
        super().__init__(self.message)


class ConfigurationError(WorkshopError):
    """Profile/API settings cannot be resolved. Fatal to the request."""

    code = "unresolved-api"


class ParseError(WorkshopError):
    """Malformed user-supplied JSON (stop strings, apply payloads)."""

    code = "parse-error"


class TransportError(WorkshopError):
    """The completion service failed. Message is shown verbatim."""

    code = "transport-error"


class StateError(WorkshopError):
    """Operation rejected because the session is not in a usable state."""

    code = "invalid-state"


class RequestCancelled(StateError):
    """Dispatch was cancelled through the session's cancellation token."""

    code = "cancelled"


# ---------------------------------------------------------------------------
# Text normalization
# ---------------------------------------------------------------------------
_CR_RE = re.compile(r"\r")
_INLINE_WS_RE = re.compile(r"[^\S\n]+")
_TRAILING_WS_RE = re.compile(r"[ \t]+\n")


def canon(text: Any) -> str:
    """Normalize text for equality checks.

    Strips carriage returns, collapses runs of non-newline whitespace to a
    single space, drops whitespace before newlines, trims the result.
    """
    out = "" if text is None else str(text)
    out = _CR_RE.sub("", out)
    out = _INLINE_WS_RE.sub(" ", out)
    out = _TRAILING_WS_RE.sub("\n", out)
    return out.strip()


def collapse_whitespace(text: Any) -> str:
    """Collapse all whitespace (newlines included) to single spaces."""
    return re.sub(r"\s+", " ", "" if text is None else str(text)).strip()


# ---------------------------------------------------------------------------
# Placeholder helpers
# ---------------------------------------------------------------------------
_USER_TOKEN_RE = re.compile(r"\{\{\s*user\s*\}\}", re.IGNORECASE)
_CHAR_TOKEN_RE = re.compile(r"\{\{\s*char\s*\}\}", re.IGNORECASE)


def mask_user_placeholders(text: Any) -> str:
    """Break {{user}} so host macro expansion leaves it alone; {{char}} untouched."""
    return _USER_TOKEN_RE.sub("{\u200b{user}}", str(text))


def replace_char_placeholders(text: Any, char_name: Any) -> str:
    """Replace {{char}} (any case/whitespace) with the character's name."""
    name = "" if char_name is None else str(char_name)
    return _CHAR_TOKEN_RE.sub(lambda _m: name, str(text))


def contains_user_token(text: Any) -> bool:
    return bool(_USER_TOKEN_RE.search(str(text or "")))


def _username_pattern(real_username: str) -> re.Pattern:
    # Jake, {Jake}, { Jake }, Jake}
    return re.compile(r"(\{\s*)?" + re.escape(real_username) + r"(\s*\})?", re.IGNORECASE)


def normalize_user_token(text: Any, real_username: str) -> str:
    """Rewrite occurrences of the real username to the literal {{user}} token."""
    out = str(text or "")
    if not out or not real_username:
        return out
    return _username_pattern(real_username).sub("{{user}}", out)


def transform_for_llm(obj: Any, char_name: Any) -> Any:
    """Deep transform: replace {{char}} and mask {{user}} across all string leaves."""
    if obj is None:
        return None
    if isinstance(obj, str):
        return mask_user_placeholders(replace_char_placeholders(obj, char_name))
    if isinstance(obj, list):
        return [transform_for_llm(v, char_name) for v in obj]
    if isinstance(obj, dict):
        return {k: transform_for_llm(v, char_name) for k, v in obj.items()}
    return obj


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------
def now_ms() -> int:
    """Wall-clock milliseconds."""
    return int(time.time() * 1000)


def next_ts(last_ts: int | None) -> int:
    """Millisecond timestamp strictly greater than *last_ts*."""
    ts = now_ms()
    if last_ts is not None and ts <= last_ts:
        ts = last_ts + 1
    return ts


# ---------------------------------------------------------------------------
# Atomic JSON I/O
# ---------------------------------------------------------------------------
def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON atomically (temp file in the same dir, then os.replace)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            json.dump(payload, tmp, ensure_ascii=False, indent=2)
            tmp.write("\n")
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, str(path))
    finally:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)


_UNSAFE_KEY_RE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_key(key: str) -> str:
    """Map an arbitrary storage key to a filesystem-safe basename."""
    cleaned = _UNSAFE_KEY_RE.sub("_", str(key)).strip("._")
    return cleaned or "global"
