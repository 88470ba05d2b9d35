"""CardWorkshop stop-sequence merging.

Combines profile stop strings, instruct-derived stops, and the fixed
default set of the mandatory-wrap back-end into one ordered, deduplicated
list, emitted under both `stop` and `stopping_strings` (transport
consumers differ in which key they read).
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List

from common import ParseError
from profiles import MANDATORY_INSTRUCT_API, InstructResolution


# Full turn-token set the mandatory-wrap back-end needs to stop cleanly.
MANDATORY_DEFAULT_STOPS = [
    "<|END_OF_TURN_TOKEN|>",
    "<|START_OF_TURN_TOKEN|><|USER_TOKEN|>",
    "<|START_OF_TURN_TOKEN|><|CHATBOT_TOKEN|>",
    "<|START_OF_TURN_TOKEN|><|SYSTEM_TOKEN|>",
    "<STOP>",
]


def parse_stop_strings(raw: Any) -> List[str]:
    """Parse a profile's stop-strings field (JSON text or native list).

    Raises ParseError on malformed JSON.  Non-list values and non-string or
    empty entries are dropped.
    """
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ParseError("parse-error", f"Could not parse profile stop-strings: {exc}") from exc
    else:
        parsed = raw
    if not isinstance(parsed, list):
        return []
    return [s for s in parsed if isinstance(s, str) and s]


def get_profile_stops(profile: Dict[str, Any]) -> List[str]:
    """Lenient wrapper: malformed stop-strings are logged and treated as empty."""
    raw = (profile or {}).get("stop-strings")
    try:
        return parse_stop_strings(raw)
    except ParseError:
        print(f"[Workshop] Could not parse profile stop-strings: {raw!r}")
        return []


def merge_stops(*lists: Iterable[Any]) -> List[str]:
    """Concatenate, keep non-empty strings, dedupe preserving first-seen order."""
    out: List[str] = []
    for lst in lists:
        if not lst:
            continue
        items = [lst] if isinstance(lst, str) else lst
        for s in items:
            if isinstance(s, str) and s and s not in out:
                out.append(s)
    return out


def build_stop_fields(
    wire_api_type: str,
    profile: Dict[str, Any],
    instruct: InstructResolution | None,
) -> Dict[str, List[str]]:
    """Return {} or {"stop": [...], "stopping_strings": [...]} with identical lists."""
    from_profile = get_profile_stops(profile)
    from_instruct: List[Any] = []
    if instruct is not None and instruct.enabled:
        from_instruct = [instruct.config.get("stop_sequence"), instruct.config.get("output_suffix")]
    extra = MANDATORY_DEFAULT_STOPS if wire_api_type == MANDATORY_INSTRUCT_API else []

    unique = merge_stops(from_profile, from_instruct, extra)
    if not unique:
        return {}
    return {"stop": list(unique), "stopping_strings": list(unique)}
