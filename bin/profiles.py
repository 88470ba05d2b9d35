"""CardWorkshop profile resolution: API behavior, effective instruct template, proxies.

A connection profile is a loose host-owned dict ({id, api, mode?, model?,
preset?, instruct?, "instruct-state"?, "stop-strings"?, "api-url"?, proxy?,
"start-reply-with"?}).  This module turns it into:
  - ApiBehavior: completion family + wire API type + completion source
  - an effective InstructConfig layered global -> named preset, plus the
    mandatory fallback template for the one back-end that requires wrapping
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from common import ConfigurationError
from config import CHAT_COMPLETION_MARKER


FAMILY_CHAT = "chat"
FAMILY_TEXT = "text"

# Explicit `mode` values accepted on a profile, mapped to a family.
_MODE_ALIASES = {
    "cc": FAMILY_CHAT,
    "chat": FAMILY_CHAT,
    "tc": FAMILY_TEXT,
    "text": FAMILY_TEXT,
}

# Back-end that produces garbage unless prompts are wrapped in its turn tokens.
MANDATORY_INSTRUCT_API = "koboldcpp"

INSTRUCT_KEYS = (
    "system_sequence",
    "system_suffix",
    "input_sequence",
    "input_suffix",
    "output_sequence",
    "output_suffix",
    "stop_sequence",
    "system_sequence_prefix",
    "system_sequence_suffix",
)
REQUIRED_SEQUENCES = ("system_sequence", "input_sequence", "output_sequence")

MANDATORY_FALLBACK_INSTRUCT: Dict[str, str] = {
    "system_sequence": "<|START_OF_TURN_TOKEN|><|SYSTEM_TOKEN|>",
    "system_suffix": "<|END_OF_TURN_TOKEN|>",
    "input_sequence": "<|START_OF_TURN_TOKEN|><|USER_TOKEN|>",
    "input_suffix": "<|END_OF_TURN_TOKEN|>",
    "output_sequence": "<|START_OF_TURN_TOKEN|><|CHATBOT_TOKEN|>",
    "output_suffix": "<|END_OF_TURN_TOKEN|>",
    "stop_sequence": "<|END_OF_TURN_TOKEN|>",
    "system_sequence_prefix": "",
    "system_sequence_suffix": "",
}


# ---------------------------------------------------------------------------
# ProfileResolver
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ApiBehavior:
    """Per-request view of how a profile talks to its back-end."""
    family: str  # "chat" | "text" (after any explicit profile mode override)
    selected_backend: str  # capability entry `selected`, e.g. "openai"
    wire_api_type: str  # capability entry `type`, e.g. "koboldcpp"
    completion_source: str  # capability entry `source`, e.g. "claude"

    @property
    def is_chat(self) -> bool:
        return self.family == FAMILY_CHAT


def resolve_api_behavior(profile: Dict[str, Any], capability_map: Dict[str, Dict[str, Any]]) -> ApiBehavior:
    """Map a profile onto the capability map.

    Raises ConfigurationError("unresolved-api") when the profile has no api
    or the api is absent from the map.  Nothing else is resolved in that case.
    """
    api = str((profile or {}).get("api") or "").strip()
    entry = capability_map.get(api) if api else None
    if not isinstance(entry, dict):
        raise ConfigurationError(
            "unresolved-api",
            f'No usable connection profile: unknown API type "{api or "(none)"}".',
        )
    selected = str(entry.get("selected") or "")
    family = FAMILY_CHAT if selected == CHAT_COMPLETION_MARKER else FAMILY_TEXT
    mode = str(profile.get("mode") or "").strip().lower()
    if mode in _MODE_ALIASES:
        family = _MODE_ALIASES[mode]
    return ApiBehavior(
        family=family,
        selected_backend=selected,
        wire_api_type=str(entry.get("type") or ""),
        completion_source=str(entry.get("source") or ""),
    )


def select_profile(profiles: List[Dict[str, Any]], profile_id: Optional[str]) -> Dict[str, Any]:
    """Pick a profile by id; ConfigurationError("no-profile") when none matches."""
    if profile_id:
        for p in profiles:
            if str(p.get("id")) == str(profile_id):
                return p
    raise ConfigurationError(
        "no-profile",
        "No connection profile selected. Pick one in settings and try again.",
    )


def get_proxy_by_name(proxies: List[Dict[str, Any]], name: Any) -> Optional[Dict[str, Any]]:
    """Find a named reverse proxy preset; 'None' or empty means no proxy."""
    if not name or name == "None":
        return None
    for p in proxies or []:
        if isinstance(p, dict) and p.get("name") == name:
            return p
    return None


# ---------------------------------------------------------------------------
# InstructResolver
# ---------------------------------------------------------------------------
@dataclass
class InstructResolution:
    """Effective instruct template for a request."""
    config: Dict[str, Any]
    name: Optional[str]  # instruct or preset name, for labeling
    enabled: bool

    def seq(self, key: str) -> str:
        """Return a sequence role as a string; missing roles are empty."""
        value = self.config.get(key)
        return value if isinstance(value, str) else ""

    @property
    def has_required_sequences(self) -> bool:
        return all(self.seq(k) for k in REQUIRED_SEQUENCES)


def profile_instruct_state(profile: Dict[str, Any]) -> bool:
    """True when the profile's instruct-state string is "true" (any case)."""
    return str((profile or {}).get("instruct-state")).strip().lower() == "true"


def instruct_enabled(global_cfg: Dict[str, Any] | None, profile: Dict[str, Any]) -> bool:
    """Instruct mode is on if globally enabled, enabled on the profile, or the profile names a template."""
    if isinstance(global_cfg, dict) and global_cfg.get("enabled") is True:
        return True
    if profile_instruct_state(profile):
        return True
    return bool(str((profile or {}).get("instruct") or "").strip())


def _pick_preset(presets: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    """Look up a preset by name: a direct template, or a preset carrying an `instruct` block."""
    if not name or not isinstance(presets, dict):
        return None
    hit = presets.get(name)
    if isinstance(hit, dict):
        nested = hit.get("instruct")
        if isinstance(nested, dict):
            return nested
        return hit
    return None


def ensure_mandatory_instruct(cfg: Dict[str, Any], wire_api_type: str) -> Dict[str, Any]:
    """Fill a complete fallback template on the mandatory-wrap back-end.

    Only applies when any of system/input/output sequence is missing.
    Keys already present in *cfg* win over the fallback.
    """
    if wire_api_type != MANDATORY_INSTRUCT_API:
        return dict(cfg or {})
    out = dict(cfg or {})
    if all(isinstance(out.get(k), str) and out.get(k) for k in REQUIRED_SEQUENCES):
        return out
    merged = dict(MANDATORY_FALLBACK_INSTRUCT)
    for key, value in out.items():
        # Empty strings must not blank out the fallback's required sequences.
        if key in REQUIRED_SEQUENCES and not (isinstance(value, str) and value):
            continue
        merged[key] = value
    return merged


def resolve_effective_instruct(
    global_cfg: Dict[str, Any] | None,
    profile: Dict[str, Any],
    presets: Dict[str, Any] | None,
    wire_api_type: str = "",
) -> InstructResolution:
    """Layer global config -> matched preset, then apply the mandatory fallback.

    The profile's `instruct` name is tried before its `preset` name; the
    first that resolves to a preset object is merged.
    """
    base = dict(global_cfg or {})
    base.pop("presets", None)
    instruct_name = str((profile or {}).get("instruct") or "").strip()
    preset_name = str((profile or {}).get("preset") or "").strip()

    preset_cfg = _pick_preset(presets or {}, instruct_name) or _pick_preset(presets or {}, preset_name)
    if preset_cfg:
        base.update(preset_cfg)

    effective = ensure_mandatory_instruct(base, wire_api_type)
    return InstructResolution(
        config=effective,
        name=instruct_name or preset_name or None,
        enabled=instruct_enabled(global_cfg, profile),
    )
