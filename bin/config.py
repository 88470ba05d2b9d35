"""CardWorkshop configuration: config.yaml loading, capability map, host settings, CLI args."""

from __future__ import annotations

import argparse
import copy
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List


# ---------------------------------------------------------------------------
# Configuration dataclass
# ---------------------------------------------------------------------------
@dataclass
class Config:
    """Runtime configuration for the local workshop process."""

    data_dir: Path  # Sessions and character files live under this directory.
    host_url: str = "http://127.0.0.1:8000"  # Host application base URL.
    chat_path: str = "/api/backends/chat-completions/generate"  # Chat-completion endpoint.
    text_path: str = "/api/backends/text-completions/generate"  # Text-completion endpoint.
    bind_host: str = "127.0.0.1"  # Loopback only; the panel runs beside the host.
    bind_port: int = 8899  # Local port for panel traffic.
    timeout_s: float = 120.0  # Network timeout for completion requests.
    max_session_bytes: int = 2_000_000  # Hard upper bound for one persisted session.
    dispatch_poll_s: float = 0.1  # Cancellation poll interval while a request is pending.


def _env_bool(name: str, default: bool) -> bool:
    """Read a permissive boolean env var with a default fallback."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_config(data_dir: str | None = None) -> Config:
    """Build Config from environment variables with safe defaults."""
    raw_dir = data_dir or os.environ.get("CARDWORKSHOP_DATA_DIR", str(Path.cwd() / "workshop_data"))
    return Config(
        data_dir=Path(raw_dir).expanduser().resolve(),
        host_url=os.environ.get("CARDWORKSHOP_HOST_URL", "http://127.0.0.1:8000").rstrip("/"),
        chat_path=os.environ.get("CARDWORKSHOP_CHAT_PATH", "/api/backends/chat-completions/generate"),
        text_path=os.environ.get("CARDWORKSHOP_TEXT_PATH", "/api/backends/text-completions/generate"),
        bind_host=os.environ.get("CARDWORKSHOP_BIND_HOST", "127.0.0.1"),
        bind_port=int(os.environ.get("CARDWORKSHOP_BIND_PORT", "8899")),
        timeout_s=float(os.environ.get("CARDWORKSHOP_TIMEOUT_S", "120")),
        max_session_bytes=int(os.environ.get("CARDWORKSHOP_MAX_SESSION_BYTES", str(2_000_000))),
        dispatch_poll_s=float(os.environ.get("CARDWORKSHOP_DISPATCH_POLL_S", "0.1")),
    )


# ---------------------------------------------------------------------------
# config.yaml loader
# ---------------------------------------------------------------------------
_CONFIG_YAML_STATUS = ""  # human-readable load status for startup banner


def _load_config_yaml(project_root: Path | None = None) -> Dict[str, Any]:
    """Load config.yaml from the project directory.

    *project_root* defaults to the parent of the bin/ directory (i.e. the
    repo root).
    """
    global _CONFIG_YAML_STATUS
    try:
        import yaml
    except ImportError:
        _CONFIG_YAML_STATUS = "pyyaml not installed (pip install pyyaml)"
        return {}
    if project_root is None:
        project_root = Path(__file__).resolve().parent.parent
    cfg_path = project_root / "config.yaml"
    if not cfg_path.exists():
        _CONFIG_YAML_STATUS = f"not found at {cfg_path}"
        return {}
    try:
        with open(cfg_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            _CONFIG_YAML_STATUS = f"not a mapping at {cfg_path}"
            return {}
        if data:
            _CONFIG_YAML_STATUS = f"loaded ({len(data)} keys) from {cfg_path}"
        else:
            _CONFIG_YAML_STATUS = f"empty or unparseable at {cfg_path}"
        return data
    except Exception as exc:
        _CONFIG_YAML_STATUS = f"parse error: {exc}"
        return {}


_CONFIG_YAML: Dict[str, Any] = _load_config_yaml()


# ---------------------------------------------------------------------------
# Capability map (host connect-API map)
# ---------------------------------------------------------------------------
# Capability entries whose `selected` equals this marker speak the chat protocol.
CHAT_COMPLETION_MARKER = "openai"
TEXT_COMPLETION_MARKER = "textgenerationwebui"

_DEFAULT_API_MAP: Dict[str, Dict[str, str]] = {
    # chat completion sources
    "openai": {"selected": CHAT_COMPLETION_MARKER, "source": "openai"},
    "claude": {"selected": CHAT_COMPLETION_MARKER, "source": "claude"},
    "openrouter": {"selected": CHAT_COMPLETION_MARKER, "source": "openrouter"},
    "mistralai": {"selected": CHAT_COMPLETION_MARKER, "source": "mistralai"},
    "makersuite": {"selected": CHAT_COMPLETION_MARKER, "source": "makersuite"},
    "vertexai": {"selected": CHAT_COMPLETION_MARKER, "source": "vertexai"},
    "ai21": {"selected": CHAT_COMPLETION_MARKER, "source": "ai21"},
    "cohere": {"selected": CHAT_COMPLETION_MARKER, "source": "cohere"},
    "perplexity": {"selected": CHAT_COMPLETION_MARKER, "source": "perplexity"},
    "groq": {"selected": CHAT_COMPLETION_MARKER, "source": "groq"},
    "deepseek": {"selected": CHAT_COMPLETION_MARKER, "source": "deepseek"},
    "xai": {"selected": CHAT_COMPLETION_MARKER, "source": "xai"},
    "nanogpt": {"selected": CHAT_COMPLETION_MARKER, "source": "nanogpt"},
    "custom": {"selected": CHAT_COMPLETION_MARKER, "source": "custom"},
    # text completion back-ends
    "koboldcpp": {"selected": TEXT_COMPLETION_MARKER, "type": "koboldcpp"},
    "kcpp": {"selected": TEXT_COMPLETION_MARKER, "type": "koboldcpp"},
    "ooba": {"selected": TEXT_COMPLETION_MARKER, "type": "ooba"},
    "llamacpp": {"selected": TEXT_COMPLETION_MARKER, "type": "llamacpp"},
    "ollama": {"selected": TEXT_COMPLETION_MARKER, "type": "ollama"},
    "vllm": {"selected": TEXT_COMPLETION_MARKER, "type": "vllm"},
    "tabby": {"selected": TEXT_COMPLETION_MARKER, "type": "tabby"},
    "aphrodite": {"selected": TEXT_COMPLETION_MARKER, "type": "aphrodite"},
    "togetherai": {"selected": TEXT_COMPLETION_MARKER, "type": "togetherai"},
    "infermaticai": {"selected": TEXT_COMPLETION_MARKER, "type": "infermaticai"},
    "openrouter-text": {"selected": TEXT_COMPLETION_MARKER, "type": "openrouter"},
    "kobold": {"selected": "kobold"},
    "horde": {"selected": "koboldhorde"},
    "novel": {"selected": "novel"},
}


def _build_api_map() -> Dict[str, Dict[str, str]]:
    """Construct the capability map from defaults + config.yaml overrides."""
    api_map = copy.deepcopy(_DEFAULT_API_MAP)
    yaml_map = _CONFIG_YAML.get("api_map", {})
    if not isinstance(yaml_map, dict):
        return api_map
    for key, ycfg in yaml_map.items():
        if not isinstance(ycfg, dict):
            continue
        entry = api_map.setdefault(str(key), {})
        for field_name in ("selected", "type", "source", "button"):
            if ycfg.get(field_name):
                entry[field_name] = str(ycfg[field_name])
    return api_map


API_MAP: Dict[str, Dict[str, str]] = _build_api_map()


# ---------------------------------------------------------------------------
# Host settings (profiles, instruct, proxies, completion settings)
# ---------------------------------------------------------------------------
@dataclass
class HostSettings:
    """Everything the host application exposes to the composition engine."""

    profiles: List[Dict[str, Any]]
    selected_profile: str | None
    instruct: Dict[str, Any]  # Global instruct config (may carry `presets`).
    instruct_presets: Dict[str, Any]
    proxies: List[Dict[str, Any]]
    completion_settings: Dict[str, Any]  # Named per-backend settings objects.
    api_map: Dict[str, Dict[str, str]]
    username: str = ""


def derive_host_settings(cfg_yaml: dict) -> HostSettings:
    """Derive HostSettings from a parsed config.yaml dict."""
    cfg_yaml = cfg_yaml if isinstance(cfg_yaml, dict) else {}
    conn = cfg_yaml.get("connection") or {}
    instruct = cfg_yaml.get("instruct") or {}
    if not isinstance(instruct, dict):
        instruct = {}
    presets = instruct.get("presets") or cfg_yaml.get("instruct_presets") or {}
    profiles = conn.get("profiles") if isinstance(conn, dict) else None
    proxies = cfg_yaml.get("proxies") or []
    completion = cfg_yaml.get("completion_settings") or {}
    user = cfg_yaml.get("user") or {}
    return HostSettings(
        profiles=[p for p in (profiles or []) if isinstance(p, dict)],
        selected_profile=(conn.get("selected_profile") if isinstance(conn, dict) else None) or None,
        instruct={k: v for k, v in instruct.items() if k != "presets"},
        instruct_presets=presets if isinstance(presets, dict) else {},
        proxies=[p for p in proxies if isinstance(p, dict)] if isinstance(proxies, list) else [],
        completion_settings=completion if isinstance(completion, dict) else {},
        api_map=API_MAP,
        username=str(user.get("name", "") if isinstance(user, dict) else "").strip(),
    )


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------
DEFAULT_STYLE = "Follow Character Personality"


def clamp_int(value: Any, lo: int, hi: int, default: int) -> int:
    """Coerce *value* to int within [lo, hi]; fall back to *default* when non-numeric or NaN.

    Infinities clamp to the nearest bound.
    """
    try:
        num = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    if math.isnan(num):
        return default
    if math.isinf(num):
        return hi if num > 0 else lo
    return max(lo, min(hi, int(num)))


def _clamp_float(value: Any, lo: float, hi: float, default: float) -> float:
    try:
        num = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    if num != num:  # NaN
        return default
    return max(lo, min(hi, num))


def derive_prefs(cfg_yaml: dict, overrides: dict | None = None) -> dict:
    """Derive the flat workshop prefs dict from config.yaml (+ per-request overrides)."""
    ws = cfg_yaml.get("workshop", {}) if isinstance(cfg_yaml, dict) else {}
    if not isinstance(ws, dict):
        ws = {}
    merged = dict(ws)
    if isinstance(overrides, dict):
        merged.update({k: v for k, v in overrides.items() if v is not None})
    custom = merged.get("custom_system_prompt") or {}
    if not isinstance(custom, dict):
        custom = {}
    style = merged.get("style")
    return {
        "style": style.strip() if isinstance(style, str) and style.strip() else DEFAULT_STYLE,
        "num_paragraphs": clamp_int(merged.get("num_paragraphs"), 1, 10, 3),
        "sentences_per_paragraph": clamp_int(merged.get("sentences_per_paragraph"), 1, 10, 3),
        "history_count": clamp_int(merged.get("history_count"), 0, 20, 5),
        "temperature": _clamp_float(merged.get("temperature"), 0.0, 2.0, 0.7),
        "custom_system_prompt": {
            "enabled": bool(custom.get("enabled", False)),
            "template": str(custom.get("template") or ""),
        },
    }


# ---------------------------------------------------------------------------
# Module-level mode flags (set by main() at startup)
# ---------------------------------------------------------------------------
DEBUG_MODE: bool = False


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------
def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments for serve/compose execution modes."""
    parser = argparse.ArgumentParser(description="CardWorkshop local authoring shim")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug logging")
    parser.add_argument("--data-dir", default=None, help="Directory for sessions and characters")
    sub = parser.add_subparsers(dest="cmd")
    sub.add_parser("serve", help="Run Flask workshop server (default)")
    compose_parser = sub.add_parser("compose", help="Print the request payload for an instruction")
    compose_parser.add_argument("character", help="character id (file stem under data_dir/characters)")
    compose_parser.add_argument("instruction", help="user instruction")
    compose_parser.add_argument("--kind", default="greeting", choices=["greeting", "fields"])
    compose_parser.add_argument("--profile", default=None, help="connection profile id")
    return parser.parse_args(argv)
