#!/usr/bin/env python3
"""CardWorkshop local shim.

Local-first Flask server that owns a data directory (characters, workshop
sessions, prefs), composes completion requests for the greeting and field
workshops, and forwards them to the host application's chat/text
completion endpoints.

Usage:
    # Server mode (default)
    export CARDWORKSHOP_DATA_DIR="/abs/path/to/workshop_data"
    export CARDWORKSHOP_HOST_URL="http://127.0.0.1:8000"
    python bin/workshop.py

    # Dry run: print the payload a chat submission would send
    python bin/workshop.py compose seraphina "Make it rain in the opening scene"

Then point the authoring panel at http://127.0.0.1:8899/
"""

from __future__ import annotations

import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, request as flask_request, jsonify

# Ensure bin/ is on the path so sibling modules are importable
sys.path.insert(0, str(Path(__file__).resolve().parent))

import config as config_mod
from characters import CHARACTER_FIELDS, CharacterStore, available_fields, field_label, get_field
from common import RequestCancelled, StateError, TransportError, WorkshopError, atomic_write_json
from config import (
    API_MAP,
    Config,
    HostSettings,
    _CONFIG_YAML,
    _CONFIG_YAML_STATUS,
    derive_host_settings,
    derive_prefs,
    load_config,
    parse_args,
)
from response import (
    WorkshopRuntime,
    accept_greeting,
    apply_field_changes,
    compose_preview,
    default_services,
    iter_profile_summaries,
    process_chat,
    process_regenerate,
    save_alternate_greeting,
)
from session import SessionRegistry, SessionStore, session_key


PREFS_FILE = "prefs.json"


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------
def _load_saved_prefs(cfg: Config) -> Dict[str, Any]:
    path = cfg.data_dir / PREFS_FILE
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"[Workshop] Could not read saved prefs ({path}): {exc}")
        return {}
    return data if isinstance(data, dict) else {}


def build_runtime(
    cfg: Config,
    host: Optional[HostSettings] = None,
    services: Optional[Dict[str, Any]] = None,
    prefs: Optional[Dict[str, Any]] = None,
) -> WorkshopRuntime:
    """Assemble stores, registry, host settings and completion services."""
    host = host or derive_host_settings(_CONFIG_YAML)
    if prefs is None:
        prefs = derive_prefs(_CONFIG_YAML, _load_saved_prefs(cfg))
    store = SessionStore(cfg.data_dir / "sessions", max_bytes=cfg.max_session_bytes)
    return WorkshopRuntime(
        cfg=cfg,
        host=host,
        registry=SessionRegistry(store),
        characters=CharacterStore(cfg.data_dir / "characters"),
        services=services if services is not None else default_services(cfg),
        prefs=derive_prefs({"workshop": prefs}),
    )


def _status_for(exc: WorkshopError) -> int:
    if isinstance(exc, RequestCancelled):
        return 499
    if isinstance(exc, TransportError):
        return 502
    if isinstance(exc, StateError) and exc.code == "in-flight":
        return 409
    return 400


def _body() -> Dict[str, Any]:
    data = flask_request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Flask app factory
# ---------------------------------------------------------------------------
def create_app(
    cfg: Config,
    host: Optional[HostSettings] = None,
    services: Optional[Dict[str, Any]] = None,
    prefs: Optional[Dict[str, Any]] = None,
) -> Flask:
    """Create and configure the CardWorkshop Flask application instance."""
    app = Flask(__name__, static_folder=None)
    rt = build_runtime(cfg, host=host, services=services, prefs=prefs)
    app.config["WORKSHOP_RUNTIME"] = rt

    @app.errorhandler(WorkshopError)
    def handle_workshop_error(exc: WorkshopError):
        """Translate the error taxonomy into {"ok": false, "error", "message"} responses."""
        status = _status_for(exc)
        if status >= 500:
            print(f"[Workshop] {exc.code}: {exc.message}")
        return jsonify({"ok": False, "error": exc.code, "message": exc.message}), status

    @app.route("/health", methods=["GET"])
    def health():
        """Simple liveness endpoint for local health checks."""
        return jsonify({"ok": True})

    @app.route("/profiles", methods=["GET"])
    def profiles():
        return jsonify({"ok": True, "profiles": list(iter_profile_summaries(rt.host))})

    @app.route("/prefs", methods=["GET", "POST"])
    def prefs_endpoint():
        """Read or update workshop prefs (clamped, persisted to the data dir)."""
        if flask_request.method == "POST":
            rt.prefs = rt.effective_prefs(_body())
            try:
                atomic_write_json(cfg.data_dir / PREFS_FILE, rt.prefs)
            except OSError as exc:
                print(f"[Workshop] Save prefs failed: {exc}")
        return jsonify({"ok": True, "prefs": rt.prefs})

    @app.route("/fields/<char_id>", methods=["GET"])
    def fields(char_id: str):
        """Schema fields with their current values for one character."""
        char = rt.characters.get(char_id)
        categories = {f.key: f.category for f in CHARACTER_FIELDS}
        result = [
            {
                "key": key,
                "label": field_label(key),
                "category": categories.get(key, "basics"),
                "value": get_field(char, key),
            }
            for key in available_fields(char)
        ]
        return jsonify({"ok": True, "fields": result})

    @app.route("/session/<kind>/<char_id>", methods=["GET"])
    def get_session(kind: str, char_id: str):
        session = rt.registry.get(kind, char_id)
        return jsonify({
            "ok": True,
            "key": session.key,
            "in_flight": rt.registry.is_in_flight(session.key),
            "session": session.to_dict(),
        })

    @app.route("/session/<kind>/<char_id>/fields", methods=["POST"])
    def set_session_fields(kind: str, char_id: str):
        """Persist which fields are being edited and which are context only."""
        body = _body()
        session = rt.registry.get(kind, char_id)
        selected = body.get("selected")
        context = body.get("context")
        session.set_fields(
            selected if isinstance(selected, list) else None,
            context if isinstance(context, list) else None,
        )
        return jsonify({"ok": True, "session": session.to_dict()})

    @app.route("/chat/<kind>/<char_id>", methods=["POST"])
    def chat(kind: str, char_id: str):
        return jsonify(process_chat(rt, kind, char_id, _body()))

    @app.route("/regenerate/<kind>/<char_id>", methods=["POST"])
    def regenerate(kind: str, char_id: str):
        return jsonify(process_regenerate(rt, kind, char_id, _body()))

    @app.route("/cancel/<kind>/<char_id>", methods=["POST"])
    def cancel(kind: str, char_id: str):
        cancelled = rt.registry.cancel(session_key(kind, char_id))
        return jsonify({"ok": True, "cancelled": cancelled})

    @app.route("/turns/<kind>/<char_id>/<ts>", methods=["PATCH", "DELETE"])
    def turn(kind: str, char_id: str, ts: str):
        session = rt.registry.get(kind, char_id)
        rt.registry.require_idle(session.key)
        if flask_request.method == "DELETE":
            removed = session.delete_turn(ts)
            return jsonify({
                "ok": True,
                "removed": [asdict(t) for t in removed],
                "session": session.to_dict(),
            })
        content = _body().get("content")
        if not isinstance(content, str):
            raise StateError("empty-instruction", "Edited content must be a string.")
        edited = session.edit_turn(ts, content)
        return jsonify({"ok": True, "turn": asdict(edited), "session": session.to_dict()})

    @app.route("/preferred/<kind>/<char_id>/<ts>", methods=["POST"])
    def preferred(kind: str, char_id: str, ts: str):
        session = rt.registry.get(kind, char_id)
        rt.registry.require_idle(session.key)
        pinned = session.toggle_preferred(ts)
        return jsonify({"ok": True, "pinned": pinned, "preferred": session.preferred})

    @app.route("/clear/<kind>/<char_id>", methods=["POST"])
    def clear(kind: str, char_id: str):
        session = rt.registry.get(kind, char_id)
        rt.registry.require_idle(session.key)
        session.clear()
        return jsonify({"ok": True, "session": session.to_dict()})

    @app.route("/accept/<char_id>", methods=["POST"])
    def accept(char_id: str):
        return jsonify(accept_greeting(rt, char_id))

    @app.route("/save-greeting/<char_id>", methods=["POST"])
    def save_greeting(char_id: str):
        return jsonify(save_alternate_greeting(rt, char_id))

    @app.route("/apply/<char_id>", methods=["POST"])
    def apply(char_id: str):
        return jsonify(apply_field_changes(rt, char_id))

    @app.route("/compose/<kind>/<char_id>", methods=["POST"])
    def compose(kind: str, char_id: str):
        """Dry run: the request a chat submission would send.  No mutation, no network."""
        body = _body()
        composed = compose_preview(
            rt, kind, char_id,
            body.get("message") or "",
            profile_id=body.get("profile"),
            prefs_overrides=body.get("prefs") if isinstance(body.get("prefs"), dict) else None,
        )
        return jsonify({"ok": True, **composed.to_dict()})

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def run_cli_compose(cfg: Config, args) -> int:
    """Print the composed payload for one instruction as JSON."""
    rt = build_runtime(cfg, services={})
    try:
        composed = compose_preview(rt, args.kind, args.character, args.instruction, profile_id=args.profile)
    except WorkshopError as exc:
        print(json.dumps({"ok": False, "error": exc.code, "message": exc.message}, indent=2))
        return 1
    print(json.dumps({"ok": True, **composed.to_dict()}, indent=2, ensure_ascii=False))
    return 0


def main(argv=None) -> int:
    """Entrypoint for server startup and one-shot CLI compose execution."""
    args = parse_args(argv)
    config_mod.DEBUG_MODE = args.debug
    cfg = load_config(args.data_dir)

    if args.cmd == "compose":
        return run_cli_compose(cfg, args)

    # Default: serve
    cfg.data_dir.mkdir(parents=True, exist_ok=True)
    host = derive_host_settings(_CONFIG_YAML)

    print(f"\n{'='*60}")
    print(f"  CardWorkshop Local Shim")
    print(f"{'='*60}")
    print(f"  Data dir   : {cfg.data_dir}")
    print(f"  Bind       : {cfg.bind_host}:{cfg.bind_port}")
    print(f"  Host       : {cfg.host_url} (chat {cfg.chat_path}, text {cfg.text_path})")
    print(f"  Profiles   : {len(host.profiles)} (selected: {host.selected_profile or 'none'})")
    print(f"  API map    : {len(API_MAP)} entries")
    print(f"  Config YAML: {_CONFIG_YAML_STATUS}")
    print(f"  Debug      : {'ON' if config_mod.DEBUG_MODE else 'off'}")
    print(f"{'='*60}\n")

    app = create_app(cfg, host=host)
    app.run(host=cfg.bind_host, port=cfg.bind_port, debug=False, threaded=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
