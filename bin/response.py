"""CardWorkshop response pipeline: request composition, completion services, workshop flows.

Request generation and dispatch:
  - compose_request(): profile -> ApiBehavior -> instruct -> stops -> bundle -> payload
  - model id lookup over host completion settings (ordered strategies,
    bounded deep scan last)
  - HTTP completion services for the chat and text families
  - cancellable dispatch (worker thread + per-session cancellation event)
  - process_chat / process_regenerate / accept_greeting / apply_field_changes
"""

from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests

import config as config_mod
from characters import CharacterStore, apply_changes, extract_json_changes
from common import (
    ConfigurationError,
    RequestCancelled,
    StateError,
    TransportError,
    WorkshopError,
    normalize_user_token,
)
from config import Config, HostSettings, derive_prefs
from profiles import (
    FAMILY_CHAT,
    FAMILY_TEXT,
    ApiBehavior,
    InstructResolution,
    get_proxy_by_name,
    resolve_api_behavior,
    resolve_effective_instruct,
    select_profile,
)
from prompt_bundle import (
    PromptBundle,
    build_prompt_bundle,
    character_name,
    normalize_instruction,
    to_chat_messages,
    to_text_prompt,
)
from session import ROLE_ASSISTANT, ConversationSession, SessionRegistry
from stops import build_stop_fields


NO_NEW_EDITS = "(no new edits)"


# ---------------------------------------------------------------------------
# Model id lookup
# ---------------------------------------------------------------------------
# Profile api names that share a settings section with another provider.
MODEL_PROVIDER_ALIASES: Dict[str, str] = {
    "oai": "openai",
    "openai": "openai",
    "claude": "claude",
    "anthropic": "claude",
    "google": "google",
    "vertexai": "vertexai",
    "ai21": "ai21",
    "mistralai": "mistralai",
    "mistral": "mistralai",
    "cohere": "cohere",
    "perplexity": "perplexity",
    "groq": "groq",
    "nanogpt": "nanogpt",
    "zerooneai": "zerooneai",
    "deepseek": "deepseek",
    "xai": "xai",
    "pollinations": "pollinations",
    "openrouter-text": "openai",
    "koboldcpp": "koboldcpp",
    "kcpp": "koboldcpp",
}
_SECTION_MODEL_KEYS = ("model", "currentModel", "selectedModel", "defaultModel")
DEEP_SCAN_MAX_DEPTH = 5


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _model_from_section(section: Any) -> Optional[str]:
    if not isinstance(section, dict):
        return None
    for key in _SECTION_MODEL_KEYS:
        found = _clean(section.get(key))
        if found:
            return found
    return None


def _lookup_flat(containers: List[Dict[str, Any]], flat_keys: List[str], sections: List[str]) -> Optional[str]:
    """<provider>_model keys at the top of any container."""
    for key in flat_keys:
        for container in containers:
            found = _clean(container.get(key))
            if found:
                return found
    return None


def _lookup_nested(containers: List[Dict[str, Any]], flat_keys: List[str], sections: List[str]) -> Optional[str]:
    """{<provider>: {model: ...}} sections at the top of any container."""
    for container in containers:
        for section in sections:
            found = _model_from_section(container.get(section))
            if found:
                return found
    return None


def _lookup_deep(containers: List[Dict[str, Any]], flat_keys: List[str], sections: List[str]) -> Optional[str]:
    """Last resort: depth-bounded walk applying both rules at every level."""
    seen: set = set()

    def _walk(obj: Any, depth: int) -> Optional[str]:
        if not isinstance(obj, dict) or id(obj) in seen or depth > DEEP_SCAN_MAX_DEPTH:
            return None
        seen.add(id(obj))
        found = _lookup_flat([obj], flat_keys, sections) or _lookup_nested([obj], flat_keys, sections)
        if found:
            return found
        for child in obj.values():
            if isinstance(child, dict):
                found = _walk(child, depth + 1)
                if found:
                    return found
        return None

    for container in containers:
        found = _walk(container, 0)
        if found:
            return found
    return None


MODEL_LOOKUP_STRATEGIES: Tuple[Callable[..., Optional[str]], ...] = (_lookup_flat, _lookup_nested, _lookup_deep)


def resolve_model(profile: Dict[str, Any], completion_settings: Dict[str, Any]) -> Optional[str]:
    """Model id for a profile: host settings first, then the profile's own `model`, else None."""
    api_raw = str((profile or {}).get("api") or "").strip().lower()
    if api_raw:
        provider = MODEL_PROVIDER_ALIASES.get(api_raw, api_raw)
        flat_keys = list(dict.fromkeys([f"{provider}_model", f"{api_raw}_model"]))
        sections = list(dict.fromkeys([provider, api_raw]))
        settings = completion_settings if isinstance(completion_settings, dict) else {}
        containers = [v for v in settings.values() if isinstance(v, dict)] + [settings]
        for strategy in MODEL_LOOKUP_STRATEGIES:
            found = strategy(containers, flat_keys, sections)
            if found:
                return found
    return _clean((profile or {}).get("model"))


# ---------------------------------------------------------------------------
# Request composition
# ---------------------------------------------------------------------------
@dataclass
class ComposedRequest:
    """Everything needed to dispatch one completion request."""
    family: str
    behavior: ApiBehavior
    payload: Dict[str, Any]
    options: Dict[str, Any] = field(default_factory=dict)  # presetName / instructName
    prefill: str = ""
    bundle: Optional[PromptBundle] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "family": self.family,
            "behavior": asdict(self.behavior),
            "payload": self.payload,
            "options": self.options,
            "prefill": self.prefill,
        }


def compose_request(
    session: ConversationSession,
    profile: Dict[str, Any],
    instruct_presets: Dict[str, Any],
    capability_map: Dict[str, Dict[str, Any]],
    user_instruction: str,
    prefs: Dict[str, Any],
    *,
    kind: str = "greeting",
    char: Optional[Dict[str, Any]] = None,
    global_instruct: Optional[Dict[str, Any]] = None,
    proxies: Optional[List[Dict[str, Any]]] = None,
    completion_settings: Optional[Dict[str, Any]] = None,
    system_prompt: Optional[str] = None,
) -> ComposedRequest:
    """Build the exact payload for one request.  Reads the session, never mutates it.

    Raises ConfigurationError before anything else is resolved when the
    profile's api is unknown.
    """
    behavior = resolve_api_behavior(profile, capability_map)
    instruct = resolve_effective_instruct(global_instruct, profile, instruct_presets, behavior.wire_api_type)
    stop_fields = build_stop_fields(behavior.wire_api_type, profile, instruct)
    model = resolve_model(profile, completion_settings or {})
    prefill = str(profile.get("start-reply-with") or "").strip()

    bundle = build_prompt_bundle(
        kind, session, char or {}, user_instruction, prefs,
        system_prompt=system_prompt,
        prefill="" if behavior.is_chat else prefill,
    )

    payload: Dict[str, Any] = {"stream": False}
    if behavior.is_chat:
        payload["messages"] = to_chat_messages(bundle)
        if behavior.completion_source:
            payload["chat_completion_source"] = behavior.completion_source
    else:
        payload["prompt"] = to_text_prompt(bundle, instruct)
    payload["max_tokens"] = bundle.max_tokens
    if not behavior.is_chat and behavior.wire_api_type:
        payload["api_type"] = behavior.wire_api_type
    payload["temperature"] = prefs.get("temperature", 0.7)
    payload.update(stop_fields)

    api_url = _clean(profile.get("api-url"))
    if behavior.is_chat:
        if api_url:
            payload["custom_url"] = api_url
        proxy = get_proxy_by_name(proxies or [], profile.get("proxy"))
        if proxy and _clean(proxy.get("url")):
            payload["reverse_proxy"] = proxy["url"]
        if proxy and _clean(proxy.get("password")):
            payload["proxy_password"] = proxy["password"]
    elif api_url:
        payload["api_server"] = api_url
    if model:
        payload["model"] = model

    return ComposedRequest(
        family=behavior.family,
        behavior=behavior,
        payload=payload,
        options=_service_options(profile, instruct),
        prefill=prefill,
        bundle=bundle,
    )


def _service_options(profile: Dict[str, Any], instruct: InstructResolution) -> Dict[str, Any]:
    options: Dict[str, Any] = {}
    if _clean(profile.get("preset")):
        options["presetName"] = profile["preset"]
    if instruct.enabled:
        options["instructName"] = instruct.name or "effective"
    return options


# ---------------------------------------------------------------------------
# Completion services
# ---------------------------------------------------------------------------
class CompletionService:
    """Host completion endpoint reached over HTTP.  Subclasses set `family` and `path`."""

    family = ""

    def __init__(self, cfg: Config, http: Optional[requests.Session] = None):
        self.cfg = cfg
        self.http = http or requests.Session()

    @property
    def url(self) -> str:
        raise NotImplementedError

    def process_request(
        self,
        payload: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
        stream: bool = False,
    ) -> Dict[str, str]:
        """POST the payload; return {"content": text}.  TransportError on any failure."""
        body = dict(payload)
        body["stream"] = bool(stream)
        params = {}
        if options and options.get("presetName"):
            params["preset"] = options["presetName"]
        if options and options.get("instructName"):
            params["instruct"] = options["instructName"]
        if config_mod.DEBUG_MODE:
            print(f"[DEBUG] {self.family} completion -> {self.url} params={params}")
        try:
            resp = self.http.post(self.url, json=body, params=params or None, timeout=self.cfg.timeout_s)
        except requests.RequestException as exc:
            raise TransportError("transport-error", f"Completion request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise TransportError("transport-error", _error_message(resp))
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransportError("transport-error", f"Completion service returned non-JSON: {resp.text[:200]}") from exc
        if isinstance(data, dict) and data.get("error"):
            raise TransportError("transport-error", _describe_error(data["error"]))
        return {"content": extract_content(data)}


class ChatCompletionService(CompletionService):
    family = FAMILY_CHAT

    @property
    def url(self) -> str:
        return self.cfg.host_url + self.cfg.chat_path


class TextCompletionService(CompletionService):
    family = FAMILY_TEXT

    @property
    def url(self) -> str:
        return self.cfg.host_url + self.cfg.text_path


def _describe_error(err: Any) -> str:
    if isinstance(err, dict):
        return str(err.get("message") or err)
    return str(err)


def _error_message(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("error"):
        return f"Error: {_describe_error(data['error'])}"
    return f"HTTP {resp.status_code}: {resp.text[:500]}"


def extract_content(data: Any) -> str:
    """Pull completion text out of the common response shapes."""
    if isinstance(data, str):
        return data
    if not isinstance(data, dict):
        return ""
    if isinstance(data.get("content"), str):
        return data["content"]
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        first = choices[0]
        message = first.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
        if isinstance(first.get("text"), str):
            return first["text"]
    results = data.get("results")
    if isinstance(results, list) and results and isinstance(results[0], dict):
        return str(results[0].get("text") or "")
    return ""


def default_services(cfg: Config) -> Dict[str, CompletionService]:
    http = requests.Session()
    return {
        FAMILY_CHAT: ChatCompletionService(cfg, http),
        FAMILY_TEXT: TextCompletionService(cfg, http),
    }


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------
_DISPATCH_POOL = concurrent.futures.ThreadPoolExecutor(max_workers=4, thread_name_prefix="workshop-dispatch")


def normalize_response(text: Any, family: str, prefill: str = "", real_username: str = "") -> str:
    """Trim, prepend the chat prefill when missing, rewrite the real username to {{user}}."""
    out = str(text or "").strip()
    if family == FAMILY_CHAT and prefill and out and not out.startswith(prefill):
        out = prefill + out
    return normalize_user_token(out, real_username)


def dispatch(
    service: Any,
    composed: ComposedRequest,
    cancel_event: Optional[threading.Event] = None,
    poll_s: float = 0.1,
) -> str:
    """Run the blocking service call on a worker; poll *cancel_event* until it finishes.

    Returns the raw content string.  Raises RequestCancelled or TransportError.
    """
    if cancel_event is not None and cancel_event.is_set():
        raise RequestCancelled("cancelled", "Request cancelled.")
    future = _DISPATCH_POOL.submit(service.process_request, composed.payload, composed.options, False)
    while True:
        done, _ = concurrent.futures.wait([future], timeout=poll_s)
        if cancel_event is not None and cancel_event.is_set():
            future.cancel()
            raise RequestCancelled("cancelled", "Request cancelled.")
        if done:
            break
    try:
        result = future.result()
    except WorkshopError:
        raise
    except Exception as exc:
        raise TransportError("transport-error", str(exc) or exc.__class__.__name__) from exc
    if isinstance(result, dict):
        return str(result.get("content") or "")
    return str(result or "")


# ---------------------------------------------------------------------------
# Workshop runtime and flows
# ---------------------------------------------------------------------------
@dataclass
class WorkshopRuntime:
    """Process-wide collaborators handed to every flow."""
    cfg: Config
    host: HostSettings
    registry: SessionRegistry
    characters: CharacterStore
    services: Dict[str, Any]
    prefs: Dict[str, Any] = field(default_factory=dict)

    def effective_prefs(self, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return derive_prefs({"workshop": self.prefs}, overrides)


def _compose_for(
    rt: WorkshopRuntime,
    kind: str,
    session: ConversationSession,
    char: Dict[str, Any],
    profile: Dict[str, Any],
    instruction: str,
    prefs: Dict[str, Any],
) -> ComposedRequest:
    return compose_request(
        session,
        profile,
        rt.host.instruct_presets,
        rt.host.api_map,
        instruction,
        prefs,
        kind=kind,
        char=char,
        global_instruct=rt.host.instruct,
        proxies=rt.host.proxies,
        completion_settings=rt.host.completion_settings,
    )


def _log_request(kind: str, char_id: str, composed: ComposedRequest, regen: bool = False) -> None:
    stops = composed.payload.get("stop") or []
    print(f"[Workshop] {'Regenerate' if regen else 'Chat'} request: kind={kind}, char='{char_id}', "
          f"family={composed.family}, api_type={composed.behavior.wire_api_type or '-'}, "
          f"model={composed.payload.get('model', '(host default)')}, stops={len(stops)}, "
          f"max_tokens={composed.payload.get('max_tokens')}")
    if config_mod.DEBUG_MODE:
        if "messages" in composed.payload:
            msgs = composed.payload["messages"]
            print(f"[DEBUG] Upstream messages ({len(msgs)} total):")
            for i, m in enumerate(msgs):
                content = m.get("content", "")
                print(f"  [{i}] {m.get('role', '?')}: {content[:200]}{'...' if len(content) > 200 else ''}")
        else:
            prompt = composed.payload.get("prompt", "")
            print(f"[DEBUG] Upstream prompt ({len(prompt)} chars): {prompt[:200]}{'...' if len(prompt) > 200 else ''}")


def _run(rt: WorkshopRuntime, composed: ComposedRequest, token: threading.Event) -> str:
    service = rt.services.get(composed.family)
    if service is None:
        raise ConfigurationError("unresolved-api", f"No completion service for family {composed.family!r}")
    raw = dispatch(service, composed, token, rt.cfg.dispatch_poll_s)
    text = normalize_response(raw, composed.family, composed.prefill, rt.host.username)
    if config_mod.DEBUG_MODE:
        print(f"[DEBUG] <- Response ({len(text)} chars): {text[:120]}...")
    if not text:
        raise TransportError("empty-response", "The model returned an empty response.")
    return text


def process_chat(rt: WorkshopRuntime, kind: str, char_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    """Append the user instruction, compose, dispatch, append the assistant reply.

    Configuration problems are raised before the session is touched.  On
    transport failure or cancellation the user turn is removed again, so the
    transcript is left as it was before the call.
    """
    session = rt.registry.get(kind, char_id)
    char = rt.characters.get(char_id)
    instruction = normalize_instruction(body.get("message"), character_name(char))
    if not instruction:
        raise StateError("empty-instruction", "Type an instruction first.")
    profile = select_profile(rt.host.profiles, body.get("profile") or rt.host.selected_profile)
    resolve_api_behavior(profile, rt.host.api_map)
    prefs = rt.effective_prefs(body.get("prefs"))

    with rt.registry.in_flight(session) as token:
        user_turn = session.append_user(instruction)
        try:
            composed = _compose_for(rt, kind, session, char, profile, instruction, prefs)
            _log_request(kind, char_id, composed)
            text = _run(rt, composed, token)
        except WorkshopError:
            # Failed or cancelled: back to the pre-call transcript.
            if session.find(user_turn.ts)[1] is not None:
                session.delete_turn(user_turn.ts)
            raise
        turn = session.append_assistant(text)

    return {
        "ok": True,
        "text": text,
        "user_turn": asdict(user_turn),
        "turn": asdict(turn),
        "session": session.to_dict(),
    }


def process_regenerate(rt: WorkshopRuntime, kind: str, char_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    """Replace the most recent assistant turn with a fresh completion for the last user instruction."""
    session = rt.registry.get(kind, char_id)
    target = session.regenerate_target()
    last_user = session.last_turn("user")
    instruction = last_user.content if last_user is not None else NO_NEW_EDITS
    char = rt.characters.get(char_id)
    profile = select_profile(rt.host.profiles, body.get("profile") or rt.host.selected_profile)
    resolve_api_behavior(profile, rt.host.api_map)
    prefs = rt.effective_prefs(body.get("prefs"))

    with rt.registry.in_flight(session) as token:
        composed = _compose_for(rt, kind, session, char, profile, instruction, prefs)
        _log_request(kind, char_id, composed, regen=True)
        text = _run(rt, composed, token)
        turn = session.replace_regenerated(target.ts, text)

    return {"ok": True, "text": text, "turn": asdict(turn), "session": session.to_dict()}


def compose_preview(
    rt: WorkshopRuntime,
    kind: str,
    char_id: str,
    message: str,
    profile_id: Optional[str] = None,
    prefs_overrides: Optional[Dict[str, Any]] = None,
) -> ComposedRequest:
    """Dry run: the request a chat submission would send right now.  No mutation, no network."""
    session = rt.registry.get(kind, char_id)
    char = rt.characters.get(char_id)
    instruction = normalize_instruction(message, character_name(char))
    if not instruction:
        raise StateError("empty-instruction", "Type an instruction first.")
    profile = select_profile(rt.host.profiles, profile_id or rt.host.selected_profile)
    return _compose_for(rt, kind, session, char, profile, instruction, rt.effective_prefs(prefs_overrides))


def _pending_response(session: ConversationSession) -> str:
    turn = session.last_turn(ROLE_ASSISTANT)
    if turn is None or not turn.content.strip():
        raise StateError("no-pending-response", "There is no response to use yet.")
    return turn.content


def accept_greeting(rt: WorkshopRuntime, char_id: str) -> Dict[str, Any]:
    """Write the latest greeting-workshop reply into the character's first message."""
    session = rt.registry.get("greeting", char_id)
    text = _pending_response(session)
    rt.characters.update_fields(char_id, {"first_mes": text})
    print(f"[Workshop] Accepted greeting for '{char_id}' ({len(text)} chars)")
    return {"ok": True, "field": "first_mes", "text": text}


def save_alternate_greeting(rt: WorkshopRuntime, char_id: str) -> Dict[str, Any]:
    """Append the latest greeting-workshop reply to the character's alternate greetings.

    A reply already present (after trimming) is not written twice.
    """
    text = _pending_response(rt.registry.get("greeting", char_id)).strip()
    index = rt.characters.append_greeting(char_id, text)
    if index is None:
        print(f"[Workshop] Greeting for '{char_id}' already in alternate_greetings")
        return {"ok": True, "saved": False, "text": text}
    print(f"[Workshop] Saved alternate greeting #{index} for '{char_id}' ({len(text)} chars)")
    return {"ok": True, "saved": True, "index": index, "text": text}


def apply_field_changes(rt: WorkshopRuntime, char_id: str) -> Dict[str, Any]:
    """Parse the latest field-editor reply and write changed, selected fields to the character."""
    session = rt.registry.get("fields", char_id)
    changes = extract_json_changes(_pending_response(session))
    char = rt.characters.get(char_id)
    written = apply_changes(char, changes, session.selected_fields)
    if written:
        rt.characters.put(char_id, char)
        print(f"[Workshop] Applied {len(written)} field change(s) to '{char_id}': {', '.join(written)}")
    else:
        print(f"[Workshop] No field changes for '{char_id}' (values unchanged)")
    return {"ok": True, "changed": written}


def iter_profile_summaries(host: HostSettings) -> Iterable[Dict[str, Any]]:
    """Profiles as shown in the panel's picker, with their resolved family when known."""
    for p in host.profiles:
        try:
            family = resolve_api_behavior(p, host.api_map).family
        except ConfigurationError:
            family = None
        yield {
            "id": p.get("id"),
            "name": p.get("name") or p.get("id"),
            "api": p.get("api"),
            "family": family,
            "selected": str(p.get("id")) == str(host.selected_profile),
        }
