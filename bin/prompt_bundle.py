#!/usr/bin/env python3
"""PromptBundle: family-agnostic request object and completion-family adapters.

Each request is built once as a PromptBundle (system prompt, windowed
history, pinned preferred scene, directives, instruction, prefill), then
adapted for the target family:
  - chat: [system, user] message array
  - text: one prompt string wrapped in instruct sequences, or a linear
    newline-joined prompt when no complete instruct template applies
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from characters import field_label, get_field
from config import clamp_int
from common import canon, collapse_whitespace, mask_user_placeholders, replace_char_placeholders, transform_for_llm
from profiles import InstructResolution
from session import ROLE_ASSISTANT, ROLE_USER, ConversationSession, ConversationTurn


MAX_HISTORY = 20
TOKENS_PER_SENTENCE = 90
TOKEN_SAFETY_MARGIN = 1.15
DEFAULT_MAX_TOKENS = 1024
FIELD_EDITOR_MAX_TOKENS = 2048

GREETING_WHO = "A Character Card Greeting Editing Assistant"


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------
@dataclass
class PromptBundle:
    """Family-agnostic request object built once per completion request.

    Fields:
        system:     rendered system prompt (template + character data)
        history:    windowed prior turns, already filtered
        preferred:  pinned scene text ("" when nothing is pinned)
        directives: fixed formatting lines placed before the instruction
        query:      the instruction being answered
        prefill:    assistant-prefill string ("" when not configured)
        max_tokens: response length budget
    """
    system: str = ""
    history: List[ConversationTurn] = field(default_factory=list)
    preferred: str = ""
    directives: List[str] = field(default_factory=list)
    query: str = ""
    prefill: str = ""
    max_tokens: int = DEFAULT_MAX_TOKENS


# ---------------------------------------------------------------------------
# History windowing
# ---------------------------------------------------------------------------
def clamp_history_count(value: Any) -> int:
    return clamp_int(value, 0, MAX_HISTORY, 0)


def window_history(
    turns: Sequence[ConversationTurn],
    limit: Any,
    instruction: str = "",
    preferred: Optional[Dict[str, Any]] = None,
) -> List[ConversationTurn]:
    """Select the turns that go into a prompt as ordinary history.

    1. last *limit* turns (clamped to [0, 20])
    2. drop a trailing user turn (the instruction is sent separately)
    3. drop any turn whose canon content equals the canon instruction
    4. drop the pinned assistant turn, matched by ts or by canon text
    """
    n = clamp_history_count(limit)
    if n == 0:
        return []
    recent = list(turns)[-n:]

    if recent and recent[-1].role == ROLE_USER:
        recent.pop()

    needle = canon(instruction)
    if needle:
        recent = [t for t in recent if canon(t.content) != needle]

    if preferred and (preferred.get("ts") is not None or preferred.get("text")):
        pref_ts = str(preferred.get("ts") or "")
        pref_text = canon(preferred.get("text")) if preferred.get("text") else ""

        def _is_pinned(t: ConversationTurn) -> bool:
            if t.role != ROLE_ASSISTANT:
                return False
            if pref_ts and str(t.ts) == pref_ts:
                return True
            return bool(pref_text) and canon(t.content) == pref_text

        recent = [t for t in recent if not _is_pinned(t)]

    return recent


def build_recent_history_block(history: Sequence[ConversationTurn]) -> str:
    """Numbered <RECENT_HISTORY> block, or '' when empty."""
    if not history:
        return ""
    lines = [
        f"{i}. {('assistant' if t.role == ROLE_ASSISTANT else 'user').upper()}: {canon(t.content)}"
        for i, t in enumerate(history, start=1)
    ]
    return "\n".join(["<RECENT_HISTORY>", *lines, "</RECENT_HISTORY>"])


def build_instruct_history(history: Sequence[ConversationTurn], instruct: InstructResolution) -> str:
    """Each retained turn wrapped in its role's input/output sequences, in order."""
    usr, usr_s = instruct.seq("input_sequence"), instruct.seq("input_suffix")
    bot, bot_s = instruct.seq("output_sequence"), instruct.seq("output_suffix")
    out = []
    for turn in history:
        text = canon(turn.content)
        if not text:
            continue
        if turn.role == ROLE_ASSISTANT:
            out.append(bot + text + bot_s)
        else:
            out.append(usr + text + usr_s)
    return "".join(out)


def build_preferred_block(text: str) -> str:
    if not text:
        return ""
    return "\n".join([
        "<PREFERRED_SCENE>",
        "The user liked this earlier reply. Keep it about 90-95% the same and apply only the explicit edits from USER_INSTRUCTION.",
        "---",
        text,
        "---",
        "</PREFERRED_SCENE>",
    ])


# ---------------------------------------------------------------------------
# Budget and directives
# ---------------------------------------------------------------------------
def response_token_budget(num_paragraphs: Any, sentences_per_paragraph: Any) -> int:
    """ceil(paragraphs * sentences * 90 * 1.15); 1024 when that is not a finite positive number."""
    try:
        approx = float(num_paragraphs) * float(sentences_per_paragraph) * TOKENS_PER_SENTENCE * TOKEN_SAFETY_MARGIN
    except (TypeError, ValueError):
        return DEFAULT_MAX_TOKENS
    if not math.isfinite(approx) or approx <= 0:
        return DEFAULT_MAX_TOKENS
    return math.ceil(approx)


def _plural(n: int) -> str:
    return "" if n == 1 else "s"


def greeting_shape(prefs: Dict[str, Any]) -> Tuple[int, int]:
    """(paragraphs, sentences) as ints in [1, 10] for the prompt text; 3 when unusable."""
    return (
        clamp_int(prefs.get("num_paragraphs", 3), 1, 10, 3),
        clamp_int(prefs.get("sentences_per_paragraph", 3), 1, 10, 3),
    )


def greeting_directives(num_paragraphs: int, sentences_per_paragraph: int) -> List[str]:
    return [
        "- Follow the USER_INSTRUCTION using the character data as context.",
        "- If a preferred scene is provided, keep it almost the same and apply only the requested edits.",
        f"- Output should be {num_paragraphs} paragraph{_plural(num_paragraphs)} with "
        f"{sentences_per_paragraph} sentence{_plural(sentences_per_paragraph)} per paragraph.",
    ]


FIELD_EDITOR_DIRECTIVES = [
    "- Follow the USER_INSTRUCTION using the CURRENT CHARACTER DATA as context.",
    "- If a preferred reply is provided, keep it almost the same and apply only the requested edits.",
    "- Return ONLY the JSON object with the edited field keys.",
]


def normalize_instruction(raw: Any, char_name: str) -> str:
    """Collapse whitespace, resolve {{char}}, mask {{user}}."""
    typed = collapse_whitespace(raw)
    if not typed:
        return ""
    return mask_user_placeholders(replace_char_placeholders(typed, char_name))


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------
DEFAULT_GREETING_TEMPLATE = "\n\n".join([
    "You are ${who}. Your task is to craft an opening scene to begin a brand-new chat.",
    "Format strictly as ${nParas} paragraph${parasS}, with exactly ${nSents} sentence${sentsS} per paragraph.",
    "Target tone: ${style}.",
    "Your top priority is to FOLLOW THE USER'S INSTRUCTION.\n"
    "- If a preferred scene is provided under <PREFERRED_SCENE>, preserve it closely (about 90-95% unchanged) "
    "and apply ONLY the explicit edits from USER_INSTRUCTION.\n"
    "- Maintain the same structure (paragraph count and sentences per paragraph).\n"
    "- If they ask for ideas, names, checks, rewrites, longer text, etc., do THAT instead. Do not force a greeting.",
    "Open-endedness: Make the scene action-oriented and involve the user as an active participant and explicitly "
    "have {{user}} as a participant. Do not fully resolve conflicts or decisions unless the user directs otherwise.",
    "HARD REQUIREMENTS:\n"
    "  (1) The character acts with their own agency. Do NOT ask the user to decide what the character will do.\n"
    "  (2) Unless the user explicitly forbids addressing the user: include the literal token \"{{user}}\" at least "
    "once (up to three total mentions). Use it only inside full sentences of narration or dialogue, never as a "
    "standalone line and never appended after the scene.",
    "You are NOT ${charName}; never roleplay as them. You are creating a scene for them based on the user's input.",
    "You will receive the COMPLETE character object for ${charName} as JSON under <CHARACTER_DATA_JSON>.",
    "Use ONLY the provided JSON as ground truth for the scene.",
    "Formatting rules:\n"
    "- Return only what the user asked for; no meta/system talk; no disclaimers.\n"
    "- If the user asked for a greeting, return only the greeting text (no extra commentary).\n"
    "- End the output immediately after the final sentence of paragraph ${nParas}. Do not append extra tokens, "
    "names, or lines.",
])

_TEMPLATE_VAR_RE = re.compile(r"\$\{(\w+)\}")


def render_template(template: str, variables: Dict[str, Any]) -> str:
    """Substitute ${name} placeholders; unknown names render as ''."""
    return _TEMPLATE_VAR_RE.sub(
        lambda m: str(variables[m.group(1)]) if m.group(1) in variables else "",
        str(template or ""),
    )


def character_name(char: Dict[str, Any]) -> str:
    char = char or {}
    data = char.get("data") if isinstance(char.get("data"), dict) else {}
    return str(char.get("name") or data.get("name") or "")


def build_character_json_block(char: Dict[str, Any]) -> str:
    """<CHARACTER_DATA_JSON> with the core card fields; {{char}} resolved, {{user}} masked."""
    char = char or {}
    data = char.get("data") if isinstance(char.get("data"), dict) else {}
    card = {}
    for key in ("name", "description", "personality", "scenario"):
        value = char.get(key, data.get(key))
        card[key] = None if value is None else str(value)
    transformed = transform_for_llm(card, card["name"] or "")
    body = json.dumps(transformed, indent=2, ensure_ascii=False)
    return f"<CHARACTER_DATA_JSON>\n{body}\n</CHARACTER_DATA_JSON>"


def build_greeting_system_prompt(char: Dict[str, Any], prefs: Dict[str, Any]) -> str:
    n_paras, n_sents = greeting_shape(prefs)
    variables = {
        "who": GREETING_WHO,
        "nParas": n_paras,
        "nSents": n_sents,
        "style": prefs.get("style") or "",
        "charName": character_name(char) or "{{char}}",
        "parasS": _plural(n_paras),
        "sentsS": _plural(n_sents),
    }
    custom = prefs.get("custom_system_prompt") or {}
    template = DEFAULT_GREETING_TEMPLATE
    if custom.get("enabled") and str(custom.get("template") or "").strip():
        template = custom["template"]
    return "\n\n".join([render_template(template, variables), build_character_json_block(char)])


def build_field_editor_system_prompt(
    char: Dict[str, Any],
    selected: Sequence[str],
    context: Sequence[str] = (),
) -> str:
    name = character_name(char) or "{{char}}"
    current = {key: get_field(char, key) for key in selected}
    lines = [
        f'You are a Character Development Assistant helping to edit character card fields for "{name}".',
        "",
        f"FIELDS TO EDIT: {', '.join(field_label(k) for k in selected)}",
    ]
    if context:
        lines.append(f"CONTEXT FIELDS (reference only): {', '.join(field_label(k) for k in context)}")
    lines += [
        "",
        "INSTRUCTIONS:",
        "- Read the user's request carefully and edit ONLY the requested fields",
        "- Use the context fields for reference and consistency, but do NOT modify them",
        "- Keep the character's core personality and voice intact unless specifically asked to change it",
        '- For alternate greetings (bulk), separate greetings with "\\n\\n---\\n\\n"',
        "- For individual alternate greetings (alternate_greetings[0].mes, etc.), edit only that greeting's text",
        "",
        "RESPONSE FORMAT:",
        "Return ONLY a valid JSON object with the field keys and new values. "
        "Use the exact field keys shown in the current data below.",
        "",
        "CRITICAL RULES:",
        "- Return ONLY the JSON object, with no explanations and no additional text",
        "- Include ONLY the fields that are being edited (not context fields)",
        "- Ensure all JSON strings are properly escaped",
        "- NEVER replace or modify template variables like {{char}}, {{user}}, <START>; keep them exactly as they are",
        "",
        "CURRENT CHARACTER DATA:",
        json.dumps(current, indent=2, ensure_ascii=False),
    ]
    if context:
        ctx_data = transform_for_llm({key: get_field(char, key) for key in context}, character_name(char))
        lines += ["", "CONTEXT DATA:", json.dumps(ctx_data, indent=2, ensure_ascii=False)]
    lines += ["", "USER REQUEST:"]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Bundle builder
# ---------------------------------------------------------------------------
def build_prompt_bundle(
    kind: str,
    session: ConversationSession,
    char: Dict[str, Any],
    instruction: str,
    prefs: Dict[str, Any],
    *,
    system_prompt: Optional[str] = None,
    prefill: str = "",
) -> PromptBundle:
    """Build the canonical PromptBundle for one workshop request.

    *instruction* is the already-normalized text being answered (the new
    user turn, or the last user turn when regenerating).
    """
    preferred = session.preferred
    history = window_history(session.turns, prefs.get("history_count", 5), instruction, preferred)

    if kind == "fields":
        system = system_prompt if system_prompt is not None else build_field_editor_system_prompt(
            char, session.selected_fields, session.context_fields,
        )
        directives = list(FIELD_EDITOR_DIRECTIVES)
        max_tokens = FIELD_EDITOR_MAX_TOKENS
    else:
        system = system_prompt if system_prompt is not None else build_greeting_system_prompt(char, prefs)
        n_paras, n_sents = greeting_shape(prefs)
        directives = greeting_directives(n_paras, n_sents)
        max_tokens = response_token_budget(
            prefs.get("num_paragraphs", 3), prefs.get("sentences_per_paragraph", 3),
        )

    return PromptBundle(
        system=system,
        history=history,
        preferred=(preferred or {}).get("text", "") if preferred else "",
        directives=directives,
        query=instruction,
        prefill=prefill,
        max_tokens=max_tokens,
    )


# ---------------------------------------------------------------------------
# Family adapters
# ---------------------------------------------------------------------------
def build_user_content(bundle: PromptBundle, *, include_history: bool = True) -> str:
    """History block (optional), preferred block, directives, then the labelled instruction."""
    parts: List[str] = []
    if include_history:
        history_block = build_recent_history_block(bundle.history)
        if history_block:
            parts.append(history_block)
    preferred_block = build_preferred_block(bundle.preferred)
    if preferred_block:
        parts.append(preferred_block)
    parts.extend(bundle.directives)
    parts.append("USER_INSTRUCTION:")
    parts.append(bundle.query)
    return "\n".join(parts)


def to_chat_messages(bundle: PromptBundle) -> List[Dict[str, str]]:
    """Exactly two messages: system, then one user message carrying everything else."""
    return [
        {"role": "system", "content": str(bundle.system)},
        {"role": "user", "content": build_user_content(bundle)},
    ]


def build_linear_prompt(bundle: PromptBundle) -> str:
    """System, history, preferred, directives, instruction, then prefill; newline-joined."""
    prompt = f"{bundle.system}\n\n{build_user_content(bundle)}"
    if bundle.prefill:
        prompt += f"\n{bundle.prefill}"
    return prompt


def build_instruct_prompt(
    instruct: InstructResolution,
    system_content: str,
    history_wrapped: str,
    user_content: str,
    assistant_prefill: str = "",
) -> str:
    return (
        instruct.seq("system_sequence")
        + instruct.seq("system_sequence_prefix")
        + system_content
        + instruct.seq("system_sequence_suffix")
        + instruct.seq("system_suffix")
        + history_wrapped
        + instruct.seq("input_sequence")
        + user_content
        + instruct.seq("input_suffix")
        + instruct.seq("output_sequence")
        + assistant_prefill
    )


def to_text_prompt(bundle: PromptBundle, instruct: Optional[InstructResolution]) -> str:
    """Single prompt string for the text family.

    Instruct-wrapped when instruct is enabled and the three required
    sequences are present; linear otherwise.
    """
    if instruct is None or not instruct.enabled:
        return build_linear_prompt(bundle)
    if not instruct.has_required_sequences:
        print("[Workshop] Missing instruct sequences; falling back to linear prompt")
        return build_linear_prompt(bundle)
    return build_instruct_prompt(
        instruct,
        str(bundle.system),
        build_instruct_history(bundle.history, instruct),
        build_user_content(bundle, include_history=False),
        bundle.prefill,
    )
