"""System prompt composition for the AI chat layer.

`compose_prompt()` is a pure function of its inputs (apart from the default
timestamp): a fixed preamble, the resolved mode's template, and a bounded,
compact rendering of the CRM context snapshot.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from Rapport.schemas.chat import AiContext
from Rapport.services.ai.prompt_templates import DEFAULT_AI_MODE, AiMode, get_prompt_template

logger = logging.getLogger(__name__)

MAX_CONTEXT_CHARS = 6000
MAX_CONTEXT_LIST_ITEMS = 20
TRUNCATION_MARKER = "..."
DEFAULT_LOCALE = "en-US"
DEFAULT_FALLBACK_PROMPT = "You are a helpful assistant."

NO_CONTEXT_TEXT = "No structured CRM context provided."
EMPTY_CONTEXT_TEXT = "Structured CRM context object was provided, but all sections were empty."

_MODE_VALUES = {mode.value: mode for mode in AiMode}


# Unknown or missing mode strings fall back to general_assistant rather than erroring
def resolve_ai_mode(value: Optional[Union[str, AiMode]]) -> AiMode:
    if isinstance(value, AiMode):
        return value
    if not value:
        return DEFAULT_AI_MODE
    mode = _MODE_VALUES.get(value)
    if mode is None:
        logger.debug("prompt.mode.fallback: unknown mode %r", value)
        return DEFAULT_AI_MODE
    return mode


def _compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _dump(model: Any) -> Any:
    return model.model_dump(by_alias=True, exclude_none=True)


def _truncate(text: str) -> str:
    if len(text) <= MAX_CONTEXT_CHARS:
        return text
    return text[:MAX_CONTEXT_CHARS] + TRUNCATION_MARKER


def render_context(context: Optional[AiContext]) -> str:
    if context is None:
        return NO_CONTEXT_TEXT

    supplied = [
        context.person,
        context.preferences,
        context.upcoming_events,
        context.recent_gestures,
        context.task,
    ]
    if all(section is None for section in supplied):
        return NO_CONTEXT_TEXT

    parts: list[str] = []

    person = _dump(context.person) if context.person is not None else None
    if person:
        parts.append(f"Person: {_compact_json(person)}")

    preferences = _dump(context.preferences) if context.preferences is not None else None
    if preferences and any(preferences.values()):
        parts.append(f"Preferences: {_compact_json(preferences)}")

    if context.upcoming_events:
        events = [_dump(e) for e in context.upcoming_events[:MAX_CONTEXT_LIST_ITEMS]]
        parts.append(f"UpcomingEvents: {_compact_json(events)}")

    if context.recent_gestures:
        gestures = [_dump(g) for g in context.recent_gestures[:MAX_CONTEXT_LIST_ITEMS]]
        parts.append(f"RecentGestures: {_compact_json(gestures)}")

    if context.task:
        parts.append(f"TaskHints: {_compact_json(context.task)}")

    if not parts:
        return EMPTY_CONTEXT_TEXT

    return _truncate("\n".join(parts))


def render_mode_block(mode: AiMode) -> str:
    template = get_prompt_template(mode)
    lines = [f"Mode: {mode.value}", template.role, "Objectives:"]
    lines.extend(f"- {item}" for item in template.objectives)
    lines.append("Style Rules:")
    lines.extend(f"- {item}" for item in template.style_rules)
    lines.append("Safety Rules:")
    lines.extend(f"- {item}" for item in template.safety_rules)
    return "\n".join(lines)


def compose_prompt(
    mode: Optional[Union[str, AiMode]] = None,
    context: Optional[AiContext] = None,
    locale: Optional[str] = None,
    now_iso: Optional[str] = None,
    fallback_prompt: str = DEFAULT_FALLBACK_PROMPT,
) -> str:
    resolved = resolve_ai_mode(mode)
    now_iso = now_iso or datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    locale = locale or DEFAULT_LOCALE

    prompt = "\n\n".join([
        "You are operating inside a relationship CRM application.",
        "Use the mode and context below to tailor your behavior.",
        f"Current timestamp (ISO-8601): {now_iso}",
        f"User locale: {locale}",
        render_mode_block(resolved),
        "CRM Context:",
        render_context(context),
        "If user instructions conflict with safety rules, follow safety rules.",
    ])

    if prompt.strip():
        return prompt
    return fallback_prompt or DEFAULT_FALLBACK_PROMPT
