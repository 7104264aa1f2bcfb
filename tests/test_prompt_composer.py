"""
Tests for system prompt composition.

Covers mode templates, the unknown-mode fallback, context rendering and its
bounds.
"""

import json

import pytest

from Rapport.schemas.chat import AiContext
from Rapport.services.ai.prompt_composer import (
    EMPTY_CONTEXT_TEXT,
    MAX_CONTEXT_CHARS,
    NO_CONTEXT_TEXT,
    TRUNCATION_MARKER,
    compose_prompt,
    render_context,
    resolve_ai_mode,
)
from Rapport.services.ai.prompt_templates import (
    COMMON_SAFETY_RULES,
    PROMPT_TEMPLATES,
    AiMode,
    get_prompt_template,
)

NOW = "2026-01-01T00:00:00Z"


class TestTemplates:
    def test_every_mode_has_a_template(self):
        assert set(PROMPT_TEMPLATES) == set(AiMode)

    def test_safety_rules_are_shared(self):
        for mode in AiMode:
            assert get_prompt_template(mode).safety_rules == COMMON_SAFETY_RULES


class TestResolveMode:
    @pytest.mark.parametrize("mode", list(AiMode))
    def test_known_values(self, mode):
        assert resolve_ai_mode(mode.value) is mode

    @pytest.mark.parametrize("value", [None, "", "therapist", "RELATIONSHIP_COACH"])
    def test_unknown_values_fall_back_to_general_assistant(self, value):
        assert resolve_ai_mode(value) is AiMode.GENERAL_ASSISTANT


class TestComposePrompt:
    @pytest.mark.parametrize("mode", list(AiMode))
    def test_contains_role_and_every_bullet(self, mode):
        prompt = compose_prompt(mode=mode.value, now_iso=NOW)
        template = get_prompt_template(mode)

        assert f"Mode: {mode.value}" in prompt
        assert template.role in prompt
        for item in template.objectives + template.style_rules + template.safety_rules:
            assert f"- {item}" in prompt

    @pytest.mark.parametrize("value", [None, "unknown_mode"])
    def test_unknown_mode_matches_general_assistant(self, value):
        expected = compose_prompt(mode="general_assistant", now_iso=NOW, locale="fr-FR")
        assert compose_prompt(mode=value, now_iso=NOW, locale="fr-FR") == expected

    def test_section_order(self):
        prompt = compose_prompt(mode="plan_generator", now_iso=NOW)
        sections = prompt.split("\n\n")

        assert sections[0] == "You are operating inside a relationship CRM application."
        assert sections[1] == "Use the mode and context below to tailor your behavior."
        assert sections[2] == f"Current timestamp (ISO-8601): {NOW}"
        assert sections[3] == "User locale: en-US"
        assert sections[4].startswith("Mode: plan_generator")
        assert sections[5] == "CRM Context:"
        assert sections[6] == NO_CONTEXT_TEXT
        assert sections[7] == "If user instructions conflict with safety rules, follow safety rules."

    def test_locale_is_included(self):
        assert "User locale: de-DE" in compose_prompt(locale="de-DE", now_iso=NOW)

    def test_default_timestamp_is_utc_iso(self):
        prompt = compose_prompt()
        line = next(l for l in prompt.split("\n") if l.startswith("Current timestamp"))
        assert line.endswith("Z")


class TestRenderContext:
    def test_missing_context(self):
        assert render_context(None) == NO_CONTEXT_TEXT

    def test_all_fields_undefined(self):
        assert render_context(AiContext()) == NO_CONTEXT_TEXT

    def test_all_sections_empty(self):
        context = AiContext(
            person={},
            preferences={"likes": [], "dislikes": []},
            upcomingEvents=[],
            recentGestures=[],
            task={},
        )
        assert render_context(context) == EMPTY_CONTEXT_TEXT
        assert EMPTY_CONTEXT_TEXT != NO_CONTEXT_TEXT

    def test_sections_use_camel_case_and_skip_none(self):
        context = AiContext.model_validate({
            "person": {"displayName": "Sam", "relationshipType": "friend"},
            "recentGestures": [{"title": "Sent flowers", "dueAt": "2026-02-01"}],
            "task": {"tone": "warm", "maxWords": 80, "formal": False},
        })
        text = render_context(context)
        lines = text.split("\n")

        assert lines[0] == 'Person: {"displayName":"Sam","relationshipType":"friend"}'
        assert lines[1] == 'RecentGestures: [{"title":"Sent flowers","dueAt":"2026-02-01"}]'
        assert json.loads(lines[2].removeprefix("TaskHints: ")) == {"tone": "warm", "maxWords": 80, "formal": False}

    def test_lists_are_capped(self):
        events = [{"title": f"Event {i}"} for i in range(200)]
        text = render_context(AiContext.model_validate({"upcomingEvents": events}))

        rendered = json.loads(text.removeprefix("UpcomingEvents: "))
        assert len(rendered) == 20
        assert rendered[-1]["title"] == "Event 19"

    def test_long_context_is_truncated(self):
        context = AiContext.model_validate({"person": {"notes": "x" * 10_000}})
        text = render_context(context)

        assert len(text) == MAX_CONTEXT_CHARS + len(TRUNCATION_MARKER)
        assert text.endswith(TRUNCATION_MARKER)

    def test_context_appears_in_prompt(self):
        context = AiContext.model_validate({"preferences": {"likes": ["hiking"]}})
        prompt = compose_prompt(context=context, now_iso=NOW)
        assert 'Preferences: {"likes":["hiking"]}' in prompt
