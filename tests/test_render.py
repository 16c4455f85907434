"""Tests for Handlebars prompt rendering and template resolution."""

import pytest

from story_engine.prompts import STORY_TEMPLATES, PromptError, render_prompt, resolve_template


def test_triple_stash_is_not_escaped():
    assert render_prompt("{{{text}}}", {"text": "<b> & 'x'"}) == "<b> & 'x'"


def test_output_is_stripped():
    assert render_prompt("\n  {{name}}  \n", {"name": "Mira"}) == "Mira"


def test_take_helper():
    out = render_prompt("{{#take items 2}}[{{this}}]{{/take}}", {"items": ["a", "b", "c"]})
    assert out == "[a][b]"


def test_last_helper():
    out = render_prompt("{{#last items 2}}[{{this}}]{{/last}}", {"items": ["a", "b", "c"]})
    assert out == "[b][c]"


def test_inc_helper():
    out = render_prompt("{{#each items}}{{inc @index}}.{{this}} {{/each}}", {"items": ["a", "b"]})
    assert out == "1.a 2.b"


def test_mismatched_block_raises():
    with pytest.raises(PromptError):
        render_prompt("{{#if x}}a{{/each}}", {})


def test_override_wins():
    assert resolve_template("brainstorm", STORY_TEMPLATES, {"brainstorm": "custom"}) == "custom"


def test_blank_override_falls_back():
    assert resolve_template("brainstorm", STORY_TEMPLATES, {"brainstorm": ""}) == STORY_TEMPLATES["brainstorm"]


def test_unknown_template():
    with pytest.raises(PromptError):
        resolve_template("nope", STORY_TEMPLATES, None)
