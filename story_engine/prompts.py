"""Handlebars prompt rendering.

Every generation step renders its system prompt from a Handlebars template.
Defaults live next to the step that uses them; config `prompts.<name>`
overrides any of them by name.
"""

from collections.abc import Callable
from typing import Any

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}}: iterate over the first N items."""
    result = []
    for item in list(items)[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}}: iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


def _helper_inc(this, value):
    """{{inc @index}}: one-based numbering inside #each."""
    return str(int(value) + 1)


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
    "inc": _helper_inc,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS)).strip()
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def resolve_template(name: str, defaults: dict[str, str], overrides: dict[str, str] | None) -> str:
    """Pick the configured override for *name*, else the built-in default."""
    if overrides and overrides.get(name):
        return overrides[name]
    try:
        return defaults[name]
    except KeyError as e:
        raise PromptError(f"Unknown prompt template: {name}") from e


# ── Story field templates ────────────────────────────────

FIELD_LABELS: dict[str, str] = {
    "canon": "Canon",
    "story_prompt": "Story Prompt",
    "attg": "Author, Title, Tags, Genre",
    "style": "Style Guidelines",
    "dramatis_personae": "Dramatis Personae",
    "universe_systems": "Universe Systems",
    "locations": "Locations",
    "factions": "Factions",
    "situational_dynamics": "Situational Dynamics",
}

STORY_TEMPLATES: dict[str, str] = {
    "field": (
        "You are a story-planning assistant. Write the {{{label}}} section for the story.\n"
        "{{#if canon}}Established canon:\n{{{canon}}}\n{{/if}}"
        "{{#if current}}Current draft (replace it):\n{{{current}}}\n{{/if}}"
        "Write only the section content, no headings."
    ),
    "list": (
        "You are a story-planning assistant. List new entries for {{{label}}}.\n"
        "{{#if canon}}Established canon:\n{{{canon}}}\n{{/if}}"
        "{{#if existing}}Already listed (do not repeat):\n"
        "{{#each existing}}- {{{this}}}\n{{/each}}{{/if}}"
        "One entry per line, formatted as `Name: short description`."
        "{{#if is_characters}} Characters may add `(gender, age, role)` after the name.{{/if}}"
    ),
    "brainstorm": (
        "You are a creative partner brainstorming a story with the author. "
        "Offer concrete, surprising ideas and keep replies short.\n"
        "{{#if canon}}Established canon:\n{{{canon}}}{{/if}}"
    ),
}
