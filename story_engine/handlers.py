"""Generation handlers: what each target kind does with its generation.

A handler builds the prompt for its target, optionally watches the stream
(whole lines via `on_line`, accumulated text via `on_delta`) and applies
the finished text in `on_complete`. `on_abort` runs instead when the
request is cancelled or fails. Handlers for the simple story targets live
here; the crucible ones live in story_engine.crucible.handlers.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from story_engine.llm import ChatMessage, GenerationParams, Priority
from story_engine.models import (
    BrainstormMessage,
    BrainstormTarget,
    DulfsFieldId,
    DulfsItem,
    FieldTarget,
    ListTarget,
)
from story_engine.prompts import FIELD_LABELS, STORY_TEMPLATES, render_prompt, resolve_template
from story_engine.storage import Storage
from story_engine.tags import strip_thinking_tags

logger = logging.getLogger(__name__)


@dataclass
class Prompt:
    messages: list[ChatMessage]
    params: GenerationParams = field(default_factory=GenerationParams)
    prefill: str = ""
    priority: Priority = "background"


def chat_messages(system: str, user: str, prefill: str = "") -> list[ChatMessage]:
    """System + user turn, plus an assistant prefill when given."""
    messages: list[ChatMessage] = [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]
    if prefill:
        messages.append({"role": "assistant", "content": prefill})
    return messages


class GenerationHandler:
    """Base class; subclasses override build() and on_complete()."""

    async def build(self) -> Prompt:
        raise NotImplementedError

    def on_line(self, line: str) -> None:
        pass

    def on_delta(self, text: str) -> None:
        pass

    async def on_complete(self, text: str) -> None:
        pass

    def on_abort(self, reason: str) -> None:
        pass


# ---------------------------------------------------------------------------
# List-line parsing
# ---------------------------------------------------------------------------

_LIST_MARKER = re.compile(r"^\s*(?:[-*+•]|\d+[.)])\s+")
_CHARACTER_LINE = re.compile(r"^([^:(]+?)\s*\(([^,]+),\s*([^,]+),\s*([^)]+)\)\s*:\s*(.+)$")
_GENERIC_LINE = re.compile(r"^([^:]+):\s*(.+)$")


def parse_list_line(line: str, field_id: DulfsFieldId) -> DulfsItem | None:
    """Parse one streamed list line into a DULFS item.

    Markdown list markers and bold markup are stripped. Lines without a
    `Name: description` shape are model chatter and yield None.
    """
    text = _LIST_MARKER.sub("", line.strip()).replace("**", "").strip()
    if not text:
        return None
    if field_id == "dramatis_personae":
        m = _CHARACTER_LINE.match(text)
        if m:
            name, gender, age, role, desc = (g.strip() for g in m.groups())
            return DulfsItem(
                field_id=field_id, name=name, content=f"({gender}, {age}, {role}) {desc}"
            )
    m = _GENERIC_LINE.match(text)
    if not m:
        return None
    name, desc = m.group(1).strip(), m.group(2).strip()
    if not name or len(name) > 80:
        return None
    return DulfsItem(field_id=field_id, name=name, content=desc)


# ---------------------------------------------------------------------------
# Story targets
# ---------------------------------------------------------------------------

class FieldHandler(GenerationHandler):
    """Streams a free-text story field and stores the finished text."""

    def __init__(self, target: FieldTarget, storage: Storage, templates: dict[str, str]) -> None:
        self.target = target
        self._storage = storage
        self._templates = templates
        self.draft = ""

    async def build(self) -> Prompt:
        field_id = self.target.field_id
        system = render_prompt(
            resolve_template("field", STORY_TEMPLATES, self._templates),
            {
                "label": FIELD_LABELS[field_id],
                "canon": self._storage.get_field("canon") if field_id != "canon" else "",
                "current": self._storage.get_field(field_id),
            },
        )
        return Prompt(
            messages=chat_messages(system, f"Write the {FIELD_LABELS[field_id]}."),
            params=GenerationParams(max_tokens=1024, temperature=0.9, min_p=0.05),
            priority="foreground",
        )

    def on_delta(self, text: str) -> None:
        self.draft = text

    async def on_complete(self, text: str) -> None:
        cleaned = strip_thinking_tags(text)
        if not cleaned:
            logger.warning("empty generation for field %s; keeping previous text", self.target.field_id)
            return
        self._storage.set_field(self.target.field_id, cleaned)


class ListHandler(GenerationHandler):
    """Adds DULFS entries line by line as the list streams in."""

    def __init__(self, target: ListTarget, storage: Storage, templates: dict[str, str]) -> None:
        self.target = target
        self._storage = storage
        self._templates = templates
        self.added: list[DulfsItem] = []
        self._in_think = False

    async def build(self) -> Prompt:
        field_id = self.target.field_id
        existing = [i.name for i in self._storage.get_list_items(field_id)]
        system = render_prompt(
            resolve_template("list", STORY_TEMPLATES, self._templates),
            {
                "label": FIELD_LABELS[field_id],
                "canon": self._storage.get_field("canon"),
                "existing": existing,
                "is_characters": field_id == "dramatis_personae",
            },
        )
        return Prompt(
            messages=chat_messages(system, f"List new {FIELD_LABELS[field_id]} entries."),
            params=GenerationParams(max_tokens=1024, temperature=0.9, min_p=0.05),
            priority="foreground",
        )

    def on_line(self, line: str) -> None:
        lowered = line.lower()
        if "<think>" in lowered:
            self._in_think = True
        if self._in_think:
            if "</think>" in lowered:
                self._in_think = False
            return
        item = parse_list_line(line, self.target.field_id)
        if item is not None and self._storage.add_list_item(item):
            self.added.append(item)

    async def on_complete(self, text: str) -> None:
        logger.debug("list %s: added %d entries", self.target.field_id, len(self.added))


class BrainstormHandler(GenerationHandler):
    """Continues the brainstorm conversation with one assistant reply."""

    def __init__(self, target: BrainstormTarget, storage: Storage, templates: dict[str, str]) -> None:
        self.target = target
        self._storage = storage
        self._templates = templates

    async def build(self) -> Prompt:
        system = render_prompt(
            resolve_template("brainstorm", STORY_TEMPLATES, self._templates),
            {"canon": self._storage.get_field("canon")},
        )
        messages: list[ChatMessage] = [{"role": "system", "content": system}]
        messages.extend(m.model_dump() for m in self._storage.get_brainstorm())
        if len(messages) == 1:
            messages.append({"role": "user", "content": "Let's brainstorm."})
        return Prompt(
            messages=messages,
            params=GenerationParams(max_tokens=512, temperature=1.0, min_p=0.05),
            priority="foreground",
        )

    async def on_complete(self, text: str) -> None:
        cleaned = strip_thinking_tags(text)
        if cleaned:
            self._storage.append_brainstorm(BrainstormMessage(role="assistant", content=cleaned))
