"""Tag protocol codec: the bracketed plain-text format the model speaks.

Model output is structured with uppercase markers:

    [GOAL] Stop the coup
    [STAKES] The city falls
    +++
    [GOAL] ...

A tag's content runs from its marker to the next tag marker (or end of
text). Sections are separated by "+++" lines. Beat outputs additionally
carry constraint markers ([RESOLVED], [OPEN], [GROUND]).

For display, markers are swapped for emoji glyphs; structural parsing always
runs on the bracketed form, so display text is restored first.
"""

from __future__ import annotations

import re

# Fixed bijective tag → glyph table used for display.
TAG_EMOJI: dict[str, str] = {
    "CORE TENSION": "\U0001F525",
    "WORLD PREMISE": "\U0001F30D",
    "NARRATIVE DIRECTION": "\U0001F9ED",
    "TAGS": "\U0001F3F7\uFE0F",
    "GOAL": "\U0001F3AF",
    "STAKES": "\u26A0\uFE0F",
    "THEME": "\U0001F4A1",
    "EMOTIONAL ARC": "\U0001F4AB",
    "TERMINAL CONDITION": "\U0001F3C1",
    "SCENE": "\U0001F3AC",
    "LOCATION": "\U0001F4CD",
    "CONFLICT": "\u2694\uFE0F",
    "RESOLVED": "\u2705",
    "OPEN": "\u2B55",
    "GROUND": "\u26F0\uFE0F",
    "CHARACTER": "\U0001F464",
    "FACTION": "\U0001F3F4",
    "SYSTEM": "\u2699\uFE0F",
    "SITUATION": "\u26A1",
    "DESCRIPTION": "\U0001F4DD",
    "LINK": "\U0001F517",
    "BEAT": "\U0001F3B5",
    "SOLVER": "\U0001F504",
}

EMOJI_TAG: dict[str, str] = {emoji: tag for tag, emoji in TAG_EMOJI.items()}

SECTION_SEPARATOR = "+++"

# A marker ends the current tag's content when it starts a new line (any
# word characters, e.g. "[TAINT Scene 2]") or when it is an uppercase
# marker preceded by whitespace on the same line.
_NEXT_TAG = re.compile(r"\n\[[\w ]+\]|(?:^|(?<=\s))\[[A-Z][A-Z ]*\]")

_DISPLAY_TAG = re.compile(r"\[([A-Z\s]+)\]")

_THINK_TAG = re.compile(r"</?think>", re.IGNORECASE)


def parse_tag(text: str, tag: str) -> str | None:
    """Return the trimmed content of the first [TAG] in *text*, or None."""
    marker = f"[{tag}]"
    start = text.find(marker)
    if start == -1:
        return None
    rest = text[start + len(marker):]
    end = _NEXT_TAG.search(rest)
    content = rest[:end.start()] if end else rest
    return content.strip()


def parse_tag_all(text: str, tag: str) -> list[str]:
    """Return the content of every [TAG] occurrence, in order."""
    marker = f"[{tag}]"
    results: list[str] = []
    pos = text.find(marker)
    while pos != -1:
        content = parse_tag(text[pos:], tag)
        if content:
            results.append(content)
        pos = text.find(marker, pos + len(marker))
    return results


def parse_tag_list(text: str, tag: str, sep: str = ";") -> list[str]:
    """Split a tag's content on *sep*, dropping empty entries."""
    content = parse_tag(text, tag)
    if not content:
        return []
    return [part.strip() for part in content.split(sep) if part.strip()]


def has_tag(text: str, tag: str) -> bool:
    return f"[{tag}]" in text


def split_sections(text: str, sep: str = SECTION_SEPARATOR) -> list[str]:
    """Split on *sep*, trimming each piece and dropping empties."""
    return [part.strip() for part in text.split(sep) if part.strip()]


def format_tags_with_emoji(text: str) -> str:
    """Swap [TAG] markers for their glyphs; unknown tags become **TAG**."""

    def _replace(match: re.Match[str]) -> str:
        tag = match.group(1)
        emoji = TAG_EMOJI.get(tag)
        return emoji if emoji is not None else f"**{tag}**"

    return _DISPLAY_TAG.sub(_replace, text)


def restore_tags_from_emoji(text: str) -> str:
    """Inverse of format_tags_with_emoji for the known tag table."""
    for emoji, tag in EMOJI_TAG.items():
        text = text.replace(emoji, f"[{tag}]")
    return text


def strip_thinking_tags(text: str) -> str:
    """Drop <think> breakout artifacts.

    An unclosed <think> swallows everything after it; stray close tags are
    simply removed.
    """
    lowered = text.lower()
    open_at = lowered.rfind("<think>")
    if open_at != -1 and lowered.find("</think>", open_at) == -1:
        text = text[:open_at]
    return _THINK_TAG.sub("", text).strip()
