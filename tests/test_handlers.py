"""Tests for the story-target generation handlers."""

from story_engine.handlers import BrainstormHandler, FieldHandler, ListHandler, parse_list_line
from story_engine.models import (
    BrainstormMessage,
    BrainstormTarget,
    DulfsItem,
    FieldTarget,
    ListTarget,
)


class TestParseListLine:
    def test_generic_entry(self) -> None:
        item = parse_list_line("- **The Docks**: rotting piers", "locations")
        assert (item.name, item.content) == ("The Docks", "rotting piers")

    def test_numbered_entry(self) -> None:
        item = parse_list_line("2. Tide Guild: smugglers", "factions")
        assert item.name == "Tide Guild"

    def test_character_with_details(self) -> None:
        item = parse_list_line("Mira (female, 30s, smuggler): owes the guild", "dramatis_personae")
        assert item.name == "Mira"
        assert item.content == "(female, 30s, smuggler) owes the guild"

    def test_character_without_details(self) -> None:
        item = parse_list_line("Oren: a priest", "dramatis_personae")
        assert (item.name, item.content) == ("Oren", "a priest")

    def test_chatter_ignored(self) -> None:
        assert parse_list_line("Here are some ideas", "locations") is None
        assert parse_list_line("   ", "locations") is None


class TestFieldHandler:
    async def test_prompt_includes_canon_and_current(self, storage) -> None:
        storage.set_field("canon", "A drowned city & its <saints>.")
        storage.set_field("style", "terse")
        handler = FieldHandler(FieldTarget(field_id="style"), storage, {})
        prompt = await handler.build()
        system = prompt.messages[0]["content"]
        assert "Style Guidelines" in system
        assert "A drowned city & its <saints>." in system
        assert "terse" in system
        assert prompt.priority == "foreground"

    async def test_template_override(self, storage) -> None:
        handler = FieldHandler(FieldTarget(field_id="attg"), storage, {"field": "Only {{{label}}}"})
        prompt = await handler.build()
        assert prompt.messages[0]["content"] == "Only Author, Title, Tags, Genre"

    async def test_complete_stores_cleaned_text(self, storage) -> None:
        handler = FieldHandler(FieldTarget(field_id="story_prompt"), storage, {})
        await handler.on_complete("</think>Start at the flood.")
        assert storage.get_field("story_prompt") == "Start at the flood."

    async def test_empty_output_keeps_previous(self, storage) -> None:
        storage.set_field("story_prompt", "old")
        handler = FieldHandler(FieldTarget(field_id="story_prompt"), storage, {})
        await handler.on_complete("<think>hmm")
        assert storage.get_field("story_prompt") == "old"


class TestListHandler:
    async def test_prompt_lists_existing_names(self, storage) -> None:
        storage.add_list_item(DulfsItem(field_id="locations", name="The Docks"))
        prompt = await ListHandler(ListTarget(field_id="locations"), storage, {}).build()
        assert "- The Docks" in prompt.messages[0]["content"]

    async def test_lines_added_as_they_stream(self, storage) -> None:
        handler = ListHandler(ListTarget(field_id="locations"), storage, {})
        handler.on_line("The Docks: rotting piers")
        assert [i.name for i in storage.get_list_items("locations")] == ["The Docks"]
        handler.on_line("the docks: again")
        handler.on_line("Salt Market: loud")
        assert [i.name for i in handler.added] == ["The Docks", "Salt Market"]

    async def test_think_block_skipped(self, storage) -> None:
        handler = ListHandler(ListTarget(field_id="factions"), storage, {})
        for line in ["<think>", "Fake Guild: ignore me", "</think>", "Tide Guild: smugglers"]:
            handler.on_line(line)
        assert [i.name for i in storage.get_list_items("factions")] == ["Tide Guild"]


class TestBrainstormHandler:
    async def test_prompt_replays_history(self, storage) -> None:
        storage.append_brainstorm(BrainstormMessage(role="user", content="pirates?"))
        prompt = await BrainstormHandler(BrainstormTarget(), storage, {}).build()
        assert prompt.messages[0]["role"] == "system"
        assert prompt.messages[1:] == [{"role": "user", "content": "pirates?"}]

    async def test_empty_history_gets_opener(self, storage) -> None:
        prompt = await BrainstormHandler(BrainstormTarget(), storage, {}).build()
        assert prompt.messages[-1]["role"] == "user"

    async def test_reply_appended(self, storage) -> None:
        await BrainstormHandler(BrainstormTarget(), storage, {}).on_complete("Sky pirates!")
        assert storage.get_brainstorm()[-1] == BrainstormMessage(role="assistant", content="Sky pirates!")
