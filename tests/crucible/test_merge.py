"""Tests for story_engine.crucible.merge."""

from story_engine.crucible.merge import flatten, merge_world
from story_engine.models import CrucibleWorldElement


def _el(name: str, field_id: str = "dramatis_personae", goal_id: str | None = "g1", **kw) -> CrucibleWorldElement:
    return CrucibleWorldElement(name=name, field_id=field_id, goal_id=goal_id, **kw)


class TestMergeWorld:
    def test_groups_by_category(self) -> None:
        merged = merge_world([_el("Mira"), _el("Docks", "locations"), _el("Oren")])
        assert list(merged) == ["dramatis_personae", "locations"]
        assert [e.name for e in merged["dramatis_personae"]] == ["Mira", "Oren"]

    def test_dedupes_case_insensitively_first_wins(self) -> None:
        merged = merge_world([
            _el("Mira", content="smuggler", purpose="opens the gate"),
            _el("mira ", goal_id="g2", content="priestess", purpose="confesses"),
        ])
        (mira,) = merged["dramatis_personae"]
        assert mira.name == "Mira"
        assert mira.content == "smuggler"
        assert mira.goal_purposes == {"g1": "opens the gate", "g2": "confesses"}
        assert len(mira.source_ids) == 2

    def test_goal_order_decides_first_occurrence(self) -> None:
        elements = [
            _el("Mira", goal_id="g2", content="from g2"),
            _el("Mira", goal_id="g1", content="from g1"),
        ]
        merged = merge_world(elements, goal_order=["g1", "g2"])
        assert merged["dramatis_personae"][0].content == "from g1"

    def test_rationale_falls_back_to_description(self) -> None:
        merged = merge_world([_el("Mira", content="smuggler")])
        assert merged["dramatis_personae"][0].goal_purposes == {"g1": "smuggler"}

    def test_same_name_in_two_categories_kept(self) -> None:
        merged = merge_world([_el("Harbor", "locations"), _el("Harbor", "factions")])
        assert len(flatten(merged)) == 2

    def test_blank_names_dropped(self) -> None:
        assert merge_world([_el("  ")]) == {}
