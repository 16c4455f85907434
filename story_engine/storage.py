"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM: reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      config.json        ← app config (see story_engine.config)
      fields.json        ← {field_id: text} for the free-text story fields
      dulfs.json         ← {field_id: [DulfsItem]} world lists
      brainstorm.json    ← append-only list of BrainstormMessage
      crucible.json      ← persisted CrucibleState
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from story_engine.models import (
    DULFS_FIELDS,
    BrainstormMessage,
    CrucibleState,
    DulfsItem,
    MergedElement,
)

logger = logging.getLogger(__name__)


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _path(self, name: str) -> Path:
        return self._base / name

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False))

    # ------------------------------------------------------------------
    # Text fields
    # ------------------------------------------------------------------

    def get_fields(self) -> dict[str, str]:
        return self._read_json(self._path("fields.json"), {})

    def get_field(self, field_id: str) -> str:
        return self.get_fields().get(field_id, "")

    def set_field(self, field_id: str, content: str) -> None:
        fields = self.get_fields()
        fields[field_id] = content
        self._write_json(self._path("fields.json"), fields)

    # ------------------------------------------------------------------
    # DULFS lists
    # ------------------------------------------------------------------

    def _get_lists(self) -> dict[str, list[dict]]:
        return self._read_json(self._path("dulfs.json"), {})

    def get_list_items(self, field_id: str) -> list[DulfsItem]:
        return [DulfsItem.model_validate(i) for i in self._get_lists().get(field_id, [])]

    def get_all_lists(self) -> dict[str, list[DulfsItem]]:
        lists = self._get_lists()
        return {
            field_id: [DulfsItem.model_validate(i) for i in lists.get(field_id, [])]
            for field_id in DULFS_FIELDS
        }

    def add_list_item(self, item: DulfsItem) -> bool:
        """Append *item* unless an entry with the same name exists.

        Names compare case-insensitively. Returns True if added.
        """
        lists = self._get_lists()
        items = lists.setdefault(item.field_id, [])
        key = item.name.strip().lower()
        if any(i["name"].strip().lower() == key for i in items):
            return False
        items.append(item.model_dump())
        self._write_json(self._path("dulfs.json"), lists)
        return True

    def remove_list_item(self, field_id: str, item_id: str) -> bool:
        lists = self._get_lists()
        items = lists.get(field_id, [])
        kept = [i for i in items if i["id"] != item_id]
        if len(kept) == len(items):
            return False
        lists[field_id] = kept
        self._write_json(self._path("dulfs.json"), lists)
        return True

    def create_elements(self, field_id: str, elements: list[MergedElement]) -> list[DulfsItem]:
        """Create list entries from merged crucible elements.

        Returns the entries actually created (existing names are skipped).
        """
        created: list[DulfsItem] = []
        for element in elements:
            item = DulfsItem(field_id=field_id, name=element.name, content=element.content)
            if self.add_list_item(item):
                created.append(item)
        logger.debug("created %d/%d %s entries", len(created), len(elements), field_id)
        return created

    # ------------------------------------------------------------------
    # Brainstorm (append-only)
    # ------------------------------------------------------------------

    def get_brainstorm(self) -> list[BrainstormMessage]:
        return [
            BrainstormMessage.model_validate(m)
            for m in self._read_json(self._path("brainstorm.json"), [])
        ]

    def append_brainstorm(self, message: BrainstormMessage) -> None:
        messages = self._read_json(self._path("brainstorm.json"), [])
        messages.append(message.model_dump())
        self._write_json(self._path("brainstorm.json"), messages)

    def clear_brainstorm(self) -> None:
        self._write_json(self._path("brainstorm.json"), [])

    # ------------------------------------------------------------------
    # Crucible state
    # ------------------------------------------------------------------

    def save_crucible(self, state: CrucibleState) -> None:
        self._path("crucible.json").write_text(state.model_dump_json(indent=2))

    def load_crucible(self) -> CrucibleState | None:
        path = self._path("crucible.json")
        if not path.exists():
            return None
        try:
            return CrucibleState.model_validate_json(path.read_text())
        except ValidationError as e:
            logger.warning("discarding unreadable crucible state: %s", e)
            return None
