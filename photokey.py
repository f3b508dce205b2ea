"""
In-memory photo key structure and floorplan frame lifecycle.

Storage is somebody else's job; this module only enforces the rules:
  - attaching an image creates the unset sentinel frame
  - a frame is replaced only through commit_frame
  - a numbered floor that loses its last item loses its frame
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from geo import UNASSIGNED_FLOOR, FloorplanReferenceFrame, KeyItem
from numbering import assign_global_numbers, sort_floor_ids

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Floor(BaseModel):
    floorplan: Optional[FloorplanReferenceFrame] = None
    items: List[KeyItem] = Field(default_factory=list)


class PhotoKey(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    date_created: str = Field(default_factory=_now)
    last_modified: str = Field(default_factory=_now)
    floors: Dict[str, Floor] = Field(default_factory=lambda: {UNASSIGNED_FLOOR: Floor()})

    def _touch(self) -> None:
        self.last_modified = _now()

    def ensure_floor(self, floor_id: str) -> Floor:
        if floor_id not in self.floors:
            self.floors[floor_id] = Floor()
        return self.floors[floor_id]

    def _floor(self, floor_id: str) -> Floor:
        try:
            return self.floors[floor_id]
        except KeyError:
            raise KeyError(f"Unknown floor: {floor_id}") from None

    def _drop_orphaned_frame(self, floor_id: str) -> None:
        floor = self.floors[floor_id]
        if floor_id != UNASSIGNED_FLOOR and not floor.items and floor.floorplan is not None:
            logger.info(f"Floor {floor_id} has no photos left; removing its floorplan")
            floor.floorplan = None

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def add_item(self, floor_id: str, item: KeyItem) -> KeyItem:
        floor = self.ensure_floor(floor_id)
        item = item.model_copy(update={"floor_id": floor_id})
        floor.items.append(item)
        self._touch()
        return item

    def remove_item(self, floor_id: str, item_id: str) -> None:
        floor = self._floor(floor_id)
        remaining = [i for i in floor.items if i.id != item_id]
        if len(remaining) == len(floor.items):
            raise KeyError(f"Item {item_id} not found on floor {floor_id}")
        floor.items = remaining
        self._drop_orphaned_frame(floor_id)
        self._touch()

    def update_item(self, floor_id: str, item_id: str, **updates) -> KeyItem:
        floor = self._floor(floor_id)
        for index, item in enumerate(floor.items):
            if item.id == item_id:
                floor.items[index] = item.model_copy(update=updates)
                self._touch()
                return floor.items[index]
        raise KeyError(f"Item {item_id} not found on floor {floor_id}")

    def move_item(self, item_id: str, from_floor: str, to_floor: str) -> KeyItem:
        source = self._floor(from_floor)
        item = next((i for i in source.items if i.id == item_id), None)
        if item is None:
            raise KeyError(f"Item {item_id} not found on floor {from_floor}")

        source.items = [i for i in source.items if i.id != item_id]
        moved = item.model_copy(update={"floor_id": to_floor})
        self.ensure_floor(to_floor).items.append(moved)
        self._drop_orphaned_frame(from_floor)
        self._touch()
        return moved

    # ------------------------------------------------------------------
    # Floorplans
    # ------------------------------------------------------------------

    def attach_floorplan(self, floor_id: str, image_ref: str) -> FloorplanReferenceFrame:
        """Attach an image; keeps an existing alignment, otherwise starts unset."""
        floor = self.ensure_floor(floor_id)
        if floor.floorplan is None:
            floor.floorplan = FloorplanReferenceFrame.unset(image_ref)
        else:
            floor.floorplan = floor.floorplan.model_copy(update={"image_ref": image_ref})
        self._touch()
        return floor.floorplan

    def commit_frame(self, floor_id: str, frame: FloorplanReferenceFrame) -> FloorplanReferenceFrame:
        floor = self._floor(floor_id)
        if floor.floorplan is None:
            raise KeyError(f"Floor {floor_id} has no floorplan to align")
        floor.floorplan = frame.model_copy(update={"image_ref": frame.image_ref or floor.floorplan.image_ref})
        self._touch()
        return floor.floorplan

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def floor_items(self) -> Dict[str, List[KeyItem]]:
        return {floor_id: list(floor.items) for floor_id, floor in self.floors.items()}

    def ordered_floor_ids(self, unassigned_first: bool = False) -> List[str]:
        return sort_floor_ids(self.floors.keys(), unassigned_first=unassigned_first)

    def global_numbers(self, unassigned_first: bool = False) -> Dict[str, int]:
        return assign_global_numbers(self.floor_items(), self.ordered_floor_ids(unassigned_first))
