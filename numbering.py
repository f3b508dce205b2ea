"""
Global marker numbering across all floors of a photo key.

Numbers are 1-based and recomputed from scratch on every call: floors in
the requested order, items in insertion order within a floor.
"""
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from geo import UNASSIGNED_FLOOR, KeyItem, Marker


def _floor_sort_key(floor_id: str) -> Tuple[int, int, str]:
    # numeric floors first (ascending), then other names alphabetically
    try:
        return (0, int(floor_id), "")
    except ValueError:
        return (1, 0, floor_id)


def sort_floor_ids(floor_ids: Iterable[str], unassigned_first: bool = False) -> List[str]:
    """
    Order floor identifiers.

    The report uses the canonical order (unassigned last); the live list
    view puts unassigned first.
    """
    ids = list(floor_ids)
    named = sorted((f for f in ids if f != UNASSIGNED_FLOOR), key=_floor_sort_key)
    if UNASSIGNED_FLOOR not in ids:
        return named
    return [UNASSIGNED_FLOOR] + named if unassigned_first else named + [UNASSIGNED_FLOOR]


def assign_global_numbers(floors: Mapping[str, Sequence[KeyItem]],
                          floor_order: Optional[Sequence[str]] = None) -> Dict[str, int]:
    """
    Map every item id to its 1-based global index.

    Args:
        floors: floor id -> items on that floor, in insertion order
        floor_order: explicit floor order; defaults to the canonical order

    Returns:
        Dictionary of item id -> sequence number
    """
    order = list(floor_order) if floor_order is not None else sort_floor_ids(floors.keys())
    numbers: Dict[str, int] = {}
    index = 0
    for floor_id in order:
        for item in floors.get(floor_id, ()):
            index += 1
            numbers[item.id] = index
    return numbers


def floor_markers(items: Sequence[KeyItem], numbers: Mapping[str, int]) -> List[Marker]:
    """Markers for the geotagged items of one floor, carrying their global numbers."""
    return [
        Marker(
            item_id=item.id,
            number=numbers[item.id],
            heading_degrees=item.heading_degrees,
            coordinate=item.coordinates,
        )
        for item in items
        if item.coordinates is not None
    ]
