"""
Hierarchy Sorter

Orders a flat parent/child item set into dependency-safe levels: every item's
parent belongs to a strictly earlier level. Used by the build to emit content
in document order and by the import to commit parents before their children.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from courseport.exceptions import StructuralError


@dataclass
class Hierarchy:
    """Result of sorting one course tree."""

    root_id: str
    levels: list[list[str]] = field(default_factory=list)
    children: dict[str, list[str]] = field(default_factory=dict)
    depth: dict[str, int] = field(default_factory=dict)

    def document_order(self) -> Iterator[str]:
        """Yield every id depth-first, parents before children, siblings in order."""
        stack = [self.root_id]
        while stack:
            item_id = stack.pop()
            yield item_id
            stack.extend(reversed(self.children.get(item_id, [])))

    def positions(self) -> dict[str, int]:
        """Return each non-root id's 1-based position among its siblings."""
        return {
            child_id: index
            for child_ids in self.children.values()
            for index, child_id in enumerate(child_ids, start=1)
        }


def _sort_key(item: Mapping[str, Any], input_index: int) -> tuple:
    sort_order = item.get("_sortOrder")
    if isinstance(sort_order, (int, float)) and not isinstance(sort_order, bool):
        return (0, sort_order, input_index)
    return (1, 0, input_index)


def sort_hierarchy(
    items: Iterable[Mapping[str, Any]],
    root_id: str,
    id_key: str = "_id",
    parent_key: str = "_parentId",
) -> Hierarchy:
    """
    Sort items into breadth-first levels below root_id.

    Args:
        items: Item mappings; the root itself may or may not be included
        root_id: Id of the single root
        id_key: Key holding each item's id
        parent_key: Key holding each item's parent id

    Returns:
        Hierarchy with levels, ordered children and per-item depth

    Raises:
        StructuralError: duplicate ids, a second root, duplicate sibling
            sort orders, or items that never connect to the root
    """
    by_id: dict[str, Mapping[str, Any]] = {}
    input_index: dict[str, int] = {}
    for index, item in enumerate(items):
        item_id = item.get(id_key)
        if item_id is None:
            raise StructuralError(f"Content item at position {index} has no id")
        if item_id == root_id:
            continue
        if item_id in by_id:
            raise StructuralError(f"Duplicate content item id '{item_id}'", item_ids=[item_id])
        if not item.get(parent_key):
            raise StructuralError(f"Content item '{item_id}' has no parent", item_ids=[item_id])
        by_id[item_id] = item
        input_index[item_id] = index

    hierarchy = Hierarchy(root_id=root_id, levels=[[root_id]], depth={root_id: 0})
    remaining = set(by_id)

    while remaining:
        previous = hierarchy.levels[-1]
        previous_set = set(previous)
        grouped: dict[str, list[str]] = defaultdict(list)
        for item_id in remaining:
            parent_id = by_id[item_id][parent_key]
            if parent_id in previous_set:
                grouped[parent_id].append(item_id)

        if not grouped:
            orphans = sorted(remaining, key=input_index.__getitem__)
            raise StructuralError(
                f"{len(orphans)} content item(s) are not connected to root '{root_id}'",
                item_ids=orphans,
            )

        level: list[str] = []
        for parent_id in previous:  # keep the parent level's order
            siblings = sorted(grouped.get(parent_id, []), key=lambda i: _sort_key(by_id[i], input_index[i]))
            _check_unique_sort_orders(parent_id, siblings, by_id)
            if siblings:
                hierarchy.children[parent_id] = siblings
            level.extend(siblings)

        depth = len(hierarchy.levels)
        for item_id in level:
            hierarchy.depth[item_id] = depth
        hierarchy.levels.append(level)
        remaining.difference_update(level)

    return hierarchy


def _check_unique_sort_orders(parent_id: str, siblings: list[str], by_id: Mapping[str, Mapping[str, Any]]) -> None:
    seen: dict[Any, str] = {}
    for item_id in siblings:
        sort_order = by_id[item_id].get("_sortOrder")
        if sort_order is None:
            continue
        if sort_order in seen:
            raise StructuralError(
                f"Children of '{parent_id}' share sort order {sort_order}",
                item_ids=[seen[sort_order], item_id],
            )
        seen[sort_order] = item_id
