"""Ordered-list reconciliation for drag-and-drop gestures.

Pure functions: they never touch a store. Each returns the new in-memory
sequence (or groups) plus the minimal list of persisted patches needed to reach
it, e.g. `{"id": "f1", "order": 2}` or `{"id": "e1", "status_id": "s2"}`.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

from .errors import ReorderError


Item = Dict[str, Any]
Change = Dict[str, Any]


@dataclass
class ReorderResult:
    items: List[Item] | None = None
    groups: Dict[Any, List[Item]] | None = None
    changes: List[Change] = field(default_factory=list)
    noop: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def _check_index(index: Any, size: int, label: str, upper: int) -> None:
    if isinstance(index, bool) or not isinstance(index, int):
        raise ReorderError(message=f"{label} index must be an integer", path=label, detail={"index": repr(index)})
    if index < 0 or index > upper:
        raise ReorderError(
            message=f"{label} index {index} out of range",
            path=label,
            detail={"index": index, "size": size},
        )


def _assign_orders(items: List[Item], order_key: str | None, key: str, changes: Dict[Any, Change]) -> None:
    if not order_key:
        return
    for idx, item in enumerate(items):
        if item.get(order_key) != idx:
            item[order_key] = idx
            changes.setdefault(item[key], {key: item[key]})[order_key] = idx


def reorder(
    items: List[Item],
    source_index: int,
    dest_index: int,
    key: str = "id",
    order_key: str | None = "order",
) -> ReorderResult:
    """Move one item within a flat list and recompute dense orders.

    Every item whose order value differs from its new position gets a change.
    Moving an item onto its own position returns the input list as-is.
    """
    size = len(items)
    _check_index(source_index, size, "source", size - 1)
    _check_index(dest_index, size, "dest", size - 1)
    if source_index == dest_index:
        return ReorderResult(items=items, changes=[], noop=True)

    out = [copy.deepcopy(item) for item in items]
    moved = out.pop(source_index)
    out.insert(dest_index, moved)
    changes: Dict[Any, Change] = {}
    _assign_orders(out, order_key, key, changes)
    return ReorderResult(items=out, changes=list(changes.values()))


def reorder_to(items: List[Item], sequence: Iterable[Any], key: str = "id", order_key: str = "order") -> ReorderResult:
    """Reorder `items` to match a full sequence of ids."""
    ids = list(sequence)
    by_id = {item[key]: item for item in items}
    if len(ids) != len(items) or set(ids) != set(by_id) or len(set(ids)) != len(ids):
        raise ReorderError(
            message="sequence must list every item exactly once",
            path="sequence",
            detail={"expected": sorted(map(str, by_id)), "got": [str(i) for i in ids]},
        )
    out = [copy.deepcopy(by_id[item_id]) for item_id in ids]
    changes: Dict[Any, Change] = {}
    _assign_orders(out, order_key, key, changes)
    if not changes and [item[key] for item in items] == ids:
        return ReorderResult(items=items, changes=[], noop=True)
    return ReorderResult(items=out, changes=list(changes.values()))


def densify(items: List[Item], key: str = "id", order_key: str = "order") -> ReorderResult:
    """Sort by current order and close any gaps so orders read 0..n-1."""
    out = sorted((copy.deepcopy(item) for item in items), key=lambda item: (item.get(order_key) is None, item.get(order_key) or 0))
    changes: Dict[Any, Change] = {}
    _assign_orders(out, order_key, key, changes)
    return ReorderResult(items=out, changes=list(changes.values()))


def move_between_groups(
    groups: Dict[Any, List[Item]],
    source: Tuple[Any, int],
    dest: Tuple[Any, int],
    group_key: str = "status_id",
    key: str = "id",
    order_key: str | None = None,
) -> ReorderResult:
    """Move one item from `source=(group, index)` to `dest=(group, index)`.

    A cross-group move emits one `group_key` change for the moved item. When
    `order_key` is set, positions inside every affected group are persisted
    too.
    """
    source_group, source_index = source
    dest_group, dest_index = dest
    if source_group not in groups:
        raise ReorderError(message=f"Unknown source group: {source_group}", path="source", detail={"group": str(source_group)})
    if dest_group not in groups:
        raise ReorderError(message=f"Unknown destination group: {dest_group}", path="dest", detail={"group": str(dest_group)})
    source_size = len(groups[source_group])
    _check_index(source_index, source_size, "source", source_size - 1)
    dest_size = len(groups[dest_group])
    upper = dest_size - 1 if source_group == dest_group else dest_size
    _check_index(dest_index, dest_size, "dest", upper)
    if source_group == dest_group and source_index == dest_index:
        return ReorderResult(groups=groups, changes=[], noop=True)

    out = {name: list(members) for name, members in groups.items()}
    out[source_group] = [copy.deepcopy(item) for item in groups[source_group]]
    if dest_group != source_group:
        out[dest_group] = [copy.deepcopy(item) for item in groups[dest_group]]

    moved = out[source_group].pop(source_index)
    changes: Dict[Any, Change] = {}
    if dest_group != source_group:
        moved[group_key] = dest_group
        changes[moved[key]] = {key: moved[key], group_key: dest_group}
    out[dest_group].insert(dest_index, moved)

    if order_key:
        for name in {source_group, dest_group}:
            _assign_orders(out[name], order_key, key, changes)
    return ReorderResult(groups=out, changes=list(changes.values()))
