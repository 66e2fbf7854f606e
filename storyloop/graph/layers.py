"""
Layer calculation.

Depth of an item is the length of its longest dependency chain within the
working set: 0 with no resolvable dependencies, else 1 + the deepest
dependency. Cyclic data is tolerated. A dependency that re-enters the
current walk is dropped from the max and logged as a warning, so every
item still gets a finite depth.
"""

import logging
from typing import Optional

from storyloop.lib.types import WorkItem

from .resolver import resolve_dependency

logger = logging.getLogger(__name__)


def _valid_deps(item: WorkItem, items: list[WorkItem], known: set[str]) -> list[str]:
    deps = []
    for ref in item.depends_on:
        for resolved in resolve_dependency(ref, items, item.version):
            if resolved.item_id in known:
                deps.append(resolved.item_id)
    return deps


def calculate_depths(items: list[WorkItem]) -> dict[str, int]:
    """Compute the depth of every item, memoized for this call."""
    by_id = {item.id: item for item in items}
    known = set(by_id)
    depths: dict[str, int] = {}
    edges = {item.id: _valid_deps(item, items, known) for item in items}

    def depth_of(item_id: str, path: set[str]) -> Optional[int]:
        if item_id in depths:
            return depths[item_id]
        if item_id in path:
            return None

        path.add(item_id)
        dep_depths = []
        for dep in edges.get(item_id, []):
            dep_depth = depth_of(dep, path)
            if dep_depth is None:
                logger.warning(f"[LAYERS] Dependency cycle: {item_id} -> {dep}")
                continue
            dep_depths.append(dep_depth)
        path.discard(item_id)

        depth = 1 + max(dep_depths) if dep_depths else 0
        depths[item_id] = depth
        return depth

    for item in items:
        depth_of(item.id, set())
    return depths


def group_by_depth(items: list[WorkItem], depths: dict[str, int] | None = None) -> dict[int, list[WorkItem]]:
    """Bucket items by depth, each layer ordered by (phase, epic, number)."""
    if depths is None:
        depths = calculate_depths(items)

    layers: dict[int, list[WorkItem]] = {}
    for item in items:
        layers.setdefault(depths.get(item.id, 0), []).append(item)
    for layer in layers.values():
        layer.sort(key=lambda i: (i.phase, i.epic, i.number))
    return dict(sorted(layers.items()))


def find_cycles(items: list[WorkItem]) -> list[list[str]]:
    """Return dependency cycles as lists of item ids.

    Each cycle is reported once, starting from its first member in input
    order.
    """
    known = {item.id for item in items}
    edges = {item.id: _valid_deps(item, items, known) for item in items}
    order = {item.id: index for index, item in enumerate(items)}

    cycles = []
    seen = set()
    for start in (item.id for item in items):
        stack = [(start, [start])]
        while stack:
            node, trail = stack.pop()
            for dep in edges.get(node, []):
                if dep == start:
                    members = frozenset(trail)
                    # Report each cycle from its earliest member only
                    if members not in seen and min(trail, key=order.get) == start:
                        seen.add(members)
                        cycles.append(list(trail))
                elif dep not in trail and order[dep] > order[start]:
                    stack.append((dep, trail + [dep]))
    return cycles
