"""
Dependency resolution.

Expands a depends_on reference into the concrete items it names. Whole
versions and phase/epic subsets resolve to their leaf items: members that
no other member of the same set depends on.

Unresolvable references resolve to an empty list. Backlog data may carry
stale or speculative references, so this is logged at debug level and
never raised. Results are recomputed on every call since group membership
can change between runs.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from storyloop.lib.types import WorkItem

from .references import DependencyRef, RefKind, parse_reference

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedDep:
    item_id: str
    cross_group: bool


def leaf_items(candidates: list[WorkItem]) -> list[WorkItem]:
    """Return the candidates no other candidate depends on.

    One level only: depends_on entries are compared against the unqualified
    item numbers of the set (a STORY- prefix is dropped), chains are not followed.
    """
    numbers = {item.item_number for item in candidates}
    depended_on = set()
    for item in candidates:
        for dep in item.depends_on:
            parsed = parse_reference(dep)
            if parsed.kind is RefKind.ITEM and parsed.item_number in numbers:
                depended_on.add(parsed.item_number)
    return [item for item in candidates if item.item_number not in depended_on]


def _subset(candidates: Iterable[WorkItem], phase: int, epic: Optional[int]) -> list[WorkItem]:
    if epic is None:
        return [item for item in candidates if item.phase == phase]
    return [item for item in candidates if item.phase == phase and item.epic == epic]


def _as_resolved(items: list[WorkItem], group: Optional[str], current_version: Optional[str]) -> list[ResolvedDep]:
    return [ResolvedDep(item.id, group != current_version) for item in items]


def resolve_parsed(
    ref: DependencyRef,
    items: list[WorkItem],
    current_version: Optional[str] = None,
) -> list[ResolvedDep]:
    """Resolve an already parsed reference. See resolve_dependency."""
    if ref.kind is RefKind.WHOLE_GROUP:
        members = [item for item in items if item.version == ref.version]
        return _as_resolved(leaf_items(members), ref.version, current_version)

    if ref.kind is RefKind.CROSS_GROUP_ITEM:
        target = ref.qualified_id
        for item in items:
            if item.id == target:
                return [ResolvedDep(item.id, ref.version != current_version)]
        return []

    if ref.kind is RefKind.ITEM:
        if current_version:
            qualified = f"{current_version}:{ref.item_number}"
            for item in items:
                if item.id == qualified:
                    return [ResolvedDep(item.id, False)]
        # Fall back to any version
        for item in items:
            if item.item_number == ref.item_number:
                return [ResolvedDep(item.id, item.version != current_version)]
        return []

    if ref.kind is RefKind.GROUP_SUBSET:
        members = [item for item in items if item.version == ref.version]
        matching = _subset(members, ref.phase, ref.epic)
        return _as_resolved(leaf_items(matching), ref.version, current_version)

    if ref.kind is RefKind.SUBSET:
        if current_version:
            members = [item for item in items if item.version == current_version]
        else:
            members = items
        matching = _subset(members, ref.phase, ref.epic)
        return _as_resolved(leaf_items(matching), current_version, current_version)

    return []


def resolve_dependency(
    ref: str,
    items: list[WorkItem],
    current_version: Optional[str] = None,
) -> list[ResolvedDep]:
    """
    Resolve a dependency reference string to item ids.

    Args:
        ref: Reference such as "1.2.3", "v0.1:1.2.3", "v1.0", "v0.1:1:2", "1:2"
        items: All known items (any version)
        current_version: Version of the item that holds the reference

    Returns:
        ResolvedDep list, empty when nothing matches
    """
    parsed = parse_reference(ref)
    if parsed.kind is RefKind.INVALID:
        logger.debug(f"[DEPS] Malformed dependency reference '{ref}'")
        return []

    resolved = resolve_parsed(parsed, items, current_version)
    if not resolved:
        logger.debug(f"[DEPS] Reference '{ref}' resolved to no items (version={current_version})")
    return resolved
