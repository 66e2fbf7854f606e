"""Dependency reference parsing.

A depends_on entry is a string in one of five shapes, checked in this order:

    v1.0          whole version          -> RefKind.WHOLE_GROUP
    v0.1:1.2.3    item in another version -> RefKind.CROSS_GROUP_ITEM
    1.2.3         item (STORY- prefix ok) -> RefKind.ITEM
    v0.1:1[:2]    phase[:epic] of a version -> RefKind.GROUP_SUBSET
    1[:2]         phase[:epic], caller's version -> RefKind.SUBSET

Anything else parses to RefKind.INVALID. Parsing is separate from
resolution so the resolver dispatches on an explicit variant rather than
on regexes.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RefKind(Enum):
    WHOLE_GROUP = "whole_group"
    CROSS_GROUP_ITEM = "cross_group_item"
    ITEM = "item"
    GROUP_SUBSET = "group_subset"
    SUBSET = "subset"
    INVALID = "invalid"


_WHOLE_GROUP = re.compile(r'^(v\d+\.\d+)$')
_CROSS_GROUP_ITEM = re.compile(r'^(v\d+\.\d+):(\d+\.\d+\.\d+)$')
_ITEM = re.compile(r'^(?:STORY-)?(\d+\.\d+\.\d+)$')
_GROUP_SUBSET = re.compile(r'^(v\d+\.\d+):(\d+)(?::(\d+))?$')
_SUBSET = re.compile(r'^(\d+)(?::(\d+))?$')


@dataclass(frozen=True)
class DependencyRef:
    """Parsed dependency reference."""
    kind: RefKind
    raw: str
    version: Optional[str] = None
    phase: Optional[int] = None
    epic: Optional[int] = None
    item_number: Optional[str] = None  # "1.2.3" for item kinds

    @property
    def qualified_id(self) -> Optional[str]:
        """Full item id for CROSS_GROUP_ITEM references."""
        if self.kind is RefKind.CROSS_GROUP_ITEM:
            return f"{self.version}:{self.item_number}"
        return None


def _optional_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value is not None else None


def parse_reference(ref: str) -> DependencyRef:
    """Parse a dependency reference string into a DependencyRef."""
    text = ref.strip() if isinstance(ref, str) else ""

    match = _WHOLE_GROUP.match(text)
    if match:
        return DependencyRef(RefKind.WHOLE_GROUP, ref, version=match.group(1))

    match = _CROSS_GROUP_ITEM.match(text)
    if match:
        return DependencyRef(
            RefKind.CROSS_GROUP_ITEM, ref,
            version=match.group(1), item_number=match.group(2),
        )

    match = _ITEM.match(text)
    if match:
        return DependencyRef(RefKind.ITEM, ref, item_number=match.group(1))

    match = _GROUP_SUBSET.match(text)
    if match:
        return DependencyRef(
            RefKind.GROUP_SUBSET, ref,
            version=match.group(1),
            phase=int(match.group(2)),
            epic=_optional_int(match.group(3)),
        )

    match = _SUBSET.match(text)
    if match:
        return DependencyRef(
            RefKind.SUBSET, ref,
            phase=int(match.group(1)),
            epic=_optional_int(match.group(2)),
        )

    return DependencyRef(RefKind.INVALID, ref)
