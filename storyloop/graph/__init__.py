"""Dependency graph for storyloop backlogs.

Reference parsing, resolution and depth layering. Everything here is pure:
no store access and no side effects beyond logging data-quality anomalies.
"""

from storyloop.graph.references import (
    DependencyRef,
    RefKind,
    parse_reference,
)
from storyloop.graph.resolver import (
    ResolvedDep,
    leaf_items,
    resolve_dependency,
    resolve_parsed,
)
from storyloop.graph.layers import (
    calculate_depths,
    find_cycles,
    group_by_depth,
)

__all__ = [
    # references
    "DependencyRef",
    "RefKind",
    "parse_reference",
    # resolver
    "ResolvedDep",
    "leaf_items",
    "resolve_dependency",
    "resolve_parsed",
    # layers
    "calculate_depths",
    "find_cycles",
    "group_by_depth",
]
