"""
Next-item selection.

Scoring model (higher = better), against the last completed item:
    proximity * 5.0           same epic (1.0), same phase (0.5), other (0.0)
    tag_overlap * 3.0         Jaccard similarity of tag sets
    blocker_score * 2.0       open items waiting on this one, /10 clamped
    priority_score * 1.0      user priority, /10 clamped
    inverse_complexity * 0.5  fewer acceptance criteria first
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from storyloop.graph.resolver import resolve_dependency
from storyloop.lib.constants import (
    SCORE_NORMALIZER,
    WEIGHT_BLOCKER,
    WEIGHT_INVERSE_COMPLEXITY,
    WEIGHT_PRIORITY,
    WEIGHT_PROXIMITY,
    WEIGHT_TAG_OVERLAP,
)
from storyloop.lib.types import WorkItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoryScore:
    """Score breakdown for one candidate. Never persisted."""
    item_id: str
    score: float
    proximity: float
    tag_overlap: float
    blocker_value: int
    blocker_score: float
    priority_score: float
    inverse_complexity: float


def _version_key(version: Optional[str]) -> tuple:
    if not version:
        return ()
    return tuple(int(part) for part in re.findall(r'\d+', version))


def item_order_key(item: WorkItem) -> tuple:
    """Deterministic (version, phase, epic, number) ordering."""
    return (_version_key(item.version), item.phase, item.epic, item.number)


def is_dependency_met(ref: str, item: WorkItem, items: list[WorkItem]) -> bool:
    """True when ref resolves to at least one item and every one is merged.

    A reference that resolves to nothing is unmet.
    """
    resolved = resolve_dependency(ref, items, item.version)
    if not resolved:
        return False
    by_id = {i.id: i for i in items}
    return all(by_id[r.item_id].merged for r in resolved)


def runnable_items(items: list[WorkItem]) -> list[WorkItem]:
    """Items that are open and have every dependency merged."""
    runnable = []
    for item in items:
        if item.passed or item.skipped or item.merged:
            continue
        if all(is_dependency_met(ref, item, items) for ref in item.depends_on):
            runnable.append(item)
    return sorted(runnable, key=item_order_key)


def tree_proximity(item: WorkItem, last: Optional[WorkItem]) -> float:
    if last is None:
        return 0.0
    if item.phase == last.phase and item.epic == last.epic:
        return 1.0
    if item.phase == last.phase:
        return 0.5
    return 0.0


def tag_overlap(tags_a: list[str], tags_b: list[str]) -> float:
    """Jaccard similarity; 0.0 when either side has no tags."""
    if not tags_a or not tags_b:
        return 0.0
    a, b = set(tags_a), set(tags_b)
    return len(a & b) / len(a | b)


def dependent_counts(items: list[WorkItem]) -> dict[str, int]:
    """Map each item id to the number of other unpassed items depending on it.

    Every reference is resolved once, so callers scoring many candidates
    should build this once and pass it along.
    """
    counts: dict[str, int] = {}
    for other in items:
        if other.passed:
            continue
        targets = set()
        for ref in other.depends_on:
            targets.update(r.item_id for r in resolve_dependency(ref, items, other.version))
        targets.discard(other.id)
        for target in targets:
            counts[target] = counts.get(target, 0) + 1
    return counts


def blocker_value(item: WorkItem, items: list[WorkItem], dependents: Optional[dict[str, int]] = None) -> int:
    """Count of other unpassed items with a dependency on this one."""
    if dependents is None:
        dependents = dependent_counts(items)
    return dependents.get(item.id, 0)


def inverse_complexity(item: WorkItem) -> float:
    if not item.acceptance:
        return 1.0
    return 1.0 / len(item.acceptance)


def score_item(
    item: WorkItem,
    last: Optional[WorkItem],
    items: list[WorkItem],
    dependents: Optional[dict[str, int]] = None,
) -> StoryScore:
    proximity = tree_proximity(item, last)
    overlap = tag_overlap(item.tags, last.tags if last else [])
    blockers = blocker_value(item, items, dependents)
    blocker_score = min(blockers / SCORE_NORMALIZER, 1.0)
    priority_score = min((item.priority or 0) / SCORE_NORMALIZER, 1.0)
    simplicity = inverse_complexity(item)

    score = (
        proximity * WEIGHT_PROXIMITY
        + overlap * WEIGHT_TAG_OVERLAP
        + blocker_score * WEIGHT_BLOCKER
        + priority_score * WEIGHT_PRIORITY
        + simplicity * WEIGHT_INVERSE_COMPLEXITY
    )
    return StoryScore(
        item_id=item.id,
        score=score,
        proximity=proximity,
        tag_overlap=overlap,
        blocker_value=blockers,
        blocker_score=blocker_score,
        priority_score=priority_score,
        inverse_complexity=simplicity,
    )


def _find(items: list[WorkItem], item_id: Optional[str]) -> Optional[WorkItem]:
    if not item_id:
        return None
    for item in items:
        if item.id == item_id:
            return item
    return None


def select_next(items: list[WorkItem], last_completed_id: Optional[str] = None) -> Optional[WorkItem]:
    """
    Pick the next item to work on.

    Returns None when nothing is runnable. A single candidate is returned
    without scoring. Ties go to the first candidate in item order.
    """
    runnable = runnable_items(items)
    if not runnable:
        return None
    if len(runnable) == 1:
        return runnable[0]

    last = _find(items, last_completed_id)
    dependents = dependent_counts(items)
    best = None
    best_score = -1.0
    for item in runnable:
        result = score_item(item, last, items, dependents)
        logger.debug(f"[SCORE] {item.id}: {result.score:.3f}")
        if result.score > best_score:
            best_score = result.score
            best = item
    return best


def scored_candidates(items: list[WorkItem], last_completed_id: Optional[str] = None) -> list[StoryScore]:
    """All runnable items scored, highest first (stable for ties)."""
    last = _find(items, last_completed_id)
    dependents = dependent_counts(items)
    scores = [score_item(item, last, items, dependents) for item in runnable_items(items)]
    return sorted(scores, key=lambda s: s.score, reverse=True)
