"""
Batch scheduling: partition a backlog into ordered waves of work items that
may run concurrently.

Waves respect inter-item dependencies and a concurrency cap, and no two items
that appear to touch the same files share a wave. Circular or unresolvable
dependencies never stall the plan; the remaining items are flushed in order.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .analyzer import DEFAULT_ID_PREFIXES, build_dependency_map, conflicts
from .models import Batch, DependencyMap, WorkItem

logger = logging.getLogger(__name__)


@dataclass
class BatchPlan:
    """Ordered execution plan for a backlog."""

    batches: list[Batch] = field(default_factory=list)
    dependencies: DependencyMap = field(default_factory=dict)
    flushed_ids: set[str] = field(default_factory=set)

    @property
    def deadlocked(self) -> bool:
        return bool(self.flushed_ids)

    def batch_index(self) -> dict[str, int]:
        return {item.id: index for index, batch in enumerate(self.batches) for item in batch}

    def __len__(self) -> int:
        return len(self.batches)

    def __iter__(self):
        return iter(self.batches)


def _chunk(items: Sequence[WorkItem], size: int) -> list[Batch]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def _partition(
    items: Sequence[WorkItem], max_concurrency: int, deps: DependencyMap
) -> list[tuple[Batch, bool]]:
    """Greedy wavefront. Returns (batch, flushed) pairs in execution order."""
    limit = max(1, max_concurrency)
    placed: set[str] = set()
    remaining: dict[str, WorkItem] = {}
    for item in items:
        if item.id in remaining:
            logger.warning("Duplicate work item id %s ignored", item.id)
            continue
        remaining[item.id] = item

    waves: list[tuple[Batch, bool]] = []
    while remaining:
        batch: Batch = []
        for item_id, item in remaining.items():
            if len(batch) >= limit:
                break
            if all(dep in placed for dep in deps.get(item_id, ())):
                batch.append(item)

        if not batch:
            unresolved = list(remaining.values())
            logger.info(
                "Dependency deadlock among %s; flushing %d item(s) without ordering",
                ", ".join(item.id for item in unresolved),
                len(unresolved),
            )
            waves.extend((chunk, True) for chunk in _chunk(unresolved, limit))
            break

        for item in batch:
            del remaining[item.id]
            placed.add(item.id)
        waves.append((batch, False))

    return waves


def partition_batches(
    items: Sequence[WorkItem], max_concurrency: int, deps: DependencyMap
) -> list[Batch]:
    """Partition items into dependency-ordered batches of at most ``max_concurrency``."""
    return [batch for batch, _ in _partition(items, max_concurrency, deps)]


def split_conflicts(batch: Batch) -> list[Batch]:
    """Move every item that conflicts with an earlier one into its own batch.

    The reduced batch comes first, followed by one singleton batch per
    deferred item in their original order.
    """
    if len(batch) <= 1:
        return [batch]

    deferred: set[int] = set()
    for i in range(len(batch)):
        for j in range(i + 1, len(batch)):
            if conflicts(batch[i], batch[j]):
                deferred.add(j)

    if not deferred:
        return [batch]

    safe = [item for index, item in enumerate(batch) if index not in deferred]
    result: list[Batch] = [safe] if safe else []
    result.extend([batch[index]] for index in sorted(deferred))
    return result


def schedule(
    items: Sequence[WorkItem], max_concurrency: int, deps: DependencyMap
) -> tuple[list[Batch], set[str]]:
    """Partition then split conflicts. Returns batches and the ids placed by a flush."""
    batches: list[Batch] = []
    flushed: set[str] = set()
    for batch, was_flushed in _partition(items, max_concurrency, deps):
        if was_flushed:
            # Ordering guarantees no longer hold for flushed items, conflict
            # splitting is skipped.
            flushed.update(item.id for item in batch)
            batches.append(batch)
            continue
        batches.extend(split_conflicts(batch))
    return batches, flushed


def plan_batches(
    items: Sequence[WorkItem],
    max_concurrency: int,
    prefixes: Iterable[str] = DEFAULT_ID_PREFIXES,
) -> BatchPlan:
    """Analyze dependencies and build the full execution plan for ``items``."""
    if not items:
        return BatchPlan()

    deps = build_dependency_map(items, prefixes)
    batches, flushed = schedule(items, max_concurrency, deps)
    logger.debug(
        "Planned %d item(s) into %d batch(es), max concurrency %d",
        len(items),
        len(batches),
        max(1, max_concurrency),
    )
    return BatchPlan(batches=batches, dependencies=deps, flushed_ids=flushed)
