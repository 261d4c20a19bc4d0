"""Story selection and stall diagnosis.

These functions are pure: they take a snapshot of a scope's items and never
touch the store.
"""

from __future__ import annotations

from typing import Collection, Iterable, Optional

from storyloop.models import StoryPriority, StoryStatus, WorkItem

PRIORITY_ORDER: dict[StoryPriority, int] = {
    StoryPriority.CRITICAL: 0,
    StoryPriority.HIGH: 1,
    StoryPriority.MEDIUM: 2,
    StoryPriority.LOW: 3,
}

_DONE_STATUSES = (StoryStatus.COMPLETED, StoryStatus.SKIPPED)

NO_ELIGIBLE_MESSAGE = "No more eligible stories. Some stories could not be completed."


def completed_ids(items: Iterable[WorkItem]) -> set[str]:
    return {item.id for item in items if item.status == StoryStatus.COMPLETED}


def is_retryable(item: WorkItem, fix_up_ids: Collection[str] = ()) -> bool:
    """Pending, not research-only, and either has attempts left or is owed a
    fix-up pass within its current attempt."""
    # A pending item with attempts == max_attempts is normally never picked.
    # The exception is a fix-up pass still owed on that last attempt: fix-ups
    # do not count as attempts, and skipping them would strand the item as
    # pending forever instead of failing it after the final revert.
    return (
        item.status == StoryStatus.PENDING
        and not item.research_only
        and (not item.attempts_exhausted or item.id in fix_up_ids)
    )


def is_eligible(item: WorkItem, done: set[str], fix_up_ids: Collection[str] = ()) -> bool:
    return is_retryable(item, fix_up_ids) and all(dep in done for dep in item.depends_on)


def select_next_item(
    items: list[WorkItem], fix_up_ids: Collection[str] = ()
) -> Optional[WorkItem]:
    done = completed_ids(items)
    eligible = [item for item in items if is_eligible(item, done, fix_up_ids)]
    if not eligible:
        return None
    eligible.sort(key=lambda item: (PRIORITY_ORDER.get(item.priority, 2), item.sort_order))
    return eligible[0]


def is_scope_finished(items: list[WorkItem]) -> bool:
    """True when every item is completed, skipped or research-only."""
    return bool(items) and all(
        item.status in _DONE_STATUSES or item.research_only for item in items
    )


def blocked_items(items: list[WorkItem]) -> list[WorkItem]:
    """Retryable items that are waiting on dependencies that are not completed."""
    done = completed_ids(items)
    return [
        item
        for item in items
        if is_retryable(item) and any(dep not in done for dep in item.depends_on)
    ]


def find_dependency_cycles(items: list[WorkItem]) -> list[list[str]]:
    """Return each dependency cycle once, as a list of item ids."""
    graph = {item.id: [dep for dep in item.depends_on] for item in items}
    cycles: list[list[str]] = []
    seen_cycles: set[frozenset[str]] = set()
    state: dict[str, int] = {}  # 1 = on stack, 2 = finished
    stack: list[str] = []

    def visit(node: str) -> None:
        state[node] = 1
        stack.append(node)
        for dep in graph.get(node, []):
            if dep not in graph:
                continue
            if state.get(dep) == 1:
                cycle = stack[stack.index(dep):]
                key = frozenset(cycle)
                if key not in seen_cycles:
                    seen_cycles.add(key)
                    cycles.append(list(cycle))
            elif dep not in state:
                visit(dep)
        stack.pop()
        state[node] = 2

    for node in graph:
        if node not in state:
            visit(node)
    return cycles


def describe_stall(items: list[WorkItem]) -> tuple[bool, str]:
    """Explain why nothing is selectable.

    Returns ``(is_deadlock, message)``. A deadlock means retryable work exists
    but every candidate waits on a dependency that can no longer complete.
    """
    blocked = blocked_items(items)
    if not blocked:
        return False, NO_ELIGIBLE_MESSAGE

    titles = {item.id: item.title for item in items}
    known = set(titles)
    cycles = find_dependency_cycles(items)
    parts = [
        "Dependency deadlock: "
        + ", ".join(f'"{item.title}"' for item in blocked)
        + " cannot start because their dependencies will never complete."
    ]
    for cycle in cycles:
        names = [titles.get(node, node) for node in cycle]
        parts.append("Cycle: " + " -> ".join(names + names[:1]) + ".")
    missing = sorted({dep for item in blocked for dep in item.depends_on if dep not in known})
    if missing:
        parts.append("Missing dependencies: " + ", ".join(missing) + ".")
    return True, " ".join(parts)
