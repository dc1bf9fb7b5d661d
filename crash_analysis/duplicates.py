"""
Crash Triage Duplicate Resolver

Follows a bug's duplicate_of chain to the canonical bug.
"""

import logging

from .errors import DuplicateCycleError
from .models import Bug


logger = logging.getLogger("triage.duplicates")


def resolve_duplicate(store, bug: Bug) -> Bug:
    """
    Return the terminal, non-duplicate bug reachable from ``bug``.

    Raises:
        DuplicateCycleError: the chain revisits a bug or points at a missing one
    """
    visited = [bug.bug_id]
    current = bug

    while current.duplicate_of is not None:
        target_id = current.duplicate_of
        if target_id in visited:
            raise DuplicateCycleError(visited + [target_id])

        target = store.get_bug(target_id)
        if target is None:
            raise DuplicateCycleError(visited + [target_id])

        visited.append(target_id)
        current = target

    if len(visited) > 1:
        logger.debug(f"Resolved duplicate chain {visited}")
    return current
