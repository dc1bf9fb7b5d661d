"""
Crash Triage Fix Tracking

Marks bugs fixed, and flags their fixes as deployed once a deploy ships the
fixing commit. The Reopener relies on both.
"""

import logging
from datetime import datetime
from typing import List

from .models import Bug, Deploy, utcnow


logger = logging.getLogger("triage.fix_tracking")


def mark_fixed(store, bug: Bug, resolution_revision: str = None, now: datetime = None) -> Bug:
    """Mark a bug fixed, optionally recording the commit that fixed it."""
    updated = store.update_bug(
        bug.bug_id,
        fixed=True,
        fixed_at=now or utcnow(),
        fix_deployed=False,
        resolution_revision=resolution_revision,
    )
    logger.info(f"Bug {bug.bug_id} marked fixed"
                + (f" by {resolution_revision[:10]}" if resolution_revision else ""))
    return updated


def mark_fixes_deployed(store, repository, deploy: Deploy) -> List[Bug]:
    """
    Flag fixed bugs whose resolution commit is contained in ``deploy``.

    Bugs fixed without a resolution revision are left for the staleness rule.

    Returns:
        The bugs that were flagged
    """
    flagged = []
    for bug in store.get_bugs(deploy.environment_id, fixed=True, fix_deployed=False):
        if not bug.resolution_revision:
            continue
        if not repository.is_ancestor(bug.resolution_revision, deploy.revision):
            continue
        flagged.append(store.update_bug(bug.bug_id, fix_deployed=True))
        logger.info(f"Fix for bug {bug.bug_id} shipped in deploy {deploy.deploy_id}")
    return flagged
