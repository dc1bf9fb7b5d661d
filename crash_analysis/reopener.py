"""
Crash Triage Reopener

Decides whether a fixed bug has to return to open when it occurs again.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from .errors import UnresolvableRevision
from .models import Bug, Deploy, Occurrence, utcnow


logger = logging.getLogger("triage.reopener")

DEFAULT_STALE_FIX_DAYS = 30


class Reopener:
    """
    Reopening rules:

    - open bugs are left alone
    - distributed: the fix must be deployed and the occurrence must come from
      a deploy strictly newer than the bug's
    - hosted: the fix is deployed, or the bug has been fixed long enough that
      the fix is presumed to be live
    """

    def __init__(self, store, repository, stale_fix_after: timedelta = None):
        self.store = store
        self.repository = repository
        self.stale_fix_after = stale_fix_after or timedelta(days=DEFAULT_STALE_FIX_DAYS)

    def resolve_deploy(self, occurrence: Occurrence) -> Deploy:
        """
        Find the deploy ``occurrence`` came from in a distributed environment.

        Raises:
            UnresolvableRevision: the revision is unknown, or no deploy contains it
        """
        revision = self.repository.resolve_revision(occurrence.revision)
        if revision is None:
            raise UnresolvableRevision(occurrence.revision, occurrence.environment_id)
        deploy = self.store.resolve_deploy_for_revision(
            occurrence.environment_id, revision, contains=self.repository.is_ancestor)
        if deploy is None:
            raise UnresolvableRevision(occurrence.revision, occurrence.environment_id)
        return deploy

    def should_reopen(self, bug: Bug, occurrence_deploy: Optional[Deploy],
                      distributed: bool, now: datetime = None) -> bool:
        if not bug.fixed:
            return False

        if distributed:
            if not bug.fix_deployed or occurrence_deploy is None:
                return False
            return occurrence_deploy.is_newer_than(self.store.get_deploy(bug.deploy_id))

        if bug.fix_deployed:
            return True
        if bug.fixed_at is None:
            return False
        now = now or utcnow()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now - bug.fixed_at > self.stale_fix_after

    def reopen_bug_if_necessary(self, bug: Bug, occurrence: Occurrence,
                                occurrence_deploy: Deploy = None, now: datetime = None) -> Bug:
        """
        Reopen ``bug`` if ``occurrence`` shows the fix did not hold.

        Args:
            occurrence_deploy: the occurrence's resolved deploy, if already known
            now: reference time for staleness (defaults to the current time)

        Returns:
            The persisted bug, reopened or unchanged

        Raises:
            UnresolvableRevision: distributed environment and the occurrence's
                deploy cannot be located
        """
        if not bug.fixed:
            return bug

        distributed = self.store.is_distributed(bug.environment_id)
        if distributed and occurrence_deploy is None:
            occurrence_deploy = self.resolve_deploy(occurrence)

        if not self.should_reopen(bug, occurrence_deploy, distributed, now):
            logger.debug(f"Bug {bug.bug_id} stays fixed")
            return bug

        if self.store.reopen_bug(bug.bug_id):
            logger.info(f"Reopened bug {bug.bug_id} ({bug.class_name} at {bug.file}:{bug.line})")
        return self.store.get_bug(bug.bug_id)
