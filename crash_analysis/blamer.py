"""
Crash Triage Blamer

Entry point of the triage engine: turns an occurrence into the bug it
belongs to and reopens fixed bugs when they recur.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict

from .backtrace import BacktraceSelector, ProjectLayout
from .blame import BlameResolver
from .fingerprint import FingerprintMatcher, KeyedLock
from .message_template import MessageTemplater
from .models import Bug, Deploy, Occurrence
from .reopener import Reopener


logger = logging.getLogger("triage.blamer")


class Blamer:
    """
    Deduplicates occurrences into bugs.

    Features:
    - Locate the offending line in the faulting thread
    - Match recurrences against tracked bugs (hosted or deploy-scoped)
    - Blame and template the message of new bugs
    - Reopen fixed bugs whose fix did not hold
    """

    def __init__(self,
                 store,
                 repository,
                 layout: ProjectLayout = None,
                 templater: MessageTemplater = None,
                 stale_fix_after: timedelta = None,
                 locks: KeyedLock = None):
        """
        Initialize the blamer.

        Args:
            store: bug/deploy store (see db.TriageDB)
            repository: version-control collaborator (see GitRepository)
            layout: project source roots and library filters
            templater: message templater, generic rules if omitted
            stale_fix_after: how long a hosted fix may stay unconfirmed
            locks: per-scope locks, shared between blamers of one process
        """
        self.store = store
        self.repository = repository
        self.matcher = FingerprintMatcher(
            store,
            repository,
            selector=BacktraceSelector(layout),
            blame_resolver=BlameResolver(repository),
            templater=templater,
            locks=locks,
        )
        self.reopener = Reopener(store, repository, stale_fix_after)

        # Statistics
        self.total_occurrences = 0
        self.reopened_count = 0

    def find_or_create_bug(self, occurrence: Occurrence) -> Bug:
        """
        Find the bug ``occurrence`` belongs to, creating it if needed.

        Raises:
            UnresolvableRevision: the revision is unknown to the project
            InvalidBacktrace: the faulting thread has no frames
        """
        return self.matcher.find_or_create_bug(occurrence)

    def reopen_bug_if_necessary(self, bug: Bug, occurrence: Occurrence,
                                occurrence_deploy: Deploy = None, now: datetime = None) -> Bug:
        was_fixed = bug.fixed
        bug = self.reopener.reopen_bug_if_necessary(bug, occurrence, occurrence_deploy, now)
        if was_fixed and not bug.fixed:
            self.reopened_count += 1
        return bug

    def triage(self, occurrence: Occurrence, now: datetime = None) -> Bug:
        """Find or create the bug, record the occurrence on it, and reopen if needed."""
        fingerprint = self.matcher.fingerprint(occurrence)
        bug = self.matcher.find_or_create_bug(occurrence, fingerprint)

        deploy_id = fingerprint.deploy.deploy_id if fingerprint.deploy else None
        self.store.record_occurrence(bug.bug_id, occurrence, deploy_id)
        self.total_occurrences += 1

        bug = self.store.get_bug(bug.bug_id)
        return self.reopen_bug_if_necessary(bug, occurrence, fingerprint.deploy, now)

    def get_statistics(self) -> Dict:
        return {
            'total_occurrences': self.total_occurrences,
            'new_bugs': self.matcher.created_count,
            'reopened_bugs': self.reopened_count,
        }
