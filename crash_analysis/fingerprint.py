"""
Crash Triage Fingerprint Matcher

Computes the scope key for an occurrence and finds the bug it belongs to,
creating one when nothing matches.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional, Tuple

from .backtrace import BacktraceSelector
from .blame import BlameResolver
from .duplicates import resolve_duplicate
from .errors import UnresolvableRevision
from .message_template import MessageTemplater
from .models import Bug, Deploy, Occurrence, ScopeKey, SelectedFrame


logger = logging.getLogger("triage.fingerprint")


class KeyedLock:
    """Exclusive section per key; different keys never wait on each other."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True)
class Fingerprint:
    revision: str
    frame: SelectedFrame
    scope: ScopeKey
    deploy: Optional[Deploy] = None

    @property
    def lock_key(self) -> tuple:
        return self.scope.lock_key(self.deploy.deploy_id if self.deploy else None)


class FingerprintMatcher:
    """
    Find-or-create for bugs.

    Hosted environments (no deploys) match on the scope key alone, whatever
    the fixed state. Distributed environments additionally scope by deploy:

    1. a bug on the occurrence's deploy
    2. a bug with no deploy yet
    3. an open bug on another deploy, which then follows the occurrence's deploy
    4. a fixed bug on another deploy never matches
    """

    def __init__(self, store, repository,
                 selector: BacktraceSelector = None,
                 blame_resolver: BlameResolver = None,
                 templater: MessageTemplater = None,
                 locks: KeyedLock = None):
        self.store = store
        self.repository = repository
        self.selector = selector or BacktraceSelector()
        self.blame_resolver = blame_resolver or BlameResolver(repository)
        self.templater = templater or MessageTemplater()
        self.locks = locks or KeyedLock()
        self.created_count = 0

    def fingerprint(self, occurrence: Occurrence) -> Fingerprint:
        """
        Resolve the revision, blamed frame, scope key and (if distributed) deploy.

        Raises:
            UnresolvableRevision: revision or deploy cannot be located
            InvalidBacktrace: the faulting thread has no frames
        """
        revision = self.repository.resolve_revision(occurrence.revision)
        if revision is None:
            raise UnresolvableRevision(occurrence.revision, occurrence.environment_id)

        frame = self.selector.select(occurrence)
        scope = ScopeKey(occurrence.environment_id, occurrence.class_name,
                         frame.file, frame.line, frame.special_file)

        deploy = None
        if self.store.is_distributed(occurrence.environment_id):
            deploy = self.store.resolve_deploy_for_revision(
                occurrence.environment_id, revision, contains=self.repository.is_ancestor)
            if deploy is None:
                raise UnresolvableRevision(occurrence.revision, occurrence.environment_id)

        return Fingerprint(revision, frame, scope, deploy)

    def find_or_create_bug(self, occurrence: Occurrence, fingerprint: Fingerprint = None) -> Bug:
        fingerprint = fingerprint or self.fingerprint(occurrence)

        bug = self._find(fingerprint)
        if bug is None:
            # blame may block for a long time, so it runs outside the scope lock
            blamed_revision = None
            if not fingerprint.frame.special_file:
                blamed_revision = self.blame_resolver.blame(
                    fingerprint.frame.file, fingerprint.frame.line, fingerprint.revision)
            template = self.templater.template(occurrence.class_name, occurrence.message)
            bug = self._find(fingerprint, create=Bug(
                environment_id=fingerprint.scope.environment_id,
                class_name=fingerprint.scope.class_name,
                file=fingerprint.scope.file,
                line=fingerprint.scope.line,
                special_file=fingerprint.scope.special_file,
                message_template=template,
                blamed_revision=blamed_revision,
                deploy_id=fingerprint.deploy.deploy_id if fingerprint.deploy else None,
            ))

        return resolve_duplicate(self.store, bug)

    def _find(self, fingerprint: Fingerprint, create: Bug = None) -> Optional[Bug]:
        with self.locks.hold(fingerprint.lock_key), self.store.transaction():
            candidates = self.store.find_bugs_by_scope(fingerprint.scope)
            bug, advance = self.match(candidates, fingerprint.deploy)

            if bug is not None:
                if advance:
                    logger.info(f"Bug {bug.bug_id} follows deploy {bug.deploy_id} -> "
                                f"{fingerprint.deploy.deploy_id}")
                    bug = self.store.update_bug(bug.bug_id, deploy_id=fingerprint.deploy.deploy_id)
                else:
                    logger.debug(f"Occurrence matched bug {bug.bug_id}")
                return bug

            if create is not None:
                self.created_count += 1
                return self.store.create_bug(create)
        return None

    @staticmethod
    def match(candidates: List[Bug], deploy: Optional[Deploy]) -> Tuple[Optional[Bug], bool]:
        """
        Pick the bug an occurrence belongs to from bugs sharing its scope key.

        Returns:
            (bug or None, whether the bug's deploy must advance)
        """
        if not candidates:
            return None, False

        if deploy is None:
            # oldest wins if the store holds more than one
            return candidates[0], False

        for bug in candidates:
            if bug.deploy_id == deploy.deploy_id:
                return bug, False
        for bug in candidates:
            if bug.deploy_id is None:
                return bug, False
        for bug in candidates:
            if not bug.fixed:
                return bug, True
        return None, False
