"""
Tests for crash_analysis/fingerprint.py - match rules, scope locks and
concurrent find-or-create.
"""

import threading
import time

import pytest

from crash_analysis.blame import BlameResolver
from crash_analysis.errors import UnresolvableRevision
from crash_analysis.fingerprint import FingerprintMatcher, KeyedLock
from crash_analysis.models import Bug, Deploy, SourceFrame
from conftest import REV_NEW, REV_OLD


def _bug(bug_id, deploy_id=None, fixed=False):
    return Bug(environment_id=1, class_name="E", file="a.rb", line=1,
               deploy_id=deploy_id, fixed=fixed, bug_id=bug_id)


class TestMatchRules:
    """Tests for FingerprintMatcher.match"""

    deploy = Deploy(deploy_id=5, environment_id=1, revision=REV_NEW)

    def test_no_candidates(self):
        assert FingerprintMatcher.match([], self.deploy) == (None, False)
        assert FingerprintMatcher.match([], None) == (None, False)

    def test_hosted_takes_oldest_regardless_of_state(self):
        candidates = [_bug(1, fixed=True), _bug(2)]
        assert FingerprintMatcher.match(candidates, None) == (candidates[0], False)

    def test_same_deploy_first(self):
        candidates = [_bug(1), _bug(2, deploy_id=3), _bug(3, deploy_id=5, fixed=True)]
        assert FingerprintMatcher.match(candidates, self.deploy) == (candidates[2], False)

    def test_no_deploy_second(self):
        candidates = [_bug(1, deploy_id=3), _bug(2, fixed=True)]
        assert FingerprintMatcher.match(candidates, self.deploy) == (candidates[1], False)

    def test_open_bug_in_other_deploy_advances(self):
        candidates = [_bug(1, deploy_id=3, fixed=True), _bug(2, deploy_id=4)]
        assert FingerprintMatcher.match(candidates, self.deploy) == (candidates[1], True)

    def test_fixed_bug_in_other_deploy_never_matches(self):
        candidates = [_bug(1, deploy_id=3, fixed=True)]
        assert FingerprintMatcher.match(candidates, self.deploy) == (None, False)


class TestKeyedLock:
    """Tests for per-key locking"""

    def test_entries_released(self):
        locks = KeyedLock()
        with locks.hold("a"):
            with locks.hold("b"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_released_on_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            with locks.hold("a"):
                raise RuntimeError("boom")
        assert len(locks) == 0
        with locks.hold("a"):
            pass

    def test_same_key_is_exclusive(self):
        locks = KeyedLock()
        inside = []
        overlap = []

        def worker():
            with locks.hold("k"):
                inside.append(1)
                if len(inside) > 1:
                    overlap.append(1)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlap == []

    def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        entered = threading.Event()

        def worker():
            with locks.hold("other"):
                entered.set()

        with locks.hold("k"):
            t = threading.Thread(target=worker)
            t.start()
            assert entered.wait(timeout=5)
        t.join()


class TestFingerprint:
    """Tests for FingerprintMatcher.fingerprint"""

    def test_hosted_fingerprint(self, db, repository, make_occurrence):
        matcher = FingerprintMatcher(db, repository)

        fp = matcher.fingerprint(make_occurrence(revision=REV_NEW[:10]))

        assert fp.revision == REV_NEW
        assert fp.deploy is None
        assert fp.scope.file == "lib/better_caller/extensions.rb"
        assert fp.scope.line == 2
        assert fp.lock_key[1] is None

    def test_distributed_fingerprint(self, db, repository, environment, make_occurrence):
        deploy = db.add_deploy(environment.environment_id, REV_OLD)
        matcher = FingerprintMatcher(db, repository)

        fp = matcher.fingerprint(make_occurrence(revision=REV_OLD))

        assert fp.deploy.deploy_id == deploy.deploy_id
        assert fp.lock_key[1] == deploy.deploy_id

    def test_unknown_revision(self, db, repository, make_occurrence):
        matcher = FingerprintMatcher(db, repository)
        with pytest.raises(UnresolvableRevision) as exc_info:
            matcher.fingerprint(make_occurrence(revision="nope"))
        assert exc_info.value.revision == "nope"


class SlowBlameResolver(BlameResolver):
    """Blame that takes long enough for racing callers to overlap."""

    def blame(self, file, line, revision):
        time.sleep(0.05)
        return super().blame(file, line, revision)


class TestConcurrency:
    """Tests for concurrent find-or-create on the same scope"""

    def test_racing_occurrences_create_one_bug(self, db, repository, environment, make_occurrence):
        matcher = FingerprintMatcher(db, repository, blame_resolver=SlowBlameResolver(repository))
        frames = [SourceFrame("ext/better_caller.c", 50, "foo")]
        results = []
        errors = []

        def worker():
            try:
                results.append(matcher.find_or_create_bug(make_occurrence(frames=frames)))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({bug.bug_id for bug in results}) == 1
        assert len(db.get_bugs(environment.environment_id)) == 1
        assert matcher.created_count == 1

    def test_racing_distributed_occurrences_create_one_bug(self, db, repository, environment,
                                                           make_occurrence):
        db.add_deploy(environment.environment_id, REV_NEW)
        matcher = FingerprintMatcher(db, repository, blame_resolver=SlowBlameResolver(repository))
        results = []

        def worker():
            results.append(matcher.find_or_create_bug(make_occurrence()))

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 6
        assert len({bug.bug_id for bug in results}) == 1
        assert len(db.get_bugs(environment.environment_id)) == 1

    def test_two_matchers_share_locks(self, db, repository, environment, make_occurrence):
        """Separate matchers over one store still converge on one bug."""
        locks = KeyedLock()
        matchers = [
            FingerprintMatcher(db, repository, blame_resolver=SlowBlameResolver(repository), locks=locks)
            for _ in range(2)
        ]
        results = []

        def worker(matcher):
            results.append(matcher.find_or_create_bug(make_occurrence()))

        threads = [threading.Thread(target=worker, args=(m,)) for m in matchers for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len({bug.bug_id for bug in results}) == 1
        assert len(db.get_bugs(environment.environment_id)) == 1
