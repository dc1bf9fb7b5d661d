"""
Pytest configuration and fixtures for crash-triage tests.
"""

import os
import shutil
import subprocess
import sys
import pytest
from pathlib import Path

# Add project root to path for all imports
project_root = str(Path(__file__).parent.parent)
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from crash_analysis.errors import BlameLookupFailure
from crash_analysis.models import Occurrence, SourceFrame, Thread
from db.db import TriageDB


REV_OLD = "30e7c2ff8758f4f19bfbc0a57e26c19ab69d1d44"
REV_NEW = "2dc20c984283bede1f45863b8f3b4dd9b5b554cc"
REV_MID = "5c1a7d2e9f0b3a4c6d8e1f2a3b4c5d6e7f8a9b0c"
REV_UNDEPLOYED = "9e8d7c6b5a4f3e2d1c0b9a8f7e6d5c4b3a2f1e0d"
BLAMED_COMMIT = "7f9ef6977510b3487483cf834ea02d3e6d7f6f13"

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


class FakeRepository:
    """In-memory version-control collaborator."""

    def __init__(self, revisions=None, blames=None, ancestry=None):
        self.revisions = set(revisions or [])
        self.blames = dict(blames or {})
        self.ancestry = set(ancestry or [])
        self.blame_calls = []

    def resolve_revision(self, revision):
        if revision in self.revisions:
            return revision
        matches = [r for r in self.revisions if revision and r.startswith(revision) and len(revision) >= 7]
        return matches[0] if len(matches) == 1 else None

    def is_revision_known(self, revision):
        return self.resolve_revision(revision) is not None

    def blame(self, file, line, revision):
        self.blame_calls.append((file, line, revision))
        try:
            return self.blames[(file, line, revision)]
        except KeyError:
            raise BlameLookupFailure(file, line, "no such path in revision")

    def is_ancestor(self, ancestor, descendant):
        return ancestor == descendant or (ancestor, descendant) in self.ancestry


@pytest.fixture
def repository():
    return FakeRepository(
        revisions=[REV_OLD, REV_NEW, REV_MID, REV_UNDEPLOYED],
        blames={("ext/better_caller.c", 50, REV_NEW): BLAMED_COMMIT},
        ancestry=[(REV_OLD, REV_NEW), (REV_MID, REV_NEW), (REV_OLD, REV_MID),
                  (REV_OLD, REV_UNDEPLOYED), (REV_NEW, REV_UNDEPLOYED), (REV_MID, REV_UNDEPLOYED)],
    )


@pytest.fixture
def db(tmp_path):
    database = TriageDB(str(tmp_path / "triage.db"))
    yield database
    database.close()


@pytest.fixture
def project(db):
    return db.add_project("better_caller", repo_path="/srv/better_caller")


@pytest.fixture
def environment(db, project):
    return db.add_environment(project.project_id, "production")


@pytest.fixture
def other_environment(db, project):
    return db.add_environment(project.project_id, "staging")


@pytest.fixture
def make_occurrence(environment):
    """Build an occurrence with a single faulting thread."""
    def _make(frames=None, revision=REV_NEW, class_name="ArgumentError",
              message=None, environment_id=None, **kwargs):
        if frames is None:
            frames = [SourceFrame("lib/better_caller/extensions.rb", 2, "foo")]
        return Occurrence(
            class_name=class_name,
            revision=revision,
            environment_id=environment_id or environment.environment_id,
            threads=[Thread("Thread 0", True, frames)],
            message=message,
            **kwargs
        )
    return _make


@pytest.fixture
def git_repo(tmp_path):
    """A throwaway git repository with two commits touching ext/x.c."""
    repo = tmp_path / "repo"
    repo.mkdir()

    def git(*args):
        result = subprocess.run(
            ["git", "-c", "user.name=Test User", "-c", "user.email=test@example.com",
             "-c", "commit.gpgsign=false", *args],
            cwd=repo, capture_output=True, text=True, check=True,
        )
        return result.stdout.strip()

    git("init", "-q")
    source = repo / "ext" / "x.c"
    source.parent.mkdir()
    lines = [f"int line_{i} = {i};" for i in range(1, 61)]
    source.write_text("\n".join(lines) + "\n")
    git("add", "-A")
    git("commit", "-q", "-m", "initial")
    first = git("rev-parse", "HEAD")

    lines[49] = "int line_50 = 0; /* changed */"
    source.write_text("\n".join(lines) + "\n")
    git("commit", "-q", "-am", "change line 50")
    second = git("rev-parse", "HEAD")

    return {"path": str(repo), "first": first, "second": second, "git": git}


@pytest.fixture
def sample_payload():
    """Sample occurrence payload as received on the wire."""
    return {
        "class_name": "NoMethodError",
        "message": "undefined method `foo' for #<Object:0x007fedfa0aa920>",
        "revision": REV_NEW,
        "environment": "production",
        "threads": [
            ["Thread 0", True, [
                ["/library/file", 10, "foo"],
                ["ext/better_caller.c", 50, "foo"],
                ["ext/better_caller.c", 46, "bar"],
            ]],
        ],
    }
