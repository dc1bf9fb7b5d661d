"""
Crash Triage Blame Resolver

Maps (file, line, revision) to the commit that introduced that line using
the project's git repository.
"""

import os
import logging
import subprocess
from typing import List, Optional

from .errors import BlameLookupFailure


logger = logging.getLogger("triage.blame")


class GitRepository:
    """
    Version-control collaborator backed by the git command line.

    All lookups run against a local clone; nothing is fetched. Calls block
    until git returns or ``timeout`` seconds pass.
    """

    def __init__(self, repo_path: str, git_binary: str = "git", timeout: float = 30.0):
        self.repo_path = os.path.expanduser(repo_path)
        self.git_binary = git_binary
        self.timeout = timeout

    def _git(self, args: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.git_binary, *args],
            cwd=self.repo_path,
            capture_output=True,
            text=True,
            timeout=self.timeout,
            check=False,
        )

    def resolve_revision(self, revision: str) -> Optional[str]:
        """Return the full commit id for ``revision``, or None if it is unknown."""
        if not revision:
            return None
        result = self._git(["rev-parse", "--verify", "--quiet", f"{revision}^{{commit}}"])
        if result.returncode != 0:
            logger.debug(f"Revision {revision} not found in {self.repo_path}")
            return None
        return result.stdout.strip() or None

    def is_revision_known(self, revision: str) -> bool:
        return self.resolve_revision(revision) is not None

    def blame(self, file: str, line: int, revision: str) -> str:
        """
        Find the commit that last changed ``file:line`` as of ``revision``.

        Raises:
            BlameLookupFailure: path untracked, line out of range, or git failed
        """
        try:
            result = self._git(["blame", "--porcelain", "-L", f"{line},{line}", revision, "--", file])
        except subprocess.TimeoutExpired:
            raise BlameLookupFailure(file, line, f"git blame timed out after {self.timeout}s")
        except OSError as e:
            raise BlameLookupFailure(file, line, str(e))

        if result.returncode != 0:
            raise BlameLookupFailure(file, line, result.stderr.strip())

        header = result.stdout.split("\n", 1)[0].split()
        if not header:
            raise BlameLookupFailure(file, line, "empty blame output")
        return header[0]

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """True if ``ancestor`` is contained in the history of ``descendant``."""
        if ancestor == descendant:
            return True
        result = self._git(["merge-base", "--is-ancestor", ancestor, descendant])
        if result.returncode not in (0, 1):
            logger.warning(f"merge-base failed for {ancestor}..{descendant}: {result.stderr.strip()}")
        return result.returncode == 0


class BlameResolver:
    """Resolves the commit to blame for a newly created bug."""

    def __init__(self, repository):
        self.repository = repository

    def blame(self, file: str, line: int, revision: str) -> Optional[str]:
        """
        Blame a single line.

        Returns:
            The originating commit id, or None if it could not be determined
        """
        try:
            commit = self.repository.blame(file, line, revision)
        except BlameLookupFailure as e:
            logger.warning(str(e))
            return None

        logger.debug(f"Blamed {file}:{line}@{revision[:10]} on {commit[:10]}")
        return commit
