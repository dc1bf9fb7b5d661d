"""
Crash Triage Errors

Exceptions raised by the triage engine. Fatal errors propagate to the caller;
BlameLookupFailure is swallowed by the blame resolver and only logged.
"""


class TriageError(Exception):
    """Base class for triage engine errors."""
    pass


class UnresolvableRevision(TriageError):
    """The occurrence's revision is not known in the environment's history."""

    def __init__(self, revision: str, environment_id: int = None):
        self.revision = revision
        self.environment_id = environment_id
        super().__init__(f"Need a resolvable commit (got {revision!r})")


class InvalidBacktrace(TriageError):
    """The faulting thread has no frames, so no scope key can be computed."""
    pass


class BlameLookupFailure(TriageError):
    """Blame could not be determined for a file and line."""

    def __init__(self, file: str, line: int, reason: str = ""):
        self.file = file
        self.line = line
        self.reason = reason
        super().__init__(f"Blame failed for {file}:{line}: {reason}".rstrip(": "))


class DuplicateCycleError(TriageError):
    """The duplicate_of chain loops back on itself or points at a missing bug."""

    def __init__(self, chain):
        self.chain = list(chain)
        super().__init__(f"Unresolvable duplicate chain: {' -> '.join(str(b) for b in self.chain)}")
