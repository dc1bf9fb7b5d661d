"""
Crash Triage Models

Plain data records passed between the triage components and the stores.
Foreign keys are explicit integer identifiers; nothing here holds a live
reference to another record.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Union


RETURN_ADDRESS_SENTINEL = "_RETURN_ADDRESS_"
OBFUSCATED_MARKER = "_JAVA_"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SourceFrame:
    """A symbolicated frame pointing at a file and line."""
    file: str
    line: int
    symbol: Optional[str] = None


@dataclass(frozen=True)
class ReturnAddressFrame:
    """An unsymbolicated frame; only the return address offset is known."""
    offset: int

    @property
    def file(self) -> str:
        return RETURN_ADDRESS_SENTINEL


@dataclass(frozen=True)
class ObfuscatedFrame:
    """A frame decoded from an obfuscated (e.g. ProGuard) trace."""
    file: str
    line: int
    symbol: Optional[str] = None
    class_name: Optional[str] = None


Frame = Union[SourceFrame, ReturnAddressFrame, ObfuscatedFrame]


@dataclass
class Thread:
    name: str
    faulting: bool
    frames: List[Frame] = field(default_factory=list)


@dataclass
class Occurrence:
    """One reported instance of an error."""
    class_name: str
    revision: str
    environment_id: int
    threads: List[Thread] = field(default_factory=list)
    message: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)

    def faulting_thread(self) -> Optional[Thread]:
        """The thread flagged as faulting, else the first thread."""
        for thread in self.threads:
            if thread.faulting:
                return thread
        return self.threads[0] if self.threads else None


@dataclass(frozen=True)
class SelectedFrame:
    file: str
    line: int
    special_file: bool


@dataclass(frozen=True)
class ScopeKey:
    """Fingerprint tuple identifying which bug an occurrence belongs to."""
    environment_id: int
    class_name: str
    file: str
    line: int
    special_file: bool

    def lock_key(self, deploy_id: Optional[int] = None) -> tuple:
        return (self.environment_id, deploy_id, self.class_name,
                self.file, self.line, self.special_file)


@dataclass
class Project:
    project_id: int
    name: str
    repo_path: Optional[str] = None
    filter_paths: List[str] = field(default_factory=list)


@dataclass
class Environment:
    environment_id: int
    project_id: int
    name: str


@dataclass
class Deploy:
    deploy_id: int
    environment_id: int
    revision: str
    build: Optional[str] = None
    deployed_at: Optional[datetime] = None

    def is_newer_than(self, other: Optional["Deploy"]) -> bool:
        """Deploys are totally ordered by creation within an environment."""
        if other is None:
            return True
        return self.deploy_id > other.deploy_id


@dataclass
class Bug:
    """The canonical, deduplicated record for all occurrences sharing a fingerprint."""
    environment_id: int
    class_name: str
    file: str
    line: int
    special_file: bool = False
    message_template: Optional[str] = None
    blamed_revision: Optional[str] = None
    deploy_id: Optional[int] = None
    fixed: bool = False
    fixed_at: Optional[datetime] = None
    fix_deployed: bool = False
    resolution_revision: Optional[str] = None
    duplicate_of: Optional[int] = None
    occurrences_count: int = 0
    first_occurrence: Optional[datetime] = None
    latest_occurrence: Optional[datetime] = None
    create_time: Optional[datetime] = None
    bug_id: Optional[int] = None

    @property
    def scope(self) -> ScopeKey:
        return ScopeKey(self.environment_id, self.class_name, self.file,
                        self.line, self.special_file)
