"""
Crash Triage Analysis Module

Deduplicates incoming occurrences into bugs: picks the blamed frame, blames
the line, templates the message, matches or creates the bug, and reopens
fixed bugs that recur.
"""

from .backtrace import BacktraceSelector, ProjectLayout
from .blame import BlameResolver, GitRepository
from .blamer import Blamer
from .duplicates import resolve_duplicate
from .errors import (
    BlameLookupFailure,
    DuplicateCycleError,
    InvalidBacktrace,
    TriageError,
    UnresolvableRevision,
)
from .fingerprint import FingerprintMatcher, KeyedLock
from .fix_tracking import mark_fixed, mark_fixes_deployed
from .message_template import MessageTemplater
from .reopener import Reopener

__all__ = [
    'BacktraceSelector', 'ProjectLayout', 'BlameResolver', 'GitRepository',
    'Blamer', 'resolve_duplicate', 'BlameLookupFailure', 'DuplicateCycleError',
    'InvalidBacktrace', 'TriageError', 'UnresolvableRevision',
    'FingerprintMatcher', 'KeyedLock', 'mark_fixed', 'mark_fixes_deployed',
    'MessageTemplater', 'Reopener',
]
