"""
Crash Triage persistence layer.
"""

from .db import TriageDB

__all__ = ['TriageDB']
