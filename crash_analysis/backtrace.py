"""
Crash Triage Backtrace Selector

Picks the frame an occurrence is blamed on from a multi-thread backtrace.
"""

import logging
import posixpath
from typing import Iterable, List, Optional

from .errors import InvalidBacktrace
from .models import (
    Occurrence,
    ObfuscatedFrame,
    ReturnAddressFrame,
    SelectedFrame,
    RETURN_ADDRESS_SENTINEL,
)


logger = logging.getLogger("triage.backtrace")

# Library locations that are never part of a project's own source tree
DEFAULT_FILTER_PATHS = [
    'vendor/', 'node_modules/', 'site-packages/', 'dist-packages/',
    'gems/', '.bundle/',
]


class ProjectLayout:
    """
    Path-membership test against a project's known source roots.

    Relative paths belong to the project unless they fall under a filtered
    library prefix. Absolute paths belong to the project only when they sit
    under one of the source roots; they are then made relative to that root
    so they can be blamed.
    """

    def __init__(self,
                 source_roots: Optional[Iterable[str]] = None,
                 filter_paths: Optional[Iterable[str]] = None):
        self.source_roots = [self._as_dir(root) for root in (source_roots or [])]
        self.filter_paths = list(DEFAULT_FILTER_PATHS if filter_paths is None else filter_paths)

    @staticmethod
    def _as_dir(path: str) -> str:
        path = posixpath.normpath(path)
        return path if path.endswith('/') else path + '/'

    def project_path(self, file: str) -> Optional[str]:
        """Return the project-relative path for ``file``, or None for library files."""
        if not file:
            return None

        if file.startswith('/'):
            normalized = posixpath.normpath(file)
            for root in self.source_roots:
                if normalized.startswith(root):
                    return self._unfiltered(normalized[len(root):])
            return None

        return self._unfiltered(posixpath.normpath(file))

    def _unfiltered(self, relative: str) -> Optional[str]:
        if relative.startswith('../') or relative == '..':
            return None
        for prefix in self.filter_paths:
            if relative.startswith(prefix) or f"/{prefix}" in relative:
                return None
        return relative


class BacktraceSelector:
    """
    Selects the blamed (file, line) from the faulting thread.

    - Unsymbolicated return addresses collapse to a fixed sentinel location
    - Obfuscated frames use their decoded location with the line sign stripped
    - Otherwise the topmost project frame, falling back to the topmost frame
    """

    def __init__(self, layout: ProjectLayout = None):
        self.layout = layout or ProjectLayout()

    def select(self, occurrence: Occurrence) -> SelectedFrame:
        thread = occurrence.faulting_thread()
        if thread is None or not thread.frames:
            raise InvalidBacktrace("Faulting thread has no frames")
        return self.select_frame(thread.frames)

    def select_frame(self, frames: List) -> SelectedFrame:
        if not frames:
            raise InvalidBacktrace("Faulting thread has no frames")

        top = frames[0]

        if isinstance(top, ReturnAddressFrame):
            # the offset differs between builds, so it cannot serve as a line
            return SelectedFrame(RETURN_ADDRESS_SENTINEL, 1, True)

        if isinstance(top, ObfuscatedFrame):
            return SelectedFrame(top.file, abs(top.line), True)

        for frame in frames:
            if isinstance(frame, (ReturnAddressFrame, ObfuscatedFrame)):
                continue
            relative = self.layout.project_path(frame.file)
            if relative is not None:
                logger.debug(f"Selected project frame {relative}:{frame.line}")
                return SelectedFrame(relative, frame.line, False)

        logger.debug(f"No project frame found, using topmost frame {top.file}:{top.line}")
        return SelectedFrame(top.file, top.line, False)
