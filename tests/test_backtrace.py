"""
Tests for crash_analysis/backtrace.py - project layout and frame selection.
"""

import pytest

from crash_analysis.backtrace import BacktraceSelector, ProjectLayout, DEFAULT_FILTER_PATHS
from crash_analysis.errors import InvalidBacktrace
from crash_analysis.models import (
    ObfuscatedFrame,
    Occurrence,
    ReturnAddressFrame,
    SourceFrame,
    Thread,
)


class TestProjectLayout:
    """Tests for project path membership."""

    def test_relative_path_kept(self):
        layout = ProjectLayout()
        assert layout.project_path("lib/foo.rb") == "lib/foo.rb"

    def test_relative_path_is_normalized(self):
        layout = ProjectLayout()
        assert layout.project_path("./lib/../lib/foo.rb") == "lib/foo.rb"

    def test_parent_relative_path_is_library(self):
        layout = ProjectLayout()
        assert layout.project_path("../outside/foo.rb") is None

    def test_absolute_path_without_roots_is_library(self):
        layout = ProjectLayout()
        assert layout.project_path("/library/file") is None

    def test_absolute_path_under_root_is_relativized(self):
        layout = ProjectLayout(source_roots=["/srv/app/"])
        assert layout.project_path("/srv/app/lib/foo.rb") == "lib/foo.rb"

    def test_root_prefix_must_end_at_directory(self):
        layout = ProjectLayout(source_roots=["/srv/app"])
        assert layout.project_path("/srv/application/lib/foo.rb") is None

    @pytest.mark.parametrize("path", [
        "vendor/rails/foo.rb",
        "node_modules/left-pad/index.js",
        "venv/lib/python3.11/site-packages/requests/api.py",
    ])
    def test_filtered_paths_are_library(self, path):
        layout = ProjectLayout()
        assert layout.project_path(path) is None

    def test_custom_filter_paths_replace_defaults(self):
        layout = ProjectLayout(filter_paths=["third_party/"])
        assert layout.project_path("third_party/zlib.c") is None
        assert layout.project_path("vendor/foo.rb") == "vendor/foo.rb"

    def test_default_filters(self):
        assert ProjectLayout().filter_paths == DEFAULT_FILTER_PATHS

    def test_empty_file_is_library(self):
        assert ProjectLayout().project_path("") is None


class TestBacktraceSelector:
    """Tests for blamed frame selection."""

    @pytest.fixture
    def selector(self):
        return BacktraceSelector(ProjectLayout(source_roots=["/srv/app"]))

    def test_first_project_frame(self, selector):
        frame = selector.select_frame([
            SourceFrame("/usr/lib/libc.so", 1, "abort"),
            SourceFrame("/srv/app/lib/foo.rb", 12, "bar"),
            SourceFrame("lib/baz.rb", 3, "baz"),
        ])

        assert (frame.file, frame.line, frame.special_file) == ("lib/foo.rb", 12, False)

    def test_falls_back_to_topmost_frame(self, selector):
        frame = selector.select_frame([
            SourceFrame("/usr/lib/libc.so", 1, "abort"),
            SourceFrame("/usr/lib/libpthread.so", 9, "start"),
        ])

        assert (frame.file, frame.line, frame.special_file) == ("/usr/lib/libc.so", 1, False)

    def test_return_address_on_top(self, selector):
        frame = selector.select_frame([ReturnAddressFrame(4096), SourceFrame("lib/foo.rb", 2)])

        assert (frame.file, frame.line, frame.special_file) == ("_RETURN_ADDRESS_", 1, True)

    def test_obfuscated_on_top(self, selector):
        frame = selector.select_frame([ObfuscatedFrame("Foo.java", -42, "a", "com.example.Foo")])

        assert (frame.file, frame.line, frame.special_file) == ("Foo.java", 42, True)

    def test_special_frames_below_top_are_skipped(self, selector):
        frame = selector.select_frame([
            SourceFrame("/usr/lib/libc.so", 1),
            ReturnAddressFrame(16),
            SourceFrame("lib/foo.rb", 5),
        ])

        assert (frame.file, frame.line) == ("lib/foo.rb", 5)

    def test_empty_frames_raise(self, selector):
        with pytest.raises(InvalidBacktrace):
            selector.select_frame([])

    def test_select_uses_faulting_thread(self, selector):
        occurrence = Occurrence("RuntimeError", "abc", 1, threads=[
            Thread("main", False, [SourceFrame("lib/main.rb", 1)]),
            Thread("worker", True, [SourceFrame("lib/worker.rb", 8)]),
        ])

        assert selector.select(occurrence).file == "lib/worker.rb"

    def test_select_without_faulting_flag_uses_first_thread(self, selector):
        occurrence = Occurrence("RuntimeError", "abc", 1, threads=[
            Thread("main", False, [SourceFrame("lib/main.rb", 1)]),
            Thread("worker", False, [SourceFrame("lib/worker.rb", 8)]),
        ])

        assert selector.select(occurrence).file == "lib/main.rb"

    def test_select_without_threads_raises(self, selector):
        with pytest.raises(InvalidBacktrace):
            selector.select(Occurrence("RuntimeError", "abc", 1))
