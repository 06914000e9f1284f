"""Unit tests for utility functions."""

import pytest

from pymagicapi.utils import (
    format_millis,
    is_meta_file_name,
    is_script_file_name,
    join_dir,
    meta_file_name,
    normalize_line_endings,
    resource_name_from_file,
    script_file_name,
)


class TestNormalizeLineEndings:
    """Tests for normalize_line_endings function."""

    def test_crlf_and_cr(self):
        """Test that CRLF and lone CR become LF."""
        assert normalize_line_endings("a\r\nb\rc\n") == "a\nb\nc\n"

    def test_already_normalized(self):
        """Test that LF text is unchanged."""
        assert normalize_line_endings("a\nb") == "a\nb"


class TestFileNames:
    """Tests for mirror file name helpers."""

    def test_script_and_meta_names(self):
        """Test building file names from a resource name."""
        assert script_file_name("login") == "login.ms"
        assert meta_file_name("login") == ".login.meta.json"

    @pytest.mark.parametrize(
        "name,expected",
        [("login.ms", True), (".ms", False), ("login.js", False)],
    )
    def test_is_script_file_name(self, name, expected):
        """Test script file detection."""
        assert is_script_file_name(name) is expected

    @pytest.mark.parametrize(
        "name,expected",
        [
            (".login.meta.json", True),
            (".group.meta.json", False),
            ("login.meta.json", False),
            (".meta.json", False),
        ],
    )
    def test_is_meta_file_name(self, name, expected):
        """Test sidecar file detection."""
        assert is_meta_file_name(name) is expected

    def test_resource_name_from_file(self):
        """Test extracting resource names."""
        assert resource_name_from_file("login.ms") == "login"
        assert resource_name_from_file(".login.meta.json") == "login"
        assert resource_name_from_file(".group.meta.json") is None
        assert resource_name_from_file("readme.md") is None

    def test_join_dir(self):
        """Test joining a type with a group path."""
        assert join_dir("api", "user/admin") == "api/user/admin"
        assert join_dir("api", "") == "api"


class TestFormatMillis:
    """Tests for format_millis function."""

    def test_unknown(self):
        """Test that missing timestamps print as a dash."""
        assert format_millis(None) == "-"
        assert format_millis(0) == "-"

    def test_format(self):
        """Test the display format."""
        assert len(format_millis(1_700_000_000_000)) == len("2023-11-14 22:13:20")
