"""Utility functions for pymagicapi."""

import time
from datetime import datetime
from typing import Optional

from .models import SCRIPT_EXTENSION

# =============================================================================
# Constants for the mirror layout
# =============================================================================

MIRROR_META_FILE = ".magic-api-mirror.json"
GROUP_META_FILE = ".group.meta.json"
FILE_META_SUFFIX = ".meta.json"
MERGE_DIR = ".merge"
MERGE_META_DIR = ".merge-meta"


# =============================================================================
# Timestamp utilities
# =============================================================================


def now_millis() -> int:
    """Current time as milliseconds since the epoch, the server's clock unit."""
    return int(time.time() * 1000)


def format_millis(timestamp: Optional[int]) -> str:
    """Format a millisecond timestamp for display.

    Args:
        timestamp: Milliseconds since the epoch, or None

    Returns:
        Local time as ``YYYY-MM-DD HH:MM:SS``, or ``-`` if unknown

    Examples:
        >>> format_millis(None)
        '-'
    """
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")


# =============================================================================
# Text utilities
# =============================================================================


def normalize_line_endings(text: str) -> str:
    """Convert CRLF and lone CR line endings to LF.

    Examples:
        >>> normalize_line_endings("a\\r\\nb\\rc")
        'a\\nb\\nc'
    """
    return text.replace("\r\n", "\n").replace("\r", "\n")


# =============================================================================
# Mirror path utilities
# =============================================================================


def script_file_name(name: str) -> str:
    """File name of a script resource, e.g. ``login`` -> ``login.ms``."""
    return f"{name}{SCRIPT_EXTENSION}"


def meta_file_name(name: str) -> str:
    """File name of a metadata sidecar, e.g. ``login`` -> ``.login.meta.json``."""
    return f".{name}{FILE_META_SUFFIX}"


def is_script_file_name(file_name: str) -> bool:
    return file_name.endswith(SCRIPT_EXTENSION) and len(file_name) > len(
        SCRIPT_EXTENSION
    )


def is_meta_file_name(file_name: str) -> bool:
    return (
        file_name.startswith(".")
        and file_name.endswith(FILE_META_SUFFIX)
        and file_name != GROUP_META_FILE
        and len(file_name) > len(FILE_META_SUFFIX) + 1
    )


def resource_name_from_file(file_name: str) -> Optional[str]:
    """Resource name for a script or sidecar file name, or None.

    Examples:
        >>> resource_name_from_file("login.ms")
        'login'
        >>> resource_name_from_file(".login.meta.json")
        'login'
        >>> resource_name_from_file(".group.meta.json") is None
        True
    """
    if is_script_file_name(file_name):
        return file_name[: -len(SCRIPT_EXTENSION)]
    if is_meta_file_name(file_name):
        return file_name[1 : -len(FILE_META_SUFFIX)]
    return None


def join_dir(resource_type: str, group_sub: str) -> str:
    """Join a type and a group sub-path into a mirror directory path.

    Examples:
        >>> join_dir("api", "user/admin")
        'api/user/admin'
        >>> join_dir("api", "")
        'api'
    """
    return f"{resource_type}/{group_sub}" if group_sub else resource_type
