"""PyMagicAPI - local mirror and sync tool for Magic API servers."""

from .api import MagicApiClient
from .exceptions import (
    MagicAPIError,
    MagicAuthenticationError,
    MagicConfigError,
    MagicInvalidResponseError,
    MagicNetworkError,
    MagicNotFoundError,
    MagicPermissionError,
    MagicRemoteRejectedError,
    MirrorMetaParseError,
    MirrorValidationError,
    SyncCancelledError,
)
from .models import FileNode, GroupNode, ResourceTree, ResourceType

__all__ = [
    "MagicApiClient",
    "MagicAPIError",
    "MagicAuthenticationError",
    "MagicConfigError",
    "MagicInvalidResponseError",
    "MagicNetworkError",
    "MagicNotFoundError",
    "MagicPermissionError",
    "MagicRemoteRejectedError",
    "MirrorMetaParseError",
    "MirrorValidationError",
    "SyncCancelledError",
    "FileNode",
    "GroupNode",
    "ResourceTree",
    "ResourceType",
]
