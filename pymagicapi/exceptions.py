"""Exceptions raised by the Magic API client and the mirror sync engine."""

from typing import Optional


class MagicAPIError(Exception):
    """Base exception for all Magic API mirror errors."""


class MagicConfigError(MagicAPIError):
    """Raised when connection settings are missing or invalid."""


class MagicNetworkError(MagicAPIError):
    """Raised when the remote store cannot be reached."""


class MagicAuthenticationError(MagicAPIError):
    """Raised when the server rejects the credentials or session token."""


class MagicPermissionError(MagicAPIError):
    """Raised when the server forbids an operation."""


class MagicNotFoundError(MagicAPIError):
    """Raised when a remote resource or group does not exist."""


class MagicInvalidResponseError(MagicAPIError):
    """Raised when the server returns a payload that cannot be understood."""


class MagicRemoteRejectedError(MagicAPIError):
    """Raised when the server answers with a non-success envelope."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class MirrorMetaParseError(MagicAPIError):
    """Raised when a local metadata sidecar is not valid JSON."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Malformed metadata file {path}: {reason}")
        self.path = path
        self.reason = reason


class MirrorValidationError(MagicAPIError):
    """Raised when a metadata sidecar fails the checks for its type."""

    def __init__(self, path: str, errors: list[str]):
        super().__init__(f"Invalid metadata in {path}: " + "; ".join(errors))
        self.path = path
        self.errors = errors


class SyncCancelledError(MagicAPIError):
    """Raised at a reconciliation checkpoint once cancellation was requested."""
