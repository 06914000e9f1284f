"""Sync directions for mirror reconciliation."""

from enum import Enum


class SyncDirection(str, Enum):
    """Which way changes may flow during a reconciliation."""

    BIDIRECTIONAL = "both"
    """Push local changes and pull remote changes"""

    PUSH_ONLY = "push"
    """Only propagate local changes to the server"""

    PULL_ONLY = "pull"
    """Only materialize server changes locally"""

    @property
    def allows_push(self) -> bool:
        return self in (SyncDirection.BIDIRECTIONAL, SyncDirection.PUSH_ONLY)

    @property
    def allows_pull(self) -> bool:
        return self in (SyncDirection.BIDIRECTIONAL, SyncDirection.PULL_ONLY)

    @classmethod
    def from_string(cls, value: str) -> "SyncDirection":
        """Parse a direction name or one of its aliases.

        Examples:
            >>> SyncDirection.from_string("local-to-remote")
            <SyncDirection.PUSH_ONLY: 'push'>
        """
        normalized = value.strip().lower().replace("_", "-")
        for direction, aliases in _ALIASES.items():
            if normalized == direction.value or normalized in aliases:
                return direction
        valid = ", ".join(d.value for d in cls)
        raise ValueError(f"Invalid sync direction: {value}. Valid values: {valid}")


_ALIASES: dict[SyncDirection, tuple[str, ...]] = {
    SyncDirection.BIDIRECTIONAL: ("bidirectional", "two-way", "tw", "b"),
    SyncDirection.PUSH_ONLY: ("push-only", "local-to-remote", "ltr", "up"),
    SyncDirection.PULL_ONLY: ("pull-only", "remote-to-local", "rtl", "down"),
}
