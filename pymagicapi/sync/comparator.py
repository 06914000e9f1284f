"""Resource comparison logic for sync operations."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from ..utils import normalize_line_endings
from .modes import SyncDirection
from .scanner import LocalResource, RemoteResource
from .state import MirrorFileMeta, ResourceKey


class SyncAction(str, Enum):
    """Actions that can be taken during sync."""

    PUSH = "push"
    """Create or save the local version on the server"""

    PULL = "pull"
    """Write the server version into the mirror"""

    MERGE = "merge"
    """Both sides changed and neither clearly wins; the user must decide"""

    SKIP = "skip"
    """No action needed or allowed"""


class ResourceStatus(str, Enum):
    """How a resource relates across the two sides."""

    LOCAL_ONLY = "local_only"
    REMOTE_ONLY = "remote_only"
    CHANGED = "changed"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class Proposal:
    """Outcome of comparing one resource present on both sides."""

    action: SyncAction
    reason: str


@dataclass
class SyncDecision:
    """Represents a decision about how to sync a resource."""

    key: ResourceKey
    """Resource the decision is about"""

    status: ResourceStatus
    """Classification used for the dry-run summary"""

    action: SyncAction
    """Action to take"""

    reason: str
    """Human-readable reason for this decision"""

    local: Optional[LocalResource] = None
    remote: Optional[RemoteResource] = None

    moved_from: Optional[ResourceKey] = None
    """Mirror location of a resource the server renamed to ``key``"""


# =============================================================================
# Diffing
# =============================================================================


def scripts_differ(local: Optional[str], remote: Optional[str]) -> bool:
    """Compare two script bodies, ignoring line-ending conventions."""
    return normalize_line_endings(local or "") != normalize_line_endings(remote or "")


def meta_differs(
    local_meta: Optional[MirrorFileMeta], remote_meta: Optional[MirrorFileMeta]
) -> bool:
    """Compare two sidecars structurally, ignoring local-only bookkeeping."""
    if local_meta is None or remote_meta is None:
        return local_meta is not remote_meta
    return local_meta.comparison_dict() != remote_meta.comparison_dict()


def detect_and_propose_conflict(
    local_meta: Optional[MirrorFileMeta],
    remote_meta: Optional[MirrorFileMeta],
    local_script: Optional[str],
    remote_script: Optional[str],
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
) -> Proposal:
    """Decide what to do with a resource that exists on both sides.

    The last local edit time and the server's update time are the primary
    signal; content equality decides whether there is anything to do at all.
    Equal timestamps with differing content are never guessed at.

    Args:
        local_meta: Local sidecar (None if the script has none yet)
        remote_meta: Server metadata projected onto the sidecar shape
        local_script: Local script body
        remote_script: Server script body
        direction: Allowed direction of change

    Returns:
        Proposal with the chosen action and a reason
    """
    script_changed = scripts_differ(local_script, remote_script)
    meta_changed = meta_differs(local_meta, remote_meta)
    if not script_changed and not meta_changed:
        return Proposal(SyncAction.SKIP, "Already consistent")

    what = "script" if script_changed else "metadata"
    if script_changed and meta_changed:
        what = "script and metadata"

    lt = (local_meta.local_update_time if local_meta else None) or 0
    rt = (remote_meta.update_time if remote_meta else None) or 0

    if direction == SyncDirection.BIDIRECTIONAL:
        if lt > rt:
            return Proposal(SyncAction.PUSH, f"Local {what} is newer")
        if rt > lt:
            return Proposal(SyncAction.PULL, f"Remote {what} is newer")
        return Proposal(
            SyncAction.MERGE, f"Both sides changed {what} at the same time ({lt})"
        )

    if direction == SyncDirection.PUSH_ONLY:
        if lt >= rt:
            return Proposal(SyncAction.PUSH, f"Local {what} is not older")
        return Proposal(
            SyncAction.MERGE, f"Remote {what} is newer but direction is push"
        )

    if rt >= lt:
        return Proposal(SyncAction.PULL, f"Remote {what} is not older")
    return Proposal(SyncAction.MERGE, f"Local {what} is newer but direction is pull")


# =============================================================================
# Planning
# =============================================================================


class ResourceComparator:
    """Compares local and remote resources to determine sync actions."""

    def __init__(self, direction: Optional[SyncDirection] = None):
        """Initialize resource comparator.

        Args:
            direction: Direction to plan for. None classifies only: every
                decision is SKIP, which is what a dry-run summary needs.
        """
        self.direction = direction

    def compare(
        self,
        local: dict[ResourceKey, LocalResource],
        remote: dict[ResourceKey, RemoteResource],
        moved: Optional[dict[ResourceKey, ResourceKey]] = None,
    ) -> list[SyncDecision]:
        """Compare local and remote resources and determine sync actions.

        Args:
            local: Local resources by key
            remote: Remote resources by key
            moved: Server-side renames, new remote key to old local key

        Returns:
            List of SyncDecision objects, sorted by key
        """
        moved = moved or {}
        return [
            self.compare_key(key, local, remote, moved)
            for key in self.keys(local, remote, moved)
        ]

    @staticmethod
    def keys(
        local: dict[ResourceKey, LocalResource],
        remote: dict[ResourceKey, RemoteResource],
        moved: Optional[dict[ResourceKey, ResourceKey]] = None,
    ) -> list[ResourceKey]:
        """Keys to decide on; renamed resources appear under their new key."""
        old_keys = set((moved or {}).values())
        return sorted((set(local) - old_keys) | set(remote))

    def compare_key(
        self,
        key: ResourceKey,
        local: dict[ResourceKey, LocalResource],
        remote: dict[ResourceKey, RemoteResource],
        moved: Optional[dict[ResourceKey, ResourceKey]] = None,
    ) -> SyncDecision:
        old = (moved or {}).get(key)
        if old is not None:
            return self._compare_moved(key, old, local[old], remote[key])
        return self.compare_single(key, local.get(key), remote.get(key))

    def compare_single(
        self,
        key: ResourceKey,
        local: Optional[LocalResource],
        remote: Optional[RemoteResource],
    ) -> SyncDecision:
        """Compare one resource and determine its action."""
        if local and remote:
            return self._compare_existing(key, local, remote)
        if local:
            return self._handle_local_only(key, local)
        if remote:
            return self._handle_remote_only(key, remote)
        return SyncDecision(
            key=key,
            status=ResourceStatus.UNCHANGED,
            action=SyncAction.SKIP,
            reason="Resource not found on either side",
        )

    def _compare_existing(
        self, key: ResourceKey, local: LocalResource, remote: RemoteResource
    ) -> SyncDecision:
        proposal = detect_and_propose_conflict(
            local.meta,
            remote.meta,
            local.script,
            remote.script,
            self.direction or SyncDirection.BIDIRECTIONAL,
        )
        status = (
            ResourceStatus.UNCHANGED
            if proposal.action == SyncAction.SKIP
            else ResourceStatus.CHANGED
        )
        action = proposal.action if self.direction else SyncAction.SKIP
        return SyncDecision(
            key=key,
            status=status,
            action=action,
            reason=proposal.reason,
            local=local,
            remote=remote,
        )

    def _compare_moved(
        self,
        key: ResourceKey,
        old: ResourceKey,
        local: LocalResource,
        remote: RemoteResource,
    ) -> SyncDecision:
        """Decide on a resource the server renamed from ``old`` to ``key``.

        The local copy is compared as if it already sat at ``key``. Adopting
        the rename moves the mirror files, so it needs a direction that
        allows pulling; an already consistent pair is still moved.
        """
        relocated = LocalResource(
            key=key,
            script=local.script,
            meta=replace(
                local.meta, name=key.name, type=key.type, group_path=key.dir_path
            ),
        )
        if self.direction is None:
            action, reason = SyncAction.SKIP, f"Renamed on server from {old}"
        elif not self.direction.allows_pull:
            action = SyncAction.SKIP
            reason = f"Renamed on server from {old} but direction prevents pull"
        else:
            proposal = detect_and_propose_conflict(
                relocated.meta,
                remote.meta,
                relocated.script,
                remote.script,
                self.direction,
            )
            action = proposal.action
            if action == SyncAction.SKIP:
                action = SyncAction.PULL
            reason = f"Renamed on server from {old}: {proposal.reason}"
        return SyncDecision(
            key=key,
            status=ResourceStatus.CHANGED,
            action=action,
            reason=reason,
            local=relocated,
            remote=remote,
            moved_from=old,
        )

    def _handle_local_only(self, key: ResourceKey, local: LocalResource) -> SyncDecision:
        if self.direction and self.direction.allows_push:
            action, reason = SyncAction.PUSH, "New local resource"
        else:
            action = SyncAction.SKIP
            reason = "Local-only resource but direction prevents push"
        return SyncDecision(
            key=key,
            status=ResourceStatus.LOCAL_ONLY,
            action=action,
            reason=reason,
            local=local,
        )

    def _handle_remote_only(
        self, key: ResourceKey, remote: RemoteResource
    ) -> SyncDecision:
        if self.direction and self.direction.allows_pull:
            action, reason = SyncAction.PULL, "New remote resource"
        else:
            action = SyncAction.SKIP
            reason = "Remote-only resource but direction prevents pull"
        return SyncDecision(
            key=key,
            status=ResourceStatus.REMOTE_ONLY,
            action=action,
            reason=reason,
            remote=remote,
        )
