"""Sync engine for PyMagicAPI - keeps a local mirror and a server in step."""

from .comparator import (
    Proposal,
    ResourceComparator,
    ResourceStatus,
    SyncAction,
    SyncDecision,
    detect_and_propose_conflict,
    meta_differs,
    scripts_differ,
)
from .context import SyncContext
from .engine import MergeChoice, SyncEngine, SyncPlan, SyncReport, SyncSummary
from .mirror import MirrorStore
from .modes import SyncDirection
from .operations import SyncOperations
from .scanner import LocalResource, RemoteResource, ResourceScanner, ScanResult
from .state import MirrorFileMeta, MirrorRootMeta, ResourceKey
from .tree_cache import PathIdCache, RemoteSnapshot, ResourceTreeCache
from .validation import validate_file_meta
from .watcher import (
    ChangeWatcher,
    EventKind,
    MirrorEvent,
    MirrorPath,
    PathKind,
    RemoteChangeWatcher,
    events_from_changes,
    parse_mirror_path,
)

__all__ = [
    "SyncEngine",
    "SyncContext",
    "SyncDirection",
    "SyncOperations",
    "SyncPlan",
    "SyncReport",
    "SyncSummary",
    "MergeChoice",
    "MirrorStore",
    "MirrorFileMeta",
    "MirrorRootMeta",
    "ResourceKey",
    "ResourceTreeCache",
    "PathIdCache",
    "RemoteSnapshot",
    "ResourceScanner",
    "ScanResult",
    "LocalResource",
    "RemoteResource",
    "ResourceComparator",
    "ResourceStatus",
    "SyncAction",
    "SyncDecision",
    "Proposal",
    "detect_and_propose_conflict",
    "scripts_differ",
    "meta_differs",
    "validate_file_meta",
    "ChangeWatcher",
    "RemoteChangeWatcher",
    "MirrorEvent",
    "MirrorPath",
    "EventKind",
    "PathKind",
    "events_from_changes",
    "parse_mirror_path",
]
