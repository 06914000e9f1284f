"""Incremental propagation of single changes in either direction.

Local file-system changes under a mirror root arrive as one ordered stream
of :class:`MirrorEvent` objects. Each event is parsed once into a
:class:`MirrorPath` and dispatched to a handler that mirrors it onto the
server. :class:`RemoteChangeWatcher` does the opposite for edits made on
the server.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePath
from typing import Iterable, NamedTuple, Optional

from watchfiles import Change, awatch

from ..exceptions import MagicAPIError, MirrorMetaParseError, MirrorValidationError
from ..models import MagicFileInfo, ResourceType
from ..utils import is_meta_file_name, is_script_file_name, join_dir, resource_name_from_file
from .comparator import SyncAction, detect_and_propose_conflict
from .context import SyncContext
from .modes import SyncDirection
from .operations import SyncOperations
from .state import MirrorFileMeta, ResourceKey
from .validation import validate_file_meta

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of local change the watcher propagates."""

    SAVED = "saved"
    CREATED = "created"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass(frozen=True)
class MirrorEvent:
    """One local change below the mirror root."""

    kind: EventKind
    path: Path
    old_path: Optional[Path] = None
    """Previous location, only for RENAMED"""

    is_dir: bool = False


class PathKind(str, Enum):
    SCRIPT = "script"
    META = "meta"
    DIRECTORY = "directory"


class MirrorPath(NamedTuple):
    """A mirror path split into resource coordinates."""

    type: str
    group_sub: str
    """Group path of the containing directory below the type"""

    name: str
    """Resource name, or the directory name for directories"""

    kind: PathKind

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.type, self.group_sub, self.name)

    @property
    def dir_sub(self) -> str:
        """Group path of a directory itself, e.g. ``billing/invoice``."""
        return f"{self.group_sub}/{self.name}" if self.group_sub else self.name


def parse_mirror_path(
    path: PurePath, root: Optional[PurePath] = None, is_dir: bool = False
) -> Optional[MirrorPath]:
    """Locate a path within the mirror layout.

    The first segment naming a resource type starts the layout, so the mirror
    root may live at any depth. When ``root`` is given, only segments below
    it are considered.

    Args:
        path: Changed path
        root: Mirror root, if known
        is_dir: Whether the path is a directory

    Returns:
        MirrorPath, or None for paths that are not scripts, sidecars or
        group directories (dot directories, merge scratch files, the root
        meta, type roots)

    Examples:
        >>> parse_mirror_path(PurePath("/w/api/user/login.ms"))
        MirrorPath(type='api', group_sub='user', name='login', kind=<PathKind.SCRIPT: 'script'>)
    """
    parts = PurePath(path).parts
    if root is not None:
        try:
            parts = PurePath(path).relative_to(root).parts
        except ValueError:
            return None

    types = ResourceType.values()
    start = next((i for i, part in enumerate(parts) if part in types), None)
    if start is None:
        return None
    if root is not None and start != 0:
        return None

    resource_type = parts[start]
    rest = parts[start + 1 :]
    if not rest:
        return None
    groups, leaf = rest[:-1], rest[-1]
    if any(g.startswith(".") for g in groups):
        return None
    group_sub = "/".join(groups)

    if is_dir:
        if leaf.startswith("."):
            return None
        return MirrorPath(resource_type, group_sub, leaf, PathKind.DIRECTORY)

    name = resource_name_from_file(leaf)
    if name is None:
        return None
    if is_script_file_name(leaf) and not leaf.startswith("."):
        return MirrorPath(resource_type, group_sub, name, PathKind.SCRIPT)
    if is_meta_file_name(leaf):
        return MirrorPath(resource_type, group_sub, name, PathKind.META)
    return None


def _looks_like_file(path: Path) -> bool:
    return is_script_file_name(path.name) or is_meta_file_name(path.name)


def events_from_changes(changes: Iterable[tuple[Change, str]]) -> list[MirrorEvent]:
    """Turn one batch of ``watchfiles`` changes into ordered mirror events.

    ``watchfiles`` reports a rename as a deletion plus an addition. When a
    batch holds exactly one deleted and one added path of the same shape
    (both scripts or both directories), they are paired into RENAMED.
    """
    added: list[Path] = []
    deleted: list[Path] = []
    events: list[MirrorEvent] = []
    for change, raw in sorted(changes, key=lambda c: c[1]):
        path = Path(raw)
        if change == Change.added:
            added.append(path)
        elif change == Change.deleted:
            deleted.append(path)
        else:
            events.append(MirrorEvent(EventKind.SAVED, path))

    def is_script(p: Path) -> bool:
        return is_script_file_name(p.name) and not p.name.startswith(".")

    for shape in (is_script, lambda p: not _looks_like_file(p)):
        gone = [p for p in deleted if shape(p)]
        new = [p for p in added if shape(p)]
        if len(gone) == 1 and len(new) == 1 and (shape is is_script or new[0].is_dir()):
            events.append(
                MirrorEvent(
                    EventKind.RENAMED,
                    new[0],
                    old_path=gone[0],
                    is_dir=shape is not is_script,
                )
            )
            deleted.remove(gone[0])
            added.remove(new[0])

    for path in deleted:
        events.append(
            MirrorEvent(EventKind.DELETED, path, is_dir=not _looks_like_file(path))
        )
    for path in added:
        events.append(MirrorEvent(EventKind.CREATED, path, is_dir=path.is_dir()))
    return events


class ChangeWatcher:
    """Propagates local mirror changes to the server."""

    def __init__(self, context: SyncContext):
        self.context = context
        self.store = context.store
        self.output = context.output
        self.operations = SyncOperations(context)

    def parse(self, path: Path, is_dir: bool = False) -> Optional[MirrorPath]:
        return parse_mirror_path(Path(path), self.store.root, is_dir=is_dir)

    def is_echo(self, event: MirrorEvent) -> bool:
        """Whether an event was caused by the engine's own write."""
        if event.kind not in (EventKind.SAVED, EventKind.CREATED) or event.is_dir:
            return False
        return self.store.is_own_write(event.path)

    async def dispatch(self, event: MirrorEvent) -> bool:
        """Propagate one event, reporting failures instead of raising.

        Returns:
            True if the server was changed
        """
        try:
            return await self.handle(event)
        except MirrorValidationError as e:
            self.output.error(str(e))
            for problem in e.errors:
                self.output.error(f"  - {problem}")
        except (MagicAPIError, OSError) as e:
            logger.debug(f"Failed to propagate {event}", exc_info=True)
            self.output.error(f"Failed to sync {event.path}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error propagating {event}", exc_info=True)
            self.output.error(f"Failed to sync {event.path}: {e}")
        return False

    async def handle(self, event: MirrorEvent) -> bool:
        """Propagate one event.

        Raises:
            MirrorValidationError: If a saved sidecar fails validation
            MirrorMetaParseError: If a sidecar cannot be parsed
            MagicAPIError: If the server call fails
        """
        if event.kind == EventKind.RENAMED and event.old_path is not None:
            old = self.parse(event.old_path, is_dir=event.is_dir)
            new = self.parse(event.path, is_dir=event.is_dir)
            if old is None or new is None:
                return False
            return await self.handle_renamed(old, new)

        target = self.parse(event.path, is_dir=event.is_dir)
        if target is None:
            return False
        logger.debug(f"{event.kind.value}: {target}")

        if event.kind == EventKind.DELETED:
            return await self.handle_deleted(target)
        if target.kind == PathKind.DIRECTORY:
            if event.kind == EventKind.CREATED:
                await self.operations.ensure_group_chain(target.type, target.dir_sub)
                return True
            return False
        if target.kind == PathKind.META:
            return await self.handle_meta_saved(target)
        return await self.handle_script_saved(target)

    async def handle_script_saved(self, target: MirrorPath) -> bool:
        """Push a saved or newly created script, creating groups as needed."""
        key = target.key
        script = self.store.read_script(key)
        if script is None:
            return False
        meta = self.store.read_meta(key) or self.store.default_meta(key)
        self.store.write_meta(key, meta, local=True)
        await self.operations.push(key, script, meta)
        self.output.success(f"Pushed {key}")
        return True

    async def handle_meta_saved(self, target: MirrorPath) -> bool:
        """Validate a hand-edited sidecar and push it with its script."""
        key = target.key
        data = self.store.read_meta_dict(key)
        if data is None:
            return False
        try:
            meta = self.store.default_meta(key).merged_with(data)
        except (TypeError, ValueError) as e:
            raise MirrorMetaParseError(str(self.store.meta_path(key)), str(e)) from e

        errors = validate_file_meta(meta, key)
        if errors:
            raise MirrorValidationError(str(self.store.meta_path(key)), errors)

        script = self.store.read_script(key)
        if script is None:
            self.output.warning(f"No script for {key}, metadata not pushed")
            return False
        self.store.write_meta(key, meta, local=True)
        await self.operations.push(key, script, meta)
        self.output.success(f"Pushed metadata of {key}")
        return True

    async def handle_deleted(self, target: MirrorPath) -> bool:
        if target.kind == PathKind.DIRECTORY:
            deleted = await self.operations.delete_group(target.type, target.dir_sub)
            if deleted:
                self.output.success(f"Deleted group {join_dir(target.type, target.dir_sub)}")
            return deleted
        if target.kind == PathKind.META:
            return False

        key = target.key
        deleted = await self.operations.delete_remote(key)
        self.store.meta_path(key).unlink(missing_ok=True)
        if deleted:
            self.output.success(f"Deleted {key}")
        return deleted

    async def handle_renamed(self, old: MirrorPath, new: MirrorPath) -> bool:
        if old.kind == PathKind.DIRECTORY and new.kind == PathKind.DIRECTORY:
            if old.type != new.type or old.group_sub != new.group_sub:
                self.output.warning(
                    f"Moving groups between parents is not supported: "
                    f"{join_dir(old.type, old.dir_sub)} -> {join_dir(new.type, new.dir_sub)}"
                )
                return False
            return await self.operations.rename_group(old.type, old.dir_sub, new.name)

        if old.kind == PathKind.SCRIPT and new.kind == PathKind.SCRIPT:
            if old.type != new.type:
                self.output.warning(f"Cannot change the type of {old.key}")
                return False
            renamed = await self.operations.rename_remote(old.key, new.key)
            if not renamed:
                # Never synced before: treat as a new script.
                return await self.handle_script_saved(new)
            self.output.success(f"Renamed {old.key} to {new.key}")
            return True
        return False

    async def watch(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Watch the mirror root and propagate changes until stopped."""
        logger.info(f"Watching {self.store.root}")
        async for changes in awatch(self.store.root, stop_event=stop_event):
            for event in events_from_changes(changes):
                if self.is_echo(event):
                    logger.debug(f"Ignoring own write {event.path}")
                    continue
                await self.dispatch(event)


class RemoteChangeWatcher:
    """Writes server-side edits back into the mirror."""

    def __init__(self, context: SyncContext):
        self.context = context
        self.store = context.store
        self.output = context.output
        self.operations = SyncOperations(context)

    async def apply_remote_save(self, info: MagicFileInfo) -> bool:
        """Bring one server-side save into the mirror.

        The resource is pulled unless the local side was edited more
        recently; in that case the server version is left in the merge
        scratch area for the user to decide.

        Returns:
            True if the mirror was updated
        """
        key = ResourceKey.from_script_path(info.mirror_path)
        local_script = self.store.read_script(key)
        if local_script is None and self.adopt_rename(info, key):
            local_script = self.store.read_script(key)
        if local_script is None:
            await self.operations.pull(info)
            return True
        try:
            local_meta = self.store.read_meta(key)
        except MirrorMetaParseError as e:
            self.output.warning(str(e))
            return False

        remote_meta = MirrorFileMeta.from_file_info(info)
        proposal = detect_and_propose_conflict(
            local_meta,
            remote_meta,
            local_script,
            info.script,
            SyncDirection.PULL_ONLY,
        )
        if proposal.action == SyncAction.PULL:
            await self.operations.pull(info)
            self.output.info(f"Updated {key} from server")
            return True
        if proposal.action == SyncAction.MERGE and not self.store.has_merge_files(key):
            path, _ = self.store.write_merge_files(key, info.script, remote_meta)
            self.output.warning(
                f"{key} changed on both sides: {proposal.reason}. "
                f"Server version saved to {path}"
            )
        return False

    def adopt_rename(self, info: MagicFileInfo, key: ResourceKey) -> bool:
        """Move the mirror copy of a resource the server renamed to ``key``.

        Returns:
            True if a script carrying the same remote id was moved
        """
        if not info.id:
            return False
        old = self.store.find_key_by_id(info.id)
        if old is None or old == key or self.store.read_script(old) is None:
            return False
        self.operations.adopt_remote_rename(old, key)
        self.output.info(f"Renamed {old} to {key} to match the server")
        return True

    async def poll_once(self) -> int:
        """Re-fetch the tree and apply every resource the server changed.

        Returns:
            Number of resources written into the mirror
        """
        snapshot = await self.context.tree_cache.fetch_snapshot()
        applied = 0
        for info in snapshot.files.values():
            key = ResourceKey.from_script_path(info.mirror_path)
            try:
                local_meta = self.store.read_meta(key)
            except MirrorMetaParseError as e:
                logger.warning(str(e))
                continue
            try:
                if local_meta is None and self.store.read_script(key) is not None:
                    continue
                known = (local_meta.update_time if local_meta else None) or 0
                if local_meta is not None and (info.update_time or 0) <= known:
                    continue
                if await self.apply_remote_save(info):
                    applied += 1
            except (MagicAPIError, OSError, ValueError) as e:
                self.output.error(f"Failed to update {key}: {e}")
        if applied:
            logger.debug(f"Applied {applied} remote change(s)")
        return applied

    async def run(
        self, interval: float = 10.0, stop_event: Optional[asyncio.Event] = None
    ) -> None:
        """Poll the server every ``interval`` seconds until stopped."""
        stop_event = stop_event or asyncio.Event()
        while not stop_event.is_set():
            try:
                await self.poll_once()
            except MagicAPIError as e:
                self.output.warning(f"Remote poll failed: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
