"""Scanning of the local mirror and the remote tree for reconciliation."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from ..exceptions import MirrorMetaParseError, SyncCancelledError
from ..models import MagicFileInfo
from .mirror import MirrorStore
from .state import MirrorFileMeta, ResourceKey
from .tree_cache import RemoteSnapshot, ResourceTreeCache

logger = logging.getLogger(__name__)


@dataclass
class LocalResource:
    """A resource as found in the mirror."""

    key: ResourceKey
    script: str
    meta: Optional[MirrorFileMeta] = None
    """Sidecar, None if the script has never been synced"""

    @property
    def remote_id(self) -> Optional[str]:
        return self.meta.id if self.meta else None


@dataclass
class RemoteResource:
    """A resource as found on the server."""

    info: MagicFileInfo

    @property
    def key(self) -> ResourceKey:
        return ResourceKey.from_script_path(self.info.mirror_path)

    @property
    def script(self) -> str:
        return self.info.script

    @property
    def meta(self) -> MirrorFileMeta:
        """Server metadata projected onto the sidecar shape."""
        return MirrorFileMeta.from_file_info(self.info)

    @property
    def id(self) -> str:
        return self.info.id


@dataclass
class ScanResult:
    """Everything one reconciliation needs from both sides."""

    local: dict[ResourceKey, LocalResource] = field(default_factory=dict)
    remote: dict[ResourceKey, RemoteResource] = field(default_factory=dict)
    snapshot: Optional[RemoteSnapshot] = None
    errors: dict[ResourceKey, str] = field(default_factory=dict)
    """Resources that could not be read and are left out of this sync"""

    moved: dict[ResourceKey, ResourceKey] = field(default_factory=dict)
    """Resources renamed on the server: new remote key to old local key"""


async def checkpoint(cancel: Optional[asyncio.Event]) -> None:
    """Yield to the event loop and stop if cancellation was requested."""
    await asyncio.sleep(0)
    if cancel is not None and cancel.is_set():
        raise SyncCancelledError("Reconciliation cancelled")


class ResourceScanner:
    """Builds the local and remote resource maps for one reconciliation.

    Scanning never mutates the mirror or the server, so it can be
    abandoned at any checkpoint.
    """

    def __init__(self, store: MirrorStore, tree_cache: ResourceTreeCache):
        self.store = store
        self.tree_cache = tree_cache

    async def scan(self, cancel: Optional[asyncio.Event] = None) -> ScanResult:
        """Scan both sides.

        Resources whose sidecar cannot be parsed are reported in
        ``errors`` and dropped from both maps, so that no action is planned
        for them.

        Raises:
            SyncCancelledError: If ``cancel`` is set at a checkpoint
            MagicAPIError: If the remote tree cannot be fetched
        """
        result = ScanResult()
        await self.scan_local(result, cancel)
        await self.scan_remote(result, cancel)
        for key in result.errors:
            result.local.pop(key, None)
            result.remote.pop(key, None)
        self.pair_moved(result)
        return result

    @staticmethod
    def pair_moved(result: ScanResult) -> None:
        """Pair resources the server renamed by their remote id.

        A local resource is paired when its sidecar still describes its own
        location, no remote resource sits at that location, and the remote
        resource carrying its id sits where the mirror has nothing.
        """
        remote_by_id = {r.id: r for r in result.remote.values() if r.id}
        for key, local in result.local.items():
            if key in result.remote or not local.remote_id or local.meta.key != key:
                continue
            remote = remote_by_id.get(local.remote_id)
            if remote is None or remote.key in result.local or remote.key in result.moved:
                continue
            logger.debug(f"{key} was renamed on the server to {remote.key}")
            result.moved[remote.key] = key

    async def scan_local(
        self, result: ScanResult, cancel: Optional[asyncio.Event] = None
    ) -> None:
        for key in self.store.list_all_scripts():
            await checkpoint(cancel)
            try:
                script = self.store.read_script(key)
            except (OSError, ValueError) as e:
                logger.warning(f"Cannot read {key}: {e}")
                result.errors[key] = str(e)
                continue
            if script is None:
                continue
            try:
                meta = self.store.read_meta(key)
            except MirrorMetaParseError as e:
                logger.warning(str(e))
                result.errors[key] = str(e)
                continue
            result.local[key] = LocalResource(key=key, script=script, meta=meta)
        logger.debug(f"Found {len(result.local)} local resource(s)")

    async def scan_remote(
        self, result: ScanResult, cancel: Optional[asyncio.Event] = None
    ) -> None:
        snapshot = await self.tree_cache.fetch_snapshot()
        result.snapshot = snapshot
        by_dir: dict[str, list[MagicFileInfo]] = {}
        for info in snapshot.files.values():
            by_dir.setdefault(info.group_path, []).append(info)

        for directory in sorted(by_dir):
            await checkpoint(cancel)
            for info in by_dir[directory]:
                remote = RemoteResource(info)
                result.remote[remote.key] = remote
        logger.debug(f"Found {len(result.remote)} remote resource(s)")
