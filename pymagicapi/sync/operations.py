"""Push and pull operations shared by reconciliation and the watchers."""

import logging
from typing import Optional

from ..exceptions import MagicNotFoundError, MirrorMetaParseError
from ..models import MagicFileInfo, ResourceType
from ..utils import join_dir
from .context import SyncContext
from .state import MirrorFileMeta, ResourceKey
from .tree_cache import RemoteSnapshot

logger = logging.getLogger(__name__)


class SyncOperations:
    """Unified operations for pushing to and pulling from the server."""

    def __init__(self, context: SyncContext):
        """Initialize sync operations.

        Args:
            context: Engine context of the mirror
        """
        self.context = context
        self.client = context.client
        self.store = context.store
        self.tree_cache = context.tree_cache

    # =========================
    # Groups
    # =========================

    async def ensure_group_chain(self, resource_type: str, group_sub: str) -> Optional[str]:
        """Make sure every group on a path exists remotely.

        Missing groups are created top-down. The tree is re-fetched after
        each creation, since a group must be resolvable before its children
        can be placed under it.

        Args:
            resource_type: Resource type of the chain
            group_sub: Group path below the type, e.g. ``billing/invoice``

        Returns:
            Id of the innermost group, or None for the type root
        """
        segments = [s for s in group_sub.split("/") if s]
        if not segments:
            return None

        await self.tree_cache.refresh()
        parent_id: Optional[str] = None
        acc: list[str] = []
        for seg in segments:
            acc.append(seg)
            path = join_dir(resource_type, "/".join(acc))
            group_id = self.tree_cache.resolve_id(path)
            if group_id is None:
                logger.debug(f"Creating remote group {path}")
                new_id = await self.client.create_group(
                    seg, parent_id, ResourceType(resource_type)
                )
                await self.tree_cache.refresh()
                group_id = self.tree_cache.resolve_id(path) or new_id
            parent_id = group_id
        return parent_id

    async def rename_group(
        self, resource_type: str, old_sub: str, new_name: str
    ) -> bool:
        """Rename a remote group after its directory was renamed.

        Returns:
            True if a known group was renamed
        """
        group_id = await self.tree_cache.lookup_id(join_dir(resource_type, old_sub))
        if group_id is None:
            return False
        group = await self.tree_cache.get_group(group_id)
        if group is None:
            return False
        group.name = new_name
        await self.client.save_group(group)
        await self.tree_cache.refresh()
        return True

    async def delete_group(self, resource_type: str, group_sub: str) -> bool:
        group_id = await self.tree_cache.lookup_id(join_dir(resource_type, group_sub))
        if group_id is None:
            return False
        await self.client.delete_group(group_id)
        await self.tree_cache.refresh()
        return True

    # =========================
    # Files
    # =========================

    async def find_remote_id(
        self, key: ResourceKey, meta: Optional[MirrorFileMeta] = None
    ) -> Optional[str]:
        """Resolve the remote id of a resource.

        The sidecar id wins if the server still knows it at the same path;
        otherwise the mirror path is looked up, re-fetching the tree on a
        miss. An id the server has since moved elsewhere is never returned,
        so a push cannot undo a rename made on the server.
        """
        if meta is not None and meta.id:
            remote_path = await self.tree_cache.lookup_path(meta.id)
            if remote_path == key.script_path:
                return meta.id
            if remote_path is None:
                logger.debug(f"Stale remote id {meta.id} for {key}")
            else:
                logger.debug(f"Remote id {meta.id} of {key} now lives at {remote_path}")
        return await self.tree_cache.lookup_id(key.script_path)

    async def push(
        self,
        key: ResourceKey,
        script: str,
        meta: Optional[MirrorFileMeta] = None,
    ) -> MirrorFileMeta:
        """Create or save a resource on the server from local state.

        After the write the sidecar is refreshed from the server's snapshot
        so that ``updateTime`` and ``groupId`` stay comparable with the
        remote side.

        Args:
            key: Resource to push
            script: Script body to send
            meta: Local sidecar, or None to derive one from the key

        Returns:
            The refreshed sidecar as written
        """
        meta = meta or self.store.default_meta(key)
        meta.name = key.name
        meta.type = key.type
        meta.group_path = key.dir_path

        group_id = await self.ensure_group_chain(key.type, key.group_sub)
        if group_id:
            meta.group_id = group_id

        # renames made on the server since the last fetch must be visible
        await self.tree_cache.refresh()
        file_id = await self.find_remote_id(key, meta)
        if file_id:
            meta.id = file_id
            await self.client.save_file(meta.to_payload(script))
            logger.debug(f"Saved {key} as {file_id}")
        else:
            meta.id = await self.client.create_file(
                key.name,
                script,
                key.resource_type,
                key.dir_path,
                group_id,
                **meta.wire_fields(),
            )
            logger.debug(f"Created {key} as {meta.id}")

        snapshot = await self.tree_cache.get_file(meta.id)
        if snapshot is not None:
            meta = meta.refreshed_from(MirrorFileMeta.from_file_info(snapshot))
        self.store.write_meta(key, meta, local=False)
        self.context.remember_session()
        return meta

    async def push_local(self, key: ResourceKey) -> MirrorFileMeta:
        """Push whatever the mirror currently holds for a resource.

        Raises:
            FileNotFoundError: If the script does not exist locally
            MirrorMetaParseError: If the sidecar is malformed
        """
        script = self.store.read_script(key)
        if script is None:
            raise FileNotFoundError(str(self.store.script_path(key)))
        return await self.push(key, script, self.store.read_meta(key))

    async def pull(self, info: MagicFileInfo) -> MirrorFileMeta:
        """Materialize a server resource in the mirror.

        The sidecar takes the server's ``updateTime``; the local edit clock
        of an existing sidecar is kept as it was.
        """
        key = ResourceKey.from_script_path(info.mirror_path)
        meta = MirrorFileMeta.from_file_info(info)
        try:
            existing = self.store.read_meta(key)
        except MirrorMetaParseError as e:
            logger.warning(f"Replacing malformed sidecar: {e}")
            existing = None
        if existing is not None:
            meta.local_update_time = existing.local_update_time

        self.store.write_script(key, info.script)
        self.store.write_meta(key, meta, local=False)
        logger.debug(f"Pulled {key}")
        return meta

    async def pull_by_key(self, key: ResourceKey) -> MirrorFileMeta:
        """Pull the current server copy of a resource.

        Raises:
            MagicNotFoundError: If the server has no such resource
        """
        try:
            meta = self.store.read_meta(key)
        except MirrorMetaParseError:
            meta = None
        file_id = await self.find_remote_id(key, meta)
        info = await self.tree_cache.get_file(file_id) if file_id else None
        if info is None:
            raise MagicNotFoundError(f"No remote resource for {key}")
        return await self.pull(info)

    async def delete_remote(self, key: ResourceKey) -> bool:
        """Delete a resource on the server.

        Returns:
            True if a remote resource was found and deleted
        """
        file_id = await self.tree_cache.lookup_id(key.script_path)
        if file_id is None:
            return False
        await self.client.delete_file(file_id)
        await self.tree_cache.refresh()
        logger.debug(f"Deleted remote {key}")
        return True

    async def rename_remote(self, old: ResourceKey, new: ResourceKey) -> bool:
        """Rename a resource on the server and move its sidecar.

        Returns:
            True if the remote resource was renamed
        """
        meta = self.store.rename_meta(old, new)
        file_id = await self.find_remote_id(old, meta)
        if file_id is None:
            return False
        info = await self.tree_cache.get_file(file_id)
        if info is None:
            return False

        if new.dir_path != old.dir_path:
            info.group_id = await self.ensure_group_chain(new.type, new.group_sub) or ""
            info.group_path = new.dir_path
        info.name = new.name
        await self.client.save_file(info.to_payload())

        snapshot = await self.tree_cache.get_file(file_id)
        if snapshot is not None and meta is not None:
            meta = meta.refreshed_from(MirrorFileMeta.from_file_info(snapshot))
            self.store.write_meta(new, meta, local=False)
        logger.debug(f"Renamed remote {old} to {new}")
        return True

    def adopt_remote_rename(
        self, old: ResourceKey, new: ResourceKey
    ) -> Optional[MirrorFileMeta]:
        """Move a mirrored resource to where the server renamed it."""
        meta = self.store.move_resource(old, new)
        logger.info(f"Renamed {old} to {new} to match the server")
        return meta

    def write_group_metas(self, snapshot: RemoteSnapshot) -> int:
        """Write ``.group.meta.json`` for every remote group.

        Returns:
            Number of snapshots written
        """
        count = 0
        for directory, group in snapshot.groups.items():
            resource_type, _, group_sub = directory.partition("/")
            self.store.write_group_meta(resource_type, group_sub, group.to_group_meta())
            count += 1
        return count
