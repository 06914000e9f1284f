"""Remote resource tree traversal and path/id caching."""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from ..api import MagicApiClient
from ..models import (
    GroupNode,
    MagicFileInfo,
    MagicGroupInfo,
    ResourceTree,
    ResourceType,
)
from ..utils import script_file_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PathIdCache:
    """Immutable pair of inverse maps between mirror paths and remote ids.

    Group paths look like ``api/user``; file paths like ``api/user/login.ms``.
    A new instance is built from every full tree fetch and swapped in whole.
    """

    path_to_id: Mapping[str, str] = field(default_factory=dict)
    id_to_path: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_tree(cls, tree: ResourceTree) -> "PathIdCache":
        path_to_id: dict[str, str] = {}
        id_to_path: dict[str, str] = {}

        def record(path: str, node_id: str) -> None:
            if not node_id:
                return
            stale = id_to_path.get(node_id)
            if stale is not None and stale != path:
                logger.warning(
                    f"Remote id {node_id} appears at {stale} and {path}; "
                    f"keeping {path}"
                )
                path_to_id.pop(stale, None)
            previous = path_to_id.get(path)
            if previous is not None and previous != node_id:
                logger.warning(f"Duplicate remote path {path}; keeping id {node_id}")
                id_to_path.pop(previous, None)
            path_to_id[path] = node_id
            id_to_path[node_id] = path

        for parent, node in tree.walk():
            if isinstance(node, GroupNode):
                record(node.dir_path, node.id)
            else:
                record(f"{parent.dir_path}/{script_file_name(node.name)}", node.id)

        return cls(MappingProxyType(path_to_id), MappingProxyType(id_to_path))


@dataclass
class RemoteSnapshot:
    """Flattened view of one tree fetch, used for a whole reconciliation."""

    directories: list[str] = field(default_factory=list)
    files: dict[str, MagicFileInfo] = field(default_factory=dict)
    """Remote files keyed by mirror script path"""

    groups: dict[str, GroupNode] = field(default_factory=dict)
    """Remote groups keyed by mirror directory path"""


class ResourceTreeCache:
    """Fetches the remote resource tree and keeps the path/id cache.

    Trees are flattened and dropped after each fetch; only the
    :class:`PathIdCache` is retained. Fetch errors propagate as
    ``MagicAPIError``: callers must read a failed fetch as "state unknown",
    never as "resource absent".
    """

    def __init__(self, client: MagicApiClient):
        self.client = client
        self._cache = PathIdCache()

    @property
    def cache(self) -> PathIdCache:
        return self._cache

    async def refresh(self) -> ResourceTree:
        """Fetch the whole tree and replace the path/id cache."""
        tree = await self.client.fetch_resource_tree()
        self._cache = PathIdCache.from_tree(tree)
        logger.debug(f"Resource tree cache holds {len(self._cache.path_to_id)} paths")
        return tree

    # =========================
    # Fetching
    # =========================

    async def fetch_directories(self) -> list[str]:
        """List every remote group as a mirror directory path."""
        tree = await self.refresh()
        return [
            node.dir_path
            for _, node in tree.walk()
            if isinstance(node, GroupNode)
        ]

    async def fetch_files_in(self, directory: str) -> list[MagicFileInfo]:
        """List the files directly inside a mirror directory.

        Args:
            directory: Directory path such as ``api`` or ``api/user``
        """
        tree = await self.refresh()
        group = self._find_dir(tree, directory)
        if group is None:
            return []
        return [MagicFileInfo.from_node(f, group.dir_path) for f in group.files()]

    async def fetch_snapshot(self) -> RemoteSnapshot:
        """Fetch once and flatten all groups and files."""
        tree = await self.refresh()
        snapshot = RemoteSnapshot()
        for parent, node in tree.walk():
            if isinstance(node, GroupNode):
                snapshot.directories.append(node.dir_path)
                snapshot.groups[node.dir_path] = node
            else:
                info = MagicFileInfo.from_node(node, parent.dir_path)
                snapshot.files[info.mirror_path] = info
        return snapshot

    async def get_file(self, file_id: str) -> Optional[MagicFileInfo]:
        """Fetch the current server copy of a file by id."""
        tree = await self.refresh()
        found = tree.find_file_by_id(file_id)
        if found is None:
            return None
        parent, node = found
        return MagicFileInfo.from_node(node, parent.dir_path)

    async def get_group(self, group_id: str) -> Optional[MagicGroupInfo]:
        tree = await self.refresh()
        node = tree.find_group_by_id(group_id)
        return MagicGroupInfo.from_node(node) if node else None

    async def get_group_meta(self, directory: str) -> Optional[dict]:
        """Raw group snapshot for a directory, as kept in ``.group.meta.json``."""
        tree = await self.refresh()
        group = self._find_dir(tree, directory)
        if group is None or not group.path:
            return None
        return group.to_group_meta()

    @staticmethod
    def _find_dir(tree: ResourceTree, directory: str) -> Optional[GroupNode]:
        segs = [s for s in directory.split("/") if s]
        if not segs or not ResourceType.is_valid(segs[0]):
            return None
        return tree.find_group(ResourceType(segs[0]), segs[1:])

    # =========================
    # Lookups
    # =========================

    def resolve_id(self, path: str) -> Optional[str]:
        """Translate a mirror path to a remote id using the cache only."""
        return self._cache.path_to_id.get(path)

    def resolve_path(self, node_id: str) -> Optional[str]:
        """Translate a remote id to a mirror path using the cache only."""
        return self._cache.id_to_path.get(node_id)

    async def lookup_id(self, path: str) -> Optional[str]:
        """Resolve a path, re-fetching the tree once on a cache miss."""
        node_id = self.resolve_id(path)
        if node_id is None:
            await self.refresh()
            node_id = self.resolve_id(path)
        return node_id

    async def lookup_path(self, node_id: str) -> Optional[str]:
        """Resolve an id, re-fetching the tree once on a cache miss."""
        path = self.resolve_path(node_id)
        if path is None:
            await self.refresh()
            path = self.resolve_path(node_id)
        return path
