"""Data models for Magic API resource trees.

The server returns one rooted tree per resource type. Each raw node looks
like ``{"node": {...}, "children": [...]}``; whether a node is a group or a
file is decided here, once, when the payload is parsed. Everything past this
module works with :class:`GroupNode` and :class:`FileNode` only.
"""

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .exceptions import MagicInvalidResponseError

logger = logging.getLogger(__name__)

SCRIPT_EXTENSION = ".ms"


class ResourceType(str, Enum):
    """Kinds of script resources kept by a Magic API server."""

    API = "api"
    FUNCTION = "function"
    DATASOURCE = "datasource"
    TASK = "task"

    @classmethod
    def is_valid(cls, value: str) -> bool:
        return value in cls._value2member_map_

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


# Keys of a remote file node that are modelled as attributes of MagicFileInfo.
# Every other key is carried through untouched in ``properties``.
_FILE_CORE_KEYS = frozenset(
    {"id", "name", "groupId", "script", "type", "createTime", "updateTime"}
)


@dataclass
class FileNode:
    """A leaf resource in the remote tree."""

    id: str
    name: str
    group_id: str
    type: ResourceType
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class GroupNode:
    """A folder ("group") in the remote tree."""

    id: str
    name: str
    parent_id: Optional[str]
    type: ResourceType
    path: str
    """Slash-joined names of this group and its ancestors, without the type"""

    raw: dict[str, Any] = field(default_factory=dict)
    children: list["ResourceNode"] = field(default_factory=list)

    @property
    def dir_path(self) -> str:
        """Mirror directory path, prefixed with the resource type."""
        return f"{self.type.value}/{self.path}" if self.path else self.type.value

    def groups(self) -> list["GroupNode"]:
        return [c for c in self.children if isinstance(c, GroupNode)]

    def files(self) -> list[FileNode]:
        return [c for c in self.children if isinstance(c, FileNode)]

    def to_group_meta(self) -> dict[str, Any]:
        """Raw group snapshot written to ``.group.meta.json``."""
        n = self.raw
        return {
            "properties": n.get("properties") or {},
            "id": self.id,
            "name": self.name,
            "type": n.get("type") or self.type.value,
            "parentId": self.parent_id,
            "path": str(n.get("path") or ""),
            "createTime": n.get("createTime"),
            "updateTime": n.get("updateTime"),
            "createBy": n.get("createBy"),
            "updateBy": n.get("updateBy"),
            "paths": n.get("paths") or [],
            "options": n.get("options") or [],
        }


ResourceNode = Union[GroupNode, FileNode]


@dataclass
class ResourceTree:
    """Parsed ``/resource`` payload: one root group per resource type."""

    roots: dict[ResourceType, GroupNode] = field(default_factory=dict)

    def walk(
        self, resource_type: Optional[ResourceType] = None
    ) -> Iterator[tuple[GroupNode, ResourceNode]]:
        """Yield ``(parent_group, node)`` for every node below the type roots.

        Traversal uses an explicit stack; order carries no meaning.
        """
        types = [resource_type] if resource_type else list(self.roots)
        for t in types:
            root = self.roots.get(t)
            if root is None:
                continue
            stack: list[GroupNode] = [root]
            while stack:
                current = stack.pop()
                for child in current.children:
                    yield current, child
                    if isinstance(child, GroupNode):
                        stack.append(child)

    def find_group(self, resource_type: ResourceType, segments: list[str]) -> Optional[GroupNode]:
        """Find a group by its name path below a type root."""
        current = self.roots.get(resource_type)
        if current is None:
            return None
        for seg in segments:
            current = next((g for g in current.groups() if g.name == seg), None)
            if current is None:
                return None
        return current

    def find_group_by_id(self, group_id: str) -> Optional[GroupNode]:
        for _, node in self.walk():
            if isinstance(node, GroupNode) and node.id == group_id:
                return node
        return None

    def find_file_by_id(self, file_id: str) -> Optional[tuple[GroupNode, FileNode]]:
        for parent, node in self.walk():
            if isinstance(node, FileNode) and node.id == file_id:
                return parent, node
        return None


def _node_kind(n: dict[str, Any]) -> Optional[str]:
    """"file", "group", or None when the node carries neither shape."""
    if "script" in n or "groupId" in n:
        return "file"
    if "parentId" in n or "type" in n:
        return "group"
    return None


def _parse_children(
    raw_children: Any,
    resource_type: ResourceType,
    parent_path: str,
) -> list[ResourceNode]:
    if not raw_children:
        return []
    if not isinstance(raw_children, list):
        raise MagicInvalidResponseError("Resource tree children must be a list")

    nodes: list[ResourceNode] = []
    for raw in raw_children:
        if not isinstance(raw, dict):
            raise MagicInvalidResponseError("Resource tree node must be an object")
        n = raw.get("node") or {}
        if not isinstance(n, dict):
            raise MagicInvalidResponseError("Resource tree node body must be an object")

        node_id = str(n.get("id") or "")
        name = str(n.get("name") or "")
        if not name:
            logger.debug(f"Skipping unnamed {resource_type.value} node {node_id!r}")
            continue

        kind = _node_kind(n)
        if kind is None:
            logger.debug(f"Skipping ambiguous {resource_type.value} node {node_id!r}")
            continue
        if kind == "group":
            path = f"{parent_path}/{name}" if parent_path else name
            group = GroupNode(
                id=node_id,
                name=name,
                parent_id=str(n["parentId"]) if n.get("parentId") else None,
                type=resource_type,
                path=path,
                raw=dict(n),
            )
            group.children = _parse_children(raw.get("children"), resource_type, path)
            nodes.append(group)
        else:
            nodes.append(
                FileNode(
                    id=node_id,
                    name=name,
                    group_id=str(n.get("groupId") or ""),
                    type=resource_type,
                    raw=dict(n),
                )
            )
    return nodes


def parse_resource_tree(payload: Any) -> ResourceTree:
    """Parse the ``data`` member of a ``/resource`` response.

    Args:
        payload: Mapping of resource type name to raw root node

    Returns:
        ResourceTree with one root group per known resource type

    Raises:
        MagicInvalidResponseError: If the payload is not shaped like a tree
    """
    if payload is None:
        return ResourceTree()
    if not isinstance(payload, dict):
        raise MagicInvalidResponseError("Resource tree payload must be an object")

    tree = ResourceTree()
    for type_name, raw_root in payload.items():
        if not ResourceType.is_valid(type_name):
            logger.debug(f"Ignoring unknown resource type {type_name!r}")
            continue
        if not isinstance(raw_root, dict):
            raise MagicInvalidResponseError(f"Root node for {type_name} must be an object")
        resource_type = ResourceType(type_name)
        root_body = raw_root.get("node") or {}
        tree.roots[resource_type] = GroupNode(
            id=str(root_body.get("id") or ""),
            name="",
            parent_id=None,
            type=resource_type,
            path="",
            raw=dict(root_body) if isinstance(root_body, dict) else {},
            children=_parse_children(raw_root.get("children"), resource_type, ""),
        )
    return tree


@dataclass
class MagicGroupInfo:
    """A remote group as sent to ``/group/save``."""

    id: str
    name: str
    path: str
    type: ResourceType
    parent_id: Optional[str] = None
    properties: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_node(cls, node: GroupNode) -> "MagicGroupInfo":
        properties = {
            k: v
            for k, v in node.raw.items()
            if k not in ("id", "name", "parentId", "type")
        }
        return cls(
            id=node.id,
            name=node.name,
            path=str(node.raw.get("path") or ""),
            type=node.type,
            parent_id=node.parent_id,
            properties=properties,
        )

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.properties)
        payload.update(
            {
                "id": self.id,
                "name": self.name,
                "path": self.path,
                "parentId": self.parent_id or "0",
                "type": self.type.value,
            }
        )
        return payload


@dataclass
class MagicFileInfo:
    """A remote script resource with its body and wire fields."""

    id: str
    name: str
    type: ResourceType
    group_id: str
    group_path: str
    """Group directory path including the type prefix, e.g. ``api/user``"""

    script: str = ""
    create_time: Optional[int] = None
    update_time: Optional[int] = None
    properties: dict[str, Any] = field(default_factory=dict)
    """Remaining wire fields (path, method, description, ...)"""

    @classmethod
    def from_node(cls, node: FileNode, group_path: str) -> "MagicFileInfo":
        n = node.raw
        return cls(
            id=node.id,
            name=node.name,
            type=node.type,
            group_id=node.group_id,
            group_path=group_path,
            script=str(n.get("script") or ""),
            create_time=n.get("createTime"),
            update_time=n.get("updateTime"),
            properties={k: v for k, v in n.items() if k not in _FILE_CORE_KEYS},
        )

    @property
    def mirror_path(self) -> str:
        """Path of the script inside the mirror, e.g. ``api/user/login.ms``."""
        return f"{self.group_path}/{self.name}{SCRIPT_EXTENSION}"

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.properties)
        payload.update(
            {
                "id": self.id,
                "name": self.name,
                "groupId": self.group_id,
                "groupPath": self.group_path,
                "type": self.type.value,
                "script": self.script,
            }
        )
        if self.create_time is not None:
            payload["createTime"] = self.create_time
        if self.update_time is not None:
            payload["updateTime"] = self.update_time
        return payload
