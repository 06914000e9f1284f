"""In-memory stand-in for a Magic API server, used by engine and watcher tests."""

from pathlib import Path
from typing import Any, Optional
from unittest.mock import Mock

from pymagicapi.exceptions import MagicNotFoundError, MagicRemoteRejectedError
from pymagicapi.models import (
    MagicGroupInfo,
    ResourceTree,
    ResourceType,
    parse_resource_tree,
)
from pymagicapi.output import OutputFormatter
from pymagicapi.sync import MirrorRootMeta, SyncContext

ROOT_GROUP = "0"


class FakeMagicClient:
    """Implements the MagicApiClient surface over plain dictionaries.

    Every write bumps a logical clock that is used as ``updateTime``.
    """

    def __init__(self, clock: int = 1000):
        self.groups: dict[str, dict[str, Any]] = {}
        self.files: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, Any]] = []
        self.fail_on: dict[str, Exception] = {}
        self.clock = clock
        self.session_token: Optional[str] = None
        self.completion: dict[str, Any] = {"classes": ["db", "request"], "functions": []}
        self._next_id = 0

    # -- helpers for tests --------------------------------------------------

    def _tick(self) -> int:
        self.clock += 1
        return self.clock

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}{self._next_id}"

    def _check(self, method: str) -> None:
        error = self.fail_on.get(method)
        if error is not None:
            raise error

    def group_id_for(self, dir_path: str) -> Optional[str]:
        """Id of the group at ``api/a/b``, ROOT_GROUP for a type root."""
        segs = [s for s in dir_path.split("/") if s]
        resource_type, parent = segs[0], ROOT_GROUP
        for seg in segs[1:]:
            found = next(
                (
                    g["id"]
                    for g in self.groups.values()
                    if g["parentId"] == parent
                    and g["type"] == resource_type
                    and g["name"] == seg
                ),
                None,
            )
            if found is None:
                return None
            parent = found
        return parent

    def add_group(self, dir_path: str) -> str:
        """Create every missing group on ``dir_path``; return the last id."""
        segs = [s for s in dir_path.split("/") if s]
        resource_type, parent = segs[0], ROOT_GROUP
        for i, seg in enumerate(segs[1:], start=2):
            existing = self.group_id_for("/".join(segs[:i]))
            if existing is None:
                existing = self._new_id("g")
                self.groups[existing] = {
                    "id": existing,
                    "name": seg,
                    "parentId": parent,
                    "type": resource_type,
                    "path": "",
                    "createTime": self.clock,
                    "updateTime": self.clock,
                }
            parent = existing
        return parent

    def add_file(
        self, script_path: str, script: str, update_time: Optional[int] = None, **fields: Any
    ) -> str:
        """Seed a file at ``api/user/login.ms`` without recording a call."""
        dir_path, _, file_name = script_path.rpartition("/")
        group_id = self.add_group(dir_path)
        file_id = self._new_id("f")
        self.files[file_id] = {
            **fields,
            "id": file_id,
            "name": file_name[: -len(".ms")],
            "groupId": group_id,
            "script": script,
            "createTime": update_time or self.clock,
            "updateTime": update_time or self.clock,
            "_type": dir_path.split("/")[0],
        }
        return file_id

    def file_at(self, script_path: str) -> Optional[dict[str, Any]]:
        dir_path, _, file_name = script_path.rpartition("/")
        group_id = self.group_id_for(dir_path)
        if group_id is None:
            return None
        resource_type = dir_path.split("/")[0]
        for node in self.files.values():
            if (
                node["groupId"] == group_id
                and node["name"] == file_name[: -len(".ms")]
                and self._file_type(node) == resource_type
            ):
                return node
        return None

    def _file_type(self, node: dict[str, Any]) -> str:
        group = self.groups.get(node["groupId"])
        return group["type"] if group else node.get("_type", "api")

    def calls_to(self, method: str) -> list[Any]:
        return [args for name, args in self.calls if name == method]

    # -- client surface -----------------------------------------------------

    async def ensure_login(self) -> Optional[str]:
        return self.session_token

    async def aclose(self) -> None:
        pass

    def tree_payload(self) -> dict[str, Any]:
        def children(resource_type: str, parent: str) -> list[dict[str, Any]]:
            nodes: list[dict[str, Any]] = []
            for group in self.groups.values():
                if group["parentId"] == parent and group["type"] == resource_type:
                    nodes.append(
                        {"node": dict(group), "children": children(resource_type, group["id"])}
                    )
            for node in self.files.values():
                if node["groupId"] == parent and self._file_type(node) == resource_type:
                    body = {k: v for k, v in node.items() if not k.startswith("_")}
                    nodes.append({"node": body, "children": []})
            return nodes

        return {
            t: {
                "node": {"id": ROOT_GROUP, "name": t, "type": t, "parentId": None},
                "children": children(t, ROOT_GROUP),
            }
            for t in ResourceType.values()
        }

    async def fetch_resource_tree(self) -> ResourceTree:
        self._check("fetch_resource_tree")
        self.calls.append(("fetch_resource_tree", None))
        return parse_resource_tree(self.tree_payload())

    async def save_file(self, file: dict[str, Any]) -> Any:
        self._check("save_file")
        self.calls.append(("save_file", dict(file)))
        node = self.files.get(file.get("id"))
        if node is None:
            raise MagicNotFoundError(f"File {file.get('id')} not found")
        for key, value in file.items():
            if key in ("id", "type", "groupPath", "createTime", "updateTime"):
                continue
            node[key] = value
        node["updateTime"] = self._tick()
        return True

    async def create_file(
        self,
        name: str,
        script: str,
        resource_type: ResourceType,
        group_path: str,
        group_id: Optional[str] = None,
        **fields: Any,
    ) -> str:
        self._check("create_file")
        self.calls.append(("create_file", {"name": name, "groupPath": group_path, **fields}))
        parent = group_id or self.group_id_for(group_path)
        if parent is None:
            raise MagicNotFoundError(f"Group {group_path} not found")
        file_id = self._new_id("f")
        now = self._tick()
        self.files[file_id] = {
            **fields,
            "id": file_id,
            "name": name,
            "groupId": parent,
            "script": script,
            "createTime": now,
            "updateTime": now,
            "_type": resource_type.value,
        }
        return file_id

    async def delete_file(self, file_id: str) -> Any:
        self._check("delete_file")
        self.calls.append(("delete_file", file_id))
        if self.files.pop(file_id, None) is None:
            raise MagicNotFoundError(f"File {file_id} not found")
        return True

    async def create_group(
        self,
        name: str,
        parent_id: Optional[str],
        resource_type: ResourceType,
        description: Optional[str] = None,
    ) -> str:
        self._check("create_group")
        self.calls.append(("create_group", name))
        parent = parent_id or ROOT_GROUP
        for group in self.groups.values():
            if group["parentId"] == parent and group["name"] == name:
                raise MagicRemoteRejectedError(f"Group {name} already exists", code=0)
        group_id = self._new_id("g")
        self.groups[group_id] = {
            "id": group_id,
            "name": name,
            "parentId": parent,
            "type": resource_type.value,
            "path": "",
            "createTime": self._tick(),
        }
        return group_id

    async def save_group(self, group: MagicGroupInfo) -> Any:
        self._check("save_group")
        self.calls.append(("save_group", group.to_payload()))
        node = self.groups.get(group.id)
        if node is None:
            raise MagicNotFoundError(f"Group {group.id} not found")
        node["name"] = group.name
        node["updateTime"] = self._tick()
        return True

    async def delete_group(self, group_id: str) -> Any:
        self._check("delete_group")
        self.calls.append(("delete_group", group_id))
        doomed = {group_id}
        changed = True
        while changed:
            changed = False
            for g in self.groups.values():
                if g["parentId"] in doomed and g["id"] not in doomed:
                    doomed.add(g["id"])
                    changed = True
        for gid in doomed:
            self.groups.pop(gid, None)
        for fid in [f for f, n in self.files.items() if n["groupId"] in doomed]:
            del self.files[fid]
        return True

    async def get_workbench_completion_data(self) -> Any:
        self._check("get_workbench_completion_data")
        return dict(self.completion)

    async def search_workbench(self, keyword: str) -> list[dict[str, Any]]:
        return [
            {"id": n["id"], "text": n["script"], "line": 1}
            for n in self.files.values()
            if keyword in n["script"]
        ]


def quiet_output() -> Mock:
    """Mock output formatter that records messages."""
    output = Mock(spec=OutputFormatter)
    output.quiet = True
    output.json_output = False
    return output


def make_context(root: Path, client: FakeMagicClient, output: Any = None) -> SyncContext:
    """Context for a mirror root with its root meta already written."""
    context = SyncContext.create(root, client, output or quiet_output())
    if not context.store.is_mirror():
        context.store.write_root_meta(MirrorRootMeta(url="http://magic.test"))
    return context
