"""Persisted mirror state: per-resource sidecars and the mirror root meta.

Each local script ``<type>/<groups...>/<name>.ms`` has a JSON sidecar
``.<name>.meta.json`` holding the structured fields of the resource and
two clocks: ``updateTime`` (the server's last write) and
``localUpdateTime`` (the last local edit). Keeping both lets the planner
tell "I changed this" from "the server changed this".
"""

from dataclasses import dataclass, field, fields
from typing import Any, NamedTuple, Optional

from ..models import SCRIPT_EXTENSION, MagicFileInfo, ResourceType
from ..utils import join_dir


class ResourceKey(NamedTuple):
    """Identifies one resource on either side: type + group sub-path + name."""

    type: str
    group_sub: str
    """Group path below the type directory, '' for the type root"""

    name: str

    @property
    def dir_path(self) -> str:
        """Group directory including the type, e.g. ``api/user``."""
        return join_dir(self.type, self.group_sub)

    @property
    def script_path(self) -> str:
        """Mirror-relative script path, e.g. ``api/user/login.ms``."""
        return f"{self.dir_path}/{self.name}{SCRIPT_EXTENSION}"

    @property
    def resource_type(self) -> ResourceType:
        return ResourceType(self.type)

    def __str__(self) -> str:
        return self.script_path

    @classmethod
    def from_script_path(cls, path: str) -> "ResourceKey":
        """Parse ``api/user/login.ms`` into a key."""
        parts = [p for p in path.split("/") if p]
        if len(parts) < 2 or not parts[-1].endswith(SCRIPT_EXTENSION):
            raise ValueError(f"Not a script path: {path}")
        return cls(
            type=parts[0],
            group_sub="/".join(parts[1:-1]),
            name=parts[-1][: -len(SCRIPT_EXTENSION)],
        )


# Sidecar JSON key -> dataclass attribute, in the order they are written.
_META_KEYS: dict[str, str] = {
    "id": "id",
    "name": "name",
    "type": "type",
    "groupId": "group_id",
    "groupPath": "group_path",
    "path": "path",
    "method": "method",
    "description": "description",
    "locked": "locked",
    "params": "params",
    "headers": "headers",
    "contentType": "content_type",
    "timeout": "timeout",
    "cron": "cron",
    "enabled": "enabled",
    "executeOnStart": "execute_on_start",
    "extra": "extra",
    "createTime": "create_time",
    "updateTime": "update_time",
    "localUpdateTime": "local_update_time",
}

# Wire fields of a file that map onto typed sidecar attributes.
_TYPED_WIRE_KEYS = (
    "path",
    "method",
    "description",
    "locked",
    "params",
    "headers",
    "contentType",
    "timeout",
    "cron",
    "enabled",
    "executeOnStart",
)

LOCAL_ONLY_KEYS = ("localUpdateTime",)

_TEXT_KEYS = ("name", "type", "groupPath")
_TIME_KEYS = ("createTime", "updateTime", "localUpdateTime")


def _millis(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError(f"{key} must be a timestamp in milliseconds")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    raise TypeError(f"{key} must be a timestamp in milliseconds")


@dataclass
class MirrorFileMeta:
    """Metadata sidecar for one mirrored resource."""

    name: str
    type: str
    group_path: str
    """Group directory including the type prefix; always starts with ``type``"""

    id: Optional[str] = None
    """Remote id, absent until the resource was created remotely"""

    group_id: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    description: Optional[str] = None
    locked: Optional[bool] = None

    # api
    params: Optional[list[Any]] = None
    headers: Optional[list[Any]] = None
    content_type: Optional[str] = None
    timeout: Optional[int] = None

    # task
    cron: Optional[str] = None
    enabled: Optional[bool] = None
    execute_on_start: Optional[bool] = None

    extra: dict[str, Any] = field(default_factory=dict)
    """Remote fields this version does not model, carried through verbatim"""

    create_time: Optional[int] = None
    update_time: Optional[int] = None
    """Server timestamp of the last write known locally (milliseconds)"""

    local_update_time: Optional[int] = None
    """Local timestamp of the last local edit (milliseconds)"""

    @property
    def key(self) -> ResourceKey:
        group_sub = self.group_path[len(self.type) :].strip("/")
        return ResourceKey(self.type, group_sub, self.name)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the sidecar JSON form, omitting unset fields."""
        data: dict[str, Any] = {}
        for key, attr in _META_KEYS.items():
            value = getattr(self, attr)
            if value is None or (key == "extra" and not value):
                continue
            data[key] = value
        return data

    def comparison_dict(self) -> dict[str, Any]:
        """Sidecar form without local-only bookkeeping fields."""
        data = self.to_dict()
        for key in LOCAL_ONLY_KEYS:
            data.pop(key, None)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MirrorFileMeta":
        """Create MirrorFileMeta from sidecar JSON.

        Unknown top-level keys are folded into ``extra`` so that they survive
        the next write. Null fields count as absent.

        Raises:
            TypeError: If ``extra``, a name field or a timestamp has the
                wrong JSON type
        """
        kwargs: dict[str, Any] = {}
        raw_extra = data.get("extra") or {}
        if not isinstance(raw_extra, dict):
            raise TypeError("extra must be a JSON object")
        extra = dict(raw_extra)
        for key, value in data.items():
            attr = _META_KEYS.get(key)
            if attr is None:
                extra[key] = value
            elif attr == "extra" or value is None:
                continue
            elif key in _TEXT_KEYS and not isinstance(value, str):
                raise TypeError(f"{key} must be a string")
            elif key in _TIME_KEYS:
                kwargs[attr] = _millis(key, value)
            else:
                kwargs[attr] = value
        kwargs["extra"] = extra
        kwargs.setdefault("name", "")
        kwargs.setdefault("type", "")
        kwargs.setdefault("group_path", kwargs["type"])
        if kwargs.get("id") is not None:
            kwargs["id"] = str(kwargs["id"])
        if kwargs.get("group_id") is not None:
            kwargs["group_id"] = str(kwargs["group_id"])
        return cls(**kwargs)

    @classmethod
    def from_file_info(cls, info: MagicFileInfo) -> "MirrorFileMeta":
        """Project a remote file onto the sidecar shape."""
        props = dict(info.properties)
        typed = {key: props.pop(key) for key in _TYPED_WIRE_KEYS if key in props}
        props.pop("groupPath", None)
        data: dict[str, Any] = dict(typed)
        data.update(
            {
                "id": info.id or None,
                "name": info.name,
                "type": info.type.value,
                "groupId": info.group_id or None,
                "groupPath": info.group_path,
                "extra": props,
                "createTime": info.create_time,
                "updateTime": info.update_time,
            }
        )
        return cls.from_dict({k: v for k, v in data.items() if v is not None})

    def to_payload(self, script: str) -> dict[str, Any]:
        """Build the ``/file/save`` body for this resource."""
        payload: dict[str, Any] = dict(self.extra)
        for key in _TYPED_WIRE_KEYS:
            value = getattr(self, _META_KEYS[key])
            if value is not None:
                payload[key] = value
        payload.update(
            {
                "name": self.name,
                "type": self.type,
                "groupPath": self.group_path,
                "script": script,
            }
        )
        if self.id:
            payload["id"] = self.id
        if self.group_id:
            payload["groupId"] = self.group_id
        return payload

    def wire_fields(self) -> dict[str, Any]:
        """Typed and extra fields to send along with ``/file/create``."""
        payload = self.to_payload("")
        for key in ("id", "name", "type", "groupPath", "groupId", "script"):
            payload.pop(key, None)
        return payload

    def merged_with(self, data: dict[str, Any]) -> "MirrorFileMeta":
        """Return a copy with sidecar JSON ``data`` laid over this meta."""
        merged = self.to_dict()
        merged.update(data)
        return MirrorFileMeta.from_dict(merged)

    def refreshed_from(self, remote: "MirrorFileMeta") -> "MirrorFileMeta":
        """Adopt the server's snapshot, keeping the local edit clock."""
        refreshed = MirrorFileMeta.from_dict(remote.to_dict())
        refreshed.local_update_time = self.local_update_time
        return refreshed


@dataclass
class MirrorRootMeta:
    """Connection info and cached completion data for one mirror root.

    Stored as ``.magic-api-mirror.json`` at the mirror root.
    """

    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    lsp_port: Optional[int] = None
    debug_port: Optional[int] = None
    created_at: Optional[int] = None
    completion: Optional[dict[str, Any]] = None
    """Snapshot of the server's workbench completion data"""

    completion_updated_at: Optional[int] = None

    _KEYS = {
        "url": "url",
        "username": "username",
        "password": "password",
        "token": "token",
        "lspPort": "lsp_port",
        "debugPort": "debug_port",
        "createdAt": "created_at",
        "completion": "completion",
        "completionUpdatedAt": "completion_updated_at",
    }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            key: getattr(self, attr)
            for key, attr in self._KEYS.items()
            if getattr(self, attr) is not None
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MirrorRootMeta":
        """Create MirrorRootMeta from dictionary."""
        known = {f.name for f in fields(cls)}
        kwargs = {
            attr: data[key]
            for key, attr in cls._KEYS.items()
            if key in data and attr in known
        }
        kwargs.setdefault("url", "")
        return cls(**kwargs)
