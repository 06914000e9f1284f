"""Local on-disk representation of a mirrored Magic API server.

Layout below the mirror root::

    .magic-api-mirror.json                  MirrorRootMeta
    <type>/<groups...>/<name>.ms            script body
    <type>/<groups...>/.<name>.meta.json    MirrorFileMeta sidecar
    <type>/<groups...>/.group.meta.json     raw remote group snapshot
    .merge/<type>/<groups...>/<name>.ms     remote side of a pending merge
    .merge-meta/<type>/<groups...>/<name>.meta.json
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..exceptions import MirrorMetaParseError
from ..models import ResourceType
from ..utils import (
    GROUP_META_FILE,
    MERGE_DIR,
    MERGE_META_DIR,
    MIRROR_META_FILE,
    is_script_file_name,
    meta_file_name,
    now_millis,
    resource_name_from_file,
    script_file_name,
)
from .state import MirrorFileMeta, MirrorRootMeta, ResourceKey

logger = logging.getLogger(__name__)


def _dump_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


class MirrorStore:
    """Reads and writes scripts and sidecars under one mirror root."""

    def __init__(self, root: Path):
        """Initialize the store.

        Args:
            root: Mirror root directory
        """
        self.root = Path(root)
        self._written: dict[Path, str] = {}

    # =========================
    # Paths
    # =========================

    def dir_path(self, resource_type: str, group_sub: str = "") -> Path:
        path = self.root / resource_type
        if group_sub:
            path = path.joinpath(*group_sub.split("/"))
        return path

    def script_path(self, key: ResourceKey) -> Path:
        return self.dir_path(key.type, key.group_sub) / script_file_name(key.name)

    def meta_path(self, key: ResourceKey) -> Path:
        return self.dir_path(key.type, key.group_sub) / meta_file_name(key.name)

    def group_meta_path(self, resource_type: str, group_sub: str) -> Path:
        return self.dir_path(resource_type, group_sub) / GROUP_META_FILE

    def root_meta_path(self) -> Path:
        return self.root / MIRROR_META_FILE

    def relative(self, path: Path) -> str:
        """Mirror-relative posix path of ``path``."""
        return Path(path).resolve().relative_to(self.root.resolve()).as_posix()

    def ensure_type_dirs(self) -> None:
        for resource_type in ResourceType.values():
            (self.root / resource_type).mkdir(parents=True, exist_ok=True)

    # =========================
    # Writes and echo tracking
    # =========================

    def _write_text(self, path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8", newline="")
        self._written[path.resolve()] = text

    def is_own_write(self, path: Path) -> bool:
        """Check whether ``path`` still holds exactly what this store wrote.

        File-system events caused by the engine's own writes are reported
        back by the watcher; this tells them apart from user edits. A file
        counts as the store's own only while its content is unchanged.
        """
        resolved = Path(path).resolve()
        expected = self._written.get(resolved)
        if expected is None:
            return False
        try:
            return resolved.read_text(encoding="utf-8") == expected
        except OSError:
            return False

    # =========================
    # Scripts
    # =========================

    def read_script(self, key: ResourceKey) -> Optional[str]:
        """Read a script body, or None if the script file does not exist."""
        path = self.script_path(key)
        try:
            with open(path, encoding="utf-8", newline="") as f:
                return f.read()
        except FileNotFoundError:
            return None

    def write_script(self, key: ResourceKey, script: str) -> Path:
        path = self.script_path(key)
        self._write_text(path, script)
        logger.debug(f"Wrote script {key}")
        return path

    def script_mtime(self, key: ResourceKey) -> Optional[int]:
        """Modification time of the script file in milliseconds."""
        try:
            return int(self.script_path(key).stat().st_mtime * 1000)
        except FileNotFoundError:
            return None

    # =========================
    # Sidecars
    # =========================

    def read_meta_dict(self, key: ResourceKey) -> Optional[dict[str, Any]]:
        """Read the raw sidecar JSON object.

        Raises:
            MirrorMetaParseError: If the file is not a JSON object
        """
        path = self.meta_path(key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as e:
            raise MirrorMetaParseError(str(path), str(e)) from e
        try:
            data = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError as e:
            raise MirrorMetaParseError(str(path), str(e)) from e
        if not isinstance(data, dict):
            raise MirrorMetaParseError(str(path), "expected a JSON object")
        return data

    def read_meta(self, key: ResourceKey) -> Optional[MirrorFileMeta]:
        """Read a sidecar, or None if the resource has none yet.

        Raises:
            MirrorMetaParseError: If the sidecar is malformed
        """
        data = self.read_meta_dict(key)
        if data is None:
            return None
        try:
            return MirrorFileMeta.from_dict(data)
        except (TypeError, ValueError) as e:
            raise MirrorMetaParseError(str(self.meta_path(key)), str(e)) from e

    def write_meta(
        self, key: ResourceKey, meta: MirrorFileMeta, local: bool = True
    ) -> Path:
        """Write a sidecar, creating intervening directories.

        This is the only place ``localUpdateTime`` is stamped.

        Args:
            key: Resource the sidecar belongs to
            meta: Sidecar contents
            local: True for locally authored changes, which stamp
                ``localUpdateTime``. Writes that carry server state (pulls,
                post-push refreshes) pass False and keep the server's
                ``updateTime`` as the only fresh clock.
        """
        if local:
            meta.local_update_time = now_millis()
        path = self.meta_path(key)
        self._write_text(path, _dump_json(meta.to_dict()))
        logger.debug(f"Wrote metadata for {key} (local={local})")
        return path

    def default_meta(self, key: ResourceKey) -> MirrorFileMeta:
        """Sidecar for a resource that only exists as a local script."""
        return MirrorFileMeta(name=key.name, type=key.type, group_path=key.dir_path)

    def delete_resource(self, key: ResourceKey) -> None:
        """Remove a script and its sidecar if present."""
        for path in (self.script_path(key), self.meta_path(key)):
            path.unlink(missing_ok=True)

    def rename_meta(self, old: ResourceKey, new: ResourceKey) -> Optional[MirrorFileMeta]:
        """Move a sidecar next to a renamed script and update its name.

        Returns:
            The rewritten sidecar, or None if the old one did not exist
        """
        meta = self.read_meta(old)
        if meta is None:
            return None
        self.meta_path(old).unlink(missing_ok=True)
        meta.name = new.name
        meta.type = new.type
        meta.group_path = new.dir_path
        self.write_meta(new, meta, local=True)
        return meta

    def move_resource(self, old: ResourceKey, new: ResourceKey) -> Optional[MirrorFileMeta]:
        """Move a script and its sidecar to another key, keeping both clocks.

        Returns:
            The moved sidecar, or None if there was none
        """
        script = self.read_script(old)
        meta = self.read_meta(old)
        if script is not None:
            self.write_script(new, script)
        if meta is not None:
            meta.name = new.name
            meta.type = new.type
            meta.group_path = new.dir_path
            self.write_meta(new, meta, local=False)
        self.delete_resource(old)
        logger.debug(f"Moved {old} to {new}")
        return meta

    def find_key_by_id(self, file_id: str) -> Optional[ResourceKey]:
        """Find the script whose sidecar records a remote id."""
        for key in self.list_all_scripts():
            try:
                meta = self.read_meta(key)
            except MirrorMetaParseError:
                continue
            if meta is not None and meta.id == file_id:
                return key
        return None

    # =========================
    # Listing
    # =========================

    def list_all_scripts(self) -> list[ResourceKey]:
        """Recursively list every script below the type directories."""
        keys: list[ResourceKey] = []
        for resource_type in ResourceType.values():
            type_dir = self.root / resource_type
            if not type_dir.is_dir():
                continue
            keys.extend(self._scan_dir(resource_type, type_dir, ""))
        return keys

    def list_dirs(self) -> list[str]:
        """List every group directory as ``<type>/<groups...>``."""
        dirs: list[str] = []
        for resource_type in ResourceType.values():
            type_dir = self.root / resource_type
            if not type_dir.is_dir():
                continue
            for path in sorted(type_dir.rglob("*")):
                rel = path.relative_to(self.root)
                if path.is_dir() and not any(p.startswith(".") for p in rel.parts):
                    dirs.append(rel.as_posix())
        return dirs

    def _scan_dir(
        self, resource_type: str, directory: Path, group_sub: str
    ) -> list[ResourceKey]:
        keys: list[ResourceKey] = []
        try:
            entries = sorted(directory.iterdir())
        except PermissionError:
            logger.warning(f"Permission denied: {directory}")
            return keys

        for item in entries:
            if item.name.startswith("."):
                continue
            if item.is_dir():
                sub = f"{group_sub}/{item.name}" if group_sub else item.name
                keys.extend(self._scan_dir(resource_type, item, sub))
            elif item.is_file() and is_script_file_name(item.name):
                name = resource_name_from_file(item.name)
                if name:
                    keys.append(ResourceKey(resource_type, group_sub, name))
        return keys

    # =========================
    # Group snapshots
    # =========================

    def write_group_meta(
        self, resource_type: str, group_sub: str, raw: dict[str, Any]
    ) -> Path:
        path = self.group_meta_path(resource_type, group_sub)
        self._write_text(path, _dump_json(raw))
        return path

    def read_group_meta(
        self, resource_type: str, group_sub: str
    ) -> Optional[dict[str, Any]]:
        path = self.group_meta_path(resource_type, group_sub)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring malformed group metadata {path}: {e}")
            return None

    # =========================
    # Root meta
    # =========================

    def is_mirror(self) -> bool:
        return self.root_meta_path().is_file()

    def read_root_meta(self) -> Optional[MirrorRootMeta]:
        path = self.root_meta_path()
        if not path.exists():
            logger.debug(f"No mirror metadata at {path}")
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise MirrorMetaParseError(str(path), str(e)) from e
        if not isinstance(data, dict):
            raise MirrorMetaParseError(str(path), "expected a JSON object")
        return MirrorRootMeta.from_dict(data)

    def write_root_meta(self, meta: MirrorRootMeta) -> Path:
        if meta.created_at is None:
            meta.created_at = now_millis()
        path = self.root_meta_path()
        self._write_text(path, _dump_json(meta.to_dict()))
        return path

    # =========================
    # Merge scratch files
    # =========================

    def merge_paths(self, key: ResourceKey) -> tuple[Path, Path]:
        """Scratch locations of the remote side of a pending merge."""
        rel_dir = Path(key.type).joinpath(*[s for s in key.group_sub.split("/") if s])
        return (
            self.root / MERGE_DIR / rel_dir / script_file_name(key.name),
            self.root / MERGE_META_DIR / rel_dir / f"{key.name}.meta.json",
        )

    def write_merge_files(
        self, key: ResourceKey, remote_script: str, remote_meta: MirrorFileMeta
    ) -> tuple[Path, Path]:
        script_path, meta_path = self.merge_paths(key)
        self._write_text(script_path, remote_script)
        self._write_text(meta_path, _dump_json(remote_meta.to_dict()))
        logger.debug(f"Wrote merge scratch files for {key}")
        return script_path, meta_path

    def has_merge_files(self, key: ResourceKey) -> bool:
        return self.merge_paths(key)[0].exists()

    def clear_merge_files(self, key: ResourceKey) -> None:
        """Delete merge scratch files and any directories left empty."""
        for path in self.merge_paths(key):
            path.unlink(missing_ok=True)
            parent = path.parent
            stop = {self.root / MERGE_DIR, self.root / MERGE_META_DIR}
            while parent not in stop and parent != self.root:
                try:
                    parent.rmdir()
                except OSError:
                    break
                parent = parent.parent
            for top in stop:
                try:
                    top.rmdir()
                except OSError:
                    pass
