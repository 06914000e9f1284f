"""Validation of local metadata sidecars.

A sidecar edited by hand is checked before anything is pushed: the common
fields must agree with where the file lives, and each resource type has
fields the server cannot do without.
"""

from typing import Optional

from ..models import ResourceType
from .state import MirrorFileMeta, ResourceKey

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")

# (attribute, sidecar key, expected type, description) of scalar fields
_FIELD_TYPES = (
    ("name", "name", str, "a string"),
    ("type", "type", str, "a string"),
    ("group_path", "groupPath", str, "a string"),
    ("path", "path", str, "a string"),
    ("method", "method", str, "a string"),
    ("description", "description", str, "a string"),
    ("content_type", "contentType", str, "a string"),
    ("cron", "cron", str, "a string"),
    ("locked", "locked", bool, "true or false"),
    ("enabled", "enabled", bool, "true or false"),
    ("execute_on_start", "executeOnStart", bool, "true or false"),
)
_REQUIRED = ("name", "type", "group_path")


def _check_types(meta: MirrorFileMeta) -> tuple[list[str], set[str]]:
    """Type errors of the scalar fields and the attributes that have them."""
    errors: list[str] = []
    wrong: set[str] = set()
    for attr, wire_key, expected, description in _FIELD_TYPES:
        value = getattr(meta, attr)
        if value is None and attr not in _REQUIRED:
            continue
        if not isinstance(value, expected):
            errors.append(f"{wire_key} must be {description}")
            wrong.add(attr)
    return errors, wrong


def validate_file_meta(
    meta: MirrorFileMeta, key: Optional[ResourceKey] = None
) -> list[str]:
    """Check a sidecar for structural errors.

    Args:
        meta: Parsed sidecar
        key: Location of the sidecar in the mirror, if known. When given,
            name, type and group path must match it.

    Returns:
        List of human-readable problems, empty if the sidecar is valid

    Examples:
        >>> meta = MirrorFileMeta(name="login", type="api", group_path="api/user")
        >>> validate_file_meta(meta)
        ['api resource requires a method', 'api resource requires a request path']
    """
    errors, wrong = _check_types(meta)
    if wrong & {"name", "type", "group_path"}:
        return errors

    if not meta.name:
        errors.append("name is required")
    if not ResourceType.is_valid(meta.type):
        errors.append(f"unknown resource type {meta.type!r}")
    if meta.group_path != meta.type and not meta.group_path.startswith(
        f"{meta.type}/"
    ):
        errors.append(f"groupPath {meta.group_path!r} must start with {meta.type!r}")

    if key is not None:
        if meta.name and meta.name != key.name:
            errors.append(f"name {meta.name!r} does not match file name {key.name!r}")
        if meta.type and meta.type != key.type:
            errors.append(f"type {meta.type!r} does not match directory {key.type!r}")
        elif meta.group_path and meta.group_path != key.dir_path:
            errors.append(
                f"groupPath {meta.group_path!r} does not match directory "
                f"{key.dir_path!r}"
            )

    if meta.type == ResourceType.API.value:
        if not meta.method:
            if "method" not in wrong:
                errors.append("api resource requires a method")
        elif "method" not in wrong and meta.method.upper() not in HTTP_METHODS:
            errors.append(f"unsupported method {meta.method!r}")
        if not meta.path and "path" not in wrong:
            errors.append("api resource requires a request path")
        if meta.timeout is not None and (
            isinstance(meta.timeout, bool)
            or not isinstance(meta.timeout, int)
            or meta.timeout < 0
        ):
            errors.append("timeout must be a non-negative integer")
    elif meta.type == ResourceType.TASK.value:
        if not meta.cron:
            if "cron" not in wrong:
                errors.append("task resource requires a cron expression")
        elif "cron" not in wrong and len(meta.cron.split()) not in (6, 7):
            errors.append(f"cron expression {meta.cron!r} must have 6 or 7 fields")
    elif meta.type == ResourceType.FUNCTION.value:
        if not meta.path and "path" not in wrong:
            errors.append("function resource requires a path")

    return errors
