"""Per-mirror engine context.

One :class:`SyncContext` is built for each mirror root and handed to every
component that needs the client, the tree cache, the store or the output.
There is no module-level "current server".
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ..api import MagicApiClient
from ..exceptions import MagicConfigError
from ..output import OutputFormatter
from ..utils import now_millis
from .mirror import MirrorStore
from .state import MirrorRootMeta
from .tree_cache import ResourceTreeCache

logger = logging.getLogger(__name__)


@dataclass
class SyncContext:
    """Everything the engine needs to work on one mirror root."""

    store: MirrorStore
    client: MagicApiClient
    tree_cache: ResourceTreeCache
    output: OutputFormatter = field(default_factory=OutputFormatter)

    @property
    def root(self) -> Path:
        return self.store.root

    @classmethod
    def create(
        cls,
        root: Path,
        client: Any,
        output: Optional[OutputFormatter] = None,
    ) -> "SyncContext":
        """Build a context around an existing client.

        Args:
            root: Mirror root directory
            client: Client exposing the ``MagicApiClient`` interface
            output: Output formatter for user-facing messages
        """
        return cls(
            store=MirrorStore(root),
            client=client,
            tree_cache=ResourceTreeCache(client),
            output=output or OutputFormatter(),
        )

    @classmethod
    def open(
        cls, root: Path, output: Optional[OutputFormatter] = None
    ) -> "SyncContext":
        """Open an established mirror using its ``.magic-api-mirror.json``.

        Raises:
            MagicConfigError: If the directory is not a mirror root
        """
        store = MirrorStore(root)
        meta = store.read_root_meta()
        if meta is None:
            raise MagicConfigError(f"{root} is not a mirror root (no mirror metadata)")
        client = MagicApiClient(
            url=meta.url or None,
            username=meta.username,
            password=meta.password,
            token=meta.token,
        )
        return cls.create(root, client, output)

    async def close(self) -> None:
        await self.client.aclose()

    def remember_session(self) -> bool:
        """Persist a freshly obtained session token into the root meta.

        Returns:
            True if the root meta was updated
        """
        token = getattr(self.client, "session_token", None)
        if not token:
            return False
        meta = self.store.read_root_meta()
        if meta is None or meta.token == token:
            return False
        meta.token = token
        self.store.write_root_meta(meta)
        logger.debug("Stored refreshed session token in mirror metadata")
        return True

    async def refresh_completion_cache(self) -> Optional[MirrorRootMeta]:
        """Fetch workbench completion data and cache it in the root meta.

        Returns:
            Updated root meta, or None if the directory is not a mirror
        """
        meta = self.store.read_root_meta()
        if meta is None:
            return None
        data = await self.client.get_workbench_completion_data()
        meta.completion = data if isinstance(data, dict) else {"items": data}
        meta.completion_updated_at = now_millis()
        self.store.write_root_meta(meta)
        return meta
