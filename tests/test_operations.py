"""Tests for push and pull operations."""

import pytest
from fakes import FakeMagicClient, make_context

from pymagicapi.exceptions import MagicNotFoundError
from pymagicapi.sync import MirrorFileMeta, ResourceKey, SyncOperations

INVOICE = ResourceKey("api", "billing/invoice", "create")


@pytest.fixture
def client():
    return FakeMagicClient()


@pytest.fixture
def context(tmp_path, client):
    return make_context(tmp_path, client)


@pytest.fixture
def operations(context):
    return SyncOperations(context)


class TestGroupChain:
    """Tests for creating missing remote groups."""

    async def test_creates_missing_groups_in_order(self, operations, context, client):
        """Test that ancestors are created top-down before the file."""
        await operations.push(INVOICE, "return 1")

        assert client.calls_to("create_group") == ["billing", "invoice"]
        names = [name for name, _ in client.calls if name in ("create_group", "create_file")]
        assert names == ["create_group", "create_group", "create_file"]
        assert context.tree_cache.resolve_id("api/billing/invoice")
        node = client.file_at("api/billing/invoice/create.ms")
        assert node["groupId"] == client.group_id_for("api/billing/invoice")

    async def test_existing_groups_are_reused(self, operations, client):
        """Test that only the missing tail of the chain is created."""
        client.add_group("api/billing")
        group_id = await operations.ensure_group_chain("api", "billing/invoice")
        assert client.calls_to("create_group") == ["invoice"]
        assert group_id == client.group_id_for("api/billing/invoice")

    async def test_type_root_needs_no_group(self, operations, client):
        """Test that the type root resolves without any creation."""
        assert await operations.ensure_group_chain("task", "") is None
        assert client.calls_to("create_group") == []


class TestPush:
    """Tests for pushing local state."""

    async def test_create_records_id(self, operations, context, client):
        """Test that a created resource's id lands in the sidecar."""
        meta = await operations.push(INVOICE, "return 1")
        node = client.file_at("api/billing/invoice/create.ms")
        assert meta.id == node["id"]
        stored = context.store.read_meta(INVOICE)
        assert stored.id == node["id"]
        assert stored.update_time == node["updateTime"]

    async def test_save_by_known_id(self, operations, context, client):
        """Test that a known id is saved rather than created."""
        file_id = client.add_file("api/user/login.ms", "old")
        meta = MirrorFileMeta(name="login", type="api", group_path="api/user", id=file_id)
        await operations.push(ResourceKey("api", "user", "login"), "new", meta)
        assert client.calls_to("create_file") == []
        assert client.files[file_id]["script"] == "new"

    async def test_save_by_path_lookup(self, operations, client):
        """Test that a missing sidecar id falls back to the path."""
        file_id = client.add_file("api/user/login.ms", "old")
        await operations.push(ResourceKey("api", "user", "login"), "new")
        assert client.calls_to("create_file") == []
        assert client.files[file_id]["script"] == "new"

    async def test_stale_id_falls_back(self, operations, client):
        """Test that an id the server no longer knows is not used."""
        meta = MirrorFileMeta(name="login", type="api", group_path="api/user", id="gone")
        await operations.push(ResourceKey("api", "user", "login"), "x", meta)
        assert len(client.calls_to("create_file")) == 1

    async def test_id_moved_on_server_is_not_reverted(self, operations, context, client):
        """Test that pushing under an old name never renames the server copy back."""
        file_id = client.add_file("api/user/login.ms", "old")
        await context.tree_cache.refresh()
        client.files[file_id]["name"] = "signin"
        meta = MirrorFileMeta(name="login", type="api", group_path="api/user", id=file_id)

        pushed = await operations.push(ResourceKey("api", "user", "login"), "new", meta)

        assert client.calls_to("save_file") == []
        assert client.files[file_id]["name"] == "signin"
        assert client.files[file_id]["script"] == "old"
        assert pushed.id != file_id
        assert client.file_at("api/user/login.ms")["script"] == "new"

    async def test_push_sends_metadata(self, operations, client):
        """Test that typed fields travel with the script."""
        meta = MirrorFileMeta(
            name="login", type="api", group_path="api/user", method="POST", path="/login"
        )
        await operations.push(ResourceKey("api", "user", "login"), "x", meta)
        node = client.file_at("api/user/login.ms")
        assert node["method"] == "POST"
        assert node["path"] == "/login"

    async def test_push_local_missing_script(self, operations):
        """Test that pushing a missing script raises."""
        with pytest.raises(FileNotFoundError):
            await operations.push_local(INVOICE)


class TestPull:
    """Tests for pulling server state."""

    async def test_pull_keeps_local_clock(self, operations, context, client):
        """Test that a pull does not touch localUpdateTime."""
        client.add_file("api/user/login.ms", "server", update_time=300)
        key = ResourceKey("api", "user", "login")
        context.store.write_meta(
            key,
            MirrorFileMeta(name="login", type="api", group_path="api/user", local_update_time=42),
            local=False,
        )
        await operations.pull_by_key(key)
        meta = context.store.read_meta(key)
        assert meta.local_update_time == 42
        assert meta.update_time == 300
        assert context.store.read_script(key) == "server"

    async def test_pull_by_key_missing(self, operations):
        """Test that pulling an unknown resource raises."""
        with pytest.raises(MagicNotFoundError):
            await operations.pull_by_key(INVOICE)

    async def test_write_group_metas(self, operations, context, client):
        """Test that every remote group gets a snapshot."""
        client.add_group("api/billing/invoice")
        snapshot = await context.tree_cache.fetch_snapshot()
        assert operations.write_group_metas(snapshot) == 2
        assert context.store.read_group_meta("api", "billing/invoice")["name"] == "invoice"


class TestRenameAndDelete:
    """Tests for remote renames and deletions."""

    async def test_rename_remote(self, operations, context, client):
        """Test renaming a file and moving its sidecar."""
        old = ResourceKey("api", "user", "login")
        new = ResourceKey("api", "auth", "signin")
        await operations.push(old, "x")
        file_id = context.store.read_meta(old).id

        assert await operations.rename_remote(old, new)
        assert client.files[file_id]["name"] == "signin"
        assert client.files[file_id]["groupId"] == client.group_id_for("api/auth")
        assert context.store.read_meta(new).id == file_id
        assert context.store.read_meta(old) is None

    async def test_rename_unknown(self, operations):
        """Test that renaming a never-synced file reports False."""
        assert not await operations.rename_remote(INVOICE, ResourceKey("api", "", "x"))

    async def test_delete_remote(self, operations, client):
        """Test deleting a file by path."""
        client.add_file("api/user/login.ms", "")
        assert await operations.delete_remote(ResourceKey("api", "user", "login"))
        assert client.files == {}
        assert not await operations.delete_remote(ResourceKey("api", "user", "login"))

    async def test_rename_and_delete_group(self, operations, client):
        """Test group rename and deletion."""
        group_id = client.add_group("api/billing")
        assert await operations.rename_group("api", "billing", "payments")
        assert client.groups[group_id]["name"] == "payments"
        assert await operations.delete_group("api", "payments")
        assert group_id not in client.groups
        assert not await operations.delete_group("api", "payments")
