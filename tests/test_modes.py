"""Tests for sync directions."""

import pytest

from pymagicapi.sync import SyncDirection


class TestSyncDirection:
    """Tests for SyncDirection."""

    def test_allowed_flows(self):
        """Test which directions allow push and pull."""
        assert SyncDirection.BIDIRECTIONAL.allows_push
        assert SyncDirection.BIDIRECTIONAL.allows_pull
        assert SyncDirection.PUSH_ONLY.allows_push
        assert not SyncDirection.PUSH_ONLY.allows_pull
        assert SyncDirection.PULL_ONLY.allows_pull
        assert not SyncDirection.PULL_ONLY.allows_push

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("both", SyncDirection.BIDIRECTIONAL),
            ("Two_Way", SyncDirection.BIDIRECTIONAL),
            ("push", SyncDirection.PUSH_ONLY),
            ("local-to-remote", SyncDirection.PUSH_ONLY),
            (" pull ", SyncDirection.PULL_ONLY),
            ("rtl", SyncDirection.PULL_ONLY),
        ],
    )
    def test_from_string(self, value, expected):
        """Test parsing names and aliases."""
        assert SyncDirection.from_string(value) is expected

    def test_from_string_invalid(self):
        """Test that unknown names raise."""
        with pytest.raises(ValueError, match="Invalid sync direction"):
            SyncDirection.from_string("sideways")
