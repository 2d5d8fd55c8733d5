#!/usr/bin/env python3
"""
Unit tests for the management cluster index and event forwarding
"""

import kopf
import pytest
from unittest.mock import patch, AsyncMock
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from related import (
    cluster_index_keys,
    forward_management_cluster_event,
    select_owner,
)


class TestClusterIndex:
    """Tests for index key projection"""

    def test_indexed_by_management_cluster(self):
        assert cluster_index_keys({"clusterName": "c-fleet-prod"}) == ["c-fleet-prod"]

    def test_not_indexed_without_cluster_name(self):
        assert cluster_index_keys({}) == []
        assert cluster_index_keys({"clusterName": ""}) == []
        assert cluster_index_keys(None) == []


class TestSelectOwner:
    """Tests for owner lookup"""

    def test_unknown_cluster(self):
        assert select_owner({}, "c-unmanaged") is None
        assert select_owner({"c-other": [("fleet", "prod")]}, "c-unmanaged") is None

    def test_empty_owner_list(self):
        assert select_owner({"c-fleet-prod": []}, "c-fleet-prod") is None

    def test_single_owner(self):
        index = {"c-fleet-prod": [("fleet", "prod")]}
        assert select_owner(index, "c-fleet-prod") == ("fleet", "prod")

    def test_multiple_owners_are_deterministic(self):
        index = {"c-abc": [("team-b", "x"), ("team-a", "z"), ("team-a", "y")]}
        assert select_owner(index, "c-abc") == ("team-a", "y")
        index["c-abc"].reverse()
        assert select_owner(index, "c-abc") == ("team-a", "y")


class TestForwarding:
    """Tests for management cluster event forwarding"""

    @pytest.mark.asyncio
    @patch("related.reconcile_cluster_key", new_callable=AsyncMock)
    async def test_unowned_cluster_is_dropped(self, mock_reconcile):
        index = {"c-fleet-prod": [("fleet", "prod")]}

        result = await forward_management_cluster_event("c-unmanaged", index)

        assert result is None
        mock_reconcile.assert_not_awaited()

    @pytest.mark.asyncio
    @patch("related.reconcile_cluster_key", new_callable=AsyncMock)
    async def test_owner_is_reconciled_once(self, mock_reconcile):
        index = {"c-fleet-prod": [("fleet", "prod"), ("fleet", "zzz")]}

        result = await forward_management_cluster_event("c-fleet-prod", index)

        assert result == ("fleet", "prod")
        mock_reconcile.assert_awaited_once_with("fleet", "prod")

    @pytest.mark.asyncio
    @patch("related.asyncio.sleep", new_callable=AsyncMock)
    @patch("related.reconcile_cluster_key", new_callable=AsyncMock)
    async def test_temporary_failure_is_retried(self, mock_reconcile, mock_sleep):
        mock_reconcile.side_effect = [kopf.TemporaryError("not ready", delay=1), None]
        index = {"c-fleet-prod": [("fleet", "prod")]}

        result = await forward_management_cluster_event("c-fleet-prod", index)

        assert result == ("fleet", "prod")
        assert mock_reconcile.await_count == 2
        mock_sleep.assert_awaited_once_with(5)

    @pytest.mark.asyncio
    @patch("related.asyncio.sleep", new_callable=AsyncMock)
    @patch("related.reconcile_cluster_key", new_callable=AsyncMock)
    async def test_retries_give_up_with_backoff(self, mock_reconcile, mock_sleep):
        mock_reconcile.side_effect = kopf.TemporaryError("not ready", delay=1)
        index = {"c-fleet-prod": [("fleet", "prod")]}

        with pytest.raises(kopf.TemporaryError):
            await forward_management_cluster_event("c-fleet-prod", index)

        assert mock_reconcile.await_count == 5
        assert [c.args[0] for c in mock_sleep.await_args_list] == [5, 10, 20, 40]

    @pytest.mark.asyncio
    @patch("related.asyncio.sleep", new_callable=AsyncMock)
    @patch("related.reconcile_cluster_key", new_callable=AsyncMock)
    async def test_permanent_failure_is_not_retried(self, mock_reconcile, mock_sleep):
        mock_reconcile.side_effect = kopf.PermanentError("bad spec")
        index = {"c-fleet-prod": [("fleet", "prod")]}

        with pytest.raises(kopf.PermanentError):
            await forward_management_cluster_event("c-fleet-prod", index)

        mock_reconcile.assert_awaited_once()
        mock_sleep.assert_not_awaited()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
