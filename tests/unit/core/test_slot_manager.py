"""
Unit tests for the slot manager.

Covers the session -> liveness -> health -> action gate and idle slot lookup.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from llama_kv_manager.core.llama_client import SlotActionResult, SlotInfo
from llama_kv_manager.core.session_registry import SessionRegistry, SessionTable
from llama_kv_manager.core.slot_manager import SlotManager
from llama_kv_manager.errors import (
    InvalidDumpNameError,
    InvalidParameterError,
    NoIdleSlotError,
    ProcessCrashedError,
    ServerUnreachableError,
    SessionNotFoundError,
    SlotActionFailedError,
)


class TestSaveKVCache:
    """Tests for save_kv_cache."""

    async def test_save_success(self, slot_manager, mock_llama_client, alive):
        """Should check liveness, probe health, then POST the save."""
        await slot_manager.save_kv_cache("m1", "a")

        alive.assert_called_once_with(123)
        mock_llama_client.health.assert_awaited_once_with(3000)
        mock_llama_client.slot_action.assert_awaited_once_with(3000, "k", 0, "save", "a.bin")

    async def test_no_session(self, mock_llama_client, alive):
        """Should fail without any network call when nothing serves the model."""
        manager = SlotManager(SessionRegistry(SessionTable()), mock_llama_client, is_alive=alive)

        with pytest.raises(SessionNotFoundError, match="No active session found for model: m1"):
            await manager.save_kv_cache("m1", "a")

        alive.assert_not_called()
        mock_llama_client.health.assert_not_called()
        mock_llama_client.slot_action.assert_not_called()

    async def test_dead_process(self, slot_manager, mock_llama_client, alive):
        """Should fail without any network call when the process is gone."""
        alive.return_value = False

        with pytest.raises(ProcessCrashedError, match="Model process has crashed! Please reload!"):
            await slot_manager.save_kv_cache("m1", "a")

        mock_llama_client.health.assert_not_called()
        mock_llama_client.slot_action.assert_not_called()

    async def test_health_fails(self, slot_manager, mock_llama_client):
        """Should not send the action when /health fails."""
        mock_llama_client.health.return_value = False

        with pytest.raises(ServerUnreachableError, match="Model appears to have crashed! Please reload!"):
            await slot_manager.save_kv_cache("m1", "a")

        mock_llama_client.slot_action.assert_not_called()

    async def test_server_error_status(self, slot_manager, mock_llama_client):
        """Should surface the HTTP status in the error."""
        mock_llama_client.slot_action.return_value = SlotActionResult(
            ok=False, status_code=500, body="internal"
        )

        with pytest.raises(SlotActionFailedError) as exc_info:
            await slot_manager.save_kv_cache("m1", "a")

        assert exc_info.value.status_code == 500
        assert "500" in str(exc_info.value)
        assert str(exc_info.value) == "KV cache save failed with status 500"

    async def test_no_retry(self, slot_manager, mock_llama_client):
        """Should send exactly one request even when it fails."""
        mock_llama_client.slot_action.return_value = SlotActionResult(ok=False, status_code=503)

        with pytest.raises(SlotActionFailedError):
            await slot_manager.save_kv_cache("m1", "a")

        assert mock_llama_client.slot_action.await_count == 1

    async def test_invalid_name_rejected_before_lookup(self, slot_manager, mock_llama_client, alive):
        """Should reject path-like names before touching the session."""
        with pytest.raises(InvalidDumpNameError):
            await slot_manager.save_kv_cache("m1", "../etc/passwd")

        alive.assert_not_called()
        mock_llama_client.slot_action.assert_not_called()

    async def test_negative_slot_rejected(self, slot_manager):
        """Should reject negative slot ids."""
        with pytest.raises(InvalidParameterError):
            await slot_manager.save_kv_cache("m1", "a", slot_id=-1)

    async def test_session_looked_up_each_time(self, session_table, mock_llama_client, alive):
        """Should target the replacement server after a restart."""
        from llama_kv_manager.core.session_registry import SessionDescriptor

        manager = SlotManager(SessionRegistry(session_table), mock_llama_client, is_alive=alive)
        await manager.save_kv_cache("m1", "a")

        session_table.register(SessionDescriptor("m1", pid=456, port=3001, api_key="k2"))
        await manager.save_kv_cache("m1", "a")

        last_call = mock_llama_client.slot_action.await_args_list[-1]
        assert last_call.args[:2] == (3001, "k2")
        alive.assert_called_with(456)


class TestRestoreKVCache:
    """Tests for restore_kv_cache."""

    async def test_restore_default_slot(self, slot_manager, mock_llama_client):
        """Should restore into slot 0 by default."""
        await slot_manager.restore_kv_cache("m1", "chat")

        mock_llama_client.slot_action.assert_awaited_once_with(3000, "k", 0, "restore", "chat.bin")

    async def test_restore_explicit_slot(self, slot_manager, mock_llama_client):
        """Should restore into the requested slot."""
        await slot_manager.restore_kv_cache("m1", "chat", slot_id=2)

        mock_llama_client.slot_action.assert_awaited_once_with(3000, "k", 2, "restore", "chat.bin")

    async def test_restore_failure(self, slot_manager, mock_llama_client):
        """Should name the action in the error."""
        mock_llama_client.slot_action.return_value = SlotActionResult(ok=False, status_code=400)

        with pytest.raises(SlotActionFailedError, match="KV cache restore failed with status 400"):
            await slot_manager.restore_kv_cache("m1", "chat")


class TestSlotSerialization:
    """Tests for per-slot locking."""

    async def test_same_slot_is_serialized(self, slot_manager, mock_llama_client):
        """Should never run two actions on one slot at the same time."""
        in_flight = 0
        peak = 0

        async def slow_action(*args, **kwargs):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return SlotActionResult(ok=True, status_code=200)

        mock_llama_client.slot_action.side_effect = slow_action

        await asyncio.gather(
            slot_manager.save_kv_cache("m1", "a"),
            slot_manager.restore_kv_cache("m1", "b"),
        )

        assert peak == 1

    async def test_different_slots_run_concurrently(self, slot_manager, mock_llama_client):
        """Should allow actions on different slots to overlap."""
        in_flight = 0
        peak = 0

        async def slow_action(*args, **kwargs):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return SlotActionResult(ok=True, status_code=200)

        mock_llama_client.slot_action.side_effect = slow_action

        await asyncio.gather(
            slot_manager.restore_kv_cache("m1", "a", slot_id=1),
            slot_manager.restore_kv_cache("m1", "b", slot_id=2),
        )

        assert peak == 2

    async def test_locks_released_after_actions(self, slot_manager, mock_llama_client):
        """Should not keep a lock for every slot ever used."""
        for slot_id in range(1, 4):
            await slot_manager.restore_kv_cache("m1", "a", slot_id=slot_id)

        mock_llama_client.slot_action.return_value = SlotActionResult(ok=False, status_code=500)
        with pytest.raises(SlotActionFailedError):
            await slot_manager.save_kv_cache("m1", "a", slot_id=7)

        assert len(slot_manager._slot_locks) == 0


class TestIdleSlots:
    """Tests for idle slot lookup."""

    async def test_list_idle_slots(self, slot_manager):
        """Should list idle slots in ascending order."""
        assert await slot_manager.list_idle_slots("m1") == [1, 2]

    async def test_get_idle_slot(self, slot_manager, mock_llama_client):
        """Should return the lowest idle slot."""
        assert await slot_manager.get_idle_slot("m1") == 1
        mock_llama_client.list_slots.assert_awaited_once_with(3000, "k")

    async def test_all_busy(self, slot_manager, mock_llama_client):
        """Should raise when every slot is busy."""
        mock_llama_client.list_slots = AsyncMock(
            return_value=[SlotInfo(id=0, is_processing=True)]
        )

        with pytest.raises(NoIdleSlotError):
            await slot_manager.get_idle_slot("m1")

    async def test_dead_process(self, slot_manager, mock_llama_client, alive):
        """Should check liveness before querying slots."""
        alive.return_value = False

        with pytest.raises(ProcessCrashedError):
            await slot_manager.get_idle_slot("m1")

        mock_llama_client.list_slots.assert_not_called()
