"""
Slot manager for llama-kv-manager.

Performs KV-cache snapshot and restore against a running llama-server.
Every action runs the same gate, failing fast on the first error:

1. resolve the session for the model       -> SessionNotFoundError
2. check the process is alive              -> ProcessCrashedError (no HTTP sent)
3. probe GET /health                       -> ServerUnreachableError
4. POST /slots/{id}?action=save|restore    -> SlotActionFailedError(status_code)

No retries are made and the session registry is never mutated.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

from llama_kv_manager.core.liveness import is_process_running
from llama_kv_manager.core.llama_client import LlamaServerClient, SlotAction
from llama_kv_manager.core.locks import KeyedLock
from llama_kv_manager.core.session_registry import SessionDescriptor, SessionRegistry
from llama_kv_manager.core.storage_keys import cache_filename, validate_dump_name
from llama_kv_manager.errors import (
    InvalidParameterError,
    NoIdleSlotError,
    ProcessCrashedError,
    ServerUnreachableError,
    SessionNotFoundError,
    SlotActionFailedError,
)
from llama_kv_manager.monitoring import trace_operation

logger = structlog.get_logger()

DEFAULT_SLOT_ID = 0


class SlotManager:
    """
    Issues slot save/restore actions for the session serving a model.

    Actions on the same (model_id, slot_id) are serialized; actions on
    different slots or models run concurrently.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        client: LlamaServerClient,
        is_alive: Callable[[int], bool] = is_process_running,
    ):
        """
        Initialize the slot manager.

        Args:
            registry: Live session lookup
            client: HTTP client for llama-server
            is_alive: Process liveness check (pid -> bool)
        """
        self.registry = registry
        self.client = client
        self._is_alive = is_alive
        self._slot_locks = KeyedLock()

    async def resolve_live_session(self, model_id: str) -> SessionDescriptor:
        """
        Resolve the model's session and confirm it can take requests.

        Raises:
            SessionNotFoundError: No session serves the model
            ProcessCrashedError: The session's process is not running
            ServerUnreachableError: The process is alive but /health fails
        """
        session = await self.registry.find_session_by_model(model_id)
        if session is None:
            logger.warning("No active session", model_id=model_id)
            raise SessionNotFoundError(model_id)

        # Liveness gates network access: a dead process may still look
        # reachable on its last port for a short while.
        if not self._is_alive(session.pid):
            logger.warning("Model process not running", model_id=model_id, pid=session.pid)
            raise ProcessCrashedError(model_id, session.pid)

        if not await self.client.health(session.port):
            url = self.client.base_url(session.port)
            logger.warning("Health probe failed", model_id=model_id, url=url)
            raise ServerUnreachableError(url, "health probe failed")

        return session

    async def _run_slot_action(
        self,
        action: SlotAction,
        model_id: str,
        dump_name: str,
        slot_id: int,
    ) -> None:
        name = validate_dump_name(dump_name)
        if not isinstance(slot_id, int) or slot_id < 0:
            raise InvalidParameterError("slot_id", "must be a non-negative integer")

        async with self._slot_locks.hold((model_id, slot_id)):
            async with trace_operation(
                f"kv_cache_{action}",
                model_id=model_id,
                dump_name=name,
                slot_id=slot_id,
            ):
                session = await self.resolve_live_session(model_id)
                result = await self.client.slot_action(
                    session.port,
                    session.api_key,
                    slot_id,
                    action,
                    cache_filename(name),
                )
                if not result.ok:
                    raise SlotActionFailedError(
                        action, result.status_code, str(result.body)[:200]
                    )

    async def save_kv_cache(
        self,
        model_id: str,
        dump_name: str,
        slot_id: int = DEFAULT_SLOT_ID,
    ) -> None:
        """
        Ask the model's server to write slot `slot_id` to "<dump_name>.bin".

        Raises:
            SessionNotFoundError, ProcessCrashedError, ServerUnreachableError,
            SlotActionFailedError, ServerTimeoutError
        """
        await self._run_slot_action("save", model_id, dump_name, slot_id)

    async def restore_kv_cache(
        self,
        model_id: str,
        dump_name: str,
        slot_id: int = DEFAULT_SLOT_ID,
    ) -> None:
        """
        Ask the model's server to load "<dump_name>.bin" into slot `slot_id`.

        Raises:
            SessionNotFoundError, ProcessCrashedError, ServerUnreachableError,
            SlotActionFailedError, ServerTimeoutError
        """
        await self._run_slot_action("restore", model_id, dump_name, slot_id)

    async def list_idle_slots(self, model_id: str) -> list[int]:
        """Ids of slots not currently processing, in ascending order."""
        session = await self.resolve_live_session(model_id)
        slots = await self.client.list_slots(session.port, session.api_key)
        return sorted(slot.id for slot in slots if not slot.is_processing)

    async def get_idle_slot(self, model_id: str) -> int:
        """
        Lowest idle slot id on the model's server.

        Raises:
            NoIdleSlotError: Every slot is busy
        """
        idle = await self.list_idle_slots(model_id)
        if not idle:
            logger.warning("No idle slot", model_id=model_id)
            raise NoIdleSlotError(model_id)
        return idle[0]
