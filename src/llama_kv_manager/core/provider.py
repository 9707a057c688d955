"""
KV-cache provider interface and its llama.cpp implementation.

Callers receive a KVCacheProvider at construction time and hold a typed
reference to it; nothing looks the provider up by name.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from llama_kv_manager.config import Settings
from llama_kv_manager.core.dump_store import (
    ChatMessage,
    ConversationDump,
    ConversationDumpStore,
    RuntimeContext,
)
from llama_kv_manager.core.llama_client import LlamaServerClient
from llama_kv_manager.core.reconciler import DriftReconciler, RestoreResult
from llama_kv_manager.core.runtime import LlamaServerRuntime
from llama_kv_manager.core.session_registry import SessionRegistry
from llama_kv_manager.core.slot_manager import DEFAULT_SLOT_ID, SlotManager


class KVCacheProvider(Protocol):
    """Operations a chat client needs to persist and resume conversations."""

    async def save_kv_cache(self, model_id: str, dump_name: str) -> None: ...

    async def restore_kv_cache(
        self, model_id: str, dump_name: str, slot_id: int = DEFAULT_SLOT_ID
    ) -> None: ...

    async def save_conversation_dump(
        self,
        model_id: str,
        dump_name: str,
        messages: Iterable[ChatMessage | Mapping[str, Any]],
        runtime_context: RuntimeContext | Mapping[str, Any] | None = None,
        *,
        assistant_context: Any = None,
        inference_context: Any = None,
    ) -> ConversationDump: ...

    async def restore_conversation_dump(
        self, model_id: str, dump_name: str, slot_id: int = DEFAULT_SLOT_ID
    ) -> list[ChatMessage]: ...

    async def list_conversation_dumps(self) -> list[str]: ...

    async def get_idle_slot(self, model_id: str) -> int: ...

    async def read_conversation_dump(self, dump_name: str) -> ConversationDump: ...

    async def delete_conversation_dump(self, dump_name: str) -> bool: ...


class LlamaCppKVCacheService:
    """KVCacheProvider backed by llama-server slots and a dumps directory."""

    def __init__(
        self,
        slot_manager: SlotManager,
        dump_store: ConversationDumpStore,
        reconciler: DriftReconciler,
    ):
        self.slot_manager = slot_manager
        self.dump_store = dump_store
        self.reconciler = reconciler

    async def save_kv_cache(self, model_id: str, dump_name: str) -> None:
        await self.slot_manager.save_kv_cache(model_id, dump_name)

    async def restore_kv_cache(
        self, model_id: str, dump_name: str, slot_id: int = DEFAULT_SLOT_ID
    ) -> None:
        await self.slot_manager.restore_kv_cache(model_id, dump_name, slot_id)

    async def save_conversation_dump(
        self,
        model_id: str,
        dump_name: str,
        messages: Iterable[ChatMessage | Mapping[str, Any]],
        runtime_context: RuntimeContext | Mapping[str, Any] | None = None,
        *,
        assistant_context: Any = None,
        inference_context: Any = None,
    ) -> ConversationDump:
        return await self.dump_store.save_conversation_dump(
            model_id,
            dump_name,
            messages,
            runtime_context,
            assistant_context=assistant_context,
            inference_context=inference_context,
        )

    async def restore_conversation_dump(
        self, model_id: str, dump_name: str, slot_id: int = DEFAULT_SLOT_ID
    ) -> list[ChatMessage]:
        return await self.dump_store.restore_conversation_dump(model_id, dump_name, slot_id)

    async def list_conversation_dumps(self) -> list[str]:
        return await self.dump_store.list_conversation_dumps()

    async def get_idle_slot(self, model_id: str) -> int:
        return await self.slot_manager.get_idle_slot(model_id)

    async def read_conversation_dump(self, dump_name: str) -> ConversationDump:
        return await self.dump_store.read_conversation_dump(dump_name)

    async def delete_conversation_dump(self, dump_name: str) -> bool:
        return await self.dump_store.delete_conversation_dump(dump_name)

    async def restore_with_reconciliation(
        self,
        model_id: str,
        dump_name: str,
        slot_id: int | None = None,
    ) -> RestoreResult:
        """Restore a dump, restarting the server first if its settings differ."""
        return await self.reconciler.restore(model_id, dump_name, slot_id)


def create_service(
    settings: Settings,
    runtime: LlamaServerRuntime,
    client: LlamaServerClient | None = None,
) -> LlamaCppKVCacheService:
    """
    Wire the core components together.

    Args:
        settings: Application settings (dumps dir, server config)
        runtime: Runtime owning the live session table
        client: HTTP client; the runtime's client is shared if omitted

    Returns:
        A ready LlamaCppKVCacheService.
    """
    client = client or runtime.client
    slot_manager = SlotManager(SessionRegistry(runtime), client)
    dump_store = ConversationDumpStore(settings.dumps_dir, slot_manager)
    reconciler = DriftReconciler(dump_store, slot_manager, runtime)
    return LlamaCppKVCacheService(slot_manager, dump_store, reconciler)
