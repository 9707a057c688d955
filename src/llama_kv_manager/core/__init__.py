"""
Core components for llama-kv-manager.

This package contains:
- SessionRegistry: live model -> server session lookup
- SlotManager: KV-cache save/restore against llama-server slots
- ConversationDumpStore: JSON dumps paired with server-written cache blobs
- DriftReconciler: restore into a possibly different live configuration
- LlamaServerRuntime: llama-server process lifecycle
"""

from llama_kv_manager.core.dump_store import (
    ChatMessage,
    ConversationDump,
    ConversationDumpStore,
    DumpV1,
    DumpV2,
    RuntimeContext,
    load_dump,
)
from llama_kv_manager.core.liveness import is_process_running
from llama_kv_manager.core.llama_client import (
    LlamaServerClient,
    SlotActionResult,
    SlotInfo,
)
from llama_kv_manager.core.provider import (
    KVCacheProvider,
    LlamaCppKVCacheService,
    create_service,
)
from llama_kv_manager.core.reconciler import (
    DriftReconciler,
    DriftReport,
    RestoreResult,
)
from llama_kv_manager.core.runtime import LlamaServerRuntime
from llama_kv_manager.core.session_registry import (
    SessionDescriptor,
    SessionRegistry,
    SessionTable,
)
from llama_kv_manager.core.slot_manager import SlotManager

__all__ = [
    # Dump Store
    "ChatMessage",
    "ConversationDump",
    "ConversationDumpStore",
    # Reconciler
    "DriftReconciler",
    "DriftReport",
    "DumpV1",
    "DumpV2",
    # Provider
    "KVCacheProvider",
    "LlamaCppKVCacheService",
    # HTTP
    "LlamaServerClient",
    # Runtime
    "LlamaServerRuntime",
    "RestoreResult",
    "RuntimeContext",
    # Session Registry
    "SessionDescriptor",
    "SessionRegistry",
    "SessionTable",
    "SlotActionResult",
    "SlotInfo",
    # Slot Manager
    "SlotManager",
    "create_service",
    "is_process_running",
    "load_dump",
]
