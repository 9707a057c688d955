"""
Drift reconciler for llama-kv-manager.

Restores a dump into a live server whose configuration may differ from the
one the dump was taken under.

Restore sequence:
1. Read the dump (no KV-cache access yet)
2. Make sure a live server runs for the model. If the dump records a
   runtime context the server must run with exactly that context, and is
   (re)started when it differs or has exited. Loading a KV cache into a
   server with another model or context is undefined. Older dumps without
   a context reuse whatever server is running, or start one with defaults.
3. Pick an idle slot (or check that the requested one is idle)
4. Restore the KV cache into that slot
5. Report drift: whether a new configuration had to be applied, and whether
   the live configuration still differs from (or cannot be compared to) the
   dump's expectation. Both flags are advisory only.

Any failure aborts the restore and propagates unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from llama_kv_manager.core.dump_store import (
    ChatMessage,
    ConversationDumpStore,
    DumpV2,
    RuntimeContext,
)
from llama_kv_manager.core.session_registry import SessionDescriptor
from llama_kv_manager.core.slot_manager import SlotManager
from llama_kv_manager.errors import NoIdleSlotError
from llama_kv_manager.monitoring import trace_operation

logger = structlog.get_logger()


WARNING_PRE_RUNTIME_CONTEXT = (
    "This dump was created before runtime settings were saved. "
    "Please verify settings and re-save after testing."
)
WARNING_CONTEXT_APPLIED = (
    "Conversation restored and server settings were updated to match the saved context"
)
WARNING_CONFIG_DIFFERS = (
    "The running server configuration differs from the one recorded in the dump"
)


class ModelRuntime(Protocol):
    """The runtime operations the reconciler needs."""

    async def get_running_config(self, model_id: str) -> RuntimeContext | None: ...

    async def start_model(
        self,
        model_id: str,
        runtime_context: RuntimeContext | None = None,
    ) -> SessionDescriptor: ...


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class DriftReport:
    """How the live configuration compares to the dump's expectation."""

    context_restored: bool
    drift_detected: bool
    expected: RuntimeContext | None = None
    actual: RuntimeContext | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "context_restored": self.context_restored,
            "drift_detected": self.drift_detected,
            "expected": self.expected.to_dict() if self.expected else None,
            "actual": self.actual.to_dict() if self.actual else None,
            "warnings": self.warnings,
        }


@dataclass
class RestoreResult:
    """Result of a reconciled restore."""

    dump_name: str
    model_id: str
    messages: list[ChatMessage]
    slot_id: int
    drift: DriftReport
    runtime_context: RuntimeContext | None = None
    assistant_context: Any = None
    inference_context: Any = None

    @property
    def context_restored(self) -> bool:
        return self.drift.context_restored

    @property
    def drift_detected(self) -> bool:
        return self.drift.drift_detected

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for tool responses."""
        return {
            "dump_name": self.dump_name,
            "model_id": self.model_id,
            "messages": [m.to_dict() for m in self.messages],
            "slot_id": self.slot_id,
            "context_restored": self.context_restored,
            "drift_detected": self.drift_detected,
            "drift": self.drift.to_dict(),
            "runtime_context": self.runtime_context.to_dict() if self.runtime_context else None,
            "assistant_context": self.assistant_context,
            "inference_context": self.inference_context,
        }


# =============================================================================
# Reconciler
# =============================================================================


class DriftReconciler:
    """
    Orchestrates restore into a possibly different live configuration.

    Coordinates between the dump store, the runtime and the slot manager.
    """

    def __init__(
        self,
        dump_store: ConversationDumpStore,
        slot_manager: SlotManager,
        runtime: ModelRuntime,
    ):
        self.dump_store = dump_store
        self.slot_manager = slot_manager
        self.runtime = runtime

    async def _choose_slot(self, model_id: str, slot_id: int | None) -> int:
        if slot_id is None:
            return await self.slot_manager.get_idle_slot(model_id)

        idle = await self.slot_manager.list_idle_slots(model_id)
        if slot_id not in idle:
            # Restoring into a busy slot would clobber its cache
            raise NoIdleSlotError(model_id, slot_id)
        return slot_id

    async def restore(
        self,
        model_id: str,
        dump_name: str,
        slot_id: int | None = None,
    ) -> RestoreResult:
        """
        Restore a dump, reconciling the server configuration first.

        Args:
            model_id: Model the conversation continues on
            dump_name: Dump to restore
            slot_id: Slot to restore into; an idle one is picked if omitted

        Returns:
            RestoreResult with messages, slot and drift report

        Raises:
            DumpNotFoundError, InvalidDumpFormatError, ModelStartError,
            NoIdleSlotError, and everything restore_kv_cache raises
        """
        log = logger.bind(model_id=model_id, dump_name=dump_name)
        log.info("Starting reconciled restore")

        async with trace_operation("reconciled_restore", model_id=model_id, dump_name=dump_name) as trace:
            dump = await self.dump_store.read_conversation_dump(dump_name)

            expected = dump.runtime if isinstance(dump, DumpV2) else None
            context_restored = False

            # None also covers a recorded server whose process has exited
            running = await self.runtime.get_running_config(model_id)
            if expected is not None and running != expected:
                log.info(
                    "Applying dump runtime context",
                    running=running.to_dict() if running else None,
                    expected=expected.to_dict(),
                )
                await self.runtime.start_model(model_id, expected)
                context_restored = True
            elif expected is None and running is None:
                log.info("No server running, starting model with default settings")
                await self.runtime.start_model(model_id, None)

            actual = await self.runtime.get_running_config(model_id)

            target_slot = await self._choose_slot(model_id, slot_id)
            await self.slot_manager.restore_kv_cache(model_id, dump_name, target_slot)

            drift_detected = expected is None or actual != expected
            warnings = []
            if expected is None:
                warnings.append(WARNING_PRE_RUNTIME_CONTEXT)
            elif actual != expected:
                warnings.append(WARNING_CONFIG_DIFFERS)
            if context_restored:
                warnings.append(WARNING_CONTEXT_APPLIED)

            trace["slot_id"] = target_slot
            trace["context_restored"] = context_restored
            trace["drift_detected"] = drift_detected

        return RestoreResult(
            dump_name=dump_name,
            model_id=model_id,
            messages=dump.messages,
            slot_id=target_slot,
            drift=DriftReport(
                context_restored=context_restored,
                drift_detected=drift_detected,
                expected=expected,
                actual=actual,
                warnings=warnings,
            ),
            runtime_context=expected,
            assistant_context=dump.assistant_context,
            inference_context=dump.inference_context,
        )
