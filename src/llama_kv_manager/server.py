"""
MCP Server for llama-kv-manager.

Exposes conversation persistence for llama.cpp servers to MCP clients.

Tools:
- model_start / model_stop: Launch or stop a llama-server for a model
- kv_cache_save / kv_cache_restore: Raw slot snapshot and restore
- dump_save: Save the KV cache plus messages and runtime context
- dump_restore: Restore a dump, reconciling the server configuration
- dump_read / dump_list / dump_delete: Inspect and manage saved dumps
- idle_slot: Find a free slot on a model's server
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server import FastMCP

from llama_kv_manager import __version__
from llama_kv_manager.config import Settings, load_settings
from llama_kv_manager.core.dump_store import RuntimeContext
from llama_kv_manager.core.llama_client import LlamaServerClient
from llama_kv_manager.core.provider import LlamaCppKVCacheService, create_service
from llama_kv_manager.core.runtime import LlamaServerRuntime
from llama_kv_manager.errors import ErrorContext, LKVError, format_user_message
from llama_kv_manager.monitoring import configure_logging

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = structlog.get_logger()


# =============================================================================
# Server State
# =============================================================================


@dataclass
class ServerState:
    """Container for server runtime state."""

    settings: Settings
    client: LlamaServerClient
    runtime: LlamaServerRuntime
    service: LlamaCppKVCacheService


# Global state - initialized during lifespan
_state: ServerState | None = None


def get_state() -> ServerState:
    """Get the current server state."""
    if _state is None:
        raise RuntimeError("Server not initialized")
    return _state


# =============================================================================
# Lifespan Management
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastMCP) -> AsyncIterator[None]:
    """Manage server lifecycle - initialize and cleanup resources."""
    global _state

    settings = load_settings()
    settings.ensure_directories()

    logger.info(
        "Starting llama-kv-manager",
        version=__version__,
        dumps_dir=str(settings.dumps_dir),
        binary=str(settings.server.binary_path),
    )

    client = LlamaServerClient(settings.server)
    runtime = LlamaServerRuntime(settings.server, settings.dumps_dir, client=client)
    service = create_service(settings, runtime, client)

    _state = ServerState(
        settings=settings,
        client=client,
        runtime=runtime,
        service=service,
    )

    try:
        yield
    finally:
        logger.info("Shutting down llama-kv-manager")
        await runtime.stop_all()
        await client.close()
        _state = None
        logger.info("Shutdown complete")


# =============================================================================
# MCP Server Setup
# =============================================================================


mcp = FastMCP(
    name="llama-kv-manager",
    instructions="""
llama-kv-manager saves and restores llama.cpp conversations together with the
server's KV cache, so a conversation resumes without re-processing its prompt.

Use these tools to:
- Start a model server with specific launch arguments
- Save a conversation (messages + KV cache + runtime settings) under a name
- List, inspect and delete saved conversations
- Restore a saved conversation; the server is restarted with the saved
  settings when they differ from the running ones
""",
    lifespan=lifespan,
)


def _error_payload(error: LKVError) -> dict[str, Any]:
    return {**error.to_dict(), "hint": format_user_message(error)}


# =============================================================================
# Tool Implementations
# =============================================================================


@mcp.tool()
async def model_start(
    model_id: str,
    model_rel_path: str | None = None,
    mmproj_rel_path: str | None = None,
    args: list[str] | None = None,
) -> dict[str, Any]:
    """
    Start (or reuse) a llama-server for a model.

    Args:
        model_id: Model identifier
        model_rel_path: GGUF path relative to the models directory
        mmproj_rel_path: Optional multimodal projector path
        args: Extra llama-server arguments (e.g. ["-c", "8192"])

    Returns:
        The session descriptor (api key redacted).
    """
    state = get_state()
    async with ErrorContext("model_start", logger=logger, model_id=model_id):
        descriptor = await state.runtime.start_model(
            model_id,
            RuntimeContext(
                args=tuple(args or ()),
                model_rel_path=model_rel_path,
                mmproj_rel_path=mmproj_rel_path,
            ),
        )
        return descriptor.to_dict()


@mcp.tool()
async def model_stop(model_id: str) -> dict[str, Any]:
    """Stop the llama-server serving a model."""
    state = get_state()
    async with ErrorContext("model_stop", logger=logger, model_id=model_id):
        stopped = await state.runtime.stop_model(model_id)
        return {"model_id": model_id, "stopped": stopped}


@mcp.tool()
async def kv_cache_save(model_id: str, dump_name: str) -> dict[str, Any]:
    """
    Snapshot slot 0 of the model's server to "<dump_name>.bin".

    Args:
        model_id: Model whose server holds the conversation
        dump_name: Name for the cache file
    """
    state = get_state()
    try:
        await state.service.save_kv_cache(model_id, dump_name)
    except LKVError as e:
        logger.warning("KV cache save failed", model_id=model_id, **e.to_dict())
        return {"success": False, **_error_payload(e)}
    return {"success": True, "model_id": model_id, "dump_name": dump_name}


@mcp.tool()
async def kv_cache_restore(model_id: str, dump_name: str, slot_id: int = 0) -> dict[str, Any]:
    """
    Load "<dump_name>.bin" into a slot of the model's server.

    Args:
        model_id: Model whose server should receive the cache
        dump_name: Name of the cache file
        slot_id: Target slot (default 0)
    """
    state = get_state()
    try:
        await state.service.restore_kv_cache(model_id, dump_name, slot_id)
    except LKVError as e:
        logger.warning("KV cache restore failed", model_id=model_id, **e.to_dict())
        return {"success": False, **_error_payload(e)}
    return {"success": True, "model_id": model_id, "dump_name": dump_name, "slot_id": slot_id}


@mcp.tool()
async def dump_save(
    model_id: str,
    dump_name: str,
    messages: list[dict[str, Any]],
    runtime_context: dict[str, Any] | None = None,
    assistant_context: dict[str, Any] | None = None,
    inference_context: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Save a conversation: KV cache first, then the JSON dump.

    Args:
        model_id: Model whose server holds the conversation
        dump_name: Human name for the dump
        messages: Chat messages ({role, content, ...})
        runtime_context: {args, modelRelPath, mmprojRelPath} the server runs with
        assistant_context: Assistant settings to restore with the conversation
        inference_context: Sampling settings to restore with the conversation
    """
    state = get_state()
    try:
        dump = await state.service.save_conversation_dump(
            model_id,
            dump_name,
            messages,
            runtime_context,
            assistant_context=assistant_context,
            inference_context=inference_context,
        )
    except LKVError as e:
        logger.warning("Dump save failed", model_id=model_id, dump_name=dump_name, **e.to_dict())
        return {"success": False, **_error_payload(e)}

    return {
        "success": True,
        "dump_name": dump_name,
        "timestamp": dump.timestamp,
        "message_count": len(dump.messages),
        "version": dump.version,
    }


@mcp.tool()
async def dump_restore(
    model_id: str,
    dump_name: str,
    reconcile: bool = True,
    slot_id: int | None = None,
) -> dict[str, Any]:
    """
    Restore a saved conversation.

    Args:
        model_id: Model to continue the conversation on
        dump_name: Dump to restore
        reconcile: Restart the server with the dump's settings when they differ
            and pick an idle slot (default True). When False, restore straight
            into slot_id (or 0) on the running server.
        slot_id: Target slot; an idle one is chosen when omitted

    Returns:
        Messages, chosen slot, and drift flags/warnings.
    """
    state = get_state()
    try:
        if reconcile:
            result = await state.service.restore_with_reconciliation(model_id, dump_name, slot_id)
            return {"success": True, **result.to_dict()}

        target = 0 if slot_id is None else slot_id
        messages = await state.service.restore_conversation_dump(model_id, dump_name, target)
    except LKVError as e:
        logger.warning("Dump restore failed", model_id=model_id, dump_name=dump_name, **e.to_dict())
        return {"success": False, **_error_payload(e)}

    return {
        "success": True,
        "dump_name": dump_name,
        "model_id": model_id,
        "slot_id": target,
        "messages": [m.to_dict() for m in messages],
    }


@mcp.tool()
async def dump_read(dump_name: str) -> dict[str, Any]:
    """Read a dump document without touching any server."""
    state = get_state()
    async with ErrorContext("dump_read", logger=logger, dump_name=dump_name):
        dump = await state.service.read_conversation_dump(dump_name)
        return {**dump.to_document(), "version": dump.version}


@mcp.tool()
async def dump_list() -> dict[str, Any]:
    """List saved conversation dumps."""
    state = get_state()
    dumps = await state.service.list_conversation_dumps()
    return {"dumps": dumps, "count": len(dumps)}


@mcp.tool()
async def dump_delete(dump_name: str) -> dict[str, Any]:
    """Delete a dump and its KV-cache blob."""
    state = get_state()
    async with ErrorContext("dump_delete", logger=logger, dump_name=dump_name):
        deleted = await state.service.delete_conversation_dump(dump_name)
        return {"dump_name": dump_name, "deleted": deleted}


@mcp.tool()
async def idle_slot(model_id: str) -> dict[str, Any]:
    """Find the lowest idle slot on a model's server."""
    state = get_state()
    try:
        slot = await state.service.get_idle_slot(model_id)
    except LKVError as e:
        return {"success": False, **_error_payload(e)}
    return {"success": True, "model_id": model_id, "slot_id": slot}


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server() -> None:
    """
    Run the llama-kv-manager MCP server on stdio.
    """
    settings = load_settings()
    configure_logging(settings.log_level, json_output=settings.log_format == "json")

    logger.info("Starting MCP server on stdio")

    try:
        await mcp.run_stdio_async()
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
    except Exception as e:
        logger.error("Server error", error=str(e))
        raise


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
