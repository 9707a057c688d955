"""
Conversation dump store for llama-kv-manager.

A dump pairs two files under one human name inside the dumps directory:

    <name>.json   written here: model id, timestamp, messages, optional contexts
    <name>.bin    written by llama-server itself through a slot save action

Save runs the KV-cache save first and only writes the JSON once it succeeded,
so no dump ever claims a cache that does not exist. Restore reads the JSON
first and only reports success once the KV cache was restored as well.

Dumps come in two shapes. Version 1 dumps predate runtime context and carry
only the conversation; version 2 dumps also record the launch configuration
(model path, mmproj path, server args) needed to reproduce the server state.
load_dump() decides the shape once on read so callers match on the type
instead of probing optional fields.
"""

from __future__ import annotations

import contextlib
import json
import secrets
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, ClassVar

import aiofiles
import aiofiles.os
import structlog

from llama_kv_manager.core.slot_manager import DEFAULT_SLOT_ID, SlotManager
from llama_kv_manager.core.storage_keys import (
    DUMP_V1,
    DUMP_V2,
    TEMP_SUFFIX,
    cache_filename,
    dump_filename,
    dump_name_from_filename,
    validate_dump_name,
)
from llama_kv_manager.errors import (
    DumpNotFoundError,
    InvalidDumpFormatError,
    InvalidParameterError,
    StorageReadError,
    StorageWriteError,
    ValidationError,
)

logger = structlog.get_logger()


# =============================================================================
# Models
# =============================================================================


@dataclass(frozen=True)
class RuntimeContext:
    """Launch configuration a dump expects the server to run with."""

    args: tuple[str, ...] = ()
    model_rel_path: str | None = None
    mmproj_rel_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the on-disk (camelCase) keys."""
        return {
            "args": list(self.args),
            "modelRelPath": self.model_rel_path,
            "mmprojRelPath": self.mmproj_rel_path,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RuntimeContext:
        """Create from a runtimeContext document."""
        if not isinstance(data, Mapping):
            raise ValidationError("runtimeContext must be an object")

        args = data.get("args") or []
        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            raise ValidationError("runtimeContext.args must be a list of strings")

        model_rel_path = data.get("modelRelPath")
        mmproj_rel_path = data.get("mmprojRelPath")
        for key, value in (("modelRelPath", model_rel_path), ("mmprojRelPath", mmproj_rel_path)):
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"runtimeContext.{key} must be a string or null")

        return cls(
            args=tuple(args),
            model_rel_path=model_rel_path,
            mmproj_rel_path=mmproj_rel_path,
        )

    @classmethod
    def coerce(cls, value: RuntimeContext | Mapping[str, Any] | None) -> RuntimeContext | None:
        if value is None or isinstance(value, RuntimeContext):
            return value
        return cls.from_dict(value)


@dataclass
class ChatMessage:
    """
    One chat message.

    Keys other than role/content (ids, timestamps, attachments) are kept in
    `extra` and written back unchanged.
    """

    role: str
    content: Any
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, **self.extra}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ChatMessage:
        if not isinstance(data, Mapping):
            raise ValidationError("message must be an object")
        if "role" not in data or "content" not in data:
            raise ValidationError("message requires 'role' and 'content'")
        if not isinstance(data["role"], str):
            raise ValidationError("message role must be a string")
        extra = {k: v for k, v in data.items() if k not in ("role", "content")}
        return cls(role=data["role"], content=data["content"], extra=extra)


def coerce_messages(messages: Iterable[ChatMessage | Mapping[str, Any]]) -> list[ChatMessage]:
    """Normalize messages to ChatMessage; the result is never empty."""
    result = [m if isinstance(m, ChatMessage) else ChatMessage.from_dict(m) for m in messages]
    if not result:
        raise ValidationError("messages must not be empty")
    return result


def utc_timestamp() -> str:
    """Current time as an ISO-8601 string with millisecond precision and Z suffix."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class DumpV1:
    """Conversation dump without runtime context."""

    version: ClassVar[int] = DUMP_V1

    model_id: str
    timestamp: str
    messages: list[ChatMessage]
    assistant_context: Any = None
    inference_context: Any = None

    @property
    def runtime_context(self) -> RuntimeContext | None:
        return None

    def to_document(self) -> dict[str, Any]:
        """On-disk document, keys in their canonical order."""
        document: dict[str, Any] = {
            "modelId": self.model_id,
            "timestamp": self.timestamp,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.assistant_context is not None:
            document["assistantContext"] = self.assistant_context
        if self.inference_context is not None:
            document["inferenceContext"] = self.inference_context
        return document


@dataclass
class DumpV2(DumpV1):
    """Conversation dump that records the server launch configuration."""

    version: ClassVar[int] = DUMP_V2

    runtime: RuntimeContext = field(default_factory=RuntimeContext)

    @property
    def runtime_context(self) -> RuntimeContext | None:
        return self.runtime

    def to_document(self) -> dict[str, Any]:
        document = super().to_document()
        document["runtimeContext"] = self.runtime.to_dict()
        return document


ConversationDump = DumpV1 | DumpV2


def load_dump(document: Any, dump_name: str) -> ConversationDump:
    """
    Parse a dump document, upgrading it to the right variant.

    Raises:
        InvalidDumpFormatError: If messages are missing or malformed
    """
    if not isinstance(document, dict) or "messages" not in document:
        raise InvalidDumpFormatError(dump_name, "missing 'messages'")

    raw_messages = document["messages"]
    if not isinstance(raw_messages, list):
        raise InvalidDumpFormatError(dump_name, "'messages' must be a list")

    try:
        messages = coerce_messages(raw_messages)
        runtime = RuntimeContext.coerce(document.get("runtimeContext"))
    except ValidationError as e:
        raise InvalidDumpFormatError(dump_name, str(e)) from e

    common = {
        "model_id": str(document.get("modelId") or ""),
        "timestamp": str(document.get("timestamp") or ""),
        "messages": messages,
        "assistant_context": document.get("assistantContext"),
        "inference_context": document.get("inferenceContext"),
    }

    if runtime is None:
        return DumpV1(**common)
    return DumpV2(**common, runtime=runtime)


# =============================================================================
# Store
# =============================================================================


class ConversationDumpStore:
    """
    Reads and writes conversation dumps in a single directory.

    The KV-cache half of every dump is handled by the SlotManager; this
    class only ever touches the JSON half (and, on delete, removes the
    blob the server left next to it).
    """

    def __init__(self, dumps_dir: Path | str, slot_manager: SlotManager):
        """
        Initialize the store.

        Args:
            dumps_dir: Directory holding <name>.json (and the server's <name>.bin)
            slot_manager: Slot manager used for the KV-cache half of each dump
        """
        self.dumps_dir = Path(dumps_dir)
        self.slot_manager = slot_manager

    def _dump_path(self, dump_name: str) -> Path:
        return self.dumps_dir / dump_filename(dump_name)

    async def _atomic_write(self, target: Path, text: str) -> None:
        """Write text to a temp file beside target, then replace target with it."""
        temp_path = target.with_name(f".{target.name}.{secrets.token_hex(4)}{TEMP_SUFFIX}")
        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(text)
                await f.flush()
            await aiofiles.os.replace(temp_path, target)
        except OSError as e:
            with contextlib.suppress(OSError):
                await aiofiles.os.remove(temp_path)
            logger.error("Failed to write dump", path=str(target), error=str(e))
            raise StorageWriteError(f"Failed to write {target.name}: {e}") from e

    async def save_conversation_dump(
        self,
        model_id: str,
        dump_name: str,
        messages: Iterable[ChatMessage | Mapping[str, Any]],
        runtime_context: RuntimeContext | Mapping[str, Any] | None = None,
        *,
        assistant_context: Any = None,
        inference_context: Any = None,
        slot_id: int = DEFAULT_SLOT_ID,
    ) -> ConversationDump:
        """
        Save the KV cache, then write <dump_name>.json.

        Any KV-cache failure propagates unchanged and nothing is written.

        Returns:
            The dump that was written.
        """
        name = validate_dump_name(dump_name)
        try:
            chat_messages = coerce_messages(messages)
            runtime = RuntimeContext.coerce(runtime_context)
        except ValidationError as e:
            raise InvalidParameterError("messages/runtime_context", str(e)) from e

        log = logger.bind(model_id=model_id, dump_name=name)

        await self.slot_manager.save_kv_cache(model_id, name, slot_id)

        common = {
            "model_id": model_id,
            "timestamp": utc_timestamp(),
            "messages": chat_messages,
            "assistant_context": assistant_context,
            "inference_context": inference_context,
        }
        dump: ConversationDump = (
            DumpV1(**common) if runtime is None else DumpV2(**common, runtime=runtime)
        )

        await aiofiles.os.makedirs(self.dumps_dir, exist_ok=True)
        text = json.dumps(dump.to_document(), indent=2, ensure_ascii=False)
        await self._atomic_write(self._dump_path(name), text)

        log.info(
            "Conversation dump saved",
            message_count=len(chat_messages),
            version=dump.version,
        )
        return dump

    async def read_conversation_dump(self, dump_name: str) -> ConversationDump:
        """
        Read and parse <dump_name>.json without touching the KV cache.

        Raises:
            DumpNotFoundError: The file does not exist
            InvalidDumpFormatError: The file is not a valid UTF-8 JSON dump
            StorageReadError: The file exists but cannot be read
        """
        name = validate_dump_name(dump_name)
        path = self._dump_path(name)

        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                text = await f.read()
        except FileNotFoundError as e:
            logger.warning("Dump not found", dump_name=name, path=str(path))
            raise DumpNotFoundError(name) from e
        except UnicodeDecodeError as e:
            raise InvalidDumpFormatError(name, f"not UTF-8: {e}") from e
        except OSError as e:
            logger.error("Failed to read dump", dump_name=name, path=str(path), error=str(e))
            raise StorageReadError(name, str(e)) from e

        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidDumpFormatError(name, f"invalid JSON: {e}") from e

        return load_dump(document, name)

    async def restore_conversation_dump(
        self,
        model_id: str,
        dump_name: str,
        slot_id: int = DEFAULT_SLOT_ID,
    ) -> list[ChatMessage]:
        """
        Read <dump_name>.json, restore the KV cache, return the messages.

        Returns:
            The dump's messages, in their saved order.
        """
        dump = await self.read_conversation_dump(dump_name)
        await self.slot_manager.restore_kv_cache(model_id, dump_name, slot_id)

        logger.info(
            "Conversation dump restored",
            model_id=model_id,
            dump_name=dump_name,
            slot_id=slot_id,
            message_count=len(dump.messages),
        )
        return dump.messages

    async def list_conversation_dumps(self) -> list[str]:
        """
        Names of all dumps, in directory-listing order.

        Never raises: a missing directory or any filesystem error yields [].
        """
        try:
            entries = await aiofiles.os.listdir(self.dumps_dir)
        except FileNotFoundError:
            return []
        except Exception as e:
            logger.warning("Failed to list dumps", path=str(self.dumps_dir), error=str(e))
            return []

        names = []
        for entry in entries:
            name = dump_name_from_filename(entry)
            if name is not None:
                names.append(name)
        return names

    async def delete_conversation_dump(self, dump_name: str) -> bool:
        """
        Delete <dump_name>.json and the server-written <dump_name>.bin.

        Returns:
            True if the dump existed.
        """
        name = validate_dump_name(dump_name)
        deleted = False

        try:
            await aiofiles.os.remove(self._dump_path(name))
            deleted = True
        except FileNotFoundError:
            pass

        with contextlib.suppress(FileNotFoundError):
            await aiofiles.os.remove(self.dumps_dir / cache_filename(name))

        logger.info("Conversation dump deleted", dump_name=name, existed=deleted)
        return deleted
