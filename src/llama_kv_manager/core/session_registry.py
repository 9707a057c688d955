"""
Session registry for llama-kv-manager.

Maps a model id to the descriptor of the llama-server process currently
serving it. The mapping itself is owned by the runtime layer (SessionTable);
the core only queries it through SessionRegistry and never caches the answer,
so a replaced or exited server is never targeted by a stale descriptor.
"""

from __future__ import annotations

import inspect
import re
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import structlog

from llama_kv_manager.errors import InvalidParameterError, ValidationError

logger = structlog.get_logger()


# =============================================================================
# Models
# =============================================================================


@dataclass(frozen=True)
class SessionDescriptor:
    """A running server instance for one model."""

    model_id: str
    pid: int
    port: int
    api_key: str

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary (api key redacted)."""
        return {
            "model_id": self.model_id,
            "pid": self.pid,
            "port": self.port,
            "api_key": "***" if self.api_key else "",
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionDescriptor:
        """Create from a runtime record ({model_id, pid, port, api_key})."""
        try:
            return cls(
                model_id=str(data["model_id"]),
                pid=int(data["pid"]),
                port=int(data["port"]),
                api_key=str(data.get("api_key") or ""),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed session record: {e}") from e


MODEL_ID_PATTERN = re.compile(r"^\S{1,256}$")


def validate_model_id(model_id: str) -> None:
    """Validate model ID format."""
    if not isinstance(model_id, str) or not MODEL_ID_PATTERN.match(model_id):
        raise InvalidParameterError("model_id", "must be 1-256 non-whitespace characters")


# =============================================================================
# Runtime-side table
# =============================================================================


@runtime_checkable
class SessionSource(Protocol):
    """Anything that can answer "which process serves this model right now"."""

    def find_session_by_model(self, model_id: str) -> Any:
        """Return a SessionDescriptor, an awaitable of one, or None."""
        ...


class SessionTable:
    """
    In-memory session table owned by the runtime layer.

    Holds at most one descriptor per model; registering a model again
    replaces the previous descriptor.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionDescriptor] = {}

    def register(self, descriptor: SessionDescriptor) -> SessionDescriptor | None:
        """Register a descriptor, returning the one it replaced (if any)."""
        previous = self._sessions.get(descriptor.model_id)
        self._sessions[descriptor.model_id] = descriptor
        logger.debug(
            "Session registered",
            model_id=descriptor.model_id,
            pid=descriptor.pid,
            port=descriptor.port,
            replaced_pid=previous.pid if previous else None,
        )
        return previous

    def unregister(self, model_id: str) -> SessionDescriptor | None:
        """Drop the model's descriptor, returning it (if any)."""
        removed = self._sessions.pop(model_id, None)
        if removed:
            logger.debug("Session unregistered", model_id=model_id, pid=removed.pid)
        return removed

    def find_session_by_model(self, model_id: str) -> SessionDescriptor | None:
        return self._sessions.get(model_id)

    def list_sessions(self) -> list[SessionDescriptor]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._sessions


# =============================================================================
# Registry
# =============================================================================


class SessionRegistry:
    """
    Read-only view of the runtime's live session table.

    Every lookup goes to the source; nothing is cached between calls.
    """

    def __init__(self, source: SessionSource):
        """
        Initialize the registry.

        Args:
            source: Runtime object exposing find_session_by_model (sync or async).
        """
        self._source = source

    async def find_session_by_model(self, model_id: str) -> SessionDescriptor | None:
        """
        Look up the session currently serving a model.

        Args:
            model_id: Model identifier.

        Returns:
            The live SessionDescriptor, or None if nothing serves the model.
        """
        validate_model_id(model_id)

        result = self._source.find_session_by_model(model_id)
        if inspect.isawaitable(result):
            result = await result

        if result is None:
            return None
        if isinstance(result, SessionDescriptor):
            return result
        if isinstance(result, dict):
            return SessionDescriptor.from_dict(result)

        raise ValidationError(
            f"Session source returned unsupported type: {type(result).__name__}"
        )
