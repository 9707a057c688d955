"""
Error definitions for llama-kv-manager.

This module defines the error hierarchy and all specific error types
raised by the session registry, slot manager, dump store and reconciler.
Every error carries a stable code so callers can match on it.
"""

from datetime import UTC, datetime
from typing import Any


class LKVError(Exception):
    """
    Base exception for all llama-kv-manager errors.

    Attributes:
        code: Error code (e.g., "LKV-2001")
        context: Additional context for debugging
        cause: Original exception if wrapping another error
        timestamp: When the error occurred
    """

    code: str = "LKV-9999"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.code = code or self.__class__.code
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a tool response (user-safe)."""
        return {
            "error": self.__class__.__name__,
            "message": str(self),
            "code": self.code,
            "retryable": self.retryable,
        }

    def to_log_dict(self) -> dict[str, Any]:
        """Full context for logging."""
        return {
            **self.to_dict(),
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
            "timestamp": self.timestamp.isoformat(),
        }


# =============================================================================
# Validation Errors (LKV-1xxx)
# =============================================================================


class ValidationError(LKVError):
    """Base class for validation errors."""

    code = "LKV-1000"


class InvalidDumpNameError(ValidationError):
    """Dump name is not usable as a file name."""

    code = "LKV-1001"

    def __init__(self, dump_name: str, reason: str = ""):
        message = f"Invalid dump name: {dump_name!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            context={"dump_name": dump_name, "reason": reason},
        )


class InvalidParameterError(ValidationError):
    """Parameter has invalid type or value."""

    code = "LKV-1003"

    def __init__(self, param_name: str, reason: str):
        super().__init__(
            f"Invalid parameter '{param_name}': {reason}",
            context={"param_name": param_name, "reason": reason},
        )


# =============================================================================
# Not Found Errors (LKV-2xxx)
# =============================================================================


class NotFoundError(LKVError):
    """Base class for resource not found errors."""

    code = "LKV-2000"


class SessionNotFoundError(NotFoundError):
    """No live server session for the model."""

    code = "LKV-2001"

    def __init__(self, model_id: str):
        super().__init__(
            f"No active session found for model: {model_id}",
            context={"model_id": model_id},
        )
        self.model_id = model_id


class DumpNotFoundError(NotFoundError):
    """Requested conversation dump file is absent."""

    code = "LKV-2002"

    def __init__(self, dump_name: str):
        super().__init__(
            f"Conversation dump not found: {dump_name}.json",
            context={"dump_name": dump_name},
        )
        self.dump_name = dump_name


# =============================================================================
# Slot Errors (LKV-3xxx)
# =============================================================================


class SlotError(LKVError):
    """Base class for slot allocation errors."""

    code = "LKV-3000"


class NoIdleSlotError(SlotError):
    """Every slot on the server is busy (or the requested one is)."""

    code = "LKV-3001"
    retryable = True

    def __init__(self, model_id: str, slot_id: int | None = None):
        if slot_id is None:
            message = f"No idle slot available for model: {model_id}"
        else:
            message = f"Slot {slot_id} is not idle for model: {model_id}"
        super().__init__(
            message,
            context={"model_id": model_id, "slot_id": slot_id},
        )
        self.model_id = model_id
        self.slot_id = slot_id


# =============================================================================
# Storage Errors (LKV-4xxx)
# =============================================================================


class StorageError(LKVError):
    """Base class for storage errors."""

    code = "LKV-4000"


class InvalidDumpFormatError(StorageError):
    """Dump file exists but is not a well-formed conversation dump."""

    code = "LKV-4001"

    def __init__(self, dump_name: str, details: str = ""):
        super().__init__(
            f"Invalid conversation dump format: {dump_name}.json",
            context={"dump_name": dump_name, "details": details},
        )
        self.dump_name = dump_name


class StorageWriteError(StorageError):
    """Failed to write a dump file."""

    code = "LKV-4002"
    retryable = True

    def __init__(self, message: str = "Failed to save conversation dump"):
        super().__init__(message)


class StorageReadError(StorageError):
    """Dump file exists but cannot be read."""

    code = "LKV-4003"

    def __init__(self, dump_name: str, details: str = ""):
        super().__init__(
            f"Failed to read conversation dump: {dump_name}.json",
            context={"dump_name": dump_name, "details": details},
        )
        self.dump_name = dump_name


# =============================================================================
# Server Errors (LKV-5xxx)
# =============================================================================


class ServerError(LKVError):
    """Base class for inference server errors."""

    code = "LKV-5000"


class ProcessCrashedError(ServerError):
    """Session exists but its process is gone."""

    code = "LKV-5001"

    def __init__(self, model_id: str, pid: int):
        super().__init__(
            "Model process has crashed! Please reload!",
            context={"model_id": model_id, "pid": pid},
        )
        self.model_id = model_id
        self.pid = pid


class ServerUnreachableError(ServerError):
    """Process is alive but its HTTP listener does not answer /health."""

    code = "LKV-5002"
    retryable = True

    def __init__(self, url: str, details: str = ""):
        super().__init__(
            "Model appears to have crashed! Please reload!",
            context={"url": url, "details": details},
        )
        self.url = url


class SlotActionFailedError(ServerError):
    """Server answered the slot action with a non-success status."""

    code = "LKV-5003"

    def __init__(self, action: str, status_code: int, details: str = ""):
        super().__init__(
            f"KV cache {action} failed with status {status_code}",
            context={
                "action": action,
                "status_code": status_code,
                "details": details,
            },
        )
        self.action = action
        self.status_code = status_code


class ModelStartError(ServerError):
    """Launching a server for the model failed."""

    code = "LKV-5004"

    def __init__(self, model_id: str, details: str = ""):
        message = f"Failed to start model: {model_id}"
        if details:
            message = f"{message}: {details}"
        super().__init__(
            message,
            context={"model_id": model_id, "details": details},
        )
        self.model_id = model_id


# =============================================================================
# Timeout Errors (LKV-6xxx)
# =============================================================================


class ServerTimeoutError(LKVError):
    """Request to the inference server exceeded its timeout."""

    code = "LKV-6001"
    retryable = True

    def __init__(self, url: str, timeout_seconds: float):
        super().__init__(
            f"Inference server request timed out after {timeout_seconds}s",
            context={"url": url, "timeout_seconds": timeout_seconds},
        )
        self.timeout = timeout_seconds


# =============================================================================
# Internal Errors (LKV-9xxx)
# =============================================================================


class InternalError(LKVError):
    """Unexpected internal error."""

    code = "LKV-9001"

    def __init__(self, message: str = "An internal error occurred"):
        super().__init__(message)


# =============================================================================
# Error Handling Utilities
# =============================================================================


def classify_error(error: Exception) -> LKVError:
    """
    Convert any exception into an appropriate LKVError.

    This ensures all errors returned to clients follow a consistent format.
    """
    if isinstance(error, LKVError):
        return error

    error_type = type(error).__name__
    error_msg = str(error)

    if isinstance(error, FileNotFoundError):
        return StorageError(f"File not found: {error_msg}", cause=error)
    if isinstance(error, OSError):
        return StorageError(f"I/O error: {error_msg}", cause=error)
    if isinstance(error, ValueError):
        return ValidationError(error_msg, cause=error)

    return InternalError(f"Unexpected error: {error_type}: {error_msg}")


def format_user_message(error: LKVError) -> str:
    """
    Format an error message for end users.

    The recovery action differs per failure: reload the model, pick another
    dump, or look at the server logs.
    """
    messages = {
        # Validation
        "LKV-1001": "Dump names may use letters, digits, spaces, dots, hyphens and underscores.",
        "LKV-1003": "One of the parameters has an invalid value. Please check your input.",
        # Not Found
        "LKV-2001": "The model is not loaded. Start the model and try again.",
        "LKV-2002": "That saved conversation does not exist. Pick another one from the list.",
        # Slot
        "LKV-3001": "All server slots are busy. Wait for the current generation to finish.",
        # Storage
        "LKV-4001": "That saved conversation is damaged. Pick another one from the list.",
        "LKV-4002": "Failed to write the saved conversation. Check available disk space.",
        "LKV-4003": "The saved conversation could not be read. Check the dumps folder permissions.",
        # Server
        "LKV-5001": "The model process has crashed. Reload the model.",
        "LKV-5002": "The model is not responding. Reload the model.",
        "LKV-5003": "The server rejected the KV cache operation. Check the server logs.",
        "LKV-5004": "The model could not be started. Check the model path and launch arguments.",
        # Timeout
        "LKV-6001": "The server took too long to answer. Check server load and try again.",
        # Internal
        "LKV-9001": "An unexpected error occurred. Please try again or report this issue.",
    }

    if error.code in messages:
        return messages[error.code]

    return str(error)


class ErrorContext:
    """
    Context manager for error handling with automatic logging and classification.

    Usage:
        async with ErrorContext("dump_restore", logger=logger, dump_name=name):
            # ... code that might raise ...
    """

    def __init__(self, operation: str, logger=None, **context):
        self.operation = operation
        self.context = context
        self._logger = logger

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_val is None:
            return False

        lkv_error = classify_error(exc_val)
        lkv_error.context.update(self.context)
        lkv_error.context["operation"] = self.operation

        if self._logger:
            self._logger.error(
                f"Error in {self.operation}",
                error_code=lkv_error.code,
                **lkv_error.context,
            )

        if not isinstance(exc_val, LKVError):
            raise lkv_error from exc_val

        return False
