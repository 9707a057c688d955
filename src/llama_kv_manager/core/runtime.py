"""
llama-server process runtime.

Launches and stops one llama-server process per model and owns the session
table the core queries. Servers are started with --slot-save-path pointing
at the dumps directory, so the <name>.bin blobs they write land next to the
<name>.json dumps.
"""

from __future__ import annotations

import asyncio
import contextlib
import secrets
import socket
from dataclasses import dataclass
from pathlib import Path

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential,
)

from llama_kv_manager.config import ServerConfig
from llama_kv_manager.core.dump_store import RuntimeContext
from llama_kv_manager.core.liveness import is_process_running
from llama_kv_manager.core.llama_client import LlamaServerClient
from llama_kv_manager.core.locks import KeyedLock
from llama_kv_manager.core.session_registry import (
    SessionDescriptor,
    SessionTable,
    validate_model_id,
)
from llama_kv_manager.errors import ModelStartError

logger = structlog.get_logger()

DEFAULT_MODEL_FILENAME = "model.gguf"


class _ServerNotReady(Exception):
    """Raised while a freshly started server has not answered /health yet."""


@dataclass
class RunningServer:
    """A llama-server process started by this runtime."""

    descriptor: SessionDescriptor
    runtime_context: RuntimeContext
    process: asyncio.subprocess.Process


def find_free_port(host: str = "localhost") -> int:
    """Ask the OS for an unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


class LlamaServerRuntime:
    """
    Starts, tracks and stops llama-server processes.

    At most one server runs per model. Starting a model with a different
    runtime context replaces the running server; starting it with the same
    context reuses it.
    """

    def __init__(
        self,
        config: ServerConfig,
        slot_save_path: Path | str,
        client: LlamaServerClient | None = None,
        table: SessionTable | None = None,
    ):
        """
        Initialize the runtime.

        Args:
            config: Server binary, paths and timeouts
            slot_save_path: Directory the servers write KV-cache blobs into
            client: HTTP client used for readiness probes
            table: Session table to register servers in
        """
        self.config = config
        self.slot_save_path = Path(slot_save_path)
        self.client = client or LlamaServerClient(config)
        self.table = table or SessionTable()
        self._servers: dict[str, RunningServer] = {}
        self._locks = KeyedLock()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def find_session_by_model(self, model_id: str) -> SessionDescriptor | None:
        return self.table.find_session_by_model(model_id)

    async def get_running_config(self, model_id: str) -> RuntimeContext | None:
        """
        Runtime context the model's current server was started with.

        Returns None when no server was started or its process has exited.
        """
        server = self._servers.get(model_id)
        if server is None or not self._is_live(server):
            return None
        return server.runtime_context

    @staticmethod
    def _is_live(server: RunningServer) -> bool:
        return server.process.returncode is None and is_process_running(server.descriptor.pid)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def build_command(
        self,
        model_id: str,
        runtime_context: RuntimeContext,
        port: int,
        api_key: str,
    ) -> list[str]:
        """Command line for a llama-server serving the model."""
        model_rel_path = runtime_context.model_rel_path or f"{model_id}/{DEFAULT_MODEL_FILENAME}"
        model_path = self.config.models_dir / model_rel_path

        command = [
            str(self.config.binary_path),
            "-m", str(model_path),
        ]
        if runtime_context.mmproj_rel_path:
            command += ["--mmproj", str(self.config.models_dir / runtime_context.mmproj_rel_path)]
        command += [
            "--host", self.config.host,
            "--port", str(port),
            "--api-key", api_key,
            "--slot-save-path", str(self.slot_save_path),
            *runtime_context.args,
        ]
        return command

    async def start_model(
        self,
        model_id: str,
        runtime_context: RuntimeContext | None = None,
    ) -> SessionDescriptor:
        """
        Ensure a server for the model runs with the given runtime context.

        Returns:
            The descriptor of the (possibly reused) server.

        Raises:
            ModelStartError: The process could not be launched or never became healthy
        """
        validate_model_id(model_id)
        context = runtime_context or RuntimeContext()
        log = logger.bind(model_id=model_id)

        async with self._locks.hold(model_id):
            existing = self._servers.get(model_id)
            if (
                existing is not None
                and existing.runtime_context == context
                and self._is_live(existing)
            ):
                log.debug("Reusing running server", pid=existing.descriptor.pid)
                return existing.descriptor

            if existing is not None:
                log.info("Replacing running server", pid=existing.descriptor.pid)
                await self._stop_locked(model_id)

            port = find_free_port(self.config.host)
            api_key = secrets.token_urlsafe(24)
            command = self.build_command(model_id, context, port, api_key)

            self.slot_save_path.mkdir(parents=True, exist_ok=True)
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
            except OSError as e:
                log.error("Failed to launch llama-server", error=str(e))
                raise ModelStartError(model_id, str(e)) from e

            log.info("llama-server launched", pid=process.pid, port=port)

            try:
                await self._wait_until_ready(model_id, process, port)
            except BaseException:
                await self._terminate(process)
                raise

            descriptor = SessionDescriptor(
                model_id=model_id,
                pid=process.pid,
                port=port,
                api_key=api_key,
            )
            self._servers[model_id] = RunningServer(descriptor, context, process)
            self.table.register(descriptor)
            log.info("Model ready", pid=process.pid, port=port)
            return descriptor

    async def _wait_until_ready(
        self,
        model_id: str,
        process: asyncio.subprocess.Process,
        port: int,
    ) -> None:
        """Poll /health with backoff until it answers, the process dies, or time runs out."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(self.config.startup_timeout),
                wait=wait_exponential(multiplier=0.25, min=0.25, max=2),
                retry=retry_if_exception_type(_ServerNotReady),
                reraise=True,
            ):
                with attempt:
                    if process.returncode is not None:
                        raise ModelStartError(
                            model_id, f"process exited with code {process.returncode}"
                        )
                    if not await self.client.health(port):
                        raise _ServerNotReady()
        except _ServerNotReady as e:
            raise ModelStartError(
                model_id,
                f"not healthy after {self.config.startup_timeout}s",
            ) from e

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning("llama-server did not exit, killing", pid=process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def _stop_locked(self, model_id: str) -> bool:
        server = self._servers.pop(model_id, None)
        self.table.unregister(model_id)
        if server is None:
            return False
        await self._terminate(server.process)
        logger.info("Model stopped", model_id=model_id, pid=server.descriptor.pid)
        return True

    async def stop_model(self, model_id: str) -> bool:
        """
        Stop the model's server.

        Returns:
            True if a server was running.
        """
        async with self._locks.hold(model_id):
            return await self._stop_locked(model_id)

    async def stop_all(self) -> None:
        """Stop every server started by this runtime."""
        for model_id in list(self._servers):
            await self.stop_model(model_id)
