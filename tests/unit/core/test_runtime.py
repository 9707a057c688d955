"""
Unit tests for the llama-server runtime.

Process creation is mocked; no llama-server binary is needed.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from llama_kv_manager.config import ServerConfig
from llama_kv_manager.core.dump_store import RuntimeContext
from llama_kv_manager.core.runtime import LlamaServerRuntime
from llama_kv_manager.core.session_registry import SessionRegistry
from llama_kv_manager.errors import ModelStartError

CONTEXT = RuntimeContext(args=("-c", "8192"), model_rel_path="qwen/q4.gguf")


def make_process(pid: int = 4321, returncode=None) -> MagicMock:
    process = MagicMock()
    process.pid = pid
    process.returncode = returncode
    process.wait = AsyncMock(return_value=0)
    return process


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.health = AsyncMock(return_value=True)
    return client


@pytest.fixture
def runtime(test_server_config, dumps_dir, client) -> LlamaServerRuntime:
    return LlamaServerRuntime(test_server_config, dumps_dir, client=client)


@pytest.fixture
def spawn():
    """Patch process creation and port selection."""
    with (
        patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as create,
        patch("llama_kv_manager.core.runtime.find_free_port", return_value=3005),
        patch("llama_kv_manager.core.runtime.is_process_running", return_value=True),
    ):
        create.return_value = make_process()
        yield create


class TestBuildCommand:
    """Tests for command line construction."""

    def test_with_model_path(self, runtime, test_server_config, dumps_dir):
        """Should resolve paths against the models directory."""
        command = runtime.build_command("m1", CONTEXT, 3005, "secret")

        models = test_server_config.models_dir
        assert command == [
            "/opt/llama/llama-server",
            "-m", str(models / "qwen/q4.gguf"),
            "--host", "127.0.0.1",
            "--port", "3005",
            "--api-key", "secret",
            "--slot-save-path", str(dumps_dir),
            "-c", "8192",
        ]

    def test_default_model_path(self, runtime, test_server_config):
        """Should fall back to <model_id>/model.gguf."""
        command = runtime.build_command("m1", RuntimeContext(), 3005, "k")

        assert command[2] == str(test_server_config.models_dir / "m1" / "model.gguf")

    def test_mmproj(self, runtime, test_server_config):
        """Should pass the multimodal projector."""
        ctx = RuntimeContext(model_rel_path="v/model.gguf", mmproj_rel_path="v/mmproj.gguf")

        command = runtime.build_command("v", ctx, 3005, "k")

        index = command.index("--mmproj")
        assert command[index + 1] == str(test_server_config.models_dir / "v/mmproj.gguf")


class TestStartModel:
    """Tests for start_model."""

    async def test_registers_session(self, runtime, spawn, dumps_dir):
        """Should register the new server in the session table."""
        descriptor = await runtime.start_model("m1", CONTEXT)

        assert descriptor.pid == 4321
        assert descriptor.port == 3005
        assert descriptor.api_key
        assert runtime.find_session_by_model("m1") == descriptor
        assert await runtime.get_running_config("m1") == CONTEXT
        assert dumps_dir.is_dir()

    async def test_visible_through_registry(self, runtime, spawn):
        """Should serve lookups made through SessionRegistry."""
        descriptor = await runtime.start_model("m1", CONTEXT)

        assert await SessionRegistry(runtime).find_session_by_model("m1") == descriptor

    async def test_reuses_matching_server(self, runtime, spawn):
        """Should not restart a server already running the same context."""
        first = await runtime.start_model("m1", CONTEXT)
        second = await runtime.start_model("m1", RuntimeContext.from_dict(CONTEXT.to_dict()))

        assert first == second
        assert spawn.await_count == 1

    async def test_replaces_on_different_context(self, runtime, spawn):
        """Should stop the old server and start a new one."""
        old_process = make_process(pid=1000)
        new_process = make_process(pid=2000)
        spawn.side_effect = [old_process, new_process]

        await runtime.start_model("m1", CONTEXT)
        descriptor = await runtime.start_model("m1", RuntimeContext(args=("-c", "2048")))

        old_process.terminate.assert_called_once()
        assert descriptor.pid == 2000
        assert runtime.find_session_by_model("m1").pid == 2000
        assert await runtime.get_running_config("m1") == RuntimeContext(args=("-c", "2048"))

    async def test_exited_server_has_no_running_config(self, runtime, spawn):
        """Should stop reporting the context of a server whose process exited."""
        process = make_process()
        spawn.return_value = process
        await runtime.start_model("m1", CONTEXT)

        process.returncode = -9

        assert await runtime.get_running_config("m1") is None

    async def test_dead_pid_has_no_running_config(self, runtime, spawn):
        """Should check the pid as well as the process handle."""
        await runtime.start_model("m1", CONTEXT)

        with patch("llama_kv_manager.core.runtime.is_process_running", return_value=False):
            assert await runtime.get_running_config("m1") is None

    async def test_restarts_exited_server_with_same_context(self, runtime, spawn):
        """Should launch a new process instead of reusing a dead one."""
        first = make_process(pid=1000)
        spawn.side_effect = [first, make_process(pid=2000)]
        await runtime.start_model("m1", CONTEXT)
        first.returncode = 1

        descriptor = await runtime.start_model("m1", CONTEXT)

        assert descriptor.pid == 2000
        assert spawn.await_count == 2

    async def test_launch_failure(self, runtime, spawn):
        """Should raise ModelStartError when the binary cannot run."""
        spawn.side_effect = FileNotFoundError("llama-server")

        with pytest.raises(ModelStartError):
            await runtime.start_model("m1", CONTEXT)

        assert runtime.find_session_by_model("m1") is None

    async def test_process_exits_during_startup(self, runtime, spawn):
        """Should report a server that exits before becoming healthy."""
        spawn.return_value = make_process(returncode=1)

        with pytest.raises(ModelStartError, match="exited with code 1"):
            await runtime.start_model("m1", CONTEXT)

        assert runtime.find_session_by_model("m1") is None

    async def test_never_healthy(self, tmp_path, dumps_dir, client, spawn):
        """Should give up after the startup timeout and stop the process."""
        config = ServerConfig(
            binary_path=Path("llama-server"),
            models_dir=tmp_path,
            startup_timeout=1.0,
            shutdown_timeout=0.5,
        )
        runtime = LlamaServerRuntime(config, dumps_dir, client=client)
        client.health.return_value = False
        process = make_process()
        spawn.return_value = process

        with pytest.raises(ModelStartError, match="not healthy"):
            await runtime.start_model("m1", CONTEXT)

        process.terminate.assert_called_once()
        assert runtime.find_session_by_model("m1") is None


class TestStopModel:
    """Tests for stop_model and stop_all."""

    async def test_stop(self, runtime, spawn):
        """Should terminate the process and unregister the session."""
        process = make_process()
        spawn.return_value = process
        await runtime.start_model("m1", CONTEXT)

        assert await runtime.stop_model("m1") is True

        process.terminate.assert_called_once()
        assert runtime.find_session_by_model("m1") is None
        assert await runtime.get_running_config("m1") is None

    async def test_stop_unknown(self, runtime):
        """Should report that nothing was running."""
        assert await runtime.stop_model("m1") is False

    async def test_stop_all(self, runtime, spawn):
        """Should stop every server."""
        spawn.side_effect = [make_process(pid=1), make_process(pid=2)]
        await runtime.start_model("m1", CONTEXT)
        await runtime.start_model("m2", CONTEXT)

        await runtime.stop_all()

        assert runtime.table.list_sessions() == []

    async def test_locks_released(self, runtime, spawn):
        """Should drop per-model locks once starts and stops finish."""
        spawn.side_effect = [make_process(pid=1), make_process(pid=2)]
        await runtime.start_model("m1", CONTEXT)
        await runtime.start_model("m2", CONTEXT)
        await runtime.stop_model("m1")

        assert len(runtime._locks) == 0
