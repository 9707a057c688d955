"""
Shared pytest fixtures for llama-kv-manager tests.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from llama_kv_manager.config import ServerConfig, Settings
from llama_kv_manager.core.llama_client import SlotActionResult, SlotInfo
from llama_kv_manager.core.session_registry import (
    SessionDescriptor,
    SessionRegistry,
    SessionTable,
)
from llama_kv_manager.core.slot_manager import SlotManager

# =============================================================================
# Path Fixtures
# =============================================================================


@pytest.fixture
def dumps_dir(tmp_path: Path) -> Path:
    """Temporary dumps directory (not created)."""
    return tmp_path / "llamacpp" / "dumps"


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def test_server_config(tmp_path: Path) -> ServerConfig:
    """Test llama-server configuration."""
    return ServerConfig(
        host="127.0.0.1",
        binary_path=Path("/opt/llama/llama-server"),
        models_dir=tmp_path / "models",
        request_timeout=5.0,
        health_timeout=1.0,
        startup_timeout=2.0,
        shutdown_timeout=1.0,
        max_connections=5,
    )


@pytest.fixture
def test_settings(tmp_path: Path, test_server_config: ServerConfig) -> Settings:
    """Complete test settings."""
    return Settings(
        data_dir=tmp_path,
        log_level="DEBUG",
        server=test_server_config,
    )


# =============================================================================
# Session Fixtures
# =============================================================================


@pytest.fixture
def session() -> SessionDescriptor:
    """A live session for model m1."""
    return SessionDescriptor(model_id="m1", pid=123, port=3000, api_key="k")


@pytest.fixture
def session_table(session: SessionDescriptor) -> SessionTable:
    """Session table holding the m1 session."""
    table = SessionTable()
    table.register(session)
    return table


# =============================================================================
# Mock Fixtures
# =============================================================================


@pytest.fixture
def mock_llama_client() -> MagicMock:
    """Mock llama-server client for unit tests."""
    client = MagicMock()
    client.base_url.side_effect = lambda port: f"http://localhost:{port}"
    client.health = AsyncMock(return_value=True)
    client.slot_action = AsyncMock(
        return_value=SlotActionResult(ok=True, status_code=200, body={"n_saved": 42})
    )
    client.list_slots = AsyncMock(
        return_value=[
            SlotInfo(id=0, is_processing=True),
            SlotInfo(id=1, is_processing=False),
            SlotInfo(id=2, is_processing=False),
        ]
    )
    return client


@pytest.fixture
def alive() -> MagicMock:
    """Liveness check reporting every process as running."""
    return MagicMock(return_value=True)


@pytest.fixture
def slot_manager(session_table: SessionTable, mock_llama_client: MagicMock, alive: MagicMock) -> SlotManager:
    """Slot manager wired to the m1 session and a mock client."""
    return SlotManager(SessionRegistry(session_table), mock_llama_client, is_alive=alive)


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def sample_messages() -> list[dict]:
    """A short conversation."""
    return [
        {"role": "user", "content": "hello"},
        {"role": "assistant", "content": "Hi! How can I help?", "id": "msg-2"},
    ]


@pytest.fixture
def sample_runtime_context() -> dict:
    """A runtimeContext document."""
    return {
        "args": ["-c", "8192", "-ngl", "99"],
        "modelRelPath": "qwen/qwen2.5-7b-q4_k_m.gguf",
        "mmprojRelPath": None,
    }
