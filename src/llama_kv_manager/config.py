"""
Configuration management for llama-kv-manager.

Supports:
- Environment variables (LKV_ prefix, nested with "__")
- .env files
- Pydantic validation
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseSettings):
    """llama-server process and HTTP client configuration."""

    model_config = SettingsConfigDict(env_prefix="LKV_SERVER_")

    host: str = Field(default="localhost", description="Host the servers listen on")
    binary_path: Path = Field(
        default=Path("llama-server"),
        description="llama-server executable (name on PATH or absolute path)",
    )
    models_dir: Path = Field(
        default=Path.home() / ".llama-kv" / "models",
        description="Base directory that model/mmproj relative paths resolve against",
    )
    request_timeout: float = Field(
        default=60.0, ge=0.1, description="Slot action timeout in seconds"
    )
    health_timeout: float = Field(
        default=5.0, ge=0.1, description="Health probe timeout in seconds"
    )
    startup_timeout: float = Field(
        default=120.0, ge=1.0, description="Time allowed for a new server to become healthy"
    )
    shutdown_timeout: float = Field(
        default=10.0, ge=0.1, description="Grace period before a server is killed"
    )
    max_connections: int = Field(
        default=10, ge=1, description="Maximum concurrent HTTP connections"
    )

    @field_validator("models_dir", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path) -> Path:
        """Expand user home directory in paths."""
        return Path(v).expanduser()


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="LKV_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    data_dir: Path = Field(
        default=Path.home() / ".llama-kv",
        description="Application data folder",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format",
    )

    server: ServerConfig = Field(default_factory=ServerConfig)

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        """Expand user home directory in paths."""
        return Path(v).expanduser()

    @property
    def dumps_dir(self) -> Path:
        """Directory holding <name>.json dumps and the server's <name>.bin files."""
        return self.data_dir / "llamacpp" / "dumps"

    def ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        self.dumps_dir.mkdir(parents=True, exist_ok=True)


# Alias for convenience
Config = Settings


def load_settings() -> Settings:
    """Load settings from environment and config files."""
    return Settings()

