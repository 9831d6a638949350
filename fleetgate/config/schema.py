"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


class GatewayClientConfig(BaseModel):
    """Connection to the gateway."""
    url: str = "ws://127.0.0.1:18789"
    token: str = ""  # Gateway auth token
    timeout_ms: int = 30000  # Default per-call timeout
    connect_timeout_ms: int = 10000  # Handshake timeout


class NodesConfig(BaseModel):
    """Node dispatch configuration."""
    default_agent_id: str = "main"
    default_node: str = ""  # Node id used when none is given
    invoke_timeout_ms: int = 30000
    approval_timeout_ms: int = 120000  # Wait for a human before askFallback applies
    invoke_retries: int = 0  # Same-key retries of a step after a transport failure
    ask: Literal["off", "on-miss", "always"] | None = None  # Requested ask mode


class LoggingConfig(BaseModel):
    """Log output configuration."""
    level: str = "WARNING"
    file: str = ""  # Optional log file path


class Config(BaseSettings):
    """Root configuration for fleetgate."""
    gateway: GatewayClientConfig = Field(default_factory=GatewayClientConfig)
    nodes: NodesConfig = Field(default_factory=NodesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="FLEETGATE_",
        env_nested_delimiter="__",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Config file values arrive as init kwargs; the environment beats them
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @property
    def log_path(self) -> Path | None:
        return Path(self.logging.file).expanduser() if self.logging.file else None
