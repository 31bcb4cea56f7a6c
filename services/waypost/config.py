"""
Configuration management for the Waypost server.

Non-secret configuration loaded from a YAML file, overridable by
WAYPOST_* environment variables.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_PATH = "/etc/waypost/config.yaml"


def yaml_config_settings_source() -> dict[str, Any]:
    """Load configuration from the YAML file named by WAYPOST_CONFIG_FILE."""
    config_path = Path(os.environ.get("WAYPOST_CONFIG_FILE", DEFAULT_CONFIG_PATH))
    if config_path.exists():
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    return {}


# --- Server Configuration ---


class AdvertiseAddr(BaseModel):
    """An address runners and entrypoints use to reach this server."""

    addr: str = Field(description="host:port of the server")
    tls: bool = Field(default=True)
    tls_skip_verify: bool = Field(default=False)


class ServerConfig(BaseModel):
    """Server identity as seen by runners."""

    advertise_addrs: list[AdvertiseAddr] = Field(
        default_factory=list,
        description="Addresses handed to runners for deployments. Empty means none configured.",
    )


# --- Job Configuration ---


class JobsConfig(BaseModel):
    """Job queue behaviour."""

    waiting_timeout_seconds: float = Field(
        default=120,
        description="How long an assigned job may wait for an Ack before it is requeued",
    )
    terminal_batch_size: int = Field(
        default=64,
        description="Maximum events per buffered Terminal replay frame",
    )
    default_expires_in: str = Field(
        default="",
        description="Expiry applied to queued jobs without one (Go duration, empty = never)",
    )


# --- Log Configuration ---


class LogsConfig(BaseModel):
    """Instance log buffering."""

    buffer_size: int = Field(default=1000, description="Lines retained per instance")
    backlog: int = Field(default=100, description="Lines replayed to a new log reader")


# --- Token Configuration ---


class TokensConfig(BaseModel):
    """Token minting and verification."""

    default_key_id: str = Field(default="k1", description="HMAC key used to sign new tokens")
    key_size_bytes: int = Field(default=32, description="Size of generated HMAC keys")
    default_user: str = Field(default="waypoint", description="User named in minted tokens")
    magic: str = Field(default="wp24", description="Prefix identifying encoded tokens")
    invite_max_duration: str = Field(
        default="",
        description="Upper bound on invite token lifetime (Go duration, empty = no limit)",
    )


# --- Exec Configuration ---


class ExecConfig(BaseModel):
    """Exec session limits."""

    max_sessions_per_instance: int = Field(
        default=0,
        description="Concurrent exec sessions allowed per instance. 0 = unlimited.",
    )


# --- Main Settings ---


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="WAYPOST_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="waypost-server")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True, description="JSON logging in production")

    server: ServerConfig = Field(default_factory=ServerConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    logs: LogsConfig = Field(default_factory=LogsConfig)
    tokens: TokensConfig = Field(default_factory=TokensConfig)
    exec: ExecConfig = Field(default_factory=ExecConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize settings sources: env vars override YAML config."""
        return (
            init_settings,
            env_settings,
            yaml_config_settings_source,
            dotenv_settings,
            file_secret_settings,
        )


# Global settings instance
settings = Settings()
