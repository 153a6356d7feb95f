"""
Configuration management for acp-relay

Uses pydantic-settings for environment variable parsing and validation.
Every setting can be overridden with an ``ACP_RELAY_`` prefixed variable
or in a ``.env`` file.
"""

import shlex
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .protocol.schema import PROTOCOL_VERSION
from .session.compression import DEFAULT_MAX_SUMMARY_LENGTH, CompressionConfig


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACP_RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "acp-relay"
    debug: bool = False
    log_level: str = "INFO"

    # Agent
    default_agent: Literal["opencode", "claude"] = "opencode"
    agent_command: str = Field(default="", description="Override the agent command line")
    protocol_version: int = PROTOCOL_VERSION
    request_timeout: float | None = Field(default=None, description="Seconds per agent call")

    # Permissions
    permission_mode: Literal["allow", "reject", "cancel", "ask"] = "allow"
    approval_timeout: float = Field(default=300.0, description="Seconds to wait in ask mode")

    # Compression
    max_summary_length: int = DEFAULT_MAX_SUMMARY_LENGTH

    # Storage
    store_dir: Path = Field(
        default=Path("~/.acp-relay/sessions"),
        description="Directory for captured sessions",
    )
    max_stored_sessions: int = Field(default=50, description="Captured sessions to keep")

    # Session listing
    list_sessions_limit: int = 10
    claude_projects_dir: Path = Path("~/.claude/projects")

    @field_validator("store_dir", "claude_projects_dir", mode="after")
    @classmethod
    def expand_user(cls, v: Path) -> Path:
        return v.expanduser()

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.strip().upper() if v else "INFO"

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level

    def agent_command_for(self, agent: str | None = None) -> list[str]:
        """Command line used to spawn ``agent`` (default agent if None)."""
        if self.agent_command:
            return shlex.split(self.agent_command)

        from .agent.process import command_for_agent

        return command_for_agent(agent or self.default_agent)

    def compression_config(self) -> CompressionConfig:
        return CompressionConfig(max_summary_length=self.max_summary_length)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
