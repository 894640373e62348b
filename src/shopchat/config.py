"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class ModelConfig(BaseModel):
    backend: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 3000
    temperature: float = 0.5
    system_prompt: str = ""
    timeout: float = 60.0  # seconds per generation call


class AnthropicConfig(BaseModel):
    api_key: str
    base_url: Optional[str] = None
    max_retries: int = 2
    timeout: int = 120


class ToolServiceConfig(BaseModel):
    endpoint: str = "http://127.0.0.1:8787/tools/call"
    timeout: float = 10.0  # seconds per attempt
    headers: dict[str, str] = Field(default_factory=dict)


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=0.1, ge=0)
    max_delay: float = Field(default=5.0, ge=0)


class ConversationConfig(BaseModel):
    max_tool_rounds: int = Field(default=5, ge=1)
    max_history_messages: int = 20
    max_block_chars: int = 16384
    max_concurrent_tools: int = 0  # 0 = one slot per invocation in the turn
    tools: list[str] = Field(default_factory=list)  # empty = every registered tool


class SessionConfig(BaseModel):
    inactivity_timeout: float = 30 * 60
    rate_limit_per_minute: int = 20
    max_messages: int = 200
    sweep_interval: float = 60.0


class ArchiverConfig(BaseModel):
    interval: float = 30.0
    queue_size: int = Field(default=100, ge=1)
    retry: RetryConfig = Field(default_factory=lambda: RetryConfig(max_attempts=5, base_delay=0.5, max_delay=30.0))


class StorageConfig(BaseModel):
    db_path: str = "./data/shopchat.db"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    data_dir: str = "./data"
    model: ModelConfig = Field(default_factory=ModelConfig)
    anthropic: Optional[AnthropicConfig] = None
    tool_service: ToolServiceConfig = Field(default_factory=ToolServiceConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    archiver: ArchiverConfig = Field(default_factory=ArchiverConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # First pass: extract data_dir for self-referencing
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
