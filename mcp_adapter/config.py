"""
Configuration models for the adapter and its tool servers.

Example YAML:

    max_call_timeout: 120
    servers:
      - server_id: twitter
        command: ["python", "-m", "twitter_mcp"]
        call_timeout: 20
        max_concurrent_calls: 4
        namespace_tools: true
        secure_values:
          twitter_api_key: {env: TWITTER_API_KEY}
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from mcp_adapter.protocol import SUPPORTED_PROTOCOL_VERSIONS

logger = logging.getLogger(__name__)


class SecureValue(BaseModel):
    """A secret argument value, either literal or read from the environment."""

    value: str | None = None
    env: str | None = None

    @model_validator(mode="after")
    def _one_source(self) -> "SecureValue":
        if (self.value is None) == (self.env is None):
            raise ValueError("secure value needs exactly one of 'value' or 'env'")
        return self

    def resolve(self) -> str | None:
        if self.env is not None:
            return os.environ.get(self.env)
        return self.value


class ServerConfig(BaseModel):
    """Per-server settings: transport target plus call and discovery policy."""

    server_id: str = Field(..., min_length=1)
    command: list[str] = Field(default_factory=list, description="Command that launches a stdio server")
    env: dict[str, str] | None = None
    handshake_timeout: float = Field(default=10.0, gt=0)
    handshake_retries: int = Field(default=2, ge=0)
    handshake_backoff: float = Field(default=0.5, ge=0)
    call_timeout: float = Field(default=30.0, gt=0)
    max_concurrent_calls: int | None = Field(default=None, ge=1)
    namespace_tools: bool = False
    max_schema_depth: int = Field(default=8, ge=1)
    reconnect: bool = False
    queue_during_reconnect: bool = True
    protocol_violation_threshold: int = Field(default=3, ge=1)
    secure_values: dict[str, SecureValue] = Field(default_factory=dict)
    strict_secure_values: bool = False

    @field_validator("server_id")
    @classmethod
    def _no_separator(cls, value: str) -> str:
        if "__" in value:
            raise ValueError("server_id must not contain '__' (reserved for namespacing)")
        return value

    @field_validator("secure_values", mode="before")
    @classmethod
    def _literal_secrets(cls, value: Any) -> Any:
        # Plain strings are shorthand for literal secrets.
        if isinstance(value, dict):
            return {
                k: {"value": v} if isinstance(v, str) else v
                for k, v in value.items()
            }
        return value


class AdapterConfig(BaseModel):
    """Adapter-wide settings."""

    servers: list[ServerConfig] = Field(default_factory=list)
    max_call_timeout: float = Field(default=120.0, gt=0)
    client_name: str = "mcp-adapter"
    client_version: str = "0.1.0"
    protocol_versions: list[str] = Field(default_factory=lambda: list(SUPPORTED_PROTOCOL_VERSIONS))

    @model_validator(mode="after")
    def _unique_servers(self) -> "AdapterConfig":
        seen: set[str] = set()
        for server in self.servers:
            if server.server_id in seen:
                raise ValueError(f"Duplicate server_id: {server.server_id}")
            seen.add(server.server_id)
        return self

    def server(self, server_id: str) -> ServerConfig | None:
        for server in self.servers:
            if server.server_id == server_id:
                return server
        return None


def load_config(path: str | Path) -> AdapterConfig:
    """Load an AdapterConfig from a YAML file."""
    path = Path(path)
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    config = AdapterConfig.model_validate(data)
    logger.info(f"Loaded adapter config from {path}: servers={[s.server_id for s in config.servers]}")
    return config
