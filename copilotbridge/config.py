"""Configuration models and loaders for copilotbridge.

This module defines the runtime configuration schema and how values are loaded
from YAML plus environment variable overrides.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "copilotbridge/config.yaml"
DEFAULT_MODEL = "gpt-4o-2024-11-20"
DEFAULT_TOKEN_EXCHANGE_URL = "https://api.github.com/copilot_internal/v2/token"


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class EditorConfig(BaseModel):
    """Editor identity announced to the language server and the chat API."""

    editor_name: str = "Neovim"
    editor_version: str = "0.10.3"
    plugin_name: str = "copilot.lua"
    plugin_version: str = "1.43.0"
    integration_id: str = "vscode-chat"

    @property
    def editor_version_header(self) -> str:
        """Return the `Editor-Version` header value."""
        return f"{self.editor_name}/{self.editor_version}"

    def editor_info_params(self) -> dict[str, Any]:
        """Build `setEditorInfo` / initialization option params."""
        return {
            "editorInfo": {"name": self.editor_name, "version": self.editor_version},
            "editorPluginInfo": {"name": self.plugin_name, "version": self.plugin_version},
        }


def default_copilot_config_dir() -> Path:
    """Resolve the Copilot language server config directory (XDG rules)."""
    xdg = os.getenv("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "github-copilot"
    if sys.platform == "win32":
        return Path.home() / "AppData" / "Local" / "github-copilot"
    return Path.home() / ".config" / "github-copilot"


class BridgeConfig(BaseModel):
    """Top-level bridge configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:11434"

    copilot_config_dir: str | None = None
    language_server_command: str = "node"
    language_server_path: str | None = None
    language_server_args: list[str] = Field(default_factory=lambda: ["--stdio"])

    default_model: str | None = None
    token_exchange_url: str = DEFAULT_TOKEN_EXCHANGE_URL
    token_exchange_timeout_seconds: float = 30.0
    rpc_timeout_seconds: float = 60.0
    sign_in_timeout_seconds: float = 900.0
    token_renewal_interval_seconds: float | None = None
    renew_before_expiry_seconds: float | None = None
    open_browser: bool = True

    editor: EditorConfig = Field(default_factory=EditorConfig)
    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _validate_service_base_url(self) -> "BridgeConfig":
        """Validate that service_base_url includes host and port."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:11434")
        if self.default_model is None:
            self.default_model = DEFAULT_MODEL
        if self.token_renewal_interval_seconds is None:
            self.token_renewal_interval_seconds = 300.0
        if self.renew_before_expiry_seconds is None:
            self.renew_before_expiry_seconds = 120.0
        if self.logging is None:
            self.logging = LoggingConfig()
        return self

    @field_validator(
        "token_exchange_timeout_seconds",
        "rpc_timeout_seconds",
        "sign_in_timeout_seconds",
        "token_renewal_interval_seconds",
    )
    @classmethod
    def _validate_positive_seconds(cls, value: float | None) -> float | None:
        """Ensure timeouts and intervals are strictly positive."""
        if value is None:
            return None
        if value <= 0:
            raise ValueError("timeouts and intervals must be > 0")
        return value

    @field_validator("language_server_args", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """Treat explicit YAML `null` for list fields as an empty list."""
        if value is None:
            return []
        return value

    def resolved_copilot_config_dir(self) -> Path:
        """Return the configured Copilot config dir or the platform default."""
        if self.copilot_config_dir:
            return Path(self.copilot_config_dir).expanduser()
        return default_copilot_config_dir()


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    env_map = {
        "service_base_url": "COPILOTBRIDGE_SERVICE_BASE_URL",
        "copilot_config_dir": "COPILOTBRIDGE_COPILOT_CONFIG_DIR",
        "language_server_command": "COPILOTBRIDGE_LANGUAGE_SERVER_COMMAND",
        "language_server_path": "COPILOTBRIDGE_LANGUAGE_SERVER_PATH",
        "default_model": "COPILOTBRIDGE_DEFAULT_MODEL",
        "token_exchange_timeout_seconds": "COPILOTBRIDGE_TOKEN_EXCHANGE_TIMEOUT_SECONDS",
        "rpc_timeout_seconds": "COPILOTBRIDGE_RPC_TIMEOUT_SECONDS",
        "token_renewal_interval_seconds": "COPILOTBRIDGE_TOKEN_RENEWAL_INTERVAL_SECONDS",
        "renew_before_expiry_seconds": "COPILOTBRIDGE_RENEW_BEFORE_EXPIRY_SECONDS",
        "open_browser": "COPILOTBRIDGE_OPEN_BROWSER",
        "logging.level": "COPILOTBRIDGE_LOG_LEVEL",
        "logging.json_logs": "COPILOTBRIDGE_LOG_JSON",
    }

    out = dict(data)
    out.setdefault("logging", {})

    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key in {
            "token_exchange_timeout_seconds",
            "rpc_timeout_seconds",
            "token_renewal_interval_seconds",
            "renew_before_expiry_seconds",
        }:
            out[key] = float(value)
        elif key == "open_browser":
            out[key] = value.lower() in {"1", "true", "yes", "on"}
        elif key == "logging.json_logs":
            out["logging"]["json"] = value.lower() in {"1", "true", "yes", "on"}
        elif key == "logging.level":
            out["logging"]["level"] = value
        else:
            out[key] = value

    return out


def load_config(path: str | None = None) -> BridgeConfig:
    """Load, merge, and validate bridge configuration."""
    final_path = path or os.getenv("COPILOTBRIDGE_CONFIG") or DEFAULT_CONFIG_PATH
    raw = _load_yaml(final_path)
    raw = _override_from_env(raw)
    return BridgeConfig.model_validate(raw)
