"""Configuration: Pydantic models for termhost settings."""

from __future__ import annotations

import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def default_log_dir() -> Path:
    """Per-user directory for host log files, following platform convention."""
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA") or Path.home() / "AppData" / "Roaming")
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")
    return base / "termhost-logs"


class RpcConfig(BaseModel):
    """RPC listener configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=0, description="Listen port; 0 picks an ephemeral port")


class TerminalConfig(BaseModel):
    """Shell session configuration."""

    cols: int = Field(default=80)
    rows: int = Field(default=30)
    cwd: str | None = Field(
        default=None, description="Working directory for new shells (defaults to $HOME)"
    )
    term_name: str = Field(default="xterm-color")
    poll_interval: float = Field(
        default=0.1, description="Seconds between exit-code checks while waiting"
    )
    completion_timeout: float | None = Field(
        default=None,
        description=(
            "Seconds a completion wait may take before failing. "
            "None waits until the command finishes, is stopped or is unblocked."
        ),
    )
    strip_ansi: bool = Field(
        default=True, description="Strip ANSI escape sequences from RPC output"
    )


class SingletonConfig(BaseModel):
    """Discovery file and launcher mutex configuration."""

    discovery_file: str = Field(
        default="~/.termhost-port.lock",
        description="File holding the running host's port",
    )
    mutex_file: str = Field(
        default_factory=lambda: os.path.join(tempfile.gettempdir(), "termhost-launch.lock"),
        description="Lock file serialising host launches",
    )
    mutex_stale: float = Field(
        default=5.0,
        description="Seconds without a heartbeat after which a launch lock is considered stale",
    )
    mutex_wait: float = Field(
        default=10.0, description="Seconds to keep retrying a held launch lock"
    )
    startup_timeout: float = Field(
        default=10.0, description="Seconds to wait for a launched host to publish its port"
    )

    @property
    def discovery_path(self) -> Path:
        return Path(self.discovery_file).expanduser()

    @property
    def mutex_path(self) -> Path:
        return Path(self.mutex_file).expanduser()


class TermhostConfig(BaseModel):
    """Top-level termhost configuration."""

    rpc: RpcConfig = Field(default_factory=RpcConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    singleton: SingletonConfig = Field(default_factory=SingletonConfig)
    log_file: str | None = Field(
        default=None, description="Optional log file for the host process"
    )

    @classmethod
    def load(cls, config_path: str | None = None) -> TermhostConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            TERMHOST_RPC_HOST             - Interface the RPC server binds to
            TERMHOST_RPC_PORT             - RPC listen port (falls back to MCP_PORT)
            TERMHOST_DISCOVERY_FILE       - Path of the port discovery file
            TERMHOST_MUTEX_FILE           - Path of the launcher lock file
            TERMHOST_COMPLETION_TIMEOUT   - Completion wait timeout in seconds
            TERMHOST_LOG_FILE             - Host log file
        """
        load_dotenv()

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        rpc = config_data.get("rpc", {})
        terminal = config_data.get("terminal", {})
        singleton = config_data.get("singleton", {})

        env_host = os.environ.get("TERMHOST_RPC_HOST")
        if env_host:
            rpc["host"] = env_host

        env_port = os.environ.get("TERMHOST_RPC_PORT") or os.environ.get("MCP_PORT")
        if env_port:
            rpc["port"] = int(env_port)

        env_discovery = os.environ.get("TERMHOST_DISCOVERY_FILE")
        if env_discovery:
            singleton["discovery_file"] = env_discovery

        env_mutex = os.environ.get("TERMHOST_MUTEX_FILE")
        if env_mutex:
            singleton["mutex_file"] = env_mutex

        env_timeout = os.environ.get("TERMHOST_COMPLETION_TIMEOUT")
        if env_timeout:
            terminal["completion_timeout"] = float(env_timeout)

        env_log_file = os.environ.get("TERMHOST_LOG_FILE")
        if env_log_file:
            config_data["log_file"] = env_log_file

        if rpc:
            config_data["rpc"] = rpc
        if terminal:
            config_data["terminal"] = terminal
        if singleton:
            config_data["singleton"] = singleton

        return cls.model_validate(config_data)
