# sandbox_relay/config.py
from __future__ import annotations

import math
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import structlog
from dotenv import dotenv_values

logger = structlog.get_logger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    # --- upstream credentials ---
    anthropic_api_key: str = ""

    # --- docker bits ---
    sandbox_image: str = "claude-code-runner:latest"
    container_name_prefix: str = "sbox-"
    network_mode: str = "bridge"

    # --- paths (host-side) ---
    workspace_root: Path = Path("/tmp/claude-workspaces")

    # --- in-container canonical path (the tool expects it; do not change lightly) ---
    container_workspace_path: str = "/workspace"

    # --- sandboxed tool invocation ---
    tool_command: Tuple[str, ...] = ("ccr", "code")
    allowed_tools: str = "Bash,Read"
    permission_mode: str = "acceptEdits"

    # --- timing ---
    exec_timeout_secs: float = 900.0
    stop_grace_period_secs: int = 10
    max_concurrent_execs: int = 32
    cleanup_interval_hours: float = 1.0
    max_session_age_hours: float = 24.0
    workspace_retention_hours: Optional[float] = None   # None = keep workspaces forever

    # --- artifact read budgets ---
    max_artifact_file_bytes: int = 5 * 1024 * 1024
    max_artifact_total_bytes: int = 50 * 1024 * 1024

    # --- http adapter ---
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    # ---------- helpers ----------

    @property
    def docker_timeout_secs(self) -> int:
        # The Docker HTTP read timeout must outlast a silent exec stream.
        return int(self.exec_timeout_secs) + 60

    @property
    def cleanup_interval_secs(self) -> float:
        return self.cleanup_interval_hours * 3600

    # ---------- construction ----------

    @staticmethod
    def _load_env_file(env_file_path: Optional[Path]) -> Dict[str, str]:
        """Load KEY=VALUE pairs from an env file if provided (python-dotenv syntax)."""
        if env_file_path is None or not Path(env_file_path).exists():
            return {}
        return {k: v for k, v in dotenv_values(env_file_path).items() if v is not None}

    @staticmethod
    def _get_env_value(name: str, default: Optional[str] = None, env_vars: Optional[Dict[str, str]] = None) -> Optional[str]:
        """File variables first, then system env."""
        if env_vars and name in env_vars:
            return env_vars[name]
        return os.getenv(name, default)

    @classmethod
    def _get_env_number(cls, name: str, default, cast, env_vars, *, allow_zero: bool = False):
        raw = cls._get_env_value(name, None, env_vars)
        if raw is None or raw.strip() == "":
            return default
        try:
            value = cast(raw.strip())
        except ValueError:
            raise ValueError(f"{name} must be a number (got: {raw!r})")
        if not math.isfinite(value):
            raise ValueError(f"{name} must be a finite number (got: {raw!r})")
        if value < 0 or (value == 0 and not allow_zero):
            raise ValueError(f"{name} must be positive (got: {raw!r})")
        return value

    @classmethod
    def from_env(cls, env_file_path: Optional[Path] = None) -> "Config":
        """
        Load configuration from environment variables, optionally from a file.

        Args:
            env_file_path: Optional path to an env file. Variables from the file
                take precedence over system environment variables.

        Environment variables:
          - ANTHROPIC_API_KEY         = (required by the sandboxed tool; warned if missing)
          - DOCKER_IMAGE_NAME         = claude-code-runner:latest
          - WORKSPACE_VOLUME          = /tmp/claude-workspaces
          - CONTAINER_WORKSPACE_PATH  = /workspace
          - CONTAINER_NAME_PREFIX     = sbox-
          - DOCKER_NETWORK_MODE       = bridge
          - SANDBOX_TOOL_COMMAND      = "ccr code"
          - SANDBOX_ALLOWED_TOOLS     = Bash,Read
          - SANDBOX_PERMISSION_MODE   = acceptEdits
          - EXEC_TIMEOUT_SECS         = 900
          - STOP_GRACE_PERIOD_SECS    = 10
          - MAX_CONCURRENT_EXECS      = 32
          - CLEANUP_INTERVAL_HOURS    = 1
          - MAX_SESSION_AGE_HOURS     = 24
          - WORKSPACE_RETENTION_HOURS = (unset: never reap workspaces)
          - MAX_ARTIFACT_FILE_BYTES   = 5242880
          - MAX_ARTIFACT_TOTAL_BYTES  = 52428800
          - HOST / PORT               = 0.0.0.0 / 3000
          - LOG_LEVEL                 = INFO
        """
        env_vars = cls._load_env_file(env_file_path)
        get = lambda name, default=None: cls._get_env_value(name, default, env_vars)  # noqa: E731
        d = cls()

        api_key = get("ANTHROPIC_API_KEY", "") or ""
        if not api_key:
            logger.warning("missing_env_var", name="ANTHROPIC_API_KEY")

        tool_command = tuple(shlex.split(get("SANDBOX_TOOL_COMMAND", "") or "")) or d.tool_command

        container_path = get("CONTAINER_WORKSPACE_PATH", d.container_workspace_path)
        if not container_path.startswith("/"):
            raise ValueError(f"CONTAINER_WORKSPACE_PATH must be absolute (got: {container_path!r})")

        log_level = (get("LOG_LEVEL", d.log_level) or d.log_level).strip().upper()
        if log_level not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of: {', '.join(LOG_LEVELS)} (got: {log_level!r})")

        return cls(
            anthropic_api_key=api_key,
            sandbox_image=get("DOCKER_IMAGE_NAME", d.sandbox_image),
            container_name_prefix=get("CONTAINER_NAME_PREFIX", d.container_name_prefix),
            network_mode=get("DOCKER_NETWORK_MODE", d.network_mode),
            workspace_root=Path(get("WORKSPACE_VOLUME", str(d.workspace_root))).resolve(),
            container_workspace_path=container_path,
            tool_command=tool_command,
            allowed_tools=get("SANDBOX_ALLOWED_TOOLS", d.allowed_tools),
            permission_mode=get("SANDBOX_PERMISSION_MODE", d.permission_mode),
            exec_timeout_secs=cls._get_env_number("EXEC_TIMEOUT_SECS", d.exec_timeout_secs, float, env_vars),
            stop_grace_period_secs=cls._get_env_number(
                "STOP_GRACE_PERIOD_SECS", d.stop_grace_period_secs, int, env_vars, allow_zero=True
            ),
            cleanup_interval_hours=cls._get_env_number(
                "CLEANUP_INTERVAL_HOURS", d.cleanup_interval_hours, float, env_vars
            ),
            max_concurrent_execs=cls._get_env_number(
                "MAX_CONCURRENT_EXECS", d.max_concurrent_execs, int, env_vars
            ),
            max_session_age_hours=cls._get_env_number(
                "MAX_SESSION_AGE_HOURS", d.max_session_age_hours, float, env_vars
            ),
            workspace_retention_hours=cls._get_env_number(
                "WORKSPACE_RETENTION_HOURS", None, float, env_vars
            ),
            max_artifact_file_bytes=cls._get_env_number(
                "MAX_ARTIFACT_FILE_BYTES", d.max_artifact_file_bytes, int, env_vars
            ),
            max_artifact_total_bytes=cls._get_env_number(
                "MAX_ARTIFACT_TOTAL_BYTES", d.max_artifact_total_bytes, int, env_vars
            ),
            host=get("HOST", d.host),
            port=cls._get_env_number("PORT", d.port, int, env_vars),
            log_level=log_level,
        )
