#!/usr/bin/env python3
"""
Sandbox Relay - Main Entry Point

Starts the HTTP service that gives every chat thread its own sandbox container.

Usage:
    sandbox-relay                          # Serve with ./sandbox.env (if present)
    sandbox-relay --env-file prod.env      # Serve with another env file
    python -m sandbox_relay.main --help    # Show help
"""

import argparse
import logging
from pathlib import Path

import structlog
import uvicorn
from docker.errors import DockerException
from dotenv import load_dotenv

from .api import create_app
from .config import Config
from .sandbox.container_utils import cleanup_sandbox_containers
from .sandbox.orchestrator import SandboxOrchestrator
from .sandbox.runtime import DockerRuntime
from .sandbox.scheduler import CleanupScheduler
from .sandbox.workspace import WorkspaceStore

logger = structlog.get_logger(__name__)


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level)),
    )


def build_app(cfg: Config):
    """Wire runtime, workspace store, orchestrator and scheduler into the FastAPI app."""
    runtime = DockerRuntime(
        network_mode=cfg.network_mode,
        timeout=cfg.docker_timeout_secs,
        exec_workers=cfg.max_concurrent_execs,
    )
    workspaces = WorkspaceStore(
        cfg.workspace_root,
        max_file_bytes=cfg.max_artifact_file_bytes,
        max_total_bytes=cfg.max_artifact_total_bytes,
    )
    orchestrator = SandboxOrchestrator(runtime, workspaces, cfg)
    scheduler = CleanupScheduler(
        orchestrator,
        interval_secs=cfg.cleanup_interval_secs,
        max_age_hours=cfg.max_session_age_hours,
        workspace_retention_hours=cfg.workspace_retention_hours,
    )
    return create_app(orchestrator, scheduler)


def main():
    """Main entry point for the Sandbox Relay service."""
    parser = argparse.ArgumentParser(description="Sandbox Relay - one sandbox container per chat thread")
    parser.add_argument("--env-file", type=Path, default=Path("sandbox.env"), help="env file to load (default: sandbox.env)")
    parser.add_argument("--host", help="bind address (overrides HOST)")
    parser.add_argument("--port", type=int, help="bind port (overrides PORT)")
    parser.add_argument(
        "--keep-containers",
        action="store_true",
        help="do not remove leftover sandbox containers at startup",
    )
    args = parser.parse_args()

    env_file = args.env_file if args.env_file.exists() else None
    if env_file is not None:
        load_dotenv(env_file)

    cfg = Config.from_env(env_file_path=env_file)
    configure_logging(cfg.log_level)
    logger.info(
        "configuration_loaded",
        env_file=str(env_file) if env_file else None,
        docker_image=cfg.sandbox_image,
        workspace_volume=str(cfg.workspace_root),
    )

    if not args.keep_containers:
        try:
            cleanup_sandbox_containers(cfg.container_name_prefix)
        except DockerException as e:
            logger.warning("leftover_container_cleanup_skipped", error=str(e))

    app = build_app(cfg)
    host = args.host or cfg.host
    port = args.port or cfg.port
    logger.info("server_starting", host=host, port=port)
    uvicorn.run(app, host=host, port=port, log_level=cfg.log_level.lower())


if __name__ == "__main__":
    main()
