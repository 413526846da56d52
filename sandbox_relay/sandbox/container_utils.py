# sandbox_relay/sandbox/container_utils.py
"""
Utility functions for Docker container management in the sandbox system.
"""

from typing import List, Optional

import docker
import structlog

logger = structlog.get_logger(__name__)


def cleanup_sandbox_containers(
    container_prefix: str = "sbox-",
    client: Optional[docker.DockerClient] = None,
) -> List[str]:
    """
    Remove sandbox containers left behind by a previous process.

    The session registry lives in memory, so after a crash or restart nothing
    tracks the old containers any more. Call this once at startup.

    Args:
        container_prefix: Prefix to match container names (default: "sbox-")
        client: Docker client to use (default: docker.from_env())

    Returns:
        List of container names that were removed

    Raises:
        docker.errors.DockerException: If the Docker engine cannot be reached
    """
    removed_containers = []

    client = client or docker.from_env()
    containers = client.containers.list(all=True, filters={"name": container_prefix})
    # The name filter is a substring match; keep only true prefix matches
    containers = [c for c in containers if (c.name or "").startswith(container_prefix)]

    if containers:
        logger.info("cleaning_up_leftover_containers", count=len(containers))

    for container in containers:
        try:
            container.remove(force=True)
            removed_containers.append(container.name)
            logger.info("leftover_container_removed", name=container.name)
        except docker.errors.NotFound:
            pass
        except docker.errors.APIError as e:
            logger.warning("leftover_container_not_removed", name=container.name, error=str(e))

    return removed_containers
