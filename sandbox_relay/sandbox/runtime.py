# sandbox_relay/sandbox/runtime.py

"""
Container runtime boundary.

The orchestrator only talks to `ContainerRuntime`; `DockerRuntime` is the
production implementation on top of the Docker SDK. The SDK is blocking, so
every call is pushed to a worker thread and the event loop stays free while
the engine works. Exec streams hold their thread for the whole tool run, so
they get a pool of their own; create/start/stop/remove never queue behind a
hung exec, and a deadline can always reach the container to stop it.

Docker SDK exceptions never cross this boundary: they are translated into the
sandbox error taxonomy (ProvisionFailure, ExecFailure, ...).
"""

from __future__ import annotations

import abc
import asyncio
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Mapping, Optional, Sequence, Tuple

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from ..errors import (
    ContainerNotRunning,
    ExecFailure,
    LogsFailure,
    ProvisionFailure,
    StartFailure,
    TeardownFailure,
)

logger = structlog.get_logger(__name__)

# Docker container names: [a-zA-Z0-9][a-zA-Z0-9_.-]*
_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]")


def container_name_for(prefix: str, session_id: str) -> str:
    return _NAME_UNSAFE.sub("-", f"{prefix}{session_id}")


class ContainerRuntime(abc.ABC):
    """Capability surface the orchestrator needs from a container engine."""

    @abc.abstractmethod
    async def create(
        self,
        image: str,
        env: Mapping[str, str],
        workspace_host_path: str,
        container_mount_path: str,
        *,
        name: Optional[str] = None,
    ) -> str:
        """Create (not start) a container; return its handle."""

    @abc.abstractmethod
    async def start(self, handle: str) -> None: ...

    @abc.abstractmethod
    async def exec(self, handle: str, argv: Sequence[str]) -> Tuple[bytes, bytes]:
        """Run argv in the container; return (stdout, stderr) once the stream ends."""

    @abc.abstractmethod
    async def logs(self, handle: str) -> bytes: ...

    @abc.abstractmethod
    async def stop(self, handle: str, grace_period: int) -> None: ...

    @abc.abstractmethod
    async def remove(self, handle: str) -> None: ...

    def close(self) -> None:
        """Release runtime-held resources (worker pools, clients)."""


class DockerRuntime(ContainerRuntime):
    """
    Docker SDK implementation.

    Args:
        client: Pre-built DockerClient (tests inject a mock). Built lazily with
            docker.from_env() when omitted.
        network_mode: Network for new sandboxes ("bridge", "none", ...).
        timeout: HTTP timeout (seconds) for the lazily built client. Must exceed
            the longest silent stretch of an exec stream.
        exec_workers: Size of the dedicated exec pool, i.e. how many tool runs
            stream at once. Further execs wait for a free worker.
    """

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        network_mode: str = "bridge",
        timeout: Optional[int] = None,
        exec_workers: int = 32,
    ):
        self._client = client
        self.network_mode = network_mode
        self.timeout = timeout
        self._exec_pool = ThreadPoolExecutor(max_workers=exec_workers, thread_name_prefix="sandbox-exec")

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            kwargs = {"timeout": self.timeout} if self.timeout else {}
            self._client = docker.from_env(**kwargs)
        return self._client

    # ---------- create / start ----------

    async def create(
        self,
        image: str,
        env: Mapping[str, str],
        workspace_host_path: str,
        container_mount_path: str,
        *,
        name: Optional[str] = None,
    ) -> str:
        try:
            handle = await asyncio.to_thread(
                self._create_container, image, dict(env), workspace_host_path, container_mount_path, name
            )
        except ImageNotFound as e:
            raise ProvisionFailure(f"Sandbox image {image!r} not found") from e
        except (DockerException, OSError) as e:
            # OSError covers connection failures raised by the HTTP layer
            raise ProvisionFailure(f"Could not create sandbox container: {e}") from e
        logger.info("container_created", container_id=handle[:12], name=name, image=image)
        return handle

    def _create_container(
        self,
        image: str,
        env: dict,
        host_path: str,
        mount_path: str,
        name: Optional[str],
    ) -> str:
        if name:
            self._remove_stale(name)
        container = self.client.containers.create(
            image,
            name=name,
            environment=env,
            volumes={host_path: {"bind": mount_path, "mode": "rw"}},
            working_dir=mount_path,
            tty=True,
            stdin_open=True,
            network_mode=self.network_mode,
            auto_remove=False,
        )
        return container.id

    def _remove_stale(self, name: str) -> None:
        """Drop a leftover container holding `name` (e.g. from a crashed run)."""
        try:
            existing = self.client.containers.get(name)
        except NotFound:
            return
        logger.warning("stale_container_removed", name=name, container_id=(existing.id or "")[:12])
        existing.remove(force=True)

    async def start(self, handle: str) -> None:
        try:
            await asyncio.to_thread(self._start_container, handle)
        except (DockerException, OSError) as e:
            raise StartFailure(f"Could not start container {handle[:12]}: {e}") from e
        logger.info("container_started", container_id=handle[:12])

    def _start_container(self, handle: str) -> None:
        self.client.containers.get(handle).start()

    # ---------- exec ----------

    async def exec(self, handle: str, argv: Sequence[str]) -> Tuple[bytes, bytes]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._exec_pool, self._exec_blocking, handle, list(argv))

    def _exec_blocking(self, handle: str, argv: list) -> Tuple[bytes, bytes]:
        try:
            container = self.client.containers.get(handle)
        except NotFound as e:
            raise ContainerNotRunning(f"Container {handle[:12]} no longer exists") from e
        except (DockerException, OSError) as e:
            raise ExecFailure(f"Could not look up container {handle[:12]}: {e}") from e

        if container.status != "running":
            raise ContainerNotRunning(f"Container {handle[:12]} is {container.status}, not running")

        stdout, stderr = bytearray(), bytearray()
        try:
            result = container.exec_run(argv, stdout=True, stderr=True, stream=True, demux=True)
            # With stream+demux the output is a generator of (stdout, stderr) frames
            for out_chunk, err_chunk in result.output:
                if out_chunk:
                    stdout.extend(out_chunk)
                if err_chunk:
                    stderr.extend(err_chunk)
        except APIError as e:
            if e.status_code == 409:
                raise ContainerNotRunning(f"Container {handle[:12]} is not running") from e
            raise ExecFailure(f"Exec failed in {handle[:12]}: {e}") from e
        except (DockerException, OSError) as e:
            raise ExecFailure(f"Exec stream failed in {handle[:12]}: {e}") from e
        return bytes(stdout), bytes(stderr)

    # ---------- logs ----------

    async def logs(self, handle: str) -> bytes:
        try:
            return await asyncio.to_thread(self._logs_blocking, handle)
        except (DockerException, OSError) as e:
            raise LogsFailure(f"Could not fetch logs for {handle[:12]}: {e}") from e

    def _logs_blocking(self, handle: str) -> bytes:
        return self.client.containers.get(handle).logs(stdout=True, stderr=True, timestamps=False)

    # ---------- teardown ----------

    async def stop(self, handle: str, grace_period: int) -> None:
        try:
            await asyncio.to_thread(self._stop_blocking, handle, grace_period)
        except NotFound:
            logger.warning("container_already_gone", container_id=handle[:12], op="stop")
            return
        except (DockerException, OSError) as e:
            raise TeardownFailure(f"Could not stop container {handle[:12]}: {e}") from e
        logger.info("container_stopped", container_id=handle[:12])

    def _stop_blocking(self, handle: str, grace_period: int) -> None:
        # Docker sends SIGKILL once the grace period elapses
        self.client.containers.get(handle).stop(timeout=grace_period)

    async def remove(self, handle: str) -> None:
        try:
            await asyncio.to_thread(self._remove_blocking, handle)
        except NotFound:
            logger.warning("container_already_gone", container_id=handle[:12], op="remove")
            return
        except (DockerException, OSError) as e:
            raise TeardownFailure(f"Could not remove container {handle[:12]}: {e}") from e
        logger.info("container_removed", container_id=handle[:12])

    def _remove_blocking(self, handle: str) -> None:
        self.client.containers.get(handle).remove()

    def close(self) -> None:
        # Streams still running end when their containers are stopped
        self._exec_pool.shutdown(wait=False, cancel_futures=True)
