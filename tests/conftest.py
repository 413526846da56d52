# tests/conftest.py
import asyncio
import inspect
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath

import pytest

# Ensure project root is importable (sandbox_relay/__init__.py exists)
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sandbox_relay.config import Config  # noqa: E402
from sandbox_relay.errors import ContainerNotRunning  # noqa: E402
from sandbox_relay.sandbox.orchestrator import SandboxOrchestrator  # noqa: E402
from sandbox_relay.sandbox.runtime import ContainerRuntime  # noqa: E402
from sandbox_relay.sandbox.workspace import WorkspaceStore  # noqa: E402


class FakeRuntime(ContainerRuntime):
    """
    In-memory container runtime.

    Records every call in `calls` as (op, handle, ...) tuples. Failures are
    injected through `failures[(op, handle)]` or `failures[(op, None)]` (any
    handle). `exec_handler(container, argv)` decides what an exec returns and
    may be a coroutine function.
    """

    def __init__(self):
        self.calls = []
        self.created = []
        self.containers = {}
        self.failures = {}
        self.create_delay = 0.0
        self.start_delay = 0.0
        self.exec_handler = None
        self.log_output = b"log line\n"
        self.closed = False
        self._counter = 0

    def _maybe_fail(self, op, handle=None):
        exc = self.failures.get((op, handle)) or self.failures.get((op, None))
        if exc is not None:
            raise exc

    def ops(self, op):
        return [c for c in self.calls if c[0] == op]

    async def create(self, image, env, workspace_host_path, container_mount_path, *, name=None):
        self.calls.append(("create", name))
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        self._maybe_fail("create")
        self._counter += 1
        handle = f"container-{self._counter:04d}-0123456789"
        self.created.append({
            "handle": handle,
            "image": image,
            "env": dict(env),
            "bind": (workspace_host_path, container_mount_path),
            "name": name,
        })
        self.containers[handle] = {
            "state": "created",
            "bind": (workspace_host_path, container_mount_path),
        }
        return handle

    async def start(self, handle):
        self.calls.append(("start", handle))
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        self._maybe_fail("start", handle)
        self.containers[handle]["state"] = "running"

    async def exec(self, handle, argv):
        self.calls.append(("exec", handle, list(argv)))
        self._maybe_fail("exec", handle)
        container = self.containers.get(handle)
        if container is None or container["state"] != "running":
            raise ContainerNotRunning(f"Container {handle} is not running")
        if self.exec_handler is None:
            return b"", b""
        out = self.exec_handler(container, list(argv))
        if inspect.isawaitable(out):
            out = await out
        return out

    async def logs(self, handle):
        self.calls.append(("logs", handle))
        self._maybe_fail("logs", handle)
        return self.log_output

    async def stop(self, handle, grace_period):
        self.calls.append(("stop", handle, grace_period))
        self._maybe_fail("stop", handle)
        if handle in self.containers:
            self.containers[handle]["state"] = "exited"

    async def remove(self, handle):
        self.calls.append(("remove", handle))
        self._maybe_fail("remove", handle)
        self.containers.pop(handle, None)

    def close(self):
        self.closed = True


def host_path(container, container_path):
    """Map an in-container path under the bind mount to its host path."""
    host, mount = container["bind"]
    rel = PurePosixPath(container_path).relative_to(mount)
    return Path(host, *rel.parts)


def is_tool_call(argv):
    return argv[:2] == ["ccr", "code"]


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def config(tmp_path):
    """Config pointing the workspace volume at a temp dir."""
    return Config(
        anthropic_api_key="sk-test",
        workspace_root=tmp_path / "workspaces",
        exec_timeout_secs=5.0,
        stop_grace_period_secs=3,
    )


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def workspaces(config):
    return WorkspaceStore(
        config.workspace_root,
        max_file_bytes=config.max_artifact_file_bytes,
        max_total_bytes=config.max_artifact_total_bytes,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def orchestrator(runtime, workspaces, config, clock):
    return SandboxOrchestrator(runtime, workspaces, config, clock=clock)
