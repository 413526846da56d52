# sandbox_relay/__init__.py

from .config import Config
from .sandbox.orchestrator import SandboxOrchestrator
from .sandbox.registry import SessionRegistry
from .sandbox.runtime import ContainerRuntime, DockerRuntime
from .sandbox.scheduler import CleanupScheduler
from .sandbox.workspace import WorkspaceStore

__all__ = [
    "Config",
    "SandboxOrchestrator",
    "SessionRegistry",
    "ContainerRuntime",
    "DockerRuntime",
    "CleanupScheduler",
    "WorkspaceStore",
]
