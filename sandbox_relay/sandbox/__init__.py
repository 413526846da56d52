# sandbox_relay/sandbox/__init__.py
from .models import (
    Artifact,
    ArtifactKind,
    BatchResult,
    ExecutionResult,
    Session,
    SessionStatus,
    WorkspaceFile,
    classify_path,
)
from .orchestrator import SandboxOrchestrator
from .registry import SessionRegistry
from .runtime import ContainerRuntime, DockerRuntime
from .scheduler import CleanupScheduler
from .workspace import WorkspaceStore
