# sandbox_relay/sandbox/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional


class SessionStatus(str, Enum):
    RUNNING   = "running"
    COMPLETED = "completed"   # stopped on demand or evicted by the sweep
    FAILED    = "failed"      # container unusable; next request re-provisions


class ArtifactKind(str, Enum):
    CODE = "code"
    FILE = "file"


# Source/config extensions rendered as code downstream.
CODE_EXTENSIONS = frozenset({
    ".ts", ".js", ".tsx", ".jsx",
    ".py", ".java", ".c", ".cpp", ".go", ".rs", ".rb", ".php",
    ".swift", ".kt", ".cs",
    ".html", ".css", ".scss",
    ".json", ".yaml", ".yml", ".toml", ".md",
    ".sh", ".bash",
})


def classify_path(path: str) -> ArtifactKind:
    """
    Classify a workspace path as code or plain file from its name only.

    Plain case-sensitive suffix match: "MAIN.PY" is a file, while dotfiles
    such as ".json" or "config/.yml" count as code.
    """
    if path.endswith(tuple(CODE_EXTENSIONS)):
        return ArtifactKind.CODE
    return ArtifactKind.FILE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    """
    One sandbox bound to one conversation thread.

    Fields:
    - id: equal to thread_id (one session per thread).
    - container_id: runtime handle, owned exclusively by this session.
    - thread_id / channel_id / user_id: provenance of the spawning request.
    - status: running | completed | failed.
    - created_at: aware UTC timestamp, drives age-based eviction.
    - workspace_path: host directory bind-mounted into the container.
    """
    id: str
    container_id: str
    thread_id: str
    channel_id: str
    user_id: str
    status: SessionStatus = SessionStatus.RUNNING
    created_at: datetime = field(default_factory=utcnow)
    workspace_path: Optional[Path] = None

    @property
    def is_running(self) -> bool:
        return self.status == SessionStatus.RUNNING

    def age(self, now: datetime) -> timedelta:
        return now - self.created_at

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "channel_id": self.channel_id,
            "user_id": self.user_id,
            "container_id": self.container_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class WorkspaceFile:
    """A regular file read from a workspace snapshot."""
    path: str    # POSIX, relative to the workspace root
    data: bytes

    @property
    def content(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class Artifact:
    kind: ArtifactKind
    path: str
    content: str
    size: int

    @classmethod
    def from_file(cls, f: WorkspaceFile) -> "Artifact":
        return cls(kind=classify_path(f.path), path=f.path, content=f.content, size=len(f.data))

    def to_dict(self) -> Dict[str, object]:
        return {"type": self.kind.value, "path": self.path, "content": self.content, "size": self.size}


@dataclass
class ExecutionResult:
    """
    Outcome of one processed command.

    `success` is true iff stderr is empty; this is a heuristic over the tool's
    output, not an exit-code check. `artifacts` is None when the workspace could
    not be read (see `workspace_error`); an empty list means "no files".
    """
    success: bool
    output: str
    error: Optional[str] = None
    artifacts: Optional[List[Artifact]] = None
    workspace_error: Optional[str] = None

    @classmethod
    def from_streams(
        cls,
        stdout: bytes,
        stderr: bytes,
        artifacts: Optional[List[Artifact]],
        workspace_error: Optional[str] = None,
    ) -> "ExecutionResult":
        err = stderr.decode("utf-8", errors="replace")
        return cls(
            success=not err,
            output=stdout.decode("utf-8", errors="replace"),
            error=err or None,
            artifacts=artifacts,
            workspace_error=workspace_error,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "artifacts": None if self.artifacts is None else [a.to_dict() for a in self.artifacts],
            "workspace_error": self.workspace_error,
        }


@dataclass
class BatchResult:
    """Aggregate of a best-effort batch teardown (stop-all, cleanup sweep)."""
    total: int = 0
    stopped: int = 0
    failed: int = 0
    failures: Dict[str, str] = field(default_factory=dict)

    def record_failure(self, session_id: str, exc: BaseException) -> None:
        self.failed += 1
        self.failures[session_id] = str(exc)

    def to_dict(self) -> Dict[str, object]:
        return {"total": self.total, "stopped": self.stopped, "failed": self.failed}
