# sandbox_relay/errors.py
"""
Error taxonomy for the sandbox session lifecycle.

Every failure the core can surface derives from SandboxError, so adapters can
catch the whole family in one place and map individual kinds to their own
notion of failure (HTTP status codes, chat notices, ...).

Hierarchy:
- ProvisionFailure        image missing, engine unreachable, bind mount invalid
    - StartFailure        container created but would not start
- ExecFailure             exec stream failed
    - ContainerNotRunning target container is gone or stopped
    - ExecTimeout         caller-imposed deadline exceeded
- LogsFailure             log fetch failed (best-effort)
- TeardownFailure         stop/remove failed
- WorkspaceIOFailure      workspace unreadable / file read error
    - WorkspaceBudgetExceeded   per-file or per-session byte budget exceeded
    - WorkspacePathError        path escapes the session directory
- SessionNotFound         no live session for the given thread
"""

from __future__ import annotations


class SandboxError(Exception):
    """Base class for all sandbox lifecycle errors."""


class ProvisionFailure(SandboxError):
    pass


class StartFailure(ProvisionFailure):
    pass


class ExecFailure(SandboxError):
    pass


class ContainerNotRunning(ExecFailure):
    pass


class ExecTimeout(ExecFailure):
    def __init__(self, session_id: str, timeout: float):
        super().__init__(f"Command in session {session_id!r} exceeded {timeout:g}s deadline")
        self.session_id = session_id
        self.timeout = timeout


class LogsFailure(SandboxError):
    pass


class TeardownFailure(SandboxError):
    pass


class WorkspaceIOFailure(SandboxError):
    pass


class WorkspaceBudgetExceeded(WorkspaceIOFailure):
    def __init__(self, message: str, *, limit: int, observed: int):
        super().__init__(message)
        self.limit = limit
        self.observed = observed


class WorkspacePathError(WorkspaceIOFailure):
    pass


class SessionNotFound(SandboxError):
    def __init__(self, thread_id: str):
        super().__init__(f"No live session for thread {thread_id!r}")
        self.thread_id = thread_id
