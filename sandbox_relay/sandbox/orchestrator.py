# sandbox_relay/sandbox/orchestrator.py

import asyncio
import shlex
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

import structlog

from ..config import Config
from ..errors import (
    ContainerNotRunning,
    ExecTimeout,
    ProvisionFailure,
    SandboxError,
    SessionNotFound,
    TeardownFailure,
    WorkspaceIOFailure,
)
from .models import Artifact, BatchResult, ExecutionResult, Session, SessionStatus, utcnow
from .registry import SessionRegistry
from .runtime import ContainerRuntime, container_name_for
from .workspace import WorkspaceStore

logger = structlog.get_logger(__name__)


class SandboxOrchestrator:
    """
    Run chat commands in one long-lived sandbox per conversation thread.

    Per request (`process_command`):
      1) Get or provision the thread's session (workspace dir + container),
         atomically per thread through the registry.
      2) Seed the raw message into a uniquely named file in the workspace.
      3) Run the code-generation tool with the message and a fixed permission
         profile, under a deadline.
      4) Snapshot the workspace and classify every file as code or plain file.
      5) Return stdout/stderr/artifacts as an ExecutionResult.

    Failure semantics:
      - ProvisionFailure: nothing is registered, created containers are removed.
      - ExecFailure: the session stays up so the thread can retry, unless the
        container is gone (ContainerNotRunning) or the deadline expired
        (ExecTimeout); in those cases the session is marked failed and the next
        message provisions a fresh one.
      - WorkspaceIOFailure: the exec is kept; result.artifacts is None.

    Side effects are confined to the container runtime, the workspace volume and
    the registry.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        workspaces: WorkspaceStore,
        config: Config,
        registry: Optional[SessionRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.runtime = runtime
        self.workspaces = workspaces
        self.config = config
        self.registry = registry if registry is not None else SessionRegistry()
        self._clock = clock

    # ---------- request path ----------

    async def process_command(
        self, thread_id: str, channel_id: str, user_id: str, text: str
    ) -> ExecutionResult:
        logger.info("processing_command", thread_id=thread_id, channel_id=channel_id, user_id=user_id)

        session = await self.registry.create_or_attach(
            thread_id, lambda: self._provision(thread_id, channel_id, user_id)
        )

        await self._run(session, self._seed_argv(text))
        stdout, stderr = await self._run(session, self._tool_argv(text))

        artifacts: Optional[List[Artifact]] = None
        workspace_error: Optional[str] = None
        try:
            files = await self.workspaces.list_files(session.id)
            artifacts = [Artifact.from_file(f) for f in files]
        except WorkspaceIOFailure as e:
            workspace_error = str(e)
            logger.warning("workspace_read_failed", session_id=session.id, error=workspace_error)

        result = ExecutionResult.from_streams(stdout, stderr, artifacts, workspace_error)
        logger.info(
            "command_processed",
            session_id=session.id,
            success=result.success,
            artifact_count=len(artifacts) if artifacts is not None else None,
        )
        return result

    async def _provision(self, thread_id: str, channel_id: str, user_id: str) -> Session:
        session_id = thread_id
        cfg = self.config

        try:
            workspace = await self.workspaces.ensure(session_id)
        except WorkspaceIOFailure as e:
            raise ProvisionFailure(f"Workspace for {session_id!r} unavailable: {e}") from e

        env = {
            "ANTHROPIC_API_KEY": cfg.anthropic_api_key,
            "SESSION_ID": session_id,
            "THREAD_ID": thread_id,
        }
        handle: Optional[str] = None
        try:
            handle = await self.runtime.create(
                cfg.sandbox_image,
                env,
                str(workspace),
                cfg.container_workspace_path,
                name=container_name_for(cfg.container_name_prefix, session_id),
            )
            await self.runtime.start(handle)
        except BaseException as e:
            # Cancellation too: a created container must not outlive the request
            logger.error("provision_failed", session_id=session_id, error=repr(e))
            if handle is not None:
                await self._discard_container(handle)
            if isinstance(e, ProvisionFailure) or not isinstance(e, Exception):
                raise
            raise ProvisionFailure(f"Could not provision sandbox for {session_id!r}: {e}") from e

        session = Session(
            id=session_id,
            container_id=handle,
            thread_id=thread_id,
            channel_id=channel_id,
            user_id=user_id,
            created_at=self._clock(),
            workspace_path=workspace,
        )
        logger.info("sandbox_created", session_id=session_id, container_id=handle[:12])
        return session

    async def _discard_container(self, handle: str) -> None:
        """Best-effort rollback of a container from a failed provision."""
        try:
            await self.runtime.stop(handle, self.config.stop_grace_period_secs)
            await self.runtime.remove(handle)
        except TeardownFailure as e:
            logger.error("rollback_failed", container_id=handle[:12], error=str(e))

    async def _run(self, session: Session, argv: Sequence[str]) -> Tuple[bytes, bytes]:
        timeout = self.config.exec_timeout_secs
        try:
            return await asyncio.wait_for(self.runtime.exec(session.container_id, argv), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("exec_deadline_exceeded", session_id=session.id, timeout=timeout)
            session.status = SessionStatus.FAILED
            try:
                await self.registry.evict(session.thread_id, self._teardown, predicate=lambda s: s is session)
            except TeardownFailure as e:
                logger.error("teardown_failed", session_id=session.id, error=str(e))
            raise ExecTimeout(session.id, timeout) from None
        except ContainerNotRunning:
            logger.warning("container_not_running", session_id=session.id, container_id=session.container_id[:12])
            session.status = SessionStatus.FAILED
            raise

    def _seed_argv(self, text: str) -> List[str]:
        # Message file name: unique per request so concurrent messages never collide
        name = f"user_message_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}.txt"
        path = f"{self.config.container_workspace_path.rstrip('/')}/{name}"
        return ["sh", "-c", f"printf '%s\\n' {shlex.quote(text)} > {shlex.quote(path)}"]

    def _tool_argv(self, text: str) -> List[str]:
        cfg = self.config
        return [
            *cfg.tool_command,
            "--allowedTools", cfg.allowed_tools,
            "--permission-mode", cfg.permission_mode,
            "-p", text,
        ]

    # ---------- teardown ----------

    async def _teardown(self, session: Session) -> None:
        try:
            await self.runtime.stop(session.container_id, self.config.stop_grace_period_secs)
            await self.runtime.remove(session.container_id)
        except TeardownFailure:
            session.status = SessionStatus.FAILED
            raise
        if session.status == SessionStatus.RUNNING:
            session.status = SessionStatus.COMPLETED

    async def stop_session(self, thread_id: str) -> bool:
        """
        Stop and remove the thread's sandbox. Idempotent: returns False when no
        session was registered. TeardownFailure propagates (the entry is still
        dropped from the registry).
        """
        session = await self.registry.evict(thread_id, self._teardown)
        if session is None:
            logger.info("session_not_found", thread_id=thread_id)
            return False
        logger.info("session_stopped", thread_id=thread_id, session_id=session.id)
        return True

    def list_sessions(self) -> List[Session]:
        return self.registry.list_all()

    async def stop_all(self) -> BatchResult:
        """Stop every registered session; failures are counted, never fatal for the batch."""
        sessions = self.registry.list_all()
        logger.info("stopping_all_sessions", count=len(sessions))

        outcomes = await asyncio.gather(
            *(self.stop_session(s.thread_id) for s in sessions),
            return_exceptions=True,
        )
        result = BatchResult(total=len(sessions))
        for session, outcome in zip(sessions, outcomes):
            if isinstance(outcome, Exception):
                logger.error("session_stop_failed", session_id=session.id, error=str(outcome))
                result.record_failure(session.id, outcome)
            else:
                result.stopped += 1
        return result

    async def cleanup_old_sessions(self, max_age_hours: float = 24) -> BatchResult:
        """
        Evict every session older than `max_age_hours` (strictly greater).
        A session that was replaced or removed since the snapshot is left alone.
        """
        now = self._clock()
        max_age = timedelta(hours=max_age_hours)
        expired = [s for s in self.registry.list_all() if s.age(now) > max_age]

        result = BatchResult(total=len(expired))
        for session in expired:
            logger.info("cleaning_up_old_session", session_id=session.id, age_secs=session.age(now).total_seconds())
            try:
                evicted = await self.registry.evict(
                    session.thread_id, self._teardown, predicate=lambda s, old=session: s is old
                )
            except SandboxError as e:
                logger.error("cleanup_teardown_failed", session_id=session.id, error=str(e))
                result.record_failure(session.id, e)
                continue
            if evicted is not None:
                result.stopped += 1
        return result

    async def reap_workspaces(self, retention_hours: float) -> List[str]:
        """Delete workspace dirs idle for `retention_hours` that belong to no live session."""
        live = {s.id for s in self.registry.list_all()}
        removed = await self.workspaces.reap(timedelta(hours=retention_hours), keep=live)
        if removed:
            logger.info("workspaces_reaped", count=len(removed))
        return removed

    # ---------- inspection ----------

    async def get_logs(self, thread_id: str) -> str:
        session = self.registry.get_by_thread(thread_id)
        if session is None:
            raise SessionNotFound(thread_id)
        raw = await self.runtime.logs(session.container_id)
        return raw.decode("utf-8", errors="replace")
