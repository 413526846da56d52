# sandbox_relay/sandbox/workspace.py

"""
Per-session workspace directories on the persistent volume.

Layout: <root>/<session_id>/ is bind-mounted into the sandbox at the container
workspace path. Everything the sandboxed tool writes there is visible on the
host, which is how artifacts are harvested without copying out of the container.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import time
from datetime import timedelta
from pathlib import Path
from typing import Iterable, List, Optional

import structlog

from ..errors import WorkspaceBudgetExceeded, WorkspaceIOFailure, WorkspacePathError
from .models import WorkspaceFile

logger = structlog.get_logger(__name__)


class WorkspaceStore:
    """
    Owns the workspace root and every session directory below it.

    Args:
        root: Host directory holding one sub-directory per session.
        max_file_bytes: Largest single file read into memory (None = unbounded).
        max_total_bytes: Largest total read per snapshot (None = unbounded).
    """

    def __init__(
        self,
        root: Path,
        max_file_bytes: Optional[int] = None,
        max_total_bytes: Optional[int] = None,
    ):
        self.root = Path(root).resolve()
        self.max_file_bytes = max_file_bytes
        self.max_total_bytes = max_total_bytes

    def path_for(self, session_id: str) -> Path:
        """Host path of a session's workspace. Rejects ids that are not a single path segment."""
        if (
            not session_id
            or session_id in (".", "..")
            or "/" in session_id
            or "\\" in session_id
            or "\x00" in session_id
        ):
            raise WorkspacePathError(f"Invalid session id for a workspace: {session_id!r}")
        return self.root / session_id

    async def ensure(self, session_id: str) -> Path:
        path = self.path_for(session_id)
        try:
            await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceIOFailure(f"Could not create workspace {path}: {e}") from e
        logger.info("workspace_created", session_id=session_id, workspace_path=str(path))
        return path

    async def list_files(self, session_id: str) -> List[WorkspaceFile]:
        """
        Snapshot every regular file under the session workspace.

        Best-effort, not transactional: files the sandbox writes or deletes while
        the walk is in progress may or may not appear. Symlinks are skipped so a
        sandboxed process cannot make the host read files outside its workspace.
        """
        return await asyncio.to_thread(self._walk, self.path_for(session_id))

    def _walk(self, base: Path) -> List[WorkspaceFile]:
        if not base.is_dir():
            raise WorkspaceIOFailure(f"Workspace {base} does not exist or is not a directory")

        files: List[WorkspaceFile] = []
        total = 0
        try:
            candidates = sorted(base.rglob("*"))
        except OSError as e:
            raise WorkspaceIOFailure(f"Could not walk workspace {base}: {e}") from e

        for p in candidates:
            if p.is_symlink() or not p.is_file():
                continue
            rel = p.relative_to(base).as_posix()
            try:
                data = self._read_bounded(p, rel)
            except FileNotFoundError:
                continue  # removed mid-walk
            except OSError as e:
                raise WorkspaceIOFailure(f"Could not read {rel}: {e}") from e

            total += len(data)
            if self.max_total_bytes is not None and total > self.max_total_bytes:
                raise WorkspaceBudgetExceeded(
                    f"Workspace {base.name} exceeds the {self.max_total_bytes} byte snapshot budget",
                    limit=self.max_total_bytes,
                    observed=total,
                )
            files.append(WorkspaceFile(path=rel, data=data))
        return files

    def _read_bounded(self, path: Path, rel: str) -> bytes:
        limit = self.max_file_bytes
        with open(path, "rb") as f:
            if limit is None:
                return f.read()
            # Read one byte past the limit: the file may still be growing.
            data = f.read(limit + 1)
        if len(data) > limit:
            raise WorkspaceBudgetExceeded(
                f"{rel} exceeds the {limit} byte per-file budget",
                limit=limit,
                observed=len(data),
            )
        return data

    def resolve_file(self, session_id: str, relative_path: str) -> Path:
        """
        Resolve `relative_path` inside a session workspace for serving.

        Raises:
            WorkspacePathError: if the resolved path escapes the session directory
            (via `..`, an absolute path, or a symlink pointing outside).
        """
        base = self.path_for(session_id).resolve()
        target = (base / relative_path).resolve()
        if target == base or not target.is_relative_to(base):
            raise WorkspacePathError(f"Path {relative_path!r} escapes workspace {session_id!r}")
        return target

    async def remove(self, session_id: str) -> None:
        path = self.path_for(session_id)
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise WorkspaceIOFailure(f"Could not remove workspace {path}: {e}") from e
        logger.info("workspace_removed", session_id=session_id)

    async def reap(self, older_than: timedelta, keep: Iterable[str] = ()) -> List[str]:
        """
        Delete workspace directories not modified for `older_than`, skipping
        the ids in `keep` (live sessions). Returns the removed session ids.
        Per-directory failures are logged and skipped.
        """
        keep_ids = set(keep)
        cutoff = time.time() - older_than.total_seconds()
        stale = await asyncio.to_thread(self._stale_dirs, cutoff, keep_ids)

        removed: List[str] = []
        for sid in stale:
            try:
                await self.remove(sid)
                removed.append(sid)
            except WorkspaceIOFailure as e:
                logger.warning("workspace_reap_failed", session_id=sid, error=str(e))
        return removed

    def _stale_dirs(self, cutoff: float, keep: set) -> List[str]:
        if not self.root.is_dir():
            return []
        stale = []
        with os.scandir(self.root) as it:
            for entry in it:
                if entry.name in keep or not entry.is_dir(follow_symlinks=False):
                    continue
                if entry.stat(follow_symlinks=False).st_mtime < cutoff:
                    stale.append(entry.name)
        return sorted(stale)
