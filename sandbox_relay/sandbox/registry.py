# sandbox_relay/sandbox/registry.py
"""
In-memory session registry: thread id -> Session.

The registry is the single authority for "is there a live sandbox for this
thread". Creation and removal for a given thread both run under the same
per-thread asyncio.Lock, so:
- two concurrent requests for an unprovisioned thread provision exactly once,
- a session being torn down is never handed out to a new request,
- unrelated threads never wait on each other.

Reads (get_by_thread, list_all) take no lock: dict operations complete without
yielding to the event loop, so a reader sees an entry either fully present or
fully absent.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog

from .models import Session

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], Awaitable[Session]]
Teardown = Callable[[Session], Awaitable[None]]


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, _KeyLock] = {}

    @asynccontextmanager
    async def _locked(self, thread_id: str) -> AsyncIterator[None]:
        # Reference counted so the lock table does not grow with every thread ever seen.
        entry = self._locks.get(thread_id)
        if entry is None:
            entry = self._locks[thread_id] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(thread_id, None)

    def get_by_thread(self, thread_id: str) -> Optional[Session]:
        return self._sessions.get(thread_id)

    async def create_or_attach(self, thread_id: str, factory: SessionFactory) -> Session:
        """
        Return the running session for `thread_id`, provisioning one via
        `factory` if there is none. A registered session that is no longer
        running (failed) is replaced.

        If `factory` raises, nothing is registered and the error propagates.
        """
        async with self._locked(thread_id):
            existing = self._sessions.get(thread_id)
            if existing is not None and existing.is_running:
                return existing

            session = await factory()
            self._sessions[thread_id] = session
            logger.debug("session_registered", thread_id=thread_id, container_id=session.container_id)
            return session

    async def remove(self, session_id: str) -> Optional[Session]:
        async with self._locked(session_id):
            return self._sessions.pop(session_id, None)

    async def evict(
        self,
        thread_id: str,
        teardown: Teardown,
        predicate: Optional[Callable[[Session], bool]] = None,
    ) -> Optional[Session]:
        """
        Tear down and drop the session for `thread_id` under its key lock.

        Returns the evicted session, or None when there was nothing to evict
        (absent, or `predicate` rejected the current entry). The entry is
        dropped even when `teardown` raises; the error then propagates.
        """
        async with self._locked(thread_id):
            session = self._sessions.get(thread_id)
            if session is None:
                return None
            if predicate is not None and not predicate(session):
                return None
            try:
                await teardown(session)
            finally:
                self._sessions.pop(thread_id, None)
            return session

    def list_all(self) -> List[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, thread_id: object) -> bool:
        return thread_id in self._sessions
