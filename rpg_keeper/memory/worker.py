"""Per-session single-writer scheduling for memory refreshes.

A refresh reads, modifies and writes one MemoryRecord, so two passes for
the same session must never overlap. MemoryRefresher keeps one asyncio.Lock
per session id; different sessions refresh in parallel.

``schedule`` is the fire-and-forget entry point used after a DM reply is
archived. While a pass is already waiting for a session, further requests
for it are coalesced into that one. Failures are logged and never raised:
stale memory is acceptable, an aborted turn is not.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from rpg_keeper.memory.updater import MemoryRefreshResult

logger = logging.getLogger(__name__)

RefreshFn = Callable[[str], Awaitable[MemoryRefreshResult]]


class MemoryRefresher:
    def __init__(self, refresh_fn: RefreshFn) -> None:
        self._refresh_fn = refresh_fn
        self._locks: dict[str, asyncio.Lock] = {}
        # holders plus waiters per lock; the lock is dropped when this hits zero
        self._users: dict[str, int] = {}
        self._queued: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    @contextlib.asynccontextmanager
    async def _session_lock(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        self._users[session_id] = self._users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[session_id] -= 1
            if not self._users[session_id]:
                del self._users[session_id]
                del self._locks[session_id]

    async def refresh(self, session_id: str) -> MemoryRefreshResult:
        """Run one pass now, after any pass already running for this session."""
        async with self._session_lock(session_id):
            return await self._refresh_fn(session_id)

    async def _run_scheduled(self, session_id: str) -> None:
        async with self._session_lock(session_id):
            # a later schedule() may queue another pass from here on
            self._queued.discard(session_id)
            try:
                await self._refresh_fn(session_id)
            except Exception:
                logger.exception("Background memory refresh failed for session %s", session_id)

    def schedule(self, session_id: str) -> asyncio.Task | None:
        """Start a background pass. Returns None when one is already queued."""
        if session_id in self._queued:
            logger.debug("memory refresh already queued for session %s", session_id)
            return None
        self._queued.add(session_id)
        task = asyncio.create_task(self._run_scheduled(session_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return session_id in self._queued or (lock is not None and lock.locked())

    async def drain(self) -> None:
        """Wait for every scheduled pass, including ones scheduled meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
