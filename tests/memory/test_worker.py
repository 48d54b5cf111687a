"""Tests for rpg_keeper.memory.worker — per-session serialisation and scheduling."""

import asyncio
import logging

from rpg_keeper.memory.worker import MemoryRefresher


class RecordingRefresh:
    """Refresh stand-in that records overlap per session."""

    def __init__(self, delay: float = 0.01, fail: bool = False) -> None:
        self.delay = delay
        self.fail = fail
        self.calls: list[str] = []
        self.active: dict[str, int] = {}
        self.max_active: dict[str, int] = {}

    async def __call__(self, session_id: str):
        self.calls.append(session_id)
        self.active[session_id] = self.active.get(session_id, 0) + 1
        self.max_active[session_id] = max(self.max_active.get(session_id, 0), self.active[session_id])
        try:
            await asyncio.sleep(self.delay)
            if self.fail:
                raise RuntimeError("boom")
            return session_id
        finally:
            self.active[session_id] -= 1


class TestRefresh:
    async def test_same_session_never_overlaps(self) -> None:
        fn = RecordingRefresh()
        refresher = MemoryRefresher(fn)
        await asyncio.gather(*(refresher.refresh("s1") for _ in range(3)))
        assert fn.calls == ["s1"] * 3
        assert fn.max_active["s1"] == 1

    async def test_sessions_run_in_parallel(self) -> None:
        fn = RecordingRefresh(delay=0.05)
        refresher = MemoryRefresher(fn)
        await asyncio.gather(refresher.refresh("s1"), refresher.refresh("s2"))
        assert sorted(fn.calls) == ["s1", "s2"]

    async def test_refresh_propagates_errors(self) -> None:
        refresher = MemoryRefresher(RecordingRefresh(fail=True))
        try:
            await refresher.refresh("s1")
        except RuntimeError as e:
            assert str(e) == "boom"
        else:
            raise AssertionError("expected RuntimeError")


class TestSchedule:
    async def test_schedule_runs_in_background(self) -> None:
        fn = RecordingRefresh()
        refresher = MemoryRefresher(fn)
        task = refresher.schedule("s1")
        assert task is not None
        assert refresher.is_busy("s1")
        await refresher.drain()
        assert fn.calls == ["s1"]
        assert not refresher.is_busy("s1")

    async def test_queued_requests_coalesce(self) -> None:
        fn = RecordingRefresh()
        refresher = MemoryRefresher(fn)
        first = refresher.schedule("s1")
        second = refresher.schedule("s1")
        assert first is not None
        assert second is None
        await refresher.drain()
        assert fn.calls == ["s1"]

    async def test_request_during_pass_queues_one_more(self) -> None:
        fn = RecordingRefresh(delay=0.05)
        refresher = MemoryRefresher(fn)
        refresher.schedule("s1")
        await asyncio.sleep(0.01)  # first pass is now running
        assert refresher.schedule("s1") is not None
        assert refresher.schedule("s1") is None
        await refresher.drain()
        assert fn.calls == ["s1", "s1"]
        assert fn.max_active["s1"] == 1

    async def test_failures_logged_not_raised(self, caplog) -> None:
        refresher = MemoryRefresher(RecordingRefresh(fail=True))
        with caplog.at_level(logging.ERROR, logger="rpg_keeper.memory.worker"):
            refresher.schedule("s1")
            await refresher.drain()
        assert "Background memory refresh failed for session s1" in caplog.text
        # the session is free again afterwards
        assert refresher.schedule("s1") is not None
        await refresher.drain()


class TestLockCleanup:
    async def test_idle_sessions_release_their_lock(self) -> None:
        refresher = MemoryRefresher(RecordingRefresh())
        await asyncio.gather(*(refresher.refresh(f"s{n}") for n in range(5)))
        refresher.schedule("s9")
        await refresher.drain()
        assert refresher._locks == {}

    async def test_lock_kept_while_a_pass_waits(self) -> None:
        fn = RecordingRefresh(delay=0.05)
        refresher = MemoryRefresher(fn)
        first = asyncio.create_task(refresher.refresh("s1"))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(refresher.refresh("s1"))
        await first
        assert "s1" in refresher._locks
        await second
        assert fn.max_active["s1"] == 1
        assert refresher._locks == {}

    async def test_lock_dropped_after_failure(self) -> None:
        refresher = MemoryRefresher(RecordingRefresh(fail=True))
        try:
            await refresher.refresh("s1")
        except RuntimeError:
            pass
        assert refresher._locks == {}
