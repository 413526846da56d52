# tests/test_registry.py
import asyncio

import pytest

from sandbox_relay.sandbox.models import Session, SessionStatus
from sandbox_relay.sandbox.registry import SessionRegistry


def make_session(thread_id, container_id="c-1"):
    return Session(
        id=thread_id,
        container_id=container_id,
        thread_id=thread_id,
        channel_id="C1",
        user_id="U1",
    )


@pytest.mark.asyncio
async def test_concurrent_create_provisions_once():
    reg = SessionRegistry()
    calls = []

    async def factory():
        calls.append(1)
        await asyncio.sleep(0.01)
        return make_session("t1", container_id=f"c-{len(calls)}")

    sessions = await asyncio.gather(*(reg.create_or_attach("t1", factory) for _ in range(10)))

    assert len(calls) == 1
    assert all(s is sessions[0] for s in sessions)
    assert len(reg) == 1
    assert reg._locks == {}


@pytest.mark.asyncio
async def test_different_threads_do_not_block_each_other():
    reg = SessionRegistry()
    gate = asyncio.Event()

    async def slow():
        await gate.wait()
        return make_session("a")

    async def fast():
        return make_session("b")

    task_a = asyncio.create_task(reg.create_or_attach("a", slow))
    await asyncio.sleep(0)

    b = await asyncio.wait_for(reg.create_or_attach("b", fast), timeout=1)
    assert b.thread_id == "b"
    assert not task_a.done()

    gate.set()
    a = await task_a
    assert a.thread_id == "a"
    assert set(s.thread_id for s in reg.list_all()) == {"a", "b"}


@pytest.mark.asyncio
async def test_factory_failure_registers_nothing():
    reg = SessionRegistry()

    async def broken():
        raise RuntimeError("no image")

    with pytest.raises(RuntimeError):
        await reg.create_or_attach("t1", broken)
    assert "t1" not in reg
    assert reg._locks == {}


@pytest.mark.asyncio
async def test_failed_session_is_replaced():
    reg = SessionRegistry()
    first = await reg.create_or_attach("t1", _returning(make_session("t1", "c-1")))
    first.status = SessionStatus.FAILED

    second = await reg.create_or_attach("t1", _returning(make_session("t1", "c-2")))
    assert second is not first
    assert reg.get_by_thread("t1").container_id == "c-2"


@pytest.mark.asyncio
async def test_remove_is_idempotent():
    reg = SessionRegistry()
    s = await reg.create_or_attach("t1", _returning(make_session("t1")))

    assert await reg.remove("t1") is s
    assert await reg.remove("t1") is None
    assert reg.get_by_thread("t1") is None


@pytest.mark.asyncio
async def test_evict_runs_teardown_and_drops_entry():
    reg = SessionRegistry()
    s = await reg.create_or_attach("t1", _returning(make_session("t1")))
    torn = []

    async def teardown(session):
        torn.append(session)

    assert await reg.evict("t1", teardown) is s
    assert torn == [s]
    assert "t1" not in reg
    assert await reg.evict("t1", teardown) is None


@pytest.mark.asyncio
async def test_evict_respects_predicate():
    reg = SessionRegistry()
    await reg.create_or_attach("t1", _returning(make_session("t1")))
    stale = make_session("t1")

    async def teardown(session):
        raise AssertionError("should not tear down")

    assert await reg.evict("t1", teardown, predicate=lambda s: s is stale) is None
    assert "t1" in reg


@pytest.mark.asyncio
async def test_evict_drops_entry_when_teardown_fails():
    reg = SessionRegistry()
    await reg.create_or_attach("t1", _returning(make_session("t1")))

    async def teardown(session):
        raise RuntimeError("daemon gone")

    with pytest.raises(RuntimeError):
        await reg.evict("t1", teardown)
    assert "t1" not in reg


@pytest.mark.asyncio
async def test_create_waits_for_eviction_in_progress():
    reg = SessionRegistry()
    old = await reg.create_or_attach("t1", _returning(make_session("t1", "c-old")))
    gate = asyncio.Event()

    async def slow_teardown(session):
        await gate.wait()

    evicting = asyncio.create_task(reg.evict("t1", slow_teardown))
    await asyncio.sleep(0)
    creating = asyncio.create_task(reg.create_or_attach("t1", _returning(make_session("t1", "c-new"))))
    await asyncio.sleep(0)
    assert not creating.done()

    gate.set()
    assert await evicting is old
    new = await creating
    assert new.container_id == "c-new"


def _returning(session):
    async def factory():
        return session
    return factory
