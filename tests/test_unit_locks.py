import asyncio

import pytest

from month_end.utils.locks import KeyedLocks


async def test_same_key_is_serialized_and_forgotten_when_idle():
    locks = KeyedLocks()
    order = []

    async def worker(name):
        async with locks.hold("job-1"):
            order.append(f"{name}:in")
            await asyncio.sleep(0.01)
            order.append(f"{name}:out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order == ["a:in", "a:out", "b:in", "b:out"]
    assert len(locks) == 0


async def test_entry_survives_while_a_waiter_is_queued():
    locks = KeyedLocks()
    release = asyncio.Event()

    async def holder():
        async with locks.hold("job-1"):
            await release.wait()

    first = asyncio.create_task(holder())
    second = asyncio.create_task(holder())
    await asyncio.sleep(0.01)
    assert "job-1" in locks

    release.set()
    await asyncio.gather(first, second)
    assert "job-1" not in locks


async def test_different_keys_do_not_block_each_other():
    locks = KeyedLocks()
    async with locks.hold("job-1"):
        await asyncio.wait_for(_enter(locks, "job-2"), timeout=1)
        assert len(locks) == 1
    assert len(locks) == 0


async def test_entry_is_dropped_after_an_error():
    locks = KeyedLocks()
    with pytest.raises(RuntimeError):
        async with locks.hold("job-1"):
            raise RuntimeError("boom")
    assert len(locks) == 0


async def _enter(locks, key):
    async with locks.hold(key):
        pass
