import asyncio

from botdesk.infra.nonce import NonceCoordinator


def test_shared_lock_for_account():
    async def inner():
        coord = NonceCoordinator()
        lock_a1 = await coord.get_lock("0xAbC")
        lock_a2 = await coord.get_lock("0xabc")
        lock_b = await coord.get_lock("0xdef")
        assert lock_a1 is lock_a2
        assert lock_a1 is not lock_b

    asyncio.run(inner())


def test_lock_serialization():
    async def inner():
        coord = NonceCoordinator()
        lock = await coord.get_lock("acctX")
        active = []
        peak = []

        async def task(name: str):
            async with lock:
                active.append(name)
                peak.append(len(active))
                await asyncio.sleep(0.01)
                active.remove(name)

        await asyncio.gather(*(task(str(i)) for i in range(3)))
        assert len(peak) == 3
        assert max(peak) == 1

    asyncio.run(inner())
