"""Tests for per-key lock serialization."""

import asyncio

from issuebridge.vault.partitions import PartitionRegistry


class TestPartitionRegistry:
    async def test_same_key_runs_one_at_a_time(self):
        registry = PartitionRegistry()
        active = 0
        peak = 0

        async def worker():
            nonlocal active, peak
            async with registry.hold("app-1"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(5)))
        assert peak == 1

    async def test_different_keys_run_in_parallel(self):
        registry = PartitionRegistry()
        both_inside = asyncio.Event()
        inside = set()

        async def worker(key):
            async with registry.hold(key):
                inside.add(key)
                if len(inside) == 2:
                    both_inside.set()
                await asyncio.wait_for(both_inside.wait(), timeout=1)

        await asyncio.gather(worker("app-1"), worker("app-2"))
        assert inside == {"app-1", "app-2"}

    async def test_idle_locks_are_dropped(self):
        registry = PartitionRegistry()
        async with registry.hold("app-1"):
            assert registry.is_held("app-1")
            assert len(registry) == 1
        assert not registry.is_held("app-1")
        assert len(registry) == 0

    async def test_lock_released_when_body_raises(self):
        registry = PartitionRegistry()
        try:
            async with registry.hold("app-1"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert len(registry) == 0
        async with registry.hold("app-1"):
            pass
