"""Tests for the per-record write chain."""

import asyncio

import pytest

from xpenza.sync import InFlightRegistry


class TestInFlightRegistry:
    """Ordering and bookkeeping of chained tasks."""

    @pytest.mark.asyncio
    async def test_same_key_runs_in_submission_order(self):
        """A later task for a key starts only after the earlier one finished."""
        registry = InFlightRegistry()
        order = []
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            order.append("first")

        async def fast():
            order.append("second")

        registry.submit("k", slow)
        registry.submit("k", fast)
        await asyncio.sleep(0)
        assert order == []
        assert registry.pending("k") == 2

        gate.set()
        await registry.drain()

        assert order == ["first", "second"]
        assert registry.pending("k") == 0
        assert not registry.is_busy("k")

    @pytest.mark.asyncio
    async def test_after_keys_are_waited_for(self):
        """Dependencies on other keys are honoured."""
        registry = InFlightRegistry()
        order = []
        gate = asyncio.Event()

        async def parent():
            await gate.wait()
            order.append("parent")

        async def child():
            order.append("child")

        registry.submit("ledger", parent)
        registry.submit("tx", child, after=["ledger"])
        await asyncio.sleep(0)
        gate.set()
        await registry.drain()

        assert order == ["parent", "child"]

    @pytest.mark.asyncio
    async def test_failed_predecessor_does_not_block(self):
        """A crashed task still releases its successors."""
        registry = InFlightRegistry()

        async def boom():
            raise RuntimeError("boom")

        async def value():
            return 42

        registry.submit("k", boom)
        registry.submit("k", value)

        assert await registry.wait("k") == 42
        await registry.drain()

    @pytest.mark.asyncio
    async def test_wait_on_unknown_key(self):
        """Nothing in flight means nothing to wait for."""
        registry = InFlightRegistry()

        assert await registry.wait("nothing") is None

    @pytest.mark.asyncio
    async def test_drain_includes_tasks_spawned_meanwhile(self):
        """Work submitted by a running task is drained too."""
        registry = InFlightRegistry()
        done = []

        async def second():
            done.append("second")

        async def first():
            registry.submit("other", second)

        registry.submit("k", first)
        await registry.drain()

        assert done == ["second"]
