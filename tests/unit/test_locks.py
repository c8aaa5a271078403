"""Unit tests for per-key locks and content hashing."""

import asyncio

import pytest

from mesh_operator.utils.hashing import canonical_json, content_hash
from mesh_operator.utils.locks import KeyedLocks


class TestKeyedLocks:
    """Test serialization per key."""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLocks()
        order = []

        async def work(tag):
            async with locks.hold("shop/web"):
                order.append(f"{tag}-start")
                await asyncio.sleep(0.01)
                order.append(f"{tag}-end")

        await asyncio.gather(work("a"), work("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_keys_run_in_parallel(self):
        locks = KeyedLocks()
        entered = asyncio.Event()

        async def first():
            async with locks.hold("shop/web"):
                await entered.wait()

        task = asyncio.create_task(first())
        await asyncio.sleep(0)
        assert locks.locked("shop/web")

        async with locks.hold("shop/api"):
            entered.set()
        await task

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self):
        locks = KeyedLocks()
        async with locks.hold("shop/web"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.locked("shop/web")


class TestContentHash:
    def test_key_order_does_not_matter(self):
        assert content_hash({"a": 1, "b": [1, 2]}) == content_hash({"b": [1, 2], "a": 1})

    def test_canonical_json_is_compact(self):
        assert canonical_json({"b": 1, "a": None}) == '{"a":null,"b":1}'

    def test_different_values_differ(self):
        assert content_hash({"api-key": "sk_1"}) != content_hash({"api-key": "sk_2"})
