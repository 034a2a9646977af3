"""
Tests for KeyedLocks.
"""

import asyncio

import pytest

from hitlflow.utils.locks import KeyedLocks


class TestKeyedLocks:
    """Test cases for KeyedLocks."""

    def test_same_key_returns_same_lock(self):
        locks = KeyedLocks()
        assert locks.lock_for("a") is locks.lock_for("a")
        assert locks.lock_for("a") is not locks.lock_for("b")
        assert "a" in locks
        assert len(locks) == 2

    @pytest.mark.asyncio
    async def test_operations_on_one_key_are_serialized(self):
        """Test that critical sections for one key never overlap."""
        locks = KeyedLocks()
        active = 0
        max_active = 0

        async def worker():
            nonlocal active, max_active
            async with locks.lock_for("a"):
                active += 1
                max_active = max(max_active, active)
                await asyncio.sleep(0.01)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(5)))

        assert max_active == 1

    @pytest.mark.asyncio
    async def test_discard_skips_held_lock(self):
        """Test that a held lock is not discarded."""
        locks = KeyedLocks()

        async with locks.lock_for("a"):
            locks.discard("a")
            assert "a" in locks

        locks.discard("a")
        assert "a" not in locks

    def test_clear(self):
        locks = KeyedLocks()
        locks.lock_for("a")
        locks.clear()
        assert len(locks) == 0
