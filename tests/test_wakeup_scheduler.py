"""Tests for the per-room wake-up timer, using short real delays."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from services.wakeup_scheduler import WakeupScheduler


def soon(seconds: float = 0.01) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=seconds)


class TestWakeupScheduler:
    """Test suite for arming, replacing and cancelling wake-ups"""

    @pytest.mark.asyncio
    async def test_fires_after_deadline(self):
        scheduler = WakeupScheduler()
        fired = asyncio.Event()

        async def callback():
            fired.set()

        scheduler.schedule("tale", soon(), callback)
        assert scheduler.is_pending("tale")
        await asyncio.wait_for(fired.wait(), timeout=1)
        await asyncio.sleep(0)
        assert not scheduler.is_pending("tale")

    @pytest.mark.asyncio
    async def test_past_deadline_fires_immediately(self):
        scheduler = WakeupScheduler()
        fired = asyncio.Event()

        async def callback():
            fired.set()

        scheduler.schedule("tale", soon(-5), callback)
        await asyncio.wait_for(fired.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_rearming_replaces_previous_wakeup(self):
        scheduler = WakeupScheduler()
        calls = []

        async def first():
            calls.append("first")

        async def second():
            calls.append("second")

        scheduler.schedule("tale", soon(0.02), first)
        scheduler.schedule("tale", soon(0.01), second)
        await asyncio.sleep(0.1)
        assert calls == ["second"]

    @pytest.mark.asyncio
    async def test_cancel(self):
        scheduler = WakeupScheduler()
        calls = []

        async def callback():
            calls.append("fired")

        scheduler.schedule("tale", soon(0.02), callback)
        assert scheduler.cancel("tale")
        assert not scheduler.cancel("tale")
        await asyncio.sleep(0.05)
        assert calls == []

    @pytest.mark.asyncio
    async def test_rooms_are_independent(self):
        scheduler = WakeupScheduler()
        calls = []

        async def make(room):
            calls.append(room)

        scheduler.schedule("tale", soon(), lambda: make("tale"))
        scheduler.schedule("saga", soon(), lambda: make("saga"))
        scheduler.cancel("tale")
        await asyncio.sleep(0.05)
        assert calls == ["saga"]

    @pytest.mark.asyncio
    async def test_rearm_from_callback_does_not_cancel_itself(self):
        scheduler = WakeupScheduler()
        finished = asyncio.Event()

        async def next_round():
            pass

        async def callback():
            scheduler.schedule("tale", soon(10), next_round)
            await asyncio.sleep(0)
            finished.set()

        scheduler.schedule("tale", soon(), callback)
        await asyncio.wait_for(finished.wait(), timeout=1)
        assert scheduler.is_pending("tale")
        scheduler.cancel_all()
        assert not scheduler.is_pending("tale")

    @pytest.mark.asyncio
    async def test_callback_errors_are_contained(self):
        scheduler = WakeupScheduler()

        async def broken():
            raise RuntimeError("boom")

        scheduler.schedule("tale", soon(), broken)
        await asyncio.sleep(0.05)
        assert not scheduler.is_pending("tale")
