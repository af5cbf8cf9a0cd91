"""Tests for feedvault.scheduler.Ticker."""

import asyncio

import pytest

from feedvault.scheduler import Ticker


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


class TestTicker:
    @pytest.mark.asyncio
    async def test_runs_repeatedly(self):
        hits = []

        async def cb():
            hits.append(1)

        t = Ticker("t", cb, interval_s=0.01, first_delay_s=0)
        t.start()
        await wait_for(lambda: len(hits) >= 3)
        await t.stop()
        assert t.ticks >= 3
        assert not t.running

    @pytest.mark.asyncio
    async def test_sync_callback(self):
        hits = []
        t = Ticker("sync", lambda: hits.append(1), interval_s=0.01, first_delay_s=0)
        t.start()
        await wait_for(lambda: hits)
        await t.stop()

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_loop(self):
        calls = []

        def cb():
            calls.append(1)
            raise ValueError("bad tick")

        t = Ticker("fail", cb, interval_s=0.01, first_delay_s=0)
        t.start()
        await wait_for(lambda: len(calls) >= 2)
        await t.stop()
        assert t.failures >= 2
        assert t.ticks == 0

    @pytest.mark.asyncio
    async def test_first_delay_respected(self):
        hits = []
        t = Ticker("slow", lambda: hits.append(1), interval_s=0.01, first_delay_s=60)
        t.start()
        await asyncio.sleep(0.05)
        assert hits == []
        assert t.running
        await t.stop()

    @pytest.mark.asyncio
    async def test_double_start_raises(self):
        t = Ticker("dup", lambda: None, interval_s=60)
        t.start()
        with pytest.raises(RuntimeError, match="already running"):
            t.start()
        await t.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await Ticker("idle", lambda: None, interval_s=1).stop()

    @pytest.mark.asyncio
    async def test_manual_tick(self):
        hits = []
        t = Ticker("manual", lambda: hits.append(1), interval_s=60)
        await t.tick()
        assert hits == [1]
        assert t.ticks == 1
