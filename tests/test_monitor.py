"""Tests for the per-task session monitor."""

from __future__ import annotations

import logging

import pytest

from agq.monitor import ATTENTION, IDLE, LOST, SessionMonitor
from tests.conftest import wait_until


def _monitor(terminals, status_channel, *, mode="interactive", calls=None):
    calls = calls if calls is not None else []
    return SessionMonitor(
        "task_1",
        "web--calm-owl-3",
        mode,
        terminals=terminals,
        status_channel=status_channel,
        interval=0.01,
        on_idle=lambda task_id: calls.append(("idle", task_id)),
        on_lost=lambda task_id: calls.append(("lost", task_id)),
    )


@pytest.mark.asyncio
async def test_missing_session_is_lost(terminals, status_channel):
    calls = []
    monitor = _monitor(terminals, status_channel, calls=calls)
    assert await monitor.check() == LOST
    assert calls == [("lost", "task_1")]


@pytest.mark.asyncio
async def test_no_report_keeps_polling(terminals, status_channel):
    calls = []
    terminals.alive.add("web--calm-owl-3")
    monitor = _monitor(terminals, status_channel, calls=calls)
    assert await monitor.check() is None
    status_channel.set("web--calm-owl-3", "working")
    assert await monitor.check() is None
    assert calls == []


@pytest.mark.asyncio
async def test_idle_completes(terminals, status_channel):
    calls = []
    terminals.alive.add("web--calm-owl-3")
    status_channel.set("web--calm-owl-3", "idle")
    monitor = _monitor(terminals, status_channel, calls=calls)
    assert await monitor.check() == IDLE
    assert calls == [("idle", "task_1")]


@pytest.mark.asyncio
async def test_attention_logging_by_mode(terminals, status_channel, caplog):
    terminals.alive.add("web--calm-owl-3")
    status_channel.set("web--calm-owl-3", "needs_attention", attention_reason="permission")

    with caplog.at_level(logging.INFO, logger="agq.monitor"):
        interactive = _monitor(terminals, status_channel)
        assert await interactive.check() == ATTENTION
        trust = _monitor(terminals, status_channel, mode="trust")
        assert await trust.check() == ATTENTION

    levels = {(r.levelno, r.getMessage().split(" ")[0]) for r in caplog.records}
    assert (logging.INFO, "Task") in levels
    assert (logging.WARNING, "Trust-mode") in levels


@pytest.mark.asyncio
async def test_attention_logged_once_per_change(terminals, status_channel, caplog):
    terminals.alive.add("web--calm-owl-3")
    status_channel.set("web--calm-owl-3", "needs_attention")
    monitor = _monitor(terminals, status_channel, mode="trust")
    with caplog.at_level(logging.WARNING, logger="agq.monitor"):
        await monitor.check()
        await monitor.check()
    assert len(caplog.records) == 1


@pytest.mark.asyncio
async def test_loop_stops_after_idle(terminals, status_channel):
    calls = []
    terminals.alive.add("web--calm-owl-3")
    monitor = _monitor(terminals, status_channel, calls=calls)
    monitor.start()
    assert monitor.active
    status_channel.set("web--calm-owl-3", "idle")
    await wait_until(lambda: not monitor.active)
    assert calls == [("idle", "task_1")]


@pytest.mark.asyncio
async def test_stop_cancels_loop(terminals, status_channel):
    terminals.alive.add("web--calm-owl-3")
    monitor = _monitor(terminals, status_channel)
    monitor.start()
    monitor.stop()
    assert monitor.active is False
    await wait_until(lambda: monitor._task.done())
