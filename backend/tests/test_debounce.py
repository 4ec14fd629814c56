"""Tests for DebouncedTask."""

import asyncio

import pytest

from markview.client.debounce import DebouncedTask


class Recorder:
    def __init__(self, delay: float = 0.0):
        self.calls = 0
        self.delay = delay

    async def __call__(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        self.calls += 1


@pytest.mark.asyncio
async def test_burst_fires_once():
    recorder = Recorder()
    task = DebouncedTask(recorder, 0.02)

    for _ in range(5):
        task.schedule()
        await asyncio.sleep(0.005)
    assert task.pending
    await task.wait()

    assert recorder.calls == 1
    assert not task.pending


@pytest.mark.asyncio
async def test_cancel_drops_pending_call():
    recorder = Recorder()
    task = DebouncedTask(recorder, 0.01)
    task.schedule()
    task.cancel()
    await asyncio.sleep(0.03)
    assert recorder.calls == 0


@pytest.mark.asyncio
async def test_flush_fires_immediately():
    recorder = Recorder()
    task = DebouncedTask(recorder, 10)
    task.schedule()
    await task.flush()
    assert recorder.calls == 1
    assert not task.pending


@pytest.mark.asyncio
async def test_flush_without_schedule_does_nothing():
    recorder = Recorder()
    task = DebouncedTask(recorder, 10)
    await task.flush()
    assert recorder.calls == 0


@pytest.mark.asyncio
async def test_schedule_override_delay():
    recorder = Recorder()
    task = DebouncedTask(recorder, 10)
    task.schedule(0)
    await task.wait()
    assert recorder.calls == 1


@pytest.mark.asyncio
async def test_reschedule_does_not_cancel_running_callback():
    recorder = Recorder(delay=0.02)
    task = DebouncedTask(recorder, 0)
    task.schedule()
    await asyncio.sleep(0.005)  # callback started
    task.schedule(10)
    await asyncio.sleep(0.03)
    assert recorder.calls == 1
    task.cancel()


@pytest.mark.asyncio
async def test_close_cancels_running_callback():
    recorder = Recorder(delay=0.05)
    task = DebouncedTask(recorder, 0)
    task.schedule()
    await asyncio.sleep(0.005)
    task.close()
    await asyncio.sleep(0.06)
    assert recorder.calls == 0


@pytest.mark.asyncio
async def test_callback_errors_are_logged_not_raised(caplog):
    async def boom():
        raise RuntimeError("nope")

    task = DebouncedTask(boom, 0, name="boom")
    task.schedule()
    await task.wait()
    assert "Debounced task boom failed" in caplog.text
