#!/usr/bin/env python3
"""Tests for the background runtime, the message bus and call spawning."""

import asyncio
import concurrent.futures
import threading
import time

import pytest

from cloudnav.bus import MessageBus
from cloudnav.call_messages import (
    DownloadFileFinished,
    DownloadFileStarted,
    ListFolderFinished,
    ListFolderProgress,
    ListFolderStarted,
)
from cloudnav.call_states import Canceller, CallState, DownloadFileState
from cloudnav.errors import RuntimeClosedError
from cloudnav.runtime import RuntimeHolder, TaskHandle
from cloudnav.storages import DownloadFileRequest, ListFolderRequest, storage_call

from conftest import file_item


def drain_until(bus, predicate, timeout=5.0):
    events = []
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        events.extend(bus.drain())
        if predicate(events):
            return events
        time.sleep(0.01)
    raise AssertionError(f"condition not reached, got {events}")


def finished(kind):
    return lambda events: any(isinstance(e.payload, kind) for e in events)


def test_bus_preserves_order_per_producer():
    bus = MessageBus()
    threads = [
        threading.Thread(target=lambda n=n: [bus.send(n, i) for i in range(100)])
        for n in range(4)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    events = list(bus.drain())
    assert len(events) == 400
    assert bus.empty()
    for n in range(4):
        assert [e.payload for e in events if e.call_id == n] == list(range(100))


def test_spawn_and_block_on(runtime):
    async def answer():
        await asyncio.sleep(0)
        return threading.current_thread().name

    assert runtime.block_on(answer(), timeout=5) == 'test-runtime'


def test_task_handle_abort_before_attach(runtime):
    handle = TaskHandle('early')
    handle.abort()
    assert handle.done()

    future = runtime.spawn(asyncio.sleep(3600))
    handle.attach(future)
    with pytest.raises(concurrent.futures.CancelledError):
        future.result(timeout=5)
    assert handle.aborted


def test_task_handle_abort_cancels_running_work(runtime):
    started = threading.Event()

    async def forever():
        started.set()
        await asyncio.sleep(3600)

    handle = TaskHandle('forever')
    handle.attach(runtime.spawn(forever()))
    assert started.wait(5)
    assert not handle.done()

    handle.abort()
    concurrent.futures.wait([handle._future], timeout=5)
    assert handle.done()
    assert handle.cancelled()


def test_spawn_after_shutdown_raises():
    holder = RuntimeHolder(name='short-lived')
    holder.shutdown_timeout(2.0)
    assert holder.closed
    assert holder.loop.is_closed()

    coro = asyncio.sleep(0)
    with pytest.raises(RuntimeClosedError):
        holder.spawn(coro)
    # Second shutdown is a no-op
    holder.shutdown_timeout(2.0)


def test_shutdown_cancels_pending_work():
    holder = RuntimeHolder(name='with-work')
    cancelled = threading.Event()

    async def stubborn():
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    future = holder.spawn(stubborn())
    holder.block_on(asyncio.sleep(0.01), timeout=5)
    holder.shutdown_timeout(2.0)

    assert cancelled.is_set()
    assert future.cancelled()


def test_detached_tasks_are_tracked(runtime, caplog):
    gate = threading.Event()

    async def wait_for_gate():
        while not gate.is_set():
            await asyncio.sleep(0.01)

    async def fail():
        raise ValueError("boom")

    runtime.spawn_detached(wait_for_gate(), 'gated')
    failing = runtime.spawn_detached(fail(), 'failing')
    concurrent.futures.wait([failing.future], timeout=5)

    assert runtime.print_pending_tasks() == 1
    assert 'gated' in caplog.text
    deadline = time.monotonic() + 5
    while 'Detached task failing failed: boom' not in caplog.text:
        assert time.monotonic() < deadline
        time.sleep(0.01)
    gate.set()


def test_wait_detached(runtime):
    tracked = runtime.spawn_detached(asyncio.sleep(0.05), 'short')
    runtime.wait_detached(5.0)
    assert tracked.is_finished()
    assert runtime.print_pending_tasks() == 0


def test_canceller_round_trip(runtime):
    """The owner signals from another thread and waits for the acknowledgement."""
    canceller = runtime.block_on(_make_canceller(), timeout=5)

    async def listener():
        await canceller.wait_signalled()
        canceller.mark_done()

    runtime.spawn(listener())
    assert not canceller.wait(0.05)
    assert canceller.cancel(timeout=5)


def test_canceller_times_out_without_listener(runtime):
    canceller = runtime.block_on(_make_canceller(), timeout=5)
    assert not canceller.cancel(timeout=0.05)


async def _make_canceller():
    return Canceller(asyncio.get_running_loop())


def test_call_state_abort_clears_work(runtime):
    handle = TaskHandle('download')
    handle.attach(runtime.spawn(asyncio.sleep(3600)))
    state = CallState(DownloadFileState('a.txt', 'a.txt'), handles=[handle])

    state.abort()
    assert handle.aborted
    assert state.handles == []


def test_download_fraction():
    state = DownloadFileState('a', 'a')
    assert state.fraction is None
    state.total_size = 200
    state.bytes_downloaded = 50
    assert state.fraction == 0.25
    state.bytes_downloaded = 500
    assert state.fraction == 1.0


def test_started_precedes_task_events(runtime, provider):
    """The Started event is always the first event of a call."""
    provider.folders['docs'] = [file_item('a.txt'), file_item('b.txt')]
    bus = MessageBus()

    handle = storage_call(runtime, bus, provider, 5, ListFolderRequest('docs'))
    events = drain_until(bus, finished(ListFolderFinished))

    kinds = [type(e.payload) for e in events]
    assert kinds == [ListFolderStarted, ListFolderProgress, ListFolderFinished]
    assert events[0].payload.handle is handle
    assert all(e.call_id == 5 for e in events)
    assert [i.name for i in events[-1].payload.result.items] == ['a.txt', 'b.txt']


def test_failed_download_emits_one_finished(runtime, provider, tmp_path):
    bus = MessageBus()
    storage_call(runtime, bus, provider, 9,
                 DownloadFileRequest('missing.bin', tmp_path / 'missing.bin'))
    events = drain_until(bus, finished(DownloadFileFinished))

    assert isinstance(events[0].payload, DownloadFileStarted)
    results = [e.payload for e in events if isinstance(e.payload, DownloadFileFinished)]
    assert len(results) == 1
    assert not results[0].ok


def test_unexpected_exception_becomes_finished(runtime, provider):
    async def broken(path, reporter):
        raise KeyError('surprise')

    provider.list_folder = broken
    bus = MessageBus()
    storage_call(runtime, bus, provider, 2, ListFolderRequest(''))
    events = drain_until(bus, finished(ListFolderFinished))

    assert isinstance(events[-1].payload.error, KeyError)


def test_storage_call_on_closed_runtime_queues_nothing(provider):
    holder = RuntimeHolder(name='closed')
    holder.shutdown_timeout(2.0)
    bus = MessageBus()

    with pytest.raises(RuntimeClosedError):
        storage_call(holder, bus, provider, 4, ListFolderRequest(''))
    assert bus.empty()


class ClosingRuntime:
    """Reports open but refuses the spawn, as if it closed in between."""

    closed = False

    def spawn(self, coro):
        coro.close()
        raise RuntimeClosedError("Runtime no longer exists")


def test_storage_call_finishes_when_spawn_fails(provider, tmp_path):
    bus = MessageBus()

    with pytest.raises(RuntimeClosedError):
        storage_call(ClosingRuntime(), bus, provider, 6,
                     DownloadFileRequest('a.txt', tmp_path / 'a.txt'))

    events = list(bus.drain())
    assert [type(e.payload) for e in events] == [DownloadFileStarted, DownloadFileFinished]
    assert isinstance(events[1].payload.error, RuntimeClosedError)


def test_unknown_request_rejected(runtime, provider):
    with pytest.raises(TypeError):
        storage_call(runtime, MessageBus(), provider, 1, object())
