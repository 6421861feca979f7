"""
Unit tests for the message debouncer.

Tests enqueue bookkeeping, arrival-order flushing, the quiet window, and
that a batch is only ever forwarded once.
"""

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock

from order_agent.debouncer import MessageDebouncer
from order_agent.session_context import SessionStatus

from helpers import NOW, new_context


def seconds(n):
    return NOW + timedelta(seconds=n)


class TestEnqueue:
    """Queueing messages on the session inbox."""

    def test_enqueue_sets_timer_and_timestamp(self, store):
        async def scenario():
            await store.create_session(new_context())
            debouncer = MessageDebouncer(store)
            assert await debouncer.enqueue("s-1", "oi", seconds(0), message_id="m1")
            return await store.get_session("s-1")

        inbox = asyncio.run(scenario()).state.inbox
        assert [m.text for m in inbox.pending_messages] == ["oi"]
        assert inbox.debounce_timer_active is True
        assert inbox.last_message_timestamp == seconds(0)
        assert inbox.recent_message_ids == ["m1"]

    def test_window_extends_to_newest_message(self, store):
        async def scenario():
            await store.create_session(new_context())
            debouncer = MessageDebouncer(store)
            await debouncer.enqueue("s-1", "oi", seconds(0))
            await debouncer.enqueue("s-1", "quero pizza", seconds(5))
            return await store.get_session("s-1")

        assert asyncio.run(scenario()).state.inbox.last_message_timestamp == seconds(5)

    def test_late_arrival_does_not_move_timestamp_back(self, store):
        async def scenario():
            await store.create_session(new_context())
            debouncer = MessageDebouncer(store)
            await debouncer.enqueue("s-1", "b", seconds(5))
            await debouncer.enqueue("s-1", "a", seconds(3))
            return await store.get_session("s-1")

        assert asyncio.run(scenario()).state.inbox.last_message_timestamp == seconds(5)

    def test_redelivered_message_id_is_dropped(self, store):
        async def scenario():
            await store.create_session(new_context())
            debouncer = MessageDebouncer(store)
            first = await debouncer.enqueue("s-1", "oi", seconds(0), message_id="m1")
            again = await debouncer.enqueue("s-1", "oi", seconds(1), message_id="m1")
            ctx = await store.get_session("s-1")
            return first, again, ctx

        first, again, ctx = asyncio.run(scenario())
        assert first is True
        assert again is False
        assert len(ctx.state.inbox.pending_messages) == 1
        assert ctx.state.inbox.last_message_timestamp == seconds(0)

    def test_remembered_ids_are_bounded(self, store):
        async def scenario():
            await store.create_session(new_context())
            debouncer = MessageDebouncer(store)
            for i in range(60):
                await debouncer.enqueue("s-1", f"msg {i}", seconds(i), message_id=f"m{i}")
            return await store.get_session("s-1")

        ids = asyncio.run(scenario()).state.inbox.recent_message_ids
        assert len(ids) == 50
        assert ids[0] == "m10"
        assert ids[-1] == "m59"


class TestFlush:
    """Sweeping quiet inboxes."""

    def test_flush_combines_in_arrival_order(self, store):
        forward = AsyncMock()

        async def scenario():
            await store.create_session(new_context())
            debouncer = MessageDebouncer(store, forward=forward)
            await debouncer.enqueue("s-1", "oi", seconds(0))
            await debouncer.enqueue("s-1", "quero uma pizza", seconds(1))
            await debouncer.enqueue("s-1", "de calabresa", seconds(2))
            flushed = await debouncer.flush_expired(8, now=seconds(11))
            await debouncer.drain()
            return flushed, await store.get_session("s-1")

        flushed, ctx = asyncio.run(scenario())
        assert flushed == ["s-1"]
        forward.assert_awaited_once_with("s-1", "oi\nquero uma pizza\nde calabresa")
        assert ctx.state.inbox.pending_messages == []
        assert ctx.state.inbox.debounce_timer_active is False

    def test_nothing_flushed_inside_quiet_window(self, store):
        forward = AsyncMock()

        async def scenario():
            await store.create_session(new_context())
            debouncer = MessageDebouncer(store, forward=forward)
            await debouncer.enqueue("s-1", "oi", seconds(0))
            await debouncer.enqueue("s-1", "tudo bem?", seconds(4))
            return await debouncer.flush_expired(8, now=seconds(10))

        assert asyncio.run(scenario()) == []
        forward.assert_not_awaited()

    def test_batch_is_claimed_once(self, store):
        async def scenario():
            await store.create_session(new_context())
            debouncer = MessageDebouncer(store)
            await debouncer.enqueue("s-1", "oi", seconds(0))
            first = await debouncer.take_batch("s-1", seconds(5))
            second = await debouncer.take_batch("s-1", seconds(5))
            return first, second

        assert asyncio.run(scenario()) == ("oi", None)

    def test_overlapping_sweeps_forward_once(self, store):
        forward = AsyncMock()

        async def scenario():
            await store.create_session(new_context("s-1"))
            await store.create_session(new_context("s-2", phone="5511888880000"))
            debouncer = MessageDebouncer(store, forward=forward)
            await debouncer.enqueue("s-1", "oi", seconds(0))
            await debouncer.enqueue("s-2", "olá", seconds(0))
            sweeps = await asyncio.gather(
                debouncer.flush_expired(8, now=seconds(9)),
                debouncer.flush_expired(8, now=seconds(9)),
            )
            await debouncer.drain()
            return sweeps

        first, second = asyncio.run(scenario())
        assert sorted(first + second) == ["s-1", "s-2"]
        assert forward.await_count == 2

    def test_inactive_sessions_are_not_flushed(self, store):
        forward = AsyncMock()

        async def scenario():
            ctx = new_context()
            ctx.session.status = SessionStatus.ARCHIVED
            await store.create_session(ctx)
            debouncer = MessageDebouncer(store, forward=forward)
            await debouncer.enqueue("s-1", "oi", seconds(0))
            return await debouncer.flush_expired(8, now=seconds(20))

        assert asyncio.run(scenario()) == []
        forward.assert_not_awaited()

    def test_forward_failure_does_not_break_the_sweep(self, store, caplog):
        forward = AsyncMock(side_effect=RuntimeError("turn failed"))

        async def scenario():
            await store.create_session(new_context())
            debouncer = MessageDebouncer(store, forward=forward)
            await debouncer.enqueue("s-1", "oi", seconds(0))
            flushed = await debouncer.flush_expired(8, now=seconds(9))
            await debouncer.drain()
            return flushed, await store.get_session("s-1")

        with caplog.at_level(logging.ERROR, logger="order_agent.debouncer"):
            flushed, ctx = asyncio.run(scenario())
        assert flushed == ["s-1"]
        assert "Processing flushed batch (turn:s-1) failed" in caplog.text
        # the batch is not requeued
        assert ctx.state.inbox.pending_messages == []

    def test_slow_turn_does_not_hold_up_the_next_sweep(self, store):
        forwarded = []

        async def scenario():
            release = asyncio.Event()

            async def slow_forward(session_id, text):
                forwarded.append(session_id)
                await release.wait()

            await store.create_session(new_context("s-1"))
            await store.create_session(new_context("s-2", phone="5511888880000"))
            debouncer = MessageDebouncer(store, forward=slow_forward)
            await debouncer.enqueue("s-1", "oi", seconds(0))
            first = await asyncio.wait_for(debouncer.flush_expired(8, now=seconds(9)), timeout=1)

            await debouncer.enqueue("s-2", "olá", seconds(10))
            second = await asyncio.wait_for(debouncer.flush_expired(8, now=seconds(19)), timeout=1)
            in_flight = debouncer.in_flight

            release.set()
            await debouncer.drain()
            return first, second, in_flight, debouncer.in_flight

        first, second, in_flight, after_drain = asyncio.run(scenario())
        assert first == ["s-1"]
        assert second == ["s-2"]
        assert in_flight == 2
        assert after_drain == 0
        assert sorted(forwarded) == ["s-1", "s-2"]
