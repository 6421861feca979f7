# order_agent/debouncer.py
"""
Message Debouncer

Customers type in bursts ("oi" / "quero pizza" / "grande" / "de calabresa").
Each inbound message is appended to the session's inbox and extends the
quiet window; a periodic sweep flushes every inbox that has been idle for
longer than the threshold as one newline-joined message.

Flushing claims the batch with a versioned write before forwarding it, so
two overlapping sweeps (or a sweep and a manual flush) can never forward the
same batch twice. Claimed batches are handed to background tasks and the
sweep returns at once; a slow turn never holds up the next sweep.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Set

from .memory_store import MemoryStore
from .session_context import PendingMessage, SessionContext

logger = logging.getLogger(__name__)

# forward(session_id, combined_text) -> processes a turn
Forward = Callable[[str, str], Awaitable[object]]


class MessageDebouncer:
    def __init__(self, store: MemoryStore, forward: Optional[Forward] = None) -> None:
        self.store = store
        self.forward = forward
        self._tasks: Set[asyncio.Task] = set()

    async def enqueue(
        self,
        session_id: str,
        text: str,
        arrival_time: Optional[datetime] = None,
        *,
        message_id: Optional[str] = None,
    ) -> bool:
        """
        Queue a message for the session. Returns False when the message id
        was already seen (gateway redelivery) and nothing was queued.
        """
        arrival_time = arrival_time or datetime.now(timezone.utc)

        def _append(ctx: SessionContext) -> Optional[bool]:
            inbox = ctx.state.inbox
            if message_id and message_id in inbox.recent_message_ids:
                return None
            inbox.pending_messages.append(
                PendingMessage(text=text, received_at=arrival_time, message_id=message_id)
            )
            inbox.remember(message_id)
            if inbox.last_message_timestamp is None or arrival_time > inbox.last_message_timestamp:
                inbox.last_message_timestamp = arrival_time
            inbox.debounce_timer_active = True
            return True

        queued = await self.store.update_session(session_id, _append)
        if not queued:
            logger.info("Duplicate message %s for session %s ignored", message_id, session_id)
            return False
        return True

    async def take_batch(self, session_id: str, cutoff: datetime) -> Optional[str]:
        """
        Claim and clear the session's batch if it has been quiet since before
        `cutoff`. Returns the combined message, or None when there is nothing
        to flush (already flushed, or a newer message extended the window).
        """

        def _claim(ctx: SessionContext) -> Optional[str]:
            inbox = ctx.state.inbox
            if not inbox.debounce_timer_active:
                return None
            if inbox.last_message_timestamp is not None and inbox.last_message_timestamp >= cutoff:
                return None
            combined = "\n".join(m.text for m in inbox.pending_messages)
            inbox.pending_messages = []
            inbox.debounce_timer_active = False
            # an empty batch still clears the flag, but is not forwarded
            return combined

        combined = await self.store.update_session(session_id, _claim)
        return combined or None

    async def flush_expired(
        self,
        threshold_seconds: float = 8,
        *,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Sweep: flush every inbox idle longer than `threshold_seconds` and
        start a turn for each combined message without waiting for it.
        Returns the flushed session ids.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=threshold_seconds)
        candidates = await self.store.sessions_with_pending_batch(cutoff)
        if not candidates:
            return []

        batches = []
        for session_id in candidates:
            combined = await self.take_batch(session_id, cutoff)
            if combined is not None:
                batches.append((session_id, combined))

        logger.info("Debounce sweep: %s candidate(s), %s flushed", len(candidates), len(batches))
        if self.forward is not None:
            loop = asyncio.get_running_loop()
            for session_id, text in batches:
                task = loop.create_task(self.forward(session_id, text), name=f"turn:{session_id}")
                self._tasks.add(task)
                task.add_done_callback(self._forward_done)
        return [sid for sid, _ in batches]

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """
        Wait for every turn started by earlier sweeps (shutdown, tests).
        """
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    def _forward_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Processing flushed batch (%s) was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Processing flushed batch (%s) failed", task.get_name(), exc_info=exc)
