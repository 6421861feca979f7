# order_agent/lifecycle.py
"""
Session Lifecycle Manager

Two independent triggers mutate sessions outside of a conversation turn:

- idle expiry (scheduled): active sessions silent for longer than the idle
  window are expired; if they held order data, a SessionSummary is written
  first so a later conversation can pick up the thread.
- order-status events: a cancelled order reopens its session for a new
  order, a completed order archives it.

Every mutation goes through the store's versioned update, so a sweep racing
a live turn or another sweep acts at most once per session.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from .errors import SessionNotFoundError
from .memory_store import MemoryStore
from .models import LifecycleAction, OrderStatus, OrderStatusEvent, SessionSummary
from .session_context import OrderDraft, SessionContext, SessionLifecycle

logger = logging.getLogger(__name__)


def summarize_draft(draft: OrderDraft, idle_hours: int) -> str:
    parts = [f"Sessão expirada após {idle_hours}h."]
    if draft.items:
        items = ", ".join(f"{i.quantity}x {i.product_name}" for i in draft.items)
        parts.append(f"Itens no carrinho: {items}.")
    if draft.delivery_type:
        parts.append(f"Tipo de entrega: {draft.delivery_type.value}.")
    if draft.payment_method:
        parts.append(f"Forma de pagamento: {draft.payment_method}.")
    return " ".join(parts)


class SessionLifecycleManager:
    def __init__(self, store: MemoryStore, idle_hours: int = 12) -> None:
        self.store = store
        self.idle_hours = idle_hours

    # -------------------------------------------------------------------------
    # Idle expiry
    # -------------------------------------------------------------------------
    async def expire_idle_sessions(self, *, now: Optional[datetime] = None) -> List[str]:
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=self.idle_hours)
        candidates = await self.store.sessions_idle_since(cutoff)
        logger.info("Expiry sweep: %s idle session(s)", len(candidates))

        expired = []
        for session_id in candidates:
            try:
                if await self.expire_session(session_id, cutoff=cutoff, now=now):
                    expired.append(session_id)
            except SessionNotFoundError:
                logger.warning("Session %s disappeared before it could be expired", session_id)
        return expired

    async def expire_session(self, session_id: str, *, cutoff: datetime, now: datetime) -> bool:
        summary_id = uuid.uuid4().hex

        def _expire(ctx: SessionContext) -> Optional[OrderDraft]:
            if ctx.session.session_status != SessionLifecycle.ACTIVE:
                return None
            last = ctx.state.inbox.last_message_timestamp or ctx.session.created_at
            if last >= cutoff:
                # a message arrived since the scan
                return None
            draft = ctx.state.order
            if draft.has_data():
                ctx.state.summary_id = summary_id
            ctx.expire(now)
            return draft

        draft = await self.store.update_session(session_id, _expire)
        if draft is None:
            return False

        if draft.has_data():
            await self.store.add_summary(
                SessionSummary(
                    id=summary_id,
                    session_id=session_id,
                    summary=summarize_draft(draft, self.idle_hours),
                    items_ordered=draft.items,
                    order_total=draft.total,
                    delivery_type=draft.delivery_type.value if draft.delivery_type else None,
                    payment_method=draft.payment_method,
                    completed_at=now,
                )
            )
            logger.info("Summary %s saved for session %s", summary_id, session_id)
        logger.info("Session %s expired", session_id)
        return True

    # -------------------------------------------------------------------------
    # Order status events
    # -------------------------------------------------------------------------
    async def handle_order_status(
        self,
        event: OrderStatusEvent,
        *,
        now: Optional[datetime] = None,
    ) -> LifecycleAction:
        if not event.session_id or event.old_status == event.new_status:
            return LifecycleAction(action="skipped", session_id=event.session_id)

        now = now or datetime.now(timezone.utc)
        logger.info(
            "Order status change %s -> %s (session %s)",
            event.old_status,
            event.new_status,
            event.session_id,
        )

        def _reopen(ctx: SessionContext) -> bool:
            ctx.reopen(now)
            return True

        def _archive(ctx: SessionContext) -> bool:
            ctx.archive(now)
            return True

        if event.new_status == OrderStatus.CANCELLED.value:
            mutate, action, reason = _reopen, "session_reopened", "order_cancelled"
        elif event.new_status == OrderStatus.COMPLETED.value:
            mutate, action, reason = _archive, "session_archived", "order_completed"
        else:
            return LifecycleAction(action="no_action", session_id=event.session_id)

        try:
            await self.store.update_session(event.session_id, mutate)
        except SessionNotFoundError:
            logger.warning("Order status event for unknown session %s skipped", event.session_id)
            return LifecycleAction(action="skipped", session_id=event.session_id, reason="session_not_found")

        logger.info("Session %s: %s", event.session_id, action)
        return LifecycleAction(action=action, session_id=event.session_id, reason=reason)
