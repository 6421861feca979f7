# order_agent/order_gateway.py
"""
Order Gateway

Turns a confirmed order draft into an Order record and hands it to the
restaurant's order system.

The record is written to the store; the webhook notification is
best-effort and should NOT affect the conversation if it fails.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

import httpx

from .config import settings
from .memory_store import MemoryStore
from .models import Order, OrderStatus
from .session_context import SessionContext

logger = logging.getLogger(__name__)


class OrderGateway:
    def __init__(
        self,
        store: MemoryStore,
        webhook_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.webhook_url = webhook_url if webhook_url is not None else settings.ORDER_WEBHOOK_URL
        self.transport = transport

    async def create_order(
        self,
        ctx: SessionContext,
        *,
        now: Optional[datetime] = None,
        notify: bool = True,
        turn_id: str = "-",
    ) -> Order:
        draft = ctx.state.order
        order = Order(
            id=uuid.uuid4().hex,
            restaurant_id=ctx.session.restaurant_id,
            session_id=ctx.session_id,
            customer_phone=ctx.session.phone,
            items=[item.model_copy() for item in draft.items],
            total=draft.total,
            delivery_fee=round(draft.total - draft.subtotal, 2),
            delivery_type=draft.delivery_type.value if draft.delivery_type else None,
            delivery_address=draft.delivery_address,
            payment_method=draft.payment_method,
            status=OrderStatus.PENDING,
            created_at=now or datetime.now(timezone.utc),
        )
        await self.store.put_order(order)
        logger.info("[%s] Order %s created for session %s (total %.2f)", turn_id, order.id, ctx.session_id, order.total)

        if notify:
            await self._notify(order, turn_id)
        return order

    async def _notify(self, order: Order, turn_id: str) -> None:
        if not self.webhook_url:
            # Integration not configured
            return

        payload = {
            "order": order.model_dump(mode="json"),
            "session": {
                "session_id": order.session_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        }
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
                resp = await client.post(self.webhook_url, json=payload)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("[%s] Order webhook failed for order %s: %r", turn_id, order.id, e)
