# order_agent/context_enricher.py
"""
Context Enricher

Gathers what the capabilities need to know beyond the message itself:
- customer history (last completed orders, favorites, preferred address and
  payment, total completed orders)
- restaurant status (open now?, next opening, prep/delivery estimates,
  active delivery zones)
- agent configuration (personality, instructions, feature flags)
- prior session summary

The four lookups run concurrently. Each one degrades to documented defaults
on failure, so a slow or broken dependency never fails the turn.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from datetime import datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from .config import settings
from .errors import ContextLookupError, RecordNotFoundError
from .memory_store import MemoryStore
from .models import (
    AgentContext,
    CustomerContext,
    DaySchedule,
    EnrichedContext,
    Restaurant,
    RestaurantContext,
    SessionHistoryContext,
)
from .session_context import SessionContext

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

LAST_ORDERS_LIMIT = 3
FAVORITES_LIMIT = 3
DEFAULT_PREP_TIME = 30
DEFAULT_DELIVERY_TIME = 40


class ContextEnricher:
    def __init__(self, store: MemoryStore, default_timezone: Optional[str] = None) -> None:
        self.store = store
        self.default_timezone = default_timezone or settings.RESTAURANT_TIMEZONE

    async def enrich(
        self,
        ctx: SessionContext,
        *,
        now: Optional[datetime] = None,
        turn_id: str = "-",
    ) -> EnrichedContext:
        now = now or datetime.now(timezone.utc)
        started = time.monotonic()

        customer, restaurant, agent, previous_summary = await asyncio.gather(
            self._guarded("customer history", self.load_customer_history(ctx), CustomerContext(phone=ctx.session.phone), turn_id),
            self._guarded("restaurant status", self.load_restaurant_status(ctx.session.restaurant_id, now), RestaurantContext(), turn_id),
            self._guarded("agent configuration", self.load_agent_configuration(ctx.session.agent_id), AgentContext(), turn_id),
            self._guarded("session summary", self.load_last_session_summary(ctx.session_id), None, turn_id),
        )

        logger.info("[%s] Context enriched in %.0fms", turn_id, (time.monotonic() - started) * 1000)
        return EnrichedContext(
            customer=customer,
            restaurant=restaurant,
            agent=agent,
            session=SessionHistoryContext(
                reopened_count=ctx.state.reopened_count,
                previous_session_summary=previous_summary,
            ),
        )

    async def _guarded(self, name, coro, default, turn_id):
        try:
            return await coro
        except Exception as e:
            logger.warning("[%s] %s lookup failed, using defaults: %r", turn_id, name, e)
            return default

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------
    async def load_customer_history(self, ctx: SessionContext) -> CustomerContext:
        phone = ctx.session.phone
        restaurant_id = ctx.session.restaurant_id
        last_orders, total = await asyncio.gather(
            self.store.recent_completed_orders(phone, restaurant_id, limit=LAST_ORDERS_LIMIT),
            self.store.count_completed_orders(phone, restaurant_id),
        )

        frequency: Counter = Counter()
        for order in last_orders:
            for item in order.items:
                frequency[item.product_name] += 1
        favorites = [name for name, _ in frequency.most_common(FAVORITES_LIMIT)]

        latest = last_orders[0] if last_orders else None
        return CustomerContext(
            phone=phone,
            last_orders=last_orders,
            favorite_items=favorites,
            preferred_address=latest.delivery_address if latest else None,
            preferred_payment=latest.payment_method if latest else None,
            total_orders=total,
        )

    async def load_restaurant_status(self, restaurant_id: str, now: datetime) -> RestaurantContext:
        try:
            restaurant, zones = await asyncio.gather(
                self.store.get_restaurant(restaurant_id),
                self.store.active_delivery_zones(restaurant_id),
            )
        except RecordNotFoundError as e:
            raise ContextLookupError(f"restaurant {restaurant_id} is not configured") from e
        local_now = now.astimezone(ZoneInfo(restaurant.timezone or self.default_timezone))
        is_open, next_open = opening_status(restaurant, local_now)
        return RestaurantContext(
            name=restaurant.name,
            is_open=is_open,
            next_open_time=next_open,
            estimated_prep_time=restaurant.estimated_prep_time or DEFAULT_PREP_TIME,
            estimated_delivery_time=restaurant.estimated_delivery_time or DEFAULT_DELIVERY_TIME,
            delivery_zones=zones,
            payment_instructions=restaurant.payment_instructions,
        )

    async def load_agent_configuration(self, agent_id: str) -> AgentContext:
        try:
            agent = await self.store.get_agent_config(agent_id)
        except RecordNotFoundError as e:
            raise ContextLookupError(f"agent {agent_id} is not configured") from e
        return AgentContext(
            personality=agent.personality or "friendly",
            instructions=agent.instructions,
            features=agent.features,
        )

    async def load_last_session_summary(self, session_id: str) -> Optional[str]:
        summary = await self.store.latest_summary(session_id)
        return summary.summary if summary else None


def opening_status(restaurant: Restaurant, local_now: datetime) -> Tuple[bool, Optional[str]]:
    """
    Compare "HH:MM" of `local_now` against today's schedule (bounds
    inclusive). When closed, return the next opening: today's opening time
    if it is still ahead, else "<weekday> HH:MM" of the next enabled day.
    """
    if not restaurant.working_hours:
        return True, None

    weekday = WEEKDAYS[local_now.weekday()]
    current = local_now.strftime("%H:%M")
    today: Optional[DaySchedule] = restaurant.working_hours.get(weekday)

    if today and today.enabled and today.open <= current <= today.close:
        return True, None

    if today and today.enabled and current < today.open:
        return False, today.open

    for offset in range(1, 8):
        day = WEEKDAYS[(local_now.weekday() + offset) % 7]
        schedule = restaurant.working_hours.get(day)
        if schedule and schedule.enabled:
            return False, f"{day} {schedule.open}"
    return False, None
