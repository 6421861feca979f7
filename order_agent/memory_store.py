# order_agent/memory_store.py
"""
MemoryStore

In-process store for sessions and the records the core reads around them
(restaurants, delivery zones, products, agent configurations, orders and
session summaries).

Sessions are versioned: every successful save bumps `version`, and a save
whose version does not match the stored one raises
ConcurrentModificationError. Loads and saves copy, so a caller's changes
only become visible once saved.

The async interface is the seam for a real database; swapping this class for
one backed by Postgres or Redis does not change any caller.
"""

from __future__ import annotations

import copy
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from .errors import (
    ConcurrentModificationError,
    RecordNotFoundError,
    SessionNotFoundError,
)
from .models import (
    AgentConfiguration,
    DeliveryZone,
    Order,
    OrderStatus,
    Product,
    Restaurant,
    SessionSummary,
)
from .session_context import SessionContext, SessionLifecycle, SessionStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_UPDATE_RETRIES = 3


class MemoryStore:
    """
    In-memory dictionary-based store.

    Not persistent across deployments.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionContext] = {}
        self._session_by_phone: Dict[Tuple[str, str], str] = {}
        self._restaurants: Dict[str, Restaurant] = {}
        self._zones: Dict[str, DeliveryZone] = {}
        self._products: Dict[str, Product] = {}
        self._agents: Dict[str, AgentConfiguration] = {}
        self._orders: Dict[str, Order] = {}
        self._summaries: List[SessionSummary] = []

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------
    async def create_session(self, ctx: SessionContext) -> SessionContext:
        if ctx.session_id in self._sessions:
            raise ConcurrentModificationError(ctx.session_id, 0, self._sessions[ctx.session_id].version)
        stored = copy.deepcopy(ctx)
        stored.version = 1
        self._sessions[ctx.session_id] = stored
        self._session_by_phone[(ctx.session.restaurant_id, ctx.session.phone)] = ctx.session_id
        return copy.deepcopy(stored)

    async def get_session(self, session_id: str) -> SessionContext:
        ctx = self._sessions.get(session_id)
        if ctx is None:
            raise SessionNotFoundError(session_id)
        return copy.deepcopy(ctx)

    async def find_session_by_phone(self, restaurant_id: str, phone: str) -> Optional[SessionContext]:
        session_id = self._session_by_phone.get((restaurant_id, phone))
        if session_id is None:
            return None
        return await self.get_session(session_id)

    async def save_session(self, ctx: SessionContext) -> SessionContext:
        """
        Compare-and-swap write. `ctx.version` must equal the stored version.
        Returns the saved copy with its new version.
        """
        current = self._sessions.get(ctx.session_id)
        if current is None:
            raise SessionNotFoundError(ctx.session_id)
        if current.version != ctx.version:
            raise ConcurrentModificationError(ctx.session_id, ctx.version, current.version)

        stored = copy.deepcopy(ctx)
        stored.version = current.version + 1
        self._sessions[ctx.session_id] = stored
        return copy.deepcopy(stored)

    async def update_session(
        self,
        session_id: str,
        mutator: Callable[[SessionContext], Optional[T]],
        *,
        retries: int = DEFAULT_UPDATE_RETRIES,
    ) -> Optional[T]:
        """
        Load, mutate, save; reload and retry when another writer got there
        first.

        The mutator returns a result. None means "nothing to change" and no
        write happens. The mutator may run more than once, so it must decide
        from the context it is given, not from outside state.
        """
        attempt = 0
        while True:
            ctx = await self.get_session(session_id)
            result = mutator(ctx)
            if result is None:
                return None
            try:
                await self.save_session(ctx)
                return result
            except ConcurrentModificationError:
                attempt += 1
                if attempt > retries:
                    raise
                logger.info("Retrying update of session %s after concurrent write (attempt %s)", session_id, attempt)

    async def sessions_with_pending_batch(self, older_than: datetime) -> List[str]:
        """
        Active sessions whose debounce timer is on and whose newest message
        arrived before `older_than`.
        """
        out = []
        for ctx in self._sessions.values():
            inbox = ctx.state.inbox
            if ctx.session.status != SessionStatus.ACTIVE or not inbox.debounce_timer_active:
                continue
            if inbox.last_message_timestamp is not None and inbox.last_message_timestamp < older_than:
                out.append(ctx.session_id)
        return out

    async def sessions_idle_since(self, cutoff: datetime) -> List[str]:
        """
        Sessions in an active lifecycle whose last customer message is older
        than `cutoff`.
        """
        out = []
        for ctx in self._sessions.values():
            if ctx.session.session_status != SessionLifecycle.ACTIVE:
                continue
            last = ctx.state.inbox.last_message_timestamp or ctx.session.created_at
            if last < cutoff:
                out.append(ctx.session_id)
        return out

    # -------------------------------------------------------------------------
    # Restaurants, zones, products
    # -------------------------------------------------------------------------
    async def put_restaurant(self, restaurant: Restaurant) -> None:
        self._restaurants[restaurant.id] = restaurant.model_copy(deep=True)

    async def get_restaurant(self, restaurant_id: str) -> Restaurant:
        restaurant = self._restaurants.get(restaurant_id)
        if restaurant is None:
            raise RecordNotFoundError(f"Restaurant not found: {restaurant_id}")
        return restaurant.model_copy(deep=True)

    async def put_delivery_zone(self, zone: DeliveryZone) -> None:
        self._zones[zone.id] = zone.model_copy(deep=True)

    async def active_delivery_zones(self, restaurant_id: str) -> List[DeliveryZone]:
        zones = [
            z.model_copy(deep=True)
            for z in self._zones.values()
            if z.restaurant_id == restaurant_id and z.is_active
        ]
        return sorted(zones, key=lambda z: z.max_distance)

    async def put_product(self, product: Product) -> None:
        self._products[product.id] = product.model_copy(deep=True)

    async def list_products(self, restaurant_id: str) -> List[Product]:
        return [
            p.model_copy(deep=True)
            for p in self._products.values()
            if p.restaurant_id == restaurant_id and p.is_available
        ]

    # -------------------------------------------------------------------------
    # Agent configuration
    # -------------------------------------------------------------------------
    async def put_agent_config(self, agent: AgentConfiguration) -> None:
        self._agents[agent.id] = agent.model_copy(deep=True)

    async def get_agent_config(self, agent_id: str) -> AgentConfiguration:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise RecordNotFoundError(f"Agent configuration not found: {agent_id}")
        return agent.model_copy(deep=True)

    async def find_agent_by_instance(self, instance: Optional[str]) -> Optional[AgentConfiguration]:
        if not instance:
            return None
        for agent in self._agents.values():
            if agent.instance == instance:
                return agent.model_copy(deep=True)
        return None

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------
    async def put_order(self, order: Order) -> None:
        self._orders[order.id] = order.model_copy(deep=True)

    async def get_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise RecordNotFoundError(f"Order not found: {order_id}")
        return order.model_copy(deep=True)

    def _completed_orders(self, phone: str, restaurant_id: str) -> List[Order]:
        return [
            o
            for o in self._orders.values()
            if o.customer_phone == phone
            and o.restaurant_id == restaurant_id
            and o.status == OrderStatus.COMPLETED
        ]

    async def recent_completed_orders(self, phone: str, restaurant_id: str, limit: int = 3) -> List[Order]:
        orders = sorted(self._completed_orders(phone, restaurant_id), key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in orders[:limit]]

    async def count_completed_orders(self, phone: str, restaurant_id: str) -> int:
        return len(self._completed_orders(phone, restaurant_id))

    async def orders_for_session(self, session_id: str) -> List[Order]:
        return [o.model_copy(deep=True) for o in self._orders.values() if o.session_id == session_id]

    # -------------------------------------------------------------------------
    # Session summaries
    # -------------------------------------------------------------------------
    async def add_summary(self, summary: SessionSummary) -> None:
        self._summaries.append(summary.model_copy(deep=True))

    async def latest_summary(self, session_id: str) -> Optional[SessionSummary]:
        matches = [s for s in self._summaries if s.session_id == session_id]
        if not matches:
            return None
        return max(matches, key=lambda s: s.completed_at).model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------
    async def load_seed(self, path: str) -> None:
        """
        Load restaurants, delivery zones, products, agents and orders from a
        JSON file with one list per record type.
        """
        data: Dict[str, Any] = json.loads(Path(path).read_text(encoding="utf-8"))
        for raw in data.get("restaurants", []):
            await self.put_restaurant(Restaurant.model_validate(raw))
        for raw in data.get("delivery_zones", []):
            await self.put_delivery_zone(DeliveryZone.model_validate(raw))
        for raw in data.get("products", []):
            await self.put_product(Product.model_validate(raw))
        for raw in data.get("agents", []):
            await self.put_agent_config(AgentConfiguration.model_validate(raw))
        for raw in data.get("orders", []):
            await self.put_order(Order.model_validate(raw))
        logger.info(
            "Seed loaded from %s: %s restaurants, %s products, %s agents",
            path,
            len(self._restaurants),
            len(self._products),
            len(self._agents),
        )
