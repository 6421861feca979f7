# order_agent/agent_core.py
"""
AgentCore

This is the main "brain" of the ordering agent.

Responsibilities:
- Resolve (or create, or reactivate) the session for an inbound message and
  hand the message to the debouncer.
- Run one conversation turn per flushed batch:
    enrich context -> detail capture and address check -> orchestrator
    decision -> capability -> state machine -> order creation when
    finalized -> commit -> outbound delivery.
- Serialize turns of the same session; turns of different sessions run
  concurrently.

This module does NOT:
- Deal with HTTP / FastAPI directly (that happens in app.py).
- Decide which capability answers (LLMAgentRouter does).
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Optional

from .capabilities import (
    HANDOFF_REPLY,
    CapabilityRegistry,
    Turn,
    address_rejection,
    capture_order_details,
    order_summary,
    register_frustration,
    validate_address,
)
from .context_enricher import ContextEnricher
from .debouncer import MessageDebouncer
from .llm_router import LLMAgentRouter
from .memory_store import MemoryStore
from .messaging_gateway import MessagingGateway
from .models import (
    AgentRole,
    ConversationSummary,
    GatewayWebhook,
    OrchestratorDecision,
    WebhookAck,
)
from .order_gateway import OrderGateway
from .session_context import ConversationState, DeliveryType, SessionContext
from .state_machine import CompletionCriteria, ConversationStateMachine

logger = logging.getLogger(__name__)


class AgentCore:
    """
    The core conversation engine.

    You typically create this once at startup and reuse it for all requests.
    """

    def __init__(
        self,
        store: MemoryStore,
        router: LLMAgentRouter,
        enricher: ContextEnricher,
        registry: CapabilityRegistry,
        messaging: MessagingGateway,
        orders: OrderGateway,
        state_machine: Optional[ConversationStateMachine] = None,
        debouncer: Optional[MessageDebouncer] = None,
    ) -> None:
        self.store = store
        self.router = router
        self.enricher = enricher
        self.registry = registry
        self.messaging = messaging
        self.orders = orders
        self.state_machine = state_machine or ConversationStateMachine()
        self.debouncer = debouncer or MessageDebouncer(store)
        if self.debouncer.forward is None:
            self.debouncer.forward = self.handle_turn
        # key -> lock, dropped once nobody holds or waits on it
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _serialized(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------
    async def accept_inbound(self, webhook: GatewayWebhook, *, now: Optional[datetime] = None) -> WebhookAck:
        """
        Entry point for a gateway `messages.upsert` event: resolve the agent
        and session, then queue the text for the debouncer.
        """
        if webhook.data is None or webhook.data.key.fromMe:
            return WebhookAck(status="ignored")
        text = webhook.text()
        phone = webhook.customer_phone()
        if not text or not phone:
            return WebhookAck(status="ignored")

        agent = await self.store.find_agent_by_instance(webhook.instance)
        if agent is None:
            logger.warning("No agent configured for gateway instance %r", webhook.instance)
            return WebhookAck(status="no_agent")

        now = now or datetime.now(timezone.utc)
        ctx = await self.resolve_session(agent.restaurant_id, agent.id, phone, now)
        queued = await self.debouncer.enqueue(ctx.session_id, text, now, message_id=webhook.data.key.id)
        return WebhookAck(status="queued" if queued else "duplicate", session_id=ctx.session_id)

    async def resolve_session(
        self,
        restaurant_id: str,
        agent_id: str,
        phone: str,
        now: datetime,
    ) -> SessionContext:
        """
        One session per (restaurant, phone). An expired or archived session is
        reactivated with a fresh draft instead of creating a new one.
        """
        async with self._serialized(f"{restaurant_id}:{phone}"):
            ctx = await self.store.find_session_by_phone(restaurant_id, phone)
            if ctx is None:
                ctx = SessionContext.new(
                    session_id=uuid.uuid4().hex,
                    restaurant_id=restaurant_id,
                    agent_id=agent_id,
                    phone=phone,
                    created_at=now,
                )
                logger.info("New session %s for %s", ctx.session_id, phone)
                return await self.store.create_session(ctx)

            if ctx.is_active():
                return ctx

            def _reactivate(current: SessionContext) -> Optional[bool]:
                if current.is_active():
                    return None
                current.reopen(now, clear_draft=True)
                return True

            if await self.store.update_session(ctx.session_id, _reactivate):
                logger.info("Session %s reactivated (was %s)", ctx.session_id, ctx.session.status.value)
            return await self.store.get_session(ctx.session_id)

    # -------------------------------------------------------------------------
    # Turn
    # -------------------------------------------------------------------------
    async def handle_turn(self, session_id: str, text: str, *, now: Optional[datetime] = None) -> Optional[str]:
        """
        Process one (debounced) customer message. Returns the reply that was
        sent, or None when the session was not in a state to answer.
        """
        turn_id = uuid.uuid4().hex[:8]
        async with self._serialized(session_id):
            return await self._run_turn(session_id, text, now or datetime.now(timezone.utc), turn_id)

    async def _run_turn(self, session_id: str, text: str, now: datetime, turn_id: str) -> Optional[str]:
        ctx = await self.store.get_session(session_id)
        if not ctx.is_active():
            logger.info("[%s] Session %s is %s, message not answered", turn_id, session_id, ctx.session.status.value)
            return None
        if ctx.state.human_handoff:
            logger.info("[%s] Session %s is with a human agent, message not answered", turn_id, session_id)
            return None

        logger.info("[%s] Turn for session %s: %r", turn_id, session_id, text[:80])
        ctx.append_user_message(text, now)

        if register_frustration(ctx, text):
            logger.warning("[%s] Session %s handed off to a human", turn_id, session_id)
            reply = HANDOFF_REPLY
        else:
            enriched = await self.enricher.enrich(ctx, now=now, turn_id=turn_id)
            products = await self.store.list_products(ctx.session.restaurant_id)
            turn = Turn(ctx=ctx, message=text, enriched=enriched, products=products, turn_id=turn_id)

            notice = self._capture_details(turn)
            decision = await self._decide(turn)
            reply = await self.registry.get(decision.agent)(turn)
            if notice:
                reply = f"{notice}\n\n{reply}"
            reply = await self._advance(turn, decision, reply, now)

        ctx.append_assistant_message(reply, now)
        if not await self._commit(ctx):
            logger.warning("[%s] Session %s changed status during the turn, reply dropped", turn_id, session_id)
            return None

        await self.messaging.send_reply(ctx.session.phone, reply, turn_id=turn_id)
        return reply

    def _capture_details(self, turn: Turn) -> Optional[str]:
        """
        Delivery type, address and payment method go into the draft whichever
        role answers. Returns a notice for the customer when the address is
        outside every delivery zone.
        """
        if turn.ctx.state.conversation_state == ConversationState.FINALIZED:
            return None
        captured = capture_order_details(turn.message, turn.order)
        if captured:
            logger.info("[%s] Captured %s", turn.turn_id, ", ".join(captured))

        zones = turn.enriched.restaurant.delivery_zones
        if validate_address(turn.order, zones):
            return None
        logger.info("[%s] Address outside the delivery zones, asking again", turn.turn_id)
        return address_rejection(zones)

    async def _decide(self, turn: Turn) -> OrchestratorDecision:
        state = turn.ctx.state
        if state.conversation_state == ConversationState.FINALIZED:
            return OrchestratorDecision(agent=AgentRole.SUPPORT, reasoning="order already placed")

        summary = ConversationSummary(
            cart_has_items=bool(state.order.items),
            item_count=state.order.item_count,
            cart_total=state.order.total,
            current_state=state.conversation_state.value,
            restaurant_name=turn.enriched.restaurant.name,
        )
        return await self.router.decide(turn.message, summary, turn_id=turn.turn_id)

    async def _advance(self, turn: Turn, decision: OrchestratorDecision, reply: str, now: datetime) -> str:
        """
        Move the conversation state from what the draft now holds, and
        complete the reply for the state it lands in.
        """
        ctx = turn.ctx
        previous = ctx.state.conversation_state
        criteria = CompletionCriteria.from_order(ctx.state.order)
        state = self.state_machine.next_state(previous, criteria, turn.message)

        features = turn.enriched.agent.features
        if state == ConversationState.CONFIRM and criteria.all_requirements_met and not features.order_confirmation_required:
            state = ConversationState.FINALIZED

        ctx.state.conversation_state = state
        if state != previous:
            logger.info("[%s] State %s -> %s", turn.turn_id, previous.value, state.value)

        if state == ConversationState.FINALIZED and previous != ConversationState.FINALIZED:
            return await self._finalize(turn, now)
        entering_confirm = previous not in (ConversationState.CONFIRM, ConversationState.CONFIRMATION)
        if state == ConversationState.CONFIRM and entering_confirm and decision.agent != AgentRole.CHECKOUT:
            return f"{reply}\n\n{order_summary(turn)}"
        return reply

    async def _finalize(self, turn: Turn, now: datetime) -> str:
        features = turn.enriched.agent.features
        restaurant = turn.enriched.restaurant
        if not features.enable_order_creation:
            return "Pedido anotado! ✅ Um atendente vai confirmar com você em instantes."

        order = await self.orders.create_order(
            turn.ctx,
            now=now,
            notify=features.enable_automatic_notifications,
            turn_id=turn.turn_id,
        )
        if turn.order.delivery_type == DeliveryType.PICKUP:
            eta = f"Fica pronto para retirada em ~{restaurant.estimated_prep_time} min."
        else:
            minutes = restaurant.estimated_prep_time + restaurant.estimated_delivery_time
            eta = f"Previsão de entrega: ~{minutes} min."
        return f"Pedido confirmado! ✅ Número: #{order.id[:8]}\n{eta}\nObrigado pela preferência! 😊"

    async def _commit(self, ctx: SessionContext) -> bool:
        """
        Write back what the turn owns (draft, conversation state, handoff,
        history) onto the latest stored session. The inbox belongs to the
        debouncer and is left as stored. Nothing is written if the session
        was expired, archived or reopened while the turn ran.
        """
        status = (ctx.session.status, ctx.session.session_status)

        def _merge(current: SessionContext) -> Optional[bool]:
            if (current.session.status, current.session.session_status) != status:
                return None
            if current.session.reopened_at != ctx.session.reopened_at:
                return None
            current.state.order = ctx.state.order
            current.state.conversation_state = ctx.state.conversation_state
            current.state.human_handoff = ctx.state.human_handoff
            current.state.frustration_count = ctx.state.frustration_count
            current.short_term = ctx.short_term
            current.session.last_seen_at = ctx.session.last_seen_at
            return True

        return bool(await self.store.update_session(ctx.session_id, _merge))
