"""
Shared builders for the test-suite: a seeded store, a scripted reasoning
client, and a recording messaging gateway.
"""

import json
import random
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx

from order_agent.agent_core import AgentCore
from order_agent.capabilities import build_registry
from order_agent.context_enricher import ContextEnricher
from order_agent.llm_router import LLMAgentRouter
from order_agent.memory_store import MemoryStore
from order_agent.messaging_gateway import MessagingGateway, RetryPolicy
from order_agent.models import (
    AgentConfiguration,
    AgentFeatures,
    DeliveryZone,
    OrderLine,
    Product,
    Restaurant,
)
from order_agent.order_gateway import OrderGateway
from order_agent.session_context import SessionContext

# Tuesday, 20:00 UTC
NOW = datetime(2026, 10, 20, 20, 0, tzinfo=timezone.utc)

RESTAURANT_ID = "rest-1"
AGENT_ID = "agent-1"
INSTANCE = "pizzaria-bella"
PHONE = "5511999990000"
PIX_INSTRUCTIONS = "Chave PIX: pix@pizzariabella.com.br"

PRODUCTS = [
    Product(id="p-margherita", restaurant_id=RESTAURANT_ID, name="Pizza Margherita", price=49.9, category="pizza"),
    Product(id="p-calabresa", restaurant_id=RESTAURANT_ID, name="Pizza Calabresa", price=52.9, category="pizza"),
    Product(id="p-coca", restaurant_id=RESTAURANT_ID, name="Coca-Cola 2L", price=14.0, category="bebida"),
]


async def seed_store(store, *, features=None, working_hours=None):
    await store.put_restaurant(
        Restaurant(
            id=RESTAURANT_ID,
            name="Pizzaria Bella",
            timezone="UTC",
            working_hours=working_hours or {},
            estimated_prep_time=25,
            estimated_delivery_time=35,
            payment_instructions=PIX_INSTRUCTIONS,
        )
    )
    await store.put_delivery_zone(
        DeliveryZone(id="zone-1", restaurant_id=RESTAURANT_ID, name="Centro", max_distance=3, fee=5.0)
    )
    for product in PRODUCTS:
        await store.put_product(product)
    await store.put_agent_config(
        AgentConfiguration(
            id=AGENT_ID,
            restaurant_id=RESTAURANT_ID,
            instance=INSTANCE,
            features=features or AgentFeatures(),
        )
    )
    return store


def new_context(session_id="s-1", *, phone=PHONE, created_at=NOW, state=None, items=None) -> SessionContext:
    ctx = SessionContext.new(
        session_id=session_id,
        restaurant_id=RESTAURANT_ID,
        agent_id=AGENT_ID,
        phone=phone,
        created_at=created_at,
    )
    if state is not None:
        ctx.state.conversation_state = state
    if items:
        ctx.state.order.items = list(items)
    return ctx


def margherita(quantity=1) -> OrderLine:
    return OrderLine(product_id="p-margherita", product_name="Pizza Margherita", quantity=quantity, unit_price=49.9)


def decision_client(*agents):
    """
    Fake reasoning client: answers with the given roles in order, the last
    one repeating.
    """
    queue = list(agents)

    def create(**kwargs):
        agent = queue.pop(0) if len(queue) > 1 else queue[0]
        return SimpleNamespace(output_text=json.dumps({"agent": agent, "reasoning": "scripted"}))

    return SimpleNamespace(responses=SimpleNamespace(create=AsyncMock(side_effect=create)))


def text_client(output_text):
    return SimpleNamespace(
        responses=SimpleNamespace(create=AsyncMock(return_value=SimpleNamespace(output_text=output_text)))
    )


class GatewayRecorder:
    """
    httpx.MockTransport handler answering with the queued status codes
    (200 once they run out) and keeping every request.
    """

    def __init__(self, statuses=()):
        self.statuses = list(statuses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"status": status})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    @property
    def texts(self):
        return [json.loads(r.content)["text"] for r in self.requests]


class Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def build_gateway(recorder, *, sleep=None, seed=7, policy=None) -> MessagingGateway:
    return MessagingGateway(
        base_url="http://gateway.test",
        instance=INSTANCE,
        token="secret-token",
        policy=policy or RetryPolicy(),
        rng=random.Random(seed),
        sleep=sleep or Sleeps(),
        transport=recorder.transport(),
    )


def build_core(store: MemoryStore, client, recorder: GatewayRecorder) -> AgentCore:
    return AgentCore(
        store=store,
        router=LLMAgentRouter(client=client, model="test-model", timeout=1.0),
        enricher=ContextEnricher(store, default_timezone="UTC"),
        registry=build_registry(),
        messaging=build_gateway(recorder),
        orders=OrderGateway(store, webhook_url=""),
    )
