# app.py
"""
FastAPI entrypoint for the restaurant ordering agent.

Exposes:
- POST /webhook/messages      → inbound customer message (gateway messages.upsert)
- POST /webhook/order-status  → order status change (reopen / archive session)
- POST /sweeps/debounce       → flush quiet inboxes now
- POST /sweeps/expire         → expire idle sessions now
- GET  /health                → simple health check

Both sweeps also run on a schedule while the app is up.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from order_agent.agent_core import AgentCore
from order_agent.capabilities import build_registry
from order_agent.config import settings
from order_agent.context_enricher import ContextEnricher
from order_agent.debouncer import MessageDebouncer
from order_agent.errors import OrderAgentError, error_to_http
from order_agent.lifecycle import SessionLifecycleManager
from order_agent.llm_router import LLMAgentRouter
from order_agent.memory_store import MemoryStore
from order_agent.menu_validator import MenuValidator
from order_agent.messaging_gateway import MessagingGateway
from order_agent.models import (
    GatewayWebhook,
    LifecycleAction,
    OrderStatusEvent,
    SweepReport,
    WebhookAck,
)
from order_agent.order_gateway import OrderGateway

logger = logging.getLogger(__name__)

DEBOUNCE_JOB_ID = "debounce_sweep"
EXPIRY_JOB_ID = "expiry_sweep"

# ---------------------------------------------------------------------------
# App & dependencies wiring
# ---------------------------------------------------------------------------

# Shared in-process singletons
memory_store = MemoryStore()
debouncer = MessageDebouncer(memory_store)
lifecycle = SessionLifecycleManager(memory_store, idle_hours=settings.SESSION_IDLE_HOURS)

agent_core = AgentCore(
    store=memory_store,
    router=LLMAgentRouter(),
    enricher=ContextEnricher(memory_store),
    registry=build_registry(MenuValidator(fuzzy_threshold=0.7)),
    messaging=MessagingGateway(),
    orders=OrderGateway(memory_store),
    debouncer=debouncer,
)


async def run_debounce_sweep() -> SweepReport:
    flushed = await debouncer.flush_expired(settings.DEBOUNCE_SECONDS)
    return SweepReport(processed=len(flushed), session_ids=flushed)


async def run_expiry_sweep() -> SweepReport:
    expired = await lifecycle.expire_idle_sessions()
    return SweepReport(processed=len(expired), session_ids=expired)


def scheduled(sweep):
    async def job() -> None:
        try:
            await sweep()
        except Exception:
            logger.exception("Scheduled %s failed", sweep.__name__)

    return job


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.SEED_DATA_PATH:
        await memory_store.load_seed(settings.SEED_DATA_PATH)

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        scheduled(run_debounce_sweep),
        "interval",
        seconds=settings.DEBOUNCE_SWEEP_INTERVAL_SECONDS,
        id=DEBOUNCE_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        scheduled(run_expiry_sweep),
        "interval",
        minutes=settings.EXPIRY_SWEEP_INTERVAL_MINUTES,
        id=EXPIRY_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info(
        "Sweeps scheduled: debounce every %ss, expiry every %smin",
        settings.DEBOUNCE_SWEEP_INTERVAL_SECONDS,
        settings.EXPIRY_SWEEP_INTERVAL_MINUTES,
    )
    yield
    scheduler.shutdown(wait=False)
    # let turns started by the last sweeps finish
    await debouncer.drain()


app = FastAPI(title="Restaurant Order Agent", version="0.1.0", lifespan=lifespan)

# Basic CORS policy (adjust origins as needed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production if needed
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/health")
async def health() -> dict:
    """
    Simple health endpoint for uptime checks.
    """
    return {"status": "ok", "service": "order_agent"}


@app.post("/webhook/messages", response_model=WebhookAck)
async def inbound_message(payload: GatewayWebhook) -> WebhookAck:
    """
    The gateway posts every `messages.upsert` event here. Messages are
    queued and answered by the debounce sweep once the customer pauses.
    """
    try:
        return await agent_core.accept_inbound(payload)
    except OrderAgentError as e:
        raise error_to_http(e) from e


@app.post("/webhook/order-status", response_model=LifecycleAction)
async def order_status(event: OrderStatusEvent) -> LifecycleAction:
    """
    Expected body:
    {"oldStatus": "preparing", "newStatus": "cancelled", "sessionId": "..."}
    """
    try:
        return await lifecycle.handle_order_status(event)
    except OrderAgentError as e:
        raise error_to_http(e) from e


@app.post("/sweeps/debounce", response_model=SweepReport)
async def debounce_sweep() -> SweepReport:
    return await run_debounce_sweep()


@app.post("/sweeps/expire", response_model=SweepReport)
async def expire_sweep() -> SweepReport:
    return await run_expiry_sweep()


# For local dev convenience:
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
