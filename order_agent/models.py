# order_agent/models.py
"""
Pydantic models for request/response payloads, persisted records the core
reads or writes, and the structured results passed between components.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Records (owned by external collaborators, read or written by the core)
# ---------------------------------------------------------------------------

class DaySchedule(BaseModel):
    enabled: bool = False
    open: str = "00:00"   # "HH:MM"
    close: str = "23:59"  # "HH:MM", inclusive


class Restaurant(BaseModel):
    id: str
    name: str
    timezone: Optional[str] = None
    # weekday name ("monday" ... "sunday") -> schedule
    working_hours: Dict[str, DaySchedule] = Field(default_factory=dict)
    estimated_prep_time: Optional[int] = None
    estimated_delivery_time: Optional[int] = None
    payment_instructions: Optional[str] = None


class DeliveryZone(BaseModel):
    id: str
    restaurant_id: str
    name: str
    max_distance: float
    fee: float = 0.0
    is_active: bool = True


class Product(BaseModel):
    id: str
    restaurant_id: str
    name: str
    price: float
    category: Optional[str] = None
    is_available: bool = True


class AgentFeatures(BaseModel):
    enable_order_creation: bool = True
    enable_product_search: bool = True
    enable_automatic_notifications: bool = True
    order_confirmation_required: bool = True


class AgentConfiguration(BaseModel):
    id: str
    restaurant_id: str
    instance: Optional[str] = None  # gateway instance that routes to this agent
    personality: str = "friendly"
    instructions: Optional[str] = None
    features: AgentFeatures = Field(default_factory=AgentFeatures)


class OrderLine(BaseModel):
    product_id: Optional[str] = None
    product_name: str
    quantity: int = 1
    unit_price: float = 0.0

    @property
    def total(self) -> float:
        return self.quantity * self.unit_price


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    OUT_FOR_DELIVERY = "out_for_delivery"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Order(BaseModel):
    id: str
    restaurant_id: str
    session_id: Optional[str] = None
    customer_phone: str
    items: List[OrderLine] = Field(default_factory=list)
    total: float = 0.0
    delivery_fee: float = 0.0
    delivery_type: Optional[str] = None
    delivery_address: Optional[str] = None
    payment_method: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    created_at: datetime


class SessionSummary(BaseModel):
    """
    Snapshot written when a session expires with unfinished business, so a
    later reopening can refer back to it.
    """
    id: str
    session_id: str
    summary: str
    items_ordered: List[OrderLine] = Field(default_factory=list)
    order_total: float = 0.0
    delivery_type: Optional[str] = None
    payment_method: Optional[str] = None
    completed_at: datetime


# ---------------------------------------------------------------------------
# Enriched context
# ---------------------------------------------------------------------------

class CustomerContext(BaseModel):
    phone: str
    last_orders: List[Order] = Field(default_factory=list)
    favorite_items: List[str] = Field(default_factory=list)
    preferred_address: Optional[str] = None
    preferred_payment: Optional[str] = None
    total_orders: int = 0


class RestaurantContext(BaseModel):
    name: str = ""
    is_open: bool = True
    next_open_time: Optional[str] = None
    estimated_prep_time: int = 30
    estimated_delivery_time: int = 40
    delivery_zones: List[DeliveryZone] = Field(default_factory=list)
    payment_instructions: Optional[str] = None


class AgentContext(BaseModel):
    personality: str = "friendly"
    instructions: Optional[str] = None
    features: AgentFeatures = Field(default_factory=AgentFeatures)


class SessionHistoryContext(BaseModel):
    reopened_count: int = 0
    previous_session_summary: Optional[str] = None


class EnrichedContext(BaseModel):
    customer: CustomerContext
    restaurant: RestaurantContext
    agent: AgentContext
    session: SessionHistoryContext


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class AgentRole(str, Enum):
    MENU = "MENU"
    SALES = "SALES"
    CHECKOUT = "CHECKOUT"
    SUPPORT = "SUPPORT"


class ConversationSummary(BaseModel):
    """What the orchestrator is told about the session besides the message."""
    cart_has_items: bool
    item_count: int = 0
    cart_total: float = 0.0
    current_state: str
    restaurant_name: str = ""


class OrchestratorDecision(BaseModel):
    agent: AgentRole
    reasoning: str = ""


# ---------------------------------------------------------------------------
# Outbound delivery
# ---------------------------------------------------------------------------

class DeliveryResult(BaseModel):
    success: bool
    attempts: int
    error: Optional[str] = None
    status_code: Optional[int] = None


# ---------------------------------------------------------------------------
# HTTP payloads
# ---------------------------------------------------------------------------

class GatewayMessageKey(BaseModel):
    remoteJid: str
    id: Optional[str] = None
    fromMe: bool = False


class GatewayMessageData(BaseModel):
    key: GatewayMessageKey
    message: Optional[Dict[str, Any]] = None


class GatewayWebhook(BaseModel):
    """
    Inbound `messages.upsert` payload from the messaging gateway.
    """
    event: Optional[str] = None
    instance: Optional[str] = None
    data: Optional[GatewayMessageData] = None

    def customer_phone(self) -> Optional[str]:
        if self.data is None:
            return None
        return self.data.key.remoteJid.split("@", 1)[0] or None

    def text(self) -> Optional[str]:
        if self.data is None or not self.data.message:
            return None
        message = self.data.message
        text = (
            message.get("conversation")
            or (message.get("extendedTextMessage") or {}).get("text")
            or (message.get("imageMessage") or {}).get("caption")
        )
        if not text or not str(text).strip():
            return None
        return str(text).strip()


class OrderStatusEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    old_status: Optional[str] = Field(default=None, alias="oldStatus")
    new_status: Optional[str] = Field(default=None, alias="newStatus")
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class WebhookAck(BaseModel):
    status: str
    session_id: Optional[str] = None


class LifecycleAction(BaseModel):
    action: str
    session_id: Optional[str] = None
    reason: Optional[str] = None


class SweepReport(BaseModel):
    processed: int
    session_ids: List[str] = Field(default_factory=list)
