# order_agent/session_context.py
"""
SessionContext

Represents everything the agent knows about one customer conversation.

Contains:
- Session identity and lifecycle (status, lifecycle tag, timestamps).
- State: conversation state, the order draft being assembled, the inbound
  message inbox used by the debouncer, handoff flag.
- Short-term memory (message history, turn count).
- A version number used by the store for compare-and-swap writes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from .models import OrderLine


Role = Literal["user", "assistant", "system"]

# Gateway message ids remembered per session to drop redeliveries.
RECENT_MESSAGE_IDS_LIMIT = 50


class ConversationState(str, Enum):
    GREETING = "greeting"
    DISCOVERY = "discovery"
    PRODUCT = "product"
    UPSELL = "upsell"
    LOGISTICS = "logistics"
    ADDRESS = "address"
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"
    CONFIRM = "confirm"
    FINALIZED = "finalized"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    EXPIRED = "expired"


class SessionLifecycle(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    COMPLETED = "completed"


class DeliveryType(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


@dataclass
class Message:
    """
    One message in the short-term history.
    """
    role: Role
    text: str
    timestamp: datetime


@dataclass
class PendingMessage:
    text: str
    received_at: datetime
    message_id: Optional[str] = None


@dataclass
class SessionMeta:
    """
    Identity and lifecycle of a session.
    """
    session_id: str
    restaurant_id: str
    agent_id: str
    phone: str
    created_at: datetime
    last_seen_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    session_status: SessionLifecycle = SessionLifecycle.ACTIVE
    archived_at: Optional[datetime] = None
    reopened_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None


@dataclass
class OrderDraft:
    """
    Order information accumulated across turns. Completion criteria are
    computed from these fields and nothing else.
    """
    items: List[OrderLine] = field(default_factory=list)
    delivery_type: Optional[DeliveryType] = None
    validated_address: Optional[str] = None  # token set once the address matched a delivery zone
    delivery_address: Optional[str] = None
    delivery_fee: float = 0.0
    payment_method: Optional[str] = None
    upsell_attempts: int = 0
    payment_info_shown: int = 0

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def subtotal(self) -> float:
        return round(sum(item.total for item in self.items), 2)

    @property
    def total(self) -> float:
        """Items plus the zone fee; pickup is never charged a fee."""
        fee = self.delivery_fee if self.delivery_type == DeliveryType.DELIVERY else 0.0
        return round(self.subtotal + fee, 2)

    def has_data(self) -> bool:
        return bool(self.items or self.delivery_type or self.payment_method)


@dataclass
class Inbox:
    """
    Debounce state: messages received but not yet handed to a turn.
    """
    pending_messages: List[PendingMessage] = field(default_factory=list)
    debounce_timer_active: bool = False
    last_message_timestamp: Optional[datetime] = None
    recent_message_ids: List[str] = field(default_factory=list)

    def remember(self, message_id: Optional[str]) -> None:
        if not message_id:
            return
        self.recent_message_ids.append(message_id)
        del self.recent_message_ids[:-RECENT_MESSAGE_IDS_LIMIT]


@dataclass
class SessionState:
    """
    High-level conversational state.
    """
    conversation_state: ConversationState = ConversationState.GREETING
    order: OrderDraft = field(default_factory=OrderDraft)
    inbox: Inbox = field(default_factory=Inbox)
    human_handoff: bool = False
    frustration_count: int = 0
    reopened_count: int = 0
    summary_id: Optional[str] = None


@dataclass
class ShortTermMemory:
    """
    Short-term memory representing the last N messages or turns.
    """
    history: List[Message] = field(default_factory=list)
    turn_count: int = 0
    last_user_message_at: Optional[datetime] = None


@dataclass
class SessionContext:
    """
    Top-level object representing everything we know about this session.
    """
    session: SessionMeta
    state: SessionState
    short_term: ShortTermMemory
    version: int = 0

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------
    @classmethod
    def new(
        cls,
        *,
        session_id: str,
        restaurant_id: str,
        agent_id: str,
        phone: str,
        created_at: datetime,
    ) -> "SessionContext":
        meta = SessionMeta(
            session_id=session_id,
            restaurant_id=restaurant_id,
            agent_id=agent_id,
            phone=phone,
            created_at=created_at,
            last_seen_at=created_at,
        )
        return cls(session=meta, state=SessionState(), short_term=ShortTermMemory())

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    @property
    def session_id(self) -> str:
        return self.session.session_id

    def is_active(self) -> bool:
        return self.session.status == SessionStatus.ACTIVE

    def touch(self, now: datetime) -> None:
        """
        Update last_seen timestamp.
        """
        self.session.last_seen_at = now

    def append_user_message(self, text: str, timestamp: datetime) -> None:
        """
        Add a user message to history and bump short-term counters.
        """
        msg = Message(role="user", text=text, timestamp=timestamp)
        self.short_term.history.append(msg)
        self.short_term.turn_count += 1
        self.short_term.last_user_message_at = timestamp
        self.touch(timestamp)

    def append_assistant_message(self, text: str, timestamp: datetime) -> None:
        """
        Add an assistant message to history.
        """
        msg = Message(role="assistant", text=text, timestamp=timestamp)
        self.short_term.history.append(msg)
        self.touch(timestamp)

    def reopen(self, now: datetime, *, clear_draft: bool = False) -> None:
        """
        Start a fresh ordering flow on this session: active again, back to
        GREETING, cart emptied. With clear_draft the logistics and payment
        choices go too.
        """
        self.session.status = SessionStatus.ACTIVE
        self.session.session_status = SessionLifecycle.ACTIVE
        self.session.archived_at = None
        self.session.reopened_at = now
        self.state.conversation_state = ConversationState.GREETING
        if clear_draft:
            self.state.order = OrderDraft()
        else:
            self.state.order.items = []
            self.state.order.upsell_attempts = 0
        self.state.human_handoff = False
        self.state.frustration_count = 0
        self.state.reopened_count += 1

    def archive(self, now: datetime) -> None:
        self.session.status = SessionStatus.ARCHIVED
        self.session.session_status = SessionLifecycle.COMPLETED
        self.session.archived_at = now
        self.state.conversation_state = ConversationState.FINALIZED

    def expire(self, now: datetime) -> None:
        self.session.status = SessionStatus.EXPIRED
        self.session.session_status = SessionLifecycle.EXPIRED
        self.session.expired_at = now
