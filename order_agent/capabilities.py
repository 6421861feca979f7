# order_agent/capabilities.py
"""
Capabilities

The four specialists the orchestrator routes to. Each one reads the turn
(session, message, enriched context, catalog), updates the order draft in
place, and returns the reply text.

- MENU     : greeting, opening hours notice, catalog listing
- SALES    : adds products to the cart, offers a bounded upsell
- CHECKOUT : collects delivery type, address and payment method
- SUPPORT  : status and estimates, hands off to a human when asked or when
             the customer keeps complaining

AgentCore runs the detail capture and the address check on every message
before dispatching, so delivery type, address and payment method
volunteered in any message count no matter which capability answers.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from .menu_validator import MenuValidator, normalize
from .models import AgentRole, DeliveryZone, EnrichedContext, OrderLine, Product
from .session_context import DeliveryType, OrderDraft, SessionContext

MAX_UPSELL_ATTEMPTS = 2
MAX_PAYMENT_INFO_REPEATS = 3
FRUSTRATION_HANDOFF_THRESHOLD = 3
MENU_LISTING_LIMIT = 10

ACCEPTED_PAYMENTS = "PIX, cartão ou dinheiro"

HANDOFF_REPLY = (
    "Entendo, e peço desculpas pelo transtorno. 🙏 Vou chamar um atendente humano "
    "para continuar com você. Aguarde só um instante!"
)


@dataclass
class Turn:
    """
    Everything a capability gets to look at for one customer turn.
    """
    ctx: SessionContext
    message: str
    enriched: EnrichedContext
    products: List[Product] = field(default_factory=list)
    turn_id: str = "-"

    @property
    def order(self) -> OrderDraft:
        return self.ctx.state.order


Capability = Callable[[Turn], Awaitable[str]]


class CapabilityRegistry:
    """Maps an orchestrator role to the coroutine that answers for it."""

    def __init__(self) -> None:
        self._handlers: Dict[AgentRole, Capability] = {}

    def register(self, role: AgentRole, handler: Capability) -> None:
        self._handlers[role] = handler

    def get(self, role: AgentRole) -> Capability:
        return self._handlers.get(role) or self._handlers[AgentRole.MENU]

    def roles(self) -> List[AgentRole]:
        return list(self._handlers)


def format_price(value: float) -> str:
    return f"R$ {value:.2f}".replace(".", ",")


# ---------------------------------------------------------------------------
# Detail capture
# ---------------------------------------------------------------------------

DELIVERY_WORDS = re.compile(r"\b(entrega|entregar|entregue|delivery)\b", re.IGNORECASE)
PICKUP_WORDS = re.compile(r"\b(retirar|retirada|retiro|buscar|busco|pegar|pego|balc[ãa]o)\b", re.IGNORECASE)

PAYMENT_PATTERNS = (
    (re.compile(r"\bpix\b", re.IGNORECASE), "pix"),
    (re.compile(r"\bmb\s*way\b", re.IGNORECASE), "mb way"),
    (re.compile(r"\bmultibanco\b", re.IGNORECASE), "multibanco"),
    (re.compile(r"\b(cart[ãa]o|cr[ée]dito|d[ée]bito)\b", re.IGNORECASE), "cartão"),
    (re.compile(r"\b(dinheiro|esp[ée]cie)\b", re.IGNORECASE), "dinheiro"),
)

ADDRESS_PATTERN = re.compile(
    r"\b(rua|r\.|avenida|av\.?|travessa|alameda|estrada|rodovia|pra[çc]a|largo)\s+[^\n]*?\d+[^\n]*",
    re.IGNORECASE,
)


def capture_order_details(message: str, order: OrderDraft) -> List[str]:
    """
    Pull delivery type, address and payment method out of free text into the
    draft. Returns the names of the fields that changed.
    """
    captured = []

    wants_delivery = bool(DELIVERY_WORDS.search(message))
    wants_pickup = bool(PICKUP_WORDS.search(message))
    if wants_delivery != wants_pickup:
        chosen = DeliveryType.DELIVERY if wants_delivery else DeliveryType.PICKUP
        if order.delivery_type != chosen:
            order.delivery_type = chosen
            captured.append("delivery_type")

    address = ADDRESS_PATTERN.search(message)
    if address:
        order.delivery_address = address.group(0).strip().rstrip(".")
        order.validated_address = None
        order.delivery_fee = 0.0
        captured.append("delivery_address")
        if order.delivery_type is None:
            # an address only makes sense for delivery
            order.delivery_type = DeliveryType.DELIVERY
            captured.append("delivery_type")

    for pattern, method in PAYMENT_PATTERNS:
        if pattern.search(message):
            if order.payment_method != method:
                order.payment_method = method
                captured.append("payment_method")
            break

    return captured


def validate_address(order: OrderDraft, zones: List[DeliveryZone]) -> bool:
    """
    Check a captured delivery address against the restaurant's active zones
    (nearest first) by neighbourhood name. A match stores a validation token
    and the zone fee on the draft. Without a match the address is dropped so
    the customer is asked again, and False is returned.

    A restaurant with no zones configured delivers anywhere, free of charge.
    """
    if order.delivery_type != DeliveryType.DELIVERY or not order.delivery_address:
        return True
    if order.validated_address:
        return True

    if not zones:
        order.validated_address = f"any:{uuid.uuid4().hex[:12]}"
        order.delivery_fee = 0.0
        return True

    address = normalize(order.delivery_address)
    for zone in zones:
        if re.search(rf"\b{re.escape(normalize(zone.name))}\b", address):
            order.validated_address = f"{zone.id}:{uuid.uuid4().hex[:12]}"
            order.delivery_fee = zone.fee
            return True

    order.delivery_address = None
    order.delivery_fee = 0.0
    return False


def address_rejection(zones: List[DeliveryZone]) -> str:
    names = ", ".join(z.name for z in zones)
    return f"Infelizmente ainda não entregamos nesse endereço. 😕 Atendemos: {names}."


def add_lines(order: OrderDraft, lines: List[OrderLine]) -> None:
    for line in lines:
        existing = next(
            (i for i in order.items if line.product_id and i.product_id == line.product_id),
            None,
        )
        if existing:
            existing.quantity += line.quantity
        else:
            order.items.append(line)


def cart_lines(order: OrderDraft) -> List[str]:
    return [f"• {i.quantity}x {i.product_name} ({format_price(i.total)})" for i in order.items]


def order_summary(turn: Turn) -> str:
    """
    Recap shown when every requirement is met, ending with the confirmation
    question.
    """
    order = turn.order
    lines = ["Confira seu pedido:"]
    lines.extend(cart_lines(order))
    if order.delivery_type == DeliveryType.PICKUP:
        lines.append(f"Total: {format_price(order.total)}")
        lines.append("Retirada no balcão")
    else:
        if order.delivery_fee:
            lines.append(f"Taxa de entrega: {format_price(order.delivery_fee)}")
        lines.append(f"Total: {format_price(order.total)}")
        lines.append(f"Entrega em: {order.delivery_address}")
    lines.append(f"Pagamento: {order.payment_method}")
    lines.append("")
    lines.append("Posso confirmar o pedido? Responda *sim* para confirmar.")
    return "\n".join(lines)


def next_question(turn: Turn) -> Optional[str]:
    """
    The question for the first missing requirement, or None when nothing is
    missing.
    """
    order = turn.order
    if not order.items:
        return "O que você gostaria de pedir?"
    if order.delivery_type is None:
        return "Vai ser para *entrega* ou *retirada*?"
    if order.delivery_type == DeliveryType.DELIVERY and not (order.validated_address or order.delivery_address):
        return "Qual o endereço de entrega? (rua, número e bairro)"
    if not order.payment_method:
        return f"Qual a forma de pagamento? Aceitamos {ACCEPTED_PAYMENTS}."
    return None


def payment_instructions(turn: Turn) -> Optional[str]:
    """
    Payment instructions for PIX, shown at most MAX_PAYMENT_INFO_REPEATS times
    per session.
    """
    order = turn.order
    instructions = turn.enriched.restaurant.payment_instructions
    if order.payment_method != "pix" or not instructions:
        return None
    if order.payment_info_shown >= MAX_PAYMENT_INFO_REPEATS:
        return None
    order.payment_info_shown += 1
    return instructions


# ---------------------------------------------------------------------------
# Frustration / handoff
# ---------------------------------------------------------------------------

HUMAN_REQUEST = re.compile(r"\b(atendente|humano|pessoa\s+real|gerente)\b", re.IGNORECASE)
FRUSTRATION = re.compile(
    r"\b(n[ãa]o\s+(funciona|apareceu|aparece|chegou|entendi)|cad[êe]|absurdo|p[ée]ssimo|"
    r"horr[íi]vel|rid[íi]culo|demora|demorando|palha[çc]ada)\b|!{2,}",
    re.IGNORECASE,
)


def register_frustration(ctx: SessionContext, message: str) -> bool:
    """
    Count frustrated messages on the session. Returns True when the session
    should be handed to a human: the customer asked for one, or complained
    FRUSTRATION_HANDOFF_THRESHOLD times.
    """
    if HUMAN_REQUEST.search(message):
        ctx.state.human_handoff = True
        return True
    if FRUSTRATION.search(message):
        ctx.state.frustration_count += 1
        if ctx.state.frustration_count >= FRUSTRATION_HANDOFF_THRESHOLD:
            ctx.state.human_handoff = True
            return True
    return False


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

def build_registry(validator: Optional[MenuValidator] = None) -> CapabilityRegistry:
    validator = validator or MenuValidator()
    registry = CapabilityRegistry()

    async def menu(turn: Turn) -> str:
        restaurant = turn.enriched.restaurant
        customer = turn.enriched.customer
        lines = []

        if turn.ctx.short_term.turn_count <= 1:
            name = restaurant.name or "nosso restaurante"
            lines.append(f"Olá! Bem-vindo(a) ao {name}! 😊")
            if customer.total_orders and customer.favorite_items:
                lines.append(f"Que bom te ver de novo! Vai querer o de sempre ({customer.favorite_items[0]})?")

        if not restaurant.is_open:
            reopen = f" Abrimos {restaurant.next_open_time}." if restaurant.next_open_time else ""
            lines.append(f"No momento estamos fechados.{reopen} Você já pode ver o cardápio.")

        if turn.enriched.agent.features.enable_product_search and turn.products:
            lines.append("")
            lines.append("Nosso cardápio:")
            for product in turn.products[:MENU_LISTING_LIMIT]:
                lines.append(f"• {product.name} - {format_price(product.price)}")

        lines.append("")
        lines.append("O que você gostaria de pedir?")
        return "\n".join(lines).strip()

    async def sales(turn: Turn) -> str:
        order = turn.order
        matched, unknown = validator.match_items(turn.message, turn.products)

        if not matched:
            if unknown and turn.products:
                lines = ["Não encontrei no cardápio:"]
                lines.extend(f"• {u}" for u in unknown)
                lines.append("")
                lines.append("Algumas opções que temos:")
                lines.extend(f"• {p.name} - {format_price(p.price)}" for p in turn.products[:8])
                return "\n".join(lines)
            return next_question(turn) or "Quer adicionar mais alguma coisa?"

        add_lines(order, matched)
        added = ", ".join(f"{line.quantity}x {line.product_name}" for line in matched)
        lines = [f"Anotado: {added} ✅", f"Subtotal: {format_price(order.subtotal)}"]

        suggestion = _upsell_suggestion(turn)
        if suggestion is not None and order.upsell_attempts < MAX_UPSELL_ATTEMPTS:
            order.upsell_attempts += 1
            lines.append(f"Que tal acompanhar com {suggestion.name} por {format_price(suggestion.price)}?")
        else:
            question = next_question(turn)
            if question:
                lines.append(question)
        return "\n".join(lines)

    async def checkout(turn: Turn) -> str:
        order = turn.order
        if not order.items:
            return "Seu carrinho ainda está vazio. O que você gostaria de pedir?"

        lines = []
        instructions = payment_instructions(turn)
        question = next_question(turn)
        if question:
            lines.append(question)
        if instructions:
            lines.append(instructions)
        if not question:
            lines.append(order_summary(turn))
        return "\n\n".join(lines)

    async def support(turn: Turn) -> str:
        restaurant = turn.enriched.restaurant
        if turn.ctx.state.human_handoff:
            return HANDOFF_REPLY

        lines = []
        if restaurant.is_open:
            lines.append("Estamos abertos! 😊")
        else:
            reopen = f" Abrimos {restaurant.next_open_time}." if restaurant.next_open_time else ""
            lines.append(f"No momento estamos fechados.{reopen}")
        lines.append(
            f"Tempo de preparo: ~{restaurant.estimated_prep_time} min. "
            f"Entrega: ~{restaurant.estimated_delivery_time} min."
        )
        if restaurant.delivery_zones:
            zones = ", ".join(z.name for z in restaurant.delivery_zones)
            lines.append(f"Entregamos em: {zones}.")
        lines.append("Posso ajudar com mais alguma coisa?")
        return "\n".join(lines)

    registry.register(AgentRole.MENU, menu)
    registry.register(AgentRole.SALES, sales)
    registry.register(AgentRole.CHECKOUT, checkout)
    registry.register(AgentRole.SUPPORT, support)
    return registry


def _upsell_suggestion(turn: Turn) -> Optional[Product]:
    """
    First available product from a category not yet in the cart.
    """
    in_cart = {i.product_id for i in turn.order.items}
    categories = {p.category for p in turn.products if p.id in in_cart}
    for product in turn.products:
        if product.id in in_cart or not product.category:
            continue
        if product.category not in categories:
            return product
    return None
