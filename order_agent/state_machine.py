# order_agent/state_machine.py
"""
Conversation State Machine

The next state is a function of what is already known about the order, not
only of which step came before. A customer who volunteers the payment method
while still choosing products does not get asked for it again: once every
requirement is met the machine jumps straight to CONFIRM.

    GREETING -> DISCOVERY -> PRODUCT -> UPSELL -> LOGISTICS -> ADDRESS
             -> PAYMENT -> CONFIRMATION -> CONFIRM -> FINALIZED

FINALIZED is terminal. CONFIRM only moves on when the customer affirms while
every requirement is still met; a detail dropped after the summary sends the
conversation back to the step that collects it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Protocol

from .session_context import ConversationState, DeliveryType, OrderDraft

S = ConversationState


@dataclass(frozen=True)
class CompletionCriteria:
    has_products: bool
    has_delivery_type: bool
    needs_address: bool
    has_address: bool
    has_payment_method: bool

    @property
    def all_requirements_met(self) -> bool:
        return (
            self.has_products
            and self.has_delivery_type
            and (self.has_address if self.needs_address else True)
            and self.has_payment_method
        )

    @classmethod
    def from_order(cls, order: OrderDraft) -> "CompletionCriteria":
        """
        Computed fresh on every turn from the current order draft.
        """
        return cls(
            has_products=len(order.items) > 0,
            has_delivery_type=order.delivery_type is not None,
            needs_address=order.delivery_type == DeliveryType.DELIVERY,
            has_address=bool(order.validated_address or order.delivery_address),
            has_payment_method=bool(order.payment_method),
        )


# ---------------------------------------------------------------------------
# Affirmation
# ---------------------------------------------------------------------------

class AffirmationClassifier(Protocol):
    def is_affirmative(self, message: str) -> bool:
        ...


class KeywordAffirmationClassifier:
    """
    Keyword match for "yes, place the order" in Portuguese chat, with a
    guard for the obvious negations ("não confirmo", "não pode ser").
    """

    AFFIRMATIVE = re.compile(
        r"\b(confirm[oa]|confirmado|sim|isso|ok|okay|pode\s+ser|fecha|fechado|t[áa]\s+bom|beleza)\b",
        re.IGNORECASE,
    )
    NEGATED = re.compile(r"\bn[ãa]o\s+(confirm|pode|fecha|quero|[ée]\s+isso)", re.IGNORECASE)

    def is_affirmative(self, message: str) -> bool:
        if not message:
            return False
        if self.NEGATED.search(message):
            return False
        return bool(self.AFFIRMATIVE.search(message))


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

class ConversationStateMachine:
    def __init__(self, affirmation: Optional[AffirmationClassifier] = None) -> None:
        self.affirmation = affirmation or KeywordAffirmationClassifier()

    def next_state(
        self,
        current: ConversationState,
        criteria: CompletionCriteria,
        user_message: Optional[str] = None,
    ) -> ConversationState:
        if current == S.FINALIZED:
            return S.FINALIZED

        if current in (S.CONFIRM, S.CONFIRMATION):
            if criteria.all_requirements_met:
                if self.affirmation.is_affirmative(user_message or ""):
                    return S.FINALIZED
                return S.CONFIRM
            # a detail was changed or dropped after the summary: collect it again
            if not criteria.has_products:
                return S.DISCOVERY
            return self._after_products(criteria)

        if criteria.all_requirements_met:
            return S.CONFIRM

        if current == S.GREETING:
            return S.DISCOVERY

        if current == S.DISCOVERY:
            return S.PRODUCT if criteria.has_products else S.DISCOVERY

        if current in (S.PRODUCT, S.UPSELL, S.LOGISTICS):
            return self._after_products(criteria)

        if current == S.ADDRESS:
            if criteria.has_address:
                return S.CONFIRM if criteria.has_payment_method else S.PAYMENT
            return S.ADDRESS

        if current == S.PAYMENT:
            return S.CONFIRM if criteria.has_payment_method else S.PAYMENT

        return current

    @staticmethod
    def _after_products(criteria: CompletionCriteria) -> ConversationState:
        if not criteria.has_delivery_type:
            return S.LOGISTICS
        # pickup never needs an address
        if criteria.needs_address and not criteria.has_address:
            return S.ADDRESS
        return S.CONFIRM if criteria.has_payment_method else S.PAYMENT


STATE_DESCRIPTIONS = {
    S.GREETING: "Saudação inicial",
    S.DISCOVERY: "Descoberta - apresentando menu",
    S.PRODUCT: "Seleção de produtos",
    S.UPSELL: "Upsell - sugestões adicionais",
    S.LOGISTICS: "Definição de entrega/retirada",
    S.ADDRESS: "Coleta de endereço",
    S.PAYMENT: "Método de pagamento",
    S.CONFIRMATION: "Confirmação do pedido",
    S.CONFIRM: "Confirmação final",
    S.FINALIZED: "Pedido finalizado",
}


def describe_state(state: str) -> str:
    try:
        return STATE_DESCRIPTIONS[ConversationState(state)]
    except ValueError:
        return state
