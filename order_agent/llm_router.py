# order_agent/llm_router.py
"""
LLM Router

Wraps the reasoning-service call that decides which capability (MENU,
SALES, CHECKOUT, SUPPORT) handles a customer message.

We keep this layer separate so you can:
- Swap models
- Change prompts
- Unit-test routing logic independently (inject a fake client)

The classifier is told that an empty cart never goes to CHECKOUT, and the
same rule is enforced again on whatever comes back.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

import openai
from openai import AsyncOpenAI

from .config import settings
from .errors import MalformedResponseError, ReasoningServiceError
from .models import AgentRole, ConversationSummary, OrchestratorDecision
from .state_machine import describe_state

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """
Você é o orquestrador de um atendente de pedidos de restaurante no WhatsApp.
Escolha QUAL especialista deve responder à última mensagem do cliente.

Especialistas:
- MENU     : saudações, primeira interação, pedir cardápio, "o que vocês têm?",
             "quais pizzas tem?", mensagens genéricas.
- SALES    : escolher ou adicionar produtos, "quero uma margherita",
             "me manda 2 cocas", trocar ou remover itens, sugestões.
- CHECKOUT : fechar o pedido, entrega ou retirada, endereço, forma de pagamento,
             "pode fechar", "vou pagar no pix", "é para entrega".
- SUPPORT  : dúvidas sobre horário, tempo de entrega, reclamações, status do
             pedido, pedido para falar com um atendente humano.

REGRA OBRIGATÓRIA: se o carrinho estiver vazio, NUNCA escolha CHECKOUT.

Responda SOMENTE com um objeto JSON:
{"agent": "MENU" | "SALES" | "CHECKOUT" | "SUPPORT", "reasoning": "<uma frase>"}
""".strip()


def _fallback(cause: str) -> OrchestratorDecision:
    return OrchestratorDecision(agent=AgentRole.MENU, reasoning=f"{cause} - default to MENU")


class LLMAgentRouter:
    """
    Uses the OpenAI Responses API to classify a customer message into one of
    the four capability roles.
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.timeout = timeout if timeout is not None else settings.LLM_TIMEOUT_SECONDS
        self.client = client or AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=self.timeout,
            max_retries=0,
        )
        self.model = model or settings.LLM_ROUTER_MODEL

    async def decide(
        self,
        user_message: str,
        summary: ConversationSummary,
        *,
        turn_id: str = "-",
    ) -> OrchestratorDecision:
        """
        Ask the reasoning service for a role, fall back to MENU on any error,
        then apply the empty-cart guard.
        """
        try:
            decision = await self._classify(user_message, summary)
        except MalformedResponseError as e:
            logger.warning("[%s] Orchestrator returned malformed output: %s", turn_id, e)
            decision = _fallback("JSON parse error")
        except ReasoningServiceError as e:
            logger.warning("[%s] Orchestrator call failed: %s", turn_id, e)
            decision = _fallback(str(e) or "Reasoning service error")

        guarded = self.enforce_cart_rule(decision, summary)
        if guarded is not decision:
            logger.warning(
                "[%s] Classifier chose CHECKOUT with an empty cart, downgraded to SALES",
                turn_id,
            )
        logger.info("[%s] Orchestrator decision: %s (%s)", turn_id, guarded.agent.value, guarded.reasoning)
        return guarded

    @staticmethod
    def enforce_cart_rule(decision: OrchestratorDecision, summary: ConversationSummary) -> OrchestratorDecision:
        if decision.agent == AgentRole.CHECKOUT and not summary.cart_has_items:
            return OrchestratorDecision(
                agent=AgentRole.SALES,
                reasoning=f"{decision.reasoning} - cart is empty, CHECKOUT not allowed",
            )
        return decision

    async def _classify(self, user_message: str, summary: ConversationSummary) -> OrchestratorDecision:
        try:
            resp = await self.client.responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": self._user_content(user_message, summary)},
                ],
                text={"format": {"type": "json_object"}},
                timeout=self.timeout,
            )
        except openai.APITimeoutError as e:
            raise ReasoningServiceError("Timeout") from e
        except openai.APIError as e:
            raise ReasoningServiceError(f"API error: {e.__class__.__name__}") from e

        content = getattr(resp, "output_text", None)
        if not content:
            raise MalformedResponseError("empty response")

        try:
            data = json.loads(content)
        except ValueError as e:
            raise MalformedResponseError(f"not JSON: {content[:80]!r}") from e
        if not isinstance(data, dict):
            raise MalformedResponseError(f"expected object, got {type(data).__name__}")

        raw_agent = str(data.get("agent", "")).upper().strip()
        try:
            agent = AgentRole(raw_agent)
        except ValueError as e:
            raise MalformedResponseError(f"unknown agent {raw_agent!r}") from e

        return OrchestratorDecision(agent=agent, reasoning=str(data.get("reasoning") or ""))

    @staticmethod
    def _user_content(user_message: str, summary: ConversationSummary) -> str:
        cart = (
            f"SIM ({summary.item_count} itens, total R$ {summary.cart_total:.2f})"
            if summary.cart_has_items
            else "NÃO (carrinho vazio)"
        )
        return (
            f"Restaurante: {summary.restaurant_name or '-'}\n"
            f"Estado atual da conversa: {summary.current_state} "
            f"({describe_state(summary.current_state)})\n"
            f"Tem itens no carrinho? {cart}\n\n"
            f"Mensagem do cliente: {user_message}"
        )
