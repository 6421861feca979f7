"""
Unit tests for the conversation state machine.

Covers completion criteria, skip-ahead to CONFIRM, pickup skipping the
address step, and confirmation through the affirmation classifier.
"""

import pytest
from unittest.mock import Mock

from order_agent.capabilities import capture_order_details
from order_agent.session_context import ConversationState, DeliveryType, OrderDraft
from order_agent.state_machine import (
    CompletionCriteria,
    ConversationStateMachine,
    KeywordAffirmationClassifier,
)

from helpers import NOW, margherita, new_context

S = ConversationState


def criteria(**overrides):
    values = dict(
        has_products=False,
        has_delivery_type=False,
        needs_address=False,
        has_address=False,
        has_payment_method=False,
    )
    values.update(overrides)
    return CompletionCriteria(**values)


ALL_MET = criteria(has_products=True, has_delivery_type=True, has_payment_method=True)


class TestCompletionCriteria:
    """Criteria computed from the order draft."""

    def test_empty_draft(self):
        c = CompletionCriteria.from_order(OrderDraft())
        assert c == criteria()
        assert not c.all_requirements_met

    def test_pickup_never_needs_address(self):
        order = OrderDraft(items=[margherita()], delivery_type=DeliveryType.PICKUP, payment_method="pix")
        c = CompletionCriteria.from_order(order)
        assert not c.needs_address
        assert c.all_requirements_met

    def test_delivery_needs_address(self):
        order = OrderDraft(items=[margherita()], delivery_type=DeliveryType.DELIVERY, payment_method="pix")
        assert not CompletionCriteria.from_order(order).all_requirements_met

        order.delivery_address = "Rua das Flores, 123"
        assert CompletionCriteria.from_order(order).all_requirements_met

    def test_validated_address_counts_as_address(self):
        order = OrderDraft(delivery_type=DeliveryType.DELIVERY, validated_address="addr-token-1")
        assert CompletionCriteria.from_order(order).has_address

    def test_criteria_only_grow_until_the_session_is_reopened(self):
        ctx = new_context(items=[margherita()])
        order = ctx.state.order
        seen = []
        for message in ("quero entrega", "Rua das Flores, 123 - Centro", "pago no pix", "ok", "obrigado!", "e a bebida?"):
            capture_order_details(message, order)
            seen.append(CompletionCriteria.from_order(order))

        fields = ("has_products", "has_delivery_type", "has_address", "has_payment_method")
        for before, after in zip(seen, seen[1:]):
            for name in fields:
                assert getattr(after, name) >= getattr(before, name), name
        assert seen[-1].all_requirements_met

        ctx.reopen(NOW, clear_draft=True)
        assert CompletionCriteria.from_order(ctx.state.order) == criteria()


class TestTransitions:
    """next_state from each state."""

    def setup_method(self):
        self.machine = ConversationStateMachine()

    def test_scenario_b_products_without_delivery_type_go_to_logistics(self):
        order = OrderDraft(items=[margherita(), margherita()])
        state = self.machine.next_state(S.PRODUCT, CompletionCriteria.from_order(order))
        assert state == S.LOGISTICS

    def test_scenario_c_pickup_and_payment_skip_address(self):
        order = OrderDraft(items=[margherita()], delivery_type=DeliveryType.PICKUP, payment_method="pix")
        state = self.machine.next_state(S.PRODUCT, CompletionCriteria.from_order(order))
        assert state == S.CONFIRM

    # FINALIZED is terminal (DESIGN.md, "Open questions and decisions")
    @pytest.mark.parametrize("state", [s for s in S if s != S.FINALIZED])
    def test_all_requirements_met_jumps_to_confirm_from_any_state(self, state):
        assert self.machine.next_state(state, ALL_MET, "hmm") == S.CONFIRM

    def test_greeting_always_advances_to_discovery(self):
        assert self.machine.next_state(S.GREETING, criteria()) == S.DISCOVERY
        assert self.machine.next_state(S.GREETING, criteria(has_products=True)) == S.DISCOVERY

    def test_discovery_waits_for_products(self):
        assert self.machine.next_state(S.DISCOVERY, criteria()) == S.DISCOVERY
        assert self.machine.next_state(S.DISCOVERY, criteria(has_products=True)) == S.PRODUCT

    def test_pickup_without_payment_goes_to_payment(self):
        c = criteria(has_products=True, has_delivery_type=True)
        for state in (S.PRODUCT, S.UPSELL, S.LOGISTICS):
            assert self.machine.next_state(state, c) == S.PAYMENT

    def test_delivery_without_address_goes_to_address(self):
        c = criteria(has_products=True, has_delivery_type=True, needs_address=True)
        assert self.machine.next_state(S.LOGISTICS, c) == S.ADDRESS
        assert self.machine.next_state(S.ADDRESS, c) == S.ADDRESS

    def test_address_then_payment(self):
        c = criteria(has_products=True, has_delivery_type=True, needs_address=True, has_address=True)
        assert self.machine.next_state(S.ADDRESS, c) == S.PAYMENT

    def test_payment_waits_for_method(self):
        c = criteria(has_products=True, has_delivery_type=True)
        assert self.machine.next_state(S.PAYMENT, c) == S.PAYMENT

    def test_finalized_is_terminal(self):
        assert self.machine.next_state(S.FINALIZED, criteria()) == S.FINALIZED
        assert self.machine.next_state(S.FINALIZED, ALL_MET, "sim") == S.FINALIZED

    def test_next_state_is_pure(self):
        first = self.machine.next_state(S.LOGISTICS, ALL_MET, "ok")
        second = self.machine.next_state(S.LOGISTICS, ALL_MET, "ok")
        assert first == second == S.CONFIRM


class TestConfirmation:
    """CONFIRM / CONFIRMATION only move on with an affirmation."""

    def setup_method(self):
        self.machine = ConversationStateMachine()

    @pytest.mark.parametrize("state", [S.CONFIRM, S.CONFIRMATION])
    def test_affirmation_finalizes(self, state):
        assert self.machine.next_state(state, ALL_MET, "Sim, confirmo!") == S.FINALIZED

    @pytest.mark.parametrize("state", [S.CONFIRM, S.CONFIRMATION])
    def test_anything_else_stays_in_confirm(self, state):
        assert self.machine.next_state(state, ALL_MET, "quanto tempo demora?") == S.CONFIRM

    def test_negation_does_not_finalize(self):
        assert self.machine.next_state(S.CONFIRM, ALL_MET, "não confirmo ainda") == S.CONFIRM

    def test_empty_cart_never_finalizes(self):
        assert self.machine.next_state(S.CONFIRM, criteria(), "sim") == S.DISCOVERY

    @pytest.mark.parametrize("state", [S.CONFIRM, S.CONFIRMATION])
    def test_affirmation_with_a_missing_address_goes_back_to_address(self, state):
        # pickup switched to delivery in the same message as the "sim"
        c = criteria(has_products=True, has_delivery_type=True, needs_address=True, has_payment_method=True)
        assert self.machine.next_state(state, c, "sim, mas quero entrega") == S.ADDRESS

    def test_affirmation_with_a_missing_payment_goes_back_to_payment(self):
        c = criteria(has_products=True, has_delivery_type=True)
        assert self.machine.next_state(S.CONFIRM, c, "sim") == S.PAYMENT

    def test_affirmation_without_delivery_type_goes_back_to_logistics(self):
        c = criteria(has_products=True, has_payment_method=True)
        assert self.machine.next_state(S.CONFIRM, c, "ok") == S.LOGISTICS

    def test_classifier_is_injectable(self):
        classifier = Mock()
        classifier.is_affirmative.return_value = True
        machine = ConversationStateMachine(affirmation=classifier)

        assert machine.next_state(S.CONFIRM, ALL_MET, "👍") == S.FINALIZED
        classifier.is_affirmative.assert_called_once_with("👍")


class TestKeywordAffirmationClassifier:
    @pytest.mark.parametrize(
        "message",
        ["sim", "Confirmo", "ok", "pode ser", "Fecha!", "fechado", "tá bom", "isso mesmo", "beleza"],
    )
    def test_affirmative(self, message):
        assert KeywordAffirmationClassifier().is_affirmative(message)

    @pytest.mark.parametrize(
        "message",
        ["", "não", "não pode ser", "não confirmo", "quero mudar o endereço", "simples"],
    )
    def test_not_affirmative(self, message):
        assert not KeywordAffirmationClassifier().is_affirmative(message)
