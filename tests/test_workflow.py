from __future__ import annotations

import pytest

from illustre.domain import (
    ONBOARDING_SEQUENCE,
    OnboardingStep,
    OnboardingStepType,
    OrderStatus,
    Product,
    ProductFormat,
    ProductStatus,
    RevisionStatus,
    Role,
)
from illustre.workflow import (
    InvalidTransitionError,
    allowed_product_transitions,
    can_transition_product,
    ensure_onboarding_update,
    ensure_order_transition,
    ensure_product_transition,
    is_valid_order_transition,
    is_valid_revision_transition,
    next_order_status,
    onboarding_complete,
    onboarding_progress,
    sort_onboarding_steps,
)


def make_product(status: ProductStatus = ProductStatus.PENDING, link: str = "") -> Product:
    return Product(
        id="p1",
        order_id="o1",
        title="3 Vidéos Podcast",
        format=ProductFormat.PODCAST,
        status=status,
        deliverable_link=link,
    )


def make_steps(*done: OnboardingStepType):
    return [
        OnboardingStep(id=step.value, order_id="o1", step=step, completed=step in done)
        for step in ONBOARDING_SEQUENCE
    ]


class TestOrderTransitions:
    def test_forward_and_cancel_paths(self):
        assert is_valid_order_transition(OrderStatus.ONBOARDING, OrderStatus.IN_PROGRESS)
        assert is_valid_order_transition(OrderStatus.ONBOARDING, OrderStatus.CANCELLED)
        assert is_valid_order_transition(OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED)
        assert not is_valid_order_transition(OrderStatus.ONBOARDING, OrderStatus.COMPLETED)

    @pytest.mark.parametrize("terminal", [OrderStatus.COMPLETED, OrderStatus.CANCELLED])
    def test_terminal_states_are_final(self, terminal):
        for target in OrderStatus:
            assert not is_valid_order_transition(terminal, target)

    def test_manual_change_requires_admin(self):
        with pytest.raises(InvalidTransitionError):
            ensure_order_transition(
                OrderStatus.ONBOARDING, OrderStatus.CANCELLED, [Role.CLOSER]
            )
        ensure_order_transition(OrderStatus.ONBOARDING, OrderStatus.CANCELLED, [Role.ADMIN])

    def test_error_carries_states(self):
        with pytest.raises(InvalidTransitionError) as excinfo:
            ensure_order_transition(
                OrderStatus.COMPLETED, OrderStatus.IN_PROGRESS, [Role.ADMIN]
            )
        assert excinfo.value.current == "completed"
        assert excinfo.value.target == "in_progress"
        assert isinstance(excinfo.value, ValueError)


class TestProductTransitions:
    def test_production_roles(self):
        assert allowed_product_transitions(ProductStatus.PENDING, Role.COLLABORATOR) == {
            ProductStatus.FILES_REQUESTED,
            ProductStatus.IN_PRODUCTION,
        }
        assert allowed_product_transitions(ProductStatus.PENDING, Role.CLIENT) == set()

    def test_review_roles(self):
        assert can_transition_product(
            ProductStatus.DELIVERED, ProductStatus.COMPLETED, [Role.CLIENT]
        )
        assert not can_transition_product(
            ProductStatus.DELIVERED, ProductStatus.COMPLETED, [Role.COLLABORATOR]
        )
        assert not can_transition_product(
            ProductStatus.DELIVERED, ProductStatus.REVISION_REQUESTED, [Role.CLOSER]
        )

    def test_completed_is_terminal(self):
        for role in Role:
            assert allowed_product_transitions(ProductStatus.COMPLETED, role) == set()

    def test_requires_order_in_progress(self):
        with pytest.raises(InvalidTransitionError, match="order is onboarding"):
            ensure_product_transition(
                make_product(),
                ProductStatus.IN_PRODUCTION,
                [Role.ADMIN],
                OrderStatus.ONBOARDING,
            )

    def test_skipping_states_is_rejected(self):
        with pytest.raises(InvalidTransitionError):
            ensure_product_transition(
                make_product(),
                ProductStatus.DELIVERED,
                [Role.ADMIN],
                OrderStatus.IN_PROGRESS,
                deliverable_link="https://frame.io/x",
            )

    def test_wrong_role_is_rejected(self):
        with pytest.raises(InvalidTransitionError, match="role not allowed"):
            ensure_product_transition(
                make_product(ProductStatus.IN_PRODUCTION),
                ProductStatus.DELIVERED,
                [Role.CLIENT],
                OrderStatus.IN_PROGRESS,
                deliverable_link="https://frame.io/x",
            )

    def test_delivery_needs_a_link(self):
        product = make_product(ProductStatus.IN_PRODUCTION)
        with pytest.raises(InvalidTransitionError, match="deliverable link"):
            ensure_product_transition(
                product, ProductStatus.DELIVERED, [Role.COLLABORATOR], OrderStatus.IN_PROGRESS
            )
        with pytest.raises(InvalidTransitionError):
            ensure_product_transition(
                product,
                ProductStatus.DELIVERED,
                [Role.COLLABORATOR],
                OrderStatus.IN_PROGRESS,
                deliverable_link="   ",
            )
        ensure_product_transition(
            product,
            ProductStatus.DELIVERED,
            [Role.COLLABORATOR],
            OrderStatus.IN_PROGRESS,
            deliverable_link="https://frame.io/x",
        )

    def test_existing_link_is_enough(self):
        product = make_product(ProductStatus.IN_PRODUCTION, link="https://frame.io/x")
        ensure_product_transition(
            product, ProductStatus.DELIVERED, [Role.ADMIN], OrderStatus.IN_PROGRESS
        )


class TestOnboarding:
    def test_progress_counts_completed_steps(self):
        assert onboarding_progress(make_steps()) == 0
        assert onboarding_progress(make_steps(OnboardingStepType.CALL_SCHEDULED)) == 25
        assert onboarding_progress(make_steps(*ONBOARDING_SEQUENCE)) == 100

    def test_complete_requires_all_four(self):
        assert not onboarding_complete(make_steps(*ONBOARDING_SEQUENCE[:3]))
        assert onboarding_complete(make_steps(*ONBOARDING_SEQUENCE))

    def test_sorting_follows_sequence(self):
        steps = list(reversed(make_steps()))
        assert [s.step for s in sort_onboarding_steps(steps)] == list(ONBOARDING_SEQUENCE)

    def test_payment_is_staff_only(self):
        with pytest.raises(InvalidTransitionError):
            ensure_onboarding_update(
                OnboardingStepType.PAYMENT_MADE, True, [Role.CLIENT], OrderStatus.ONBOARDING
            )
        ensure_onboarding_update(
            OnboardingStepType.PAYMENT_MADE, True, [Role.CLOSER], OrderStatus.ONBOARDING
        )
        ensure_onboarding_update(
            OnboardingStepType.PAYMENT_MADE, True, [], OrderStatus.ONBOARDING, system=True
        )

    def test_only_admin_reopens(self):
        with pytest.raises(InvalidTransitionError, match="only an admin"):
            ensure_onboarding_update(
                OnboardingStepType.CONTRACT_SIGNED,
                False,
                [Role.CLOSER, Role.CLIENT],
                OrderStatus.ONBOARDING,
            )
        ensure_onboarding_update(
            OnboardingStepType.CONTRACT_SIGNED, False, [Role.ADMIN], OrderStatus.ONBOARDING
        )

    def test_steps_frozen_after_onboarding(self):
        with pytest.raises(InvalidTransitionError):
            ensure_onboarding_update(
                OnboardingStepType.FORM_COMPLETED,
                True,
                [Role.ADMIN],
                OrderStatus.IN_PROGRESS,
            )

    def test_payment_confirmation_ignores_order_status(self):
        for status in (OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED):
            ensure_onboarding_update(
                OnboardingStepType.PAYMENT_MADE, True, [], status, system=True
            )


class TestAutomaticOrderStatus:
    def test_onboarding_done_starts_production(self):
        steps = make_steps(*ONBOARDING_SEQUENCE)
        assert next_order_status(OrderStatus.ONBOARDING, steps, []) == OrderStatus.IN_PROGRESS
        assert next_order_status(OrderStatus.ONBOARDING, make_steps(), []) is None

    def test_all_products_completed_finishes_order(self):
        done = make_product(ProductStatus.COMPLETED)
        pending = make_product(ProductStatus.DELIVERED)
        assert next_order_status(OrderStatus.IN_PROGRESS, [], [done]) == OrderStatus.COMPLETED
        assert next_order_status(OrderStatus.IN_PROGRESS, [], [done, pending]) is None
        assert next_order_status(OrderStatus.IN_PROGRESS, [], []) is None


def test_revision_lifecycle():
    assert is_valid_revision_transition(RevisionStatus.PENDING, RevisionStatus.IN_PROGRESS)
    assert is_valid_revision_transition(RevisionStatus.IN_PROGRESS, RevisionStatus.COMPLETED)
    assert not is_valid_revision_transition(RevisionStatus.PENDING, RevisionStatus.COMPLETED)
    assert not is_valid_revision_transition(RevisionStatus.COMPLETED, RevisionStatus.PENDING)
