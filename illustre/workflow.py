"""
Order, product, onboarding and revision state machines.

Every status mutation in the portal is validated here. Transitions are
whitelisted per current state and, for products, per acting role.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set

from .domain import (
    ONBOARDING_SEQUENCE,
    OnboardingStep,
    OnboardingStepType,
    OrderStatus,
    Product,
    ProductStatus,
    RevisionStatus,
    Role,
)


class InvalidTransitionError(ValueError):
    """Raised when a status change is not allowed."""

    def __init__(
        self,
        entity: str,
        current: str,
        target: str,
        role: Optional[Role] = None,
        reason: str = "",
    ) -> None:
        self.entity = entity
        self.current = current
        self.target = target
        self.role = role
        message = f"Cannot move {entity} from {current!r} to {target!r}"
        if role is not None:
            message += f" as {role.value}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


# ----------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------
ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.ONBOARDING: frozenset(
        {OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED}
    ),
    OrderStatus.IN_PROGRESS: frozenset(
        {OrderStatus.COMPLETED, OrderStatus.CANCELLED}
    ),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_ORDER_STATES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.CANCELLED}
)


def is_valid_order_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_TRANSITIONS.get(current, frozenset())


def ensure_order_transition(
    current: OrderStatus, target: OrderStatus, roles: Iterable[Role]
) -> None:
    """Manual order transitions are reserved to admins."""

    if Role.ADMIN not in set(roles):
        raise InvalidTransitionError(
            "order", current.value, target.value, reason="admin role required"
        )
    if not is_valid_order_transition(current, target):
        raise InvalidTransitionError("order", current.value, target.value)


# ----------------------------------------------------------------------
# Products
# ----------------------------------------------------------------------
_PRODUCTION = frozenset({Role.COLLABORATOR, Role.ADMIN})
_REVIEW = frozenset({Role.CLIENT, Role.ADMIN})

PRODUCT_TRANSITIONS: Dict[
    ProductStatus, Dict[ProductStatus, FrozenSet[Role]]
] = {
    ProductStatus.PENDING: {
        ProductStatus.FILES_REQUESTED: _PRODUCTION,
        ProductStatus.IN_PRODUCTION: _PRODUCTION,
    },
    ProductStatus.FILES_REQUESTED: {
        ProductStatus.IN_PRODUCTION: _PRODUCTION,
    },
    ProductStatus.IN_PRODUCTION: {
        ProductStatus.DELIVERED: _PRODUCTION,
    },
    ProductStatus.DELIVERED: {
        ProductStatus.REVISION_REQUESTED: _REVIEW,
        ProductStatus.COMPLETED: _REVIEW,
    },
    ProductStatus.REVISION_REQUESTED: {
        ProductStatus.IN_PRODUCTION: _PRODUCTION,
    },
    ProductStatus.COMPLETED: {},
}


def allowed_product_transitions(
    current: ProductStatus, role: Role
) -> Set[ProductStatus]:
    return {
        target
        for target, roles in PRODUCT_TRANSITIONS.get(current, {}).items()
        if role in roles
    }


def can_transition_product(
    current: ProductStatus, target: ProductStatus, roles: Iterable[Role]
) -> bool:
    allowed = PRODUCT_TRANSITIONS.get(current, {}).get(target, frozenset())
    return any(role in allowed for role in roles)


def ensure_product_transition(
    product: Product,
    target: ProductStatus,
    roles: Sequence[Role],
    order_status: OrderStatus,
    *,
    deliverable_link: Optional[str] = None,
) -> None:
    current = product.status
    link = product.deliverable_link if deliverable_link is None else deliverable_link
    if order_status != OrderStatus.IN_PROGRESS:
        raise InvalidTransitionError(
            "product",
            current.value,
            target.value,
            reason=f"order is {order_status.value}",
        )
    if target not in PRODUCT_TRANSITIONS.get(current, {}):
        raise InvalidTransitionError("product", current.value, target.value)
    if not can_transition_product(current, target, roles):
        role = roles[0] if roles else None
        raise InvalidTransitionError(
            "product", current.value, target.value, role, "role not allowed"
        )
    if target == ProductStatus.DELIVERED and not link.strip():
        raise InvalidTransitionError(
            "product",
            current.value,
            target.value,
            reason="a deliverable link is required",
        )


# ----------------------------------------------------------------------
# Onboarding
# ----------------------------------------------------------------------
ONBOARDING_STEP_ROLES: Mapping[OnboardingStepType, FrozenSet[Role]] = {
    OnboardingStepType.CALL_SCHEDULED: frozenset(
        {Role.CLIENT, Role.CLOSER, Role.ADMIN}
    ),
    OnboardingStepType.CONTRACT_SIGNED: frozenset(
        {Role.CLIENT, Role.CLOSER, Role.ADMIN}
    ),
    OnboardingStepType.PAYMENT_MADE: frozenset({Role.CLOSER, Role.ADMIN}),
    OnboardingStepType.FORM_COMPLETED: frozenset(
        {Role.CLIENT, Role.CLOSER, Role.ADMIN}
    ),
}


def ensure_onboarding_update(
    step: OnboardingStepType,
    completed: bool,
    roles: Iterable[Role],
    order_status: OrderStatus,
    *,
    system: bool = False,
) -> None:
    """Validate a change to one onboarding step.

    ``system`` marks changes driven by payment confirmation, which complete
    the payment step whatever the roles or the order status.
    """

    target = "completed" if completed else "open"
    if system:
        return
    if order_status != OrderStatus.ONBOARDING:
        raise InvalidTransitionError(
            "onboarding step",
            step.value,
            target,
            reason=f"order is {order_status.value}",
        )
    held = set(roles)
    if not completed:
        if Role.ADMIN not in held:
            raise InvalidTransitionError(
                "onboarding step",
                step.value,
                target,
                reason="only an admin can reopen a step",
            )
        return
    if not held & ONBOARDING_STEP_ROLES[step]:
        raise InvalidTransitionError(
            "onboarding step", step.value, target, reason="role not allowed"
        )


def onboarding_progress(steps: Sequence[OnboardingStep]) -> float:
    """Percentage of the four onboarding steps already completed."""

    done = {step.step for step in steps if step.completed}
    return len(done & set(ONBOARDING_SEQUENCE)) / len(ONBOARDING_SEQUENCE) * 100


def onboarding_complete(steps: Sequence[OnboardingStep]) -> bool:
    done = {step.step for step in steps if step.completed}
    return set(ONBOARDING_SEQUENCE) <= done


def sort_onboarding_steps(steps: Iterable[OnboardingStep]) -> List[OnboardingStep]:
    order = {step: index for index, step in enumerate(ONBOARDING_SEQUENCE)}
    return sorted(steps, key=lambda step: order[step.step])


# ----------------------------------------------------------------------
# Automatic order progression
# ----------------------------------------------------------------------
def next_order_status(
    status: OrderStatus,
    steps: Sequence[OnboardingStep],
    products: Sequence[Product],
) -> Optional[OrderStatus]:
    """Return the status the system should move an order to, if any."""

    if status == OrderStatus.ONBOARDING and onboarding_complete(steps):
        return OrderStatus.IN_PROGRESS
    if (
        status == OrderStatus.IN_PROGRESS
        and products
        and all(product.status == ProductStatus.COMPLETED for product in products)
    ):
        return OrderStatus.COMPLETED
    return None


# ----------------------------------------------------------------------
# Revisions
# ----------------------------------------------------------------------
REVISION_TRANSITIONS: Dict[RevisionStatus, FrozenSet[RevisionStatus]] = {
    RevisionStatus.PENDING: frozenset({RevisionStatus.IN_PROGRESS}),
    RevisionStatus.IN_PROGRESS: frozenset({RevisionStatus.COMPLETED}),
    RevisionStatus.COMPLETED: frozenset(),
}

# Revision status that follows a product entering a given state.
REVISION_FOLLOWS_PRODUCT: Mapping[ProductStatus, RevisionStatus] = {
    ProductStatus.IN_PRODUCTION: RevisionStatus.IN_PROGRESS,
    ProductStatus.DELIVERED: RevisionStatus.COMPLETED,
}


def is_valid_revision_transition(
    current: RevisionStatus, target: RevisionStatus
) -> bool:
    return target in REVISION_TRANSITIONS.get(current, frozenset())


__all__ = [
    "InvalidTransitionError",
    "ORDER_TRANSITIONS",
    "TERMINAL_ORDER_STATES",
    "PRODUCT_TRANSITIONS",
    "ONBOARDING_STEP_ROLES",
    "REVISION_TRANSITIONS",
    "REVISION_FOLLOWS_PRODUCT",
    "is_valid_order_transition",
    "ensure_order_transition",
    "allowed_product_transitions",
    "can_transition_product",
    "ensure_product_transition",
    "ensure_onboarding_update",
    "onboarding_progress",
    "onboarding_complete",
    "sort_onboarding_steps",
    "next_order_status",
    "is_valid_revision_transition",
]
