"""Role checks and order visibility rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from .domain import Order, Product, Profile, Role, RoleAssignment


class PermissionDeniedError(RuntimeError):
    """Raised when the acting user lacks the role an operation needs."""


class RoleSelectionRequiredError(RuntimeError):
    """Raised when a multi-role user has not chosen the role to act as."""


@dataclass(frozen=True, slots=True)
class RoleOption:
    role: Role
    label: str
    description: str
    route: str


ROLE_OPTIONS: Dict[Role, RoleOption] = {
    Role.ADMIN: RoleOption(
        Role.ADMIN, "Administrateur", "Gestion complète de la plateforme", "/admin"
    ),
    Role.CLOSER: RoleOption(
        Role.CLOSER, "Closer", "Gestion des ventes et négociations", "/closer"
    ),
    Role.COLLABORATOR: RoleOption(
        Role.COLLABORATOR,
        "Collaborateur",
        "Production et collaboration",
        "/collaborator",
    ),
    Role.CLIENT: RoleOption(
        Role.CLIENT, "Client", "Accès aux commandes et projets", "/client"
    ),
}

# Landing role when nothing was chosen, highest first.
ROLE_PRIORITY = (Role.ADMIN, Role.CLOSER, Role.COLLABORATOR, Role.CLIENT)


def default_role(roles: Iterable[Role]) -> Optional[Role]:
    held = set(roles)
    for role in ROLE_PRIORITY:
        if role in held:
            return role
    return None


def default_route(roles: Iterable[Role]) -> str:
    role = default_role(roles)
    return ROLE_OPTIONS[role or Role.CLIENT].route


@dataclass(slots=True)
class Principal:
    """The authenticated profile plus the roles it holds."""

    profile: Profile
    assignments: List[RoleAssignment] = field(default_factory=list)
    active_role: Optional[Role] = None

    @property
    def user_id(self) -> str:
        return self.profile.id

    @property
    def roles(self) -> FrozenSet[Role]:
        return frozenset(assignment.role for assignment in self.assignments)

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles

    def has_role(self, role: Role, organization_id: Optional[str] = None) -> bool:
        return any(
            assignment.role == role
            and (organization_id is None or assignment.organization_id == organization_id)
            for assignment in self.assignments
        )

    def organization_ids(self) -> List[str]:
        seen: List[str] = []
        for assignment in self.assignments:
            if assignment.organization_id not in seen:
                seen.append(assignment.organization_id)
        return seen

    def acting_role(self) -> Role:
        """Role used to scope listings."""

        if self.active_role is not None and self.active_role in self.roles:
            return self.active_role
        roles = self.roles
        if len(roles) == 1:
            return next(iter(roles))
        if not roles:
            raise PermissionDeniedError("User has no role")
        raise RoleSelectionRequiredError(
            "Select a role before accessing role-specific data"
        )

    def roles_for(self, order: Order, products: Sequence[Product] = ()) -> List[Role]:
        """Roles this principal may exercise on a given order."""

        relation: List[Role] = []
        if self.is_admin:
            relation.append(Role.ADMIN)
        if order.closer_id == self.user_id and Role.CLOSER in self.roles:
            relation.append(Role.CLOSER)
        if Role.COLLABORATOR in self.roles and any(
            product.collaborator_id == self.user_id for product in products
        ):
            relation.append(Role.COLLABORATOR)
        if order.client_id == self.user_id:
            relation.append(Role.CLIENT)
        return relation


def require_role(principal: Principal, *roles: Role) -> None:
    if not any(principal.has_role(role) for role in roles):
        names = ", ".join(role.value for role in roles)
        raise PermissionDeniedError(f"One of the roles [{names}] is required")


def can_view_order(
    principal: Principal, order: Order, products: Sequence[Product] = ()
) -> bool:
    return bool(principal.roles_for(order, products))


def order_visible_as(
    role: Role, user_id: str, order: Order, products: Sequence[Product] = ()
) -> bool:
    """Visibility of an order when listing as a specific role."""

    if role == Role.ADMIN:
        return True
    if role == Role.CLOSER:
        return order.closer_id == user_id
    if role == Role.COLLABORATOR:
        return any(product.collaborator_id == user_id for product in products)
    return order.client_id == user_id


__all__ = [
    "PermissionDeniedError",
    "RoleSelectionRequiredError",
    "RoleOption",
    "ROLE_OPTIONS",
    "ROLE_PRIORITY",
    "default_role",
    "default_route",
    "Principal",
    "require_role",
    "can_view_order",
    "order_visible_as",
]
