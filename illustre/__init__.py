"""Client portal for the illustre! audiovisual production agency.

This package provides the data model, role-aware authentication and the
order, onboarding and production workflow shared by clients, closers,
collaborators and admins.
"""

from .auth import AuthenticationError, AuthService, Session
from .config import Settings, get_settings
from .domain import (
    OnboardingStepType,
    Order,
    OrderStatus,
    Product,
    ProductFormat,
    ProductStatus,
    Profile,
    Role,
)
from .permissions import PermissionDeniedError, Principal, RoleSelectionRequiredError
from .services import OrderDetail, PortalService
from .workflow import InvalidTransitionError

__all__ = [
    "AuthenticationError",
    "AuthService",
    "Session",
    "Settings",
    "get_settings",
    "OnboardingStepType",
    "Order",
    "OrderStatus",
    "Product",
    "ProductFormat",
    "ProductStatus",
    "Profile",
    "Role",
    "PermissionDeniedError",
    "Principal",
    "RoleSelectionRequiredError",
    "OrderDetail",
    "PortalService",
    "InvalidTransitionError",
]
