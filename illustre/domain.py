"""Core data structures for the illustre! agency portal."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Role(str, Enum):
    """Roles a profile can hold inside an organization."""

    CLIENT = "client"
    CLOSER = "closer"
    COLLABORATOR = "collaborator"
    ADMIN = "admin"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class OrderStatus(str, Enum):
    """Lifecycle stages for a client order."""

    ONBOARDING = "onboarding"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ProductStatus(str, Enum):
    """Production stages of a single deliverable."""

    PENDING = "pending"
    FILES_REQUESTED = "files_requested"
    IN_PRODUCTION = "in_production"
    DELIVERED = "delivered"
    REVISION_REQUESTED = "revision_requested"
    COMPLETED = "completed"


class ProductFormat(str, Enum):
    PODCAST = "podcast"
    SCRIPTED = "scripted"
    MICRO_INTERVIEW = "micro-interview"


class OnboardingStepType(str, Enum):
    """Steps a client goes through before production starts."""

    CALL_SCHEDULED = "call_scheduled"
    CONTRACT_SIGNED = "contract_signed"
    PAYMENT_MADE = "payment_made"
    FORM_COMPLETED = "form_completed"

    @property
    def label(self) -> str:
        return {
            OnboardingStepType.CALL_SCHEDULED: "Appel d'onboarding",
            OnboardingStepType.CONTRACT_SIGNED: "Signature du contrat",
            OnboardingStepType.PAYMENT_MADE: "Paiement",
            OnboardingStepType.FORM_COMPLETED: "Formulaire d'onboarding",
        }[self]


ONBOARDING_SEQUENCE: Tuple[OnboardingStepType, ...] = (
    OnboardingStepType.CALL_SCHEDULED,
    OnboardingStepType.CONTRACT_SIGNED,
    OnboardingStepType.PAYMENT_MADE,
    OnboardingStepType.FORM_COMPLETED,
)


class RevisionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class NotificationType(str, Enum):
    ORDER_UPDATE = "order_update"
    PRODUCT_UPDATE = "product_update"
    PAYMENT = "payment"
    REVISION_REQUEST = "revision_request"
    SYSTEM = "system"


class EmailKind(str, Enum):
    """Automated emails the agency sends."""

    ONBOARDING = "onboarding"
    FILES = "files"
    DELIVERABLE = "deliverable"
    REVISION = "revision"


def format_euros(cents: int) -> str:
    return f"{cents / 100:.2f}€"


@dataclass(slots=True)
class Organization:
    """Agency or partner agency owning orders and role assignments."""

    id: str
    name: str
    slug: str
    parent_organization_id: Optional[str] = None
    is_subcontracted: bool = False
    custom_domain: str = ""
    logo_url: str = ""
    primary_color: str = ""
    secondary_color: str = ""
    settings: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(slots=True)
class Profile:
    """A person able to sign in to the portal."""

    id: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    company: str = ""
    phone: str = ""
    avatar_url: str = ""
    status: UserStatus = UserStatus.ACTIVE
    temp_password: bool = False
    preferred_role: Optional[Role] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def full_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass(slots=True)
class RoleAssignment:
    """Grants a role to a profile inside one organization."""

    id: str
    user_id: str
    organization_id: str
    role: Role
    permissions: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(slots=True)
class ProductTemplate:
    """Catalogue entry a closer or client can order."""

    id: str
    name: str
    format: ProductFormat
    price_cents: int
    quantity: int = 1
    description: str = ""
    active: bool = True


@dataclass(slots=True)
class CustomOption:
    """Optional add-on priced on top of the selected templates."""

    id: str
    name: str
    description: str = ""
    price_adjustment_cents: int = 0


@dataclass(slots=True)
class OrderOption:
    """A custom option as it was sold on a specific order."""

    name: str
    description: str
    price_adjustment_cents: int


@dataclass(slots=True)
class Order:
    id: str
    order_number: str
    client_id: str
    client_name: str
    organization_id: str
    title: str
    closer_id: Optional[str] = None
    description: str = ""
    status: OrderStatus = OrderStatus.ONBOARDING
    total_amount_cents: int = 0
    options: List[OrderOption] = field(default_factory=list)
    is_subcontracted: bool = False
    final_client_name: str = ""
    final_client_email: str = ""
    custom_branding: Dict[str, str] = field(default_factory=dict)
    frameio_project_id: str = ""
    stripe_customer_id: str = ""
    stripe_checkout_session_id: str = ""
    stripe_payment_link: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(slots=True)
class Product:
    """A deliverable produced for an order."""

    id: str
    order_id: str
    title: str
    format: ProductFormat
    price_cents: int = 0
    template_id: Optional[str] = None
    status: ProductStatus = ProductStatus.PENDING
    collaborator_id: Optional[str] = None
    deliverable_link: str = ""
    preparation_link: str = ""
    file_deposit_link: str = ""
    instructions: str = ""
    responsible: str = ""
    next_action_date: Optional[date] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(slots=True)
class OnboardingStep:
    id: str
    order_id: str
    step: OnboardingStepType
    completed: bool = False
    completed_at: Optional[datetime] = None
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(slots=True)
class Revision:
    """A change a client asked for on a delivered product."""

    id: str
    product_id: str
    description: str
    requested_by: str
    status: RevisionStatus = RevisionStatus.PENDING
    requested_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None


@dataclass(slots=True)
class Notification:
    id: str
    user_id: str
    organization_id: str
    type: NotificationType
    title: str
    message: str = ""
    related_id: Optional[str] = None
    related_type: Optional[str] = None
    read: bool = False
    read_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(slots=True)
class AuditLogEntry:
    id: str
    action: str
    entity_type: str
    entity_id: Optional[str]
    user_id: Optional[str]
    organization_id: Optional[str] = None
    old_values: Dict[str, Any] = field(default_factory=dict)
    new_values: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(slots=True)
class EmailMessage:
    """An outgoing email, kept in the outbox once rendered."""

    id: str
    kind: EmailKind
    recipient: str
    subject: str
    html: str
    related_id: Optional[str] = None
    delivered: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)


__all__ = [
    "Role",
    "UserStatus",
    "OrderStatus",
    "ProductStatus",
    "ProductFormat",
    "OnboardingStepType",
    "ONBOARDING_SEQUENCE",
    "RevisionStatus",
    "NotificationType",
    "EmailKind",
    "format_euros",
    "Organization",
    "Profile",
    "RoleAssignment",
    "ProductTemplate",
    "CustomOption",
    "OrderOption",
    "Order",
    "Product",
    "OnboardingStep",
    "Revision",
    "Notification",
    "AuditLogEntry",
    "EmailMessage",
]
