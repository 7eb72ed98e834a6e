"""Request models and response serializers for the JSON API."""

from __future__ import annotations

from dataclasses import asdict
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..auth import Session
from ..domain import (
    EmailKind,
    EmailMessage,
    OnboardingStep,
    OrderOption,
    OrderStatus,
    ProductFormat,
    ProductStatus,
    Profile,
    Role,
    UserStatus,
)
from ..permissions import ROLE_OPTIONS, Principal
from ..services import OrderCreation, OrderDetail, ProductDetail, ProductListing
from ..workflow import onboarding_progress


# ----------------------------------------------------------------------
# Auth and users
# ----------------------------------------------------------------------
class SignUpRequest(BaseModel):
    email: str
    password: str
    full_name: str = ""
    company: str = ""


class SignInRequest(BaseModel):
    email: str
    password: str


class RoleSelectionRequest(BaseModel):
    role: Role
    remember: bool = False


class PasswordResetRequest(BaseModel):
    new_password: str = Field(min_length=1)


class ProfileUpdateRequest(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    avatar_url: Optional[str] = None


class UserCreateRequest(BaseModel):
    email: str
    password: Optional[str] = None
    full_name: str = ""
    company: str = ""
    phone: str = ""
    roles: List[Role] = Field(default_factory=lambda: [Role.CLIENT])
    organization_id: Optional[str] = None


class RolesUpdateRequest(BaseModel):
    roles: List[Role]
    organization_id: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: UserStatus


# ----------------------------------------------------------------------
# Organizations and catalogue
# ----------------------------------------------------------------------
class OrganizationCreateRequest(BaseModel):
    name: str
    slug: str
    parent_organization_id: Optional[str] = None
    is_subcontracted: bool = False
    custom_domain: str = ""
    logo_url: str = ""
    primary_color: str = ""
    secondary_color: str = ""


class TemplateCreateRequest(BaseModel):
    name: str
    format: ProductFormat
    price_cents: int = Field(ge=0)
    quantity: int = Field(default=1, ge=1)
    description: str = ""


class TemplateActiveRequest(BaseModel):
    active: bool


class OptionCreateRequest(BaseModel):
    name: str
    description: str = ""
    price_adjustment_cents: int = Field(default=0, ge=0)


# ----------------------------------------------------------------------
# Orders and products
# ----------------------------------------------------------------------
class CustomOptionInput(BaseModel):
    name: str
    description: str = ""
    price_adjustment_cents: int = Field(default=0, ge=0)

    def to_option(self) -> OrderOption:
        return OrderOption(
            name=self.name,
            description=self.description,
            price_adjustment_cents=self.price_adjustment_cents,
        )


class ClientOrderCreateRequest(BaseModel):
    """Closer flow: client account and order in one call."""

    client_name: str
    client_email: str
    client_company: str = ""
    order_title: str
    template_ids: List[str]
    option_ids: List[str] = Field(default_factory=list)
    custom_options: List[CustomOptionInput] = Field(default_factory=list)
    description: str = ""
    organization_id: Optional[str] = None
    is_subcontracted: bool = False
    final_client_name: str = ""
    final_client_email: str = ""
    custom_branding: Dict[str, str] = Field(default_factory=dict)
    send_onboarding_email: bool = False


class OrderCreateRequest(BaseModel):
    title: str
    template_ids: List[str]
    option_ids: List[str] = Field(default_factory=list)
    custom_options: List[CustomOptionInput] = Field(default_factory=list)
    description: str = ""


class OrderUpdateRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    final_client_name: Optional[str] = None
    final_client_email: Optional[str] = None
    is_subcontracted: Optional[bool] = None
    custom_branding: Optional[Dict[str, str]] = None
    frameio_project_id: Optional[str] = None
    closer_id: Optional[str] = None


class OrderStatusRequest(BaseModel):
    status: OrderStatus


class ProductUpdateRequest(BaseModel):
    title: Optional[str] = None
    format: Optional[ProductFormat] = None
    collaborator_id: Optional[str] = None
    instructions: Optional[str] = None
    responsible: Optional[str] = None
    deliverable_link: Optional[str] = None
    preparation_link: Optional[str] = None
    file_deposit_link: Optional[str] = None
    next_action_date: Optional[date] = None


class ProductStatusRequest(BaseModel):
    status: ProductStatus
    deliverable_link: Optional[str] = None


class FilesRequest(BaseModel):
    deposit_link: str = ""


class DeliverRequest(BaseModel):
    deliverable_link: str


class RevisionRequest(BaseModel):
    description: str


class OnboardingStepRequest(BaseModel):
    completed: bool = True
    data: Dict[str, Any] = Field(default_factory=dict)


class EmailTestRequest(BaseModel):
    kind: EmailKind
    recipient: str


# ----------------------------------------------------------------------
# Serializers
# ----------------------------------------------------------------------
def profile_out(profile: Profile, roles: Optional[List[Role]] = None) -> Dict[str, Any]:
    data = asdict(profile)
    data.pop("password_hash", None)
    data["full_name"] = profile.full_name
    if roles is not None:
        data["roles"] = [role.value for role in roles]
    return data


def principal_out(principal: Principal) -> Dict[str, Any]:
    roles = sorted(principal.roles, key=lambda role: role.value)
    return {
        "profile": profile_out(principal.profile, roles),
        "active_role": principal.active_role.value if principal.active_role else None,
        "role_options": [
            asdict(ROLE_OPTIONS[role]) for role in ROLE_OPTIONS if role in principal.roles
        ],
        "must_reset_password": principal.profile.temp_password,
    }


def session_out(session: Session) -> Dict[str, Any]:
    data = principal_out(session.principal)
    data.update(
        {
            "access_token": session.token,
            "token_type": "bearer",
            "needs_role_selection": session.needs_role_selection,
            "route": session.route,
        }
    )
    return data


def product_detail_out(detail: ProductDetail) -> Dict[str, Any]:
    data = asdict(detail.product)
    data["revisions"] = [asdict(revision) for revision in detail.revisions]
    return data


def steps_out(steps: List[OnboardingStep]) -> Dict[str, Any]:
    return {
        "steps": [dict(asdict(step), label=step.step.label) for step in steps],
        "progress": onboarding_progress(steps),
    }


def order_detail_out(detail: OrderDetail) -> Dict[str, Any]:
    data = asdict(detail.order)
    data["products"] = [product_detail_out(product) for product in detail.products]
    data["onboarding"] = steps_out(detail.onboarding_steps)
    return data


def order_creation_out(creation: OrderCreation) -> Dict[str, Any]:
    return {
        "order": asdict(creation.order),
        "client": profile_out(creation.client),
        "products": [asdict(product) for product in creation.products],
        "onboarding": steps_out(creation.onboarding_steps),
        "temporary_password": creation.temporary_password,
        "email_id": creation.email.id if creation.email else None,
    }


def product_listing_out(listing: ProductListing) -> Dict[str, Any]:
    return {
        "products": [asdict(product) for product in listing.products],
        "product_count": len(listing.products),
        "order_count": listing.order_count,
    }


def email_out(message: EmailMessage, include_html: bool = False) -> Dict[str, Any]:
    data = asdict(message)
    if not include_html:
        data.pop("html")
    return data
