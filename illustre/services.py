"""Service layer that implements the portal's business rules."""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from uuid import uuid4

from .auth import AuthService
from .domain import (
    ONBOARDING_SEQUENCE,
    AuditLogEntry,
    CustomOption,
    EmailKind,
    EmailMessage,
    Notification,
    NotificationType,
    OnboardingStep,
    OnboardingStepType,
    Order,
    OrderOption,
    OrderStatus,
    Organization,
    Product,
    ProductFormat,
    ProductStatus,
    ProductTemplate,
    Profile,
    Revision,
    RevisionStatus,
    Role,
)
from .mailer import Mailer, is_valid_email
from .payments import (
    CheckoutGateway,
    CheckoutRequest,
    CheckoutSession,
    LineItem,
    PaymentError,
    PaymentEvent,
)
from .permissions import (
    PermissionDeniedError,
    Principal,
    order_visible_as,
    require_role,
)
from .repository import (
    DuplicateRecordError,
    InMemoryRepository,
    RecordNotFoundError,
    in_memory_default,
)
from .workflow import (
    REVISION_FOLLOWS_PRODUCT,
    InvalidTransitionError,
    ensure_onboarding_update,
    ensure_order_transition,
    ensure_product_transition,
    is_valid_revision_transition,
    next_order_status,
    onboarding_progress,
    sort_onboarding_steps,
)

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

ORDER_NUMBER_PREFIX = "ILL"

ORDER_STATUS_LABELS: Mapping[OrderStatus, str] = {
    OrderStatus.ONBOARDING: "Onboarding",
    OrderStatus.IN_PROGRESS: "En cours",
    OrderStatus.COMPLETED: "Terminée",
    OrderStatus.CANCELLED: "Annulée",
}

PRODUCT_STATUS_LABELS: Mapping[ProductStatus, str] = {
    ProductStatus.PENDING: "En attente",
    ProductStatus.FILES_REQUESTED: "Fichiers demandés",
    ProductStatus.IN_PRODUCTION: "En production",
    ProductStatus.DELIVERED: "Livré",
    ProductStatus.REVISION_REQUESTED: "Révision demandée",
    ProductStatus.COMPLETED: "Terminé",
}


@dataclass(slots=True)
class ProductDetail:
    product: Product
    revisions: List[Revision] = field(default_factory=list)


@dataclass(slots=True)
class OrderDetail:
    """An order with everything the client and staff screens display."""

    order: Order
    products: List[ProductDetail]
    onboarding_steps: List[OnboardingStep]

    @property
    def progress(self) -> float:
        return onboarding_progress(self.onboarding_steps)


@dataclass(slots=True)
class OrderCreation:
    order: Order
    client: Profile
    products: List[Product]
    onboarding_steps: List[OnboardingStep]
    temporary_password: Optional[str] = None
    email: Optional[EmailMessage] = None


@dataclass(slots=True)
class ProductListing:
    products: List[Product]
    order_count: int


class PortalService:
    """Facade that exposes the agency use-cases to the web layer."""

    def __init__(
        self,
        auth: AuthService,
        *,
        template_repo: Optional[InMemoryRepository[ProductTemplate]] = None,
        option_repo: Optional[InMemoryRepository[CustomOption]] = None,
        order_repo: Optional[InMemoryRepository[Order]] = None,
        product_repo: Optional[InMemoryRepository[Product]] = None,
        onboarding_repo: Optional[InMemoryRepository[OnboardingStep]] = None,
        revision_repo: Optional[InMemoryRepository[Revision]] = None,
        notification_repo: Optional[InMemoryRepository[Notification]] = None,
        mailer: Optional[Mailer] = None,
        gateway: Optional[CheckoutGateway] = None,
    ) -> None:
        self.auth = auth
        self.settings = auth.settings
        self.templates = in_memory_default(template_repo, "template")
        self.custom_options = in_memory_default(option_repo, "option")
        self.orders = in_memory_default(order_repo, "order")
        self.products = in_memory_default(product_repo, "product")
        self.onboarding_steps = in_memory_default(onboarding_repo, "onboarding step")
        self.revisions = in_memory_default(revision_repo, "revision")
        self.notifications = in_memory_default(notification_repo, "notification")
        self.mailer = mailer or Mailer(self.settings)
        self.gateway = gateway

    @property
    def organizations(self) -> InMemoryRepository[Organization]:
        return self.auth.organizations

    @property
    def audit_logs(self) -> InMemoryRepository[AuditLogEntry]:
        return self.auth.audit_logs

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------
    def create_organization(
        self,
        actor: Principal,
        name: str,
        slug: str,
        *,
        parent_organization_id: Optional[str] = None,
        is_subcontracted: bool = False,
        custom_domain: str = "",
        logo_url: str = "",
        primary_color: str = "",
        secondary_color: str = "",
    ) -> Organization:
        require_role(actor, Role.ADMIN)
        slug = slug.strip().lower()
        if not name.strip():
            raise ValueError("An organization needs a name")
        if not SLUG_PATTERN.match(slug):
            raise ValueError(f"Invalid organization slug {slug!r}")
        if self.organizations.filter(lambda org: org.slug == slug):
            raise DuplicateRecordError(f"Organization slug {slug!r} is already used")
        if parent_organization_id is not None:
            self.organizations.get(parent_organization_id)
        organization = Organization(
            id=str(uuid4()),
            name=name.strip(),
            slug=slug,
            parent_organization_id=parent_organization_id,
            is_subcontracted=is_subcontracted,
            custom_domain=custom_domain,
            logo_url=logo_url,
            primary_color=primary_color,
            secondary_color=secondary_color,
        )
        self.organizations.add(organization.id, organization)
        self._audit(actor, "organization.created", "organization", organization.id,
                    new={"name": organization.name, "slug": slug})
        return organization

    def list_organizations(self, actor: Principal) -> List[Organization]:
        organizations = self.organizations.list()
        if not actor.is_admin:
            allowed = set(actor.organization_ids())
            organizations = [org for org in organizations if org.id in allowed]
        return sorted(organizations, key=lambda org: org.name.lower())

    # ------------------------------------------------------------------
    # Catalogue
    # ------------------------------------------------------------------
    def register_template(
        self,
        name: str,
        format: ProductFormat,
        price_cents: int,
        *,
        quantity: int = 1,
        description: str = "",
        actor: Optional[Principal] = None,
    ) -> ProductTemplate:
        """Add a product template; ``actor`` is None only for seeding."""
        if actor is not None:
            require_role(actor, Role.ADMIN)
        if price_cents < 0:
            raise ValueError("Template price cannot be negative")
        if quantity <= 0:
            raise ValueError("Template quantity must be positive")
        template = ProductTemplate(
            id=str(uuid4()),
            name=name,
            format=format,
            price_cents=price_cents,
            quantity=quantity,
            description=description,
        )
        self.templates.add(template.id, template)
        self._audit(actor, "template.created", "template", template.id,
                    new={"name": name, "format": format, "price_cents": price_cents})
        return template

    def register_option(
        self,
        name: str,
        *,
        description: str = "",
        price_adjustment_cents: int = 0,
        actor: Optional[Principal] = None,
    ) -> CustomOption:
        if actor is not None:
            require_role(actor, Role.ADMIN)
        if not name.strip():
            raise ValueError("An option needs a name")
        if price_adjustment_cents < 0:
            raise ValueError("An option cannot lower the price")
        option = CustomOption(
            id=str(uuid4()),
            name=name,
            description=description,
            price_adjustment_cents=price_adjustment_cents,
        )
        self.custom_options.add(option.id, option)
        self._audit(actor, "option.created", "option", option.id,
                    new={"name": name, "price_adjustment_cents": price_adjustment_cents})
        return option

    def list_templates(self, *, include_inactive: bool = False) -> List[ProductTemplate]:
        templates = self.templates.list()
        if not include_inactive:
            templates = [template for template in templates if template.active]
        return sorted(templates, key=lambda t: (t.format.value, t.quantity, t.name))

    def list_options(self) -> List[CustomOption]:
        return sorted(self.custom_options.list(), key=lambda option: option.name)

    def set_template_active(
        self, template_id: str, active: bool, *, actor: Optional[Principal] = None
    ) -> ProductTemplate:
        if actor is not None:
            require_role(actor, Role.ADMIN)
        template = self.templates.get(template_id)
        old = {"active": template.active}
        template.active = active
        self.templates.upsert(template.id, template)
        self._audit(actor, "template.updated", "template", template.id,
                    old=old, new={"active": active})
        return template

    # ------------------------------------------------------------------
    # Order creation
    # ------------------------------------------------------------------
    def _next_order_number(self) -> str:
        prefix = f"{ORDER_NUMBER_PREFIX}-{datetime.utcnow().year}-"
        sequence = 0
        for order in self.orders.filter(lambda o: o.order_number.startswith(prefix)):
            try:
                sequence = max(sequence, int(order.order_number[len(prefix):]))
            except ValueError:
                continue
        return f"{prefix}{sequence + 1:04d}"

    def _resolve_catalogue(
        self,
        template_ids: Sequence[str],
        option_ids: Sequence[str],
        custom_options: Sequence[OrderOption] = (),
    ) -> Tuple[List[ProductTemplate], List[OrderOption]]:
        if not template_ids:
            raise ValueError("An order needs at least one product template")
        templates: List[ProductTemplate] = []
        for template_id in template_ids:
            template = self.templates.get(template_id)
            if not template.active:
                raise ValueError(f"Template {template.name!r} is no longer available")
            templates.append(template)
        options = []
        for option_id in option_ids:
            option = self.custom_options.get(option_id)
            options.append(
                OrderOption(
                    name=option.name,
                    description=option.description,
                    price_adjustment_cents=option.price_adjustment_cents,
                )
            )
        for option in custom_options:
            if not option.name.strip():
                raise ValueError("A custom option needs a name")
            if option.price_adjustment_cents < 0:
                raise ValueError("A custom option cannot lower the price")
            options.append(option)
        return templates, options

    def _build_order(
        self,
        actor: Principal,
        client: Profile,
        *,
        title: str,
        templates: Sequence[ProductTemplate],
        options: Sequence[OrderOption],
        closer_id: Optional[str],
        description: str = "",
        organization_id: Optional[str] = None,
        is_subcontracted: bool = False,
        final_client_name: str = "",
        final_client_email: str = "",
        custom_branding: Optional[Dict[str, str]] = None,
    ) -> Tuple[Order, List[Product], List[OnboardingStep]]:
        if not title.strip():
            raise ValueError("An order needs a title")
        org_id = organization_id or self.auth.default_organization().id
        self.organizations.get(org_id)
        order_options = list(options)
        total = sum(template.price_cents for template in templates) + sum(
            option.price_adjustment_cents for option in order_options
        )
        order = Order(
            id=str(uuid4()),
            order_number=self._next_order_number(),
            client_id=client.id,
            client_name=client.full_name,
            organization_id=org_id,
            title=title.strip(),
            closer_id=closer_id,
            description=description,
            total_amount_cents=total,
            options=order_options,
            is_subcontracted=is_subcontracted,
            final_client_name=final_client_name,
            final_client_email=final_client_email,
            custom_branding=dict(custom_branding or {}),
        )
        self.orders.add(order.id, order)
        products = []
        for template in templates:
            product = Product(
                id=str(uuid4()),
                order_id=order.id,
                title=template.name,
                format=template.format,
                price_cents=template.price_cents,
                template_id=template.id,
                metadata={"quantity": template.quantity},
            )
            self.products.add(product.id, product)
            products.append(product)
        steps = []
        for step_type in ONBOARDING_SEQUENCE:
            step = OnboardingStep(id=str(uuid4()), order_id=order.id, step=step_type)
            self.onboarding_steps.add(step.id, step)
            steps.append(step)
        self._audit(
            actor,
            "order.created",
            "order",
            order.id,
            new={
                "order_number": order.order_number,
                "client_id": client.id,
                "total_amount_cents": total,
            },
            organization_id=org_id,
        )
        self._notify(
            client.id,
            org_id,
            NotificationType.ORDER_UPDATE,
            f"Nouvelle commande {order.order_number}",
            f"Votre commande « {order.title} » a été créée.",
            related=order,
        )
        logger.info(
            "Order %s created for client %s (%d products, total %d cents)",
            order.order_number,
            client.id,
            len(products),
            total,
        )
        return order, products, steps

    def create_client_and_order(
        self,
        actor: Principal,
        *,
        client_name: str,
        client_email: str,
        order_title: str,
        template_ids: Sequence[str],
        option_ids: Sequence[str] = (),
        custom_options: Sequence[OrderOption] = (),
        client_company: str = "",
        description: str = "",
        organization_id: Optional[str] = None,
        is_subcontracted: bool = False,
        final_client_name: str = "",
        final_client_email: str = "",
        custom_branding: Optional[Dict[str, str]] = None,
        send_onboarding_email: bool = False,
    ) -> OrderCreation:
        """Sales flow: find or create the client account, then the order."""
        require_role(actor, Role.CLOSER, Role.ADMIN)
        if not client_name.strip() or not client_email.strip():
            raise ValueError("Client name and email are required")
        if not is_valid_email(client_email):
            raise ValueError(f"Invalid email address: {client_email!r}")
        templates, options = self._resolve_catalogue(
            template_ids, option_ids, custom_options
        )
        client, password = self.auth.ensure_client(
            client_email, client_name, company=client_company, actor=actor
        )
        closer_id = actor.user_id if actor.has_role(Role.CLOSER) else None
        order, products, steps = self._build_order(
            actor,
            client,
            title=order_title,
            templates=templates,
            options=options,
            closer_id=closer_id,
            description=description,
            organization_id=organization_id,
            is_subcontracted=is_subcontracted,
            final_client_name=final_client_name,
            final_client_email=final_client_email,
            custom_branding=custom_branding,
        )
        creation = OrderCreation(
            order=order,
            client=client,
            products=products,
            onboarding_steps=steps,
            temporary_password=password,
        )
        if send_onboarding_email:
            creation.email = self._send_onboarding_email(order)
        return creation

    def create_order_for_client(
        self,
        actor: Principal,
        *,
        title: str,
        template_ids: Sequence[str],
        option_ids: Sequence[str] = (),
        custom_options: Sequence[OrderOption] = (),
        description: str = "",
    ) -> OrderCreation:
        """Self-service flow for a signed-in client."""
        require_role(actor, Role.CLIENT)
        templates, options = self._resolve_catalogue(
            template_ids, option_ids, custom_options
        )
        order, products, steps = self._build_order(
            actor,
            actor.profile,
            title=title,
            templates=templates,
            options=options,
            closer_id=None,
            description=description,
        )
        return OrderCreation(
            order=order, client=actor.profile, products=products, onboarding_steps=steps
        )

    # ------------------------------------------------------------------
    # Order queries and updates
    # ------------------------------------------------------------------
    def _products_of(self, order_id: str) -> List[Product]:
        return sorted(
            self.products.filter(lambda product: product.order_id == order_id),
            key=lambda product: (product.created_at, product.title),
        )

    def _steps_of(self, order_id: str) -> List[OnboardingStep]:
        return sort_onboarding_steps(
            self.onboarding_steps.filter(lambda step: step.order_id == order_id)
        )

    def _revisions_of(self, product_id: str) -> List[Revision]:
        return sorted(
            self.revisions.filter(lambda revision: revision.product_id == product_id),
            key=lambda revision: revision.requested_at,
            reverse=True,
        )

    def _order_for(self, actor: Principal, order_id: str) -> Tuple[Order, List[Product], List[Role]]:
        order = self.orders.get(order_id)
        products = self._products_of(order.id)
        roles = actor.roles_for(order, products)
        if not roles:
            raise PermissionDeniedError(f"Order {order_id!r} is not accessible")
        return order, products, roles

    def _detail(self, order: Order, products: Sequence[Product]) -> OrderDetail:
        return OrderDetail(
            order=order,
            products=[
                ProductDetail(product=product, revisions=self._revisions_of(product.id))
                for product in products
            ],
            onboarding_steps=self._steps_of(order.id),
        )

    def list_orders(
        self, actor: Principal, *, status: Optional[OrderStatus] = None
    ) -> List[OrderDetail]:
        role = actor.acting_role()
        details = []
        for order in self.orders.list():
            if status is not None and order.status != status:
                continue
            products = self._products_of(order.id)
            if order_visible_as(role, actor.user_id, order, products):
                details.append(self._detail(order, products))
        details.sort(
            key=lambda detail: (detail.order.created_at, detail.order.order_number),
            reverse=True,
        )
        return details

    def get_order(self, actor: Principal, order_id: str) -> OrderDetail:
        order, products, _ = self._order_for(actor, order_id)
        return self._detail(order, products)

    def update_order(self, actor: Principal, order_id: str, **changes: Any) -> Order:
        require_role(actor, Role.ADMIN)
        editable = {
            "title",
            "description",
            "final_client_name",
            "final_client_email",
            "is_subcontracted",
            "custom_branding",
            "frameio_project_id",
            "closer_id",
        }
        unknown = set(changes) - editable
        if unknown:
            raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        _reject_nulls(changes, nullable={"closer_id"})
        order = self.orders.get(order_id)
        closer_id = changes.get("closer_id")
        if closer_id is not None and Role.CLOSER not in self.auth.roles_for(closer_id):
            raise ValueError("Assigned closer must hold the closer role")
        old = {key: getattr(order, key) for key in changes}
        for key, value in changes.items():
            setattr(order, key, value)
        order.updated_at = datetime.utcnow()
        self.orders.upsert(order.id, order)
        self._audit(actor, "order.updated", "order", order.id, old=old, new=changes,
                    organization_id=order.organization_id)
        return order

    def _set_order_status(
        self, actor: Optional[Principal], order: Order, status: OrderStatus
    ) -> Order:
        previous = order.status
        order.status = status
        order.updated_at = datetime.utcnow()
        self.orders.upsert(order.id, order)
        self._audit(
            actor,
            "order.status_changed",
            "order",
            order.id,
            old={"status": previous.value},
            new={"status": status.value},
            organization_id=order.organization_id,
        )
        self._notify(
            order.client_id,
            order.organization_id,
            NotificationType.ORDER_UPDATE,
            f"Commande {order.order_number}",
            f"Statut : {ORDER_STATUS_LABELS[status]}",
            related=order,
        )
        logger.info(
            "Order %s moved from %s to %s", order.order_number, previous.value, status.value
        )
        return order

    def change_order_status(
        self, actor: Principal, order_id: str, status: OrderStatus
    ) -> Order:
        order = self.orders.get(order_id)
        ensure_order_transition(order.status, status, actor.roles)
        return self._set_order_status(actor, order, status)

    def cancel_order(self, actor: Principal, order_id: str) -> Order:
        return self.change_order_status(actor, order_id, OrderStatus.CANCELLED)

    def _advance_order(self, actor: Optional[Principal], order: Order) -> Order:
        target = next_order_status(
            order.status, self._steps_of(order.id), self._products_of(order.id)
        )
        if target is None:
            return order
        return self._set_order_status(actor, order, target)

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------
    def list_products(
        self, actor: Principal, *, status: Optional[ProductStatus] = None
    ) -> ProductListing:
        role = actor.acting_role()
        if role == Role.COLLABORATOR:
            products = self.products.filter(
                lambda product: product.collaborator_id == actor.user_id
            )
        else:
            visible_orders = {
                detail.order.id for detail in self.list_orders(actor)
            }
            products = self.products.filter(
                lambda product: product.order_id in visible_orders
            )
        if status is not None:
            products = [product for product in products if product.status == status]
        products.sort(key=lambda product: (product.next_action_date or date.max, product.title))
        return ProductListing(
            products=products,
            order_count=len({product.order_id for product in products}),
        )

    def get_product(self, actor: Principal, product_id: str) -> ProductDetail:
        product = self.products.get(product_id)
        self._product_roles(actor, product)
        return ProductDetail(product=product, revisions=self._revisions_of(product.id))

    def _product_roles(self, actor: Principal, product: Product) -> Tuple[Order, List[Role]]:
        order = self.orders.get(product.order_id)
        roles = actor.roles_for(order, [product])
        if not roles:
            raise PermissionDeniedError(f"Product {product.id!r} is not accessible")
        return order, roles

    def update_product(self, actor: Principal, product_id: str, **changes: Any) -> Product:
        """Edit product details.

        Admins can edit everything; the assigned collaborator can only edit
        the working links and the next action date.
        """
        product = self.products.get(product_id)
        order, roles = self._product_roles(actor, product)
        admin_fields = {
            "title",
            "format",
            "collaborator_id",
            "instructions",
            "responsible",
            "deliverable_link",
            "preparation_link",
            "file_deposit_link",
            "next_action_date",
        }
        collaborator_fields = {
            "deliverable_link",
            "preparation_link",
            "file_deposit_link",
            "next_action_date",
        }
        if Role.ADMIN in roles:
            allowed = admin_fields
        elif Role.COLLABORATOR in roles:
            allowed = collaborator_fields
        else:
            raise PermissionDeniedError("Only admins and the assigned collaborator can edit")
        unknown = set(changes) - allowed
        if unknown:
            raise PermissionDeniedError(
                f"Fields cannot be edited: {', '.join(sorted(unknown))}"
            )
        _reject_nulls(changes, nullable={"collaborator_id", "next_action_date"})
        collaborator_id = changes.get("collaborator_id")
        if collaborator_id is not None:
            if Role.COLLABORATOR not in self.auth.roles_for(collaborator_id):
                raise ValueError("Assigned user must hold the collaborator role")
        old = {key: getattr(product, key) for key in changes}
        for key, value in changes.items():
            setattr(product, key, value)
        product.updated_at = datetime.utcnow()
        self.products.upsert(product.id, product)
        self._audit(actor, "product.updated", "product", product.id, old=old, new=changes,
                    organization_id=order.organization_id)
        if collaborator_id is not None and old.get("collaborator_id") != collaborator_id:
            self._notify(
                collaborator_id,
                order.organization_id,
                NotificationType.PRODUCT_UPDATE,
                "Nouveau produit assigné",
                f"« {product.title} » ({order.order_number}) vous a été assigné.",
                related=product,
            )
        return product

    def change_product_status(
        self,
        actor: Principal,
        product_id: str,
        status: ProductStatus,
        *,
        deliverable_link: Optional[str] = None,
    ) -> Product:
        product = self.products.get(product_id)
        order, roles = self._product_roles(actor, product)
        ensure_product_transition(
            product, status, roles, order.status, deliverable_link=deliverable_link
        )
        previous = product.status
        if deliverable_link is not None:
            product.deliverable_link = deliverable_link.strip()
        product.status = status
        product.updated_at = datetime.utcnow()
        self.products.upsert(product.id, product)
        self._follow_revisions(product)
        self._audit(
            actor,
            "product.status_changed",
            "product",
            product.id,
            old={"status": previous.value},
            new={"status": status.value},
            organization_id=order.organization_id,
        )
        self._notify(
            order.client_id,
            order.organization_id,
            NotificationType.PRODUCT_UPDATE,
            product.title,
            f"Statut : {PRODUCT_STATUS_LABELS[status]}",
            related=product,
        )
        self._send_product_email(order, product)
        logger.info(
            "Product %s moved from %s to %s", product.id, previous.value, status.value
        )
        self._advance_order(actor, order)
        return product

    def request_files(
        self, actor: Principal, product_id: str, *, deposit_link: str = ""
    ) -> Product:
        product = self.products.get(product_id)
        order, roles = self._product_roles(actor, product)
        ensure_product_transition(product, ProductStatus.FILES_REQUESTED, roles, order.status)
        if deposit_link.strip():
            product.file_deposit_link = deposit_link.strip()
            self.products.upsert(product.id, product)
        return self.change_product_status(actor, product_id, ProductStatus.FILES_REQUESTED)

    def start_production(self, actor: Principal, product_id: str) -> Product:
        return self.change_product_status(actor, product_id, ProductStatus.IN_PRODUCTION)

    def deliver_product(
        self, actor: Principal, product_id: str, deliverable_link: str
    ) -> Product:
        return self.change_product_status(
            actor, product_id, ProductStatus.DELIVERED, deliverable_link=deliverable_link
        )

    def accept_delivery(self, actor: Principal, product_id: str) -> Product:
        return self.change_product_status(actor, product_id, ProductStatus.COMPLETED)

    def _send_product_email(self, order: Order, product: Product) -> Optional[EmailMessage]:
        if product.status not in (ProductStatus.FILES_REQUESTED, ProductStatus.DELIVERED):
            return None
        client = self.auth.profiles.get(order.client_id)
        kind = (
            EmailKind.FILES
            if product.status == ProductStatus.FILES_REQUESTED
            else EmailKind.DELIVERABLE
        )
        return self.mailer.send(
            kind,
            client.email,
            {
                "client_name": client.full_name,
                "order_number": order.order_number,
                "product_title": product.title,
                "deposit_link": product.file_deposit_link,
                "instructions": product.instructions,
                "deliverable_link": product.deliverable_link,
            },
            related_id=product.id,
        )

    # ------------------------------------------------------------------
    # Revisions
    # ------------------------------------------------------------------
    def request_revision(
        self, actor: Principal, product_id: str, description: str
    ) -> Revision:
        description = description.strip()
        if not description:
            raise ValueError("A revision request needs a description")
        product = self.products.get(product_id)
        order, roles = self._product_roles(actor, product)
        ensure_product_transition(
            product, ProductStatus.REVISION_REQUESTED, roles, order.status
        )
        revision = Revision(
            id=str(uuid4()),
            product_id=product.id,
            description=description,
            requested_by=actor.user_id,
        )
        self.revisions.add(revision.id, revision)
        self._audit(actor, "revision.requested", "revision", revision.id,
                    new={"product_id": product.id, "description": description},
                    organization_id=order.organization_id)
        self.change_product_status(actor, product.id, ProductStatus.REVISION_REQUESTED)
        if product.collaborator_id:
            collaborator = self.auth.profiles.get(product.collaborator_id)
            self._notify(
                collaborator.id,
                order.organization_id,
                NotificationType.REVISION_REQUEST,
                f"Révision demandée : {product.title}",
                description,
                related=product,
            )
            self.mailer.send(
                EmailKind.REVISION,
                collaborator.email,
                {
                    "collaborator_name": collaborator.full_name,
                    "client_name": order.client_name,
                    "order_number": order.order_number,
                    "product_title": product.title,
                    "description": description,
                },
                related_id=revision.id,
            )
        return revision

    def list_revisions(self, actor: Principal, product_id: str) -> List[Revision]:
        return self.get_product(actor, product_id).revisions

    def _follow_revisions(self, product: Product) -> None:
        target = REVISION_FOLLOWS_PRODUCT.get(product.status)
        if target is None:
            return
        for revision in self._revisions_of(product.id):
            if not is_valid_revision_transition(revision.status, target):
                continue
            revision.status = target
            if target == RevisionStatus.COMPLETED:
                revision.completed_at = datetime.utcnow()
            self.revisions.upsert(revision.id, revision)

    # ------------------------------------------------------------------
    # Onboarding
    # ------------------------------------------------------------------
    def get_onboarding(self, actor: Principal, order_id: str) -> Tuple[List[OnboardingStep], float]:
        order, _, _ = self._order_for(actor, order_id)
        steps = self._steps_of(order.id)
        return steps, onboarding_progress(steps)

    def _step(self, order_id: str, step_type: OnboardingStepType) -> OnboardingStep:
        step = self.onboarding_steps.first(
            lambda item: item.order_id == order_id and item.step == step_type
        )
        if step is None:
            raise RecordNotFoundError(
                "onboarding step",
                step_type.value,
                f"Onboarding step {step_type.value!r} not found for order {order_id!r}",
            )
        return step

    def _apply_step(
        self,
        actor: Optional[Principal],
        order: Order,
        step: OnboardingStep,
        completed: bool,
        data: Optional[Dict[str, Any]],
    ) -> OnboardingStep:
        step.completed = completed
        step.completed_at = datetime.utcnow() if completed else None
        if data:
            step.data.update(data)
        step.updated_at = datetime.utcnow()
        self.onboarding_steps.upsert(step.id, step)
        self._audit(
            actor,
            "onboarding.step_completed" if completed else "onboarding.step_reopened",
            "onboarding_step",
            step.id,
            new={"step": step.step.value, "completed": completed},
            organization_id=order.organization_id,
        )
        self._advance_order(actor, order)
        return step

    def complete_onboarding_step(
        self,
        actor: Principal,
        order_id: str,
        step_type: OnboardingStepType,
        *,
        completed: bool = True,
        data: Optional[Dict[str, Any]] = None,
    ) -> OnboardingStep:
        order, _, roles = self._order_for(actor, order_id)
        step = self._step(order.id, step_type)
        ensure_onboarding_update(step_type, completed, roles, order.status)
        if step.completed == completed and not data:
            return step
        return self._apply_step(actor, order, step, completed, data)

    def reset_onboarding_step(
        self, actor: Principal, order_id: str, step_type: OnboardingStepType
    ) -> OnboardingStep:
        return self.complete_onboarding_step(actor, order_id, step_type, completed=False)

    def confirm_payment(self, order_id: str, *, session_id: Optional[str] = None) -> OnboardingStep:
        """Record a payment confirmed by the payment provider."""
        order = self.orders.get(order_id)
        step = self._step(order.id, OnboardingStepType.PAYMENT_MADE)
        if step.completed:
            logger.info("Payment for order %s already recorded", order.order_number)
            return step
        ensure_onboarding_update(
            OnboardingStepType.PAYMENT_MADE, True, (), order.status, system=True
        )
        if order.status != OrderStatus.ONBOARDING:
            logger.warning(
                "Payment for order %s confirmed while the order is %s",
                order.order_number,
                order.status.value,
            )
        data = {"checkout_session_id": session_id} if session_id else None
        step = self._apply_step(None, order, step, True, data)
        recipients = [order.client_id] + ([order.closer_id] if order.closer_id else [])
        for user_id in recipients:
            self._notify(
                user_id,
                order.organization_id,
                NotificationType.PAYMENT,
                f"Paiement reçu - {order.order_number}",
                "Le paiement de la commande a été confirmé.",
                related=order,
            )
        logger.info("Payment confirmed for order %s", order.order_number)
        return step

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------
    def start_checkout(self, actor: Principal, order_id: str) -> CheckoutSession:
        order, products, roles = self._order_for(actor, order_id)
        if not {Role.CLIENT, Role.CLOSER, Role.ADMIN} & set(roles):
            raise PermissionDeniedError("Only the client, closer or an admin can pay")
        if order.status != OrderStatus.ONBOARDING:
            raise InvalidTransitionError(
                "order", order.status.value, "payment", reason="order is not in onboarding"
            )
        if self._step(order.id, OnboardingStepType.PAYMENT_MADE).completed:
            raise ValueError(f"Order {order.order_number} is already paid")
        if self.gateway is None:
            raise PaymentError("No payment gateway configured")
        client = self.auth.profiles.get(order.client_id)
        line_items = [
            LineItem(
                name=product.title or "Product",
                description=product.format.value,
                unit_amount_cents=product.price_cents,
            )
            for product in products
        ] + [
            LineItem(
                name=option.name or "Custom Option",
                description=option.description or "Custom service",
                unit_amount_cents=option.price_adjustment_cents,
            )
            for option in order.options
            if option.price_adjustment_cents > 0
        ]
        session = self.gateway.create_checkout_session(
            CheckoutRequest(
                order_id=order.id,
                client_id=order.client_id,
                order_name=order.title,
                customer_email=client.email,
                line_items=line_items,
                return_url=f"{self.settings.PUBLIC_BASE_URL}/client",
            )
        )
        order.stripe_checkout_session_id = session.id
        order.stripe_payment_link = session.url
        order.updated_at = datetime.utcnow()
        self.orders.upsert(order.id, order)
        self._audit(actor, "payment.checkout_started", "order", order.id,
                    new={"session_id": session.id}, organization_id=order.organization_id)
        return session

    def handle_payment_event(self, event: PaymentEvent) -> bool:
        """Apply a verified provider event; returns whether it was used."""
        if event.type != "checkout.session.completed" or not event.order_id:
            logger.info("Ignoring payment event %s", event.type)
            return False
        if event.payload.get("payment_status", "paid") != "paid":
            logger.info("Checkout %s completed without payment yet", event.session_id)
            return False
        self.confirm_payment(event.order_id, session_id=event.session_id)
        return True

    # ------------------------------------------------------------------
    # Emails
    # ------------------------------------------------------------------
    def _send_onboarding_email(self, order: Order) -> EmailMessage:
        client = self.auth.profiles.get(order.client_id)
        return self.mailer.send(
            EmailKind.ONBOARDING,
            client.email,
            {
                "client_name": client.full_name,
                "order": order,
                "order_number": order.order_number,
                "products": self._products_of(order.id),
            },
            related_id=order.id,
        )

    def send_onboarding_email(self, actor: Principal, order_id: str) -> EmailMessage:
        order, _, roles = self._order_for(actor, order_id)
        if not {Role.CLOSER, Role.ADMIN} & set(roles):
            raise PermissionDeniedError("Only the closer or an admin can send this email")
        if order.status != OrderStatus.ONBOARDING:
            raise ValueError(f"Order {order.order_number} is not in onboarding")
        message = self._send_onboarding_email(order)
        self._audit(actor, "email.onboarding_sent", "order", order.id,
                    new={"recipient": message.recipient},
                    organization_id=order.organization_id)
        return message

    def send_test_email(self, actor: Principal, kind: EmailKind, recipient: str) -> EmailMessage:
        require_role(actor, Role.ADMIN)
        if not recipient.strip():
            raise ValueError("A recipient address is required")
        sample_order = Order(
            id="exemple",
            order_number=f"{ORDER_NUMBER_PREFIX}-EXEMPLE",
            client_id=actor.user_id,
            client_name="Client Exemple",
            organization_id="",
            title="Commande exemple",
            total_amount_cents=90000,
        )
        sample_product = Product(
            id="exemple",
            order_id=sample_order.id,
            title="3 Vidéos Podcast",
            format=ProductFormat.PODCAST,
            price_cents=90000,
        )
        context = {
            "client_name": "Client Exemple",
            "collaborator_name": "Collaborateur Exemple",
            "order": sample_order,
            "order_number": sample_order.order_number,
            "products": [sample_product],
            "product_title": sample_product.title,
            "deposit_link": f"{self.settings.PUBLIC_BASE_URL}/depot/exemple",
            "deliverable_link": f"{self.settings.PUBLIC_BASE_URL}/livrable/exemple",
            "description": "Exemple de demande de modification.",
            "instructions": "",
        }
        return self.mailer.send(kind, recipient, context)

    def list_emails(self, actor: Principal, *, kind: Optional[EmailKind] = None) -> List[EmailMessage]:
        require_role(actor, Role.ADMIN)
        messages = self.mailer.outbox.list()
        if kind is not None:
            messages = [message for message in messages if message.kind == kind]
        return sorted(messages, key=lambda message: message.created_at, reverse=True)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def _notify(
        self,
        user_id: str,
        organization_id: str,
        type: NotificationType,
        title: str,
        message: str = "",
        *,
        related: Any = None,
    ) -> Notification:
        notification = Notification(
            id=str(uuid4()),
            user_id=user_id,
            organization_id=organization_id,
            type=type,
            title=title,
            message=message,
            related_id=getattr(related, "id", None),
            related_type=_type_name(related),
        )
        self.notifications.add(notification.id, notification)
        return notification

    def list_notifications(
        self, actor: Principal, *, unread_only: bool = False
    ) -> List[Notification]:
        notifications = self.notifications.filter(
            lambda item: item.user_id == actor.user_id and not (unread_only and item.read)
        )
        return sorted(notifications, key=lambda item: item.created_at, reverse=True)

    def unread_count(self, actor: Principal) -> int:
        return len(self.list_notifications(actor, unread_only=True))

    def mark_notification_read(self, actor: Principal, notification_id: str) -> Notification:
        notification = self.notifications.get(notification_id)
        if notification.user_id != actor.user_id:
            raise PermissionDeniedError("Notification belongs to another user")
        if not notification.read:
            notification.read = True
            notification.read_at = datetime.utcnow()
            self.notifications.upsert(notification.id, notification)
        return notification

    def mark_all_read(self, actor: Principal) -> int:
        unread = self.list_notifications(actor, unread_only=True)
        for notification in unread:
            self.mark_notification_read(actor, notification.id)
        return len(unread)

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------
    def _audit(
        self,
        actor: Optional[Principal],
        action: str,
        entity_type: str,
        entity_id: Optional[str],
        *,
        old: Optional[Dict[str, Any]] = None,
        new: Optional[Dict[str, Any]] = None,
        organization_id: Optional[str] = None,
    ) -> AuditLogEntry:
        return self.auth.record_audit(
            actor,
            action,
            entity_type,
            entity_id,
            old=old,
            new=new,
            organization_id=organization_id,
        )

    def list_audit_log(
        self,
        actor: Principal,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        require_role(actor, Role.ADMIN)
        entries = self.audit_logs.filter(
            lambda entry: (entity_type is None or entry.entity_type == entity_type)
            and (entity_id is None or entry.entity_id == entity_id)
        )
        entries.sort(key=lambda entry: entry.created_at, reverse=True)
        return entries[:limit]

    # ------------------------------------------------------------------
    # Dashboards
    # ------------------------------------------------------------------
    def admin_stats(self, actor: Principal) -> Dict[str, Any]:
        require_role(actor, Role.ADMIN)
        orders = self.orders.list()
        products = self.products.list()
        role_counts: Counter = Counter()
        for profile in self.auth.profiles.list():
            for role in self.auth.roles_for(profile.id):
                role_counts[role.value] += 1
        return {
            "total_users": len(self.auth.profiles),
            "total_orders": len(orders),
            "total_products": len(products),
            "users_by_role": _counts(role_counts, (role.value for role in Role)),
            "orders_by_status": _counts(
                Counter(order.status.value for order in orders),
                (status.value for status in OrderStatus),
            ),
            "products_by_status": _counts(
                Counter(product.status.value for product in products),
                (status.value for status in ProductStatus),
            ),
            "revenue_cents": sum(
                order.total_amount_cents
                for order in orders
                if order.status != OrderStatus.CANCELLED
            ),
        }

    def collaborator_stats(self, actor: Principal) -> Dict[str, int]:
        require_role(actor, Role.COLLABORATOR)
        assigned = self.products.filter(
            lambda product: product.collaborator_id == actor.user_id
        )
        statuses = Counter(product.status for product in assigned)
        return {
            "in_production": statuses[ProductStatus.IN_PRODUCTION],
            "files_requested": statuses[ProductStatus.FILES_REQUESTED],
            "delivered": statuses[ProductStatus.DELIVERED],
            "revision_requested": statuses[ProductStatus.REVISION_REQUESTED],
            "total": len(assigned),
        }

    def client_summary(self, actor: Principal) -> Dict[str, Any]:
        require_role(actor, Role.CLIENT)
        orders = [
            order for order in self.orders.list() if order.client_id == actor.user_id
        ]
        onboarding = []
        awaiting_review = 0
        for order in orders:
            if order.status == OrderStatus.ONBOARDING:
                onboarding.append(
                    {
                        "order_id": order.id,
                        "order_number": order.order_number,
                        "progress": onboarding_progress(self._steps_of(order.id)),
                    }
                )
            awaiting_review += sum(
                1
                for product in self._products_of(order.id)
                if product.status == ProductStatus.DELIVERED
            )
        return {
            "has_orders": bool(orders),
            "orders_by_status": _counts(
                Counter(order.status.value for order in orders),
                (status.value for status in OrderStatus),
            ),
            "onboarding": onboarding,
            "awaiting_review": awaiting_review,
            "unread_notifications": self.unread_count(actor),
        }


def _type_name(related: Any) -> Optional[str]:
    if related is None:
        return None
    return type(related).__name__.lower()


def _reject_nulls(changes: Mapping[str, Any], *, nullable: Iterable[str]) -> None:
    cleared = sorted(key for key, value in changes.items() if value is None)
    invalid = [key for key in cleared if key not in set(nullable)]
    if invalid:
        raise ValueError(f"Fields cannot be empty: {', '.join(invalid)}")


def _counts(counter: Mapping[str, int], keys: Iterable[str]) -> Dict[str, int]:
    return {key: counter.get(key, 0) for key in keys}


__all__ = [
    "PortalService",
    "OrderDetail",
    "ProductDetail",
    "OrderCreation",
    "ProductListing",
    "ORDER_STATUS_LABELS",
    "PRODUCT_STATUS_LABELS",
]
