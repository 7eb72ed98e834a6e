"""FastAPI-based JSON interface for the illustre! portal."""

from __future__ import annotations

import logging
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from ..auth import AuthenticationError, AuthService
from ..config import Settings, get_settings
from ..domain import EmailKind, OnboardingStepType, OrderStatus, ProductStatus, Role
from ..mailer import Mailer, build_mailer
from ..payments import CheckoutGateway, PaymentError, StripeCheckoutGateway
from ..permissions import (
    ROLE_OPTIONS,
    PermissionDeniedError,
    Principal,
    RoleSelectionRequiredError,
    require_role,
)
from ..repository import DuplicateRecordError, RecordNotFoundError
from ..seed import ensure_demo_data
from ..services import PortalService
from ..storage import PortalDatabase
from ..workflow import InvalidTransitionError
from . import schemas

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (AuthenticationError, 401),
    (PermissionDeniedError, 403),
    (RecordNotFoundError, 404),
    (DuplicateRecordError, 409),
    (RoleSelectionRequiredError, 409),
    (InvalidTransitionError, 422),
    (PaymentError, 502),
    (ValueError, 422),
)


def get_service(request: Request) -> PortalService:
    return request.app.state.portal_service


def current_principal(request: Request) -> Principal:
    """Resolve the Bearer token of the request into a principal."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise AuthenticationError("Not authenticated")
    service: PortalService = request.app.state.portal_service
    return service.auth.authenticate(auth_header.split(" ", 1)[1].strip())


def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[PortalDatabase] = None,
    gateway: Optional[CheckoutGateway] = None,
    mailer: Optional[Mailer] = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    owns_database = database is None
    if database is None:
        database = PortalDatabase(settings.DATABASE_PATH)
    auth = AuthService(
        settings,
        profile_repo=database.profiles,
        role_repo=database.role_assignments,
        organization_repo=database.organizations,
        audit_repo=database.audit_logs,
    )
    service = PortalService(
        auth,
        template_repo=database.templates,
        option_repo=database.custom_options,
        order_repo=database.orders,
        product_repo=database.products,
        onboarding_repo=database.onboarding_steps,
        revision_repo=database.revisions,
        notification_repo=database.notifications,
        mailer=mailer or build_mailer(settings, database.emails),
        gateway=gateway or StripeCheckoutGateway(settings),
    )
    if settings.SEED_DEMO_DATA:
        ensure_demo_data(service)

    app = FastAPI(title="illustre! portal")
    app.state.portal_service = service
    app.state.database = database

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - framework hook
        if owns_database:
            database.close()

    for error_class, status_code in ERROR_STATUS:
        app.add_exception_handler(error_class, _error_handler(status_code))

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/api/auth/sign-up", status_code=201)
    async def sign_up(body: schemas.SignUpRequest, service: PortalService = Depends(get_service)):
        profile = service.auth.sign_up(
            body.email, body.password, full_name=body.full_name, company=body.company
        )
        return schemas.profile_out(profile, service.auth.roles_for(profile.id))

    @app.post("/api/auth/sign-in")
    async def sign_in(body: schemas.SignInRequest, service: PortalService = Depends(get_service)):
        return schemas.session_out(service.auth.sign_in(body.email, body.password))

    @app.get("/api/auth/me")
    async def me(principal: Principal = Depends(current_principal)):
        return schemas.principal_out(principal)

    @app.post("/api/auth/role")
    async def select_role(
        body: schemas.RoleSelectionRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        session = service.auth.select_role(principal, body.role, remember=body.remember)
        return schemas.session_out(session)

    @app.delete("/api/auth/role-preference")
    async def clear_role_preference(
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        profile = service.auth.clear_role_preference(principal)
        return schemas.profile_out(profile)

    @app.post("/api/auth/password")
    async def reset_password(
        body: schemas.PasswordResetRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        profile = service.auth.reset_password(principal, body.new_password)
        return schemas.profile_out(profile)

    @app.get("/api/roles")
    async def role_options():
        return [
            {
                "role": option.role.value,
                "label": option.label,
                "description": option.description,
                "route": option.route,
            }
            for option in ROLE_OPTIONS.values()
        ]

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    @app.get("/api/users")
    async def list_users(
        role: Optional[Role] = None,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return [
            schemas.profile_out(profile, service.auth.roles_for(profile.id))
            for profile in service.auth.list_profiles(principal, role)
        ]

    @app.post("/api/users", status_code=201)
    async def create_user(
        body: schemas.UserCreateRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        profile, password = service.auth.create_user(
            principal,
            body.email,
            password=body.password,
            full_name=body.full_name,
            company=body.company,
            phone=body.phone,
            roles=body.roles,
            organization_id=body.organization_id,
        )
        return {
            "profile": schemas.profile_out(profile, service.auth.roles_for(profile.id)),
            "initial_password": password,
        }

    @app.patch("/api/users/{user_id}")
    async def update_profile(
        user_id: str,
        body: schemas.ProfileUpdateRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        profile = service.auth.update_profile(
            principal, user_id, **body.model_dump(exclude_unset=True)
        )
        return schemas.profile_out(profile, service.auth.roles_for(profile.id))

    @app.put("/api/users/{user_id}/roles")
    async def update_roles(
        user_id: str,
        body: schemas.RolesUpdateRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        roles = service.auth.update_roles(
            principal, user_id, body.roles, organization_id=body.organization_id
        )
        return {"user_id": user_id, "roles": [role.value for role in roles]}

    @app.put("/api/users/{user_id}/status")
    async def set_status(
        user_id: str,
        body: schemas.StatusUpdateRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        profile = service.auth.set_status(principal, user_id, body.status)
        return schemas.profile_out(profile)

    # ------------------------------------------------------------------
    # Organizations and catalogue
    # ------------------------------------------------------------------
    @app.get("/api/organizations")
    async def list_organizations(
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.list_organizations(principal)

    @app.post("/api/organizations", status_code=201)
    async def create_organization(
        body: schemas.OrganizationCreateRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        data = body.model_dump()
        return service.create_organization(
            principal, data.pop("name"), data.pop("slug"), **data
        )

    @app.get("/api/templates")
    async def list_templates(
        include_inactive: bool = False,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        if include_inactive:
            require_role(principal, Role.ADMIN)
        return service.list_templates(include_inactive=include_inactive)

    @app.post("/api/templates", status_code=201)
    async def create_template(
        body: schemas.TemplateCreateRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.register_template(
            body.name,
            body.format,
            body.price_cents,
            quantity=body.quantity,
            description=body.description,
            actor=principal,
        )

    @app.patch("/api/templates/{template_id}")
    async def set_template_active(
        template_id: str,
        body: schemas.TemplateActiveRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.set_template_active(template_id, body.active, actor=principal)

    @app.get("/api/options")
    async def list_options(
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.list_options()

    @app.post("/api/options", status_code=201)
    async def create_option(
        body: schemas.OptionCreateRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.register_option(
            body.name,
            description=body.description,
            price_adjustment_cents=body.price_adjustment_cents,
            actor=principal,
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    @app.get("/api/orders")
    async def list_orders(
        status: Optional[OrderStatus] = None,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return [
            schemas.order_detail_out(detail)
            for detail in service.list_orders(principal, status=status)
        ]

    @app.post("/api/orders", status_code=201)
    async def create_order(
        body: schemas.OrderCreateRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        creation = service.create_order_for_client(
            principal,
            title=body.title,
            template_ids=body.template_ids,
            option_ids=body.option_ids,
            custom_options=[option.to_option() for option in body.custom_options],
            description=body.description,
        )
        return schemas.order_creation_out(creation)

    @app.post("/api/orders/with-client", status_code=201)
    async def create_client_and_order(
        body: schemas.ClientOrderCreateRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        creation = service.create_client_and_order(
            principal,
            client_name=body.client_name,
            client_email=body.client_email,
            client_company=body.client_company,
            order_title=body.order_title,
            template_ids=body.template_ids,
            option_ids=body.option_ids,
            custom_options=[option.to_option() for option in body.custom_options],
            description=body.description,
            organization_id=body.organization_id,
            is_subcontracted=body.is_subcontracted,
            final_client_name=body.final_client_name,
            final_client_email=body.final_client_email,
            custom_branding=body.custom_branding,
            send_onboarding_email=body.send_onboarding_email,
        )
        return schemas.order_creation_out(creation)

    @app.get("/api/orders/{order_id}")
    async def get_order(
        order_id: str,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return schemas.order_detail_out(service.get_order(principal, order_id))

    @app.patch("/api/orders/{order_id}")
    async def update_order(
        order_id: str,
        body: schemas.OrderUpdateRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        service.update_order(principal, order_id, **body.model_dump(exclude_unset=True))
        return schemas.order_detail_out(service.get_order(principal, order_id))

    @app.post("/api/orders/{order_id}/status")
    async def change_order_status(
        order_id: str,
        body: schemas.OrderStatusRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.change_order_status(principal, order_id, body.status)

    @app.post("/api/orders/{order_id}/cancel")
    async def cancel_order(
        order_id: str,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.cancel_order(principal, order_id)

    @app.post("/api/orders/{order_id}/onboarding-email")
    async def send_onboarding_email(
        order_id: str,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return schemas.email_out(service.send_onboarding_email(principal, order_id))

    # ------------------------------------------------------------------
    # Onboarding and payments
    # ------------------------------------------------------------------
    @app.get("/api/orders/{order_id}/onboarding")
    async def get_onboarding(
        order_id: str,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        steps, _ = service.get_onboarding(principal, order_id)
        return schemas.steps_out(steps)

    @app.post("/api/orders/{order_id}/onboarding/{step}")
    async def update_onboarding_step(
        order_id: str,
        step: OnboardingStepType,
        body: schemas.OnboardingStepRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        service.complete_onboarding_step(
            principal, order_id, step, completed=body.completed, data=body.data
        )
        steps, _ = service.get_onboarding(principal, order_id)
        return schemas.steps_out(steps)

    @app.delete("/api/orders/{order_id}/onboarding/{step}")
    async def reset_onboarding_step(
        order_id: str,
        step: OnboardingStepType,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        service.reset_onboarding_step(principal, order_id, step)
        steps, _ = service.get_onboarding(principal, order_id)
        return schemas.steps_out(steps)

    @app.post("/api/orders/{order_id}/checkout")
    async def start_checkout(
        order_id: str,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        session = service.start_checkout(principal, order_id)
        return {"session_id": session.id, "url": session.url}

    @app.post("/api/payments/webhook")
    async def payment_webhook(request: Request, service: PortalService = Depends(get_service)):
        payload = await request.body()
        signature = request.headers.get("stripe-signature", "")
        if service.gateway is None:
            raise PaymentError("No payment gateway configured")
        try:
            event = service.gateway.parse_webhook(payload, signature)
        except PaymentError as exc:
            logger.warning("Rejected payment webhook: %s", exc)
            return JSONResponse(status_code=400, content={"detail": str(exc)})
        handled = service.handle_payment_event(event)
        return {"received": True, "handled": handled}

    # ------------------------------------------------------------------
    # Products and revisions
    # ------------------------------------------------------------------
    @app.get("/api/products")
    async def list_products(
        status: Optional[ProductStatus] = None,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return schemas.product_listing_out(service.list_products(principal, status=status))

    @app.get("/api/products/{product_id}")
    async def get_product(
        product_id: str,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return schemas.product_detail_out(service.get_product(principal, product_id))

    @app.patch("/api/products/{product_id}")
    async def update_product(
        product_id: str,
        body: schemas.ProductUpdateRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.update_product(
            principal, product_id, **body.model_dump(exclude_unset=True)
        )

    @app.post("/api/products/{product_id}/status")
    async def change_product_status(
        product_id: str,
        body: schemas.ProductStatusRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.change_product_status(
            principal, product_id, body.status, deliverable_link=body.deliverable_link
        )

    @app.post("/api/products/{product_id}/request-files")
    async def request_files(
        product_id: str,
        body: schemas.FilesRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.request_files(principal, product_id, deposit_link=body.deposit_link)

    @app.post("/api/products/{product_id}/start")
    async def start_production(
        product_id: str,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.start_production(principal, product_id)

    @app.post("/api/products/{product_id}/deliver")
    async def deliver_product(
        product_id: str,
        body: schemas.DeliverRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.deliver_product(principal, product_id, body.deliverable_link)

    @app.post("/api/products/{product_id}/accept")
    async def accept_delivery(
        product_id: str,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.accept_delivery(principal, product_id)

    @app.get("/api/products/{product_id}/revisions")
    async def list_revisions(
        product_id: str,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.list_revisions(principal, product_id)

    @app.post("/api/products/{product_id}/revisions", status_code=201)
    async def request_revision(
        product_id: str,
        body: schemas.RevisionRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.request_revision(principal, product_id, body.description)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    @app.get("/api/notifications")
    async def list_notifications(
        unread_only: bool = False,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.list_notifications(principal, unread_only=unread_only)

    @app.get("/api/notifications/unread-count")
    async def unread_count(
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return {"unread": service.unread_count(principal)}

    @app.post("/api/notifications/read-all")
    async def mark_all_read(
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return {"marked": service.mark_all_read(principal)}

    @app.post("/api/notifications/{notification_id}/read")
    async def mark_notification_read(
        notification_id: str,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.mark_notification_read(principal, notification_id)

    # ------------------------------------------------------------------
    # Emails, audit log and dashboards
    # ------------------------------------------------------------------
    @app.get("/api/emails")
    async def list_emails(
        kind: Optional[EmailKind] = None,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return [schemas.email_out(message) for message in service.list_emails(principal, kind=kind)]

    @app.post("/api/emails/test", status_code=201)
    async def send_test_email(
        body: schemas.EmailTestRequest,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        message = service.send_test_email(principal, body.kind, body.recipient)
        return schemas.email_out(message, include_html=True)

    @app.get("/api/audit-log")
    async def audit_log(
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100,
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.list_audit_log(
            principal, entity_type=entity_type, entity_id=entity_id, limit=limit
        )

    @app.get("/api/stats/admin")
    async def admin_stats(
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.admin_stats(principal)

    @app.get("/api/stats/collaborator")
    async def collaborator_stats(
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.collaborator_stats(principal)

    @app.get("/api/stats/client")
    async def client_summary(
        principal: Principal = Depends(current_principal),
        service: PortalService = Depends(get_service),
    ):
        return service.client_summary(principal)

    return app


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    return handler


def main() -> None:
    settings = get_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()


__all__ = ["create_app", "current_principal", "main"]
