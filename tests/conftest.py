"""
Pytest configuration and shared fixtures for the portal tests.

Everything runs in memory: repositories are ``InMemoryRepository`` instances
or an in-memory SQLite database, and Stripe is replaced by ``FakeGateway``.
"""
from __future__ import annotations

import json
from typing import List

import pytest
from fastapi.testclient import TestClient

from illustre.auth import AuthService
from illustre.config import Settings
from illustre.domain import OnboardingStepType
from illustre.payments import (
    CheckoutRequest,
    CheckoutSession,
    PaymentError,
    PaymentEvent,
)
from illustre.seed import ensure_demo_data
from illustre.services import OrderCreation, PortalService
from illustre.storage import PortalDatabase
from illustre.web.app import create_app

DEMO_PASSWORD = "Illustre2024!"
CLIENT_EMAIL = "marie.dubois@email.com"
CLOSER_EMAIL = "jean.martin@email.com"
COLLABORATOR_EMAIL = "sophie.leroy@email.com"
ADMIN_EMAIL = "pierre.durand@email.com"
MULTI_ROLE_EMAIL = "alice.bernard@email.com"

WEBHOOK_SIGNATURE = "valid-signature"


class FakeGateway:
    """Checkout gateway that records requests instead of calling Stripe."""

    def __init__(self) -> None:
        self.requests: List[CheckoutRequest] = []

    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        self.requests.append(request)
        session_id = f"cs_test_{len(self.requests)}"
        return CheckoutSession(id=session_id, url=f"https://checkout.test/{session_id}")

    def parse_webhook(self, payload: bytes, signature: str) -> PaymentEvent:
        if signature != WEBHOOK_SIGNATURE:
            raise PaymentError("Invalid Stripe webhook")
        event = json.loads(payload)
        data = event["data"]["object"]
        return PaymentEvent(
            type=event["type"],
            order_id=data.get("client_reference_id"),
            session_id=data.get("id"),
            payload=data,
        )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENV="test",
        DATABASE_PATH=":memory:",
        SEED_DEMO_DATA=True,
        JWT_SECRET="test-secret",
        DEMO_PASSWORD=DEMO_PASSWORD,
        PUBLIC_BASE_URL="https://portal.test",
        STRIPE_SECRET_KEY="",
        SMTP_HOST="",
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def portal(settings, gateway) -> PortalService:
    service = PortalService(AuthService(settings), gateway=gateway)
    ensure_demo_data(service)
    return service


def sign_in(portal: PortalService, email: str, password: str = DEMO_PASSWORD):
    return portal.auth.sign_in(email, password).principal


@pytest.fixture
def admin(portal):
    return sign_in(portal, ADMIN_EMAIL)


@pytest.fixture
def closer(portal):
    return sign_in(portal, CLOSER_EMAIL)


@pytest.fixture
def collaborator(portal):
    return sign_in(portal, COLLABORATOR_EMAIL)


@pytest.fixture
def client_user(portal):
    return sign_in(portal, CLIENT_EMAIL)


@pytest.fixture
def template_ids(portal) -> List[str]:
    names = {"3 Vidéos Podcast", "6 Vidéos Scriptées"}
    return [t.id for t in portal.list_templates() if t.name in names]


@pytest.fixture
def new_order(portal, closer, template_ids) -> OrderCreation:
    """An order sold by the demo closer to the demo client."""
    return portal.create_client_and_order(
        closer,
        client_name="Marie Dubois",
        client_email=CLIENT_EMAIL,
        order_title="Campagne printemps",
        template_ids=template_ids,
    )


@pytest.fixture
def order_in_progress(portal, new_order, admin, collaborator) -> OrderCreation:
    """``new_order`` with onboarding done and every product assigned."""
    for step in (
        OnboardingStepType.CALL_SCHEDULED,
        OnboardingStepType.CONTRACT_SIGNED,
        OnboardingStepType.PAYMENT_MADE,
        OnboardingStepType.FORM_COMPLETED,
    ):
        portal.complete_onboarding_step(admin, new_order.order.id, step)
    for product in new_order.products:
        portal.update_product(admin, product.id, collaborator_id=collaborator.user_id)
    return new_order


@pytest.fixture
def database():
    with PortalDatabase(":memory:") as db:
        yield db


@pytest.fixture
def app(settings, database, gateway):
    return create_app(settings, database=database, gateway=gateway)


@pytest.fixture
def client(app):
    """TestClient over an app backed by an in-memory SQLite database."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def login(client):
    """Return a function giving auth headers for an email."""

    def _login(email: str, password: str = DEMO_PASSWORD) -> dict:
        response = client.post(
            "/api/auth/sign-in", json={"email": email, "password": password}
        )
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    return _login
