"""
API tests for the FastAPI app.

The app runs over an in-memory SQLite database seeded with the demo accounts;
Stripe is replaced by the ``FakeGateway`` from conftest.
"""
from __future__ import annotations

import json

import pytest

from .conftest import (
    ADMIN_EMAIL,
    CLIENT_EMAIL,
    CLOSER_EMAIL,
    COLLABORATOR_EMAIL,
    MULTI_ROLE_EMAIL,
    WEBHOOK_SIGNATURE,
)


@pytest.fixture
def admin_headers(login):
    return login(ADMIN_EMAIL)


@pytest.fixture
def closer_headers(login):
    return login(CLOSER_EMAIL)


@pytest.fixture
def client_headers(login):
    return login(CLIENT_EMAIL)


@pytest.fixture
def collaborator_headers(login):
    return login(COLLABORATOR_EMAIL)


@pytest.fixture
def created_order(client, closer_headers, client_headers):
    """POST /api/orders/with-client by the demo closer for the demo client."""
    templates = client.get("/api/templates", headers=client_headers).json()
    response = client.post(
        "/api/orders/with-client",
        headers=closer_headers,
        json={
            "client_name": "Marie Dubois",
            "client_email": CLIENT_EMAIL,
            "order_title": "Campagne API",
            "template_ids": [templates[0]["id"]],
            "custom_options": [
                {"name": "Tournage sur site", "price_adjustment_cents": 40000}
            ],
            "send_onboarding_email": True,
        },
    )
    assert response.status_code == 201, response.text
    return response.json()


def finish_onboarding(client, order_id, headers):
    for step in ("call_scheduled", "contract_signed", "payment_made", "form_completed"):
        response = client.post(f"/api/orders/{order_id}/onboarding/{step}", headers=headers, json={})
        assert response.status_code == 200, response.text


class TestAuthAPI:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_sign_in_and_me(self, client, login):
        headers = login(CLOSER_EMAIL)
        data = client.get("/api/auth/me", headers=headers).json()
        assert data["active_role"] == "closer"
        assert data["profile"]["email"] == CLOSER_EMAIL
        assert "password_hash" not in data["profile"]

    def test_bad_credentials(self, client):
        response = client.post(
            "/api/auth/sign-in", json={"email": CLIENT_EMAIL, "password": "wrong"}
        )
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid email or password"

    def test_missing_or_bad_token(self, client):
        assert client.get("/api/auth/me").status_code == 401
        response = client.get("/api/auth/me", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_sign_up(self, client):
        body = {"email": "new@example.com", "password": "Password1", "full_name": "New Client"}
        response = client.post("/api/auth/sign-up", json=body)
        assert response.status_code == 201
        assert response.json()["roles"] == ["client"]
        assert client.post("/api/auth/sign-up", json=body).status_code == 409
        weak = {"email": "weak@example.com", "password": "short"}
        assert client.post("/api/auth/sign-up", json=weak).status_code == 422

    def test_role_selection(self, client):
        response = client.post(
            "/api/auth/sign-in", json={"email": MULTI_ROLE_EMAIL, "password": "Illustre2024!"}
        )
        session = response.json()
        assert session["needs_role_selection"]
        assert {o["role"] for o in session["role_options"]} == {"client", "closer"}
        headers = {"Authorization": f"Bearer {session['access_token']}"}
        assert client.get("/api/orders", headers=headers).status_code == 409

        response = client.post("/api/auth/role", headers=headers, json={"role": "client"})
        assert response.status_code == 200
        assert response.json()["route"] == "/client"
        scoped = {"Authorization": f"Bearer {response.json()['access_token']}"}
        assert client.get("/api/orders", headers=scoped).json() == []

        denied = client.post("/api/auth/role", headers=headers, json={"role": "admin"})
        assert denied.status_code == 403

    def test_password_reset(self, client, client_headers):
        response = client.post(
            "/api/auth/password", headers=client_headers, json={"new_password": "weak"}
        )
        assert response.status_code == 422
        response = client.post(
            "/api/auth/password", headers=client_headers, json={"new_password": "Nouveau2025"}
        )
        assert response.status_code == 200
        assert not response.json()["temp_password"]

    def test_role_options(self, client):
        labels = {o["role"]: o["label"] for o in client.get("/api/roles").json()}
        assert labels["admin"] == "Administrateur"
        assert labels["collaborator"] == "Collaborateur"


class TestUsersAPI:
    def test_admin_manages_users(self, client, admin_headers):
        response = client.post(
            "/api/users",
            headers=admin_headers,
            json={"email": "monteur@example.com", "full_name": "Paul Monteur",
                  "roles": ["collaborator"]},
        )
        assert response.status_code == 201
        created = response.json()
        assert created["initial_password"]
        user_id = created["profile"]["id"]

        response = client.put(
            f"/api/users/{user_id}/roles",
            headers=admin_headers,
            json={"roles": ["collaborator", "closer"]},
        )
        assert set(response.json()["roles"]) == {"collaborator", "closer"}

        users = client.get("/api/users?role=collaborator", headers=admin_headers).json()
        assert {u["email"] for u in users} == {COLLABORATOR_EMAIL, "monteur@example.com"}
        assert all("password_hash" not in u for u in users)

        response = client.put(
            f"/api/users/{user_id}/status", headers=admin_headers, json={"status": "inactive"}
        )
        assert response.json()["status"] == "inactive"
        signin = client.post(
            "/api/auth/sign-in",
            json={"email": "monteur@example.com", "password": created["initial_password"]},
        )
        assert signin.status_code == 401

    def test_non_admin_is_forbidden(self, client, closer_headers, client_headers):
        response = client.post(
            "/api/users", headers=closer_headers, json={"email": "x@example.com"}
        )
        assert response.status_code == 403
        assert client.get("/api/users", headers=client_headers).status_code == 403
        assert client.get("/api/stats/admin", headers=closer_headers).status_code == 403

    def test_profile_update(self, client, client_headers):
        me = client.get("/api/auth/me", headers=client_headers).json()["profile"]
        response = client.patch(
            f"/api/users/{me['id']}", headers=client_headers, json={"company": "Dubois SAS"}
        )
        assert response.json()["company"] == "Dubois SAS"
        assert response.json()["first_name"] == "Marie"


class TestCatalogueAPI:
    def test_templates_and_options(self, client, client_headers, admin_headers):
        assert len(client.get("/api/templates", headers=client_headers).json()) == 9
        assert len(client.get("/api/options", headers=client_headers).json()) == 3
        body = {"name": "1 Vidéo Test", "format": "podcast", "price_cents": 30000}
        assert client.post("/api/templates", headers=client_headers, json=body).status_code == 403
        created = client.post("/api/templates", headers=admin_headers, json=body)
        assert created.status_code == 201
        template_id = created.json()["id"]
        client.patch(f"/api/templates/{template_id}", headers=admin_headers,
                     json={"active": False})
        assert len(client.get("/api/templates", headers=client_headers).json()) == 9

    def test_option_prices_are_not_negative(self, client, admin_headers):
        body = {"name": "Remise", "price_adjustment_cents": -20000}
        assert client.post("/api/options", headers=admin_headers, json=body).status_code == 422
        body["price_adjustment_cents"] = 20000
        created = client.post("/api/options", headers=admin_headers, json=body)
        assert created.status_code == 201
        audit = client.get(f"/api/audit-log?entity_id={created.json()['id']}",
                           headers=admin_headers).json()
        assert [entry["action"] for entry in audit] == ["option.created"]

    def test_organizations(self, client, admin_headers):
        response = client.post(
            "/api/organizations", headers=admin_headers,
            json={"name": "Partenaire", "slug": "partenaire", "is_subcontracted": True},
        )
        assert response.status_code == 201
        slugs = [o["slug"] for o in client.get("/api/organizations", headers=admin_headers).json()]
        assert slugs == ["illustre", "partenaire"]


class TestOrdersAPI:
    def test_order_creation(self, client, created_order, admin_headers):
        assert created_order["order"]["total_amount_cents"] == 90000 + 40000
        assert created_order["order"]["status"] == "onboarding"
        assert created_order["temporary_password"] is None
        assert created_order["onboarding"]["progress"] == 0
        assert created_order["email_id"]
        emails = client.get("/api/emails?kind=onboarding", headers=admin_headers).json()
        assert [e["id"] for e in emails] == [created_order["email_id"]]
        assert "html" not in emails[0]

    def test_visibility(self, client, created_order, client_headers, collaborator_headers):
        order_id = created_order["order"]["id"]
        detail = client.get(f"/api/orders/{order_id}", headers=client_headers)
        assert detail.status_code == 200
        assert len(detail.json()["products"]) == 1
        assert client.get(f"/api/orders/{order_id}", headers=collaborator_headers).status_code == 403
        assert client.get("/api/orders/missing", headers=client_headers).status_code == 404
        assert client.get("/api/orders", headers=collaborator_headers).json() == []

    def test_client_onboarding(self, client, created_order, client_headers):
        order_id = created_order["order"]["id"]
        response = client.post(
            f"/api/orders/{order_id}/onboarding/contract_signed",
            headers=client_headers,
            json={"data": {"signed_by": "Marie Dubois"}},
        )
        assert response.json()["progress"] == 25
        assert response.json()["steps"][1]["label"] == "Signature du contrat"
        payment = client.post(
            f"/api/orders/{order_id}/onboarding/payment_made", headers=client_headers, json={}
        )
        assert payment.status_code == 422
        reset = client.delete(
            f"/api/orders/{order_id}/onboarding/contract_signed", headers=client_headers
        )
        assert reset.status_code == 422

    def test_admin_order_changes(self, client, created_order, admin_headers, closer_headers):
        order_id = created_order["order"]["id"]
        response = client.patch(
            f"/api/orders/{order_id}", headers=admin_headers, json={"title": "Renommée"}
        )
        assert response.json()["title"] == "Renommée"
        bad = client.post(
            f"/api/orders/{order_id}/status", headers=admin_headers, json={"status": "completed"}
        )
        assert bad.status_code == 422
        assert client.post(f"/api/orders/{order_id}/cancel", headers=closer_headers).status_code == 422
        cancelled = client.post(f"/api/orders/{order_id}/cancel", headers=admin_headers)
        assert cancelled.json()["status"] == "cancelled"

    def test_required_order_fields_cannot_be_cleared(self, client, created_order, admin_headers):
        order_id = created_order["order"]["id"]
        response = client.patch(
            f"/api/orders/{order_id}", headers=admin_headers, json={"title": None}
        )
        assert response.status_code == 422
        assert "title" in response.json()["detail"]
        cleared = client.patch(
            f"/api/orders/{order_id}", headers=admin_headers, json={"closer_id": None}
        )
        assert cleared.status_code == 200
        assert cleared.json()["title"] == "Campagne API"
        assert cleared.json()["closer_id"] is None


class TestPaymentsAPI:
    def webhook(self, client, order_id, signature=WEBHOOK_SIGNATURE):
        event = {
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_test_1", "client_reference_id": order_id,
                                "payment_status": "paid"}},
        }
        return client.post(
            "/api/payments/webhook",
            content=json.dumps(event),
            headers={"stripe-signature": signature},
        )

    def test_checkout_then_webhook(self, client, gateway, created_order, client_headers):
        order_id = created_order["order"]["id"]
        response = client.post(f"/api/orders/{order_id}/checkout", headers=client_headers)
        assert response.status_code == 200
        assert response.json()["url"] == "https://checkout.test/cs_test_1"
        assert [item.unit_amount_cents for item in gateway.requests[0].line_items] == [90000, 40000]

        response = self.webhook(client, order_id)
        assert response.json() == {"received": True, "handled": True}
        steps = client.get(f"/api/orders/{order_id}/onboarding", headers=client_headers).json()
        assert steps["steps"][2]["completed"]

        again = client.post(f"/api/orders/{order_id}/checkout", headers=client_headers)
        assert again.status_code == 422

    def test_webhook_after_manual_start(self, client, created_order, admin_headers):
        order_id = created_order["order"]["id"]
        started = client.post(f"/api/orders/{order_id}/status", headers=admin_headers,
                              json={"status": "in_progress"})
        assert started.json()["status"] == "in_progress"
        response = self.webhook(client, order_id)
        assert response.status_code == 200
        assert response.json() == {"received": True, "handled": True}
        steps = client.get(f"/api/orders/{order_id}/onboarding", headers=admin_headers).json()
        assert steps["steps"][2]["completed"]

    def test_bad_signature(self, client, created_order):
        response = self.webhook(client, created_order["order"]["id"], signature="forged")
        assert response.status_code == 400


class TestProductsAPI:
    def test_production_flow(self, client, created_order, admin_headers, client_headers,
                             collaborator_headers):
        order_id = created_order["order"]["id"]
        product_id = created_order["products"][0]["id"]
        finish_onboarding(client, order_id, admin_headers)

        collaborators = client.get("/api/users?role=collaborator", headers=admin_headers).json()
        response = client.patch(
            f"/api/products/{product_id}",
            headers=admin_headers,
            json={"collaborator_id": collaborators[0]["id"], "next_action_date": "2026-03-01"},
        )
        assert response.json()["next_action_date"] == "2026-03-01"

        listing = client.get("/api/products", headers=collaborator_headers).json()
        assert listing["product_count"] == 1 and listing["order_count"] == 1

        assert client.post(f"/api/products/{product_id}/request-files", headers=collaborator_headers,
                           json={"deposit_link": "https://files.example.com"}).status_code == 200
        assert client.post(f"/api/products/{product_id}/start",
                           headers=collaborator_headers).status_code == 200
        blank = client.post(f"/api/products/{product_id}/deliver", headers=collaborator_headers,
                            json={"deliverable_link": " "})
        assert blank.status_code == 422
        delivered = client.post(f"/api/products/{product_id}/deliver", headers=collaborator_headers,
                                json={"deliverable_link": "https://frame.io/v1"})
        assert delivered.json()["status"] == "delivered"

        revision = client.post(f"/api/products/{product_id}/revisions", headers=client_headers,
                               json={"description": "Changer la musique"})
        assert revision.status_code == 201
        revisions = client.get(f"/api/products/{product_id}/revisions", headers=client_headers)
        assert revisions.json()[0]["description"] == "Changer la musique"

        client.post(f"/api/products/{product_id}/status", headers=collaborator_headers,
                    json={"status": "in_production"})
        client.post(f"/api/products/{product_id}/status", headers=collaborator_headers,
                    json={"status": "delivered", "deliverable_link": "https://frame.io/v2"})
        accepted = client.post(f"/api/products/{product_id}/accept", headers=client_headers)
        assert accepted.json()["status"] == "completed"

        order = client.get(f"/api/orders/{order_id}", headers=client_headers).json()
        assert order["status"] == "completed"
        assert order["products"][0]["revisions"][0]["status"] == "completed"

        stats = client.get("/api/stats/collaborator", headers=collaborator_headers).json()
        assert stats["total"] == 1

    def test_product_actions_need_in_progress_order(self, client, created_order, admin_headers):
        product_id = created_order["products"][0]["id"]
        response = client.post(f"/api/products/{product_id}/start", headers=admin_headers)
        assert response.status_code == 422
        assert response.json()["error"] == "InvalidTransitionError"

    def test_required_product_fields_cannot_be_cleared(self, client, created_order,
                                                       admin_headers):
        product_id = created_order["products"][0]["id"]
        response = client.patch(f"/api/products/{product_id}", headers=admin_headers,
                                json={"format": None, "title": None})
        assert response.status_code == 422
        assert response.json()["detail"] == "Fields cannot be empty: format, title"
        product = client.get(f"/api/products/{product_id}", headers=admin_headers).json()
        assert product["format"] == created_order["products"][0]["format"]
        assert product["title"] == created_order["products"][0]["title"]
        cleared = client.patch(f"/api/products/{product_id}", headers=admin_headers,
                               json={"collaborator_id": None, "next_action_date": None})
        assert cleared.status_code == 200
        assert cleared.json()["collaborator_id"] is None


class TestNotificationsAndAdminAPI:
    def test_notifications(self, client, created_order, client_headers):
        assert client.get("/api/notifications/unread-count", headers=client_headers).json() == {
            "unread": 1
        }
        notification = client.get("/api/notifications", headers=client_headers).json()[0]
        read = client.post(f"/api/notifications/{notification['id']}/read", headers=client_headers)
        assert read.json()["read"]
        assert client.post("/api/notifications/read-all", headers=client_headers).json() == {
            "marked": 0
        }

    def test_admin_views(self, client, created_order, admin_headers, client_headers):
        stats = client.get("/api/stats/admin", headers=admin_headers).json()
        assert stats["total_orders"] == 1
        audit = client.get("/api/audit-log?entity_type=order", headers=admin_headers).json()
        assert audit[0]["action"] == "order.created"
        summary = client.get("/api/stats/client", headers=client_headers).json()
        assert summary["orders_by_status"]["onboarding"] == 1

    def test_test_email(self, client, admin_headers):
        response = client.post(
            "/api/emails/test",
            headers=admin_headers,
            json={"kind": "deliverable", "recipient": "qa@example.com"},
        )
        assert response.status_code == 201
        assert "Voir le livrable" in response.json()["html"]
        bad = client.post(
            "/api/emails/test",
            headers=admin_headers,
            json={"kind": "deliverable", "recipient": "qa"},
        )
        assert bad.status_code == 422

    def test_send_onboarding_email(self, client, created_order, closer_headers):
        order_id = created_order["order"]["id"]
        response = client.post(f"/api/orders/{order_id}/onboarding-email", headers=closer_headers)
        assert response.status_code == 200
        assert response.json()["recipient"] == CLIENT_EMAIL
