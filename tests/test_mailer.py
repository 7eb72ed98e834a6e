from __future__ import annotations

import smtplib

import pytest

from illustre.domain import EmailKind, Order, OrderOption, Product, ProductFormat
from illustre.mailer import Mailer, SMTPMailer, build_mailer, is_valid_email


@pytest.fixture
def mailer(settings) -> Mailer:
    return Mailer(settings)


def sample_order() -> Order:
    return Order(
        id="order-1",
        order_number="ILL-2024-0007",
        client_id="client-1",
        client_name="Marie Dubois",
        organization_id="org",
        title="Campagne",
        total_amount_cents=105000,
        options=[OrderOption("Sous-titres", "Sous-titrage", 15000)],
    )


@pytest.mark.parametrize(
    "address, valid",
    [
        ("marie@example.com", True),
        (" marie@example.com ", True),
        ("marie@example", False),
        ("marie example.com", False),
        ("", False),
    ],
)
def test_email_validation(address, valid):
    assert is_valid_email(address) is valid


def test_onboarding_email_lists_order(mailer):
    order = sample_order()
    products = [
        Product(id="p1", order_id=order.id, title="3 Vidéos Podcast",
                format=ProductFormat.PODCAST, price_cents=90000),
    ]
    message = mailer.send(
        EmailKind.ONBOARDING,
        "marie@example.com",
        {"client_name": "Marie", "order": order, "order_number": order.order_number,
         "products": products},
        related_id=order.id,
    )
    assert message.subject == "🎬 Bienvenue chez illustre! - Votre commande ILL-2024-0007"
    assert "3 Vidéos Podcast" in message.html
    assert "Sous-titres" in message.html
    assert "1050.00€" in message.html
    assert "https://portal.test/schedule-call/order-1" in message.html
    assert "https://portal.test/client" in message.html
    assert not message.delivered
    assert mailer.outbox.get(message.id) is message


def test_stripe_link_replaces_payment_page(mailer):
    order = sample_order()
    order.stripe_payment_link = "https://checkout.stripe.com/pay/cs_test_1"
    html = mailer.render(EmailKind.ONBOARDING, {"client_name": "Marie", "order": order,
                                                "products": []})
    assert "https://checkout.stripe.com/pay/cs_test_1" in html
    assert "https://portal.test/payment/order-1" not in html


def test_content_is_escaped(mailer):
    html = mailer.render(
        EmailKind.REVISION,
        {"collaborator_name": "Sophie", "client_name": "Marie", "order_number": "ILL-1",
         "product_title": "Vidéo", "description": "<script>alert(1)</script>"},
    )
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_missing_subject_fields_render_empty(mailer):
    assert mailer.subject(EmailKind.FILES, {}) == "📁 illustre! - Vos fichiers pour «  »"


def test_invalid_recipient_is_rejected(mailer):
    with pytest.raises(ValueError):
        mailer.send(EmailKind.FILES, "nobody", {})
    assert len(mailer.outbox) == 0


def test_build_mailer_picks_smtp(settings):
    assert type(build_mailer(settings)) is Mailer
    smtp_settings = settings.model_copy(update={"SMTP_HOST": "smtp.example.com"})
    assert isinstance(build_mailer(smtp_settings), SMTPMailer)


def test_smtp_failure_is_recorded(settings, monkeypatch):
    def refuse(*args, **kwargs):
        raise smtplib.SMTPConnectError(421, "unavailable")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    smtp_settings = settings.model_copy(update={"SMTP_HOST": "smtp.example.com"})
    message = SMTPMailer(smtp_settings).send(
        EmailKind.DELIVERABLE,
        "marie@example.com",
        {"client_name": "Marie", "product_title": "Vidéo", "order_number": "ILL-1",
         "deliverable_link": "https://frame.io/v1"},
    )
    assert not message.delivered
