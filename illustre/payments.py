"""Stripe Checkout integration for order payments."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import stripe

from .config import Settings

logger = logging.getLogger(__name__)


class PaymentError(RuntimeError):
    """Raised when the payment provider rejects a request or a webhook."""


@dataclass(slots=True)
class LineItem:
    name: str
    description: str
    unit_amount_cents: int
    quantity: int = 1


@dataclass(slots=True)
class CheckoutRequest:
    order_id: str
    client_id: str
    order_name: str
    customer_email: str
    line_items: List[LineItem]
    return_url: str

    @property
    def amount_cents(self) -> int:
        return sum(item.unit_amount_cents * item.quantity for item in self.line_items)


@dataclass(slots=True)
class CheckoutSession:
    id: str
    url: str


@dataclass(slots=True)
class PaymentEvent:
    """A verified provider event that matters to the portal."""

    type: str
    order_id: Optional[str]
    session_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


class CheckoutGateway(Protocol):
    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        ...

    def parse_webhook(self, payload: bytes, signature: str) -> PaymentEvent:
        ...


class StripeCheckoutGateway:
    """Creates Stripe Checkout Sessions and verifies Stripe webhooks."""

    def __init__(self, settings: Settings) -> None:
        self.api_key = settings.STRIPE_SECRET_KEY.strip()
        self.webhook_secret = settings.STRIPE_WEBHOOK_SECRET.strip()
        self.currency = settings.STRIPE_CURRENCY

    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        if not self.api_key:
            raise PaymentError("Stripe is not configured")
        line_items = [
            {
                "price_data": {
                    "currency": self.currency,
                    "product_data": {
                        "name": item.name,
                        "description": item.description or "Standard",
                    },
                    "unit_amount": item.unit_amount_cents,
                },
                "quantity": item.quantity,
            }
            for item in request.line_items
        ]
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                mode="payment",
                success_url=request.return_url,
                cancel_url=request.return_url,
                line_items=line_items,
                metadata={
                    "orderId": request.order_id,
                    "clientId": request.client_id,
                    "orderName": request.order_name,
                },
                client_reference_id=request.order_id,
                customer_email=request.customer_email,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe checkout creation failed for %s: %s", request.order_id, exc)
            raise PaymentError(f"Stripe error: {exc}") from exc
        logger.info("Created checkout session %s for order %s", session.id, request.order_id)
        return CheckoutSession(id=session.id, url=session.url)

    def parse_webhook(self, payload: bytes, signature: str) -> PaymentEvent:
        if not self.webhook_secret:
            raise PaymentError("Stripe webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise PaymentError("Invalid Stripe webhook") from exc
        event = json.loads(payload)
        data = event["data"]["object"]
        order_id = data.get("client_reference_id") or (data.get("metadata") or {}).get(
            "orderId"
        )
        return PaymentEvent(
            type=event["type"],
            order_id=order_id,
            session_id=data.get("id"),
            payload=data,
        )


__all__ = [
    "PaymentError",
    "LineItem",
    "CheckoutRequest",
    "CheckoutSession",
    "PaymentEvent",
    "CheckoutGateway",
    "StripeCheckoutGateway",
]
