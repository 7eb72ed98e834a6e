"""Rendering and dispatch of the portal's automated emails."""

from __future__ import annotations

import logging
import re
import smtplib
from email.message import EmailMessage as MIMEMessage
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .config import Settings
from .domain import EmailKind, EmailMessage, format_euros
from .repository import InMemoryRepository, in_memory_default

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates" / "emails"

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

SUBJECTS: Dict[EmailKind, str] = {
    EmailKind.ONBOARDING: "🎬 Bienvenue chez illustre! - Votre commande {order_number}",
    EmailKind.FILES: "📁 illustre! - Vos fichiers pour « {product_title} »",
    EmailKind.DELIVERABLE: "🎉 illustre! - Votre livrable « {product_title} » est disponible",
    EmailKind.REVISION: "✏️ Demande de révision - {product_title}",
}


def is_valid_email(address: str) -> bool:
    return bool(EMAIL_PATTERN.match(address.strip()))


def build_environment() -> Environment:
    environment = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(["html"]),
    )
    environment.filters["euros"] = format_euros
    return environment


class Mailer:
    """Renders emails and records them in the outbox.

    Delivery is a no-op here: messages are logged and kept so that admins
    can inspect what was sent. ``SMTPMailer`` adds real delivery.
    """

    def __init__(
        self,
        settings: Settings,
        outbox: Optional[InMemoryRepository[EmailMessage]] = None,
    ) -> None:
        self.settings = settings
        self.outbox = in_memory_default(outbox, "email")
        self.environment = build_environment()

    def render(self, kind: EmailKind, context: Dict[str, Any]) -> str:
        template = self.environment.get_template(f"{kind.value}.html")
        return template.render(base_url=self.settings.PUBLIC_BASE_URL, **context)

    def subject(self, kind: EmailKind, context: Dict[str, Any]) -> str:
        return SUBJECTS[kind].format_map(_Defaults(context))

    def send(
        self,
        kind: EmailKind,
        recipient: str,
        context: Dict[str, Any],
        *,
        related_id: Optional[str] = None,
    ) -> EmailMessage:
        if not is_valid_email(recipient):
            raise ValueError(f"Invalid email address: {recipient!r}")
        message = EmailMessage(
            id=str(uuid4()),
            kind=kind,
            recipient=recipient.strip(),
            subject=self.subject(kind, context),
            html=self.render(kind, context),
            related_id=related_id,
        )
        message.delivered = self.deliver(message)
        self.outbox.add(message.id, message)
        logger.info(
            "Email %s prepared for %s (%s)", kind.value, message.recipient, message.subject
        )
        return message

    def deliver(self, message: EmailMessage) -> bool:
        return False


class SMTPMailer(Mailer):
    """Mailer that also hands messages to an SMTP relay."""

    def deliver(self, message: EmailMessage) -> bool:
        settings = self.settings
        mime = MIMEMessage()
        mime["From"] = settings.EMAIL_FROM
        mime["To"] = message.recipient
        mime["Subject"] = message.subject
        mime.set_content("Ce message nécessite un client email compatible HTML.")
        mime.add_alternative(message.html, subtype="html")
        try:
            with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as smtp:
                if settings.SMTP_USE_TLS:
                    smtp.starttls()
                if settings.SMTP_USERNAME:
                    smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
                smtp.send_message(mime)
        except (OSError, smtplib.SMTPException):
            logger.exception("SMTP delivery to %s failed", message.recipient)
            return False
        return True


def build_mailer(
    settings: Settings, outbox: Optional[InMemoryRepository[EmailMessage]] = None
) -> Mailer:
    if settings.SMTP_HOST:
        return SMTPMailer(settings, outbox)
    return Mailer(settings, outbox)


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return ""


__all__ = ["Mailer", "SMTPMailer", "build_mailer", "is_valid_email"]
