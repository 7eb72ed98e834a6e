"""Demo catalogue and accounts loaded into an empty portal."""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence, Tuple

from .domain import ProductFormat, Profile, Role
from .services import PortalService

logger = logging.getLogger(__name__)

TEMPLATE_PRICES: Sequence[Tuple[int, int]] = ((3, 90000), (6, 170000), (10, 230000))

FORMAT_NAMES: Dict[ProductFormat, str] = {
    ProductFormat.PODCAST: "Vidéos Podcast",
    ProductFormat.SCRIPTED: "Vidéos Scriptées",
    ProductFormat.MICRO_INTERVIEW: "Micro-trottoirs",
}

FORMAT_DESCRIPTIONS: Dict[ProductFormat, str] = {
    ProductFormat.PODCAST: "vidéos podcast professionnelles avec montage complet",
    ProductFormat.SCRIPTED: "vidéos scriptées avec scénarios sur mesure",
    ProductFormat.MICRO_INTERVIEW: "micro-trottoirs dynamiques avec montage créatif",
}

CUSTOM_OPTIONS: Sequence[Tuple[str, str, int]] = (
    ("Sous-titres", "Sous-titrage incrusté sur chaque vidéo", 15000),
    ("Miniatures", "Miniature personnalisée pour chaque vidéo", 10000),
    ("Livraison express", "Livraison sous 5 jours ouvrés", 30000),
)

DEMO_ACCOUNTS: Sequence[Tuple[str, str, str, Tuple[Role, ...]]] = (
    ("marie.dubois@email.com", "Marie Dubois", "Dubois Conseil", (Role.CLIENT,)),
    ("jean.martin@email.com", "Jean Martin", "Martin Sales", (Role.CLOSER,)),
    ("sophie.leroy@email.com", "Sophie Leroy", "Leroy Productions", (Role.COLLABORATOR,)),
    ("pierre.durand@email.com", "Pierre Durand", "Admin Corp", (Role.ADMIN,)),
    (
        "alice.bernard@email.com",
        "Alice Bernard",
        "Bernard & Associates",
        (Role.CLIENT, Role.CLOSER),
    ),
)


def ensure_demo_data(service: PortalService) -> List[Profile]:
    """Populate an empty portal; returns the demo profiles created."""
    if len(service.templates) > 0 or len(service.auth.profiles) > 0:
        return []

    service.auth.default_organization()

    for format, label in FORMAT_NAMES.items():
        for quantity, price_cents in TEMPLATE_PRICES:
            service.register_template(
                name=f"{quantity} {label}",
                format=format,
                price_cents=price_cents,
                quantity=quantity,
                description=f"{quantity} {FORMAT_DESCRIPTIONS[format]}",
            )

    for name, description, price in CUSTOM_OPTIONS:
        service.register_option(name, description=description, price_adjustment_cents=price)

    password = service.settings.DEMO_PASSWORD
    profiles = []
    for email, full_name, company, roles in DEMO_ACCOUNTS:
        profile = service.auth.register(
            email, password, full_name=full_name, company=company, roles=roles
        )
        profiles.append(profile)

    logger.info(
        "Seeded demo data: %d templates, %d options, %d accounts",
        len(service.templates),
        len(service.custom_options),
        len(profiles),
    )
    return profiles


__all__ = ["ensure_demo_data", "DEMO_ACCOUNTS"]
