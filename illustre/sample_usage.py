"""Walk through one order from sale to delivery."""

from __future__ import annotations

from . import AuthService, OnboardingStepType, PortalService, Settings
from .domain import format_euros
from .seed import ensure_demo_data


def main() -> None:
    settings = Settings(SEED_DEMO_DATA=True)
    portal = PortalService(AuthService(settings))
    ensure_demo_data(portal)
    password = settings.DEMO_PASSWORD

    closer = portal.auth.sign_in("jean.martin@email.com", password).principal
    admin = portal.auth.sign_in("pierre.durand@email.com", password).principal
    collaborator = portal.auth.sign_in("sophie.leroy@email.com", password).principal

    # Vente
    podcast = next(t for t in portal.list_templates() if t.name == "3 Vidéos Podcast")
    subtitles = next(o for o in portal.list_options() if o.name == "Sous-titres")
    creation = portal.create_client_and_order(
        closer,
        client_name="Camille Morel",
        client_email="camille.morel@example.com",
        client_company="Morel Studio",
        order_title="Lancement podcast",
        template_ids=[podcast.id],
        option_ids=[subtitles.id],
        send_onboarding_email=True,
    )
    order = creation.order
    print(f"Commande {order.order_number} - total {format_euros(order.total_amount_cents)}")
    print(f"Mot de passe temporaire du client : {creation.temporary_password}")

    # Onboarding
    client = portal.auth.sign_in("camille.morel@example.com", creation.temporary_password).principal
    for step in (
        OnboardingStepType.CALL_SCHEDULED,
        OnboardingStepType.CONTRACT_SIGNED,
        OnboardingStepType.FORM_COMPLETED,
    ):
        portal.complete_onboarding_step(client, order.id, step)
    portal.confirm_payment(order.id)
    print(f"Statut après onboarding : {portal.orders.get(order.id).status.value}")

    # Production
    product = creation.products[0]
    portal.update_product(admin, product.id, collaborator_id=collaborator.user_id)
    portal.request_files(collaborator, product.id, deposit_link="https://files.example.com/depot")
    portal.start_production(collaborator, product.id)
    portal.deliver_product(collaborator, product.id, "https://frame.io/review/v1")
    portal.request_revision(client, product.id, "Raccourcir l'introduction")
    portal.start_production(collaborator, product.id)
    portal.deliver_product(collaborator, product.id, "https://frame.io/review/v2")
    portal.accept_delivery(client, product.id)

    detail = portal.get_order(admin, order.id)
    print(f"Statut final : {detail.order.status.value}")
    for item in detail.products:
        print(f" - {item.product.title}: {item.product.status.value}")
        for revision in item.revisions:
            print(f"   révision « {revision.description} » : {revision.status.value}")

    print("\nEmails envoyés")
    for message in portal.list_emails(admin):
        print(f" - {message.recipient}: {message.subject}")


if __name__ == "__main__":
    main()
