import stripe

from festival_payments.events import to_minor_units
from festival_payments.models import PaymentIntegration


def build_metadata(integration: PaymentIntegration, order_id: str, extra: dict = None) -> dict:
    """Metadata that lets the webhook resolver find this integration again."""
    metadata = {
        "integration_id": str(integration.id),
        "user_id": str(integration.user_id),
        "order_id": order_id,
    }
    if integration.festival_id is not None:
        metadata["festival_id"] = str(integration.festival_id)
    metadata.update(extra or {})
    # Stripe metadata values must be strings, 500 chars max
    return {key: str(value)[:500] for key, value in metadata.items()}


def create_payment(integration: PaymentIntegration, amount, currency: str, order_id: str):
    return stripe.PaymentIntent.create(
        amount=to_minor_units(amount, currency),
        currency=currency.lower(),
        automatic_payment_methods={"enabled": True},
        metadata=build_metadata(integration, order_id),
        idempotency_key=f"{integration.id}:{order_id}",
        api_key=integration.api_key,
    )


def refund_payment(integration: PaymentIntegration, payment_intent_id: str, amount_minor: int = None):
    params = {"payment_intent": payment_intent_id, "api_key": integration.api_key}
    if amount_minor is not None:
        params["amount"] = amount_minor
    return stripe.Refund.create(**params)
