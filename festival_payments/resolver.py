"""Find the integration an inbound event belongs to, then prove it.

Resolution order, first non-empty step wins:
1. integration id the application embedded in the payment's metadata
2. provider-side merchant / account / location id
3. every active integration of the provider (single-tenant escape hatch,
   off unless ALLOW_SINGLE_TENANT_FALLBACK is set)

The secret is per integration, so the signature is checked against each
candidate in turn and the first one that validates is returned.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from festival_payments import config
from festival_payments.errors import IntegrationNotFound, InvalidSignature
from festival_payments.events import ProviderKind, WebhookRequest
from festival_payments.models import PaymentIntegration
from festival_payments.normalizer import dig, square_object
from festival_payments.verification import verify_webhook

logger = logging.getLogger(__name__)


MAX_ID = 2 ** 63 - 1


def _as_int(value: Any) -> Optional[int]:
    """Integer primary key, or None for anything a database id cannot be."""
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    try:
        number = int(str(value).strip())
    except ValueError:
        return None
    return number if 1 <= number <= MAX_ID else None


def _scalar(value: Any) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    return str(value) if value != "" else None


def _paypal_custom_integration_id(resource: dict) -> Optional[int]:
    for field in ("custom", "custom_id"):
        raw = resource.get(field)
        if not raw:
            continue
        try:
            custom = json.loads(raw) if isinstance(raw, str) else raw
        except ValueError:
            # plain custom_id strings may carry the id itself
            custom = raw
        if isinstance(custom, dict):
            found = _as_int(custom.get("integration_id"))
        else:
            found = _as_int(custom)
        if found is not None:
            return found
    return None


def integration_hint(provider: ProviderKind, event: dict) -> Optional[int]:
    """Explicit integration id embedded at payment-creation time, if any."""
    if provider is ProviderKind.STRIPE:
        return _as_int(dig(event, "data", "object", "metadata", "integration_id"))
    if provider is ProviderKind.PAYPAL:
        resource = event.get("resource")
        return _paypal_custom_integration_id(resource) if isinstance(resource, dict) else None
    if provider is ProviderKind.BANK_TRANSFER:
        return _as_int(dig(event, "data", "metadata", "integration_id"))
    # Square payments carry no free-form metadata
    return None


def account_hints(provider: ProviderKind, event: dict) -> list[str]:
    """Provider-side merchant/account/location identifiers in the event."""
    if provider is ProviderKind.STRIPE:
        hints = [event.get("account")]
    elif provider is ProviderKind.SQUARE:
        hints = [event.get("merchant_id")]
        for name in ("payment", "refund", "subscription", "invoice"):
            hints.append(square_object(event, name).get("location_id"))
    elif provider is ProviderKind.PAYPAL:
        hints = [
            dig(event, "resource", "merchant_id"),
            dig(event, "resource", "payee", "merchant_id"),
        ]
    else:
        hints = [event.get("account_id"), dig(event, "data", "account_id")]
    return list(dict.fromkeys(h for h in map(_scalar, hints) if h))


def resolve_candidates(db: Session, provider: ProviderKind, event: dict) -> list[PaymentIntegration]:
    active = select(PaymentIntegration).where(
        PaymentIntegration.provider == provider.value,
        PaymentIntegration.active.is_(True),
    )

    explicit_id = integration_hint(provider, event)
    if explicit_id is not None:
        found = db.scalars(active.where(PaymentIntegration.id == explicit_id)).all()
        if found:
            return list(found)
        logger.warning("Embedded integration id %s not found for %s", explicit_id, provider.value)

    hints = account_hints(provider, event)
    if hints:
        found = db.scalars(
            active.where(
                or_(
                    PaymentIntegration.account_id.in_(hints),
                    PaymentIntegration.location_id.in_(hints),
                )
            ).order_by(PaymentIntegration.id)
        ).all()
        if found:
            return list(found)

    if config.ALLOW_SINGLE_TENANT_FALLBACK:
        found = db.scalars(active.order_by(PaymentIntegration.id)).all()
        if found:
            logger.warning(
                "Resolved %s webhook via single-tenant fallback (%d candidate(s))",
                provider.value, len(found),
            )
            return list(found)

    logger.warning(
        "No %s integration for webhook (explicit=%s, accounts=%s)",
        provider.value, explicit_id, hints,
    )
    raise IntegrationNotFound("Integration not found")


def resolve_integration(db: Session, request: WebhookRequest, event: dict) -> PaymentIntegration:
    """Return the candidate whose credentials validate the request signature."""
    candidates = resolve_candidates(db, request.provider, event)
    for integration in candidates:
        if verify_webhook(request, integration):
            return integration

    logger.warning(
        "Invalid %s webhook signature (checked %d candidate(s))",
        request.provider.value, len(candidates),
    )
    raise InvalidSignature("Invalid signature")
