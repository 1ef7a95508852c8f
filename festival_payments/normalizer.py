"""Map each provider's native webhook event onto a ``NormalizedEvent``.

Providers send far more event types than this service acts on. Anything
unrecognized becomes ``CanonicalKind.NOOP`` and is logged, never rejected.
A recognized kind that is missing its target transaction id raises
``UnprocessableEvent``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from festival_payments.errors import MalformedPayload, UnprocessableEvent
from festival_payments.events import (
    CanonicalKind,
    NormalizedEvent,
    ProviderKind,
    body_digest,
    from_minor_units,
    parse_major_units,
)
from festival_payments.models import PaymentIntegration

logger = logging.getLogger(__name__)

K = CanonicalKind


def dig(data: Any, *keys: Any) -> Any:
    """Nested lookup that tolerates missing levels and list indexes."""
    for key in keys:
        if isinstance(data, dict):
            data = data.get(key)
        elif isinstance(data, list) and isinstance(key, int) and -len(data) <= key < len(data):
            data = data[key]
        else:
            return None
        if data is None:
            return None
    return data


def _upper(value: Any) -> Optional[str]:
    return str(value).upper() if value else None


def _str(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def _unrecognized(provider: ProviderKind, native_type: str) -> dict:
    logger.warning("Unrecognized webhook event: %s/%s, skipping", provider.value, native_type)
    return {"kind": K.NOOP}


def _unknown_status(provider: ProviderKind, native_type: str, status: Any) -> dict:
    logger.warning(
        "Unrecognized event shape: %s/%s with status %r, treating as noop",
        provider.value, native_type, status,
    )
    return {"kind": K.NOOP}


# --- Stripe -----------------------------------------------------------------

_STRIPE_PAYMENT_INTENT_KINDS = {
    "payment_intent.created": K.PAYMENT_PENDING,
    "payment_intent.processing": K.PAYMENT_PROCESSING,
    "payment_intent.succeeded": K.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": K.PAYMENT_FAILED,
    "payment_intent.canceled": K.PAYMENT_CANCELED,
}

_STRIPE_REFUND_STATUS = {
    "pending": K.REFUND_PENDING,
    "requires_action": K.REFUND_PENDING,
    "succeeded": K.REFUND_SUCCEEDED,
    "failed": K.REFUND_FAILED,
    "canceled": K.REFUND_FAILED,
}

_STRIPE_SUBSCRIPTION_STATUS = {
    "active": K.SUBSCRIPTION_ACTIVATED,
    "trialing": K.SUBSCRIPTION_ACTIVATED,
    "canceled": K.SUBSCRIPTION_CANCELED,
    "paused": K.SUBSCRIPTION_SUSPENDED,
    "past_due": K.SUBSCRIPTION_SUSPENDED,
    "unpaid": K.SUBSCRIPTION_SUSPENDED,
}


def _stripe_fields(event_type: str, obj: dict) -> dict:
    currency = _upper(obj.get("currency"))

    if event_type in _STRIPE_PAYMENT_INTENT_KINDS:
        return {
            "kind": _STRIPE_PAYMENT_INTENT_KINDS[event_type],
            "external_id": _str(obj.get("id")),
            "amount": from_minor_units(obj.get("amount"), currency),
            "currency": currency,
            "error": dig(obj, "last_payment_error", "message"),
        }

    if event_type == "charge.refunded":
        return {
            "kind": K.REFUND_SUCCEEDED,
            "external_id": _str(obj.get("payment_intent") or obj.get("id")),
            "amount": from_minor_units(obj.get("amount_refunded"), currency),
            "currency": currency,
            "refund_id": _str(dig(obj, "refunds", "data", 0, "id")),
        }

    if event_type in ("charge.refund.updated", "refund.updated", "refund.created"):
        status = obj.get("status")
        kind = _STRIPE_REFUND_STATUS.get(status)
        if kind is None:
            return _unknown_status(ProviderKind.STRIPE, event_type, status)
        return {
            "kind": kind,
            "external_id": _str(obj.get("payment_intent") or obj.get("charge")),
            "amount": from_minor_units(obj.get("amount"), currency),
            "currency": currency,
            "refund_id": _str(obj.get("id")),
            "error": obj.get("failure_reason"),
        }

    if event_type in ("invoice.payment_succeeded", "invoice.paid", "invoice.payment_failed"):
        failed = event_type == "invoice.payment_failed"
        return {
            "kind": K.SUBSCRIPTION_PAYMENT_FAILED if failed else K.SUBSCRIPTION_PAYMENT_SUCCEEDED,
            "external_id": _str(obj.get("payment_intent")),
            "amount": from_minor_units(obj.get("amount_due" if failed else "amount_paid"), currency),
            "currency": currency,
            "subscription_id": _str(obj.get("subscription")),
        }

    if event_type.startswith("customer.subscription."):
        if event_type == "customer.subscription.deleted":
            kind = K.SUBSCRIPTION_CANCELED
        else:
            kind = _STRIPE_SUBSCRIPTION_STATUS.get(obj.get("status"))
            if kind is None:
                return _unknown_status(ProviderKind.STRIPE, event_type, obj.get("status"))
        return {
            "kind": kind,
            "subscription_id": _str(obj.get("id")),
            "details": {"customer_id": obj.get("customer")},
        }

    if event_type == "payment_method.attached":
        return {
            "kind": K.PAYMENT_METHOD_ATTACHED,
            "details": {"customer_id": obj.get("customer"), "payment_method_type": obj.get("type")},
        }

    if event_type == "setup_intent.succeeded":
        return {
            "kind": K.PAYMENT_SETUP_SUCCEEDED,
            "details": {"customer_id": obj.get("customer"), "setup_intent_id": obj.get("id")},
        }

    return _unrecognized(ProviderKind.STRIPE, event_type)


def normalize_stripe(event: dict) -> tuple[str, str, dict]:
    event_id = event.get("id")
    event_type = event.get("type")
    obj = dig(event, "data", "object")
    if not event_id or not event_type or not isinstance(obj, dict):
        raise MalformedPayload("Stripe event requires id, type and data.object")
    return str(event_id), str(event_type), _stripe_fields(str(event_type), obj)


# --- Square -----------------------------------------------------------------

_SQUARE_PAYMENT_STATUS = {
    "PENDING": K.PAYMENT_PENDING,
    "APPROVED": K.PAYMENT_PROCESSING,
    "COMPLETED": K.PAYMENT_SUCCEEDED,
    "FAILED": K.PAYMENT_FAILED,
    "CANCELED": K.PAYMENT_CANCELED,
}

_SQUARE_REFUND_STATUS = {
    "PENDING": K.REFUND_PENDING,
    "COMPLETED": K.REFUND_SUCCEEDED,
    "REJECTED": K.REFUND_FAILED,
    "FAILED": K.REFUND_FAILED,
}

_SQUARE_SUBSCRIPTION_STATUS = {
    "ACTIVE": K.SUBSCRIPTION_ACTIVATED,
    "CANCELED": K.SUBSCRIPTION_CANCELED,
    "PAUSED": K.SUBSCRIPTION_SUSPENDED,
    "DEACTIVATED": K.SUBSCRIPTION_SUSPENDED,
}


def square_object(event: dict, name: str) -> dict:
    """``data.object.<name>`` on current payloads, ``data.object`` on older ones."""
    obj = dig(event, "data", "object")
    if not isinstance(obj, dict):
        return {}
    nested = obj.get(name)
    return nested if isinstance(nested, dict) else obj


def _square_money(obj: dict) -> tuple:
    currency = _upper(dig(obj, "amount_money", "currency"))
    return from_minor_units(dig(obj, "amount_money", "amount"), currency), currency


def _square_fields(event_type: str, event: dict) -> dict:
    if event_type in ("payment.created", "payment.updated"):
        payment = square_object(event, "payment")
        status = _upper(payment.get("status"))
        kind = _SQUARE_PAYMENT_STATUS.get(status)
        if kind is None:
            return _unknown_status(ProviderKind.SQUARE, event_type, status)
        amount, currency = _square_money(payment)
        return {
            "kind": kind,
            "external_id": _str(payment.get("id")),
            "amount": amount,
            "currency": currency,
        }

    if event_type in ("refund.created", "refund.updated"):
        refund = square_object(event, "refund")
        status = _upper(refund.get("status"))
        kind = _SQUARE_REFUND_STATUS.get(status)
        if kind is None:
            return _unknown_status(ProviderKind.SQUARE, event_type, status)
        amount, currency = _square_money(refund)
        return {
            "kind": kind,
            "external_id": _str(refund.get("payment_id")),
            "amount": amount,
            "currency": currency,
            "refund_id": _str(refund.get("id")),
        }

    if event_type in ("subscription.created", "subscription.updated"):
        subscription = square_object(event, "subscription")
        status = _upper(subscription.get("status"))
        kind = _SQUARE_SUBSCRIPTION_STATUS.get(status)
        if kind is None:
            return _unknown_status(ProviderKind.SQUARE, event_type, status)
        return {"kind": kind, "subscription_id": _str(subscription.get("id"))}

    if event_type == "invoice.updated":
        invoice = square_object(event, "invoice")
        return {
            "kind": K.INVOICE_UPDATED,
            "subscription_id": _str(invoice.get("subscription_id")),
            "details": {"invoice_id": _str(invoice.get("id")), "invoice_status": _upper(invoice.get("status"))},
        }

    return _unrecognized(ProviderKind.SQUARE, event_type)


def normalize_square(event: dict) -> tuple[str, str, dict]:
    event_id = event.get("event_id") or event.get("id")
    event_type = event.get("type")
    if not event_id or not event_type or not isinstance(event.get("data"), dict):
        raise MalformedPayload("Square event requires event_id, type and data")
    return str(event_id), str(event_type), _square_fields(str(event_type), event)


# --- PayPal -----------------------------------------------------------------

_PAYPAL_REQUIRED_FIELDS = ("id", "create_time", "resource_type", "event_type", "resource")

_PAYPAL_SUBSCRIPTION_KINDS = {
    "BILLING.SUBSCRIPTION.ACTIVATED": K.SUBSCRIPTION_ACTIVATED,
    "BILLING.SUBSCRIPTION.CANCELLED": K.SUBSCRIPTION_CANCELED,
    "BILLING.SUBSCRIPTION.SUSPENDED": K.SUBSCRIPTION_SUSPENDED,
}


def _paypal_money(resource: Any) -> tuple:
    amount = resource.get("amount") if isinstance(resource, dict) else None
    if not amount:
        return None, None
    if not isinstance(amount, dict):
        raise UnprocessableEvent("PayPal amount must be an object")
    value = amount.get("total", amount.get("value"))
    currency = _upper(amount.get("currency") or amount.get("currency_code"))
    return parse_major_units(value), currency


def _paypal_fields(event_type: str, resource: dict) -> dict:
    amount, currency = _paypal_money(resource)
    sale_target = _str(resource.get("parent_payment") or resource.get("id"))

    if event_type == "PAYMENT.SALE.COMPLETED" and resource.get("billing_agreement_id"):
        return {
            "kind": K.SUBSCRIPTION_PAYMENT_SUCCEEDED,
            "external_id": _str(resource.get("id")),
            "amount": amount,
            "currency": currency,
            "subscription_id": _str(resource.get("billing_agreement_id")),
        }

    sale_kinds = {
        "PAYMENT.SALE.PENDING": K.PAYMENT_PENDING,
        "PAYMENT.SALE.COMPLETED": K.PAYMENT_SUCCEEDED,
        "PAYMENT.SALE.DENIED": K.PAYMENT_FAILED,
    }
    if event_type in sale_kinds:
        return {
            "kind": sale_kinds[event_type],
            "external_id": sale_target,
            "amount": amount,
            "currency": currency,
            "details": {"sale_id": resource.get("id")},
        }

    if event_type in ("PAYMENT.SALE.REFUNDED", "PAYMENT.SALE.REVERSED"):
        return {
            "kind": K.REFUND_SUCCEEDED,
            "external_id": _str(resource.get("parent_payment") or resource.get("sale_id")),
            "amount": amount,
            "currency": currency,
            "refund_id": _str(resource.get("id")),
        }

    if event_type in _PAYPAL_SUBSCRIPTION_KINDS:
        return {"kind": _PAYPAL_SUBSCRIPTION_KINDS[event_type], "subscription_id": _str(resource.get("id"))}

    if event_type == "BILLING.SUBSCRIPTION.PAYMENT.COMPLETED":
        # one transaction per billing cycle, keyed by the cycle's payment time
        subscription_id = _str(resource.get("id"))
        last_payment = dig(resource, "billing_info", "last_payment")
        paid_amount, paid_currency = _paypal_money(last_payment)
        paid_at = _str(dig(last_payment, "time"))
        return {
            "kind": K.SUBSCRIPTION_PAYMENT_SUCCEEDED,
            "external_id": f"{subscription_id}:{paid_at}" if subscription_id and paid_at else None,
            "amount": amount or paid_amount,
            "currency": currency or paid_currency,
            "subscription_id": subscription_id,
        }

    if event_type == "BILLING.SUBSCRIPTION.PAYMENT.FAILED":
        failed_amount, failed_currency = _paypal_money(dig(resource, "billing_info", "last_failed_payment"))
        return {
            "kind": K.SUBSCRIPTION_PAYMENT_FAILED,
            "amount": amount or failed_amount,
            "currency": currency or failed_currency,
            "subscription_id": _str(resource.get("billing_agreement_id") or resource.get("id")),
        }

    return _unrecognized(ProviderKind.PAYPAL, event_type)


def normalize_paypal(event: dict) -> tuple[str, str, dict]:
    missing = [name for name in _PAYPAL_REQUIRED_FIELDS if not event.get(name)]
    if missing or not isinstance(event.get("resource"), dict):
        raise MalformedPayload(f"PayPal event missing fields: {', '.join(missing) or 'resource'}")
    event_type = str(event["event_type"])
    return str(event["id"]), event_type, _paypal_fields(event_type, event["resource"])


# --- Bank transfer ------------------------------------------------------------

_BANK_TRANSFER_KINDS = {
    "transfer.pending": K.PAYMENT_PENDING,
    "transfer.processing": K.PAYMENT_PROCESSING,
    "transfer.completed": K.PAYMENT_SUCCEEDED,
    "transfer.failed": K.PAYMENT_FAILED,
    "transfer.canceled": K.PAYMENT_CANCELED,
    "transfer.returned": K.REFUND_SUCCEEDED,
}


def normalize_bank_transfer(event: dict) -> tuple[str, str, dict]:
    event_id = event.get("id")
    event_type = event.get("type")
    data = event.get("data")
    if not event_id or not event_type or not isinstance(data, dict):
        raise MalformedPayload("Bank transfer event requires id, type and data")
    event_type = str(event_type)

    kind = _BANK_TRANSFER_KINDS.get(event_type)
    if kind is None:
        return str(event_id), event_type, _unrecognized(ProviderKind.BANK_TRANSFER, event_type)
    return str(event_id), event_type, {
        "kind": kind,
        "external_id": _str(data.get("transfer_id")),
        "amount": parse_major_units(data.get("amount")),
        "currency": _upper(data.get("currency")),
        "error": data.get("failure_reason"),
    }


_NORMALIZERS: dict[ProviderKind, Callable[[dict], tuple[str, str, dict]]] = {
    ProviderKind.STRIPE: normalize_stripe,
    ProviderKind.SQUARE: normalize_square,
    ProviderKind.PAYPAL: normalize_paypal,
    ProviderKind.BANK_TRANSFER: normalize_bank_transfer,
}


def normalize_event(
    provider: ProviderKind,
    event: dict,
    body: bytes,
    integration: Optional[PaymentIntegration] = None,
) -> NormalizedEvent:
    """Build the canonical event for a verified payload."""
    event_id, native_type, fields = _NORMALIZERS[provider](event)

    normalized = NormalizedEvent(
        provider=provider,
        event_id=event_id,
        native_type=native_type,
        kind=fields["kind"],
        external_id=fields.get("external_id"),
        amount=fields.get("amount"),
        currency=fields.get("currency"),
        payload_digest=body_digest(body),
        subscription_id=fields.get("subscription_id"),
        refund_id=fields.get("refund_id"),
        error=fields.get("error"),
        details=fields.get("details") or {},
    )

    needs_target = normalized.kind in (
        K.PAYMENT_PENDING, K.PAYMENT_PROCESSING, K.PAYMENT_SUCCEEDED, K.PAYMENT_FAILED,
        K.PAYMENT_CANCELED, K.REFUND_PENDING, K.REFUND_SUCCEEDED, K.REFUND_FAILED,
    )
    if needs_target and not normalized.external_id:
        raise UnprocessableEvent(
            f"{provider.value} event {native_type} has no transaction id"
        )

    logger.debug(
        "Normalized %s/%s -> %s (integration=%s, target=%s)",
        provider.value, native_type, normalized.kind.value,
        integration.id if integration is not None else None, normalized.external_id,
    )
    return normalized
