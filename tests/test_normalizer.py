import json
import logging
from decimal import Decimal

import pytest

from festival_payments.errors import MalformedPayload, UnprocessableEvent
from festival_payments.events import (
    CanonicalKind as K,
    ProviderKind,
    TransactionStatus,
    body_digest,
    from_minor_units,
)
from festival_payments.normalizer import normalize_event


def _normalize(provider, event):
    body = json.dumps(event).encode("utf-8")
    return normalize_event(provider, event, body)


def test_minor_units_respect_zero_decimal_currencies():
    assert from_minor_units(5000, "JPY") == Decimal("5000")
    assert from_minor_units(1999, "usd") == Decimal("19.99")
    assert from_minor_units(None, "USD") is None


# --- Stripe -----------------------------------------------------------------

@pytest.mark.parametrize("event_type, kind", [
    ("payment_intent.created", K.PAYMENT_PENDING),
    ("payment_intent.processing", K.PAYMENT_PROCESSING),
    ("payment_intent.succeeded", K.PAYMENT_SUCCEEDED),
    ("payment_intent.payment_failed", K.PAYMENT_FAILED),
    ("payment_intent.canceled", K.PAYMENT_CANCELED),
])
def test_stripe_payment_intent_kinds(stripe_payload, event_type, kind):
    event = _normalize(ProviderKind.STRIPE, stripe_payload(event_type))
    assert event.kind is kind
    assert event.external_id == "txn_001"
    assert event.amount == Decimal("5000")
    assert event.currency == "JPY"


def test_stripe_usd_amount_in_major_units(stripe_payload):
    event = _normalize(ProviderKind.STRIPE, stripe_payload(amount=1999, currency="usd"))
    assert event.amount == Decimal("19.99")
    assert event.currency == "USD"


def test_stripe_failure_message_kept(stripe_payload):
    payload = stripe_payload("payment_intent.payment_failed", last_payment_error={"message": "Card declined"})
    event = _normalize(ProviderKind.STRIPE, payload)
    assert event.error == "Card declined"
    assert event.proposed_status is TransactionStatus.FAILED


def test_stripe_charge_refunded_targets_payment_intent(stripe_payload):
    payload = stripe_payload(
        "charge.refunded",
        id="ch_1",
        object="charge",
        payment_intent="txn_001",
        amount_refunded=2000,
        refunds={"data": [{"id": "re_1"}]},
    )
    event = _normalize(ProviderKind.STRIPE, payload)
    assert event.kind is K.REFUND_SUCCEEDED
    assert event.external_id == "txn_001"
    assert event.amount == Decimal("2000")
    assert event.refund_id == "re_1"


def test_stripe_failed_refund_is_informational(stripe_payload):
    payload = stripe_payload("charge.refund.updated", id="re_1", status="failed", payment_intent="txn_001")
    event = _normalize(ProviderKind.STRIPE, payload)
    assert event.kind is K.REFUND_FAILED
    assert event.proposed_status is None
    assert event.is_informational


def test_stripe_invoice_paid_is_subscription_payment(stripe_payload):
    payload = stripe_payload(
        "invoice.payment_succeeded", id="in_1", object="invoice",
        payment_intent="txn_009", amount_paid=1200, subscription="sub_1",
    )
    event = _normalize(ProviderKind.STRIPE, payload)
    assert event.kind is K.SUBSCRIPTION_PAYMENT_SUCCEEDED
    assert event.external_id == "txn_009"
    assert event.subscription_id == "sub_1"
    assert event.proposed_status is TransactionStatus.COMPLETED


def test_stripe_invoice_without_payment_intent_is_informational(stripe_payload):
    payload = stripe_payload("invoice.payment_failed", id="in_1", amount_due=1200, subscription="sub_1")
    payload["data"]["object"].pop("amount")
    event = _normalize(ProviderKind.STRIPE, payload)
    assert event.kind is K.SUBSCRIPTION_PAYMENT_FAILED
    assert event.external_id is None
    assert event.is_informational


@pytest.mark.parametrize("event_type, status, kind", [
    ("customer.subscription.created", "active", K.SUBSCRIPTION_ACTIVATED),
    ("customer.subscription.updated", "past_due", K.SUBSCRIPTION_SUSPENDED),
    ("customer.subscription.deleted", "canceled", K.SUBSCRIPTION_CANCELED),
])
def test_stripe_subscription_lifecycle(stripe_payload, event_type, status, kind):
    event = _normalize(ProviderKind.STRIPE, stripe_payload(event_type, id="sub_1", status=status))
    assert event.kind is kind
    assert event.subscription_id == "sub_1"
    assert event.is_informational


def test_stripe_unknown_type_is_noop(stripe_payload):
    event = _normalize(ProviderKind.STRIPE, stripe_payload("customer.created"))
    assert event.kind is K.NOOP
    assert event.proposed_status is None
    assert not event.is_informational


def test_unrecognized_event_logged_as_warning(stripe_payload, caplog):
    caplog.set_level(logging.WARNING)
    _normalize(ProviderKind.STRIPE, stripe_payload("customer.created"))
    assert any(
        r.levelno == logging.WARNING and "customer.created" in r.getMessage() for r in caplog.records
    )


@pytest.mark.parametrize("event_type, obj, kind", [
    ("payment_method.attached", {"id": "pm_1", "object": "payment_method", "type": "card"}, K.PAYMENT_METHOD_ATTACHED),
    ("setup_intent.succeeded", {"id": "seti_1", "object": "setup_intent"}, K.PAYMENT_SETUP_SUCCEEDED),
])
def test_stripe_payment_method_notices(event_type, obj, kind):
    payload = {"id": "evt_pm", "type": event_type, "data": {"object": dict(obj, customer="cus_1")}}
    event = _normalize(ProviderKind.STRIPE, payload)
    assert event.kind is kind
    assert event.is_informational
    assert event.details["customer_id"] == "cus_1"


@pytest.mark.parametrize("amount", ["12,50", "NaN", "Infinity", {"value": 5000}, True])
def test_stripe_non_numeric_amount_is_unprocessable(stripe_payload, amount):
    with pytest.raises(UnprocessableEvent):
        _normalize(ProviderKind.STRIPE, stripe_payload(amount=amount))


def test_stripe_missing_data_object_is_malformed():
    with pytest.raises(MalformedPayload):
        _normalize(ProviderKind.STRIPE, {"id": "evt_1", "type": "payment_intent.succeeded", "data": {}})


def test_stripe_payment_without_id_is_unprocessable(stripe_payload):
    payload = stripe_payload()
    payload["data"]["object"].pop("id")
    with pytest.raises(UnprocessableEvent):
        _normalize(ProviderKind.STRIPE, payload)


def test_digest_is_of_raw_body(stripe_payload):
    payload = stripe_payload()
    body = json.dumps(payload).encode("utf-8")
    assert normalize_event(ProviderKind.STRIPE, payload, body).payload_digest == body_digest(body)


# --- Square -----------------------------------------------------------------

def _square(event_type, name, obj, event_id="sq_evt_1"):
    return {
        "merchant_id": "MERCHANT1",
        "event_id": event_id,
        "type": event_type,
        "data": {"type": name, "id": obj.get("id"), "object": {name: obj}},
    }


@pytest.mark.parametrize("status, kind", [
    ("PENDING", K.PAYMENT_PENDING),
    ("APPROVED", K.PAYMENT_PROCESSING),
    ("COMPLETED", K.PAYMENT_SUCCEEDED),
    ("FAILED", K.PAYMENT_FAILED),
    ("CANCELED", K.PAYMENT_CANCELED),
])
def test_square_payment_status(status, kind):
    payload = _square("payment.updated", "payment", {
        "id": "sq_pay_1", "status": status, "amount_money": {"amount": 2500, "currency": "USD"},
    })
    event = _normalize(ProviderKind.SQUARE, payload)
    assert event.kind is kind
    assert event.external_id == "sq_pay_1"
    assert event.amount == Decimal("25")


def test_square_refund_completed():
    payload = _square("refund.updated", "refund", {
        "id": "sq_ref_1", "payment_id": "sq_pay_1", "status": "COMPLETED",
        "amount_money": {"amount": 1000, "currency": "JPY"},
    })
    event = _normalize(ProviderKind.SQUARE, payload)
    assert event.kind is K.REFUND_SUCCEEDED
    assert event.external_id == "sq_pay_1"
    assert event.refund_id == "sq_ref_1"
    assert event.amount == Decimal("1000")


def test_square_unknown_payment_status_is_noop():
    payload = _square("payment.updated", "payment", {"id": "sq_pay_1", "status": "MYSTERY"})
    assert _normalize(ProviderKind.SQUARE, payload).kind is K.NOOP


def test_square_subscription_paused():
    payload = _square("subscription.updated", "subscription", {"id": "sq_sub_1", "status": "PAUSED"})
    event = _normalize(ProviderKind.SQUARE, payload)
    assert event.kind is K.SUBSCRIPTION_SUSPENDED
    assert event.subscription_id == "sq_sub_1"


def test_square_invoice_updated_is_a_notice():
    payload = _square("invoice.updated", "invoice", {
        "id": "inv_1", "subscription_id": "sq_sub_1", "status": "paid", "location_id": "LOC1",
    })
    event = _normalize(ProviderKind.SQUARE, payload)
    assert event.kind is K.INVOICE_UPDATED
    assert event.is_informational
    assert event.subscription_id == "sq_sub_1"
    assert event.details == {"invoice_id": "inv_1", "invoice_status": "PAID"}


def test_square_without_event_id_is_malformed():
    with pytest.raises(MalformedPayload):
        _normalize(ProviderKind.SQUARE, {"type": "payment.updated", "data": {}})


# --- PayPal -----------------------------------------------------------------

def _paypal(event_type, resource, event_id="WH-EVT-1"):
    return {
        "id": event_id,
        "create_time": "2026-10-19T10:00:00Z",
        "resource_type": "sale",
        "event_type": event_type,
        "resource": resource,
    }


def test_paypal_sale_completed_targets_parent_payment():
    payload = _paypal("PAYMENT.SALE.COMPLETED", {
        "id": "SALE-1", "parent_payment": "PAY-1", "amount": {"total": "49.50", "currency": "USD"},
    })
    event = _normalize(ProviderKind.PAYPAL, payload)
    assert event.kind is K.PAYMENT_SUCCEEDED
    assert event.external_id == "PAY-1"
    assert event.amount == Decimal("49.50")
    assert event.details == {"sale_id": "SALE-1"}


def test_paypal_sale_with_billing_agreement_is_subscription_payment():
    payload = _paypal("PAYMENT.SALE.COMPLETED", {
        "id": "SALE-2", "billing_agreement_id": "I-SUB", "amount": {"total": "10.00", "currency": "USD"},
    })
    event = _normalize(ProviderKind.PAYPAL, payload)
    assert event.kind is K.SUBSCRIPTION_PAYMENT_SUCCEEDED
    assert event.subscription_id == "I-SUB"
    assert event.external_id == "SALE-2"


def test_paypal_refund():
    payload = _paypal("PAYMENT.SALE.REFUNDED", {
        "id": "REF-1", "parent_payment": "PAY-1", "amount": {"total": "49.50", "currency": "USD"},
    })
    event = _normalize(ProviderKind.PAYPAL, payload)
    assert event.kind is K.REFUND_SUCCEEDED
    assert event.external_id == "PAY-1"
    assert event.refund_id == "REF-1"


def test_paypal_subscription_cancelled():
    event = _normalize(ProviderKind.PAYPAL, _paypal("BILLING.SUBSCRIPTION.CANCELLED", {"id": "I-SUB"}))
    assert event.kind is K.SUBSCRIPTION_CANCELED
    assert event.is_informational


def test_paypal_subscription_payment_completed_is_one_transaction_per_cycle():
    payload = _paypal("BILLING.SUBSCRIPTION.PAYMENT.COMPLETED", {
        "id": "I-SUB",
        "billing_info": {"last_payment": {
            "amount": {"value": "1200", "currency_code": "JPY"},
            "time": "2026-10-01T00:00:00Z",
        }},
    })
    event = _normalize(ProviderKind.PAYPAL, payload)
    assert event.kind is K.SUBSCRIPTION_PAYMENT_SUCCEEDED
    assert event.subscription_id == "I-SUB"
    assert event.external_id == "I-SUB:2026-10-01T00:00:00Z"
    assert event.amount == Decimal("1200")
    assert event.currency == "JPY"
    assert event.proposed_status is TransactionStatus.COMPLETED


def test_paypal_amount_that_is_not_an_object_is_unprocessable():
    payload = _paypal("PAYMENT.SALE.COMPLETED", {"id": "SALE-1", "parent_payment": "PAY-1", "amount": "49.50"})
    with pytest.raises(UnprocessableEvent):
        _normalize(ProviderKind.PAYPAL, payload)


def test_paypal_missing_required_fields_is_malformed():
    payload = _paypal("PAYMENT.SALE.COMPLETED", {"id": "SALE-1"})
    del payload["create_time"]
    with pytest.raises(MalformedPayload):
        _normalize(ProviderKind.PAYPAL, payload)


# --- Bank transfer ------------------------------------------------------------

@pytest.mark.parametrize("event_type, kind", [
    ("transfer.pending", K.PAYMENT_PENDING),
    ("transfer.completed", K.PAYMENT_SUCCEEDED),
    ("transfer.returned", K.REFUND_SUCCEEDED),
])
def test_bank_transfer_kinds(event_type, kind):
    payload = {"id": "bt_evt_1", "type": event_type,
               "data": {"transfer_id": "bt_1", "amount": "5000", "currency": "jpy"}}
    event = _normalize(ProviderKind.BANK_TRANSFER, payload)
    assert event.kind is kind
    assert event.external_id == "bt_1"
    assert event.amount == Decimal("5000")
    assert event.currency == "JPY"


def test_bank_transfer_unknown_type_is_noop():
    payload = {"id": "bt_evt_1", "type": "transfer.reviewed", "data": {}}
    assert _normalize(ProviderKind.BANK_TRANSFER, payload).kind is K.NOOP


def test_bank_transfer_comma_amount_is_unprocessable():
    payload = {"id": "bt_evt_1", "type": "transfer.completed",
               "data": {"transfer_id": "bt_1", "amount": "12,50", "currency": "EUR"}}
    with pytest.raises(UnprocessableEvent):
        _normalize(ProviderKind.BANK_TRANSFER, payload)


def test_bank_transfer_without_transfer_id_is_unprocessable():
    payload = {"id": "bt_evt_1", "type": "transfer.completed", "data": {"amount": "10"}}
    with pytest.raises(UnprocessableEvent):
        _normalize(ProviderKind.BANK_TRANSFER, payload)
