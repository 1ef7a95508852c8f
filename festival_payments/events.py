"""Canonical vocabulary shared by every provider."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from festival_payments.errors import UnprocessableEvent


class ProviderKind(str, Enum):
    STRIPE = "stripe"                # card processor A
    SQUARE = "square"                # card processor B
    PAYPAL = "paypal"                # wallet
    BANK_TRANSFER = "bank_transfer"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class CanonicalKind(str, Enum):
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_PROCESSING = "payment_processing"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELED = "payment_canceled"
    REFUND_PENDING = "refund_pending"
    REFUND_SUCCEEDED = "refund_succeeded"
    REFUND_FAILED = "refund_failed"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_PAYMENT_SUCCEEDED = "subscription_payment_succeeded"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription_payment_failed"
    PAYMENT_METHOD_ATTACHED = "payment_method_attached"
    PAYMENT_SETUP_SUCCEEDED = "payment_setup_succeeded"
    INVOICE_UPDATED = "invoice_updated"
    NOOP = "noop"


PROPOSED_STATUS = {
    CanonicalKind.PAYMENT_PENDING: TransactionStatus.PENDING,
    CanonicalKind.PAYMENT_PROCESSING: TransactionStatus.PROCESSING,
    CanonicalKind.PAYMENT_SUCCEEDED: TransactionStatus.COMPLETED,
    CanonicalKind.PAYMENT_FAILED: TransactionStatus.FAILED,
    CanonicalKind.PAYMENT_CANCELED: TransactionStatus.CANCELED,
    CanonicalKind.REFUND_SUCCEEDED: TransactionStatus.REFUNDED,
    CanonicalKind.SUBSCRIPTION_PAYMENT_SUCCEEDED: TransactionStatus.COMPLETED,
    CanonicalKind.SUBSCRIPTION_PAYMENT_FAILED: TransactionStatus.FAILED,
}

SUBSCRIPTION_PAYMENT_KINDS = {
    CanonicalKind.SUBSCRIPTION_PAYMENT_SUCCEEDED,
    CanonicalKind.SUBSCRIPTION_PAYMENT_FAILED,
}

REFUND_KINDS = {
    CanonicalKind.REFUND_PENDING,
    CanonicalKind.REFUND_SUCCEEDED,
    CanonicalKind.REFUND_FAILED,
}

# Currencies whose minor unit equals the major unit
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def parse_amount(amount: Any) -> Decimal:
    """Provider-reported amount as a finite ``Decimal``; anything else is unprocessable."""
    if isinstance(amount, bool) or not isinstance(amount, (str, int, float, Decimal)):
        raise UnprocessableEvent(f"Amount must be a number, got {type(amount).__name__}")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise UnprocessableEvent(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise UnprocessableEvent(f"Invalid amount: {amount!r}")
    return value


def from_minor_units(amount: Any, currency: Optional[str]) -> Optional[Decimal]:
    if amount is None:
        return None
    value = parse_amount(amount)
    if currency and currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return value
    return value / Decimal(100)


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount)
    return int(amount * 100)


def parse_major_units(amount: Any) -> Optional[Decimal]:
    if amount in (None, ""):
        return None
    return parse_amount(amount)


def body_digest(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


@dataclass(frozen=True)
class WebhookRequest:
    """Everything a stage may look at, passed explicitly."""

    provider: ProviderKind
    headers: dict[str, str]  # lowercase keys
    body: bytes
    url: str
    received_at: datetime

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


@dataclass(frozen=True)
class NormalizedEvent:
    provider: ProviderKind
    event_id: str
    native_type: str
    kind: CanonicalKind
    external_id: Optional[str]
    amount: Optional[Decimal]
    currency: Optional[str]
    payload_digest: str
    subscription_id: Optional[str] = None
    refund_id: Optional[str] = None
    error: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def proposed_status(self) -> Optional[TransactionStatus]:
        # subscription-level payment notices without a transaction only inform
        if self.external_id is None and self.kind in SUBSCRIPTION_PAYMENT_KINDS:
            return None
        return PROPOSED_STATUS.get(self.kind)

    @property
    def is_informational(self) -> bool:
        return self.kind is not CanonicalKind.NOOP and self.proposed_status is None
