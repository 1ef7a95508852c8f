"""Side effects of accepted transitions: notifications, budget, fan-out.

Effects are planned as ``side_effects`` rows inside the reconciler's
database transaction and executed afterwards, outside the webhook
request/response cycle.

Delivery contract:
- notification and ledger rows are claimed and applied in one commit (exactly once)
- outbound rows are claimed, POSTed, then marked (at least once, retried)
- a failure here never touches the transaction's status
- dispatch functions log and swallow errors; they run as background tasks
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Iterable, Optional

import httpx
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from festival_payments import config
from festival_payments.database import SessionLocal
from festival_payments.events import REFUND_KINDS, CanonicalKind, NormalizedEvent, TransactionStatus
from festival_payments.models import (
    Festival,
    Notification,
    PaymentIntegration,
    PaymentTransaction,
    SideEffect,
    WebhookSubscription,
    utcnow,
)

logger = logging.getLogger(__name__)

NOTIFICATION = "notification"
LEDGER = "ledger"
OUTBOUND = "outbound"

PENDING = "pending"
IN_PROGRESS = "in_progress"
DISPATCHED = "dispatched"
FAILED = "failed"
DEAD = "dead"

K = CanonicalKind

# kind -> (notification type, title, message template)
_NOTIFICATIONS = {
    K.PAYMENT_SUCCEEDED: ("payment_confirmed", "Payment Confirmed", "Payment of {amount} has been confirmed{festival}"),
    K.PAYMENT_FAILED: ("payment_failed", "Payment Failed", "Payment of {amount} failed{festival}"),
    K.PAYMENT_PENDING: ("payment_pending", "Payment Pending", "Payment of {amount} is being processed{festival}"),
    K.PAYMENT_CANCELED: ("payment_canceled", "Payment Canceled", "Payment of {amount} was canceled{festival}"),
    K.REFUND_SUCCEEDED: ("refund_processed", "Refund Processed", "Refund of {amount} has been processed{festival}"),
    K.REFUND_PENDING: ("refund_pending", "Refund Processing", "Refund of {amount} is being processed{festival}"),
    K.REFUND_FAILED: ("refund_failed", "Refund Failed", "Refund of {amount} failed{festival}"),
    K.SUBSCRIPTION_ACTIVATED: ("subscription_activated", "Subscription Activated", "Your subscription has been activated"),
    K.SUBSCRIPTION_CANCELED: ("subscription_cancelled", "Subscription Cancelled", "Your subscription has been cancelled"),
    K.SUBSCRIPTION_SUSPENDED: (
        "subscription_suspended",
        "Subscription Suspended",
        "Your subscription has been suspended. Please check your payment method.",
    ),
    K.SUBSCRIPTION_PAYMENT_SUCCEEDED: (
        "subscription_payment_confirmed",
        "Subscription Payment Confirmed",
        "Subscription payment of {amount} has been processed",
    ),
    K.SUBSCRIPTION_PAYMENT_FAILED: (
        "subscription_payment_failed",
        "Subscription Payment Failed",
        "Subscription payment of {amount} has failed. Please update your payment method.",
    ),
    K.PAYMENT_METHOD_ATTACHED: (
        "payment_method_added",
        "Payment Method Added",
        "A new payment method has been added to your account",
    ),
    K.PAYMENT_SETUP_SUCCEEDED: (
        "payment_setup_complete",
        "Payment Setup Complete",
        "Your payment method has been successfully set up",
    ),
}


def _plain(amount: Optional[Decimal]) -> Optional[str]:
    return format(Decimal(amount).normalize(), "f") if amount is not None else None


def _format_amount(amount: Optional[Decimal], currency: Optional[str]) -> str:
    if amount is None:
        return "an unknown amount"
    text = _plain(amount)
    return f"{text} {currency}" if currency else text


def _ledger_delta(
    transaction: PaymentTransaction,
    event: NormalizedEvent,
    old: Optional[TransactionStatus],
    new: TransactionStatus,
) -> Optional[Decimal]:
    if new is TransactionStatus.COMPLETED and transaction.amount is not None:
        return Decimal(transaction.amount)
    if new is TransactionStatus.REFUNDED and old in (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED):
        refunded = event.amount if event.amount is not None else transaction.amount
        return -Decimal(refunded) if refunded is not None else None
    return None


def _subscribers_for(db: Session, event_name: str) -> list[WebhookSubscription]:
    subscriptions = db.scalars(
        select(WebhookSubscription).where(WebhookSubscription.active.is_(True)).order_by(WebhookSubscription.id)
    ).all()
    return [s for s in subscriptions if not s.events or event_name in s.events]


def plan_effects(
    db: Session,
    integration: PaymentIntegration,
    transaction: Optional[PaymentTransaction],
    event: NormalizedEvent,
    old: Optional[TransactionStatus],
    new: Optional[TransactionStatus],
) -> list[SideEffect]:
    """Insert the outbox rows for one accepted transition (or notice).

    Each row's ``dedup_key`` names the transition edge, so the same edge can
    never be planned twice even if an event slips past deduplication.
    """
    if transaction is not None:
        if old is not None and old is new:
            # further partial refunds share one edge; the refund id tells them apart
            key_base = f"txn:{transaction.id}:refund:{event.refund_id}"
        else:
            key_base = f"txn:{transaction.id}:{old.value if old else 'new'}->{new.value}"
        amount = event.amount if event.kind in REFUND_KINDS and event.amount is not None else transaction.amount
        currency = transaction.currency or event.currency
    else:
        key_base = f"integration:{integration.id}:{event.kind.value}:{event.event_id}"
        amount, currency = event.amount, event.currency

    effects: list[SideEffect] = []

    def add(kind: str, suffix: str, payload: dict) -> None:
        effects.append(SideEffect(
            kind=kind,
            dedup_key=f"{key_base}:{suffix}",
            integration_id=integration.id,
            transaction_id=transaction.id if transaction is not None else None,
            payload=payload,
            status=PENDING,
        ))

    festival = integration.festival
    template = _NOTIFICATIONS.get(event.kind)
    if template is not None:
        ntype, title, message = template
        add(NOTIFICATION, NOTIFICATION, {
            "user_id": integration.user_id,
            "kind": ntype,
            "title": title,
            "message": message.format(
                amount=_format_amount(amount, currency),
                festival=f" for {festival.name}" if festival is not None else "",
            ),
            "related_type": "payment_transaction" if transaction is not None else "festival",
            "related_id": transaction.id if transaction is not None else integration.festival_id,
        })

    if transaction is not None and integration.festival_id is not None:
        delta = _ledger_delta(transaction, event, old, new)
        if delta:
            add(LEDGER, LEDGER, {"festival_id": integration.festival_id, "delta": _plain(delta)})

    event_name = event.kind.value
    outbound = {
        "event": event_name,
        "provider": integration.provider,
        "integration_id": integration.id,
        "transaction_id": transaction.external_id if transaction is not None else None,
        "status": new.value if new else None,
        "previous_status": old.value if old else None,
        "amount": _plain(amount),
        "currency": currency,
        "subscription_id": event.subscription_id,
        "refund_id": event.refund_id,
        "details": {k: v for k, v in event.details.items() if v is not None},
        "festival_id": integration.festival_id,
        "user_id": integration.user_id,
        "occurred_at": utcnow().isoformat(),
    }
    for subscriber in _subscribers_for(db, event_name):
        add(OUTBOUND, f"{OUTBOUND}:{subscriber.id}", {"subscription_id": subscriber.id, "event": outbound})

    db.add_all(effects)
    db.flush()
    return effects


def _claim(db: Session, effect_id: int, status: str, count_attempt: bool) -> bool:
    """Move an effect we are allowed to run into ``status``; False if someone else has it."""
    now = utcnow()
    lease_cutoff = now - timedelta(seconds=config.EFFECT_LEASE_SECONDS)
    values = {"status": status, "claimed_at": now}
    if count_attempt:
        values["attempts"] = SideEffect.attempts + 1
    if status == DISPATCHED:
        values["dispatched_at"] = now
    stmt = (
        update(SideEffect)
        .where(
            SideEffect.id == effect_id,
            or_(
                SideEffect.status.in_([PENDING, FAILED]),
                and_(SideEffect.status == IN_PROGRESS, SideEffect.claimed_at < lease_cutoff),
            ),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def _apply_local(db: Session, effect: SideEffect) -> None:
    payload = effect.payload
    if effect.kind == NOTIFICATION:
        db.add(Notification(
            user_id=payload["user_id"],
            kind=payload["kind"],
            title=payload["title"],
            message=payload["message"],
            related_type=payload.get("related_type"),
            related_id=payload.get("related_id"),
        ))
    elif effect.kind == LEDGER:
        db.execute(
            update(Festival)
            .where(Festival.id == payload["festival_id"])
            .values(current_budget=Festival.current_budget + Decimal(payload["delta"]))
            .execution_options(synchronize_session=False)
        )
    else:
        raise ValueError(f"Unknown side effect kind: {effect.kind}")


def sign_outbound(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _deliver(db: Session, effect: SideEffect, client: httpx.Client) -> None:
    subscription = db.get(WebhookSubscription, effect.payload["subscription_id"])
    if subscription is None or not subscription.active:
        raise LookupError(f"Subscription {effect.payload['subscription_id']} is gone or inactive")

    event = effect.payload["event"]
    body = json.dumps(event, sort_keys=True, separators=(",", ":")).encode("utf-8")
    response = client.post(
        subscription.url,
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Webhook-Event": event["event"],
            "X-Webhook-Delivery": str(uuid.uuid4()),
            "X-Webhook-Signature": sign_outbound(subscription.secret, body),
        },
    )
    response.raise_for_status()


def _mark_failed(db: Session, effect_id: int, error: Exception) -> None:
    try:
        effect = db.get(SideEffect, effect_id)
        if effect is None:
            return
        effect.attempts = (effect.attempts or 0) + 1
        dead = effect.attempts >= config.EFFECT_MAX_ATTEMPTS
        effect.status = DEAD if dead else FAILED
        effect.last_error = f"{type(error).__name__}: {error}"[:1000]
        effect.claimed_at = None
        effect.next_attempt_at = None if dead else utcnow() + timedelta(
            seconds=config.EFFECT_RETRY_BACKOFF_SECONDS * 2 ** (effect.attempts - 1)
        )
        db.commit()
        logger.warning(
            "EFFECT_DISPATCH_FAILED id=%s kind=%s attempts=%s status=%s error=%s",
            effect.id, effect.kind, effect.attempts, effect.status, effect.last_error,
        )
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not record failure of side effect %s", effect_id)


def run_effect(db: Session, effect_id: int, client: httpx.Client) -> bool:
    """Execute one effect if it is still due. Returns True when it was dispatched."""
    effect = db.get(SideEffect, effect_id, populate_existing=True)
    if effect is None or effect.status in (DISPATCHED, DEAD):
        return False

    try:
        if effect.kind == OUTBOUND:
            if not _claim(db, effect_id, IN_PROGRESS, count_attempt=False):
                db.rollback()
                return False
            db.commit()
            _deliver(db, effect, client)
            db.execute(
                update(SideEffect)
                .where(SideEffect.id == effect_id)
                .values(status=DISPATCHED, dispatched_at=utcnow(), attempts=SideEffect.attempts + 1, last_error=None)
                .execution_options(synchronize_session=False)
            )
        else:
            if not _claim(db, effect_id, DISPATCHED, count_attempt=True):
                db.rollback()
                return False
            _apply_local(db, effect)
        db.commit()
    except Exception as e:
        db.rollback()
        _mark_failed(db, effect_id, e)
        return False

    logger.info("EFFECT_DISPATCHED id=%s kind=%s key=%s", effect_id, effect.kind, effect.dedup_key)
    return True


def _run_all(db: Session, effect_ids: Iterable[int]) -> int:
    dispatched = 0
    with httpx.Client(timeout=config.OUTBOUND_TIMEOUT_SECONDS) as client:
        for effect_id in effect_ids:
            if run_effect(db, effect_id, client):
                dispatched += 1
    return dispatched


def dispatch_effects(effect_ids: list[int]) -> int:
    """Background entry point: runs with its own session."""
    if not effect_ids:
        return 0
    db = SessionLocal()
    try:
        return _run_all(db, effect_ids)
    finally:
        db.close()


def due_effect_ids(db: Session, limit: int = 100) -> list[int]:
    now = utcnow()
    lease_cutoff = now - timedelta(seconds=config.EFFECT_LEASE_SECONDS)
    return list(db.scalars(
        select(SideEffect.id)
        .where(
            or_(
                SideEffect.status == PENDING,
                and_(
                    SideEffect.status == FAILED,
                    or_(SideEffect.next_attempt_at.is_(None), SideEffect.next_attempt_at <= now),
                ),
                and_(SideEffect.status == IN_PROGRESS, SideEffect.claimed_at < lease_cutoff),
            )
        )
        .order_by(SideEffect.id)
        .limit(limit)
    ).all())


def retry_due_effects(db: Session, limit: int = 100) -> dict:
    """Replay pending, failed and abandoned effects; safe to run concurrently."""
    ids = due_effect_ids(db, limit)
    dispatched = _run_all(db, ids)
    summary = {"attempted": len(ids), "dispatched": dispatched, "remaining": len(ids) - dispatched}
    logger.info("Side effect retry run: %s", summary)
    return summary
