"""Apply canonical events to the transaction ledger exactly once.

Replays, reordering and concurrent deliveries are all expected. The
(integration, provider event id) pair is recorded in ``processed_events`` in
the same database transaction as the status change and the planned side
effects, so a replay is a no-op and effects are never planned twice.
Concurrent writers are detected through the transaction's version column
and retried a bounded number of times.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from festival_payments import config
from festival_payments.effects import plan_effects
from festival_payments.events import REFUND_KINDS, CanonicalKind, NormalizedEvent, TransactionStatus
from festival_payments.models import (
    PaymentIntegration,
    PaymentTransaction,
    ProcessedEvent,
    utcnow,
)

logger = logging.getLogger(__name__)

S = TransactionStatus

# Direct edges of the lifecycle; anything not yet completed/refunded may fail.
TRANSITIONS: dict[TransactionStatus, set[TransactionStatus]] = {
    S.PENDING: {S.PROCESSING, S.FAILED},
    S.PROCESSING: {S.COMPLETED, S.FAILED, S.CANCELED},
    S.COMPLETED: {S.REFUNDED},
    S.CANCELED: {S.FAILED},
    S.FAILED: set(),
    S.REFUNDED: set(),
}


def _reachable(start: TransactionStatus) -> frozenset[TransactionStatus]:
    seen: set[TransactionStatus] = set()
    frontier = [start]
    while frontier:
        for nxt in TRANSITIONS[frontier.pop()]:
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return frozenset(seen)


REACHABLE = {status: _reachable(status) for status in TransactionStatus}


def can_transition(current: TransactionStatus, proposed: TransactionStatus) -> bool:
    """True when ``proposed`` lies strictly ahead of ``current``."""
    return proposed in REACHABLE[current]


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    INFORMATIONAL = "informational"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    transaction_id: Optional[int] = None
    old_status: Optional[TransactionStatus] = None
    new_status: Optional[TransactionStatus] = None
    effect_ids: list[int] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def already_processed(db: Session, integration_id: int, provider_event_id: str) -> bool:
    return db.scalar(
        select(ProcessedEvent.id).where(
            ProcessedEvent.integration_id == integration_id,
            ProcessedEvent.provider_event_id == provider_event_id,
        )
    ) is not None


def _record(db: Session, integration: PaymentIntegration, event: NormalizedEvent, outcome: ReconcileOutcome) -> None:
    db.add(ProcessedEvent(
        integration_id=integration.id,
        provider_event_id=event.event_id,
        kind=event.kind.value,
        outcome=outcome.value,
        payload_digest=event.payload_digest,
    ))


def check_amounts(transaction: PaymentTransaction, event: NormalizedEvent) -> list[str]:
    """Compare reported money against the stored transaction.

    Mismatches are returned as warnings for the caller to flag; the stored
    amount is never overwritten.
    """
    warnings = []
    if event.currency and transaction.currency and event.currency != transaction.currency:
        warnings.append(f"currency_mismatch: stored {transaction.currency}, reported {event.currency}")

    if event.amount is None or transaction.amount is None:
        return warnings
    stored = Decimal(transaction.amount)
    if event.kind in REFUND_KINDS:
        # partial refunds are legitimate; only more than the charge is suspect
        if event.amount - stored > config.AMOUNT_EPSILON:
            warnings.append(f"amount_mismatch: refund {event.amount} exceeds {stored}")
    elif abs(stored - event.amount) > config.AMOUNT_EPSILON:
        warnings.append(f"amount_mismatch: stored {stored}, reported {event.amount}")
    return warnings


def is_additional_refund(transaction: PaymentTransaction, event: NormalizedEvent) -> bool:
    """A further partial refund, with its own refund id, on a refunded transaction."""
    if transaction.status != S.REFUNDED.value or event.kind is not CanonicalKind.REFUND_SUCCEEDED:
        return False
    if not event.refund_id or event.amount is None:
        return False
    return event.refund_id not in (transaction.metadata_ or {}).get("refund_ids", [])


def _metadata(
    transaction: Optional[PaymentTransaction],
    event: NormalizedEvent,
    old: Optional[TransactionStatus],
    new: TransactionStatus,
    warnings: list[str],
) -> dict:
    now = utcnow().isoformat()
    meta = dict(transaction.metadata_ or {}) if transaction is not None else {}
    meta.update({
        "last_event_id": event.event_id,
        "last_event_kind": event.kind.value,
        "webhook_event_type": event.native_type,
        "webhook_processed_at": now,
    })
    history = list(meta.get("history", []))
    history.append({"from": old.value if old else None, "to": new.value, "event_id": event.event_id, "at": now})
    meta["history"] = history

    if event.kind in REFUND_KINDS:
        if event.amount is not None:
            meta["refund_amount"] = str(event.amount)
        if event.refund_id:
            meta["refund_id"] = event.refund_id
    if event.kind is CanonicalKind.REFUND_SUCCEEDED:
        refunds = list(meta.get("refunds", []))
        refunds.append({
            "refund_id": event.refund_id,
            "amount": str(event.amount) if event.amount is not None else None,
        })
        meta["refunds"] = refunds
        if event.refund_id:
            meta["refund_ids"] = [r["refund_id"] for r in refunds if r["refund_id"]]
    if event.error:
        meta["error"] = event.error
    if event.subscription_id:
        meta["subscription_id"] = event.subscription_id
    for key, value in event.details.items():
        if value is not None:
            meta[key] = value
    if warnings:
        flags = list(meta.get("flags", []))
        flags.extend({"event_id": event.event_id, "warning": w} for w in warnings)
        meta["flags"] = flags
    return meta


def _apply_once(db: Session, integration: PaymentIntegration, event: NormalizedEvent) -> ReconcileResult:
    if already_processed(db, integration.id, event.event_id):
        return ReconcileResult(ReconcileOutcome.DUPLICATE)

    if event.is_informational:
        _record(db, integration, event, ReconcileOutcome.INFORMATIONAL)
        effects = plan_effects(db, integration, None, event, None, None)
        return ReconcileResult(ReconcileOutcome.INFORMATIONAL, effect_ids=[e.id for e in effects])

    proposed = event.proposed_status
    transaction = db.scalars(
        select(PaymentTransaction).where(
            PaymentTransaction.integration_id == integration.id,
            PaymentTransaction.external_id == event.external_id,
        )
    ).first()

    warnings: list[str] = []
    if transaction is None:
        old = None
        transaction = PaymentTransaction(
            integration_id=integration.id,
            external_id=event.external_id,
            amount=event.amount,
            currency=event.currency,
            status=proposed.value,
            metadata_=_metadata(None, event, None, proposed, warnings),
        )
        db.add(transaction)
        db.flush()
    else:
        old = TransactionStatus(transaction.status)
        warnings = check_amounts(transaction, event)
        if not (can_transition(old, proposed) or is_additional_refund(transaction, event)):
            logger.warning(
                "STALE_TRANSITION integration=%s txn=%s event=%s current=%s proposed=%s",
                integration.id, transaction.external_id, event.event_id, old.value, proposed.value,
            )
            _record(db, integration, event, ReconcileOutcome.STALE)
            return ReconcileResult(
                ReconcileOutcome.STALE,
                transaction_id=transaction.id,
                old_status=old,
                new_status=old,
                warnings=warnings,
            )
        transaction.status = proposed.value
        if transaction.amount is None and event.amount is not None:
            transaction.amount = event.amount
            transaction.currency = transaction.currency or event.currency
        transaction.metadata_ = _metadata(transaction, event, old, proposed, warnings)
        db.flush()

    for warning in warnings:
        logger.warning(
            "AMOUNT_CHECK integration=%s txn=%s event=%s %s",
            integration.id, transaction.external_id, event.event_id, warning,
        )

    _record(db, integration, event, ReconcileOutcome.APPLIED)
    effects = plan_effects(db, integration, transaction, event, old, proposed)
    return ReconcileResult(
        ReconcileOutcome.APPLIED,
        transaction_id=transaction.id,
        old_status=old,
        new_status=proposed,
        effect_ids=[e.id for e in effects],
        warnings=warnings,
    )


def reconcile(db: Session, integration: PaymentIntegration, event: NormalizedEvent) -> ReconcileResult:
    """Apply ``event`` and commit, or report why nothing changed."""
    if event.proposed_status is None and not event.is_informational:
        return ReconcileResult(ReconcileOutcome.IGNORED)

    attempts = config.RECONCILE_MAX_ATTEMPTS
    for attempt in range(1, attempts + 1):
        try:
            result = _apply_once(db, integration, event)
            db.commit()
        except (IntegrityError, StaleDataError) as e:
            db.rollback()
            if already_processed(db, integration.id, event.event_id):
                result = ReconcileResult(ReconcileOutcome.DUPLICATE)
                break
            logger.info(
                "Concurrent write on %s/%s, retrying (%d/%d): %s",
                integration.id, event.external_id, attempt, attempts, type(e).__name__,
            )
            continue
        break
    else:
        logger.warning(
            "STALE_TRANSITION integration=%s txn=%s event=%s gave up after %d attempts",
            integration.id, event.external_id, event.event_id, attempts,
        )
        return ReconcileResult(ReconcileOutcome.STALE)

    if result.outcome is ReconcileOutcome.DUPLICATE:
        logger.info("Duplicate event ignored: integration=%s event=%s", integration.id, event.event_id)
    return result


def purge_processed_events(db: Session, retention_days: Optional[int] = None) -> int:
    """Drop dedup rows older than the provider redelivery window."""
    days = config.DEDUP_RETENTION_DAYS if retention_days is None else retention_days
    cutoff = utcnow() - timedelta(days=days)
    result = db.execute(delete(ProcessedEvent).where(ProcessedEvent.processed_at < cutoff))
    db.commit()
    logger.info("Purged %d processed events older than %d days", result.rowcount, days)
    return result.rowcount
