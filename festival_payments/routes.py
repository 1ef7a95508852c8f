from decimal import Decimal
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from festival_payments.auth import verify_token
from festival_payments.database import SessionLocal
from festival_payments.effects import retry_due_effects
from festival_payments.events import ProviderKind, TransactionStatus, to_minor_units
from festival_payments.models import Festival, PaymentIntegration, PaymentTransaction, WebhookSubscription
from festival_payments.reconciler import purge_processed_events
from festival_payments.stripe_service import create_payment, refund_payment

router = APIRouter()


class IntegrationRequest(BaseModel):
    provider: ProviderKind
    account_id: str
    name: str = ""
    location_id: Optional[str] = None
    webhook_secret: Optional[str] = None
    public_key: Optional[str] = None
    webhook_id: Optional[str] = None
    notification_url: Optional[str] = None
    api_key: Optional[str] = None
    user_id: int
    festival_id: Optional[int] = None


class PaymentRequest(BaseModel):
    order_id: str
    amount: Decimal = Field(gt=0)
    currency: str = "jpy"


class RefundRequest(BaseModel):
    transaction_id: str
    amount: Optional[Decimal] = Field(default=None, gt=0)


class SubscriptionRequest(BaseModel):
    url: str
    secret: str
    events: list[str] = []


def _integration_dict(integration: PaymentIntegration) -> dict:
    return {
        "id": integration.id,
        "provider": integration.provider,
        "account_id": integration.account_id,
        "location_id": integration.location_id,
        "active": integration.active,
        "user_id": integration.user_id,
        "festival_id": integration.festival_id,
    }


def _transaction_dict(transaction: PaymentTransaction) -> dict:
    return {
        "id": transaction.id,
        "transaction_id": transaction.external_id,
        "order_id": transaction.order_id,
        "amount": str(transaction.amount) if transaction.amount is not None else None,
        "currency": transaction.currency,
        "status": transaction.status,
        "metadata": transaction.metadata_,
    }


def _get_integration(db, integration_id: int) -> PaymentIntegration:
    integration = db.get(PaymentIntegration, integration_id)
    if integration is None:
        raise HTTPException(status_code=404, detail="Integration not found")
    return integration


def _require_stripe(integration: PaymentIntegration) -> None:
    if integration.provider != ProviderKind.STRIPE.value or not integration.active:
        raise HTTPException(status_code=422, detail="Payments can only be created on an active Stripe integration")


@router.post("/integrations", status_code=201)
def create_integration(request: IntegrationRequest, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        if request.festival_id is not None and db.get(Festival, request.festival_id) is None:
            raise HTTPException(status_code=404, detail="Festival not found")

        existing = db.query(PaymentIntegration).filter_by(
            provider=request.provider.value, account_id=request.account_id, active=True
        ).first()
        if existing:
            raise HTTPException(status_code=409, detail="An active integration already exists for this account")

        integration = PaymentIntegration(**request.model_dump(exclude={"provider"}), provider=request.provider.value)
        db.add(integration)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise HTTPException(status_code=409, detail="An active integration already exists for this account")
        return _integration_dict(integration)
    finally:
        db.close()


@router.post("/integrations/{integration_id}/deactivate")
def deactivate_integration(integration_id: int, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        integration = _get_integration(db, integration_id)
        integration.active = False
        db.commit()
        return _integration_dict(integration)
    finally:
        db.close()


@router.get("/integrations/{integration_id}/transactions")
def list_transactions(integration_id: int, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        _get_integration(db, integration_id)
        transactions = (
            db.query(PaymentTransaction)
            .filter_by(integration_id=integration_id)
            .order_by(PaymentTransaction.id)
            .all()
        )
        return {"transactions": [_transaction_dict(t) for t in transactions]}
    finally:
        db.close()


@router.post("/integrations/{integration_id}/payments")
def create_payment_api(integration_id: int, request: PaymentRequest, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        integration = _get_integration(db, integration_id)
        _require_stripe(integration)

        existing = db.query(PaymentTransaction).filter_by(
            integration_id=integration.id, order_id=request.order_id
        ).first()
        if existing:
            return {"transaction_id": existing.external_id, "status": existing.status}

        try:
            intent = create_payment(integration, request.amount, request.currency, request.order_id)
        except stripe.StripeError as e:
            raise HTTPException(status_code=502, detail=f"Payment provider error: {e.user_message or e}")

        transaction = PaymentTransaction(
            integration_id=integration.id,
            external_id=intent.id,
            order_id=request.order_id,
            amount=request.amount,
            currency=request.currency.upper(),
            status=TransactionStatus.PENDING.value,
            metadata_={"order_id": request.order_id},
        )
        db.add(transaction)
        try:
            db.commit()
        except IntegrityError:
            # the payment_intent.created webhook got there first
            db.rollback()
            transaction = db.query(PaymentTransaction).filter_by(
                integration_id=integration.id, external_id=intent.id
            ).one()
            transaction.order_id = request.order_id
            db.commit()

        return {"transaction_id": intent.id, "client_secret": intent.client_secret}
    finally:
        db.close()


@router.post("/integrations/{integration_id}/refunds")
def refund(integration_id: int, request: RefundRequest, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        integration = _get_integration(db, integration_id)
        _require_stripe(integration)

        transaction = db.query(PaymentTransaction).filter_by(
            integration_id=integration.id, external_id=request.transaction_id
        ).first()
        if not transaction or transaction.status != TransactionStatus.COMPLETED.value:
            return {"message": "Nothing to refund"}

        amount_minor = None
        if request.amount is not None:
            amount_minor = to_minor_units(request.amount, transaction.currency or "JPY")
        try:
            refund_payment(integration, transaction.external_id, amount_minor)
        except stripe.StripeError as e:
            raise HTTPException(status_code=502, detail=f"Payment provider error: {e.user_message or e}")

        # the status moves to refunded when the provider's webhook arrives
        return {"status": "refund_requested", "transaction_id": transaction.external_id}
    finally:
        db.close()


@router.post("/subscriptions", status_code=201)
def create_subscription(request: SubscriptionRequest, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        subscription = WebhookSubscription(url=request.url, secret=request.secret, events=request.events)
        db.add(subscription)
        db.commit()
        return {"id": subscription.id, "url": subscription.url, "events": subscription.events}
    finally:
        db.close()


@router.post("/effects/retry")
def retry_effects(limit: int = 100, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        return retry_due_effects(db, limit=limit)
    finally:
        db.close()


@router.post("/maintenance/purge-processed-events")
def purge_events(retention_days: Optional[int] = None, auth=Depends(verify_token)):
    db = SessionLocal()
    try:
        return {"purged": purge_processed_events(db, retention_days)}
    finally:
        db.close()
