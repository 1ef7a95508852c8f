"""Inbound payment webhooks, one endpoint per provider.

Each request runs: parse -> resolve + verify -> normalize -> reconcile,
then schedules side effects to run after the response is sent.

Response contract:
- 200 {"received": true} for applied, replayed, stale and ignored events
- 400 malformed body, 401 bad signature, 404 unknown integration,
  422 recognized event that cannot be applied, 500 anything unexpected
- once a transition is committed nothing later turns the response into an
  error; side effects run after the response is sent
"""

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from festival_payments.database import SessionLocal
from festival_payments.effects import dispatch_effects
from festival_payments.errors import MalformedPayload, WebhookError
from festival_payments.events import CanonicalKind, ProviderKind, WebhookRequest
from festival_payments.models import utcnow
from festival_payments.normalizer import normalize_event
from festival_payments.reconciler import ReconcileOutcome, ReconcileResult, reconcile
from festival_payments.resolver import resolve_integration

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _audit(provider: ProviderKind, event_type: str, event_id: str, status: str, **extra) -> None:
    details = "".join(f" {key}={value}" for key, value in extra.items())
    logger.info(
        "WEBHOOK_AUDIT provider=%s event=%s id=%s status=%s%s",
        provider.value, event_type, event_id, status, details,
    )


def parse_payload(body: bytes) -> dict:
    try:
        event = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise MalformedPayload("Invalid JSON")
    if not isinstance(event, dict):
        raise MalformedPayload("Webhook body must be a JSON object")
    return event


def process_webhook(db: Session, request: WebhookRequest) -> ReconcileResult:
    """Run every stage for one delivery; raises ``WebhookError`` on rejection."""
    event = parse_payload(request.body)
    integration = resolve_integration(db, request, event)
    normalized = normalize_event(request.provider, event, request.body, integration)

    if normalized.kind is CanonicalKind.NOOP:
        _audit(request.provider, normalized.native_type, normalized.event_id, "ignored",
               integration=integration.id)
        return ReconcileResult(ReconcileOutcome.IGNORED)

    result = reconcile(db, integration, normalized)
    _audit(
        request.provider, normalized.native_type, normalized.event_id, result.outcome.value,
        integration=integration.id,
        kind=normalized.kind.value,
        txn=normalized.external_id,
        digest=normalized.payload_digest[:16],
    )
    return result


def _run(request: WebhookRequest) -> ReconcileResult:
    db = SessionLocal()
    try:
        return process_webhook(db, request)
    finally:
        db.close()


async def handle_webhook(provider: ProviderKind, request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    body = await request.body()
    webhook = WebhookRequest(
        provider=provider,
        headers={k.lower(): v for k, v in request.headers.items()},
        body=body,
        url=str(request.url),
        received_at=utcnow(),
    )

    try:
        result = await run_in_threadpool(_run, webhook)
    except WebhookError as e:
        _audit(provider, "unknown", "unknown", e.kind.value)
        return JSONResponse({"error": e.message}, status_code=e.status_code)
    except Exception:
        logger.exception("Unexpected failure handling %s webhook", provider.value)
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    if result.effect_ids:
        background_tasks.add_task(dispatch_effects, result.effect_ids)

    elapsed = (utcnow() - webhook.received_at).total_seconds() * 1000
    logger.debug("Webhook processed in %.1fms: %s", elapsed, provider.value)
    return JSONResponse({"received": True}, status_code=200)


@router.post("/stripe")
async def stripe_webhook(request: Request, background_tasks: BackgroundTasks):
    """Card processor A; signed with ``Stripe-Signature``."""
    return await handle_webhook(ProviderKind.STRIPE, request, background_tasks)


@router.post("/square")
async def square_webhook(request: Request, background_tasks: BackgroundTasks):
    """Card processor B; signed with ``X-Square-Signature``."""
    return await handle_webhook(ProviderKind.SQUARE, request, background_tasks)


@router.post("/paypal")
async def paypal_webhook(request: Request, background_tasks: BackgroundTasks):
    """Wallet; signed with the PayPal transmission headers."""
    return await handle_webhook(ProviderKind.PAYPAL, request, background_tasks)


@router.post("/bank-transfer")
async def bank_transfer_webhook(request: Request, background_tasks: BackgroundTasks):
    """Bank transfer notifications; signed with ``X-Signature``."""
    return await handle_webhook(ProviderKind.BANK_TRANSFER, request, background_tasks)
