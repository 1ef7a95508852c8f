"""Webhook signature verification, one scheme per provider.

Security contract:
- Every comparison is constant-time (hmac.compare_digest or the SDK's equivalent)
- Missing secret or public key -> verification fails (fail-closed)
- Stripe timestamp tolerance applies in both directions (replay and clock skew)
- Verifiers are pure: they read the request and the integration, nothing else
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
import zlib
from urllib.parse import urlsplit

import stripe
from jose import jwk
from jose.constants import ALGORITHMS
from jose.exceptions import JWKError

from festival_payments import config
from festival_payments.events import ProviderKind, WebhookRequest
from festival_payments.models import PaymentIntegration

logger = logging.getLogger(__name__)

STRIPE_SIGNATURE_HEADER = "stripe-signature"
SQUARE_SIGNATURE_HEADER = "x-square-signature"
SQUARE_HMAC_SHA256_HEADER = "x-square-hmacsha256-signature"
PAYPAL_TRANSMISSION_ID = "paypal-transmission-id"
PAYPAL_TRANSMISSION_TIME = "paypal-transmission-time"
PAYPAL_TRANSMISSION_SIG = "paypal-transmission-sig"
PAYPAL_AUTH_ALGO = "paypal-auth-algo"
BANK_TRANSFER_SIGNATURE_HEADER = "x-signature"

_PAYPAL_SUPPORTED_ALGOS = {"SHA256withRSA"}


def _stripe_timestamp(header: str) -> int | None:
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None


def verify_stripe(request: WebhookRequest, integration: PaymentIntegration) -> bool:
    """Stripe v1 scheme: ``t=<ts>,v1=<hex>`` over ``"{t}.{body}"``."""
    secret = integration.webhook_secret
    if not secret:
        logger.warning("No webhook secret configured for stripe integration %s", integration.id)
        return False
    header = request.header(STRIPE_SIGNATURE_HEADER)
    if not header:
        return False

    tolerance = config.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS
    timestamp = _stripe_timestamp(header)
    if timestamp is None:
        return False
    if timestamp - time.time() > tolerance:
        logger.warning("Stripe webhook timestamp in the future: %s", timestamp)
        return False

    try:
        payload = request.body.decode("utf-8")
        stripe.WebhookSignature.verify_header(payload, header, secret, tolerance=tolerance)
    except UnicodeDecodeError:
        return False
    except stripe.SignatureVerificationError as e:
        logger.info("Stripe signature rejected for integration %s: %s", integration.id, e)
        return False
    return True


def square_notification_url(request: WebhookRequest, integration: PaymentIntegration) -> str:
    """URL Square signed: the stored one, else the public base plus request path."""
    if integration.notification_url:
        return integration.notification_url
    if config.PUBLIC_BASE_URL:
        return config.PUBLIC_BASE_URL + urlsplit(request.url).path
    return request.url


def verify_square(request: WebhookRequest, integration: PaymentIntegration) -> bool:
    """HMAC-SHA256 over ``notification_url + body``.

    ``X-Square-Signature`` carries a hex digest; the newer
    ``X-Square-HmacSha256-Signature`` carries the same digest base64-encoded.
    """
    secret = integration.webhook_secret
    if not secret:
        logger.warning("No webhook secret configured for square integration %s", integration.id)
        return False

    url = square_notification_url(request, integration)
    digest = hmac.new(secret.encode("utf-8"), url.encode("utf-8") + request.body, hashlib.sha256).digest()

    hex_sig = request.header(SQUARE_SIGNATURE_HEADER)
    if hex_sig:
        return hmac.compare_digest(digest.hex(), hex_sig.strip().lower())
    b64_sig = request.header(SQUARE_HMAC_SHA256_HEADER)
    if b64_sig:
        return hmac.compare_digest(base64.b64encode(digest).decode("ascii"), b64_sig.strip())
    return False


def paypal_public_key(integration: PaymentIntegration) -> str:
    return integration.public_key or config.PAYPAL_WEBHOOK_PUBLIC_KEY


def paypal_signed_message(request: WebhookRequest, webhook_id: str) -> bytes:
    transmission_id = request.header(PAYPAL_TRANSMISSION_ID) or ""
    transmission_time = request.header(PAYPAL_TRANSMISSION_TIME) or ""
    crc = zlib.crc32(request.body) & 0xFFFFFFFF
    return f"{transmission_id}|{transmission_time}|{webhook_id}|{crc}".encode("utf-8")


def verify_paypal(request: WebhookRequest, integration: PaymentIntegration) -> bool:
    """RS256 over ``id|time|webhook_id|crc32(body)`` with the published key."""
    pem = paypal_public_key(integration)
    if not pem:
        logger.warning("No PayPal public key available for integration %s, rejecting", integration.id)
        return False
    if not integration.webhook_id:
        logger.warning("No PayPal webhook id configured for integration %s", integration.id)
        return False

    algo = request.header(PAYPAL_AUTH_ALGO) or "SHA256withRSA"
    if algo not in _PAYPAL_SUPPORTED_ALGOS:
        logger.warning("Unsupported PayPal auth algorithm: %s", algo)
        return False
    if not request.header(PAYPAL_TRANSMISSION_ID) or not request.header(PAYPAL_TRANSMISSION_TIME):
        return False
    encoded_sig = request.header(PAYPAL_TRANSMISSION_SIG)
    if not encoded_sig:
        return False

    try:
        signature = base64.b64decode(encoded_sig, validate=True)
        key = jwk.construct(pem, algorithm=ALGORITHMS.RS256)
        return bool(key.verify(paypal_signed_message(request, integration.webhook_id), signature))
    except (binascii.Error, JWKError, ValueError) as e:
        logger.warning("PayPal signature check failed for integration %s: %s", integration.id, e)
        return False


def verify_bank_transfer(request: WebhookRequest, integration: PaymentIntegration) -> bool:
    """``X-Signature: sha256=<hex>`` HMAC-SHA256 over the raw body."""
    secret = integration.webhook_secret
    if not secret:
        logger.warning("No webhook secret configured for bank transfer integration %s", integration.id)
        return False
    header = request.header(BANK_TRANSFER_SIGNATURE_HEADER)
    if not header:
        return False

    expected = hmac.new(secret.encode("utf-8"), request.body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", header.strip())


VERIFIERS = {
    ProviderKind.STRIPE: verify_stripe,
    ProviderKind.SQUARE: verify_square,
    ProviderKind.PAYPAL: verify_paypal,
    ProviderKind.BANK_TRANSFER: verify_bank_transfer,
}


def verify_webhook(request: WebhookRequest, integration: PaymentIntegration) -> bool:
    return VERIFIERS[request.provider](request, integration)
