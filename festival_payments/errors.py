"""Typed errors raised at each webhook stage.

The gateway never inspects exception classes; it maps ``error.kind`` to an
HTTP status through ``HTTP_STATUS_BY_KIND``.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    MALFORMED_PAYLOAD = "malformed_payload"
    INVALID_SIGNATURE = "invalid_signature"
    INTEGRATION_NOT_FOUND = "integration_not_found"
    UNPROCESSABLE_EVENT = "unprocessable_event"
    INTERNAL = "internal"


HTTP_STATUS_BY_KIND = {
    ErrorKind.MALFORMED_PAYLOAD: 400,
    ErrorKind.INVALID_SIGNATURE: 401,
    ErrorKind.INTEGRATION_NOT_FOUND: 404,
    ErrorKind.UNPROCESSABLE_EVENT: 422,
    ErrorKind.INTERNAL: 500,
}


class WebhookError(Exception):
    kind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]


class MalformedPayload(WebhookError):
    kind = ErrorKind.MALFORMED_PAYLOAD


class InvalidSignature(WebhookError):
    kind = ErrorKind.INVALID_SIGNATURE


class IntegrationNotFound(WebhookError):
    kind = ErrorKind.INTEGRATION_NOT_FOUND


class UnprocessableEvent(WebhookError):
    """A recognized event kind that lacks the fields needed to act on it."""

    kind = ErrorKind.UNPROCESSABLE_EVENT
