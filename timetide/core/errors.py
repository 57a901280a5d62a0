"""
Error taxonomy for the TimeTide scheduling core
Every failure inside a job handler is classified as transient, auth or validation
"""

import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Optional

import httpx


class ErrorKind(Enum):
    """Classification that drives retry behaviour"""
    TRANSIENT = "transient"
    AUTH = "auth"
    VALIDATION = "validation"
    EXHAUSTION = "exhaustion"


class TimetideError(Exception):
    """Base exception for all scheduling-core errors"""
    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TransientError(TimetideError):
    """Network timeout, 5xx or similar: retried with backoff"""
    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimitError(TransientError):
    """Provider rate limit; retry_after carries the provider-supplied minimum wait"""
    pass


class AuthError(TimetideError):
    """Expired or revoked grant, rejected credentials or signature"""
    kind = ErrorKind.AUTH


class ValidationError(TimetideError):
    """Malformed payload, unknown job type or missing entity"""
    kind = ErrorKind.VALIDATION


class NotFoundError(ValidationError):
    """Referenced entity does not exist"""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} '{entity_id}' not found")
        self.entity = entity
        self.entity_id = entity_id


class SyncTokenExpiredError(TimetideError):
    """Provider rejected an incremental sync token; a full pull is required"""
    kind = ErrorKind.TRANSIENT


class JobEnqueueError(TimetideError):
    """A job could not be persisted"""
    pass


class DeliveryRejectedError(TimetideError):
    """A manual delivery retry was refused"""
    kind = ErrorKind.VALIDATION


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given either as seconds or as an HTTP date"""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def error_from_response(response: httpx.Response, incremental: bool = False) -> TimetideError:
    """Map a failed provider / token endpoint response onto the taxonomy"""
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = {}
    oauth_error = body.get('error') if isinstance(body, dict) else None
    if isinstance(oauth_error, dict):
        oauth_error = oauth_error.get('code') or oauth_error.get('status')

    detail = f"HTTP {status}"
    if oauth_error:
        detail = f"{detail} ({oauth_error})"

    if oauth_error in ('invalid_grant', 'invalid_client', 'unauthorized_client'):
        return AuthError(f"Authorization revoked or expired: {detail}")
    if status in (401, 403):
        return AuthError(f"Provider rejected credentials: {detail}")
    if status == 429:
        return RateLimitError(f"Provider rate limit: {detail}",
                              retry_after=parse_retry_after(response.headers.get('Retry-After')))
    if status == 410 and incremental:
        return SyncTokenExpiredError(f"Sync token no longer valid: {detail}")
    if status == 408 or status >= 500:
        return TransientError(f"Provider unavailable: {detail}",
                              retry_after=parse_retry_after(response.headers.get('Retry-After')))
    return ValidationError(f"Provider rejected request: {detail}")


def classify_exception(exc: BaseException) -> ErrorKind:
    """Classify any exception raised by a handler"""
    if isinstance(exc, TimetideError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        return error_from_response(exc.response).kind
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ErrorKind.VALIDATION
    return ErrorKind.TRANSIENT


def retry_after_of(exc: BaseException) -> Optional[float]:
    """Minimum wait requested by the failure, if any"""
    return getattr(exc, 'retry_after', None)
