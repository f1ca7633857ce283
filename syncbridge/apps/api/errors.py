from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from syncbridge.core.errors import (
    CredentialEncryptionError,
    CredentialsMissing,
    HttpError,
    InvalidPostcondition,
    InvalidPrecondition,
    InvalidStateChange,
    MalformedPayload,
    SyncBridgeError,
    TableAlreadyExists,
    UnknownServiceError,
)


logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
_ERROR_STATUS: tuple[tuple[type[SyncBridgeError], int, str], ...] = (
    (UnknownServiceError, 400, "UNKNOWN_SERVICE"),
    (InvalidStateChange, 400, "INVALID_STATE_CHANGE"),
    (MalformedPayload, 400, "MALFORMED_PAYLOAD"),
    (InvalidPrecondition, 409, "INVALID_DEPENDENCY"),
    (InvalidPostcondition, 409, "INTEGRATION_MISCONFIGURED"),
    (CredentialsMissing, 409, "CREDENTIALS_MISSING"),
    (TableAlreadyExists, 409, "TABLE_EXISTS"),
    (HttpError, 502, "UPSTREAM_ERROR"),
    (CredentialEncryptionError, 500, "CREDENTIAL_ENCRYPTION_ERROR"),
)


def status_for(exc: SyncBridgeError) -> tuple[int, str]:
    for error_type, status_code, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


async def syncbridge_exception_handler(request: Request, exc: SyncBridgeError) -> JSONResponse:
    # Domain errors carry caller-safe messages; only unexpected ones are logged with a trace.
    status_code, code = status_for(exc)
    if status_code >= 500:
        logger.error("request_failed", exc_info=exc, extra={"path": request.url.path})
    return JSONResponse(status_code=status_code, content={"detail": {"code": code, "message": str(exc)}})
