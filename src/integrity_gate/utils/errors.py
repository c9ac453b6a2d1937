"""
Standardized error handling for the Device Integrity Gate
"""

import logging
import uuid
from typing import Dict, Any, Optional

from fastapi import Request
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.responses import JSONResponse

from ..services.attestation.base import AttestationResult, Reason

logger = logging.getLogger(__name__)

ERROR_REGISTRY = {
    400: ("INTEGRITY-400", "Bad Request: Missing or malformed input", False),
    401: ("INTEGRITY-401", "Unauthorized: Attestation rejected", False),
    404: ("INTEGRITY-404", "Not Found: Resource does not exist", False),
    405: ("INTEGRITY-405", "Method Not Allowed", False),
    422: ("INTEGRITY-422", "Unprocessable Entity: Semantic validation error", False),
    500: ("INTEGRITY-500", "Internal Server Error: Generic server failure", True),
    503: ("INTEGRITY-503", "Service Unavailable: Challenge store unreachable", True),
}

REASON_STATUS = {
    Reason.MISSING_FIELDS: 400,
    Reason.MISSING_KEY_ID: 400,
    Reason.BAD_PLATFORM: 400,
    Reason.INVALID_REQUEST_ID: 401,
    Reason.NONCE_MISMATCH: 401,
    Reason.NO_PAYLOAD: 401,
    Reason.UNAUTHORIZED: 401,
    Reason.PACKAGE_MISMATCH: 401,
    Reason.APP_NOT_RECOGNIZED: 401,
    Reason.SIGNING_CERT_MISMATCH: 401,
    Reason.DEVICE_INTEGRITY_FAILED: 401,
    Reason.SERVER_ERROR: 500,
}

NO_STORE_HEADERS = {"Cache-Control": "no-store"}


def status_for_reason(reason: Optional[str]) -> int:
    """HTTP status for a reason code; "reason:detail" codes use the reason part."""
    if not reason:
        return 500
    return REASON_STATUS.get(reason.split(":", 1)[0], 401)


def reason_response(reason: str, status_code: Optional[int] = None,
                    correlation_id: Optional[str] = None,
                    detail: Optional[str] = None,
                    debug: bool = False) -> JSONResponse:
    """
    Build the {ok: false, reason} body.

    correlationId and detail are only attached in diagnostic mode.
    """
    content: Dict[str, Any] = {"ok": False, "reason": reason}
    if debug:
        content["correlationId"] = correlation_id or uuid.uuid4().hex
        if detail:
            content["detail"] = detail
    return JSONResponse(
        status_code=status_code or status_for_reason(reason),
        content=content,
        headers=NO_STORE_HEADERS,
    )


def result_response(result: AttestationResult, debug: bool = False) -> JSONResponse:
    """Turn an orchestrator result into the endpoint response."""
    if result.is_valid:
        return JSONResponse(status_code=200, content={"ok": True}, headers=NO_STORE_HEADERS)
    return reason_response(
        result.reason or Reason.SERVER_ERROR,
        correlation_id=result.correlation_id,
        detail=result.detail,
        debug=debug,
    )


def persistence_failure_response(exc: Exception, debug: bool = False) -> JSONResponse:
    """Store failures are 503 so clients can tell them apart from a missing challenge."""
    correlation_id = uuid.uuid4().hex
    logger.error(f"Challenge store failure - Correlation: {correlation_id}, "
                 f"Error: {exc}", exc_info=True)
    return reason_response(
        Reason.SERVER_ERROR,
        status_code=503,
        correlation_id=correlation_id,
        detail=type(exc).__name__,
        debug=debug,
    )


async def error_handler(request: Request, exc: StarletteHTTPException):
    """Standardized error handler for all HTTP exceptions"""
    error_code, message, retryable = ERROR_REGISTRY.get(
        exc.status_code,
        ("INTEGRITY-500", "Internal Server Error", True)
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "ok": False,
            "transaction_id": str(uuid.uuid4()),
            "error_code": error_code,
            "message": exc.detail or message,
            "retryable": retryable
        },
        headers=NO_STORE_HEADERS,
    )
