"""
Integrity router: challenge issuance and platform verification endpoints
"""

import json
import logging
from typing import Optional, Type, TypeVar

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from ..config import Settings
from ..dependencies import get_app_settings, get_orchestrator
from ..schemas.integrity import (
    AndroidChallengeResponse,
    AndroidVerifyRequest,
    IosAssertRequest,
    IosAttestRequest,
    IosChallengeResponse,
    ReasonResponse,
)
from ..services.attestation import (
    ChallengeRequestError,
    IntegrityOrchestrator,
    PersistenceError,
    Platform,
    Reason,
)
from ..utils.errors import NO_STORE_HEADERS, persistence_failure_response, reason_response, result_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrity", tags=["Integrity"])

BodyT = TypeVar("BodyT", bound=BaseModel)

REJECTIONS = {
    400: {"model": ReasonResponse},
    401: {"model": ReasonResponse},
    500: {"model": ReasonResponse},
    503: {"model": ReasonResponse},
}


async def _read_body(request: Request, schema: Type[BodyT]) -> Optional[BodyT]:
    """Parse the JSON body; None when it is not a JSON object of the right shape."""
    try:
        raw = await request.body()
        data = json.loads(raw) if raw else None
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        return schema.model_validate(data)
    except ValidationError:
        return None


@router.get(
    "/challenge",
    summary="Issue Challenge",
    responses={200: {"description": "Challenge issued"}, **REJECTIONS},
)
async def issue_challenge(
    platform: Optional[str] = None,
    keyId: Optional[str] = None,
    orchestrator: IntegrityOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
):
    """
    Issue a single-use challenge.

    Android receives a nonce; iOS receives a challenge and whether the
    key should attest (unknown) or assert (enrolled).
    """
    try:
        issued = await orchestrator.issue_challenge(platform, keyId)
    except ChallengeRequestError as e:
        return reason_response(e.reason, debug=settings.integrity_debug)
    except PersistenceError as e:
        return persistence_failure_response(e, debug=settings.integrity_debug)

    schema = AndroidChallengeResponse if issued.platform == Platform.ANDROID else IosChallengeResponse
    content = schema.model_validate(issued.to_response()).model_dump()
    return JSONResponse(status_code=200, content=content, headers=NO_STORE_HEADERS)


@router.post("/android/verify", summary="Verify Play Integrity Token", responses=REJECTIONS)
async def verify_android(
    request: Request,
    orchestrator: IntegrityOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
):
    """Verify a Play Integrity token against the nonce issued for requestId."""
    body = await _read_body(request, AndroidVerifyRequest)
    if body is None:
        return reason_response(Reason.MISSING_FIELDS, debug=settings.integrity_debug)

    try:
        result = await orchestrator.verify_android(body.request_id, body.nonce, body.token)
    except PersistenceError as e:
        return persistence_failure_response(e, debug=settings.integrity_debug)

    return result_response(result, debug=settings.integrity_debug)


@router.post("/ios/attest", summary="Enroll App Attest Key", responses=REJECTIONS)
async def attest_ios(
    request: Request,
    orchestrator: IntegrityOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
):
    """Verify an App Attest attestation and enroll its key."""
    body = await _read_body(request, IosAttestRequest)
    if body is None:
        return reason_response(Reason.MISSING_FIELDS, debug=settings.integrity_debug)

    try:
        result = await orchestrator.attest_ios(
            body.request_id, body.key_id, body.challenge, body.attestation
        )
    except PersistenceError as e:
        return persistence_failure_response(e, debug=settings.integrity_debug)

    return result_response(result, debug=settings.integrity_debug)


@router.post("/ios/assert", summary="Verify App Attest Assertion", responses=REJECTIONS)
async def assert_ios(
    request: Request,
    orchestrator: IntegrityOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
):
    """Verify an assertion from an enrolled App Attest key."""
    body = await _read_body(request, IosAssertRequest)
    if body is None:
        return reason_response(Reason.MISSING_FIELDS, debug=settings.integrity_debug)

    try:
        result = await orchestrator.assert_ios(
            body.request_id, body.key_id, body.challenge, body.assertion
        )
    except PersistenceError as e:
        return persistence_failure_response(e, debug=settings.integrity_debug)

    return result_response(result, debug=settings.integrity_debug)
