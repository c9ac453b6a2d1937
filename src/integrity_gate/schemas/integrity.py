"""
Pydantic schemas for integrity challenge requests and responses.

Request fields are all optional so that an incomplete body reaches the
orchestrators and is answered with missing_fields rather than a 422.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AndroidVerifyRequest(_Body):
    """Body of POST /integrity/android/verify."""

    request_id: Optional[str] = Field(None, alias="requestId", description="Request id from the challenge")
    nonce: Optional[str] = Field(None, description="Nonce the client embedded in the integrity request")
    token: Optional[str] = Field(None, description="Play Integrity token")


class IosAttestRequest(_Body):
    """Body of POST /integrity/ios/attest."""

    request_id: Optional[str] = Field(None, alias="requestId", description="Request id from the challenge")
    key_id: Optional[str] = Field(None, alias="keyId", description="App Attest key identifier")
    challenge: Optional[str] = Field(None, description="Challenge text, web-safe base64")
    attestation: Optional[str] = Field(None, description="Attestation object, standard base64")


class IosAssertRequest(_Body):
    """Body of POST /integrity/ios/assert."""

    request_id: Optional[str] = Field(None, alias="requestId", description="Request id from the challenge")
    key_id: Optional[str] = Field(None, alias="keyId", description="App Attest key identifier")
    challenge: Optional[str] = Field(None, description="Challenge text, web-safe base64")
    assertion: Optional[str] = Field(None, description="Assertion, standard base64")


class AndroidChallengeResponse(BaseModel):
    """Challenge issued for Play Integrity."""

    ok: bool = True
    provider: str = Field("android_play_integrity", description="Attestation provider")
    requestId: str = Field(..., description="Opaque request identifier")
    nonce: str = Field(..., description="Nonce, web-safe base64 without padding")


class IosChallengeResponse(BaseModel):
    """Challenge issued for App Attest."""

    ok: bool = True
    provider: str = Field("ios_app_attest", description="Attestation provider")
    requestId: str = Field(..., description="Opaque request identifier")
    mode: str = Field(..., description="'attest' for unknown keys, 'assert' for enrolled keys")
    challenge: str = Field(..., description="Challenge, web-safe base64 without padding")
    keyId: str = Field(..., description="Echo of the key identifier")


class ReasonResponse(BaseModel):
    """Rejection body."""

    ok: bool = False
    reason: str = Field(..., description="Reason code, optionally 'reason:detail'")
    correlationId: Optional[str] = Field(None, description="Diagnostic mode only")
    detail: Optional[str] = Field(None, description="Diagnostic mode only")
