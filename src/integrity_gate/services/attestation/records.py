"""
Stored records: platform-tagged challenges and enrolled iOS device keys.
"""

import base64
import json
from dataclasses import dataclass
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    created_at: int = Field(alias="createdAt", ge=0)

    def is_expired(self, now_ms: int, ttl_ms: int) -> bool:
        """True once the record is older than the TTL."""
        return self.created_at < now_ms - ttl_ms

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class AndroidChallenge(_Record):
    """Nonce issued for a Play Integrity request."""

    platform: Literal["android"] = "android"
    nonce: str


class IosChallenge(_Record):
    """Challenge issued for an App Attest attestation or assertion."""

    platform: Literal["ios"] = "ios"
    key_id: str = Field(alias="keyId")
    challenge: str


ChallengeRecord = Annotated[
    Union[AndroidChallenge, IosChallenge],
    Field(discriminator="platform"),
]

_challenge_adapter = TypeAdapter(ChallengeRecord)


def parse_challenge(raw: str) -> ChallengeRecord:
    """Parse a stored challenge; raises pydantic.ValidationError when malformed."""
    return _challenge_adapter.validate_json(raw)


@dataclass
class DeviceKeyRecord:
    """Public key and last verified sign counter of an enrolled iOS key."""

    public_key: bytes
    sign_count: int = 0

    def to_json(self) -> str:
        return json.dumps({
            "publicKeyB64": base64.b64encode(self.public_key).decode("ascii"),
            "signCount": self.sign_count,
        })

    @classmethod
    def from_json(cls, raw: str) -> "DeviceKeyRecord":
        """Raises ValueError, KeyError or TypeError when the stored value is malformed."""
        parsed = json.loads(raw)
        try:
            sign_count = int(parsed.get("signCount") or 0)
        except (TypeError, ValueError):
            sign_count = 0
        return cls(
            public_key=base64.b64decode(parsed["publicKeyB64"]),
            sign_count=sign_count,
        )
